# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
from unittest.mock import Mock

import pytest

from kop.harness.registry import (
    AddressInUseError,
    EndpointNotFoundError,
    EndpointRegistry,
    ListenerKind,
    normalize_address,
)


@pytest.mark.parametrize(
    ('address', 'expected'),
    [
        ('localhost:9092', 'localhost:9092'),
        ('LOCALHOST:9092', 'localhost:9092'),
        ('http://localhost:8080', 'localhost:8080'),
        ('https://Example.org:8443/admin/v2', 'example.org:8443'),
        ('broker://localhost:6650', 'localhost:6650'),
        ('PLAINTEXT://localhost:9092', 'localhost:9092'),
    ],
)
def test_normalize_address(address: str, expected: str) -> None:
    assert normalize_address(address) == expected


@pytest.mark.parametrize('address', ['localhost', 'localhost:http', 'http://host'])
def test_normalize_rejects_addresses_without_port(address: str) -> None:
    with pytest.raises(ValueError, match='host'):
        normalize_address(address)


class TestEndpointRegistry:
    def test_resolves_registered_address_in_any_notation(self) -> None:
        registry = EndpointRegistry()
        broker = Mock()
        registry.register('localhost:8080', broker, ListenerKind.WEB)
        endpoint = registry.resolve('http://localhost:8080')
        assert endpoint.broker is broker
        assert endpoint.kind is ListenerKind.WEB

    def test_address_can_only_be_registered_once(self) -> None:
        registry = EndpointRegistry()
        registry.register('localhost:9092', Mock(), ListenerKind.PLAINTEXT)
        with pytest.raises(AddressInUseError):
            registry.register('localhost:9092', Mock(), ListenerKind.PLAINTEXT)

    def test_unknown_address_is_refused(self) -> None:
        registry = EndpointRegistry()
        assert registry.lookup('localhost:1') is None
        with pytest.raises(EndpointNotFoundError, match='Connection refused'):
            registry.resolve('localhost:1')

    def test_lookup_of_malformed_address_returns_none(self) -> None:
        assert EndpointRegistry().lookup('not an address') is None

    def test_unregister_all_removes_only_that_broker(self) -> None:
        registry = EndpointRegistry()
        first, second = Mock(), Mock()
        registry.register('localhost:1001', first, ListenerKind.PLAINTEXT)
        registry.register('localhost:1002', first, ListenerKind.SSL)
        registry.register('localhost:1003', second, ListenerKind.PLAINTEXT)
        registry.unregister_all(first)
        assert registry.lookup('localhost:1001') is None
        assert registry.lookup('localhost:1002') is None
        assert registry.lookup('localhost:1003').broker is second

    def test_resolve_any_uses_first_reachable_address(self) -> None:
        registry = EndpointRegistry()
        broker = Mock()
        registry.register('localhost:2002', broker, ListenerKind.PLAINTEXT)
        endpoint = registry.resolve_any('localhost:2001, localhost:2002')
        assert endpoint.broker is broker
        with pytest.raises(EndpointNotFoundError):
            registry.resolve_any('localhost:2001,localhost:2003')
