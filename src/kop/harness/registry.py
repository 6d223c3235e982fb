# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""
Process-local endpoint registry.

In-process brokers register their advertised listeners here when they start and
remove them when they close. In-process clients resolve their bootstrap or
service address through the registry instead of opening a socket, which keeps
the harness free of network I/O while preserving the addressing scheme of a
real deployment.
"""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import structlog

if TYPE_CHECKING:
    from .broker import InProcessBroker

logger = structlog.get_logger(__name__)


class ListenerKind(enum.Enum):
    PLAINTEXT = 'PLAINTEXT'
    SSL = 'SSL'
    WEB = 'http'
    WEB_TLS = 'https'
    BROKER = 'broker'


class AddressInUseError(OSError):
    """Raised when a listener address is already registered."""


class EndpointNotFoundError(ConnectionError):
    """Raised when nothing listens on an address."""


@dataclass(frozen=True)
class Endpoint:
    broker: InProcessBroker
    kind: ListenerKind


def normalize_address(address: str) -> str:
    """
    Normalize ``host:port`` or ``scheme://host:port[/path]`` to ``host:port``.

    The scheme is dropped because a port is owned by exactly one listener.
    """
    if '://' in address:
        parts = urlsplit(address)
        if parts.hostname is None or parts.port is None:
            raise ValueError(f"Address must include host and port: {address!r}")
        return f'{parts.hostname.lower()}:{parts.port}'
    host, sep, port = address.strip().rpartition(':')
    if not sep or not host or not port.isdigit():
        raise ValueError(f"Address must be of the form host:port: {address!r}")
    return f'{host.lower()}:{int(port)}'


class EndpointRegistry:
    """Thread-safe mapping from listener address to the broker listening on it."""

    def __init__(self) -> None:
        self._endpoints: dict[str, Endpoint] = {}
        self._lock = threading.Lock()

    def register(
        self, address: str, broker: InProcessBroker, kind: ListenerKind
    ) -> None:
        key = normalize_address(address)
        with self._lock:
            if key in self._endpoints:
                raise AddressInUseError(f"Address already in use: {key}")
            self._endpoints[key] = Endpoint(broker=broker, kind=kind)
        logger.debug("endpoint_registered", address=key, kind=kind.value)

    def unregister_all(self, broker: InProcessBroker) -> None:
        with self._lock:
            keys = [k for k, ep in self._endpoints.items() if ep.broker is broker]
            for key in keys:
                del self._endpoints[key]
        logger.debug("endpoints_unregistered", addresses=keys)

    def lookup(self, address: str) -> Endpoint | None:
        try:
            key = normalize_address(address)
        except ValueError:
            return None
        with self._lock:
            return self._endpoints.get(key)

    def resolve(self, address: str) -> Endpoint:
        endpoint = self.lookup(address)
        if endpoint is None:
            raise EndpointNotFoundError(f"Connection refused: {address}")
        return endpoint

    def resolve_any(self, addresses: str) -> Endpoint:
        """Resolve the first reachable entry of a comma-separated address list."""
        for address in addresses.split(','):
            endpoint = self.lookup(address.strip())
            if endpoint is not None:
                return endpoint
        raise EndpointNotFoundError(f"Connection refused: {addresses}")


_registry = EndpointRegistry()


def get_registry() -> EndpointRegistry:
    return _registry
