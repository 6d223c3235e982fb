# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
from dataclasses import dataclass

import pytest

from kop.harness.reflection import set_field_value


class Service:
    retries = 3

    def __init__(self) -> None:
        self._client = 'real'

    def connect(self) -> None:
        pass

    @property
    def client(self) -> str:
        return self._client


@dataclass(frozen=True)
class Frozen:
    value: int


class Slotted:
    __slots__ = ('_hidden',)

    def __init__(self) -> None:
        self._hidden = 1


class Child(Service):
    pass


def test_sets_private_instance_attribute() -> None:
    service = Service()
    set_field_value(Service, service, '_client', 'fake')
    assert service._client == 'fake'


def test_sets_field_of_frozen_dataclass() -> None:
    frozen = Frozen(value=1)
    set_field_value(Frozen, frozen, 'value', 2)
    assert frozen.value == 2


def test_sets_slot() -> None:
    slotted = Slotted()
    set_field_value(Slotted, slotted, '_hidden', 5)
    assert slotted._hidden == 5


def test_field_declared_by_base_class_instance() -> None:
    child = Child()
    set_field_value(Service, child, '_client', 'fake')
    assert child._client == 'fake'


def test_unknown_field_raises() -> None:
    with pytest.raises(AttributeError, match='no field'):
        set_field_value(Service, Service(), '_missing', 1)


def test_field_of_unrelated_object_raises() -> None:
    with pytest.raises(AttributeError):
        set_field_value(Frozen, Service(), '_client', 1)


def test_class_attribute_is_a_field() -> None:
    service = Service()
    set_field_value(Service, service, 'retries', 0)
    assert service.retries == 0
    assert Service.retries == 3


@pytest.mark.parametrize('name', ['connect', 'client', '__init__'])
def test_methods_and_properties_are_not_fields(name: str) -> None:
    service = Service()
    with pytest.raises(AttributeError, match='no field'):
        set_field_value(Service, service, name, 'replaced')
    assert name not in vars(service)
