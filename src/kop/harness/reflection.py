# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""White-box helpers for test setup."""

from typing import Any


def _is_class_field(attr: Any) -> bool:
    # Methods, properties and other descriptors are not fields.
    return not callable(attr) and not hasattr(type(attr), '__get__')


def _declares(cls: type, obj: Any, field_name: str) -> bool:
    for klass in cls.__mro__:
        if field_name in getattr(klass, '__slots__', ()):
            return True
        if field_name in getattr(klass, '__annotations__', {}):
            return True
        if field_name in vars(klass) and _is_class_field(vars(klass)[field_name]):
            return True
    return isinstance(obj, cls) and field_name in getattr(obj, '__dict__', {})


def set_field_value(cls: type, obj: Any, field_name: str, value: Any) -> None:
    """
    Forcibly assign ``value`` to ``obj.<field_name>``.

    The assignment bypasses ``__setattr__`` overrides, so it works on frozen
    dataclasses and for private attributes. A field that ``cls`` does not declare
    (as class attribute, slot, annotation or instance attribute) is an error.

    Raises
    ------
    AttributeError:
        If ``field_name`` is not a field of ``cls``.
    """
    if not _declares(cls, obj, field_name):
        raise AttributeError(f"{cls.__name__} has no field {field_name!r}")
    object.__setattr__(obj, field_name, value)
