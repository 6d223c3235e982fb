# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""
Fixed-width integer codec used for record keys.

Keys are encoded as 4 bytes, most-significant byte first, holding the 32-bit
two's-complement value. This matches the wire format of the Java client's
``IntegerSerializer`` so records written by either side decode identically.
"""

from __future__ import annotations

from typing import Any

from confluent_kafka.serialization import (
    Deserializer,
    SerializationContext,
    SerializationError,
    Serializer,
    StringDeserializer,
    StringSerializer,
)

__all__ = [
    'IntegerDeserializer',
    'IntegerSerializer',
    'SerializationError',
    'StringDeserializer',
    'StringSerializer',
    'int_deserialize',
    'int_serialize',
]

INT_SIZE = 4
_INT_MIN = -(2**31)
_INT_MAX = 2**31 - 1


def int_serialize(value: int | None) -> bytes | None:
    """Encode a 32-bit integer as 4 big-endian bytes, or ``None`` for ``None``."""
    if value is None:
        return None
    if not _INT_MIN <= value <= _INT_MAX:
        raise SerializationError(f"Value {value} does not fit in a 32-bit integer")
    unsigned = value & 0xFFFFFFFF
    return bytes(
        [
            (unsigned >> 24) & 0xFF,
            (unsigned >> 16) & 0xFF,
            (unsigned >> 8) & 0xFF,
            unsigned & 0xFF,
        ]
    )


def int_deserialize(data: bytes | None) -> int | None:
    """
    Decode 4 big-endian bytes into a signed 32-bit integer.

    Raises
    ------
    SerializationError:
        If ``data`` is not exactly 4 bytes long.
    """
    if data is None:
        return None
    if len(data) != INT_SIZE:
        raise SerializationError(
            "Size of data received by IntegerDeserializer is not 4"
        )
    value = 0
    for b in data:
        value = (value << 8) | (b & 0xFF)
    if value > _INT_MAX:
        value -= 1 << 32
    return value


class IntegerSerializer(Serializer):
    """Key serializer for ``SerializingProducer`` and the in-process producer."""

    def __call__(self, obj: Any, ctx: SerializationContext | None = None) -> bytes:
        return int_serialize(obj)


class IntegerDeserializer(Deserializer):
    """Key deserializer for ``DeserializingConsumer`` and the in-process consumer."""

    def __call__(self, value: bytes, ctx: SerializationContext | None = None) -> Any:
        return int_deserialize(value)
