# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
# ruff: noqa: E402, I

import importlib.metadata

try:
    __version__ = importlib.metadata.version(__package__ or __name__)
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0"

del importlib

from .codec import (
    IntegerDeserializer,
    IntegerSerializer,
    SerializationError,
    int_deserialize,
    int_serialize,
)
from .config import HarnessConfig, HarnessPorts, make_default_config
from .clients import DeliveryCallback, KConsumer, KProducer, SslProducer
from .harness import HarnessState, HarnessStateError, MockKafkaServiceHarness
from .reflection import set_field_value
from .retry import retry_strategically

__all__ = [
    "DeliveryCallback",
    "HarnessConfig",
    "HarnessPorts",
    "HarnessState",
    "HarnessStateError",
    "IntegerDeserializer",
    "IntegerSerializer",
    "KConsumer",
    "KProducer",
    "MockKafkaServiceHarness",
    "SerializationError",
    "SslProducer",
    "int_deserialize",
    "int_serialize",
    "make_default_config",
    "retry_strategically",
    "set_field_value",
]
