# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""Protocol client drivers and the factories that build their clients."""

from .drivers import DeliveryCallback, KConsumer, KProducer, SslProducer
from .factory import (
    ClientFactory,
    ConfluentClientFactory,
    InProcessClientFactory,
    select_client_factory,
    to_librdkafka,
)
from .in_process import InProcessConsumer, InProcessMessage, InProcessProducer

__all__ = [
    "ClientFactory",
    "ConfluentClientFactory",
    "DeliveryCallback",
    "InProcessClientFactory",
    "InProcessConsumer",
    "InProcessMessage",
    "InProcessProducer",
    "KConsumer",
    "KProducer",
    "SslProducer",
    "select_client_factory",
    "to_librdkafka",
]
