# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""Topic ownership for a single-broker cluster."""

from __future__ import annotations

import zlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .broker import InProcessBroker


@dataclass(frozen=True)
class LookupResult:
    """Where clients reach the owner of a topic."""

    broker_url: str
    web_url: str
    web_url_tls: str
    kafka_listeners: str


class NamespaceService:
    """
    Assigns topics to namespace bundles and reports the owning broker.

    With a single broker every bundle is owned by that broker while it is
    running. Topics are mapped to bundles by hashing their name.
    """

    def __init__(self, broker: InProcessBroker):
        self._broker = broker

    @property
    def num_bundles(self) -> int:
        return self._broker.config.default_number_of_namespace_bundles

    def bundle_of(self, topic: str) -> int:
        return zlib.crc32(topic.encode()) % self.num_bundles

    def is_serviceable(self, topic: str) -> bool:
        return self._broker.is_running

    def owner_of(self, topic: str) -> str:
        config = self._broker.config
        return f'{config.advertised_address}:{config.broker_service_port}'

    def lookup(self, topic: str) -> LookupResult:
        config = self._broker.config
        host = config.advertised_address
        return LookupResult(
            broker_url=f'broker://{self.owner_of(topic)}',
            web_url=f'http://{host}:{config.web_service_port}',
            web_url_tls=f'https://{host}:{config.web_service_port_tls}',
            kafka_listeners=config.listeners,
        )
