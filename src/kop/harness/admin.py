# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""Administrative and native-protocol clients for the in-process broker."""

from __future__ import annotations

from typing import Any

import structlog

from .broker import InProcessBroker
from .namespace import LookupResult
from .registry import ListenerKind, get_registry

logger = structlog.get_logger(__name__)


class ClientClosedError(RuntimeError):
    """Raised when a closed client is used."""


class _ServiceClient:
    """
    Client bound to a service URL rather than to a broker instance.

    The broker behind the URL is resolved on every call, so a client keeps
    working across broker restarts the way an HTTP client would.
    """

    _accepted: tuple[ListenerKind, ...] = ()

    def __init__(self, service_url: str):
        self._service_url = service_url
        self._closed = False

    @property
    def service_url(self) -> str:
        return self._service_url

    @property
    def is_closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.debug("client_closed", url=self._service_url)

    def _broker(self) -> InProcessBroker:
        if self._closed:
            raise ClientClosedError(f"Client for {self._service_url} is closed")
        endpoint = get_registry().resolve(self._service_url)
        if endpoint.kind not in self._accepted:
            raise ConnectionError(
                f"{self._service_url} is a {endpoint.kind.value} listener"
            )
        return endpoint.broker

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class AdminClient(_ServiceClient):
    """Topic administration through the broker's web-service address."""

    _accepted = (ListenerKind.WEB, ListenerKind.WEB_TLS)

    def topics(self) -> list[str]:
        return self._broker().list_topics()

    def create_topic(self, topic: str, num_partitions: int | None = None) -> None:
        self._broker().create_topic(topic, num_partitions)

    def delete_topic(self, topic: str) -> None:
        self._broker().delete_topic(topic)

    def topic_stats(self, topic: str) -> dict[str, Any]:
        return self._broker().topic_stats(topic)

    def lookup(self, topic: str) -> LookupResult:
        return self._broker().lookup(topic)


class BrokerClient(_ServiceClient):
    """
    Native-protocol client opened against the lookup URL.

    The lookup URL is either the web-service URL or a ``broker://host:port``
    address, so both listener kinds are accepted.

    Parameters
    ----------
    service_url:
        Lookup URL of the broker.
    stats_interval_seconds:
        Interval for client statistics; 0 disables them.
    """

    _accepted = (ListenerKind.WEB, ListenerKind.WEB_TLS, ListenerKind.BROKER)

    def __init__(self, service_url: str, stats_interval_seconds: int = 0):
        super().__init__(service_url)
        self._stats_interval_seconds = stats_interval_seconds

    @property
    def stats_interval_seconds(self) -> int:
        return self._stats_interval_seconds

    def lookup(self, topic: str) -> LookupResult:
        return self._broker().lookup(topic)
