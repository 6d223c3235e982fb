# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""
Injection points through which a broker obtains its dependencies.

A broker never constructs its coordination-store client, log-store client or
ordered executor itself. It receives a :class:`BrokerSeams` value at
construction time and asks the factories in it. The harness builds seams whose
factories always hand out the same mock instances, so every broker created
during a harness's lifetime talks to the same in-memory state.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol
from unittest.mock import Mock

import structlog

from .executors import SameThreadOrderedExecutor
from .mocks import MockCoordinationStore, NonClosableLogStore
from .namespace import NamespaceService

if TYPE_CHECKING:
    from .broker import InProcessBroker
    from .config import HarnessConfig

logger = structlog.get_logger(__name__)

DEFAULT_SESSION_TIMEOUT_MS = 30_000


class CoordinationClientFactory(Protocol):
    def create(
        self, servers: str, session_timeout_ms: int = DEFAULT_SESSION_TIMEOUT_MS
    ) -> MockCoordinationStore: ...


class LogStoreClientFactory(Protocol):
    def create(
        self,
        config: HarnessConfig,
        coordination: MockCoordinationStore,
        placement_policy: type | None = None,
        properties: dict[str, Any] | None = None,
    ) -> NonClosableLogStore: ...

    def close(self) -> None: ...


NamespaceServiceProvider = Callable[['InProcessBroker'], NamespaceService]


class SharedCoordinationClientFactory:
    """Returns the same coordination store for any connection string."""

    def __init__(self, store: MockCoordinationStore):
        self._store = store

    @property
    def store(self) -> MockCoordinationStore:
        return self._store

    def create(
        self, servers: str, session_timeout_ms: int = DEFAULT_SESSION_TIMEOUT_MS
    ) -> MockCoordinationStore:
        logger.debug("coordination_client_requested", servers=servers)
        return self._store


class SharedLogStoreClientFactory:
    """Returns the same log store whatever placement or properties are requested."""

    def __init__(self, store: NonClosableLogStore):
        self._store = store

    @property
    def store(self) -> NonClosableLogStore:
        return self._store

    def create(
        self,
        config: HarnessConfig,
        coordination: MockCoordinationStore,
        placement_policy: type | None = None,
        properties: dict[str, Any] | None = None,
    ) -> NonClosableLogStore:
        logger.debug(
            "log_store_client_requested",
            placement_policy=getattr(placement_policy, '__name__', None),
        )
        return self._store

    def close(self) -> None:
        # The shared store outlives every broker; it is released by the harness.
        pass


def spied_namespace_service(broker: InProcessBroker) -> NamespaceService:
    """Namespace service whose calls are recorded for later assertions."""
    return Mock(wraps=NamespaceService(broker))


@dataclass(frozen=True)
class BrokerSeams:
    """
    Dependencies handed to a broker at construction.

    Parameters
    ----------
    coordination_client_factory:
        Yields the coordination-store client.
    log_store_client_factory:
        Yields the log-store client.
    ordered_executor:
        Executor for callbacks that must run in order per key.
    namespace_service_provider:
        Builds the namespace service for a broker.
    """

    coordination_client_factory: CoordinationClientFactory
    log_store_client_factory: LogStoreClientFactory
    ordered_executor: SameThreadOrderedExecutor
    namespace_service_provider: NamespaceServiceProvider = NamespaceService
