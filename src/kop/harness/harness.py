# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""
Lifecycle controller for a mock-backed broker.

The harness owns one coordination store, one log store and the executors they
need. Brokers come and go (``start_broker``, ``stop_broker``, ``restart_broker``)
but every broker started by a harness is handed the same stores, so data written
before a restart is visible after it. ``internal_cleanup`` releases everything
once, at the end.

Typical use::

    with MockKafkaServiceHarness() as harness:
        with KProducer('topic', False, harness.kafka_broker_port) as producer:
            producer.send(42, 'hello')
"""

from __future__ import annotations

import enum
from types import TracebackType
from unittest.mock import Mock

import structlog

from .admin import AdminClient, BrokerClient
from .broker import Broker, BrokerFactory, InProcessBroker
from .config import HarnessConfig, HarnessPorts, make_default_config
from .executors import LoggingSingleThreadExecutor, SameThreadOrderedExecutor
from .mocks import MockCoordinationStore, MockLogStore, NonClosableLogStore
from .seams import (
    BrokerSeams,
    SharedCoordinationClientFactory,
    SharedLogStoreClientFactory,
    spied_namespace_service,
)

logger = structlog.get_logger(__name__)

LOG_STORE_EXECUTOR_NAME = 'mock-kafka-service-bk'


class HarnessState(enum.Enum):
    UNINITIALIZED = 'uninitialized'
    CONFIGURED = 'configured'
    MOCKS_READY = 'mocks_ready'
    RUNNING = 'running'
    STOPPED = 'stopped'
    CLEANED_UP = 'cleaned_up'


class HarnessStateError(RuntimeError):
    """Raised when a lifecycle operation is invalid in the current state."""


class MockKafkaServiceHarness:
    """
    Starts, restarts and tears down a broker backed by in-memory stores.

    Parameters
    ----------
    is_tcp_lookup:
        If True, the protocol client looks topics up through the broker's native
        ``broker://`` address instead of its web-service URL.
    broker_factory:
        Builds a broker from a configuration and the injected seams.
    ports:
        Ports to use. Allocated from the process-wide pool by default.
    """

    def __init__(
        self,
        *,
        is_tcp_lookup: bool = False,
        broker_factory: BrokerFactory = InProcessBroker,
        ports: HarnessPorts | None = None,
    ):
        self.is_tcp_lookup = is_tcp_lookup
        self.broker_factory = broker_factory
        self.ports = ports if ports is not None else HarnessPorts.allocate()
        self.state = HarnessState.UNINITIALIZED
        self.config: HarnessConfig | None = None
        self.broker: Broker | None = None
        self.broker_url: str | None = None
        self.broker_url_tls: str | None = None
        self.lookup_url: str | None = None
        self.admin: AdminClient | None = None
        self.client: BrokerClient | None = None
        self.ordered_executor: SameThreadOrderedExecutor | None = None
        self.log_store_executor: LoggingSingleThreadExecutor | None = None
        self.coordination_store: MockCoordinationStore | None = None
        self.log_store: NonClosableLogStore | None = None
        self._seams: BrokerSeams | None = None
        self._broker_config: HarnessConfig | None = None
        self.reset_config()

    @property
    def kafka_broker_port(self) -> int:
        return self.ports.kafka_broker_port

    @property
    def kafka_broker_port_tls(self) -> int:
        return self.ports.kafka_broker_port_tls

    @property
    def web_service_port(self) -> int:
        return self.ports.web_service_port

    @property
    def web_service_port_tls(self) -> int:
        return self.ports.web_service_port_tls

    @property
    def broker_service_port(self) -> int:
        return self.ports.broker_service_port

    def reset_config(self) -> HarnessConfig:
        """
        Restore the default configuration for this harness's ports.

        Only the configuration used by the next ``start_broker`` call changes; a
        running broker keeps the configuration it was started with.
        """
        self._require_not(HarnessState.RUNNING, HarnessState.CLEANED_UP)
        self.config = make_default_config(self.ports)
        if self.state is HarnessState.UNINITIALIZED:
            self.state = HarnessState.CONFIGURED
        return self.config

    def init(self) -> None:
        """
        Create the executors and the mock stores.

        If creating any of them fails, the ones already created are shut down
        again before the exception propagates, so ``init`` can be retried.
        """
        self._require(HarnessState.CONFIGURED)
        try:
            self.ordered_executor = SameThreadOrderedExecutor()
            self.log_store_executor = LoggingSingleThreadExecutor(
                LOG_STORE_EXECUTOR_NAME
            )
            self.coordination_store = MockCoordinationStore.create_instance()
            self.log_store = NonClosableLogStore(
                MockLogStore.create_instance(
                    self.coordination_store, self.log_store_executor
                )
            )
        except Exception:
            self._unwind_init()
            raise
        self.state = HarnessState.MOCKS_READY
        logger.info("harness_mocks_ready", ports=self.ports)

    def _unwind_init(self) -> None:
        releases = (
            ('coordination_store', self.coordination_store, 'shutdown'),
            ('ordered_executor', self.ordered_executor, 'shutdown'),
            ('log_store_executor', self.log_store_executor, 'shutdown'),
        )
        for name, resource, method in releases:
            if resource is None:
                continue
            try:
                getattr(resource, method)()
            except Exception:
                logger.exception("init_unwind_failed", resource=name)
        self.coordination_store = None
        self.ordered_executor = None
        self.log_store_executor = None
        self.log_store = None

    def setup_broker_mocks(self) -> BrokerSeams:
        """
        Seams that make a broker use this harness's stores and executor.

        The same value is returned on every call, so each broker started by this
        harness is wired to the same instances.
        """
        if self.coordination_store is None or self.log_store is None:
            raise HarnessStateError("Mock stores have not been created, call init()")
        if self._seams is None:
            self._seams = BrokerSeams(
                coordination_client_factory=SharedCoordinationClientFactory(
                    self.coordination_store
                ),
                log_store_client_factory=SharedLogStoreClientFactory(self.log_store),
                ordered_executor=self.ordered_executor,
                namespace_service_provider=spied_namespace_service,
            )
        return self._seams

    def start_broker(self, config: HarnessConfig | None = None) -> Broker:
        """
        Construct and start a new broker.

        If construction or start fails the exception propagates and the harness
        stays in its previous state.

        Parameters
        ----------
        config:
            Configuration of the new broker. Defaults to the harness configuration.
        """
        self._require(HarnessState.MOCKS_READY, HarnessState.STOPPED)
        config = config if config is not None else self.config
        broker = self.broker_factory(config, self.setup_broker_mocks())
        broker.start()
        broker.compactor = Mock(wraps=broker.compactor)
        self.broker = broker
        self._broker_config = config
        host = config.advertised_address
        self.broker_url = f'http://{host}:{config.web_service_port}'
        self.broker_url_tls = f'https://{host}:{config.web_service_port_tls}'
        self.state = HarnessState.RUNNING
        logger.info("harness_broker_started", broker_url=self.broker_url)
        return broker

    def stop_broker(self) -> None:
        """Close the running broker. The mock stores are kept."""
        self._require(HarnessState.RUNNING)
        self.broker.close()
        self.broker = None
        self.state = HarnessState.STOPPED
        logger.info("harness_broker_stopped")

    def restart_broker(self) -> Broker:
        """Stop the broker and start a new one with the same configuration."""
        self._require(HarnessState.RUNNING)
        config = self._broker_config
        self.stop_broker()
        return self.start_broker(config)

    def internal_setup(self) -> None:
        """Create the mocks, start a broker and open the admin and protocol clients."""
        self.init()
        self.start_broker()
        if self.is_tcp_lookup:
            config = self._broker_config
            self.lookup_url = (
                f'broker://{config.advertised_address}:{config.broker_service_port}'
            )
        else:
            self.lookup_url = self.broker_url
        self.admin = AdminClient(self.broker_url)
        self.client = BrokerClient(self.lookup_url, stats_interval_seconds=0)

    def internal_cleanup(self) -> None:
        """
        Release everything the harness created, in reverse dependency order.

        Resources that were never created are skipped. A failing release is
        logged and the remaining ones are still attempted; the first failure is
        raised once all releases have been tried. Calling this again after it has
        completed does nothing.
        """
        if self.state is HarnessState.CLEANED_UP:
            return
        releases = (
            ('protocol_client', self.client, 'close'),
            ('admin_client', self.admin, 'close'),
            ('broker', self.broker, 'close'),
            ('log_store', self.log_store, 'really_shutdown'),
            ('coordination_store', self.coordination_store, 'shutdown'),
            ('ordered_executor', self.ordered_executor, 'shutdown'),
            ('log_store_executor', self.log_store_executor, 'shutdown'),
        )
        first_error: Exception | None = None
        for name, resource, method in releases:
            if resource is None:
                continue
            try:
                getattr(resource, method)()
            except Exception as e:
                logger.exception("cleanup_step_failed", resource=name)
                if first_error is None:
                    first_error = e
        self.client = None
        self.admin = None
        self.broker = None
        self.log_store = None
        self.coordination_store = None
        self.ordered_executor = None
        self.log_store_executor = None
        self._seams = None
        self.state = HarnessState.CLEANED_UP
        logger.info("harness_cleaned_up", failed=first_error is not None)
        if first_error is not None:
            raise first_error

    def _require(self, *states: HarnessState) -> None:
        if self.state not in states:
            expected = ', '.join(s.name for s in states)
            raise HarnessStateError(
                f"Harness is {self.state.name}, expected one of: {expected}"
            )

    def _require_not(self, *states: HarnessState) -> None:
        if self.state in states:
            raise HarnessStateError(f"Operation not allowed while {self.state.name}")

    def __enter__(self) -> MockKafkaServiceHarness:
        try:
            self.internal_setup()
        except Exception:
            try:
                self.internal_cleanup()
            except Exception:
                logger.warning("cleanup_after_failed_setup_failed")
            raise
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.internal_cleanup()
