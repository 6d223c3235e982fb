# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""Fixtures for tests that need a broker without going through the harness."""

from collections.abc import Generator

import pytest

from kop.harness.broker import InProcessBroker
from kop.harness.config import (
    ADVERTISED_ADDRESS_ENV_VAR,
    HarnessConfig,
    HarnessPorts,
    make_default_config,
)
from kop.harness.executors import LoggingSingleThreadExecutor, SameThreadOrderedExecutor
from kop.harness.mocks import MockCoordinationStore, MockLogStore, NonClosableLogStore
from kop.harness.seams import (
    BrokerSeams,
    SharedCoordinationClientFactory,
    SharedLogStoreClientFactory,
)


@pytest.fixture(autouse=True)
def _default_advertised_address(monkeypatch) -> None:
    monkeypatch.delenv(ADVERTISED_ADDRESS_ENV_VAR, raising=False)


@pytest.fixture
def broker_config() -> HarnessConfig:
    return make_default_config(HarnessPorts.allocate())


@pytest.fixture
def seams() -> Generator[BrokerSeams, None, None]:
    executor = LoggingSingleThreadExecutor('test-log-store')
    coordination = MockCoordinationStore.create_instance()
    log_store = NonClosableLogStore(
        MockLogStore.create_instance(coordination, executor)
    )
    yield BrokerSeams(
        coordination_client_factory=SharedCoordinationClientFactory(coordination),
        log_store_client_factory=SharedLogStoreClientFactory(log_store),
        ordered_executor=SameThreadOrderedExecutor(),
    )
    log_store.really_shutdown()
    coordination.shutdown()
    executor.shutdown()


@pytest.fixture
def broker(
    broker_config: HarnessConfig, seams: BrokerSeams
) -> Generator[InProcessBroker, None, None]:
    broker = InProcessBroker(broker_config, seams)
    broker.start()
    yield broker
    broker.close()
