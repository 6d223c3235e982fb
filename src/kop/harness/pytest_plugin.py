# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""
Pytest fixtures providing mock-backed brokers.

Registered through the ``pytest11`` entry point, so installing the package makes
the fixtures available to every test suite:

    def test_roundtrip(kop_harness):
        with KProducer('topic', False, kop_harness.kafka_broker_port) as producer:
            producer.send(1, 'one')

The ``--kop-log-json PATH`` option, or setting ``KOP_HARNESS_LOG_LEVEL``, routes
harness logs through :func:`~kop.harness.logging_config.configure_logging`.

Tests can request lookup through the native broker address with a marker:

    @pytest.mark.kop_tcp_lookup
    def test_something(kop_harness):
        ...
"""

import os
from collections.abc import Callable, Generator
from typing import Any

import pytest
import structlog

from .harness import MockKafkaServiceHarness
from .logging_config import LOG_LEVEL_ENV_VAR, configure_logging, level_from_env

logger = structlog.get_logger(__name__)


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup('kop-harness')
    group.addoption(
        '--kop-log-json',
        default=None,
        metavar='PATH',
        help='Write harness logs as JSON lines to PATH instead of stdout.',
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        'markers',
        'kop_tcp_lookup: let kop_harness look topics up via the broker:// address',
    )
    json_file = config.getoption('kop_log_json')
    if json_file is not None or os.getenv(LOG_LEVEL_ENV_VAR):
        configure_logging(
            level=level_from_env(),
            json_file=json_file,
            disable_stdout=json_file is not None,
        )


@pytest.fixture
def kop_harness(request) -> Generator[MockKafkaServiceHarness, None, None]:
    """
    A harness with a running broker, cleaned up after the test.

    Yields
    ------
    :
        Harness after ``internal_setup``
    """
    is_tcp_lookup = request.node.get_closest_marker('kop_tcp_lookup') is not None
    with MockKafkaServiceHarness(is_tcp_lookup=is_tcp_lookup) as harness:
        yield harness


@pytest.fixture
def kop_harness_factory() -> Generator[
    Callable[..., MockKafkaServiceHarness], None, None
]:
    """
    Factory for harnesses that the test sets up itself.

    Harnesses are returned configured but not started, so tests can adjust the
    configuration or drive the lifecycle step by step. Every harness created is
    cleaned up after the test.

    Yields
    ------
    :
        Callable accepting the keyword arguments of ``MockKafkaServiceHarness``
    """
    created: list[MockKafkaServiceHarness] = []

    def make(**kwargs: Any) -> MockKafkaServiceHarness:
        harness = MockKafkaServiceHarness(**kwargs)
        created.append(harness)
        return harness

    yield make

    for harness in created:
        try:
            harness.internal_cleanup()
        except Exception:
            logger.exception("harness_cleanup_failed", ports=harness.ports)
