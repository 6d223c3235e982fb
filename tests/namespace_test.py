# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
from kop.harness.broker import InProcessBroker
from kop.harness.namespace import NamespaceService


def test_lookup_reports_advertised_urls(broker: InProcessBroker) -> None:
    config = broker.config
    result = NamespaceService(broker).lookup('my-topic')
    assert result.broker_url == f'broker://localhost:{config.broker_service_port}'
    assert result.web_url == f'http://localhost:{config.web_service_port}'
    assert result.web_url_tls == f'https://localhost:{config.web_service_port_tls}'
    assert result.kafka_listeners == config.listeners


def test_bundles_are_stable_and_in_range(broker: InProcessBroker) -> None:
    service = NamespaceService(broker)
    assert service.num_bundles == 1
    assert service.bundle_of('a') == service.bundle_of('a') == 0


def test_serviceable_only_while_broker_runs(broker: InProcessBroker) -> None:
    service = NamespaceService(broker)
    assert service.is_serviceable('topic')
    broker.close()
    assert not service.is_serviceable('topic')
