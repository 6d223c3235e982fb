# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""Factories that turn driver properties into producer and consumer clients."""

from __future__ import annotations

from typing import Any, Protocol

import confluent_kafka as kafka
import structlog

from ..registry import get_registry
from . import properties as p
from .in_process import InProcessConsumer, InProcessProducer

logger = structlog.get_logger(__name__)

# Properties understood by the Java client only. librdkafka rejects them.
_JAVA_ONLY = frozenset(
    {
        p.SASL_JAAS_CONFIG,
        p.SSL_TRUSTSTORE_LOCATION,
        p.SSL_TRUSTSTORE_PASSWORD,
        p.KEY_SERIALIZER,
        p.VALUE_SERIALIZER,
        p.KEY_DESERIALIZER,
        p.VALUE_DESERIALIZER,
    }
)


class ClientFactory(Protocol):
    def create_producer(self, props: dict[str, Any]) -> Any: ...

    def create_consumer(self, props: dict[str, Any]) -> Any: ...


class InProcessClientFactory:
    """Creates clients for brokers registered in this process."""

    def create_producer(self, props: dict[str, Any]) -> InProcessProducer:
        return InProcessProducer(props)

    def create_consumer(self, props: dict[str, Any]) -> InProcessConsumer:
        return InProcessConsumer(props)


def to_librdkafka(props: dict[str, Any]) -> dict[str, Any]:
    """
    Translate Java-client style properties to a confluent_kafka configuration.

    - serializer and deserializer class names are imported and instantiated
    - a PLAIN JAAS string becomes ``sasl.username``/``sasl.password``
    - a trust store location becomes ``ssl.ca.location`` (must be PEM)
    - an empty endpoint identification algorithm becomes ``none``
    """
    config = {k: v for k, v in props.items() if k not in _JAVA_ONLY}
    for key in (
        p.KEY_SERIALIZER,
        p.VALUE_SERIALIZER,
        p.KEY_DESERIALIZER,
        p.VALUE_DESERIALIZER,
    ):
        if key in props:
            config[key] = p.instantiate(props[key])
    if p.SASL_JAAS_CONFIG in props:
        username, password = p.parse_jaas_credentials(props[p.SASL_JAAS_CONFIG])
        if username is not None:
            config[p.SASL_USERNAME] = username
        if password is not None:
            config[p.SASL_PASSWORD] = password
    if p.SSL_TRUSTSTORE_LOCATION in props:
        config['ssl.ca.location'] = props[p.SSL_TRUSTSTORE_LOCATION]
    if config.get(p.SSL_ENDPOINT_IDENTIFICATION_ALGORITHM) == '':
        config[p.SSL_ENDPOINT_IDENTIFICATION_ALGORITHM] = 'none'
    return config


class ConfluentClientFactory:
    """Creates ``confluent_kafka`` clients for real Kafka-protocol endpoints."""

    def create_producer(self, props: dict[str, Any]) -> kafka.SerializingProducer:
        return kafka.SerializingProducer(to_librdkafka(props))

    def create_consumer(self, props: dict[str, Any]) -> kafka.DeserializingConsumer:
        return kafka.DeserializingConsumer(to_librdkafka(props))


def select_client_factory(bootstrap_servers: str) -> ClientFactory:
    """In-process clients for registered listeners, confluent_kafka otherwise."""
    for address in bootstrap_servers.split(','):
        if get_registry().lookup(address.strip()) is not None:
            return InProcessClientFactory()
    logger.debug("using_confluent_kafka_clients", bootstrap=bootstrap_servers)
    return ConfluentClientFactory()
