# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""
Minimal producer and consumer wrappers used by tests to exercise a broker.

Each wrapper owns exactly one client. Keys are 32-bit integers and values are
strings, encoded with :class:`~kop.harness.codec.IntegerSerializer` and the
UTF-8 string serializer. Closing a wrapper releases its client once; further
calls to ``close`` do nothing.
"""

from __future__ import annotations

import time
from typing import Any

import structlog
from confluent_kafka import KafkaError, KafkaException

from . import properties as p
from .factory import ClientFactory, select_client_factory

logger = structlog.get_logger(__name__)

PRODUCER_CLIENT_ID = 'DemoKafkaOnPulsarProducer'
SSL_PRODUCER_CLIENT_ID = 'DemoKafkaOnPulsarProducerSSL'
DEFAULT_CONSUMER_GROUP = 'DemoKafkaOnPulsarConsumer'
DEFAULT_TRUSTSTORE_PASSWORD = '111111'


class DeliveryCallback:
    """
    Delivery report handler for asynchronous sends.

    Exactly one of ``partition``/``offset`` and ``error`` is set once the report
    has been served.

    Parameters
    ----------
    start_time:
        ``time.monotonic()`` at the time the record was handed to the producer.
    key:
        Key of the record.
    message:
        Value of the record.
    """

    def __init__(self, start_time: float, key: int, message: str):
        self.start_time = start_time
        self.key = key
        self.message = message
        self.elapsed_ms: int | None = None
        self.partition: int | None = None
        self.offset: int | None = None
        self.error: KafkaError | None = None

    @property
    def completed(self) -> bool:
        return self.elapsed_ms is not None

    def __call__(self, err: KafkaError | None, msg: Any) -> None:
        self.elapsed_ms = int((time.monotonic() - self.start_time) * 1000)
        if err is not None:
            self.error = err
            logger.error(
                "delivery_failed", key=self.key, value=self.message, error=str(err)
            )
            return
        self.partition = msg.partition()
        self.offset = msg.offset()
        logger.info(
            "message_delivered",
            key=self.key,
            value=self.message,
            partition=self.partition,
            offset=self.offset,
            elapsed_ms=self.elapsed_ms,
        )


class _ClientDriver:
    """Owns one client built from a property map."""

    def __init__(self, props: dict[str, Any], client_factory: ClientFactory | None):
        self._props = props
        self._factory = client_factory or select_client_factory(
            props[p.BOOTSTRAP_SERVERS]
        )
        self._closed = False

    @property
    def properties(self) -> dict[str, Any]:
        return dict(self._props)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release()

    def _release(self) -> None:
        raise NotImplementedError

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class _ProducerDriver(_ClientDriver):
    def __init__(
        self,
        topic: str,
        is_async: bool,
        props: dict[str, Any],
        client_factory: ClientFactory | None,
    ):
        super().__init__(props, client_factory)
        self.topic = topic
        self.is_async = is_async
        self.producer = self._factory.create_producer(props)

    def send(self, key: int, value: str) -> DeliveryCallback:
        """
        Produce one record.

        Synchronous producers wait for the delivery report and raise
        ``KafkaException`` if delivery failed. Asynchronous producers return as
        soon as the record is queued; the returned callback is completed when the
        report is served by a later ``poll``/``flush`` (immediately for
        in-process brokers).
        """
        if self._closed:
            raise RuntimeError("Producer closed")
        callback = DeliveryCallback(time.monotonic(), key, value)
        self.producer.produce(self.topic, key=key, value=value, on_delivery=callback)
        if self.is_async:
            self.producer.poll(0)
            return callback
        self.producer.flush()
        if callback.error is not None:
            raise KafkaException(callback.error)
        if not callback.completed:
            raise KafkaException(
                KafkaError(KafkaError._MSG_TIMED_OUT, "No delivery report received")
            )
        return callback

    def flush(self, timeout: float | None = None) -> int:
        if timeout is None:
            return self.producer.flush()
        return self.producer.flush(timeout)

    def _release(self) -> None:
        try:
            self.producer.flush()
        finally:
            # confluent_kafka producers have no close(), they are released on GC
            close = getattr(self.producer, 'close', None)
            if close is not None:
                close()
            logger.debug("producer_closed", topic=self.topic)


class KProducer(_ProducerDriver):
    """
    Producer with integer keys and string values over plaintext.

    With ``username`` and ``password`` the producer authenticates with
    SASL/PLAIN.
    """

    def __init__(
        self,
        topic: str,
        is_async: bool,
        port: int,
        *,
        host: str = 'localhost',
        username: str | None = None,
        password: str | None = None,
        client_factory: ClientFactory | None = None,
    ):
        props = {
            p.BOOTSTRAP_SERVERS: f'{host}:{port}',
            p.CLIENT_ID: PRODUCER_CLIENT_ID,
            p.KEY_SERIALIZER: p.INTEGER_SERIALIZER,
            p.VALUE_SERIALIZER: p.STRING_SERIALIZER,
            **p.sasl_properties(username, password),
        }
        super().__init__(topic, is_async, props, client_factory)


class SslProducer(_ProducerDriver):
    """Synchronous producer over TLS that trusts the given trust store."""

    def __init__(
        self,
        topic: str,
        port: int,
        *,
        host: str = 'localhost',
        truststore_location: str | None = None,
        truststore_password: str = DEFAULT_TRUSTSTORE_PASSWORD,
        client_factory: ClientFactory | None = None,
    ):
        props = {
            p.BOOTSTRAP_SERVERS: f'{host}:{port}',
            p.CLIENT_ID: SSL_PRODUCER_CLIENT_ID,
            p.KEY_SERIALIZER: p.INTEGER_SERIALIZER,
            p.VALUE_SERIALIZER: p.STRING_SERIALIZER,
            p.SECURITY_PROTOCOL: 'SSL',
            p.SSL_ENDPOINT_IDENTIFICATION_ALGORITHM: '',
        }
        if truststore_location is not None:
            props[p.SSL_TRUSTSTORE_LOCATION] = truststore_location
            props[p.SSL_TRUSTSTORE_PASSWORD] = truststore_password
        super().__init__(topic, False, props, client_factory)


class KConsumer(_ClientDriver):
    """
    Group consumer with integer keys and string values.

    Starts from the earliest offset when the group has no committed position.
    """

    def __init__(
        self,
        topic: str,
        port: int,
        *,
        host: str = 'localhost',
        auto_commit: bool = False,
        username: str | None = None,
        password: str | None = None,
        consumer_group: str = DEFAULT_CONSUMER_GROUP,
        client_factory: ClientFactory | None = None,
    ):
        props: dict[str, Any] = {
            p.BOOTSTRAP_SERVERS: f'{host}:{port}',
            p.GROUP_ID: consumer_group,
            p.ENABLE_AUTO_COMMIT: auto_commit,
            p.SESSION_TIMEOUT_MS: 30000,
            p.KEY_DESERIALIZER: p.INTEGER_DESERIALIZER,
            p.VALUE_DESERIALIZER: p.STRING_DESERIALIZER,
            p.AUTO_OFFSET_RESET: 'earliest',
            **p.sasl_properties(username, password),
        }
        if auto_commit:
            props[p.AUTO_COMMIT_INTERVAL_MS] = 1000
        super().__init__(props, client_factory)
        self.topic = topic
        self.consumer = self._factory.create_consumer(props)

    def subscribe(self) -> None:
        self.consumer.subscribe([self.topic])

    def poll(self, timeout: float = 1.0) -> Any:
        """Next message or ``None``. Raises ``KafkaException`` on a message error."""
        msg = self.consumer.poll(timeout)
        if msg is not None and msg.error() is not None:
            raise KafkaException(msg.error())
        return msg

    def _release(self) -> None:
        self.consumer.close()
        logger.debug("consumer_closed", topic=self.topic)
