# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""
Producer and consumer that talk to an in-process broker.

Both mirror the interface of ``confluent_kafka.SerializingProducer`` and
``confluent_kafka.DeserializingConsumer`` closely enough for the drivers and for
tests: the same configuration keys, ``produce``/``poll``/``flush`` with delivery
reports served from ``poll``, ``subscribe``/``poll``/``commit``/``close`` and
message objects with the same accessors. The broker is resolved by address on
every request, so clients keep working across a broker restart.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from typing import Any

import structlog
from confluent_kafka import (
    OFFSET_INVALID,
    TIMESTAMP_CREATE_TIME,
    KafkaError,
    KafkaException,
    TopicPartition,
)
from confluent_kafka.serialization import MessageField, SerializationContext

from ..broker import (
    AuthenticationError,
    BrokerError,
    BrokerNotRunningError,
    GroupCoordinatorNotAvailableError,
    InProcessBroker,
    RecordMetadata,
    TopicExistsError,
    UnknownTopicError,
)
from ..registry import EndpointNotFoundError, ListenerKind, get_registry
from . import properties as p

logger = structlog.get_logger(__name__)

_POLL_INTERVAL = 0.01
_MAX_FETCH_RECORDS = 500

_PROTOCOL_LISTENERS = {
    'PLAINTEXT': ListenerKind.PLAINTEXT,
    'SASL_PLAINTEXT': ListenerKind.PLAINTEXT,
    'SSL': ListenerKind.SSL,
    'SASL_SSL': ListenerKind.SSL,
}
_EARLIEST = {'earliest', 'smallest', 'beginning'}
_LATEST = {'latest', 'largest', 'end'}


def to_kafka_error(exc: Exception) -> KafkaError:
    """Map a broker-side failure to the error a Kafka client would report."""
    if isinstance(exc, UnknownTopicError):
        code = KafkaError.UNKNOWN_TOPIC_OR_PART
    elif isinstance(exc, AuthenticationError):
        code = KafkaError._AUTHENTICATION
    elif isinstance(exc, GroupCoordinatorNotAvailableError):
        code = KafkaError.COORDINATOR_NOT_AVAILABLE
    elif isinstance(exc, TopicExistsError):
        code = KafkaError.TOPIC_ALREADY_EXISTS
    elif isinstance(exc, (BrokerNotRunningError, EndpointNotFoundError)):
        code = KafkaError._TRANSPORT
    else:
        code = KafkaError._FAIL
    return KafkaError(code, str(exc))


def _deadline(timeout: float | None) -> float | None:
    if timeout is None or timeout < 0:
        return None
    return time.monotonic() + timeout


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == 'true'
    return bool(value)


class InProcessMessage:
    """A consumed record or delivery report shaped like ``confluent_kafka.Message``."""

    def __init__(
        self,
        *,
        topic: str,
        partition: int | None = None,
        offset: int | None = None,
        key: Any = None,
        value: Any = None,
        timestamp: int = 0,
        headers: list[tuple[str, bytes]] | None = None,
        error: KafkaError | None = None,
    ):
        self._topic = topic
        self._partition = partition
        self._offset = offset
        self._key = key
        self._value = value
        self._timestamp = timestamp
        self._headers = headers
        self._error = error

    def error(self) -> KafkaError | None:
        return self._error

    def topic(self) -> str:
        return self._topic

    def partition(self) -> int | None:
        return self._partition

    def offset(self) -> int | None:
        return self._offset

    def key(self) -> Any:
        return self._key

    def value(self) -> Any:
        return self._value

    def timestamp(self) -> tuple[int, int]:
        return (TIMESTAMP_CREATE_TIME, self._timestamp)

    def headers(self) -> list[tuple[str, bytes]] | None:
        return self._headers

    def __repr__(self) -> str:
        return (
            f'InProcessMessage(topic={self._topic!r}, partition={self._partition}, '
            f'offset={self._offset}, error={self._error})'
        )


class _Connection:
    """Authenticated connection to whichever broker serves the bootstrap address."""

    def __init__(self, config: dict[str, Any]):
        if p.BOOTSTRAP_SERVERS not in config:
            raise KafkaException(
                KafkaError(KafkaError._INVALID_ARG, "bootstrap.servers is required")
            )
        self._bootstrap = config[p.BOOTSTRAP_SERVERS]
        self._protocol = str(config.get(p.SECURITY_PROTOCOL, 'PLAINTEXT')).upper()
        if self._protocol not in _PROTOCOL_LISTENERS:
            raise KafkaException(
                KafkaError(
                    KafkaError._INVALID_ARG,
                    f"Unsupported security.protocol {self._protocol}",
                )
            )
        self._mechanism = config.get(p.SASL_MECHANISM)
        self._username, self._password = p.credentials(config)
        self._client_id = config.get(p.CLIENT_ID, 'rdkafka')
        self._broker()

    @property
    def client_id(self) -> str:
        return self._client_id

    def _broker(self) -> InProcessBroker:
        try:
            endpoint = get_registry().resolve_any(self._bootstrap)
            if endpoint.kind is not _PROTOCOL_LISTENERS[self._protocol]:
                raise EndpointNotFoundError(
                    f"{self._bootstrap} does not accept {self._protocol} connections"
                )
            endpoint.broker.authenticate(
                security_protocol=self._protocol,
                mechanism=self._mechanism,
                username=self._username,
                password=self._password,
            )
        except (BrokerError, EndpointNotFoundError) as e:
            raise KafkaException(to_kafka_error(e)) from e
        return endpoint.broker

    def call(self, fn: Callable[[InProcessBroker], Any]) -> Any:
        broker = self._broker()
        try:
            return fn(broker)
        except BrokerError as e:
            raise KafkaException(to_kafka_error(e)) from e


class InProcessProducer:
    """
    Producer for in-process brokers.

    Delivery reports are queued and served by :meth:`poll` and :meth:`flush`,
    as with librdkafka.
    """

    def __init__(self, config: dict[str, Any]):
        self._config = dict(config)
        self._key_serializer = p.instantiate(config.get(p.KEY_SERIALIZER))
        self._value_serializer = p.instantiate(config.get(p.VALUE_SERIALIZER))
        self._connection = _Connection(self._config)
        self._reports: deque[tuple[Callable, KafkaError | None, InProcessMessage]] = (
            deque()
        )
        logger.debug(
            "in_process_producer_created", client_id=self._connection.client_id
        )

    def produce(
        self,
        topic: str,
        key: Any = None,
        value: Any = None,
        partition: int = -1,
        on_delivery: Callable | None = None,
        timestamp: int = 0,
        headers: list[tuple[str, bytes]] | None = None,
    ) -> None:
        key_bytes = self._serialize(self._key_serializer, key, topic, MessageField.KEY)
        value_bytes = self._serialize(
            self._value_serializer, value, topic, MessageField.VALUE
        )

        def on_complete(
            metadata: RecordMetadata | None, error: Exception | None
        ) -> None:
            if on_delivery is None:
                return
            if error is not None:
                message = InProcessMessage(
                    topic=topic,
                    key=key_bytes,
                    value=value_bytes,
                    error=to_kafka_error(error),
                )
                self._reports.append((on_delivery, message.error(), message))
            else:
                message = InProcessMessage(
                    topic=metadata.topic,
                    partition=metadata.partition,
                    offset=metadata.offset,
                    key=key_bytes,
                    value=value_bytes,
                    timestamp=metadata.timestamp,
                    headers=headers,
                )
                self._reports.append((on_delivery, None, message))

        self._connection.call(
            lambda broker: broker.produce_async(
                topic,
                on_complete,
                key=key_bytes,
                value=value_bytes,
                partition=None if partition < 0 else partition,
                headers=headers,
                timestamp=timestamp or None,
            )
        )

    def poll(self, timeout: float | None = None) -> int:
        """Serve queued delivery reports. Returns the number served."""
        served = 0
        while self._reports:
            callback, error, message = self._reports.popleft()
            callback(error, message)
            served += 1
        return served

    def flush(self, timeout: float | None = None) -> int:
        """Serve all delivery reports. Returns the number still outstanding."""
        self.poll(0)
        return len(self._reports)

    def __len__(self) -> int:
        return len(self._reports)

    @staticmethod
    def _serialize(serializer, obj: Any, topic: str, field: str) -> bytes | None:
        if serializer is None or obj is None:
            return obj
        return serializer(obj, SerializationContext(topic, field))


class InProcessConsumer:
    """
    Group consumer for in-process brokers.

    Partitions of all subscribed topics are assigned to this consumer. The start
    position of a partition is the group's committed offset or, without one, the
    position given by ``auto.offset.reset``. Commits without explicit offsets
    store the position after the last record returned by :meth:`poll`, not the
    fetch position, so prefetched records are redelivered to the group.
    """

    def __init__(self, config: dict[str, Any]):
        if p.GROUP_ID not in config:
            raise KafkaException(
                KafkaError(KafkaError._INVALID_ARG, "group.id is required")
            )
        self._config = dict(config)
        self._group = config[p.GROUP_ID]
        reset = str(config.get(p.AUTO_OFFSET_RESET, 'latest')).lower()
        if reset not in _EARLIEST | _LATEST:
            raise KafkaException(
                KafkaError(
                    KafkaError._INVALID_ARG, f"Invalid auto.offset.reset {reset}"
                )
            )
        self._reset_earliest = reset in _EARLIEST
        self._auto_commit = _as_bool(config.get(p.ENABLE_AUTO_COMMIT, True))
        self._auto_commit_interval = (
            int(config.get(p.AUTO_COMMIT_INTERVAL_MS, 5000)) / 1000
        )
        self._key_deserializer = p.instantiate(config.get(p.KEY_DESERIALIZER))
        self._value_deserializer = p.instantiate(config.get(p.VALUE_DESERIALIZER))
        self._connection = _Connection(self._config)
        self._subscription: list[str] = []
        # Next offset to fetch, and next offset after the last record returned.
        self._fetch_positions: dict[tuple[str, int], int] = {}
        self._positions: dict[tuple[str, int], int] = {}
        self._buffer: deque[InProcessMessage] = deque()
        self._last_commit = time.monotonic()
        self._closed = False
        logger.debug("in_process_consumer_created", group=self._group)

    def subscribe(self, topics: list[str]) -> None:
        self._check_open()
        self._subscription = list(topics)
        self._fetch_positions.clear()
        self._positions.clear()
        self._buffer.clear()

    def unsubscribe(self) -> None:
        self._check_open()
        self._subscription = []
        self._fetch_positions.clear()
        self._positions.clear()
        self._buffer.clear()

    def assignment(self) -> list[TopicPartition]:
        self._check_open()
        return [TopicPartition(t, part) for t, part in sorted(self._fetch_positions)]

    def position(self, partitions: list[TopicPartition]) -> list[TopicPartition]:
        self._check_open()
        return [
            TopicPartition(
                tp.topic,
                tp.partition,
                self._positions.get((tp.topic, tp.partition), OFFSET_INVALID),
            )
            for tp in partitions
        ]

    def get_watermark_offsets(
        self,
        partition: TopicPartition,
        timeout: float | None = None,
        cached: bool = False,
    ) -> tuple[int, int]:
        self._check_open()
        high = self._connection.call(
            lambda broker: broker.high_watermark(partition.topic, partition.partition)
        )
        return 0, high

    def poll(self, timeout: float | None = None) -> InProcessMessage | None:
        """Return the next record, or ``None`` if none arrives within ``timeout``."""
        self._check_open()
        deadline = _deadline(timeout)
        while True:
            if not self._buffer:
                self._fetch()
            self._maybe_auto_commit()
            if self._buffer:
                message = self._buffer.popleft()
                self._positions[(message.topic(), message.partition())] = (
                    message.offset() + 1
                )
                return message
            if deadline is not None and time.monotonic() >= deadline:
                return None
            time.sleep(_POLL_INTERVAL)

    def consume(
        self, num_messages: int = 1, timeout: float | None = None
    ) -> list[InProcessMessage]:
        self._check_open()
        deadline = _deadline(timeout)
        messages: list[InProcessMessage] = []
        while len(messages) < num_messages:
            remaining = (
                None if deadline is None else max(0.0, deadline - time.monotonic())
            )
            message = self.poll(remaining)
            if message is None:
                break
            messages.append(message)
        return messages

    def commit(
        self,
        message: InProcessMessage | None = None,
        offsets: list[TopicPartition] | None = None,
        asynchronous: bool = True,
    ) -> list[TopicPartition] | None:
        self._check_open()
        if message is not None:
            to_commit = {(message.topic(), message.partition()): message.offset() + 1}
        elif offsets is not None:
            to_commit = {(tp.topic, tp.partition): tp.offset for tp in offsets}
        else:
            to_commit = dict(self._positions)
        self._commit(to_commit)
        if asynchronous:
            return None
        return [
            TopicPartition(t, part, o) for (t, part), o in sorted(to_commit.items())
        ]

    def committed(
        self, partitions: list[TopicPartition], timeout: float | None = None
    ) -> list[TopicPartition]:
        self._check_open()
        result = []
        for tp in partitions:
            offset = self._connection.call(
                lambda broker, tp=tp: broker.committed_offset(
                    self._group, tp.topic, tp.partition
                )
            )
            result.append(
                TopicPartition(
                    tp.topic,
                    tp.partition,
                    OFFSET_INVALID if offset is None else offset,
                )
            )
        return result

    def close(self) -> None:
        """Commit positions when auto-commit is on and leave the group."""
        if self._closed:
            return
        try:
            if self._auto_commit and self._positions:
                self._commit(dict(self._positions))
        except KafkaException as e:
            logger.warning("final_commit_failed", group=self._group, error=str(e))
        finally:
            self._closed = True
            self._buffer.clear()
        logger.debug("in_process_consumer_closed", group=self._group)

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Consumer closed")

    def _commit(self, offsets: dict[tuple[str, int], int]) -> None:
        if not offsets:
            return
        self._connection.call(
            lambda broker: broker.commit_offsets(self._group, offsets)
        )
        self._last_commit = time.monotonic()

    def _maybe_auto_commit(self) -> None:
        if not self._auto_commit:
            return
        if time.monotonic() - self._last_commit < self._auto_commit_interval:
            return
        try:
            self._commit(dict(self._positions))
        except KafkaException as e:
            # librdkafka reports background commit failures without raising
            self._last_commit = time.monotonic()
            logger.warning("auto_commit_failed", group=self._group, error=str(e))

    def _fetch(self) -> None:
        for topic in self._subscription:
            try:
                count = self._connection.call(
                    lambda broker, topic=topic: broker.num_partitions(
                        topic, auto_create=True
                    )
                )
            except KafkaException as e:
                if e.args[0].code() != KafkaError.UNKNOWN_TOPIC_OR_PART:
                    raise
                logger.debug("subscribed_topic_missing", topic=topic)
                continue
            for partition in range(count):
                self._fetch_partition(topic, partition)

    def _fetch_partition(self, topic: str, partition: int) -> None:
        tp = (topic, partition)
        if tp not in self._fetch_positions:
            self._fetch_positions[tp] = self._start_position(topic, partition)
        records = self._connection.call(
            lambda broker: broker.fetch(
                topic, partition, self._fetch_positions[tp], _MAX_FETCH_RECORDS
            )
        )
        for record in records:
            self._buffer.append(
                InProcessMessage(
                    topic=topic,
                    partition=partition,
                    offset=record.offset,
                    key=self._deserialize(
                        self._key_deserializer, record.key, topic, MessageField.KEY
                    ),
                    value=self._deserialize(
                        self._value_deserializer,
                        record.value,
                        topic,
                        MessageField.VALUE,
                    ),
                    timestamp=record.timestamp,
                    headers=record.headers or None,
                )
            )
            self._fetch_positions[tp] = record.offset + 1

    def _start_position(self, topic: str, partition: int) -> int:
        committed = self._connection.call(
            lambda broker: broker.committed_offset(self._group, topic, partition)
            if broker.config.enable_group_coordinator
            else None
        )
        if committed is not None:
            return committed
        if self._reset_earliest:
            return 0
        return self._connection.call(
            lambda broker: broker.high_watermark(topic, partition)
        )

    @staticmethod
    def _deserialize(deserializer, data: bytes | None, topic: str, field: str) -> Any:
        if deserializer is None or data is None:
            return data
        return deserializer(data, SerializationContext(topic, field))
