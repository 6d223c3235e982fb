# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""
Minimal in-process Kafka-protocol broker backed by the injected stores.

The broker keeps no state of its own beyond caches. Record data lives in the log
store (one ledger per partition) and metadata (topics, partition ledgers, next
offsets, committed group offsets) lives in the coordination store. A new broker
started against the same stores therefore sees everything a previous instance
wrote.
"""

from __future__ import annotations

import re
import threading
import time
import zlib
from collections.abc import Callable
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field

from .config import HarnessConfig
from .mocks import CreateMode, MockCoordinationStore, NodeExistsError, NoNodeError
from .namespace import LookupResult, NamespaceService
from .registry import AddressInUseError, ListenerKind, get_registry
from .seams import BrokerSeams

logger = structlog.get_logger(__name__)

ADMIN_ROOT = '/admin'
TOPICS_PATH = f'{ADMIN_ROOT}/topics'
GROUPS_PATH = f'{ADMIN_ROOT}/groups'
CLUSTERS_PATH = f'{ADMIN_ROOT}/clusters'

_LEGAL_TOPIC = re.compile(r'^[a-zA-Z0-9._-]{1,249}$')

DeliveryCallback = Callable[['RecordMetadata | None', 'Exception | None'], None]


class BrokerError(Exception):
    """Base class for errors returned by the broker."""


class BrokerNotRunningError(BrokerError):
    pass


class UnknownTopicError(BrokerError):
    def __init__(self, topic: str):
        super().__init__(f"Unknown topic or partition: {topic}")
        self.topic = topic


class TopicExistsError(BrokerError):
    def __init__(self, topic: str):
        super().__init__(f"Topic already exists: {topic}")
        self.topic = topic


class InvalidTopicError(BrokerError):
    pass


class AuthenticationError(BrokerError):
    pass


class GroupCoordinatorNotAvailableError(BrokerError):
    pass


class StoredRecord(BaseModel):
    """A record as it is written to a ledger entry."""

    model_config = ConfigDict(
        frozen=True, ser_json_bytes='base64', val_json_bytes='base64'
    )

    offset: int
    timestamp: int
    key: bytes | None = None
    value: bytes | None = None
    headers: list[tuple[str, bytes]] = Field(default_factory=list)


class PartitionMetadata(BaseModel):
    ledger_id: int
    next_offset: int = 0


class TopicMetadata(BaseModel):
    partitions: list[PartitionMetadata]
    partitioned: bool = False


class RecordMetadata(BaseModel):
    """Acknowledgement for a produced record."""

    model_config = ConfigDict(frozen=True)

    topic: str
    partition: int
    offset: int
    timestamp: int


class Broker(Protocol):
    """What the harness needs from the broker under test."""

    compactor: Any

    @property
    def advertised_address(self) -> str: ...

    def start(self) -> None: ...

    def close(self) -> None: ...


BrokerFactory = Callable[[HarnessConfig, BrokerSeams], Broker]


class TopicCompactor:
    """
    Rewrites partitions so only the latest record per key remains.

    Records without a key are retained. Keys whose latest record has no value
    (tombstones) are removed entirely. Offsets of retained records do not change.
    """

    def __init__(self, broker: InProcessBroker):
        self._broker = broker

    def compact(self, topic: str) -> int:
        """Compact all partitions of ``topic``. Returns the number removed."""
        removed = 0
        for partition in range(self._broker.num_partitions(topic)):
            removed += self._broker.rewrite_partition(
                topic, partition, self._retain_latest
            )
        logger.info("topic_compacted", topic=topic, removed=removed)
        return removed

    @staticmethod
    def _retain_latest(records: list[StoredRecord]) -> list[StoredRecord]:
        latest: dict[bytes, int] = {}
        for record in records:
            if record.key is not None:
                latest[record.key] = record.offset
        return [
            record
            for record in records
            if record.key is None
            or (latest[record.key] == record.offset and record.value is not None)
        ]


class InProcessBroker:
    """
    Broker that speaks the client-facing operations of the Kafka protocol
    in-process.

    All dependencies come from ``seams``. They are requested in :meth:`start`,
    never in the constructor, and the broker releases them in :meth:`close`
    through the same interfaces.

    Parameters
    ----------
    config:
        Immutable broker configuration.
    seams:
        Factories and executors the broker uses instead of creating its own.
    """

    def __init__(self, config: HarnessConfig, seams: BrokerSeams):
        self._config = config
        self._seams = seams
        self._coordination: MockCoordinationStore | None = None
        self._log_store: Any = None
        self._namespace_service: NamespaceService | None = None
        self._running = False
        self._round_robin: dict[str, int] = {}
        self._lock = threading.RLock()
        self.compactor: Any = None

    @property
    def config(self) -> HarnessConfig:
        return self._config

    @property
    def advertised_address(self) -> str:
        return self._config.advertised_address

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def coordination(self) -> MockCoordinationStore:
        self._check_running()
        return self._coordination

    @property
    def log_store(self) -> Any:
        self._check_running()
        return self._log_store

    @property
    def namespace_service(self) -> NamespaceService:
        self._check_running()
        return self._namespace_service

    @property
    def ordered_executor(self):
        return self._seams.ordered_executor

    def start(self) -> None:
        if self._running:
            raise BrokerError("Broker is already running")
        config = self._config
        self._coordination = self._seams.coordination_client_factory.create(
            config.zookeeper_servers
        )
        self._log_store = self._seams.log_store_client_factory.create(
            config, self._coordination
        )
        self._namespace_service = self._seams.namespace_service_provider(self)
        for path in (
            f'{CLUSTERS_PATH}/{config.cluster_name}',
            TOPICS_PATH,
            GROUPS_PATH,
        ):
            if not self._coordination.exists(path):
                self._coordination.create_full_path_optimistic(
                    path, b'', acl=[], mode=CreateMode.PERSISTENT
                )
        self.compactor = TopicCompactor(self)
        self._register_listeners()
        self._running = True
        logger.info(
            "broker_started",
            cluster=config.cluster_name,
            listeners=config.listeners,
            topics=len(self._coordination.get_children(TOPICS_PATH)),
        )

    def _register_listeners(self) -> None:
        config = self._config
        host = config.advertised_address
        registry = get_registry()
        listeners = [
            (f'{host}:{config.kafka_broker_port}', ListenerKind.PLAINTEXT),
            (f'{host}:{config.kafka_broker_port_tls}', ListenerKind.SSL),
            (f'{host}:{config.web_service_port}', ListenerKind.WEB),
            (f'{host}:{config.web_service_port_tls}', ListenerKind.WEB_TLS),
            (f'{host}:{config.broker_service_port}', ListenerKind.BROKER),
        ]
        try:
            for address, kind in listeners:
                registry.register(address, self, kind)
        except AddressInUseError:
            registry.unregister_all(self)
            raise

    def close(self) -> None:
        """Stop serving and release the injected clients. Safe to call twice."""
        if not self._running:
            return
        self._running = False
        get_registry().unregister_all(self)
        self._log_store.close()
        self._seams.log_store_client_factory.close()
        logger.info("broker_closed", cluster=self._config.cluster_name)

    def authenticate(
        self,
        *,
        security_protocol: str = 'PLAINTEXT',
        mechanism: str | None = None,
        username: str | None = None,
        password: str | None = None,
    ) -> str:
        """Authenticate a client connection. Returns the principal name."""
        self._check_running()
        if not self._config.authentication_enabled:
            return username or 'anonymous'
        if not security_protocol.startswith('SASL_') or mechanism != 'PLAIN':
            raise AuthenticationError(
                f"Authentication required, got {security_protocol}/{mechanism}"
            )
        expected = self._config.sasl_users.get(username or '')
        if expected is None or expected != password:
            raise AuthenticationError(f"Authentication failed for user {username!r}")
        return username

    def lookup(self, topic: str) -> LookupResult:
        self._check_running()
        return self._namespace_service.lookup(topic)

    # Topic administration

    def list_topics(self) -> list[str]:
        self._check_running()
        return self._coordination.get_children(TOPICS_PATH)

    def create_topic(self, topic: str, num_partitions: int | None = None) -> None:
        self._check_running()
        if not _LEGAL_TOPIC.match(topic):
            raise InvalidTopicError(f"Illegal topic name: {topic!r}")
        partitioned = num_partitions is not None
        count = num_partitions if partitioned else 1
        if count < 1:
            raise ValueError(f"Number of partitions must be positive, got {count}")
        with self._lock:
            partitions = [
                PartitionMetadata(
                    ledger_id=self._log_store.create_ledger(
                        {'topic': topic, 'partition': p}
                    )
                )
                for p in range(count)
            ]
            metadata = TopicMetadata(partitions=partitions, partitioned=partitioned)
            try:
                self._coordination.create(
                    self._topic_path(topic),
                    metadata.model_dump_json().encode(),
                    acl=[],
                    mode=CreateMode.PERSISTENT,
                )
            except NodeExistsError:
                for partition in partitions:
                    self._log_store.delete_ledger(partition.ledger_id)
                raise TopicExistsError(topic) from None
        logger.info("topic_created", topic=topic, partitions=count)

    def delete_topic(self, topic: str) -> None:
        self._check_running()
        with self._lock:
            metadata = self._topic_metadata(topic)
            self._coordination.delete(self._topic_path(topic))
            for partition in metadata.partitions:
                self._log_store.delete_ledger(partition.ledger_id)
        logger.info("topic_deleted", topic=topic)

    def num_partitions(self, topic: str, *, auto_create: bool = False) -> int:
        self._check_running()
        with self._lock:
            if auto_create:
                self._ensure_topic(topic)
            return len(self._topic_metadata(topic).partitions)

    def topic_stats(self, topic: str) -> dict[str, Any]:
        self._check_running()
        metadata = self._topic_metadata(topic)
        return {
            'partitioned': metadata.partitioned,
            'partitions': [
                {
                    'partition': index,
                    'ledger_id': partition.ledger_id,
                    'high_watermark': partition.next_offset,
                    'stored_records': self._log_store.last_entry_id(
                        partition.ledger_id
                    )
                    + 1,
                }
                for index, partition in enumerate(metadata.partitions)
            ],
        }

    # Produce / fetch

    def produce(
        self,
        topic: str,
        *,
        key: bytes | None = None,
        value: bytes | None = None,
        partition: int | None = None,
        headers: list[tuple[str, bytes]] | None = None,
        timestamp: int | None = None,
    ) -> RecordMetadata:
        """Append a record and return its metadata."""
        self._check_running()
        with self._lock:
            self._ensure_topic(topic)
            metadata = self._topic_metadata(topic)
            index = self._select_partition(topic, metadata, key, partition)
            target = metadata.partitions[index]
            record = StoredRecord(
                offset=target.next_offset,
                timestamp=timestamp if timestamp is not None else _now_ms(),
                key=key,
                value=value,
                headers=list(headers or []),
            )
            self._log_store.write(target.ledger_id, record.model_dump_json().encode())
            target.next_offset += 1
            self._store_topic_metadata(topic, metadata)
        return RecordMetadata(
            topic=topic,
            partition=index,
            offset=record.offset,
            timestamp=record.timestamp,
        )

    def produce_async(
        self, topic: str, callback: DeliveryCallback, **kwargs: Any
    ) -> None:
        """
        Append a record and report the result through ``callback``.

        Callbacks for the same partition are delivered in order on the ordered
        executor. Exactly one of the callback arguments is not ``None``.
        """
        ordering_key = (topic, kwargs.get('partition'))

        def task() -> None:
            try:
                result = self.produce(topic, **kwargs)
            except Exception as e:
                callback(None, e)
            else:
                callback(result, None)

        self._seams.ordered_executor.execute_ordered(ordering_key, task)

    def fetch(
        self, topic: str, partition: int, offset: int, max_records: int = 500
    ) -> list[StoredRecord]:
        """Records of a partition with an offset of at least ``offset``."""
        self._check_running()
        with self._lock:
            metadata = self._topic_metadata(topic)
            ledger_id = self._partition(metadata, topic, partition).ledger_id
            records = [
                StoredRecord.model_validate_json(entry.data)
                for entry in self._log_store.read(ledger_id)
            ]
        return [r for r in records if r.offset >= offset][:max_records]

    def high_watermark(self, topic: str, partition: int) -> int:
        self._check_running()
        metadata = self._topic_metadata(topic)
        return self._partition(metadata, topic, partition).next_offset

    def rewrite_partition(
        self,
        topic: str,
        partition: int,
        retain: Callable[[list[StoredRecord]], list[StoredRecord]],
    ) -> int:
        """Replace a partition's ledger by the records ``retain`` keeps."""
        self._check_running()
        with self._lock:
            metadata = self._topic_metadata(topic)
            target = self._partition(metadata, topic, partition)
            records = [
                StoredRecord.model_validate_json(entry.data)
                for entry in self._log_store.read(target.ledger_id)
            ]
            kept = retain(records)
            new_ledger = self._log_store.create_ledger(
                {'topic': topic, 'partition': partition}
            )
            for record in kept:
                self._log_store.write(new_ledger, record.model_dump_json().encode())
            old_ledger = target.ledger_id
            target.ledger_id = new_ledger
            self._store_topic_metadata(topic, metadata)
            self._log_store.delete_ledger(old_ledger)
        return len(records) - len(kept)

    # Group coordination

    def commit_offsets(self, group: str, offsets: dict[tuple[str, int], int]) -> None:
        self._check_group_coordinator()
        path = self._group_path(group)
        with self._lock:
            committed = self._load_group(group)
            committed.update({f'{t}:{p}': o for (t, p), o in offsets.items()})
            payload = _encode_offsets(committed)
            if self._coordination.exists(path):
                self._coordination.set_data(path, payload)
            else:
                self._coordination.create(
                    path, payload, acl=[], mode=CreateMode.PERSISTENT
                )
        logger.debug("offsets_committed", group=group, offsets=len(offsets))

    def committed_offset(self, group: str, topic: str, partition: int) -> int | None:
        self._check_group_coordinator()
        with self._lock:
            return self._load_group(group).get(f'{topic}:{partition}')

    # Internals

    def _check_running(self) -> None:
        if not self._running:
            raise BrokerNotRunningError("Broker is not running")

    def _check_group_coordinator(self) -> None:
        self._check_running()
        if not self._config.enable_group_coordinator:
            raise GroupCoordinatorNotAvailableError("Group coordinator is disabled")

    @staticmethod
    def _topic_path(topic: str) -> str:
        return f'{TOPICS_PATH}/{topic}'

    @staticmethod
    def _group_path(group: str) -> str:
        return f'{GROUPS_PATH}/{group}'

    def _topic_metadata(self, topic: str) -> TopicMetadata:
        try:
            data = self._coordination.get_data(self._topic_path(topic))
        except NoNodeError:
            raise UnknownTopicError(topic) from None
        return TopicMetadata.model_validate_json(data)

    def _store_topic_metadata(self, topic: str, metadata: TopicMetadata) -> None:
        self._coordination.set_data(
            self._topic_path(topic), metadata.model_dump_json().encode()
        )

    def _ensure_topic(self, topic: str) -> None:
        if self._coordination.exists(self._topic_path(topic)):
            return
        if not self._config.allow_auto_topic_creation:
            raise UnknownTopicError(topic)
        if self._config.allow_auto_topic_creation_type == 'partitioned':
            self.create_topic(topic, self._config.default_num_partitions)
        else:
            self.create_topic(topic)

    @staticmethod
    def _partition(
        metadata: TopicMetadata, topic: str, partition: int
    ) -> PartitionMetadata:
        if not 0 <= partition < len(metadata.partitions):
            raise UnknownTopicError(f'{topic}-{partition}')
        return metadata.partitions[partition]

    def _select_partition(
        self,
        topic: str,
        metadata: TopicMetadata,
        key: bytes | None,
        partition: int | None,
    ) -> int:
        count = len(metadata.partitions)
        if partition is not None:
            self._partition(metadata, topic, partition)
            return partition
        if key is not None:
            return zlib.crc32(key) % count
        index = self._round_robin.get(topic, 0)
        self._round_robin[topic] = index + 1
        return index % count

    def _load_group(self, group: str) -> dict[str, int]:
        try:
            data = self._coordination.get_data(self._group_path(group))
        except NoNodeError:
            return {}
        return _decode_offsets(data)


class _GroupOffsets(BaseModel):
    offsets: dict[str, int]


def _encode_offsets(offsets: dict[str, int]) -> bytes:
    return _GroupOffsets(offsets=offsets).model_dump_json().encode()


def _decode_offsets(data: bytes) -> dict[str, int]:
    return _GroupOffsets.model_validate_json(data).offsets


def _now_ms() -> int:
    return int(time.time() * 1000)
