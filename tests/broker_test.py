# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
import pytest

from kop.harness.broker import (
    TOPICS_PATH,
    AuthenticationError,
    BrokerError,
    BrokerNotRunningError,
    GroupCoordinatorNotAvailableError,
    InProcessBroker,
    InvalidTopicError,
    RecordMetadata,
    TopicExistsError,
    UnknownTopicError,
)
from kop.harness.config import HarnessConfig
from kop.harness.registry import AddressInUseError, ListenerKind, get_registry
from kop.harness.seams import BrokerSeams


class TestLifecycle:
    def test_start_registers_all_listeners(self, broker: InProcessBroker) -> None:
        config = broker.config
        registry = get_registry()
        expected = {
            config.kafka_broker_port: ListenerKind.PLAINTEXT,
            config.kafka_broker_port_tls: ListenerKind.SSL,
            config.web_service_port: ListenerKind.WEB,
            config.web_service_port_tls: ListenerKind.WEB_TLS,
            config.broker_service_port: ListenerKind.BROKER,
        }
        for port, kind in expected.items():
            endpoint = registry.resolve(f'localhost:{port}')
            assert endpoint.broker is broker
            assert endpoint.kind is kind

    def test_close_unregisters_and_is_idempotent(
        self, broker: InProcessBroker
    ) -> None:
        port = broker.config.kafka_broker_port
        broker.close()
        broker.close()
        assert not broker.is_running
        assert get_registry().lookup(f'localhost:{port}') is None

    def test_close_does_not_release_shared_log_store(
        self, broker: InProcessBroker, seams: BrokerSeams
    ) -> None:
        broker.close()
        assert not seams.log_store_client_factory.store.is_closed

    def test_operations_fail_when_not_running(self, broker: InProcessBroker) -> None:
        broker.close()
        with pytest.raises(BrokerNotRunningError):
            broker.list_topics()

    def test_start_twice_raises(self, broker: InProcessBroker) -> None:
        with pytest.raises(BrokerError, match='already running'):
            broker.start()

    def test_second_broker_on_same_ports_fails_cleanly(
        self, broker: InProcessBroker, seams: BrokerSeams
    ) -> None:
        other = InProcessBroker(broker.config, seams)
        with pytest.raises(AddressInUseError):
            other.start()
        assert not other.is_running
        port = broker.config.kafka_broker_port
        assert get_registry().resolve(f'localhost:{port}').broker is broker

    def test_metadata_paths_are_created(self, broker: InProcessBroker) -> None:
        assert broker.coordination.exists(TOPICS_PATH)
        assert broker.coordination.exists('/admin/clusters/test')


class TestTopics:
    def test_create_and_list(self, broker: InProcessBroker) -> None:
        broker.create_topic('b')
        broker.create_topic('a', num_partitions=3)
        assert broker.list_topics() == ['a', 'b']
        assert broker.num_partitions('a') == 3
        assert broker.num_partitions('b') == 1

    def test_create_existing_raises_and_keeps_ledgers_clean(
        self, broker: InProcessBroker
    ) -> None:
        broker.create_topic('t')
        ledgers = broker.log_store.ledgers()
        with pytest.raises(TopicExistsError):
            broker.create_topic('t', num_partitions=2)
        assert broker.log_store.ledgers() == ledgers

    @pytest.mark.parametrize('name', ['', 'has space', 'a/b'])
    def test_illegal_names_are_rejected(
        self, broker: InProcessBroker, name: str
    ) -> None:
        with pytest.raises(InvalidTopicError):
            broker.create_topic(name)

    def test_delete_removes_topic_and_ledgers(self, broker: InProcessBroker) -> None:
        broker.create_topic('t', num_partitions=2)
        broker.delete_topic('t')
        assert broker.list_topics() == []
        assert broker.log_store.ledgers() == []

    def test_delete_unknown_raises(self, broker: InProcessBroker) -> None:
        with pytest.raises(UnknownTopicError):
            broker.delete_topic('missing')

    def test_topic_stats(self, broker: InProcessBroker) -> None:
        broker.produce('t', value=b'1')
        broker.produce('t', value=b'2')
        stats = broker.topic_stats('t')
        assert not stats['partitioned']
        [partition] = stats['partitions']
        assert partition['high_watermark'] == 2
        assert partition['stored_records'] == 2


class TestProduceFetch:
    def test_produce_auto_creates_topic(self, broker: InProcessBroker) -> None:
        metadata = broker.produce('new', key=b'k', value=b'v')
        assert metadata == RecordMetadata(
            topic='new', partition=0, offset=0, timestamp=metadata.timestamp
        )
        assert broker.list_topics() == ['new']

    def test_auto_creation_can_be_disabled(
        self, broker_config: HarnessConfig, seams: BrokerSeams
    ) -> None:
        config = broker_config.with_overrides(allow_auto_topic_creation=False)
        broker = InProcessBroker(config, seams)
        broker.start()
        try:
            with pytest.raises(UnknownTopicError):
                broker.produce('t', value=b'v')
        finally:
            broker.close()

    def test_partitioned_auto_creation(
        self, broker_config: HarnessConfig, seams: BrokerSeams
    ) -> None:
        config = broker_config.with_overrides(
            allow_auto_topic_creation_type='partitioned', default_num_partitions=4
        )
        broker = InProcessBroker(config, seams)
        broker.start()
        try:
            broker.produce('t', value=b'v')
            assert broker.num_partitions('t') == 4
        finally:
            broker.close()

    def test_offsets_are_sequential_per_partition(
        self, broker: InProcessBroker
    ) -> None:
        offsets = [broker.produce('t', value=bytes([i])).offset for i in range(3)]
        assert offsets == [0, 1, 2]
        assert broker.high_watermark('t', 0) == 3

    def test_fetch_returns_records_from_offset(self, broker: InProcessBroker) -> None:
        for i in range(5):
            broker.produce('t', key=b'k', value=bytes([i]), headers=[('h', b'x')])
        records = broker.fetch('t', 0, 2)
        assert [r.offset for r in records] == [2, 3, 4]
        assert records[0].value == bytes([2])
        assert records[0].headers == [('h', b'x')]
        assert len(broker.fetch('t', 0, 0, max_records=2)) == 2

    def test_same_key_goes_to_same_partition(self, broker: InProcessBroker) -> None:
        broker.create_topic('t', num_partitions=4)
        partitions = {broker.produce('t', key=b'key', value=b'v').partition}
        partitions |= {broker.produce('t', key=b'key', value=b'w').partition}
        assert len(partitions) == 1

    def test_keyless_records_are_spread(self, broker: InProcessBroker) -> None:
        broker.create_topic('t', num_partitions=2)
        partitions = [broker.produce('t', value=b'v').partition for _ in range(4)]
        assert partitions == [0, 1, 0, 1]

    def test_explicit_partition_out_of_range(self, broker: InProcessBroker) -> None:
        broker.create_topic('t', num_partitions=2)
        with pytest.raises(UnknownTopicError):
            broker.produce('t', value=b'v', partition=2)

    def test_produce_async_completes_on_calling_thread(
        self, broker: InProcessBroker
    ) -> None:
        results = []
        broker.produce_async('t', lambda m, e: results.append((m, e)), value=b'v')
        [(metadata, error)] = results
        assert error is None
        assert metadata.offset == 0

    def test_produce_async_reports_failure(self, broker: InProcessBroker) -> None:
        broker.create_topic('t')
        results = []
        broker.produce_async(
            't', lambda m, e: results.append((m, e)), value=b'v', partition=5
        )
        [(metadata, error)] = results
        assert metadata is None
        assert isinstance(error, UnknownTopicError)


class TestCompaction:
    def test_keeps_latest_record_per_key(self, broker: InProcessBroker) -> None:
        broker.produce('t', key=b'a', value=b'1')
        broker.produce('t', key=b'b', value=b'1')
        broker.produce('t', key=b'a', value=b'2')
        broker.produce('t', value=b'no-key')
        removed = broker.compactor.compact('t')
        assert removed == 1
        records = broker.fetch('t', 0, 0)
        assert [(r.offset, r.key, r.value) for r in records] == [
            (1, b'b', b'1'),
            (2, b'a', b'2'),
            (3, None, b'no-key'),
        ]

    def test_tombstones_remove_key(self, broker: InProcessBroker) -> None:
        broker.produce('t', key=b'a', value=b'1')
        broker.produce('t', key=b'a', value=None)
        assert broker.compactor.compact('t') == 2
        assert broker.fetch('t', 0, 0) == []
        assert broker.high_watermark('t', 0) == 2


class TestAuthentication:
    def test_anyone_is_accepted_when_disabled(self, broker: InProcessBroker) -> None:
        assert broker.authenticate() == 'anonymous'
        assert broker.authenticate(username='alice') == 'alice'

    @pytest.fixture
    def secured(
        self, broker_config: HarnessConfig, seams: BrokerSeams
    ) -> InProcessBroker:
        config = broker_config.with_overrides(
            authentication_enabled=True, sasl_users={'alice': 'secret'}
        )
        broker = InProcessBroker(config, seams)
        broker.start()
        yield broker
        broker.close()

    def test_valid_plain_credentials(self, secured: InProcessBroker) -> None:
        principal = secured.authenticate(
            security_protocol='SASL_PLAINTEXT',
            mechanism='PLAIN',
            username='alice',
            password='secret',
        )
        assert principal == 'alice'

    def test_wrong_password_is_rejected(self, secured: InProcessBroker) -> None:
        with pytest.raises(AuthenticationError):
            secured.authenticate(
                security_protocol='SASL_PLAINTEXT',
                mechanism='PLAIN',
                username='alice',
                password='wrong',
            )

    def test_plaintext_is_rejected(self, secured: InProcessBroker) -> None:
        with pytest.raises(AuthenticationError, match='required'):
            secured.authenticate(security_protocol='PLAINTEXT')

    def test_users_of_running_broker_cannot_be_added(
        self, secured: InProcessBroker
    ) -> None:
        with pytest.raises(TypeError):
            secured.config.sasl_users['mallory'] = 'pw'
        with pytest.raises(AuthenticationError):
            secured.authenticate(
                security_protocol='SASL_PLAINTEXT',
                mechanism='PLAIN',
                username='mallory',
                password='pw',
            )


class TestGroupOffsets:
    def test_commit_and_read_back(self, broker: InProcessBroker) -> None:
        assert broker.committed_offset('g', 't', 0) is None
        broker.commit_offsets('g', {('t', 0): 5, ('t', 1): 2})
        broker.commit_offsets('g', {('t', 0): 7})
        assert broker.committed_offset('g', 't', 0) == 7
        assert broker.committed_offset('g', 't', 1) == 2
        assert broker.committed_offset('other', 't', 0) is None

    def test_offsets_survive_broker_replacement(
        self, broker: InProcessBroker, seams: BrokerSeams
    ) -> None:
        broker.commit_offsets('g', {('t', 0): 3})
        config = broker.config
        broker.close()
        successor = InProcessBroker(config, seams)
        successor.start()
        try:
            assert successor.committed_offset('g', 't', 0) == 3
        finally:
            successor.close()

    def test_disabled_group_coordinator(
        self, broker_config: HarnessConfig, seams: BrokerSeams
    ) -> None:
        config = broker_config.with_overrides(enable_group_coordinator=False)
        broker = InProcessBroker(config, seams)
        broker.start()
        try:
            with pytest.raises(GroupCoordinatorNotAvailableError):
                broker.commit_offsets('g', {('t', 0): 1})
        finally:
            broker.close()


def test_records_survive_broker_replacement(
    broker: InProcessBroker, seams: BrokerSeams
) -> None:
    broker.produce('t', key=b'k', value=b'before')
    config = broker.config
    broker.close()
    successor = InProcessBroker(config, seams)
    successor.start()
    try:
        successor.produce('t', key=b'k', value=b'after')
        assert [r.value for r in successor.fetch('t', 0, 0)] == [b'before', b'after']
    finally:
        successor.close()
