# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""
Configuration of a mock-backed broker started by the harness.

The configuration is immutable. A broker is started with one configuration value
and keeps it for its whole life; tests that need different settings derive a new
value with :meth:`HarnessConfig.with_overrides` and pass it to ``start_broker``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from importlib import resources
from types import MappingProxyType
from typing import Any, Literal, Self

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .ports import next_free_port

ADVERTISED_ADDRESS_ENV_VAR = 'KOP_HARNESS_ADVERTISED_ADDRESS'
PLAINTEXT_PREFIX = 'PLAINTEXT://'
SSL_PREFIX = 'SSL://'


@dataclass(frozen=True)
class HarnessPorts:
    """The five ports owned by one harness instance."""

    broker_service_port: int
    web_service_port: int
    web_service_port_tls: int
    kafka_broker_port: int
    kafka_broker_port_tls: int

    @classmethod
    def allocate(cls) -> HarnessPorts:
        return cls(
            web_service_port=next_free_port(),
            web_service_port_tls=next_free_port(),
            broker_service_port=next_free_port(),
            kafka_broker_port=next_free_port(),
            kafka_broker_port_tls=next_free_port(),
        )


class HarnessConfig(BaseModel):
    """
    Broker configuration used by the harness.

    Parameters
    ----------
    broker_service_port:
        Port of the broker's native protocol.
    web_service_port:
        Port of the administrative web service.
    web_service_port_tls:
        Port of the administrative web service over TLS.
    kafka_broker_port:
        Port of the plaintext Kafka listener.
    kafka_broker_port_tls:
        Port of the TLS Kafka listener.
    advertised_address:
        Hostname the broker advertises to clients.
    cluster_name:
        Name of the cluster the broker belongs to.
    """

    model_config = ConfigDict(frozen=True, extra='forbid')

    broker_service_port: int
    web_service_port: int
    web_service_port_tls: int
    kafka_broker_port: int
    kafka_broker_port_tls: int

    advertised_address: str = 'localhost'
    cluster_name: str = 'test'
    zookeeper_servers: str = 'localhost:2181'
    configuration_store_servers: str = 'localhost:3181'

    managed_ledger_cache_size_mb: int = Field(default=8, ge=0)
    active_consumer_failover_delay_time_millis: int = Field(default=0, ge=0)
    default_number_of_namespace_bundles: int = Field(default=1, ge=1)
    enable_group_coordinator: bool = True
    offsets_topic_num_partitions: int = Field(default=1, ge=1)
    authentication_enabled: bool = False
    authorization_enabled: bool = False
    allow_auto_topic_creation: bool = True
    allow_auto_topic_creation_type: Literal['non-partitioned', 'partitioned'] = (
        'non-partitioned'
    )
    default_num_partitions: int = Field(default=1, ge=1)
    broker_delete_inactive_topics_enabled: bool = False
    sasl_users: Mapping[str, str] = Field(default_factory=dict, validate_default=True)

    @field_validator('sasl_users')
    @classmethod
    def _freeze_sasl_users(cls, users: Mapping[str, str]) -> Mapping[str, str]:
        return MappingProxyType(dict(users))

    @field_serializer('sasl_users')
    def _dump_sasl_users(self, users: Mapping[str, str]) -> dict[str, str]:
        return dict(users)

    @property
    def listeners(self) -> str:
        return (
            f'{PLAINTEXT_PREFIX}{self.advertised_address}:{self.kafka_broker_port},'
            f'{SSL_PREFIX}{self.advertised_address}:{self.kafka_broker_port_tls}'
        )

    @property
    def ports(self) -> HarnessPorts:
        return HarnessPorts(
            broker_service_port=self.broker_service_port,
            web_service_port=self.web_service_port,
            web_service_port_tls=self.web_service_port_tls,
            kafka_broker_port=self.kafka_broker_port,
            kafka_broker_port_tls=self.kafka_broker_port_tls,
        )

    def with_overrides(self, **changes: Any) -> Self:
        """Return a validated copy with ``changes`` applied."""
        return self.model_validate({**self.model_dump(), **changes})


def load_defaults() -> dict[str, Any]:
    """Load the packaged default settings."""
    with resources.files('kop.harness').joinpath('defaults.yaml').open() as f:
        defaults = yaml.safe_load(f) or {}
    advertised = os.getenv(ADVERTISED_ADDRESS_ENV_VAR)
    if advertised:
        defaults['advertised_address'] = advertised
    return defaults


def make_default_config(ports: HarnessPorts) -> HarnessConfig:
    """Default configuration for a harness owning ``ports``."""
    return HarnessConfig(
        **load_defaults(),
        broker_service_port=ports.broker_service_port,
        web_service_port=ports.web_service_port,
        web_service_port_tls=ports.web_service_port_tls,
        kafka_broker_port=ports.kafka_broker_port,
        kafka_broker_port_tls=ports.kafka_broker_port_tls,
    )
