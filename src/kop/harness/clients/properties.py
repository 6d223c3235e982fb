# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""Client property names and builders shared by the producer and consumer drivers."""

from __future__ import annotations

import importlib
import re
from typing import Any

BOOTSTRAP_SERVERS = 'bootstrap.servers'
CLIENT_ID = 'client.id'
KEY_SERIALIZER = 'key.serializer'
VALUE_SERIALIZER = 'value.serializer'
KEY_DESERIALIZER = 'key.deserializer'
VALUE_DESERIALIZER = 'value.deserializer'
GROUP_ID = 'group.id'
AUTO_OFFSET_RESET = 'auto.offset.reset'
ENABLE_AUTO_COMMIT = 'enable.auto.commit'
AUTO_COMMIT_INTERVAL_MS = 'auto.commit.interval.ms'
SESSION_TIMEOUT_MS = 'session.timeout.ms'
SECURITY_PROTOCOL = 'security.protocol'
SASL_MECHANISM = 'sasl.mechanism'
SASL_JAAS_CONFIG = 'sasl.jaas.config'
SASL_USERNAME = 'sasl.username'
SASL_PASSWORD = 'sasl.password'
SSL_TRUSTSTORE_LOCATION = 'ssl.truststore.location'
SSL_TRUSTSTORE_PASSWORD = 'ssl.truststore.password'
SSL_ENDPOINT_IDENTIFICATION_ALGORITHM = 'ssl.endpoint.identification.algorithm'

INTEGER_SERIALIZER = 'kop.harness.codec.IntegerSerializer'
INTEGER_DESERIALIZER = 'kop.harness.codec.IntegerDeserializer'
STRING_SERIALIZER = 'confluent_kafka.serialization.StringSerializer'
STRING_DESERIALIZER = 'confluent_kafka.serialization.StringDeserializer'

_JAAS_TEMPLATE = (
    'org.apache.kafka.common.security.plain.PlainLoginModule '
    'required username="{username}" password="{password}";'
)
_JAAS_USERNAME = re.compile(r'username="([^"]*)"')
_JAAS_PASSWORD = re.compile(r'password="([^"]*)"')


def plain_jaas_config(username: str, password: str) -> str:
    """JAAS configuration for the SASL/PLAIN login module."""
    return _JAAS_TEMPLATE.format(username=username, password=password)


def parse_jaas_credentials(jaas_config: str) -> tuple[str | None, str | None]:
    """Extract username and password from a PLAIN login module JAAS string."""
    username = _JAAS_USERNAME.search(jaas_config)
    password = _JAAS_PASSWORD.search(jaas_config)
    return (
        username.group(1) if username else None,
        password.group(1) if password else None,
    )


def sasl_properties(username: str | None, password: str | None) -> dict[str, Any]:
    """SASL/PLAIN properties, or nothing unless both credentials are given."""
    if username is None or password is None:
        return {}
    return {
        SASL_JAAS_CONFIG: plain_jaas_config(username, password),
        SECURITY_PROTOCOL: 'SASL_PLAINTEXT',
        SASL_MECHANISM: 'PLAIN',
    }


def credentials(props: dict[str, Any]) -> tuple[str | None, str | None]:
    """Credentials carried by client properties in either notation."""
    if SASL_JAAS_CONFIG in props:
        return parse_jaas_credentials(props[SASL_JAAS_CONFIG])
    return props.get(SASL_USERNAME), props.get(SASL_PASSWORD)


def instantiate(codec: Any) -> Any:
    """
    Turn a codec reference into a codec instance.

    ``codec`` may be a dotted class name, a class, or an instance, which is
    returned unchanged. ``None`` stays ``None``.
    """
    if codec is None:
        return None
    if isinstance(codec, str):
        module_name, _, class_name = codec.rpartition('.')
        if not module_name:
            raise ValueError(f"Not a dotted class name: {codec!r}")
        codec = getattr(importlib.import_module(module_name), class_name)
    if isinstance(codec, type):
        return codec()
    return codec
