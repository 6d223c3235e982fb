# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""
In-memory doubles of the broker's distributed dependencies.

NOT FOR PRODUCTION USE - these exist so broker tests need no live cluster.
"""

from .coordination import (
    BadVersionError,
    CoordinationStoreError,
    CreateMode,
    MockCoordinationStore,
    NodeExistsError,
    NoNodeError,
    NotEmptyError,
    StoreClosedError,
)
from .log_store import (
    LedgerClosedError,
    LedgerEntry,
    LogStoreClient,
    LogStoreError,
    MockLogStore,
    NonClosableLogStore,
    NoSuchLedgerError,
)

__all__ = [
    "BadVersionError",
    "CoordinationStoreError",
    "CreateMode",
    "LedgerClosedError",
    "LedgerEntry",
    "LogStoreClient",
    "LogStoreError",
    "MockCoordinationStore",
    "MockLogStore",
    "NoNodeError",
    "NoSuchLedgerError",
    "NodeExistsError",
    "NonClosableLogStore",
    "NotEmptyError",
    "StoreClosedError",
]
