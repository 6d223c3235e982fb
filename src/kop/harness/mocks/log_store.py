# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""In-memory double of the distributed log store (BookKeeper-style ledgers)."""

from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from typing import Any, Protocol

from .coordination import (
    AVAILABLE_BOOKIES_PATH,
    LAYOUT_PATH,
    MockCoordinationStore,
    StoreClosedError,
)

logger = logging.getLogger(__name__)


class LogStoreError(Exception):
    """Base class for errors raised by the log store."""


class NoSuchLedgerError(LogStoreError):
    def __init__(self, ledger_id: int):
        super().__init__(f"No such ledger: {ledger_id}")
        self.ledger_id = ledger_id


class LedgerClosedError(LogStoreError):
    def __init__(self, ledger_id: int):
        super().__init__(f"Ledger {ledger_id} is closed")
        self.ledger_id = ledger_id


@dataclass(frozen=True)
class LedgerEntry:
    ledger_id: int
    entry_id: int
    data: bytes


@dataclass
class _Ledger:
    metadata: dict[str, Any]
    entries: list[bytes] = field(default_factory=list)
    closed: bool = False


class LogStoreClient(Protocol):
    """The part of the log store a broker uses."""

    def create_ledger(self, metadata: dict[str, Any] | None = None) -> int: ...

    def write(self, ledger_id: int, data: bytes) -> int: ...

    def read(
        self, ledger_id: int, first: int = 0, last: int | None = None
    ) -> list[LedgerEntry]: ...

    def close(self) -> None: ...


class MockLogStore:
    """
    Thread-safe in-memory ledger store.

    Each ledger is an append-only list of entries. Entry ids are dense and start
    at 0. Background work (``async_write``) runs on the dedicated executor the
    store was created with, never on the caller's thread.

    Parameters
    ----------
    coordination:
        Coordination store holding the ledger layout and available bookies.
    executor:
        Executor for background work.
    """

    def __init__(self, coordination: MockCoordinationStore, executor: Executor):
        # Fails with NoNodeError if the coordination store has not been seeded.
        layout = coordination.get_data(LAYOUT_PATH)
        bookies = coordination.get_children(AVAILABLE_BOOKIES_PATH)
        if not bookies:
            raise LogStoreError("No bookies registered as available")
        self._coordination = coordination
        self._executor = executor
        self._ledgers: dict[int, _Ledger] = {}
        self._ids = itertools.count()
        self._lock = threading.RLock()
        self._closed = False
        logger.info(
            "Mock log store created (layout=%r, bookies=%s)", layout.decode(), bookies
        )

    @classmethod
    def create_instance(
        cls, coordination: MockCoordinationStore, executor: Executor
    ) -> MockLogStore:
        return cls(coordination, executor)

    @property
    def coordination(self) -> MockCoordinationStore:
        return self._coordination

    @property
    def is_closed(self) -> bool:
        return self._closed

    def create_ledger(self, metadata: dict[str, Any] | None = None) -> int:
        with self._lock:
            self._check_open()
            ledger_id = next(self._ids)
            self._ledgers[ledger_id] = _Ledger(metadata=dict(metadata or {}))
            logger.debug("Created ledger %d", ledger_id)
            return ledger_id

    def write(self, ledger_id: int, data: bytes) -> int:
        """Append an entry to a ledger. Returns the entry id."""
        with self._lock:
            self._check_open()
            ledger = self._get(ledger_id)
            if ledger.closed:
                raise LedgerClosedError(ledger_id)
            ledger.entries.append(bytes(data))
            return len(ledger.entries) - 1

    def async_write(self, ledger_id: int, data: bytes) -> Future[int]:
        self._check_open()
        return self._executor.submit(self.write, ledger_id, data)

    def read(
        self, ledger_id: int, first: int = 0, last: int | None = None
    ) -> list[LedgerEntry]:
        """Read entries ``first`` to ``last`` (inclusive, default: up to the end)."""
        if first < 0:
            raise ValueError(f"Invalid first entry id: {first}")
        with self._lock:
            self._check_open()
            entries = self._get(ledger_id).entries
            stop = len(entries) if last is None else min(last + 1, len(entries))
            return [
                LedgerEntry(ledger_id=ledger_id, entry_id=i, data=entries[i])
                for i in range(first, stop)
            ]

    def last_entry_id(self, ledger_id: int) -> int:
        """Id of the last entry, or -1 if the ledger is empty."""
        with self._lock:
            self._check_open()
            return len(self._get(ledger_id).entries) - 1

    def ledger_metadata(self, ledger_id: int) -> dict[str, Any]:
        with self._lock:
            self._check_open()
            return dict(self._get(ledger_id).metadata)

    def close_ledger(self, ledger_id: int) -> None:
        with self._lock:
            self._check_open()
            self._get(ledger_id).closed = True

    def delete_ledger(self, ledger_id: int) -> None:
        with self._lock:
            self._check_open()
            self._get(ledger_id)
            del self._ledgers[ledger_id]

    def ledgers(self) -> list[int]:
        with self._lock:
            self._check_open()
            return sorted(self._ledgers)

    def close(self) -> None:
        self.shutdown()

    def shutdown(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            ledger_count = len(self._ledgers)
            self._ledgers.clear()
        logger.info("Mock log store shut down (%d ledgers released)", ledger_count)

    def _get(self, ledger_id: int) -> _Ledger:
        ledger = self._ledgers.get(ledger_id)
        if ledger is None:
            raise NoSuchLedgerError(ledger_id)
        return ledger

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError("Mock log store has been shut down")


class NonClosableLogStore:
    """
    Log store handle that survives broker restarts.

    A broker closes its log-store client when it stops. This wrapper turns
    ``close`` and ``shutdown`` into no-ops so ledgers written before a restart
    are still readable afterwards. ``really_shutdown`` releases the wrapped store
    and is meant to be called once, at final cleanup.
    """

    def __init__(self, store: MockLogStore):
        self._store = store

    @property
    def store(self) -> MockLogStore:
        return self._store

    @property
    def is_closed(self) -> bool:
        return self._store.is_closed

    def create_ledger(self, metadata: dict[str, Any] | None = None) -> int:
        return self._store.create_ledger(metadata)

    def write(self, ledger_id: int, data: bytes) -> int:
        return self._store.write(ledger_id, data)

    def async_write(self, ledger_id: int, data: bytes) -> Future[int]:
        return self._store.async_write(ledger_id, data)

    def read(
        self, ledger_id: int, first: int = 0, last: int | None = None
    ) -> list[LedgerEntry]:
        return self._store.read(ledger_id, first, last)

    def last_entry_id(self, ledger_id: int) -> int:
        return self._store.last_entry_id(ledger_id)

    def ledger_metadata(self, ledger_id: int) -> dict[str, Any]:
        return self._store.ledger_metadata(ledger_id)

    def close_ledger(self, ledger_id: int) -> None:
        self._store.close_ledger(ledger_id)

    def delete_ledger(self, ledger_id: int) -> None:
        self._store.delete_ledger(ledger_id)

    def ledgers(self) -> list[int]:
        return self._store.ledgers()

    def close(self) -> None:
        logger.debug("Ignoring close() on non-closable log store")

    def shutdown(self) -> None:
        logger.debug("Ignoring shutdown() on non-closable log store")

    def really_shutdown(self) -> None:
        self._store.shutdown()
