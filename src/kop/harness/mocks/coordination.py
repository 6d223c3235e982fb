# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""In-memory double of the coordination service (a ZooKeeper-style znode tree)."""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

ENCODING = 'utf-8'
LEDGERS_ROOT = '/ledgers'
AVAILABLE_BOOKIES_PATH = f'{LEDGERS_ROOT}/available'
LAYOUT_PATH = f'{LEDGERS_ROOT}/LAYOUT'
LAYOUT_DATA = '1\nflat:1'
DEFAULT_BOOKIE = '192.168.1.1:5000'


class StoreClosedError(RuntimeError):
    """Raised when a mock store is used after it has been shut down."""


class CoordinationStoreError(Exception):
    """Base class for errors raised by the coordination store."""

    def __init__(self, path: str, message: str):
        super().__init__(f"{message}: {path}")
        self.path = path


class NodeExistsError(CoordinationStoreError):
    def __init__(self, path: str):
        super().__init__(path, "Node already exists")


class NoNodeError(CoordinationStoreError):
    def __init__(self, path: str):
        super().__init__(path, "No such node")


class NotEmptyError(CoordinationStoreError):
    def __init__(self, path: str):
        super().__init__(path, "Node has children")


class BadVersionError(CoordinationStoreError):
    def __init__(self, path: str, expected: int, actual: int):
        super().__init__(
            path, f"Version mismatch (expected {expected}, is {actual})"
        )


class CreateMode(enum.Enum):
    PERSISTENT = 'persistent'
    PERSISTENT_SEQUENTIAL = 'persistent_sequential'
    EPHEMERAL = 'ephemeral'
    EPHEMERAL_SEQUENTIAL = 'ephemeral_sequential'

    @property
    def is_sequential(self) -> bool:
        return self in (
            CreateMode.PERSISTENT_SEQUENTIAL,
            CreateMode.EPHEMERAL_SEQUENTIAL,
        )


@dataclass
class ZNode:
    data: bytes
    mode: CreateMode
    acl: list[Any] = field(default_factory=list)
    version: int = 0
    sequence: int = 0


def direct_executor(task: Callable[[], T]) -> Future[T]:
    """Run ``task`` immediately and return an already completed future."""
    future: Future[T] = Future()
    try:
        future.set_result(task())
    except Exception as e:
        future.set_exception(e)
    return future


def _parent(path: str) -> str:
    parent = path.rsplit('/', 1)[0]
    return parent or '/'


def _validate_path(path: str) -> None:
    if not path.startswith('/') or (path != '/' and path.endswith('/')):
        raise ValueError(f"Invalid path: {path!r}")


class MockCoordinationStore:
    """
    Thread-safe in-memory znode tree.

    The store supports the subset of the coordination-service API the broker
    relies on: creating, reading, updating and deleting nodes and listing
    children. Asynchronous variants run on the executor passed at construction,
    which defaults to direct (same-thread) execution so that everything is
    settled before the call returns.

    Parameters
    ----------
    executor:
        Callable that runs a zero-argument task and returns a future.
    """

    def __init__(
        self, executor: Callable[[Callable[[], Any]], Future] = direct_executor
    ):
        self._executor = executor
        self._nodes: dict[str, ZNode] = {
            '/': ZNode(data=b'', mode=CreateMode.PERSISTENT)
        }
        self._lock = threading.RLock()
        self._closed = False

    @classmethod
    def create_instance(
        cls, available_bookie: str = DEFAULT_BOOKIE
    ) -> MockCoordinationStore:
        """
        Create a store seeded with the records a log store expects at startup.

        Seeding failures propagate; a store that could not be seeded is unusable.
        """
        store = cls(executor=direct_executor)
        store.create_full_path_optimistic(
            f'{AVAILABLE_BOOKIES_PATH}/{available_bookie}',
            b'',
            acl=[],
            mode=CreateMode.PERSISTENT,
        )
        store.create(
            LAYOUT_PATH,
            LAYOUT_DATA.encode(ENCODING),
            acl=[],
            mode=CreateMode.PERSISTENT,
        )
        logger.info(
            "Seeded mock coordination store with bookie %s", available_bookie
        )
        return store

    @property
    def is_closed(self) -> bool:
        return self._closed

    def create(
        self,
        path: str,
        data: bytes = b'',
        acl: list[Any] | None = None,
        mode: CreateMode = CreateMode.PERSISTENT,
    ) -> str:
        """Create a node whose parent must exist. Returns the actual path."""
        _validate_path(path)
        with self._lock:
            self._check_open()
            parent = self._nodes.get(_parent(path))
            if parent is None:
                raise NoNodeError(_parent(path))
            if mode.is_sequential:
                path = f'{path}{parent.sequence:010d}'
                parent.sequence += 1
            if path in self._nodes:
                raise NodeExistsError(path)
            self._nodes[path] = ZNode(
                data=bytes(data), mode=mode, acl=list(acl or [])
            )
            return path

    def create_full_path_optimistic(
        self,
        path: str,
        data: bytes = b'',
        acl: list[Any] | None = None,
        mode: CreateMode = CreateMode.PERSISTENT,
    ) -> str:
        """Create a node, creating any missing ancestors as empty persistent nodes."""
        _validate_path(path)
        with self._lock:
            self._check_open()
            ancestors = []
            current = _parent(path)
            while current not in self._nodes:
                ancestors.append(current)
                current = _parent(current)
            for ancestor in reversed(ancestors):
                self.create(ancestor, b'', acl=acl, mode=CreateMode.PERSISTENT)
            return self.create(path, data, acl=acl, mode=mode)

    def create_async(
        self,
        path: str,
        data: bytes = b'',
        acl: list[Any] | None = None,
        mode: CreateMode = CreateMode.PERSISTENT,
    ) -> Future[str]:
        return self._executor(lambda: self.create(path, data, acl=acl, mode=mode))

    def exists(self, path: str) -> bool:
        with self._lock:
            self._check_open()
            return path in self._nodes

    def get_data(self, path: str) -> bytes:
        with self._lock:
            self._check_open()
            return self._get(path).data

    def get_data_async(self, path: str) -> Future[bytes]:
        return self._executor(lambda: self.get_data(path))

    def get_version(self, path: str) -> int:
        with self._lock:
            self._check_open()
            return self._get(path).version

    def set_data(self, path: str, data: bytes, version: int = -1) -> int:
        """
        Replace the data of a node. Returns the new version.

        A ``version`` other than -1 must match the current version of the node.
        """
        with self._lock:
            self._check_open()
            node = self._get(path)
            if version != -1 and version != node.version:
                raise BadVersionError(path, expected=version, actual=node.version)
            node.data = bytes(data)
            node.version += 1
            return node.version

    def get_children(self, path: str) -> list[str]:
        with self._lock:
            self._check_open()
            self._get(path)
            prefix = path.rstrip('/') + '/'
            return sorted(
                p[len(prefix) :]
                for p in self._nodes
                if p.startswith(prefix)
                and len(p) > len(prefix)
                and '/' not in p[len(prefix) :]
            )

    def delete(self, path: str, version: int = -1) -> None:
        if path == '/':
            raise ValueError("Cannot delete the root node")
        with self._lock:
            self._check_open()
            node = self._get(path)
            if version != -1 and version != node.version:
                raise BadVersionError(path, expected=version, actual=node.version)
            if self.get_children(path):
                raise NotEmptyError(path)
            del self._nodes[path]

    def shutdown(self) -> None:
        """Release all nodes. The store must not be used afterwards."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            node_count = len(self._nodes)
            self._nodes.clear()
        logger.info(
            "Mock coordination store shut down (%d nodes released)", node_count
        )

    def _get(self, path: str) -> ZNode:
        node = self._nodes.get(path)
        if node is None:
            raise NoNodeError(path)
        return node

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError("Mock coordination store has been shut down")
