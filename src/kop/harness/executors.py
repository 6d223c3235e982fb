# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""Executors used by the harness to make broker-internal work deterministic."""

from __future__ import annotations

from collections.abc import Callable, Hashable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar('T')


class ExecutorShutdownError(RuntimeError):
    """Raised when a task is submitted to an executor that has been shut down."""


class SameThreadOrderedExecutor:
    """
    Ordered executor that runs every task immediately on the calling thread.

    Tasks keyed by the same ordering key are trivially ordered because nothing is
    deferred. The result is that broker callbacks have completed by the time the
    call that scheduled them returns, so tests can assert synchronously.
    """

    def __init__(self) -> None:
        self._shutdown = False

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def execute_ordered(self, key: Hashable, task: Callable[[], Any]) -> None:
        """Run ``task`` now. A failure is logged and re-raised to the caller."""
        self._check_running()
        try:
            task()
        except Exception:
            logger.exception("ordered_task_failed", key=key)
            raise

    def submit_ordered(self, key: Hashable, task: Callable[[], T]) -> Future[T]:
        self._check_running()
        future: Future[T] = Future()
        try:
            future.set_result(task())
        except Exception as e:
            future.set_exception(e)
        return future

    def execute(self, task: Callable[[], Any]) -> None:
        self.execute_ordered(None, task)

    def shutdown(self) -> None:
        self._shutdown = True

    def _check_running(self) -> None:
        if self._shutdown:
            raise ExecutorShutdownError("Ordered executor has been shut down")


class LoggingSingleThreadExecutor(ThreadPoolExecutor):
    """
    Single dedicated worker thread whose task failures are logged.

    Failures still land on the returned future, so a caller waiting on it sees
    the exception, but a fire-and-forget task never fails silently.
    """

    def __init__(self, name: str):
        super().__init__(max_workers=1, thread_name_prefix=name)
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future = super().submit(fn, *args, **kwargs)
        future.add_done_callback(self._log_failure)
        return future

    def _log_failure(self, future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.info(
                "uncaught_exception",
                executor=self._name,
                exc_info=(type(exc), exc, exc.__traceback__),
            )
