# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""Process-wide allocation of TCP ports for harness instances."""

from __future__ import annotations

import socket
import threading

import structlog

logger = structlog.get_logger(__name__)

BASE_PORT = 15000
MAX_PORT = 65535


class PortManager:
    """
    Hands out ports that have not been handed out before in this process.

    Ports are allocated from a monotonically increasing counter so two harnesses
    constructed concurrently never receive the same port. A candidate that cannot
    be bound on the loopback interface is skipped.
    """

    def __init__(self, base_port: int = BASE_PORT, host: str = '127.0.0.1'):
        self._next_port = base_port
        self._host = host
        self._lock = threading.Lock()

    def next_free_port(self) -> int:
        with self._lock:
            while self._next_port <= MAX_PORT:
                candidate = self._next_port
                self._next_port += 1
                if self._is_bindable(candidate):
                    return candidate
                logger.debug("port_in_use", port=candidate)
        raise RuntimeError(f"No free port left above {BASE_PORT}")

    def _is_bindable(self, port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((self._host, port))
            except OSError:
                return False
        return True


_port_manager = PortManager()


def next_free_port() -> int:
    """Allocate a port from the process-wide :class:`PortManager`."""
    return _port_manager.next_free_port()
