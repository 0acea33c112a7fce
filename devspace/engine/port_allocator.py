"""Lowest-free-port allocation for preview servers."""
from __future__ import annotations

import logging
import threading

from .errors import ResourceExhaustedError

logger = logging.getLogger(__name__)

MAX_TCP_PORT = 65535


class PortAllocator:
    """Hands out the smallest free port at or above ``base_port``.

    One instance is shared by every session. Acquire and release run
    under a single lock, so concurrent callers never receive the same
    port.
    """

    def __init__(self, base_port: int = 3000, max_port: int = MAX_TCP_PORT) -> None:
        if not 0 < base_port <= max_port <= MAX_TCP_PORT:
            raise ValueError(
                f"Invalid port range: base={base_port} max={max_port}"
            )
        self._base_port = base_port
        self._max_port = max_port
        self._in_use: set[int] = set()
        self._lock = threading.Lock()

    @property
    def base_port(self) -> int:
        return self._base_port

    def acquire(self) -> int:
        with self._lock:
            port = self._base_port
            while port in self._in_use:
                port += 1
            if port > self._max_port:
                raise ResourceExhaustedError(
                    "port",
                    f"all ports {self._base_port}-{self._max_port} are in use",
                )
            self._in_use.add(port)
        logger.debug("Acquired port %d (in use: %d)", port, len(self._in_use))
        return port

    def release(self, port: int) -> None:
        with self._lock:
            if port not in self._in_use:
                return
            self._in_use.discard(port)
        logger.debug("Released port %d", port)

    def is_in_use(self, port: int) -> bool:
        with self._lock:
            return port in self._in_use

    def in_use(self) -> list[int]:
        with self._lock:
            return sorted(self._in_use)
