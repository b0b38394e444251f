"""Node port allocation over a fixed range."""
from __future__ import annotations

import logging
import threading
from typing import Callable, TypeVar

from .database import Database
from .errors import DuplicatePortError, ExhaustedRangeError, PortAllocationError
from .models import PortStats

logger = logging.getLogger("podplane.ports")

DEFAULT_PORT_RANGE_START = 31000
DEFAULT_PORT_RANGE_END = 32000
DEFAULT_CLAIM_ATTEMPTS = 5

T = TypeVar("T")


class PortAllocator:
    """Hands out node ports that no stored pod currently holds.

    Picking a port is advisory: the database's uniqueness constraint decides
    which writer wins, and :meth:`claim` retries the losers.
    """

    def __init__(
        self,
        database: Database,
        *,
        range_start: int = DEFAULT_PORT_RANGE_START,
        range_end: int = DEFAULT_PORT_RANGE_END,
        max_attempts: int = DEFAULT_CLAIM_ATTEMPTS,
    ) -> None:
        if not 1 <= range_start <= 65535 or not 1 <= range_end <= 65535:
            raise ValueError("Port range bounds must be between 1 and 65535")
        if range_start > range_end:
            raise ValueError("Port range start must not exceed the range end")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._database = database
        self.range_start = range_start
        self.range_end = range_end
        self._max_attempts = max_attempts
        self._lock = threading.Lock()

    @property
    def total(self) -> int:
        return self.range_end - self.range_start + 1

    def reserve_next_port(self) -> int:
        """Return the lowest port in range not held by any stored pod."""

        used = set(self._database.used_ports())
        for port in range(self.range_start, self.range_end + 1):
            if port not in used:
                return port
        raise ExhaustedRangeError(
            f"No available ports in range {self.range_start}-{self.range_end}"
        )

    def is_valid_port(self, port: int) -> bool:
        return self.range_start <= port <= self.range_end

    def port_stats(self) -> PortStats:
        used_ports = sorted(port for port in self._database.used_ports() if self.is_valid_port(port))
        return PortStats(
            total=self.total,
            used=len(used_ports),
            available=self.total - len(used_ports),
            used_ports=used_ports,
        )

    def claim(self, insert: Callable[[int], T]) -> T:
        """Reserve a port and persist it through ``insert``.

        ``insert`` receives the candidate port and must raise
        :class:`DuplicatePortError` when another writer already stored it.
        """

        with self._lock:
            for attempt in range(1, self._max_attempts + 1):
                port = self.reserve_next_port()
                try:
                    return insert(port)
                except DuplicatePortError:
                    logger.warning(
                        "Port %s was taken by a concurrent writer (attempt %d/%d)",
                        port,
                        attempt,
                        self._max_attempts,
                    )
        raise PortAllocationError(
            f"Unable to claim a node port after {self._max_attempts} attempts"
        )


__all__ = [
    "DEFAULT_PORT_RANGE_END",
    "DEFAULT_PORT_RANGE_START",
    "PortAllocator",
]
