"""
Bounded connection pool.

Hands out exclusive-use :class:`~graphtx.io.base.ServerConnection`
instances created by a factory. Released connections are reused unless
they were marked defunct (e.g. after a protocol error), in which case
they are closed and dropped.
"""

import logging
import threading
import time
from typing import Callable, List, Optional, Set

from ..config import AccessMode
from ..exceptions import ServiceUnavailable, UsageError
from .base import ServerConnection

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    Thread-safe pool of server connections.

    Args:
        connection_factory: Creates a new connection
        max_size: Maximum number of connections, idle and in use
        acquisition_timeout: Seconds ``acquire`` waits for a free connection

    Example:
        >>> pool = ConnectionPool(server.connect, max_size=10)
        >>> conn = pool.acquire(AccessMode.WRITE, "neo4j")
        >>> pool.release(conn)
    """

    def __init__(
        self,
        connection_factory: Callable[[], ServerConnection],
        max_size: int = 100,
        acquisition_timeout: float = 60.0,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._factory = connection_factory
        self._max_size = max_size
        self._acquisition_timeout = acquisition_timeout
        self._idle: List[ServerConnection] = []
        self._in_use: Set[ServerConnection] = set()
        self._condition = threading.Condition()
        self._closed = False

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def acquisition_timeout(self) -> float:
        return self._acquisition_timeout

    def configure(
        self,
        max_size: Optional[int] = None,
        acquisition_timeout: Optional[float] = None,
    ) -> None:
        """Change the size limit or acquisition timeout; None keeps the current value."""
        if max_size is not None and max_size < 1:
            raise ValueError("max_size must be at least 1")
        with self._condition:
            if max_size is not None:
                self._max_size = max_size
            if acquisition_timeout is not None:
                self._acquisition_timeout = acquisition_timeout
            self._condition.notify_all()

    def in_use_count(self) -> int:
        with self._condition:
            return len(self._in_use)

    def idle_count(self) -> int:
        with self._condition:
            return len(self._idle)

    def acquire(
        self,
        access_mode: AccessMode,
        database: str,
        timeout: Optional[float] = None,
    ) -> ServerConnection:
        """
        Borrow a connection for one transaction.

        Raises:
            UsageError: If the pool is closed
            ServiceUnavailable: If no connection frees up within the
                acquisition timeout
        """
        if timeout is None:
            timeout = self._acquisition_timeout
        deadline = time.monotonic() + timeout

        with self._condition:
            while True:
                if self._closed:
                    raise UsageError("Connection pool is closed")

                while self._idle:
                    connection = self._idle.pop()
                    if connection.defunct() or connection.closed():
                        connection.close()
                        continue
                    self._in_use.add(connection)
                    logger.debug(
                        f"Reusing connection for {access_mode.value} on '{database}'"
                    )
                    return connection

                if len(self._in_use) < self._max_size:
                    connection = self._factory()
                    self._in_use.add(connection)
                    logger.debug(
                        f"Opened connection for {access_mode.value} on '{database}' "
                        f"({len(self._in_use)}/{self._max_size} in use)"
                    )
                    return connection

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ServiceUnavailable(
                        f"Failed to obtain a connection from the pool within "
                        f"{timeout}s ({self._max_size} connections in use)"
                    )
                self._condition.wait(remaining)

    def release(self, connection: ServerConnection) -> None:
        """Return a connection; defunct connections are closed instead."""
        with self._condition:
            self._in_use.discard(connection)
            if self._closed or connection.defunct() or connection.closed():
                logger.debug("Discarding released connection")
                connection.close()
            else:
                self._idle.append(connection)
            self._condition.notify()

    def close(self) -> None:
        """Close idle connections; in-use connections close when released."""
        with self._condition:
            self._closed = True
            idle, self._idle = self._idle, []
            self._condition.notify_all()
        for connection in idle:
            connection.close()

    def closed(self) -> bool:
        return self._closed


__all__ = ["ConnectionPool"]
