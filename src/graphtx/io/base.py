"""
Server connection contract.

The engine never speaks a wire protocol itself. It drives a
:class:`ServerConnection`, which begins, commits and rolls back server
transactions and executes queries inside them, handing records back
through a :class:`QueryStream`.

Errors are reported by raising exceptions from :mod:`graphtx.exceptions`:
server failures as :class:`~graphtx.exceptions.ServerError` subclasses
(built with ``ServerError.from_code``), broken connections as
:class:`~graphtx.exceptions.ServiceUnavailable` or
:class:`~graphtx.exceptions.IncompleteCommit`, and malformed responses as
:class:`~graphtx.exceptions.ProtocolError`.

A connection is used by one transaction at a time; the pool hands it out
exclusively and takes it back once the transaction has ended.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..bookmarks import Bookmarks
from ..config import AccessMode, NotificationFilter


@dataclass(frozen=True)
class TxRequest:
    """
    Everything a server needs to begin a transaction.

    Attributes:
        database: Target database name
        access_mode: Read or write
        bookmarks: Bookmarks the transaction must wait for
        timeout: Server-side timeout in seconds
        metadata: Transaction metadata
        impersonated_user: User to run the transaction as
        notification_filter: Which notifications to send back
        auto_commit: True for the implicit transaction of ``Session.run``
    """

    database: str
    access_mode: AccessMode = AccessMode.WRITE
    bookmarks: Bookmarks = field(default_factory=Bookmarks)
    timeout: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None
    impersonated_user: Optional[str] = None
    notification_filter: Optional[NotificationFilter] = None
    auto_commit: bool = False


@dataclass(frozen=True)
class TxHandle:
    """Opaque reference to a server-side transaction."""

    tx_id: Any
    database: str


@dataclass
class PullBatch:
    """
    Records delivered by one pull.

    Attributes:
        records: Raw value rows, in server order
        has_more: False once the stream is complete
        metadata: Summary metadata; only meaningful when ``has_more`` is False
    """

    records: List[Sequence[Any]] = field(default_factory=list)
    has_more: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


class QueryStream(ABC):
    """Server-side cursor of one executing query."""

    @abstractmethod
    def keys(self) -> List[str]:
        """Names of the fields in every record."""
        pass

    @abstractmethod
    def pull(self, n: int) -> PullBatch:
        """
        Fetch up to ``n`` records (``-1`` for all remaining).

        Raises:
            GraphDriverError: If the query fails while streaming
        """
        pass

    @abstractmethod
    def discard(self) -> Dict[str, Any]:
        """Drop all remaining records and return the summary metadata."""
        pass


class ServerConnection(ABC):
    """
    Abstract connection to a database server.

    Implementations must provide transaction control and query execution.
    ``close`` and the defunct flag have default implementations.
    """

    def __init__(self) -> None:
        self._defunct = False
        self._closed = False

    @abstractmethod
    def begin_tx(self, request: TxRequest) -> TxHandle:
        """Begin a server transaction, waiting for the request's bookmarks."""
        pass

    @abstractmethod
    def execute(
        self, handle: TxHandle, query: str, parameters: Dict[str, Any]
    ) -> QueryStream:
        """Run a query inside a transaction and return its stream."""
        pass

    @abstractmethod
    def commit_tx(self, handle: TxHandle) -> Bookmarks:
        """Commit a transaction and return the bookmarks it produced."""
        pass

    @abstractmethod
    def rollback_tx(self, handle: TxHandle) -> None:
        """Roll back a transaction."""
        pass

    def reset(self) -> None:
        """Return the connection to a clean state after a failure."""
        pass

    def mark_defunct(self) -> None:
        """Flag the connection as unusable so the pool discards it."""
        self._defunct = True

    def defunct(self) -> bool:
        return self._defunct

    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Close the connection. Closing twice is a no-op."""
        self._closed = True


__all__ = [
    "TxRequest",
    "TxHandle",
    "PullBatch",
    "QueryStream",
    "ServerConnection",
]
