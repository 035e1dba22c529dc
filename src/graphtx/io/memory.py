"""
In-Memory Reference Server.

Provides a thread-safe, in-process implementation of the server side of
:class:`~graphtx.io.base.ServerConnection` for development and testing.
It does not parse any query language: each query text is registered with
a Python handler that reads and writes a simple label -> rows store.

Behaviour modelled after a clustered graph database:

- every commit of a write creates a new version of the database and a
  bookmark ``"<database>:<version>"``
- write transactions run on the leader and see the newest version
- read transactions run on a replica; with ``lagging_replica=True`` the
  replica only catches up when a transaction carries a newer bookmark
  (or when :meth:`MemoryServer.replicate` is called)
- two transactions writing from the same version conflict: the later
  commit fails with a retryable deadlock error
- failures can be injected per query, or at begin/commit time

Example:
    >>> server = MemoryServer()
    >>> def create_person(ctx, params):
    ...     ctx.create("Person", {"name": params["name"]})
    >>> server.register("CREATE (p:Person {name: $name})", create_person)
    >>> server.register(
    ...     "MATCH (p:Person) RETURN p.name AS name",
    ...     lambda ctx, params: [{"name": p["name"]} for p in ctx.match("Person")],
    ... )
"""

import copy
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..bookmarks import Bookmarks
from ..config import AccessMode, NotificationFilter
from ..exceptions import (
    CypherSyntaxError,
    GraphDriverError,
    ServerError,
    ServiceUnavailable,
)
from .base import PullBatch, QueryStream, ServerConnection, TxHandle, TxRequest
from .pool import ConnectionPool

logger = logging.getLogger(__name__)

BEGIN = "<begin>"
COMMIT = "<commit>"

Handler = Callable[["QueryContext", Dict[str, Any]], Optional[Iterable[Dict[str, Any]]]]


def _normalize(query: str) -> str:
    return " ".join(query.split())


def _server_error(code: str, message: str) -> ServerError:
    return ServerError.from_code(code, message)


@dataclass
class JournalEntry:
    """One query as executed by the server."""

    database: str
    query: str
    parameters: Dict[str, Any]
    tx_id: int
    access_mode: AccessMode
    metadata: Optional[Dict[str, Any]] = None
    impersonated_user: Optional[str] = None


@dataclass
class _InjectedFailure:
    error: GraphDriverError
    times: int = 1
    after_records: Optional[int] = None


@dataclass
class _DatabaseState:
    versions: List[Dict[str, List[Dict[str, Any]]]] = field(
        default_factory=lambda: [{}]
    )
    replica_version: int = 0

    @property
    def leader_version(self) -> int:
        return len(self.versions) - 1


@dataclass
class _ServerTx:
    tx_id: int
    request: TxRequest
    base_version: int
    working: Dict[str, List[Dict[str, Any]]]
    started: float
    wrote: bool = False
    failed: bool = False


class QueryContext:
    """
    View of the database handed to a query handler.

    Writes are applied to the transaction's private copy and only become
    visible to others on commit.
    """

    def __init__(
        self,
        store: Dict[str, List[Dict[str, Any]]],
        access_mode: AccessMode,
        database: str,
    ):
        self._store = store
        self._access_mode = access_mode
        self.database = database
        self.keys: Optional[List[str]] = None
        self.stats: Dict[str, int] = {}
        self.notifications: List[Dict[str, Any]] = []
        self.plan: Optional[Dict[str, Any]] = None
        self.profile: Optional[Dict[str, Any]] = None
        self.wrote = False

    def _count(self, key: str, amount: int = 1) -> None:
        if amount:
            self.stats[key] = self.stats.get(key, 0) + amount

    def _check_writable(self) -> None:
        if self._access_mode == AccessMode.READ:
            raise _server_error(
                "Neo.ClientError.Statement.AccessMode",
                "Writing in read access mode not allowed",
            )
        self.wrote = True

    def create(self, label: str, properties: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Create a row (node) under ``label``."""
        self._check_writable()
        row = dict(properties or {})
        self._store.setdefault(label, []).append(row)
        self._count("nodes-created")
        self._count("labels-added")
        self._count("properties-set", len(row))
        return dict(row)

    def match(self, label: str, **where: Any) -> List[Dict[str, Any]]:
        """Rows under ``label`` whose properties equal ``where``."""
        return [
            dict(row)
            for row in self._store.get(label, [])
            if all(row.get(k) == v for k, v in where.items())
        ]

    def update(self, label: str, where: Dict[str, Any], values: Dict[str, Any]) -> int:
        """Set ``values`` on matching rows; returns the number of rows changed."""
        self._check_writable()
        changed = 0
        for row in self._store.get(label, []):
            if all(row.get(k) == v for k, v in where.items()):
                row.update(values)
                changed += 1
        self._count("properties-set", changed * len(values))
        return changed

    def delete(self, label: str, **where: Any) -> int:
        """Delete matching rows; returns the number deleted."""
        self._check_writable()
        rows = self._store.get(label, [])
        kept = [r for r in rows if not all(r.get(k) == v for k, v in where.items())]
        deleted = len(rows) - len(kept)
        self._store[label] = kept
        self._count("nodes-deleted", deleted)
        return deleted

    def fail(self, code: str, message: str = "") -> None:
        """Raise the server error identified by ``code``."""
        raise _server_error(code, message or code)

    def notify(
        self,
        code: str,
        title: str,
        description: str = "",
        severity: str = "WARNING",
        category: str = "GENERIC",
        position: Optional[Dict[str, int]] = None,
    ) -> None:
        """Attach a notification to the query's summary."""
        notification = {
            "code": code,
            "title": title,
            "description": description,
            "severity": severity,
            "category": category,
        }
        if position:
            notification["position"] = position
        self.notifications.append(notification)


class MemoryQueryStream(QueryStream):
    """Stream over the rows a handler produced."""

    def __init__(
        self,
        keys: List[str],
        rows: List[tuple],
        metadata: Dict[str, Any],
        failure: Optional[_InjectedFailure] = None,
    ):
        self._keys = keys
        self._rows = rows
        self._metadata = metadata
        self._position = 0
        self._failure = failure
        self._started = time.monotonic()
        self._first_pull: Optional[float] = None
        self.pulls = 0

    def keys(self) -> List[str]:
        return list(self._keys)

    def _finish(self) -> Dict[str, Any]:
        metadata = dict(self._metadata)
        now = time.monotonic()
        first = self._first_pull if self._first_pull is not None else now
        metadata["t_first"] = int((first - self._started) * 1000)
        metadata["t_last"] = int((now - self._started) * 1000)
        return metadata

    def pull(self, n: int) -> PullBatch:
        self.pulls += 1
        if self._first_pull is None:
            self._first_pull = time.monotonic()
        end = len(self._rows) if n < 0 else min(len(self._rows), self._position + n)
        failure = self._failure
        if failure is not None and failure.after_records is not None:
            if self._position >= failure.after_records:
                self._failure = None
                raise failure.error
            end = min(end, failure.after_records)
        batch = self._rows[self._position:end]
        self._position = end
        has_more = self._position < len(self._rows) or self._failure is not None
        return PullBatch(
            records=batch,
            has_more=has_more,
            metadata={} if has_more else self._finish(),
        )

    def discard(self) -> Dict[str, Any]:
        self._position = len(self._rows)
        self._failure = None
        return self._finish()


class MemoryServer:
    """
    In-process database server.

    Args:
        lagging_replica: Read transactions see the replica, which only
            catches up on demand (bookmarks or :meth:`replicate`)
        databases: Names of the databases to create up front; others are
            created on first use

    Thread Safety:
        All state is protected by a single re-entrant lock.
    """

    def __init__(self, lagging_replica: bool = False, databases: Iterable[str] = ("neo4j",)):
        self.lagging_replica = lagging_replica
        self._lock = threading.RLock()
        self._databases: Dict[str, _DatabaseState] = {
            name: _DatabaseState() for name in databases
        }
        self._handlers: Dict[str, Handler] = {}
        self._failures: Dict[str, List[_InjectedFailure]] = {}
        self._transactions: Dict[int, _ServerTx] = {}
        self._tx_ids = itertools.count(1)
        self.journal: List[JournalEntry] = []
        self.commits = 0
        self.rollbacks = 0

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def register(self, query: str, handler: Handler) -> None:
        """Register the handler executed for an exact query text."""
        self._handlers[_normalize(query)] = handler

    def fail_next(
        self,
        query: str,
        error: GraphDriverError,
        times: int = 1,
        after_records: Optional[int] = None,
    ) -> None:
        """
        Make the next ``times`` executions of ``query`` fail with ``error``.

        Use :data:`BEGIN` or :data:`COMMIT` as ``query`` to fail transaction
        begin or commit. With ``after_records`` the query streams that many
        records before the error is raised.
        """
        self._failures.setdefault(_normalize(query), []).append(
            _InjectedFailure(error=error, times=times, after_records=after_records)
        )

    def _take_failure(self, key: str) -> Optional[_InjectedFailure]:
        pending = self._failures.get(key)
        if not pending:
            return None
        failure = pending[0]
        failure.times -= 1
        if failure.times <= 0:
            pending.pop(0)
        return failure

    def _database(self, name: str) -> _DatabaseState:
        state = self._databases.get(name)
        if state is None:
            state = _DatabaseState()
            self._databases[name] = state
        return state

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def rows(self, label: str, database: str = "neo4j") -> List[Dict[str, Any]]:
        """Committed rows under ``label`` on the leader."""
        with self._lock:
            state = self._database(database)
            return copy.deepcopy(state.versions[-1].get(label, []))

    def leader_version(self, database: str = "neo4j") -> int:
        with self._lock:
            return self._database(database).leader_version

    def replica_version(self, database: str = "neo4j") -> int:
        with self._lock:
            return self._database(database).replica_version

    def replicate(self, database: str = "neo4j") -> None:
        """Bring the replica of a database up to date."""
        with self._lock:
            state = self._database(database)
            state.replica_version = state.leader_version

    def open_transactions(self) -> int:
        with self._lock:
            return len(self._transactions)

    def executed(self, query: str) -> List[JournalEntry]:
        """Journal entries for one query text."""
        key = _normalize(query)
        with self._lock:
            return [e for e in self.journal if _normalize(e.query) == key]

    # ------------------------------------------------------------------
    # Server side of ServerConnection
    # ------------------------------------------------------------------

    def _required_version(self, request: TxRequest) -> int:
        required = 0
        prefix = f"{request.database}:"
        for token in request.bookmarks.raw_values:
            if token.startswith(prefix):
                try:
                    required = max(required, int(token[len(prefix):]))
                except ValueError:
                    raise _server_error(
                        "Neo.ClientError.Transaction.InvalidBookmark",
                        f"Supplied bookmark [{token}] could not be interpreted",
                    )
        return required

    def begin(self, request: TxRequest) -> TxHandle:
        with self._lock:
            failure = self._take_failure(BEGIN)
            if failure is not None:
                raise failure.error

            state = self._database(request.database)
            required = self._required_version(request)
            if required > state.leader_version:
                raise _server_error(
                    "Neo.TransientError.Transaction.BookmarkTimeout",
                    f"Database '{request.database}' not up to date with bookmark "
                    f"version {required}",
                )

            if request.access_mode == AccessMode.READ and self.lagging_replica:
                if state.replica_version < required:
                    state.replica_version = required
                base = state.replica_version
            else:
                base = state.leader_version

            tx = _ServerTx(
                tx_id=next(self._tx_ids),
                request=request,
                base_version=base,
                working=copy.deepcopy(state.versions[base]),
                started=time.monotonic(),
            )
            self._transactions[tx.tx_id] = tx
            logger.debug(
                f"Server began tx {tx.tx_id} ({request.access_mode.value}) on "
                f"'{request.database}' at version {base}"
            )
            return TxHandle(tx_id=tx.tx_id, database=request.database)

    def _live_tx(self, handle: TxHandle) -> _ServerTx:
        tx = self._transactions.get(handle.tx_id)
        if tx is None:
            raise _server_error(
                "Neo.ClientError.Transaction.TransactionNotFound",
                f"Unrecognized transaction id {handle.tx_id}",
            )
        timeout = tx.request.timeout
        if timeout and time.monotonic() - tx.started > timeout:
            self._transactions.pop(tx.tx_id, None)
            raise _server_error(
                "Neo.ClientError.Transaction.TransactionTimedOut",
                f"The transaction has been terminated because it exceeded "
                f"its timeout of {timeout}s",
            )
        if tx.failed:
            raise _server_error(
                "Neo.ClientError.Request.Invalid",
                "Transaction has failed and must be rolled back",
            )
        return tx

    def execute(
        self, handle: TxHandle, query: str, parameters: Dict[str, Any]
    ) -> MemoryQueryStream:
        key = _normalize(query)
        with self._lock:
            tx = self._live_tx(handle)
            request = tx.request
            self.journal.append(
                JournalEntry(
                    database=request.database,
                    query=query,
                    parameters=dict(parameters),
                    tx_id=tx.tx_id,
                    access_mode=request.access_mode,
                    metadata=request.metadata,
                    impersonated_user=request.impersonated_user,
                )
            )

            failure = self._take_failure(key)
            if failure is not None and failure.after_records is None:
                tx.failed = True
                raise failure.error

            handler = self._handlers.get(key)
            if handler is None:
                tx.failed = True
                raise CypherSyntaxError(
                    f"Invalid input: cannot parse query {query!r}",
                    "Neo.ClientError.Statement.SyntaxError",
                )

            ctx = QueryContext(tx.working, request.access_mode, request.database)
            try:
                produced = list(handler(ctx, dict(parameters)) or [])
            except GraphDriverError:
                tx.failed = True
                raise
            tx.wrote = tx.wrote or ctx.wrote

        keys = ctx.keys or (list(produced[0].keys()) if produced else [])
        rows = [tuple(row.get(k) for k in keys) for row in produced]
        metadata = {
            "type": "w" if ctx.wrote else "r",
            "db": request.database,
            "stats": dict(ctx.stats),
            "notifications": self._filter_notifications(
                ctx.notifications, request.notification_filter
            ),
        }
        if ctx.plan is not None:
            metadata["plan"] = ctx.plan
        if ctx.profile is not None:
            metadata["profile"] = ctx.profile
        return MemoryQueryStream(keys, rows, metadata, failure=failure)

    @staticmethod
    def _filter_notifications(
        notifications: List[Dict[str, Any]], notification_filter: Optional[NotificationFilter]
    ) -> List[Dict[str, Any]]:
        if notification_filter is None:
            return notifications
        return [
            n
            for n in notifications
            if notification_filter.allows(n["severity"], n["category"])
        ]

    def commit(self, handle: TxHandle) -> Bookmarks:
        with self._lock:
            tx = self._live_tx(handle)
            failure = self._take_failure(COMMIT)
            if failure is not None:
                self._transactions.pop(tx.tx_id, None)
                raise failure.error

            self._transactions.pop(tx.tx_id, None)
            database = tx.request.database
            state = self._database(database)
            if tx.wrote:
                if state.leader_version != tx.base_version:
                    raise _server_error(
                        "Neo.TransientError.Transaction.DeadlockDetected",
                        f"Transaction {tx.tx_id} conflicts with a concurrent commit",
                    )
                state.versions.append(tx.working)
                if not self.lagging_replica:
                    state.replica_version = state.leader_version
                version = state.leader_version
            else:
                version = tx.base_version
            self.commits += 1
            logger.debug(f"Server committed tx {tx.tx_id} at version {version}")
            return Bookmarks.from_raw_values([f"{database}:{version}"])

    def rollback(self, handle: TxHandle) -> None:
        with self._lock:
            if self._transactions.pop(handle.tx_id, None) is not None:
                self.rollbacks += 1
                logger.debug(f"Server rolled back tx {handle.tx_id}")

    # ------------------------------------------------------------------
    # Client side
    # ------------------------------------------------------------------

    def connect(self) -> "MemoryConnection":
        """Open a new connection to this server."""
        return MemoryConnection(self)

    def pool(self, max_size: int = 100, acquisition_timeout: float = 60.0) -> ConnectionPool:
        """Create a connection pool over this server."""
        return ConnectionPool(
            self.connect, max_size=max_size, acquisition_timeout=acquisition_timeout
        )


class MemoryConnection(ServerConnection):
    """Connection to a :class:`MemoryServer`."""

    def __init__(self, server: MemoryServer):
        super().__init__()
        self._server = server
        self._open: Dict[int, TxHandle] = {}

    def _check_usable(self) -> None:
        if self._closed or self._defunct:
            raise ServiceUnavailable("Connection is closed")

    def begin_tx(self, request: TxRequest) -> TxHandle:
        self._check_usable()
        handle = self._server.begin(request)
        self._open[handle.tx_id] = handle
        return handle

    def execute(
        self, handle: TxHandle, query: str, parameters: Dict[str, Any]
    ) -> QueryStream:
        self._check_usable()
        return self._server.execute(handle, query, parameters)

    def commit_tx(self, handle: TxHandle) -> Bookmarks:
        self._check_usable()
        try:
            return self._server.commit(handle)
        finally:
            self._open.pop(handle.tx_id, None)

    def rollback_tx(self, handle: TxHandle) -> None:
        self._open.pop(handle.tx_id, None)
        self._server.rollback(handle)

    def reset(self) -> None:
        for handle in list(self._open.values()):
            self.rollback_tx(handle)

    def close(self) -> None:
        if not self._closed:
            self.reset()
        super().close()


__all__ = [
    "BEGIN",
    "COMMIT",
    "JournalEntry",
    "QueryContext",
    "MemoryQueryStream",
    "MemoryServer",
    "MemoryConnection",
]
