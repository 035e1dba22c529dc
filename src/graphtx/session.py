"""
Sessions.

A :class:`Session` is a causally chained sequence of transactions
against one database. Each committed transaction produces bookmarks that
the next transaction of the session waits for, so work done later in a
session always sees work done earlier in it, even when reads are routed
to a replica. Sessions sharing a :class:`~graphtx.bookmarks.BookmarkManager`
are chained the same way with each other.

A session runs at most one transaction at a time. Three ways of doing
work are offered:

- ``run`` executes one query in an auto-commit transaction
- ``begin_transaction`` opens an explicit transaction
- ``execute_read`` / ``execute_write`` run a transaction function with
  retry on transient failures

Example:
    >>> with driver.session(database="neo4j") as session:
    ...     session.execute_write(
    ...         lambda tx: tx.run("CREATE (p:Person {name: $name})", name="Alice").consume()
    ...     )
    ...     names = session.execute_read(
    ...         lambda tx: tx.run("MATCH (p:Person) RETURN p.name AS name").value()
    ...     )
"""

import logging
from functools import partial
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from .bookmarks import Bookmarks
from .config import (
    DEFAULT_FETCH_SIZE,
    AccessMode,
    DriverConfig,
    SessionConfig,
    TransactionConfig,
    build_transaction_config,
    resolve_notification_filter,
)
from .exceptions import ProtocolError, SessionClosedError, TransactionNestingError
from .io.base import TxRequest
from .io.pool import ConnectionPool
from .query import Query, split_query
from .result import Result
from .retry import RetryPolicy, TransactionRunner
from .transaction import ManagedTransaction, Transaction, TransactionBase

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Session:
    """
    A sequence of causally chained transactions.

    Sessions are created by :meth:`graphtx.driver.Driver.session`.

    Thread Safety:
        Not thread-safe. Use one session per thread; share a bookmark
        manager to chain work across sessions.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        config: Optional[SessionConfig] = None,
        driver_config: Optional[DriverConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        config = config or SessionConfig()
        driver_config = driver_config or DriverConfig()
        self._pool = pool
        self._config = config
        self._database = config.database or driver_config.default_database
        self._fetch_size = config.fetch_size or driver_config.fetch_size or DEFAULT_FETCH_SIZE
        self._notification_filter = resolve_notification_filter(config, driver_config)
        self._bookmarks = config.bookmarks
        self._bookmark_manager = config.bookmark_manager
        self._retry_policy = retry_policy or driver_config.to_retry_policy()
        self._transaction: Optional[TransactionBase] = None
        self._closed = False

    def __repr__(self) -> str:
        return f"<Session database={self._database!r} closed={self._closed}>"

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.close()
            return False
        try:
            self.close()
        except Exception as e:
            logger.warning(
                f"Closing session after {exc_type.__name__} failed: "
                f"{type(e).__name__}: {e}"
            )
        return False

    @property
    def database(self) -> str:
        return self._database

    @property
    def config(self) -> SessionConfig:
        return self._config

    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosedError(self)

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    def _finish_auto_commit(self) -> None:
        """Commit a pending auto-commit transaction, buffering its result."""
        tx = self._transaction
        if tx is not None and tx._auto_commit and not tx.closed():
            tx._commit()

    def _check_no_open_transaction(self) -> None:
        tx = self._transaction
        if tx is not None and not tx.closed():
            raise TransactionNestingError(
                tx,
                "Explicit transaction already open; commit or roll it back "
                "before starting new work in this session",
            )

    def _begin(
        self,
        cls,
        access_mode: AccessMode,
        tx_config: Optional[TransactionConfig],
        auto_commit: bool = False,
    ):
        self._check_open()
        self._finish_auto_commit()
        self._check_no_open_transaction()

        tx_config = tx_config or TransactionConfig()
        manager_bookmarks = Bookmarks()
        if self._bookmark_manager is not None:
            manager_bookmarks = self._bookmark_manager.get_bookmarks(self._database)
        bookmarks = self._bookmarks + manager_bookmarks

        request = TxRequest(
            database=self._database,
            access_mode=access_mode,
            bookmarks=bookmarks,
            timeout=tx_config.timeout,
            metadata=tx_config.metadata,
            impersonated_user=self._config.impersonated_user,
            notification_filter=self._notification_filter,
            auto_commit=auto_commit,
        )

        connection = self._pool.acquire(access_mode, self._database)
        try:
            handle = connection.begin_tx(request)
        except Exception as e:
            if isinstance(e, ProtocolError):
                connection.mark_defunct()
            self._pool.release(connection)
            raise

        tx = cls(
            connection,
            handle,
            request,
            self._fetch_size,
            on_closed=partial(self._transaction_closed, manager_bookmarks),
            auto_commit=auto_commit,
        )
        self._transaction = tx
        logger.debug(
            f"Began {tx!r} ({access_mode.value}) with {len(bookmarks)} bookmark(s)"
        )
        return tx

    def _begin_managed(
        self, access_mode: AccessMode, tx_config: Optional[TransactionConfig] = None
    ) -> ManagedTransaction:
        return self._begin(ManagedTransaction, access_mode, tx_config)

    def _transaction_closed(
        self,
        manager_bookmarks: Bookmarks,
        tx: TransactionBase,
        new_bookmarks: Optional[Bookmarks],
    ) -> None:
        if tx is self._transaction:
            self._transaction = None
        self._pool.release(tx._connection)
        if not new_bookmarks:
            return
        self._bookmarks = new_bookmarks
        if self._bookmark_manager is not None:
            self._bookmark_manager.update_bookmarks(
                self._database, manager_bookmarks, new_bookmarks
            )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        query: Union[str, Query],
        parameters: Optional[Dict[str, Any]] = None,
        **kwparameters: Any,
    ) -> Result:
        """
        Run a query in an auto-commit transaction.

        The transaction commits once the returned result is exhausted or
        consumed; otherwise it commits before the next piece of work in
        this session, on :meth:`last_bookmarks` or on :meth:`close`.
        Unread records are buffered first and stay readable.

        Raises:
            SessionClosedError: If the session is closed
            TransactionNestingError: If an explicit transaction is open
        """
        text, tx_config = split_query(query)
        tx = self._begin(
            Transaction, self._config.default_access_mode, tx_config, auto_commit=True
        )
        params = dict(parameters or {})
        params.update(kwparameters)
        return tx.run(text, params)

    def begin_transaction(
        self,
        metadata: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Transaction:
        """
        Open an explicit transaction.

        Raises:
            SessionClosedError: If the session is closed
            TransactionNestingError: If another transaction is open
            ConfigurationError: If ``metadata`` or ``timeout`` is invalid
        """
        tx_config = build_transaction_config(metadata, timeout)
        return self._begin(Transaction, self._config.default_access_mode, tx_config)

    def _run_transaction(
        self,
        access_mode: AccessMode,
        work: Callable[..., T],
        args: tuple,
        kwargs: Dict[str, Any],
        tx_config: Optional[TransactionConfig] = None,
    ) -> T:
        self._check_open()
        self._finish_auto_commit()
        self._check_no_open_transaction()
        runner = TransactionRunner(self, self._retry_policy)
        return runner.run(access_mode, work, *args, config=tx_config, **kwargs)

    def execute_read(self, work: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run ``work(tx, *args, **kwargs)`` in a read transaction, with retry.

        ``work`` may be invoked more than once; it must not return a
        :class:`~graphtx.result.Result`.

        Raises:
            RetriesExhaustedError: If retryable failures outlast the budget
        """
        return self._run_transaction(AccessMode.READ, work, args, kwargs)

    def execute_write(self, work: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``work(tx, *args, **kwargs)`` in a write transaction, with retry."""
        return self._run_transaction(AccessMode.WRITE, work, args, kwargs)

    def last_bookmarks(self) -> Bookmarks:
        """
        Bookmarks of the latest committed work of this session.

        A pending auto-commit transaction is committed first. Before any
        work, the bookmarks the session was created with are returned.
        """
        if not self._closed:
            self._finish_auto_commit()
        return self._bookmarks

    def close(self) -> None:
        """
        Close the session.

        A pending auto-commit transaction is committed; an open explicit
        transaction is rolled back. Closing twice is a no-op.
        """
        if self._closed:
            return
        try:
            tx = self._transaction
            if tx is not None and not tx.closed():
                if tx._auto_commit:
                    tx._commit()
                else:
                    logger.debug(f"Rolling back {tx!r} on session close")
                    tx._rollback()
        finally:
            self._closed = True
            self._transaction = None


__all__ = ["Session"]
