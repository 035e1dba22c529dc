"""
Transactions.

Three kinds of transaction share one implementation:

- :class:`Transaction` is opened with ``Session.begin_transaction`` and
  committed or rolled back by the caller (or by its ``with`` block).
- :class:`ManagedTransaction` is handed to transaction functions by
  ``Session.execute_read`` / ``execute_write``; the retry runner decides
  when it commits.
- The implicit transaction of ``Session.run`` is a :class:`Transaction`
  in auto-commit mode; it commits as soon as its result is exhausted.

Lifecycle::

    OPEN --commit--> COMMITTED
    OPEN --rollback--> ROLLED_BACK
    OPEN --query error--> FAILED --automatic rollback--> ROLLED_BACK

Once a transaction leaves OPEN it accepts no more queries, and every
result it produced that still had unread records goes out of scope.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .bookmarks import Bookmarks
from .exceptions import ProtocolError, TransactionClosedError
from .io.base import ServerConnection, TxHandle, TxRequest
from .query import Query, split_query
from .result import Result

logger = logging.getLogger(__name__)


class TransactionState(str, Enum):
    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class TransactionBase:
    """
    Shared machinery of explicit, managed and auto-commit transactions.

    Args:
        connection: Connection borrowed for the lifetime of the transaction
        handle: Server-side transaction reference
        request: The options the transaction was begun with
        fetch_size: Records pulled per batch by results of this transaction
        on_closed: Called once with ``(transaction, bookmarks)`` when the
            transaction ends; ``bookmarks`` is None unless it committed
        auto_commit: Commit as soon as the (single) result is exhausted
    """

    def __init__(
        self,
        connection: ServerConnection,
        handle: TxHandle,
        request: TxRequest,
        fetch_size: int,
        on_closed: Optional[Callable[["TransactionBase", Optional[Bookmarks]], None]] = None,
        auto_commit: bool = False,
    ):
        self._connection = connection
        self._handle = handle
        self._request = request
        self._fetch_size = fetch_size
        self._on_closed = on_closed
        self._auto_commit = auto_commit
        self._state = TransactionState.OPEN
        self._results: List[Result] = []
        self._committing = False
        self._bookmarks: Optional[Bookmarks] = None

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} database={self._handle.database!r} "
            f"state={self._state.value}>"
        )

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def database(self) -> str:
        return self._handle.database

    @property
    def bookmarks(self) -> Optional[Bookmarks]:
        """Bookmarks produced by the commit, None until committed."""
        return self._bookmarks

    def closed(self) -> bool:
        return self._state != TransactionState.OPEN

    def run(
        self,
        query: Union[str, Query],
        parameters: Optional[Dict[str, Any]] = None,
        **kwparameters: Any,
    ) -> Result:
        """
        Run a query in this transaction.

        Args:
            query: Query text
            parameters: Query parameters
            **kwparameters: Additional parameters, merged over ``parameters``

        Returns:
            A lazy :class:`~graphtx.result.Result`

        Raises:
            TransactionClosedError: If the transaction is no longer open
            ServerError: If the server rejects the query; the transaction
                is rolled back before the error propagates
        """
        if self._state != TransactionState.OPEN:
            raise TransactionClosedError(
                self, f"Transaction is {self._state.value}; no more queries can be run"
            )
        text, _ = split_query(query)
        params = dict(parameters or {})
        params.update(kwparameters)

        logger.debug(f"RUN {text!r} in {self!r}")
        try:
            stream = self._connection.execute(self._handle, text, params)
        except Exception as exc:
            self._fail(exc)
            raise

        result = Result(stream, text, params, self._fetch_size, owner=self)
        self._results.append(result)
        return result

    # ------------------------------------------------------------------
    # Result callbacks
    # ------------------------------------------------------------------

    def _result_exhausted(self, result: Result) -> None:
        if self._auto_commit and not self._committing and self._state == TransactionState.OPEN:
            self._commit()

    def _result_failed(self, result: Result, exc: BaseException) -> None:
        if self._state == TransactionState.OPEN:
            self._fail(exc)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _fail(self, exc: BaseException) -> None:
        """Move to FAILED and roll back, keeping ``exc`` as the error to report."""
        if self._state not in (TransactionState.OPEN, TransactionState.FAILED):
            return
        self._state = TransactionState.FAILED
        if isinstance(exc, ProtocolError):
            self._connection.mark_defunct()
        logger.debug(f"{self!r} failed: {type(exc).__name__}: {exc}")
        self._rollback_quietly(exc)

    def _rollback_quietly(self, primary: BaseException) -> None:
        try:
            self._rollback()
        except Exception as rollback_error:
            logger.warning(
                f"Rollback after {type(primary).__name__} failed as well: "
                f"{type(rollback_error).__name__}: {rollback_error}"
            )

    def _close_on_error(self, primary: BaseException) -> None:
        """Roll back if still open; a rollback failure is logged, not raised."""
        if self._state in (TransactionState.OPEN, TransactionState.FAILED):
            self._rollback_quietly(primary)

    def _commit(self) -> Bookmarks:
        if self._state != TransactionState.OPEN:
            raise TransactionClosedError(
                self, f"Cannot commit a transaction that is {self._state.value}"
            )
        self._committing = True
        try:
            for result in self._results:
                if self._auto_commit:
                    result._buffer_all()
                else:
                    result._tx_end(discard=True)
            if self._state != TransactionState.OPEN:
                raise TransactionClosedError(
                    self, f"Transaction is {self._state.value}; commit aborted"
                )
            bookmarks = self._connection.commit_tx(self._handle)
        except Exception as exc:
            self._fail(exc)
            raise
        finally:
            self._committing = False

        self._state = TransactionState.COMMITTED
        self._bookmarks = bookmarks
        logger.debug(f"Committed {self!r}, bookmarks={bookmarks!r}")
        self._finish(bookmarks)
        return bookmarks

    def _rollback(self) -> None:
        if self._state == TransactionState.ROLLED_BACK:
            return
        if self._state == TransactionState.COMMITTED:
            raise TransactionClosedError(self, "Cannot roll back a committed transaction")

        for result in self._results:
            result._tx_end(discard=False)
        try:
            self._connection.rollback_tx(self._handle)
        except Exception:
            self._connection.mark_defunct()
            self._state = TransactionState.ROLLED_BACK
            self._finish(None)
            raise
        self._state = TransactionState.ROLLED_BACK
        logger.debug(f"Rolled back {self!r}")
        self._finish(None)

    def _finish(self, bookmarks: Optional[Bookmarks]) -> None:
        callback, self._on_closed = self._on_closed, None
        if callback is not None:
            callback(self, bookmarks)


class Transaction(TransactionBase):
    """
    Explicit transaction, controlled by the caller.

    Used as a context manager it commits when the block completes and
    rolls back when the block raises.

    Example:
        >>> with session.begin_transaction() as tx:
        ...     tx.run("CREATE (:Person {name: $name})", name="Alice")
        ...     tx.run("CREATE (:Person {name: $name})", name="Bob")
        ... # committed here
    """

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.closed():
            return False
        if exc_type is None:
            self.commit()
        else:
            self._close_on_error(exc_val)
        return False

    def commit(self) -> None:
        """
        Commit the transaction.

        Results with unread records are discarded and go out of scope.

        Raises:
            TransactionClosedError: If the transaction is no longer open
            GraphDriverError: If the commit fails; the transaction is rolled back
        """
        self._commit()

    def rollback(self) -> None:
        """Roll back the transaction. Rolling back twice is a no-op."""
        self._rollback()

    def close(self) -> None:
        """Roll back the transaction unless it has already ended."""
        if not self.closed():
            self._rollback()


class ManagedTransaction(TransactionBase):
    """
    Transaction passed to transaction functions.

    It can only run queries; committing and rolling back are left to
    ``Session.execute_read`` / ``execute_write``.
    """


__all__ = [
    "TransactionState",
    "TransactionBase",
    "Transaction",
    "ManagedTransaction",
]
