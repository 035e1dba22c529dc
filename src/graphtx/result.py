"""
Lazy, single-pass query results.

A :class:`Result` pulls records from the server in batches of
``fetch_size`` and hands them out one at a time, in server order, each at
most once. Iterating past the last record ends the iteration; the summary
then becomes available through :meth:`Result.consume`.

Example:
    >>> result = tx.run("MATCH (p:Person) RETURN p.name AS name")
    >>> for record in result:
    ...     print(record["name"])
    >>> summary = result.consume()
"""

import logging
import warnings
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Union

from .exceptions import (
    NoRecordError,
    ResultConsumedError,
    ResultFailedError,
    ResultNotSingleError,
)
from .io.base import QueryStream
from .record import Record
from .summary import EagerResult, ResultSummary

logger = logging.getLogger(__name__)

_OUT_OF_SCOPE_MESSAGE = (
    "The result is out of scope. The associated transaction has been closed. "
    "Results can only be used while the transaction is open."
)

_FAILED_MESSAGE = (
    "The result has failed. Either this result or another result in the same "
    "transaction has encountered an error."
)


class Result:
    """
    Streaming cursor over the records of one query.

    The cursor is created by ``Transaction.run`` or ``Session.run`` and is
    only valid while its transaction is open, except for records and
    summaries that were already fully read.

    Thread Safety:
        Not thread-safe; use a result from the thread that owns its session.
    """

    def __init__(
        self,
        stream: QueryStream,
        query: str,
        parameters: Optional[Dict[str, Any]],
        fetch_size: int,
        owner: Any = None,
    ):
        self._stream = stream
        self._query = query
        self._parameters = dict(parameters or {})
        self._fetch_size = fetch_size
        self._owner = owner
        self._keys = list(stream.keys())
        self._buffer: Deque[Record] = deque()
        self._has_more = True
        self._metadata: Optional[Dict[str, Any]] = None
        self._summary: Optional[ResultSummary] = None
        self._consumed = False
        self._out_of_scope = False
        self._failure: Optional[BaseException] = None

    def __repr__(self) -> str:
        return f"<Result query={self._query!r} keys={self._keys!r}>"

    # ------------------------------------------------------------------
    # Stream handling
    # ------------------------------------------------------------------

    def _pull(self) -> None:
        try:
            batch = self._stream.pull(self._fetch_size)
        except Exception as exc:
            self._fail(exc)
            raise
        logger.debug(
            f"Pulled {len(batch.records)} record(s), has_more={batch.has_more}"
        )
        self._buffer.extend(Record(self._keys, row) for row in batch.records)
        if not batch.has_more:
            self._has_more = False
            self._metadata = batch.metadata
            if self._owner is not None:
                self._owner._result_exhausted(self)

    def _discard(self) -> None:
        try:
            metadata = self._stream.discard()
        except Exception as exc:
            self._fail(exc)
            raise
        self._has_more = False
        self._metadata = metadata

    def _fail(self, exc: BaseException) -> None:
        self._failure = exc
        self._has_more = False
        self._buffer.clear()
        if self._owner is not None:
            self._owner._result_failed(self, exc)

    def _check_usable(self) -> None:
        if self._failure is not None:
            raise ResultFailedError(self, _FAILED_MESSAGE) from self._failure
        if self._out_of_scope:
            raise ResultConsumedError(self, _OUT_OF_SCOPE_MESSAGE)

    def _buffer_all(self) -> None:
        """Pull every remaining record into the client buffer."""
        while self._has_more and self._failure is None:
            self._pull()

    def _tx_end(self, discard: bool = True) -> None:
        """
        Called by the owning transaction before it ends.

        Unread records are dropped; the result goes out of scope unless it
        was already consumed or read to the end.
        """
        if self._failure is not None or self._consumed:
            return
        if not self._has_more and not self._buffer:
            return
        self._buffer.clear()
        if self._has_more:
            if discard:
                self._discard()
            else:
                self._has_more = False
        self._out_of_scope = True

    def _obtain_summary(self) -> ResultSummary:
        if self._summary is None:
            self._summary = ResultSummary.from_metadata(
                self._query, self._parameters, self._metadata
            )
        return self._summary

    # ------------------------------------------------------------------
    # Record access
    # ------------------------------------------------------------------

    def __iter__(self) -> "Result":
        return self

    def __next__(self) -> Record:
        self._check_usable()
        while not self._buffer and self._has_more:
            self._pull()
        if self._buffer:
            return self._buffer.popleft()
        raise StopIteration

    def keys(self) -> List[str]:
        """Field names of the records in this result."""
        return list(self._keys)

    def peek(self) -> Optional[Record]:
        """
        The next record without consuming it, or None at the end.

        Raises:
            ResultConsumedError: If the transaction ended before the result was read
        """
        self._check_usable()
        while not self._buffer and self._has_more:
            self._pull()
        if self._buffer:
            return self._buffer[0]
        return None

    def fetch(self, n: int) -> List[Record]:
        """Up to ``n`` next records."""
        records = []
        for _ in range(n):
            record = next(self, None)
            if record is None:
                break
            records.append(record)
        return records

    def collect_all(self) -> List[Record]:
        """Read every remaining record into a list."""
        return list(self)

    def single(self, strict: bool = False) -> Record:
        """
        The one and only record of the result.

        Args:
            strict: Fail instead of warning when there is more than one record

        Raises:
            NoRecordError: If there are no records
            ResultNotSingleError: If strict and there is more than one record
        """
        records = self.fetch(2)
        if not records:
            raise NoRecordError(self, "No records found. Expected exactly one record.")
        if len(records) == 1:
            return records[0]
        if strict:
            raise ResultNotSingleError(
                self, "Expected a result with a single record, but found multiple."
            )
        message = (
            "Expected a result with a single record, but this result contains "
            "at least one more. Discarding the remaining records."
        )
        logger.warning(message)
        warnings.warn(message, stacklevel=2)
        self._discard_remaining()
        if self._owner is not None:
            self._owner._result_exhausted(self)
        return records[0]

    def _discard_remaining(self) -> None:
        self._buffer.clear()
        if self._has_more:
            self._discard()
        self._consumed = True

    def consume(self) -> ResultSummary:
        """
        Discard the remaining records and return the summary.

        Calling ``consume`` again returns the same summary. After it, the
        result yields no more records.

        Raises:
            ResultConsumedError: If the transaction ended before the result was read
        """
        if self._consumed:
            return self._obtain_summary()
        self._check_usable()
        self._discard_remaining()
        if self._owner is not None:
            self._owner._result_exhausted(self)
        return self._obtain_summary()

    def closed(self) -> bool:
        """True once the result was consumed, failed, or went out of scope."""
        return self._consumed or self._out_of_scope or self._failure is not None

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    def data(self, *keys: Union[int, str]) -> List[Dict[str, Any]]:
        """Remaining records as dictionaries."""
        return [record.data(*keys) for record in self]

    def value(self, key: Union[int, str] = 0, default: Any = None) -> List[Any]:
        """One field of every remaining record."""
        return [record.value(key, default) for record in self]

    def values(self, *keys: Union[int, str]) -> List[List[Any]]:
        """Selected fields of every remaining record."""
        return [record.values(*keys) for record in self]

    def to_eager_result(self) -> EagerResult:
        """Read everything and return ``(records, summary, keys)``."""
        records = list(self)
        summary = self.consume()
        return EagerResult(records, summary, self.keys())


__all__ = ["Result"]
