"""
Bookmarks and bookmark managers (causal consistency).

A bookmark is an opaque token naming a point in a database's write
history. A unit of work started with a set of bookmarks is guaranteed to
observe every write those bookmarks represent.

A :class:`BookmarkManager` tracks the newest known bookmarks per database
so that independent sessions can chain their work causally. It is the only
state intentionally shared between concurrently used sessions, so every
implementation must be thread-safe.

Example:
    >>> manager = bookmark_manager()
    >>> manager.update_bookmarks("neo4j", Bookmarks(), Bookmarks.from_raw_values(["bm:1"]))
    >>> manager.get_bookmarks("neo4j").raw_values
    frozenset({'bm:1'})
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, Iterator, Mapping, Optional

logger = logging.getLogger(__name__)


class Bookmarks:
    """
    Immutable set of opaque bookmark tokens.

    Bookmarks compare by their tokens; insertion order is irrelevant and
    duplicates collapse. Two sets are merged with ``+`` or ``|``.
    """

    __slots__ = ("_raw_values",)

    def __init__(self) -> None:
        self._raw_values: frozenset = frozenset()

    @classmethod
    def from_raw_values(cls, values: Iterable[str]) -> "Bookmarks":
        """
        Create bookmarks from raw string tokens.

        Raises:
            TypeError: If ``values`` is a plain string or holds non-strings
        """
        if isinstance(values, str):
            raise TypeError("Bookmark values must be an iterable of str, not str")
        obj = cls()
        tokens = []
        for value in values:
            if not isinstance(value, str):
                raise TypeError(f"Raw bookmark values must be str, got {type(value)}")
            if value:
                tokens.append(value)
        obj._raw_values = frozenset(tokens)
        return obj

    @property
    def raw_values(self) -> frozenset:
        """The raw tokens, suitable for serialization."""
        return self._raw_values

    def __add__(self, other: "Bookmarks") -> "Bookmarks":
        if not isinstance(other, Bookmarks):
            return NotImplemented
        if not other._raw_values:
            return self
        if not self._raw_values:
            return other
        obj = Bookmarks()
        obj._raw_values = self._raw_values | other._raw_values
        return obj

    __or__ = __add__

    def __sub__(self, other: "Bookmarks") -> "Bookmarks":
        if not isinstance(other, Bookmarks):
            return NotImplemented
        obj = Bookmarks()
        obj._raw_values = self._raw_values - other._raw_values
        return obj

    def issuperset(self, other: "Bookmarks") -> bool:
        return self._raw_values >= other._raw_values

    def __bool__(self) -> bool:
        return bool(self._raw_values)

    def __len__(self) -> int:
        return len(self._raw_values)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._raw_values))

    def __contains__(self, token: object) -> bool:
        return token in self._raw_values

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Bookmarks):
            return NotImplemented
        return self._raw_values == other._raw_values

    def __hash__(self) -> int:
        return hash(self._raw_values)

    def __repr__(self) -> str:
        return f"<Bookmarks values={sorted(self._raw_values)!r}>"


class BookmarkManager(ABC):
    """
    Abstract bookmark manager.

    Implementations must make ``update_bookmarks`` atomic with respect to
    concurrent callers working on the same database.
    """

    @abstractmethod
    def get_bookmarks(self, database: str) -> Bookmarks:
        """
        Return the bookmarks currently known for a database.

        Args:
            database: Database name

        Returns:
            The merged bookmarks, empty when none are known.
        """
        pass

    @abstractmethod
    def update_bookmarks(
        self, database: str, previous_bookmarks: Bookmarks, new_bookmarks: Bookmarks
    ) -> None:
        """
        Replace ``previous_bookmarks`` with ``new_bookmarks`` for a database.

        ``previous_bookmarks`` is what the caller read before starting its
        work; tokens added meanwhile by other callers are kept.
        """
        pass

    @abstractmethod
    def get_all_bookmarks(self) -> Bookmarks:
        """Return the union of the bookmarks of every tracked database."""
        pass

    @abstractmethod
    def forget(self, databases: Iterable[str]) -> None:
        """Drop all tracked bookmarks of the given databases."""
        pass


class InMemoryBookmarkManager(BookmarkManager):
    """
    Thread-safe in-process bookmark manager.

    Each database has its own lock, created on first use, so updates to
    different databases do not contend with each other.

    Args:
        initial_bookmarks: Bookmarks to start with, per database name
        bookmarks_supplier: Called with a database name on every
            ``get_bookmarks``; its result is merged into the answer
        bookmarks_consumer: Called with ``(database, bookmarks)`` after each
            update that changed the tracked set, outside of any lock

    Example:
        >>> manager = InMemoryBookmarkManager(
        ...     initial_bookmarks={"neo4j": ["bm:1"]}
        ... )
        >>> "bm:1" in manager.get_bookmarks("neo4j")
        True
    """

    def __init__(
        self,
        initial_bookmarks: Optional[Mapping[str, Iterable[str]]] = None,
        bookmarks_supplier: Optional[Callable[[str], Bookmarks]] = None,
        bookmarks_consumer: Optional[Callable[[str, Bookmarks], None]] = None,
    ):
        self._bookmarks: Dict[str, frozenset] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._bookmarks_supplier = bookmarks_supplier
        self._bookmarks_consumer = bookmarks_consumer

        for database, values in (initial_bookmarks or {}).items():
            if isinstance(values, Bookmarks):
                values = values.raw_values
            self._bookmarks[database] = Bookmarks.from_raw_values(values).raw_values

    def _lock_for(self, database: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(database)
            if lock is None:
                lock = threading.Lock()
                self._locks[database] = lock
            return lock

    def get_bookmarks(self, database: str) -> Bookmarks:
        with self._lock_for(database):
            tokens = self._bookmarks.get(database, frozenset())
        bookmarks = Bookmarks.from_raw_values(tokens)
        if self._bookmarks_supplier is not None:
            bookmarks = bookmarks + self._bookmarks_supplier(database)
        return bookmarks

    def update_bookmarks(
        self, database: str, previous_bookmarks: Bookmarks, new_bookmarks: Bookmarks
    ) -> None:
        if not new_bookmarks:
            return
        with self._lock_for(database):
            current = self._bookmarks.get(database, frozenset())
            updated = (current - previous_bookmarks.raw_values) | new_bookmarks.raw_values
            self._bookmarks[database] = updated
        logger.debug(
            f"Bookmarks for '{database}' updated: "
            f"{len(current)} -> {len(updated)} token(s)"
        )
        if self._bookmarks_consumer is not None:
            self._bookmarks_consumer(database, Bookmarks.from_raw_values(updated))

    def get_all_bookmarks(self) -> Bookmarks:
        with self._registry_lock:
            databases = list(self._bookmarks)
        result = Bookmarks()
        for database in databases:
            with self._lock_for(database):
                tokens = self._bookmarks.get(database, frozenset())
            result = result + Bookmarks.from_raw_values(tokens)
        return result

    def forget(self, databases: Iterable[str]) -> None:
        for database in databases:
            with self._lock_for(database):
                self._bookmarks.pop(database, None)

    def databases(self) -> list:
        """Names of the databases with tracked bookmarks."""
        with self._registry_lock:
            return sorted(self._bookmarks)


def bookmark_manager(
    initial_bookmarks: Optional[Mapping[str, Iterable[str]]] = None,
    bookmarks_supplier: Optional[Callable[[str], Bookmarks]] = None,
    bookmarks_consumer: Optional[Callable[[str, Bookmarks], None]] = None,
) -> BookmarkManager:
    """
    Create the default bookmark manager implementation.

    Share the returned object between the sessions that must observe each
    other's writes.
    """
    return InMemoryBookmarkManager(
        initial_bookmarks=initial_bookmarks,
        bookmarks_supplier=bookmarks_supplier,
        bookmarks_consumer=bookmarks_consumer,
    )


__all__ = [
    "Bookmarks",
    "BookmarkManager",
    "InMemoryBookmarkManager",
    "bookmark_manager",
]
