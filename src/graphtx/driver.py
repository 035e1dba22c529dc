"""
Driver: the entry point that owns the connection pool and hands out sessions.

Example:
    >>> from graphtx import Driver
    >>> from graphtx.io import MemoryServer
    >>> server = MemoryServer()
    >>> driver = Driver(server.pool(), max_transaction_retry_time=5)
    >>> records, summary, keys = driver.execute_query(
    ...     "MATCH (p:Person) RETURN p.name AS name", database="neo4j"
    ... )
    >>> driver.close()
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from .bookmarks import BookmarkManager, bookmark_manager
from .config import (
    AccessMode,
    DriverConfig,
    build_session_config,
    load_driver_config,
    parse_driver_config,
)
from .exceptions import ConfigurationError, UsageError
from .io.base import ServerConnection
from .io.pool import ConnectionPool
from .query import Query, split_query
from .result import Result
from .retry import RetryPolicy
from .session import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")

_default = object()


class RoutingControl(str, Enum):
    """Where ``execute_query`` sends its transaction."""

    READ = "r"
    WRITE = "w"


class Driver:
    """
    Holds the connection pool and driver-wide configuration.

    Args:
        pool: Connection pool used by every session, or a factory of
            connections from which the driver builds its own pool
        config: Driver options; defaults apply when omitted
        **options: Individual :class:`~graphtx.config.DriverConfig` fields,
            overriding ``config``

    Raises:
        ConfigurationError: If an option is unknown or invalid
    """

    def __init__(
        self,
        pool: Union[ConnectionPool, Callable[[], ServerConnection]],
        config: Optional[DriverConfig] = None,
        **options: Any,
    ):
        if config is None:
            config = parse_driver_config(options)
        elif options:
            merged = config.model_dump(exclude_unset=True)
            merged.update(options)
            config = parse_driver_config(merged)
        self._pool = self._build_pool(pool, config)
        self._config = config
        self._retry_policy = config.to_retry_policy()
        self._query_bookmark_manager = bookmark_manager()
        self._closed = False
        logger.debug(f"Driver created with default database '{config.default_database}'")

    @staticmethod
    def _build_pool(pool, config: DriverConfig) -> ConnectionPool:
        if not isinstance(pool, ConnectionPool):
            return ConnectionPool(
                pool,
                max_size=config.max_connection_pool_size,
                acquisition_timeout=config.connection_acquisition_timeout,
            )
        # Only sizing options set explicitly override the pool's own settings
        configured = config.model_fields_set
        pool.configure(
            max_size=(
                config.max_connection_pool_size
                if "max_connection_pool_size" in configured
                else None
            ),
            acquisition_timeout=(
                config.connection_acquisition_timeout
                if "connection_acquisition_timeout" in configured
                else None
            ),
        )
        return pool

    @classmethod
    def from_config_file(
        cls,
        pool: Union[ConnectionPool, Callable[[], ServerConnection]],
        path: Union[str, Path],
    ) -> "Driver":
        """Create a driver with options loaded from a YAML file."""
        return cls(pool, load_driver_config(path))

    def __enter__(self) -> "Driver":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @property
    def config(self) -> DriverConfig:
        return self._config

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    @property
    def execute_query_bookmark_manager(self) -> BookmarkManager:
        """Bookmark manager shared by every ``execute_query`` call by default."""
        return self._query_bookmark_manager

    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise UsageError("Driver is closed")

    def session(self, **options: Any) -> Session:
        """
        Open a session.

        Args:
            **options: :class:`~graphtx.config.SessionConfig` fields, such as
                ``database``, ``bookmarks``, ``bookmark_manager``,
                ``default_access_mode`` or ``fetch_size``

        Raises:
            ConfigurationError: If an option is unknown or invalid
        """
        self._check_open()
        config = build_session_config(**options)
        return Session(self._pool, config, self._config, self._retry_policy)

    def execute_query(
        self,
        query: Union[str, Query],
        parameters: Optional[Dict[str, Any]] = None,
        routing: Union[RoutingControl, str] = RoutingControl.WRITE,
        database: Optional[str] = None,
        impersonated_user: Optional[str] = None,
        bookmark_manager: Any = _default,
        result_transformer: Callable[[Result], T] = Result.to_eager_result,
        **kwparameters: Any,
    ) -> T:
        """
        Run one query in a managed transaction and return its transformed result.

        By default queries are causally chained with each other through
        :attr:`execute_query_bookmark_manager`; pass ``bookmark_manager=None``
        to opt out.

        Args:
            query: Query text, or a :class:`~graphtx.query.Query` with options
            parameters: Query parameters
            routing: ``"r"`` to run as a read, ``"w"`` to run as a write
            database: Target database; None means the default database
            impersonated_user: User to run the query as
            bookmark_manager: Bookmark manager to use, or None
            result_transformer: Turns the result into the return value while
                the transaction is still open
            **kwparameters: Additional parameters, merged over ``parameters``

        Returns:
            Whatever ``result_transformer`` returned, by default an
            :class:`~graphtx.summary.EagerResult`
        """
        self._check_open()
        if bookmark_manager is _default:
            bookmark_manager = self._query_bookmark_manager
        if isinstance(routing, str):
            try:
                routing = RoutingControl(routing.lower()[:1])
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid routing '{routing}'. Valid options: r, w"
                ) from e
        access_mode = AccessMode.READ if routing == RoutingControl.READ else AccessMode.WRITE

        text, tx_config = split_query(query)
        params = dict(parameters or {})
        params.update(kwparameters)

        def work(tx):
            return result_transformer(tx.run(text, params))

        with self.session(
            database=database,
            impersonated_user=impersonated_user,
            bookmark_manager=bookmark_manager,
        ) as session:
            return session._run_transaction(access_mode, work, (), {}, tx_config)

    def verify_connectivity(self) -> None:
        """
        Check that a connection can be obtained.

        Raises:
            ServiceUnavailable: If no connection is available
        """
        self._check_open()
        connection = self._pool.acquire(AccessMode.READ, self._config.default_database)
        self._pool.release(connection)

    def close(self) -> None:
        """Close the pool. Closing twice is a no-op."""
        if self._closed:
            return
        self._closed = True
        self._pool.close()
        logger.debug("Driver closed")


__all__ = ["Driver", "RoutingControl"]
