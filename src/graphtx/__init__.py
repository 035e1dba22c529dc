"""
graphtx: client-side transaction engine for graph databases.

Sessions chain transactions causally through bookmarks, results stream
lazily in batches, and managed transactions retry on transient failures.

Example:
    >>> from graphtx import Driver
    >>> from graphtx.io import MemoryServer
    >>> driver = Driver(MemoryServer().pool())
    >>> with driver.session() as session:
    ...     session.execute_write(lambda tx: tx.run("CREATE ()").consume())
"""

from .bookmarks import Bookmarks, BookmarkManager, InMemoryBookmarkManager, bookmark_manager
from .config import (
    AccessMode,
    DriverConfig,
    NotificationCategory,
    NotificationFilter,
    NotificationMinSeverity,
    NotificationSeverity,
    SessionConfig,
    TransactionConfig,
    load_driver_config,
    parse_driver_config,
)
from .exceptions import (
    ErrorKind,
    GraphDriverError,
    ServerError,
    ClientRequestError,
    CypherSyntaxError,
    CypherTypeError,
    ConstraintError,
    AuthError,
    Forbidden,
    TransactionTimedOut,
    TransientServerError,
    DatabaseUnavailable,
    NotALeader,
    ForbiddenOnReadOnlyDatabase,
    DatabaseError,
    ServiceUnavailable,
    SessionExpired,
    IncompleteCommit,
    ProtocolError,
    UsageError,
    ConfigurationError,
    SessionClosedError,
    TransactionError,
    TransactionClosedError,
    TransactionNestingError,
    ResultError,
    ResultConsumedError,
    ResultFailedError,
    ResultNotSingleError,
    NoRecordError,
    ResultLeakError,
    RetriesExhaustedError,
    classify_error,
    is_retryable_error,
)
from .record import Record
from .summary import (
    EagerResult,
    InputPosition,
    Notification,
    Plan,
    ProfiledPlan,
    ResultSummary,
    SummaryCounters,
)
from .query import Query, unit_of_work
from .result import Result
from .transaction import ManagedTransaction, Transaction, TransactionState
from .retry import RetryContext, RetryPolicy, TransactionRunner
from .session import Session
from .driver import Driver, RoutingControl

__version__ = "0.1.0"

__all__ = [
    # Bookmarks
    "Bookmarks",
    "BookmarkManager",
    "InMemoryBookmarkManager",
    "bookmark_manager",
    # Configuration
    "AccessMode",
    "DriverConfig",
    "SessionConfig",
    "TransactionConfig",
    "NotificationFilter",
    "NotificationMinSeverity",
    "NotificationSeverity",
    "NotificationCategory",
    "load_driver_config",
    "parse_driver_config",
    # Errors
    "ErrorKind",
    "GraphDriverError",
    "ServerError",
    "ClientRequestError",
    "CypherSyntaxError",
    "CypherTypeError",
    "ConstraintError",
    "AuthError",
    "Forbidden",
    "TransactionTimedOut",
    "TransientServerError",
    "DatabaseUnavailable",
    "NotALeader",
    "ForbiddenOnReadOnlyDatabase",
    "DatabaseError",
    "ServiceUnavailable",
    "SessionExpired",
    "IncompleteCommit",
    "ProtocolError",
    "UsageError",
    "ConfigurationError",
    "SessionClosedError",
    "TransactionError",
    "TransactionClosedError",
    "TransactionNestingError",
    "ResultError",
    "ResultConsumedError",
    "ResultFailedError",
    "ResultNotSingleError",
    "NoRecordError",
    "ResultLeakError",
    "RetriesExhaustedError",
    "classify_error",
    "is_retryable_error",
    # Records and summaries
    "Record",
    "EagerResult",
    "ResultSummary",
    "SummaryCounters",
    "Notification",
    "InputPosition",
    "Plan",
    "ProfiledPlan",
    # Work
    "Query",
    "unit_of_work",
    "Result",
    "Transaction",
    "ManagedTransaction",
    "TransactionState",
    "RetryPolicy",
    "RetryContext",
    "TransactionRunner",
    "Session",
    "Driver",
    "RoutingControl",
    "__version__",
]
