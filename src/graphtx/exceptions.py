"""
Error hierarchy and classification for the transaction engine.

Every error raised by graphtx derives from :class:`GraphDriverError`.
Errors fall into five kinds (see :class:`ErrorKind`):

- transient server errors, which a managed transaction retries
- client request errors (bad query, constraint violation, auth)
- database errors (server-side failure, not retryable)
- protocol errors (unexpected server behaviour, fatal to the connection)
- usage errors (the API was called in a way it does not allow)

Server errors are created from their status code::

    >>> err = ServerError.from_code(
    ...     "Neo.TransientError.Transaction.DeadlockDetected", "deadlock"
    ... )
    >>> type(err).__name__, err.is_retryable()
    ('TransientServerError', True)
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type


CLASSIFICATION_CLIENT = "ClientError"
CLASSIFICATION_TRANSIENT = "TransientError"
CLASSIFICATION_DATABASE = "DatabaseError"

UNKNOWN_CODE = "Neo.DatabaseError.General.UnknownError"

# Codes whose classification differs from what their prefix says.
ERROR_REWRITE_MAP: Dict[str, Tuple[str, Optional[str]]] = {
    # Re-authenticating with the same credentials is enough.
    "Neo.ClientError.Security.AuthorizationExpired": (
        CLASSIFICATION_TRANSIENT,
        None,
    ),
    "Neo.TransientError.Transaction.Terminated": (
        CLASSIFICATION_CLIENT,
        "Neo.ClientError.Transaction.Terminated",
    ),
    "Neo.TransientError.Transaction.LockClientStopped": (
        CLASSIFICATION_CLIENT,
        "Neo.ClientError.Transaction.LockClientStopped",
    ),
}


class ErrorKind(str, Enum):
    """Coarse error kinds used to decide between retry and propagation."""

    TRANSIENT = "transient"
    CLIENT_REQUEST = "client_request"
    DATABASE = "database"
    PROTOCOL = "protocol"
    USAGE = "usage"
    UNKNOWN = "unknown"


class GraphDriverError(Exception):
    """Base class for all graphtx errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def is_retryable(self) -> bool:
        """Whether a managed transaction that raised this error may be retried."""
        return False


# =============================================================================
# SERVER ERRORS
# =============================================================================


class ServerError(GraphDriverError):
    """
    Failure reported by the server, identified by a status code.

    Attributes:
        code: Status code, e.g. ``Neo.ClientError.Statement.SyntaxError``
        message: Message sent by the server
        classification: ``ClientError``, ``TransientError`` or ``DatabaseError``
        category: Second segment of the code, e.g. ``Statement``
        title: Last segment of the code, e.g. ``SyntaxError``
    """

    kind = ErrorKind.DATABASE

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or UNKNOWN_CODE
        self.classification: Optional[str] = None
        self.category: Optional[str] = None
        self.title: Optional[str] = None
        self._split_code()

    def _split_code(self) -> None:
        parts = self.code.split(".")
        if len(parts) == 4:
            _, self.classification, self.category, self.title = parts

    @classmethod
    def from_code(cls, code: Optional[str], message: str = "") -> "ServerError":
        """
        Build the most specific error for a server status code.

        Unparseable codes become a :class:`DatabaseError` with the unknown code.
        """
        if not code or len(code.split(".")) != 4:
            return DatabaseError(message or "An unknown error occurred", UNKNOWN_CODE)

        classification = code.split(".")[1]
        rewrite = ERROR_REWRITE_MAP.get(code)
        if rewrite is not None:
            classification, new_code = rewrite
            if new_code is not None:
                code = new_code

        error_class = _error_class_for(classification, code)
        error = error_class(message, code)
        error.classification = classification
        return error

    def __str__(self) -> str:
        return f"{{code: {self.code}}} {{message: {self.message}}}"


class ClientRequestError(ServerError):
    """The request was rejected: malformed query, bad parameters, auth, constraints."""

    kind = ErrorKind.CLIENT_REQUEST


class CypherSyntaxError(ClientRequestError):
    """The query text could not be parsed."""


class CypherTypeError(ClientRequestError):
    """A parameter or expression had the wrong type."""


class ConstraintError(ClientRequestError):
    """A write violated a schema constraint."""


class AuthError(ClientRequestError):
    """Authentication failed."""


class Forbidden(ClientRequestError):
    """The user is not allowed to perform the requested action."""


class TransactionTimedOut(ClientRequestError):
    """The server terminated the transaction because its timeout expired."""


class TransientServerError(ServerError):
    """Temporary failure; the same work may succeed when retried."""

    kind = ErrorKind.TRANSIENT

    def is_retryable(self) -> bool:
        return True


class DatabaseUnavailable(TransientServerError):
    """The requested database is temporarily unavailable."""


class NotALeader(TransientServerError):
    """A write reached a cluster member that is not the leader."""


class ForbiddenOnReadOnlyDatabase(TransientServerError):
    """A write reached a read-only member, typically after a leader switch."""


class DatabaseError(ServerError):
    """The server failed while processing an otherwise valid request."""

    kind = ErrorKind.DATABASE


CLIENT_ERRORS: Dict[str, Type[ClientRequestError]] = {
    "Neo.ClientError.Statement.SyntaxError": CypherSyntaxError,
    "Neo.ClientError.Statement.TypeError": CypherTypeError,
    "Neo.ClientError.Statement.ArgumentError": CypherTypeError,
    "Neo.ClientError.Schema.ConstraintValidationFailed": ConstraintError,
    "Neo.ClientError.Schema.ConstraintViolation": ConstraintError,
    "Neo.ClientError.Security.Unauthorized": AuthError,
    "Neo.ClientError.Security.AuthenticationRateLimit": AuthError,
    "Neo.ClientError.Security.Forbidden": Forbidden,
    "Neo.ClientError.Transaction.TransactionTimedOut": TransactionTimedOut,
    "Neo.ClientError.Transaction.TransactionTimedOutClientConfiguration": (
        TransactionTimedOut
    ),
}

TRANSIENT_ERRORS: Dict[str, Type[TransientServerError]] = {
    "Neo.TransientError.General.DatabaseUnavailable": DatabaseUnavailable,
    "Neo.TransientError.Cluster.NotALeader": NotALeader,
    "Neo.TransientError.General.ForbiddenOnReadOnlyDatabase": (
        ForbiddenOnReadOnlyDatabase
    ),
}


def _error_class_for(classification: str, code: str) -> Type[ServerError]:
    if classification == CLASSIFICATION_CLIENT:
        return CLIENT_ERRORS.get(code, ClientRequestError)
    if classification == CLASSIFICATION_TRANSIENT:
        return TRANSIENT_ERRORS.get(code, TransientServerError)
    return DatabaseError


# =============================================================================
# CONNECTION ERRORS
# =============================================================================


class ServiceUnavailable(GraphDriverError):
    """No server could be reached, or the connection broke before completion."""

    kind = ErrorKind.TRANSIENT

    def is_retryable(self) -> bool:
        return True


class SessionExpired(GraphDriverError):
    """The connection a session was using is no longer able to serve it."""

    kind = ErrorKind.TRANSIENT

    def is_retryable(self) -> bool:
        return True


class IncompleteCommit(ServiceUnavailable):
    """
    The connection broke while waiting for a commit response.

    The transaction may or may not have been committed, so replaying a
    non-idempotent function is unsafe: this error is never retried.
    """

    kind = ErrorKind.PROTOCOL

    def is_retryable(self) -> bool:
        return False


class ProtocolError(GraphDriverError):
    """The server answered in an unexpected way; the connection must be discarded."""

    kind = ErrorKind.PROTOCOL


# =============================================================================
# USAGE ERRORS
# =============================================================================


class UsageError(GraphDriverError):
    """The API was used in a way it does not allow."""

    kind = ErrorKind.USAGE


class ConfigurationError(UsageError):
    """Invalid driver, session or transaction configuration."""


class SessionClosedError(UsageError):
    """Raised when a closed session is used."""

    def __init__(self, session: Any = None, message: str = "Session is closed"):
        super().__init__(message)
        self.session = session


class TransactionError(UsageError):
    """Raised when a transaction is used incorrectly."""

    def __init__(self, transaction: Any, message: str):
        super().__init__(message)
        self.transaction = transaction


class TransactionClosedError(TransactionError):
    """Raised when a transaction that is no longer open is used."""


class TransactionNestingError(TransactionError):
    """Raised when a second unit of work is started while one is still open."""


class ResultError(UsageError):
    """Raised when a result is used incorrectly."""

    def __init__(self, result: Any, message: str):
        super().__init__(message)
        self.result = result


class ResultConsumedError(ResultError):
    """Raised when records are requested from a result that went out of scope."""


class ResultFailedError(ResultError):
    """Raised when a result that already failed is used again."""


class ResultNotSingleError(ResultError):
    """Raised when a result expected to hold exactly one record does not."""


class NoRecordError(ResultNotSingleError):
    """Raised when a result expected to hold one record holds none."""


class ResultLeakError(ResultError):
    """Raised when a transaction function returns a live result."""


# =============================================================================
# RETRY
# =============================================================================


class RetriesExhaustedError(GraphDriverError):
    """
    A managed transaction kept failing with retryable errors.

    Attributes:
        errors: Every retryable error seen, oldest first
        attempts: Number of times the transaction function was invoked
        last_error: The final retryable error (also ``__cause__``)
    """

    kind = ErrorKind.TRANSIENT

    def __init__(self, errors: List[BaseException], attempts: int, elapsed: float):
        self.errors = list(errors)
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_error = self.errors[-1] if self.errors else None
        last = type(self.last_error).__name__ if self.last_error else "none"
        super().__init__(
            f"Transaction failed after {attempts} attempt(s) in {elapsed:.2f}s; "
            f"last error: {last}: {self.last_error}"
        )


# =============================================================================
# CLASSIFICATION
# =============================================================================


def classify_error(error: BaseException) -> ErrorKind:
    """
    Classify an exception into an :class:`ErrorKind`.

    Exceptions that do not come from graphtx are ``UNKNOWN``; they are
    treated as application errors and never retried.

    Example:
        >>> classify_error(ServerError.from_code("Neo.ClientError.Statement.SyntaxError"))
        <ErrorKind.CLIENT_REQUEST: 'client_request'>
        >>> classify_error(ValueError("boom"))
        <ErrorKind.UNKNOWN: 'unknown'>
    """
    if isinstance(error, GraphDriverError):
        return error.kind
    return ErrorKind.UNKNOWN


def is_retryable_error(error: BaseException) -> bool:
    """Check if an error allows a managed transaction to be retried."""
    if isinstance(error, GraphDriverError):
        return error.is_retryable()
    return False


__all__ = [
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
]
