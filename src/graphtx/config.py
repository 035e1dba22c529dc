"""
Configuration models for drivers, sessions and transactions.

All options are validated with Pydantic. Driver options can be loaded
from a YAML file; string values may reference environment variables with
``${VAR}``.

Example YAML:
    driver:
      default_database: neo4j
      fetch_size: 500
      max_transaction_retry_time: 15
      initial_retry_delay: 0.5
      notifications_min_severity: WARNING
      notifications_disabled_categories:
        - HINT
"""

import os
import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .bookmarks import BookmarkManager, Bookmarks
from .exceptions import ConfigurationError

DEFAULT_DATABASE = "neo4j"
DEFAULT_FETCH_SIZE = 1000

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


class AccessMode(str, Enum):
    """Access mode of a unit of work."""

    READ = "read"
    WRITE = "write"

    @classmethod
    def parse(cls, value: Union[str, "AccessMode"]) -> "AccessMode":
        """Accept enum members, ``read``/``write`` and ``r``/``w`` in any case."""
        if isinstance(value, AccessMode):
            return value
        if isinstance(value, str):
            lowered = value.lower()
            if lowered in ("r", "read"):
                return cls.READ
            if lowered in ("w", "write"):
                return cls.WRITE
        raise ValueError(
            f"Invalid access mode '{value}'. Valid options: read, write, r, w"
        )


class NotificationMinSeverity(str, Enum):
    """Lowest severity of notifications the server should send."""

    OFF = "OFF"
    WARNING = "WARNING"
    INFORMATION = "INFORMATION"


class NotificationSeverity(str, Enum):
    """Severity of a notification."""

    WARNING = "WARNING"
    INFORMATION = "INFORMATION"
    UNKNOWN = "UNKNOWN"


class NotificationCategory(str, Enum):
    """Category of a notification."""

    HINT = "HINT"
    UNRECOGNIZED = "UNRECOGNIZED"
    UNSUPPORTED = "UNSUPPORTED"
    PERFORMANCE = "PERFORMANCE"
    DEPRECATION = "DEPRECATION"
    GENERIC = "GENERIC"
    SECURITY = "SECURITY"
    TOPOLOGY = "TOPOLOGY"
    SCHEMA = "SCHEMA"
    UNKNOWN = "UNKNOWN"


_SEVERITY_RANK = {
    NotificationSeverity.INFORMATION: 1,
    NotificationSeverity.WARNING: 2,
    NotificationSeverity.UNKNOWN: 2,
}

_MIN_SEVERITY_RANK = {
    NotificationMinSeverity.INFORMATION: 1,
    NotificationMinSeverity.WARNING: 2,
}


def _enum_text(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    return str(value).upper()


class NotificationFilter(BaseModel):
    """
    Which notifications the server should send.

    Attributes:
        min_severity: Lowest severity to keep; ``OFF`` disables all
        disabled_categories: Categories to drop regardless of severity

    Example:
        >>> f = NotificationFilter(min_severity="WARNING", disabled_categories=["HINT"])
        >>> f.allows("INFORMATION", "PERFORMANCE")
        False
        >>> f.allows("WARNING", "DEPRECATION")
        True
    """

    model_config = ConfigDict(frozen=True)

    min_severity: NotificationMinSeverity = Field(
        default=NotificationMinSeverity.INFORMATION,
        description="Lowest notification severity to keep",
    )
    disabled_categories: FrozenSet[NotificationCategory] = Field(
        default_factory=frozenset,
        description="Notification categories to drop",
    )

    @field_validator("min_severity", mode="before")
    @classmethod
    def validate_min_severity(cls, v):
        """Accept severity names in any case."""
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("disabled_categories", mode="before")
    @classmethod
    def validate_disabled_categories(cls, v):
        """Accept a single category, a list of names or None."""
        if v is None:
            return frozenset()
        if isinstance(v, str):
            v = [v]
        return frozenset(c.upper() if isinstance(c, str) else c for c in v)

    def allows(
        self,
        severity: Union[str, NotificationSeverity],
        category: Union[str, NotificationCategory],
    ) -> bool:
        """Check if a notification passes this filter."""
        if self.min_severity == NotificationMinSeverity.OFF:
            return False
        try:
            severity = NotificationSeverity(_enum_text(severity))
        except ValueError:
            severity = NotificationSeverity.UNKNOWN
        try:
            category = NotificationCategory(_enum_text(category))
        except ValueError:
            category = NotificationCategory.UNKNOWN
        if category in self.disabled_categories:
            return False
        return _SEVERITY_RANK[severity] >= _MIN_SEVERITY_RANK[self.min_severity]


class TransactionConfig(BaseModel):
    """
    Per-transaction options.

    Attributes:
        timeout: Server-side timeout in seconds; None uses the server default
        metadata: Metadata attached to the transaction, visible in server logs
    """

    model_config = ConfigDict(frozen=True)

    timeout: Optional[float] = Field(
        default=None, ge=0, description="Transaction timeout in seconds"
    )
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, description="Transaction metadata"
    )


class SessionConfig(BaseModel):
    """
    Options for a session.

    Attributes:
        database: Target database; None means the driver's default database
        default_access_mode: Access mode for auto-commit queries
        impersonated_user: User to impersonate for all work in the session
        bookmarks: Bookmarks the first transaction must wait for
        bookmark_manager: Shared bookmark manager, or None to opt out
        fetch_size: Records pulled per batch; -1 pulls everything at once,
            None uses the driver setting
        notifications_min_severity: Notification severity floor
        notifications_disabled_categories: Notification categories to drop
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    database: Optional[str] = Field(default=None, description="Target database")
    default_access_mode: AccessMode = Field(
        default=AccessMode.WRITE, description="Access mode for auto-commit queries"
    )
    impersonated_user: Optional[str] = Field(
        default=None, description="User to impersonate"
    )
    bookmarks: Bookmarks = Field(
        default_factory=Bookmarks, description="Initial bookmarks"
    )
    bookmark_manager: Optional[BookmarkManager] = Field(
        default=None, description="Shared bookmark manager"
    )
    fetch_size: Optional[int] = Field(
        default=None, ge=-1, description="Records per pull, -1 for all"
    )
    notifications_min_severity: Optional[NotificationMinSeverity] = Field(
        default=None, description="Notification severity floor"
    )
    notifications_disabled_categories: Optional[FrozenSet[NotificationCategory]] = (
        Field(default=None, description="Notification categories to drop")
    )

    @field_validator("default_access_mode", mode="before")
    @classmethod
    def validate_access_mode(cls, v):
        """Accept read/write/r/w strings."""
        return AccessMode.parse(v)

    @field_validator("bookmarks", mode="before")
    @classmethod
    def validate_bookmarks(cls, v):
        """Accept Bookmarks, an iterable of raw tokens or None."""
        if v is None:
            return Bookmarks()
        if isinstance(v, Bookmarks):
            return v
        return Bookmarks.from_raw_values(v)

    @field_validator("fetch_size")
    @classmethod
    def validate_fetch_size(cls, v):
        """Zero records per pull would never make progress."""
        if v == 0:
            raise ValueError("fetch_size must be positive or -1")
        return v

    @field_validator("notifications_min_severity", mode="before")
    @classmethod
    def validate_min_severity(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("notifications_disabled_categories", mode="before")
    @classmethod
    def validate_disabled_categories(cls, v):
        if v is None:
            return None
        if isinstance(v, str):
            v = [v]
        return frozenset(c.upper() if isinstance(c, str) else c for c in v)


class DriverConfig(BaseModel):
    """
    Driver-wide options.

    Retry options shape the backoff of managed transactions: the n-th
    retry waits ``initial_retry_delay * retry_delay_multiplier ** n``
    seconds (capped at ``max_retry_delay``) plus or minus
    ``retry_delay_jitter_factor`` of that delay, until
    ``max_transaction_retry_time`` seconds have passed.
    """

    model_config = ConfigDict(extra="forbid")

    default_database: str = Field(
        default=DEFAULT_DATABASE, min_length=1, description="Default database name"
    )
    fetch_size: int = Field(
        default=DEFAULT_FETCH_SIZE, ge=-1, description="Records per pull, -1 for all"
    )
    max_transaction_retry_time: float = Field(
        default=30.0, ge=0, description="Retry budget of managed transactions"
    )
    initial_retry_delay: float = Field(
        default=1.0, ge=0, description="Delay before the first retry"
    )
    retry_delay_multiplier: float = Field(
        default=2.0, ge=1.0, description="Exponential backoff multiplier"
    )
    retry_delay_jitter_factor: float = Field(
        default=0.2, ge=0, le=1, description="Random jitter as a fraction of the delay"
    )
    max_retry_delay: float = Field(
        default=60.0, gt=0, description="Cap on a single backoff delay"
    )
    max_connection_pool_size: int = Field(
        default=100, ge=1, description="Maximum pooled connections"
    )
    connection_acquisition_timeout: float = Field(
        default=60.0, ge=0, description="Seconds to wait for a free connection"
    )
    notifications_min_severity: Optional[NotificationMinSeverity] = Field(
        default=None, description="Default notification severity floor"
    )
    notifications_disabled_categories: Optional[FrozenSet[NotificationCategory]] = (
        Field(default=None, description="Default notification categories to drop")
    )

    @field_validator("fetch_size")
    @classmethod
    def validate_fetch_size(cls, v):
        if v == 0:
            raise ValueError("fetch_size must be positive or -1")
        return v

    @field_validator("notifications_min_severity", mode="before")
    @classmethod
    def validate_min_severity(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("notifications_disabled_categories", mode="before")
    @classmethod
    def validate_disabled_categories(cls, v):
        if v is None:
            return None
        if isinstance(v, str):
            v = [v]
        return frozenset(c.upper() if isinstance(c, str) else c for c in v)

    def to_retry_policy(self):
        """Build the :class:`~graphtx.retry.RetryPolicy` described by this config."""
        from .retry import RetryPolicy

        return RetryPolicy(
            max_retry_time=self.max_transaction_retry_time,
            retry_delay=self.initial_retry_delay,
            backoff_multiplier=self.retry_delay_multiplier,
            max_delay=self.max_retry_delay,
            jitter=self.retry_delay_jitter_factor,
        )


def resolve_notification_filter(
    session: SessionConfig, driver: Optional[DriverConfig] = None
) -> Optional[NotificationFilter]:
    """
    Combine session and driver notification options.

    Session options win. Returns None when neither level configures
    notifications, leaving the choice to the server.
    """
    min_severity = session.notifications_min_severity
    disabled = session.notifications_disabled_categories
    if driver is not None:
        if min_severity is None:
            min_severity = driver.notifications_min_severity
        if disabled is None:
            disabled = driver.notifications_disabled_categories
    if min_severity is None and disabled is None:
        return None
    return NotificationFilter(
        min_severity=min_severity or NotificationMinSeverity.INFORMATION,
        disabled_categories=disabled or frozenset(),
    )


def expand_env_vars(value: Any) -> Any:
    """Recursively expand ``${VAR}`` references in strings of a config tree."""
    if isinstance(value, str):
        return _ENV_VAR_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(v) for v in value]
    return value


def parse_driver_config(config: Optional[Dict[str, Any]]) -> DriverConfig:
    """
    Validate a driver configuration mapping.

    The options may sit at the top level or under a ``driver`` key.

    Raises:
        ConfigurationError: If the mapping holds invalid values
    """
    if config is None:
        return DriverConfig()
    if not isinstance(config, dict):
        raise ConfigurationError(
            f"Driver configuration must be a mapping, got {type(config).__name__}"
        )
    if isinstance(config.get("driver"), dict):
        config = config["driver"]
    try:
        return DriverConfig(**expand_env_vars(config))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid driver configuration: {e}") from e


def load_driver_config(path: Union[str, Path]) -> DriverConfig:
    """
    Load driver options from a YAML file.

    Raises:
        ConfigurationError: If the file is missing, unparseable or invalid
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read driver configuration {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    return parse_driver_config(data or {})


def build_session_config(
    config: Optional[Dict[str, Any]] = None, **kwargs: Any
) -> SessionConfig:
    """
    Validate session options given as a mapping and/or keyword arguments.

    Raises:
        ConfigurationError: If an option is unknown or invalid
    """
    options: Dict[str, Any] = dict(config or {})
    options.update(kwargs)
    unknown = set(options) - set(SessionConfig.model_fields)
    if unknown:
        raise ConfigurationError(f"Unknown session option(s): {sorted(unknown)}")
    try:
        return SessionConfig(**options)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid session configuration: {e}") from e


def build_transaction_config(
    metadata: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None
) -> TransactionConfig:
    """Validate transaction options, raising :class:`ConfigurationError`."""
    if metadata is not None and not isinstance(metadata, dict):
        raise ConfigurationError(
            f"Transaction metadata must be a dict, got {type(metadata).__name__}"
        )
    try:
        return TransactionConfig(metadata=metadata, timeout=timeout)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid transaction configuration: {e}") from e


__all__ = [
    "DEFAULT_DATABASE",
    "DEFAULT_FETCH_SIZE",
    "AccessMode",
    "NotificationMinSeverity",
    "NotificationSeverity",
    "NotificationCategory",
    "NotificationFilter",
    "TransactionConfig",
    "SessionConfig",
    "DriverConfig",
    "resolve_notification_filter",
    "expand_env_vars",
    "parse_driver_config",
    "load_driver_config",
    "build_session_config",
    "build_transaction_config",
]
