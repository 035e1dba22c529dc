"""
Result summaries.

A :class:`ResultSummary` is an immutable snapshot created once a result
has been fully read or consumed. It holds update counters, the query plan
or profile when requested, server notifications and timing information.

Summaries are built from the metadata dictionary a server connection
reports at the end of a query stream::

    {
        "type": "w",
        "db": "neo4j",
        "stats": {"nodes-created": 1, "properties-set": 1},
        "notifications": [...],
        "t_first": 3,
        "t_last": 5,
    }
"""

import logging
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import NotificationCategory, NotificationSeverity

notification_logger = logging.getLogger("graphtx.notifications")


_COUNTER_KEYS = {
    "nodes_created": "nodes-created",
    "nodes_deleted": "nodes-deleted",
    "relationships_created": "relationships-created",
    "relationships_deleted": "relationships-deleted",
    "properties_set": "properties-set",
    "labels_added": "labels-added",
    "labels_removed": "labels-removed",
    "indexes_added": "indexes-added",
    "indexes_removed": "indexes-removed",
    "constraints_added": "constraints-added",
    "constraints_removed": "constraints-removed",
    "system_updates": "system-updates",
}


class SummaryCounters(BaseModel):
    """Update counters of a query."""

    model_config = ConfigDict(frozen=True)

    nodes_created: int = 0
    nodes_deleted: int = 0
    relationships_created: int = 0
    relationships_deleted: int = 0
    properties_set: int = 0
    labels_added: int = 0
    labels_removed: int = 0
    indexes_added: int = 0
    indexes_removed: int = 0
    constraints_added: int = 0
    constraints_removed: int = 0
    system_updates: int = 0
    contains_updates_flag: Optional[bool] = Field(default=None, repr=False)
    contains_system_updates_flag: Optional[bool] = Field(default=None, repr=False)

    @classmethod
    def from_stats(cls, stats: Optional[Dict[str, Any]]) -> "SummaryCounters":
        """Build counters from the server's ``stats`` map (dash-separated keys)."""
        stats = stats or {}
        values: Dict[str, Any] = {}
        for field_name, key in _COUNTER_KEYS.items():
            if key in stats:
                values[field_name] = int(stats[key])
        if "contains-updates" in stats:
            values["contains_updates_flag"] = bool(stats["contains-updates"])
        if "contains-system-updates" in stats:
            values["contains_system_updates_flag"] = bool(
                stats["contains-system-updates"]
            )
        return cls(**values)

    @property
    def contains_updates(self) -> bool:
        """True if any of the data or schema counters is non-zero."""
        if self.contains_updates_flag is not None:
            return self.contains_updates_flag
        return any(
            getattr(self, name) > 0
            for name in _COUNTER_KEYS
            if name != "system_updates"
        )

    @property
    def contains_system_updates(self) -> bool:
        """True if the query changed the system database."""
        if self.contains_system_updates_flag is not None:
            return self.contains_system_updates_flag
        return self.system_updates > 0


class InputPosition(BaseModel):
    """Position in the query text a notification refers to."""

    model_config = ConfigDict(frozen=True)

    offset: int = 0
    line: int = 1
    column: int = 1


class Notification(BaseModel):
    """
    A notification the server attached to a query.

    Attributes:
        code: Notification code, e.g. ``Neo.ClientNotification.Statement.CartesianProduct``
        title: Short summary
        description: Longer explanation
        severity: WARNING or INFORMATION
        category: HINT, PERFORMANCE, DEPRECATION, ...
        position: Where in the query the notification applies, if known
    """

    model_config = ConfigDict(frozen=True)

    code: str = ""
    title: str = ""
    description: str = ""
    severity: NotificationSeverity = NotificationSeverity.UNKNOWN
    category: NotificationCategory = NotificationCategory.UNKNOWN
    position: Optional[InputPosition] = None

    @classmethod
    def from_metadata(cls, data: Dict[str, Any]) -> "Notification":
        severity = str(data.get("severity", "UNKNOWN")).upper()
        category = str(data.get("category", "UNKNOWN")).upper()
        position = data.get("position")
        return cls(
            code=data.get("code", ""),
            title=data.get("title", ""),
            description=data.get("description", ""),
            severity=(
                severity
                if severity in NotificationSeverity.__members__
                else NotificationSeverity.UNKNOWN
            ),
            category=(
                category
                if category in NotificationCategory.__members__
                else NotificationCategory.UNKNOWN
            ),
            position=InputPosition(**position) if position else None,
        )


class Plan(BaseModel):
    """
    One operator of an explained query plan.

    Attributes:
        operator_type: Name of the operator
        identifiers: Identifiers introduced or used by the operator
        arguments: Operator arguments, including ``EstimatedRows``
        children: Child operators
    """

    model_config = ConfigDict(frozen=True)

    operator_type: str
    identifiers: List[str] = Field(default_factory=list)
    arguments: Dict[str, Any] = Field(default_factory=dict)
    children: List["Plan"] = Field(default_factory=list)

    @property
    def estimated_rows(self) -> Optional[float]:
        return self.arguments.get("EstimatedRows")

    @classmethod
    def from_metadata(cls, data: Dict[str, Any]) -> "Plan":
        return cls(
            operator_type=data.get("operatorType", ""),
            identifiers=list(data.get("identifiers", [])),
            arguments=dict(data.get("args", {})),
            children=[cls.from_metadata(c) for c in data.get("children", [])],
        )


class ProfiledPlan(BaseModel):
    """One operator of a profiled (executed) query plan."""

    model_config = ConfigDict(frozen=True)

    operator_type: str
    identifiers: List[str] = Field(default_factory=list)
    arguments: Dict[str, Any] = Field(default_factory=dict)
    children: List["ProfiledPlan"] = Field(default_factory=list)
    db_hits: int = 0
    rows: int = 0
    time: int = 0
    page_cache_hits: int = 0
    page_cache_misses: int = 0
    page_cache_hit_ratio: float = 0.0

    @property
    def estimated_rows(self) -> Optional[float]:
        return self.arguments.get("EstimatedRows")

    @classmethod
    def from_metadata(cls, data: Dict[str, Any]) -> "ProfiledPlan":
        return cls(
            operator_type=data.get("operatorType", ""),
            identifiers=list(data.get("identifiers", [])),
            arguments=dict(data.get("args", {})),
            children=[cls.from_metadata(c) for c in data.get("children", [])],
            db_hits=data.get("dbHits", 0),
            rows=data.get("rows", 0),
            time=data.get("time", 0),
            page_cache_hits=data.get("pageCacheHits", 0),
            page_cache_misses=data.get("pageCacheMisses", 0),
            page_cache_hit_ratio=data.get("pageCacheHitRatio", 0.0),
        )


class ResultSummary(BaseModel):
    """
    Immutable summary of one executed query.

    Attributes:
        query: The query text
        parameters: The parameters sent with it
        query_type: ``r`` (read), ``w`` (write), ``rw`` or ``s`` (schema)
        database: Database the query ran against
        counters: Update counters
        plan: Explained plan, when the query was prefixed with EXPLAIN
        profile: Profiled plan, when the query was prefixed with PROFILE
        notifications: Notifications raised by the server
        result_available_after: Milliseconds until the first record was available
        result_consumed_after: Milliseconds until the last record was consumed
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    query: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    query_type: Optional[str] = None
    database: Optional[str] = None
    counters: SummaryCounters = Field(default_factory=SummaryCounters)
    plan: Optional[Plan] = None
    profile: Optional[ProfiledPlan] = None
    notifications: List[Notification] = Field(default_factory=list)
    result_available_after: Optional[int] = None
    result_consumed_after: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, repr=False)

    @classmethod
    def from_metadata(
        cls,
        query: str,
        parameters: Optional[Dict[str, Any]],
        metadata: Optional[Dict[str, Any]],
    ) -> "ResultSummary":
        """Build a summary from the metadata reported at the end of a stream."""
        metadata = dict(metadata or {})
        plan = metadata.get("plan")
        profile = metadata.get("profile")
        summary = cls(
            query=query,
            parameters=dict(parameters or {}),
            query_type=metadata.get("type"),
            database=metadata.get("db"),
            counters=SummaryCounters.from_stats(metadata.get("stats")),
            plan=Plan.from_metadata(plan) if plan else None,
            profile=ProfiledPlan.from_metadata(profile) if profile else None,
            notifications=[
                Notification.from_metadata(n) for n in metadata.get("notifications", [])
            ],
            result_available_after=metadata.get("t_first"),
            result_consumed_after=metadata.get("t_last"),
            metadata=metadata,
        )
        summary._log_notifications()
        return summary

    def _log_notifications(self) -> None:
        for notification in self.notifications:
            if notification.severity == NotificationSeverity.INFORMATION:
                level = logging.INFO
            else:
                level = logging.WARNING
            notification_logger.log(
                level,
                f"Received notification from DBMS server: "
                f"{notification.severity.value} {notification.category.value} "
                f"{notification.code}: {notification.title} "
                f"(query: {self.query!r})",
            )


class EagerResult(NamedTuple):
    """
    A fully-read result: ``(records, summary, keys)``.

    Returned by :meth:`graphtx.result.Result.to_eager_result` and
    :meth:`graphtx.driver.Driver.execute_query`.
    """

    records: List[Any]
    summary: ResultSummary
    keys: List[str]


__all__ = [
    "SummaryCounters",
    "InputPosition",
    "Notification",
    "Plan",
    "ProfiledPlan",
    "ResultSummary",
    "EagerResult",
]
