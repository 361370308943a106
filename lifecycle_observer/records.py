"""
Lifecycle Records
=================

Data model shared by the detection engine, the alert engine and the storage
layer: execution records, improvement suggestions, alerts and query filters.

Enum members carry their wire value; record fields always hold the plain
string value (``ExecutionStatus.FAILURE.value``) so records serialise to JSON
and SQLite without conversion.

Usage:
    from lifecycle_observer.records import ExecutionRecord, ExecutionStatus

    record = ExecutionRecord(
        id=generate_id("exec"),
        timestamp=datetime.now(timezone.utc),
        tool="ai-pr-dev",
        project="shop",
        project_path="/work/shop",
        command="review",
        duration=1200,
        status=ExecutionStatus.SUCCESS.value,
    )
"""

import time
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


# =============================================================================
# Enumerations
# =============================================================================

class LifecycleTool(Enum):
    """Monitored lifecycle tools."""
    AI_PR_DEV = "ai-pr-dev"
    AI_FEATURE_BUILDER = "ai-feature-builder"
    AI_TEST_GENERATOR = "ai-test-generator"
    AI_DOCS_GENERATOR = "ai-docs-generator"
    AI_SQL_DEV = "ai-sql-dev"


class ExecutionStatus(Enum):
    """Final (or in-flight) state of an execution."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class ErrorCategory(Enum):
    """Categorized error types for failed executions."""
    API_KEY_MISSING = "api_key_missing"
    API_RATE_LIMIT = "api_rate_limit"
    API_ERROR = "api_error"
    GIT_ERROR = "git_error"
    FILE_NOT_FOUND = "file_not_found"
    PERMISSION_DENIED = "permission_denied"
    CONFIG_INVALID = "config_invalid"
    PARSE_ERROR = "parse_error"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN = "unknown"


class ImprovementType(Enum):
    """Categories of improvements."""
    PERFORMANCE = "performance"
    RELIABILITY = "reliability"
    USABILITY = "usability"
    SECURITY = "security"
    FEATURE = "feature"
    DOCUMENTATION = "documentation"
    INTEGRATION = "integration"


class ImprovementSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ImprovementScope(Enum):
    """Whether an improvement affects a single tool, the lifecycle, or both."""
    TOOL = "tool"
    LIFECYCLE = "lifecycle"
    BOTH = "both"


class ImprovementStatus(Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"
    DEFERRED = "deferred"


class DetectionMethod(Enum):
    RULE = "rule"
    AI = "ai"
    MANUAL = "manual"


class EstimationLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AlertCategory(Enum):
    """Categories of alerts."""
    SECURITY_BREACH = "security_breach"
    TOOL_FAILURE = "tool_failure"
    API_EXHAUSTION = "api_exhaustion"
    INTEGRATION_BREAK = "integration_break"
    PERFORMANCE_DEGRADATION = "performance_degradation"
    COVERAGE_DROP = "coverage_drop"
    CONFIG_INVALID = "config_invalid"
    DEPENDENCY_ISSUE = "dependency_issue"


class AlertSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertStatus(Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    SUPPRESSED = "suppressed"


# =============================================================================
# Helpers
# =============================================================================

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_id(prefix: Optional[str] = None) -> str:
    """Generate a sortable identifier like ``exec-lq2x9a1c-3f9a0b``."""
    stamp = _to_base36(int(time.time() * 1000))
    suffix = uuid.uuid4().hex[:6]
    ident = f"{stamp}-{suffix}"
    return f"{prefix}-{ident}" if prefix else ident


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(str(value)))


def _serialize(data: dict) -> dict:
    """Convert datetimes in an ``asdict`` result to ISO strings."""
    result = {}
    for key, value in data.items():
        if isinstance(value, datetime):
            result[key] = value.isoformat()
        elif isinstance(value, tuple):
            result[key] = list(value)
        elif isinstance(value, list):
            result[key] = [
                _serialize(v) if isinstance(v, dict) else v
                for v in value
            ]
        else:
            result[key] = value
    return result


# =============================================================================
# Execution Records
# =============================================================================

@dataclass(frozen=True)
class ExecutionRecord:
    """
    One completed invocation of a monitored tool.

    Records are immutable once created. ``context`` holds execution context
    (``git_branch``, ``ai_tokens_used``, ``api_calls``...) and ``metadata``
    holds tool specific data such as captured metrics or raw ``output`` text.
    """
    id: str
    timestamp: datetime
    tool: str
    project: str
    project_path: str
    command: str
    duration: int                   # milliseconds
    status: str                     # ExecutionStatus value
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    error_stack: Optional[str] = None
    args: tuple = ()
    context: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.duration < 0:
            raise ValueError(f"duration must be >= 0, got {self.duration}")
        object.__setattr__(self, "timestamp", as_utc(self.timestamp))
        object.__setattr__(self, "args", tuple(self.args))
        if self.status == ExecutionStatus.FAILURE.value and not self.error_type:
            object.__setattr__(self, "error_type", ErrorCategory.UNKNOWN.value)

    @property
    def output(self) -> Any:
        """Raw tool output captured in metadata, if any."""
        return self.metadata.get("output")

    @property
    def git_branch(self) -> Optional[str]:
        return self.context.get("git_branch")

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return _serialize(asdict(self))

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionRecord":
        """Create an ExecutionRecord from a dictionary."""
        return cls(
            id=data.get("id") or generate_id("exec"),
            timestamp=_parse_dt(data.get("timestamp")) or utc_now(),
            tool=data["tool"],
            project=data["project"],
            project_path=data.get("project_path", ""),
            command=data.get("command", ""),
            duration=int(data.get("duration", 0)),
            status=data["status"],
            error_type=data.get("error_type"),
            error_message=data.get("error_message"),
            error_stack=data.get("error_stack"),
            args=tuple(data.get("args") or ()),
            context=dict(data.get("context") or {}),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ExecutionFilter:
    """Filter options for querying executions."""
    tools: Optional[list[str]] = None
    projects: Optional[list[str]] = None
    statuses: Optional[list[str]] = None
    error_types: Optional[list[str]] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = None
    offset: int = 0

    def matches(self, record: ExecutionRecord) -> bool:
        if self.tools and record.tool not in self.tools:
            return False
        if self.projects and record.project not in self.projects:
            return False
        if self.statuses and record.status not in self.statuses:
            return False
        if self.error_types and record.error_type not in self.error_types:
            return False
        if self.since and record.timestamp < as_utc(self.since):
            return False
        if self.until and record.timestamp > as_utc(self.until):
            return False
        return True


# =============================================================================
# Improvements
# =============================================================================

@dataclass
class NewImprovement:
    """Data required to create an improvement suggestion."""
    improvement_type: str
    severity: str
    scope: str
    title: str
    description: str
    suggested_action: str
    affected_tools: list[str]
    affected_projects: list[str]
    detected_by: str
    detection_context: Optional[str] = None
    related_improvements: list[str] = field(default_factory=list)
    estimated_impact: Optional[str] = None
    estimated_effort: Optional[str] = None
    tags: list[str] = field(default_factory=list)


@dataclass
class ImprovementSuggestion:
    """A persisted improvement suggestion."""
    id: str
    improvement_type: str
    severity: str
    scope: str
    title: str
    description: str
    suggested_action: str
    affected_tools: list[str]
    affected_projects: list[str]
    detected_at: datetime
    detected_by: str
    status: str = ImprovementStatus.OPEN.value
    detection_context: Optional[str] = None
    status_updated_at: Optional[datetime] = None
    resolution: Optional[str] = None
    related_improvements: list[str] = field(default_factory=list)
    estimated_impact: Optional[str] = None
    estimated_effort: Optional[str] = None
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_new(
        cls,
        data: NewImprovement,
        improvement_id: str,
        detected_at: datetime,
    ) -> "ImprovementSuggestion":
        return cls(
            id=improvement_id,
            detected_at=detected_at,
            status=ImprovementStatus.OPEN.value,
            **asdict(data),
        )

    def to_dict(self) -> dict:
        return _serialize(asdict(self))


@dataclass
class ImprovementFilter:
    """Filter options for querying improvements."""
    tools: Optional[list[str]] = None
    projects: Optional[list[str]] = None
    types: Optional[list[str]] = None
    severities: Optional[list[str]] = None
    statuses: Optional[list[str]] = None
    scope: Optional[str] = None
    detected_by: Optional[list[str]] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    tags: Optional[list[str]] = None
    limit: Optional[int] = None
    offset: int = 0

    def matches(self, item: ImprovementSuggestion) -> bool:
        if self.tools and not set(self.tools) & set(item.affected_tools):
            return False
        if self.projects and not set(self.projects) & set(item.affected_projects):
            return False
        if self.types and item.improvement_type not in self.types:
            return False
        if self.severities and item.severity not in self.severities:
            return False
        if self.statuses and item.status not in self.statuses:
            return False
        if self.scope and item.scope != self.scope:
            return False
        if self.detected_by and item.detected_by not in self.detected_by:
            return False
        if self.since and item.detected_at < as_utc(self.since):
            return False
        if self.until and item.detected_at > as_utc(self.until):
            return False
        if self.tags and not set(self.tags) & set(item.tags):
            return False
        return True


# =============================================================================
# Alerts
# =============================================================================

@dataclass
class AlertNotification:
    """Record of one notification attempt for an alert."""
    channel: str
    sent_at: datetime
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return _serialize(asdict(self))

    @classmethod
    def from_dict(cls, data: dict) -> "AlertNotification":
        return cls(
            channel=data["channel"],
            sent_at=_parse_dt(data["sent_at"]),
            success=bool(data["success"]),
            error=data.get("error"),
        )


@dataclass
class NewAlert:
    """Data required to create an alert."""
    category: str
    severity: str
    title: str
    message: str
    triggered_by: str
    context: dict = field(default_factory=dict)
    tool: Optional[str] = None
    project: Optional[str] = None
    related_executions: list[str] = field(default_factory=list)


@dataclass
class Alert:
    """A persisted alert and its lifecycle state."""
    id: str
    category: str
    severity: str
    status: str
    title: str
    message: str
    triggered_at: datetime
    triggered_by: str
    context: dict = field(default_factory=dict)
    tool: Optional[str] = None
    project: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution: Optional[str] = None
    suppressed_until: Optional[datetime] = None
    related_executions: list[str] = field(default_factory=list)
    notifications_sent: list[AlertNotification] = field(default_factory=list)

    @classmethod
    def from_new(cls, data: NewAlert, alert_id: str, triggered_at: datetime) -> "Alert":
        return cls(
            id=alert_id,
            status=AlertStatus.ACTIVE.value,
            triggered_at=triggered_at,
            **asdict(data),
        )

    @property
    def is_active(self) -> bool:
        return self.status == AlertStatus.ACTIVE.value

    def to_dict(self) -> dict:
        return _serialize(asdict(self))


@dataclass
class AlertFilter:
    """Filter options for querying alerts."""
    categories: Optional[list[str]] = None
    severities: Optional[list[str]] = None
    statuses: Optional[list[str]] = None
    tools: Optional[list[str]] = None
    projects: Optional[list[str]] = None
    triggered_by: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = None
    offset: int = 0

    def matches(self, alert: Alert) -> bool:
        if self.categories and alert.category not in self.categories:
            return False
        if self.severities and alert.severity not in self.severities:
            return False
        if self.statuses and alert.status not in self.statuses:
            return False
        if self.tools and alert.tool not in self.tools:
            return False
        if self.projects and alert.project not in self.projects:
            return False
        if self.triggered_by and alert.triggered_by != self.triggered_by:
            return False
        if self.since and alert.triggered_at < as_utc(self.since):
            return False
        if self.until and alert.triggered_at > as_utc(self.until):
            return False
        return True
