"""
Alert Rules
===========

Built-in rules for raising alerts on urgent operational conditions.

An alert rule is evaluated against an AlertRuleContext: the most-recent-first
list of recent executions, the aggregated metrics snapshot and the active
thresholds. Each rule owns its message placeholders (``values``) and the
selection of related execution ids (``related``); rules that can clear
themselves also declare an ``auto_resolve`` predicate.

Usage:
    from lifecycle_observer.alert_rules import BUILTIN_ALERT_RULES, AlertRuleContext

    ctx = AlertRuleContext(recent_executions=recent, metrics=snapshot,
                           thresholds=AlertThresholds(), tool="ai-pr-dev")
    fired = [rule for rule in BUILTIN_ALERT_RULES if rule.condition(ctx)]
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from lifecycle_observer.config import AlertThresholds
from lifecycle_observer.detection_rules import average_duration, success_rate
from lifecycle_observer.metrics import MetricsSnapshot
from lifecycle_observer.records import (
    AlertCategory,
    AlertSeverity,
    ErrorCategory,
    ExecutionRecord,
    ExecutionStatus,
    utc_now,
)
from lifecycle_observer.secret_patterns import contains_secret_pattern

MIN_RATE_SAMPLES = 5
PERF_SAMPLE_SIZE = 5
NETWORK_FAILURE_THRESHOLD = 3
CONFIG_ERROR_THRESHOLD = 2
PERMISSION_ERROR_THRESHOLD = 2


@dataclass
class AlertRuleContext:
    """Input bundle for alert rule evaluation."""
    recent_executions: list[ExecutionRecord]
    metrics: MetricsSnapshot
    thresholds: AlertThresholds
    tool: Optional[str] = None
    project: Optional[str] = None
    now: datetime = field(default_factory=utc_now)
    protected_branches: tuple[str, ...] = ("main", "master")

    @property
    def latest(self) -> Optional[ExecutionRecord]:
        return self.recent_executions[0] if self.recent_executions else None

    def within(self, window_ms: int) -> list[ExecutionRecord]:
        """Recent executions no older than ``window_ms`` before ``now``."""
        cutoff = self.now - timedelta(milliseconds=window_ms)
        return [e for e in self.recent_executions if e.timestamp >= cutoff]


@dataclass(frozen=True)
class AlertRule:
    """
    A rule that raises an alert when its condition holds.

    ``cooldown_ms`` of 0 means the rule is never suppressed by previous alerts.
    """
    id: str
    name: str
    description: str
    category: str                   # AlertCategory value
    severity: str                   # AlertSeverity value
    condition: Callable[[AlertRuleContext], bool]
    message_template: str
    cooldown_ms: int = 0
    enabled: bool = True
    auto_resolve: Optional[Callable[[AlertRuleContext], bool]] = None
    values: Optional[Callable[[AlertRuleContext], dict]] = None
    related: Optional[Callable[[AlertRuleContext], list[str]]] = None

    @property
    def type(self) -> str:
        return self.category

    def render_values(self, ctx: AlertRuleContext) -> dict[str, Any]:
        """Placeholder values for this rule's message template."""
        latest = ctx.latest
        result: dict[str, Any] = {
            "tool": ctx.tool or "Unknown tool",
            "project": ctx.project or "Unknown project",
            "count": 0,
            "percent": "0",
            "threshold": "0",
            "duration": latest.duration if latest else 0,
        }
        if self.values:
            result.update(self.values(ctx))
        return result

    def select_related(self, ctx: AlertRuleContext) -> list[str]:
        """Execution ids attached to an alert raised by this rule."""
        if self.related:
            return self.related(ctx)
        return [e.id for e in ctx.recent_executions[:1]]


# =============================================================================
# Helper Functions
# =============================================================================

def _count_where(executions: list[ExecutionRecord], *error_types: str) -> int:
    return sum(1 for e in executions if e.error_type in error_types)


def count_rate_limit_errors(executions: list[ExecutionRecord]) -> int:
    return _count_where(executions, ErrorCategory.API_RATE_LIMIT.value)


def count_consecutive_failures(executions: list[ExecutionRecord]) -> int:
    """Length of the leading run of failures in a most-recent-first list."""
    count = 0
    for execution in executions:
        if execution.status != ExecutionStatus.FAILURE.value:
            break
        count += 1
    return count


def count_git_errors(executions: list[ExecutionRecord]) -> int:
    return _count_where(executions, ErrorCategory.GIT_ERROR.value)


def count_network_errors(executions: list[ExecutionRecord]) -> int:
    return _count_where(executions, ErrorCategory.NETWORK_ERROR.value, ErrorCategory.TIMEOUT.value)


def count_config_errors(executions: list[ExecutionRecord]) -> int:
    return _count_where(executions, ErrorCategory.CONFIG_INVALID.value)


def count_permission_errors(executions: list[ExecutionRecord]) -> int:
    return _count_where(executions, ErrorCategory.PERMISSION_DENIED.value)


def has_secret_in_output(executions: list[ExecutionRecord]) -> bool:
    return any(contains_secret_pattern(e.output) for e in executions)


def performance_degradation(recent_avg: float, baseline_avg: float) -> float:
    """Percentage increase of ``recent_avg`` over ``baseline_avg`` (0 when baseline is 0)."""
    if baseline_avg == 0:
        return 0.0
    return (recent_avg - baseline_avg) / baseline_avg * 100


def failure_rate(executions: list[ExecutionRecord]) -> float:
    return 1 - success_rate(executions)


def api_failure_rate(executions: list[ExecutionRecord]) -> float:
    if not executions:
        return 0.0
    errors = _count_where(executions, ErrorCategory.API_ERROR.value, ErrorCategory.API_RATE_LIMIT.value)
    return errors / len(executions)


def _coverage_of(execution: ExecutionRecord) -> Optional[float]:
    value = execution.metadata.get("coverage")
    if value is None:
        value = (execution.metadata.get("metrics") or {}).get("coverage")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def latest_coverage(executions: list[ExecutionRecord]) -> tuple[Optional[float], Optional[float]]:
    """The latest and previous coverage readings (fractions) found in metadata."""
    readings = []
    for execution in executions:
        coverage = _coverage_of(execution)
        if coverage is not None:
            readings.append(coverage)
            if len(readings) == 2:
                break
    latest = readings[0] if readings else None
    previous = readings[1] if len(readings) > 1 else None
    return latest, previous


def _fmt_pct(ratio: float) -> str:
    return f"{ratio * 100:.1f}"


# =============================================================================
# Rule Conditions
# =============================================================================

# Security

def _secret_detected(ctx: AlertRuleContext) -> bool:
    return ctx.thresholds.secrets_detected and has_secret_in_output(ctx.recent_executions)


def _secret_related(ctx: AlertRuleContext) -> list[str]:
    return [e.id for e in ctx.recent_executions if contains_secret_pattern(e.output)]


def _permission_escalation(ctx: AlertRuleContext) -> bool:
    if not ctx.thresholds.permission_escalation:
        return False
    return count_permission_errors(ctx.recent_executions) >= PERMISSION_ERROR_THRESHOLD


def _permission_values(ctx: AlertRuleContext) -> dict:
    return {"count": count_permission_errors(ctx.recent_executions)}


def _permission_related(ctx: AlertRuleContext) -> list[str]:
    return [
        e.id for e in ctx.recent_executions
        if e.error_type == ErrorCategory.PERMISSION_DENIED.value
    ]


def _protected_push(ctx: AlertRuleContext) -> bool:
    latest = ctx.latest
    if not ctx.thresholds.unprotected_branch_push or latest is None:
        return False
    return (
        latest.status == ExecutionStatus.SUCCESS.value
        and bool(latest.metadata.get("pushed"))
        and latest.git_branch in ctx.protected_branches
    )


def _protected_push_values(ctx: AlertRuleContext) -> dict:
    latest = ctx.latest
    return {"branch": latest.git_branch if latest else "unknown"}


# Reliability

def _consecutive_failures(ctx: AlertRuleContext) -> bool:
    return count_consecutive_failures(ctx.recent_executions) >= ctx.thresholds.consecutive_failures


def _consecutive_values(ctx: AlertRuleContext) -> dict:
    return {"count": count_consecutive_failures(ctx.recent_executions)}


def _consecutive_related(ctx: AlertRuleContext) -> list[str]:
    failures = [e for e in ctx.recent_executions if e.status == ExecutionStatus.FAILURE.value]
    return [e.id for e in failures[:ctx.thresholds.consecutive_failures]]


def _latest_succeeded(ctx: AlertRuleContext) -> bool:
    latest = ctx.latest
    return latest is not None and latest.status == ExecutionStatus.SUCCESS.value


def _high_failure_rate(ctx: AlertRuleContext) -> bool:
    window = ctx.within(ctx.thresholds.failure_rate_window)
    if len(window) < MIN_RATE_SAMPLES:
        return False
    return failure_rate(window) >= ctx.thresholds.failure_rate_threshold


def _failure_rate_values(ctx: AlertRuleContext) -> dict:
    window = ctx.within(ctx.thresholds.failure_rate_window)
    failures = sum(1 for e in window if e.status == ExecutionStatus.FAILURE.value)
    rate = failures / len(window) if window else 0.0
    return {
        "percent": _fmt_pct(rate),
        "threshold": f"{ctx.thresholds.failure_rate_threshold * 100:.0f}",
    }


# API

def _rate_limit_hits(ctx: AlertRuleContext) -> bool:
    return count_rate_limit_errors(ctx.recent_executions) >= ctx.thresholds.rate_limit_hits


def _rate_limit_values(ctx: AlertRuleContext) -> dict:
    return {"count": count_rate_limit_errors(ctx.recent_executions)}


def _rate_limit_related(ctx: AlertRuleContext) -> list[str]:
    return [
        e.id for e in ctx.recent_executions
        if e.error_type == ErrorCategory.API_RATE_LIMIT.value
    ]


def _api_failure_rate(ctx: AlertRuleContext) -> bool:
    window = ctx.within(ctx.thresholds.api_failure_rate_window)
    if len(window) < MIN_RATE_SAMPLES:
        return False
    return api_failure_rate(window) >= ctx.thresholds.api_failure_rate_threshold


def _api_failure_values(ctx: AlertRuleContext) -> dict:
    window = ctx.within(ctx.thresholds.api_failure_rate_window)
    return {"percent": _fmt_pct(api_failure_rate(window))}


# Performance

def _recent_average(ctx: AlertRuleContext) -> float:
    return average_duration(ctx.recent_executions[:PERF_SAMPLE_SIZE])


def _performance_degraded(ctx: AlertRuleContext) -> bool:
    if len(ctx.recent_executions) < PERF_SAMPLE_SIZE:
        return False
    baseline = ctx.metrics.avg_duration
    if baseline == 0:
        return False
    return _recent_average(ctx) > baseline * ctx.thresholds.avg_duration_multiplier


def _performance_recovered(ctx: AlertRuleContext) -> bool:
    # Too little data is not evidence of recovery.
    if len(ctx.recent_executions) < PERF_SAMPLE_SIZE:
        return False
    baseline = ctx.metrics.avg_duration
    if baseline == 0:
        return False
    return _recent_average(ctx) <= baseline * ctx.thresholds.avg_duration_multiplier


def _degradation_values(ctx: AlertRuleContext) -> dict:
    degradation = performance_degradation(_recent_average(ctx), ctx.metrics.avg_duration)
    return {"percent": f"{degradation:.1f}"}


def _execution_timeout(ctx: AlertRuleContext) -> bool:
    latest = ctx.latest
    if latest is None:
        return False
    return (
        latest.status == ExecutionStatus.TIMEOUT.value
        or latest.duration > ctx.thresholds.timeout_threshold
    )


# Integration

def _git_failures(ctx: AlertRuleContext) -> bool:
    window = ctx.within(ctx.thresholds.git_operation_window)
    return count_git_errors(window) >= ctx.thresholds.git_operation_failures


def _git_values(ctx: AlertRuleContext) -> dict:
    return {"count": count_git_errors(ctx.within(ctx.thresholds.git_operation_window))}


def _network_issues(ctx: AlertRuleContext) -> bool:
    return count_network_errors(ctx.recent_executions) >= NETWORK_FAILURE_THRESHOLD


def _network_values(ctx: AlertRuleContext) -> dict:
    return {"count": count_network_errors(ctx.recent_executions)}


# Configuration

def _config_errors(ctx: AlertRuleContext) -> bool:
    return count_config_errors(ctx.recent_executions) >= CONFIG_ERROR_THRESHOLD


def _config_values(ctx: AlertRuleContext) -> dict:
    return {"count": count_config_errors(ctx.recent_executions)}


def _api_key_missing(ctx: AlertRuleContext) -> bool:
    latest = ctx.latest
    return latest is not None and latest.error_type == ErrorCategory.API_KEY_MISSING.value


def _api_key_configured(ctx: AlertRuleContext) -> bool:
    latest = ctx.latest
    return latest is not None and latest.error_type != ErrorCategory.API_KEY_MISSING.value


# Coverage

def _coverage_dropped(ctx: AlertRuleContext) -> bool:
    latest, previous = latest_coverage(ctx.recent_executions)
    if latest is None:
        return False
    if latest < ctx.thresholds.minimum_coverage:
        return True
    return previous is not None and previous - latest > ctx.thresholds.coverage_drop_threshold


def _coverage_values(ctx: AlertRuleContext) -> dict:
    latest, _ = latest_coverage(ctx.recent_executions)
    return {
        "percent": _fmt_pct(latest or 0.0),
        "threshold": f"{ctx.thresholds.minimum_coverage * 100:.0f}",
    }


# =============================================================================
# Built-in Rules
# =============================================================================

_C = AlertCategory
_SV = AlertSeverity

BUILTIN_ALERT_RULES: tuple[AlertRule, ...] = (
    # Security
    AlertRule(
        id="ALERT-SEC-001",
        name="Secret Detected",
        description="Potential secret or credential detected in tool output",
        category=_C.SECURITY_BREACH.value,
        severity=_SV.CRITICAL.value,
        condition=_secret_detected,
        message_template="Potential secret detected in {{tool}} output. Immediate review required.",
        cooldown_ms=0,
        related=_secret_related,
    ),
    AlertRule(
        id="ALERT-SEC-002",
        name="Permission Errors",
        description="Repeated permission denials may indicate a privilege problem",
        category=_C.SECURITY_BREACH.value,
        severity=_SV.ERROR.value,
        condition=_permission_escalation,
        message_template="Permission denied {{count}} times for {{tool}}",
        cooldown_ms=1_800_000,
        values=_permission_values,
        related=_permission_related,
    ),
    AlertRule(
        id="ALERT-SEC-003",
        name="Protected Branch Push",
        description="A tool pushed directly to a protected branch",
        category=_C.SECURITY_BREACH.value,
        severity=_SV.CRITICAL.value,
        condition=_protected_push,
        message_template="{{tool}} pushed directly to protected branch {{branch}}",
        cooldown_ms=600_000,
        values=_protected_push_values,
    ),

    # Reliability
    AlertRule(
        id="ALERT-REL-001",
        name="Consecutive Failures",
        description="Tool has failed multiple times in a row",
        category=_C.TOOL_FAILURE.value,
        severity=_SV.CRITICAL.value,
        condition=_consecutive_failures,
        message_template="{{tool}} has failed {{count}} consecutive times",
        cooldown_ms=3_600_000,
        auto_resolve=_latest_succeeded,
        values=_consecutive_values,
        related=_consecutive_related,
    ),
    AlertRule(
        id="ALERT-REL-002",
        name="High Failure Rate",
        description="Tool failure rate exceeds threshold",
        category=_C.TOOL_FAILURE.value,
        severity=_SV.ERROR.value,
        condition=_high_failure_rate,
        message_template="{{tool}} failure rate is {{percent}}% (threshold: {{threshold}}%)",
        cooldown_ms=7_200_000,
        values=_failure_rate_values,
    ),

    # API
    AlertRule(
        id="ALERT-API-001",
        name="API Rate Limit",
        description="API rate limit has been hit multiple times",
        category=_C.API_EXHAUSTION.value,
        severity=_SV.ERROR.value,
        condition=_rate_limit_hits,
        message_template="API rate limit hit {{count}} times in the last hour",
        cooldown_ms=1_800_000,
        values=_rate_limit_values,
        related=_rate_limit_related,
    ),
    AlertRule(
        id="ALERT-API-002",
        name="API Failure Rate",
        description="API call failure rate is too high",
        category=_C.API_EXHAUSTION.value,
        severity=_SV.WARNING.value,
        condition=_api_failure_rate,
        message_template="API failure rate is {{percent}}%",
        cooldown_ms=3_600_000,
        values=_api_failure_values,
    ),

    # Performance
    AlertRule(
        id="ALERT-PERF-001",
        name="Performance Degradation",
        description="Tool execution time has significantly increased",
        category=_C.PERFORMANCE_DEGRADATION.value,
        severity=_SV.WARNING.value,
        condition=_performance_degraded,
        message_template="{{tool}} performance degraded by {{percent}}%",
        cooldown_ms=7_200_000,
        auto_resolve=_performance_recovered,
        values=_degradation_values,
    ),
    AlertRule(
        id="ALERT-PERF-002",
        name="Execution Timeout",
        description="Tool execution exceeded timeout threshold",
        category=_C.PERFORMANCE_DEGRADATION.value,
        severity=_SV.ERROR.value,
        condition=_execution_timeout,
        message_template="{{tool}} execution timed out after {{duration}}ms",
        cooldown_ms=1_800_000,
    ),

    # Integration
    AlertRule(
        id="ALERT-INT-001",
        name="Git Operation Failures",
        description="Multiple git operations have failed",
        category=_C.INTEGRATION_BREAK.value,
        severity=_SV.ERROR.value,
        condition=_git_failures,
        message_template="Git operations failed {{count}} times in the last hour",
        cooldown_ms=3_600_000,
        values=_git_values,
    ),
    AlertRule(
        id="ALERT-INT-002",
        name="Network Connectivity Issues",
        description="Multiple network-related failures detected",
        category=_C.INTEGRATION_BREAK.value,
        severity=_SV.WARNING.value,
        condition=_network_issues,
        message_template="Network connectivity issues detected ({{count}} failures)",
        cooldown_ms=1_800_000,
        values=_network_values,
    ),

    # Configuration
    AlertRule(
        id="ALERT-CFG-001",
        name="Configuration Errors",
        description="Multiple configuration-related failures",
        category=_C.CONFIG_INVALID.value,
        severity=_SV.WARNING.value,
        condition=_config_errors,
        message_template="Configuration errors detected in {{tool}} ({{count}} occurrences)",
        cooldown_ms=3_600_000,
        values=_config_values,
    ),
    AlertRule(
        id="ALERT-CFG-002",
        name="Missing API Key",
        description="API key configuration is missing",
        category=_C.CONFIG_INVALID.value,
        severity=_SV.ERROR.value,
        condition=_api_key_missing,
        message_template="API key not configured for {{tool}}",
        cooldown_ms=300_000,
        auto_resolve=_api_key_configured,
    ),

    # Coverage
    AlertRule(
        id="ALERT-COV-001",
        name="Coverage Drop",
        description="Test coverage fell below the minimum or dropped sharply",
        category=_C.COVERAGE_DROP.value,
        severity=_SV.WARNING.value,
        condition=_coverage_dropped,
        message_template="{{tool}} coverage is {{percent}}% (minimum: {{threshold}}%)",
        cooldown_ms=3_600_000,
        values=_coverage_values,
    ),
)
