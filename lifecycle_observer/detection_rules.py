"""
Detection Rules
===============

Built-in improvement detection rules and the trend helpers they use.

Each rule is a declarative record plus a pure condition function. The
condition receives a RuleContext (the execution under evaluation and three
most-recent-first history slices) and returns a DetectionResult.

Usage:
    from lifecycle_observer.detection_rules import BUILTIN_DETECTION_RULES, RuleContext

    ctx = RuleContext(execution=record, tool_history=tool_hist,
                      project_history=project_hist, all_history=all_hist)
    for rule in BUILTIN_DETECTION_RULES:
        result = rule.condition(ctx)
        if result.triggered:
            print(rule.id, result.confidence, result.context)
"""

from dataclasses import dataclass, field
from typing import Callable, Optional

from lifecycle_observer.records import (
    ErrorCategory,
    EstimationLevel,
    ExecutionRecord,
    ExecutionStatus,
    ImprovementScope,
    ImprovementSeverity,
    ImprovementType,
)
from lifecycle_observer.secret_patterns import contains_secret_pattern

TREND_SAMPLE_SIZE = 10
TREND_THRESHOLD = 0.1


class HistoryScope:
    """Which history slice a rule's minimum-history requirement applies to."""
    TOOL = "tool"
    PROJECT = "project"
    ALL = "all"


# =============================================================================
# Rule Types
# =============================================================================

@dataclass(frozen=True)
class RuleContext:
    """Context available for detection rule evaluation (histories most-recent-first)."""
    execution: ExecutionRecord
    tool_history: list[ExecutionRecord]
    project_history: list[ExecutionRecord]
    all_history: list[ExecutionRecord]

    def history_for(self, scope: str) -> list[ExecutionRecord]:
        if scope == HistoryScope.PROJECT:
            return self.project_history
        if scope == HistoryScope.ALL:
            return self.all_history
        return self.tool_history


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of one condition evaluation."""
    triggered: bool
    confidence: Optional[float] = None
    context: Optional[str] = None


NOT_TRIGGERED = DetectionResult(triggered=False)


@dataclass(frozen=True)
class DetectionRule:
    """
    A rule that suggests an improvement when its condition holds.

    ``min_history_required`` is checked against the slice named by
    ``history_scope`` before the condition runs. A ``cooldown_ms`` of None or
    0 means the rule never enters cooldown.
    """
    id: str
    name: str
    description: str
    improvement_type: str           # ImprovementType value
    severity: str                   # ImprovementSeverity value
    scope: str                      # ImprovementScope value
    suggested_action: str
    condition: Callable[[RuleContext], DetectionResult]
    enabled: bool = True
    estimated_impact: str = EstimationLevel.MEDIUM.value
    estimated_effort: str = EstimationLevel.MEDIUM.value
    tags: tuple[str, ...] = ()
    min_history_required: int = 0
    cooldown_ms: Optional[int] = None
    history_scope: str = HistoryScope.TOOL

    # Registry lookup keys
    @property
    def category(self) -> str:
        return self.improvement_type

    @property
    def type(self) -> str:
        return self.improvement_type


@dataclass
class TriggeredImprovement:
    """Transient value produced when a detection rule fires."""
    rule: DetectionRule
    execution: ExecutionRecord
    confidence: float
    context: Optional[str] = None
    affected_tools: list[str] = field(default_factory=list)
    affected_projects: list[str] = field(default_factory=list)


# =============================================================================
# Helper Functions
# =============================================================================

def average_duration(executions: list[ExecutionRecord]) -> float:
    """Mean duration in ms; 0 for an empty list."""
    if not executions:
        return 0.0
    return sum(e.duration for e in executions) / len(executions)


def success_rate(executions: list[ExecutionRecord]) -> float:
    """Fraction of successful executions; 1.0 for an empty list."""
    if not executions:
        return 1.0
    successes = sum(1 for e in executions if e.status == ExecutionStatus.SUCCESS.value)
    return successes / len(executions)


def count_error_type(executions: list[ExecutionRecord], error_type: Optional[str]) -> int:
    """Count executions with the given error category (0 when none is given)."""
    if not error_type:
        return 0
    return sum(1 for e in executions if e.error_type == error_type)


def trend_slope(values: list[float]) -> float:
    """Least-squares slope of ``values`` against their index."""
    n = len(values)
    if n < 2:
        return 0.0
    sum_x = sum(range(n))
    sum_y = sum(values)
    sum_xy = sum(i * v for i, v in enumerate(values))
    sum_x2 = sum(i * i for i in range(n))
    return (n * sum_xy - sum_x * sum_y) / (n * sum_x2 - sum_x * sum_x)


def is_increasing_trend(values: list[float], threshold: float = TREND_THRESHOLD) -> bool:
    """True when the slope exceeds ``threshold`` of the mean per step (needs 3+ samples)."""
    if len(values) < 3:
        return False
    avg = sum(values) / len(values)
    return trend_slope(values) > avg * threshold


def is_decreasing_trend(values: list[float], threshold: float = TREND_THRESHOLD) -> bool:
    if len(values) < 3:
        return False
    return is_increasing_trend([-v for v in values], threshold)


def detect_incompatibility_pattern(
    execution: ExecutionRecord,
    history: list[ExecutionRecord],
) -> bool:
    """
    Check whether this tool keeps failing after other tools succeed.

    True when the execution failed, some other tool recently succeeded in the
    same project, and this tool has failed there at least twice before.
    """
    if execution.status != ExecutionStatus.FAILURE.value:
        return False

    recent_successes = [
        e for e in history
        if e.status == ExecutionStatus.SUCCESS.value
        and e.tool != execution.tool
        and e.project == execution.project
    ][:5]
    if not recent_successes:
        return False

    similar_failures = [
        e for e in history
        if e.tool == execution.tool
        and e.status == ExecutionStatus.FAILURE.value
        and e.project == execution.project
    ]
    return len(similar_failures) >= 2


def has_repeated_api_key_errors(executions: list[ExecutionRecord], threshold: int = 2) -> bool:
    return count_error_type(executions, ErrorCategory.API_KEY_MISSING.value) >= threshold


def has_repeated_rate_limit_errors(executions: list[ExecutionRecord], threshold: int = 3) -> bool:
    return count_error_type(executions, ErrorCategory.API_RATE_LIMIT.value) >= threshold


# =============================================================================
# Rule Conditions
# =============================================================================

def _slow_execution(ctx: RuleContext) -> DetectionResult:
    avg = average_duration(ctx.tool_history)
    if avg == 0:
        return NOT_TRIGGERED
    ratio = ctx.execution.duration / avg
    return DetectionResult(
        triggered=ratio > 2,
        confidence=min(ratio / 3, 1.0),
        context=(
            f"Execution took {ctx.execution.duration}ms vs average {avg:.0f}ms "
            f"({ratio:.1f}x slower)"
        ),
    )


def _increasing_duration(ctx: RuleContext) -> DetectionResult:
    # History is most-recent-first; the trend is measured oldest to newest
    durations = [e.duration for e in reversed(ctx.tool_history[:TREND_SAMPLE_SIZE])]
    return DetectionResult(
        triggered=is_increasing_trend(durations),
        confidence=0.7,
        context=f"Duration trend increasing over last {len(durations)} executions",
    )


def _repeated_error(ctx: RuleContext) -> DetectionResult:
    execution = ctx.execution
    if execution.status != ExecutionStatus.FAILURE.value or not execution.error_type:
        return NOT_TRIGGERED
    count = count_error_type(ctx.tool_history, execution.error_type)
    return DetectionResult(
        triggered=count >= 3,
        confidence=min(count / 5, 1.0),
        context=f'Error type "{execution.error_type}" has occurred {count} times',
    )


def _flaky_tool(ctx: RuleContext) -> DetectionResult:
    if len(ctx.tool_history) < 10:
        return NOT_TRIGGERED
    rate = success_rate(ctx.tool_history)
    failures = sum(1 for e in ctx.tool_history if e.status == ExecutionStatus.FAILURE.value)
    return DetectionResult(
        triggered=0.5 < rate < 0.9,
        confidence=1 - rate,
        context=f"Success rate is {rate * 100:.1f}% ({failures} failures)",
    )


def _consecutive_failures(ctx: RuleContext) -> DetectionResult:
    recent = ctx.tool_history[:3]
    all_failed = all(e.status == ExecutionStatus.FAILURE.value for e in recent)
    return DetectionResult(
        triggered=all_failed and len(recent) >= 3,
        confidence=0.95,
        context=f"Last {len(recent)} executions all failed",
    )


def _api_key_friction(ctx: RuleContext) -> DetectionResult:
    errors = [e for e in ctx.all_history if e.error_type == ErrorCategory.API_KEY_MISSING.value]
    tools = {e.tool for e in errors}
    return DetectionResult(
        triggered=len(errors) >= 2,
        confidence=min(len(errors) / 4, 1.0),
        context=f"{len(errors)} API key errors across {len(tools)} tools",
    )


def _config_missing(ctx: RuleContext) -> DetectionResult:
    if ctx.execution.error_type != ErrorCategory.CONFIG_INVALID.value:
        return NOT_TRIGGERED
    return DetectionResult(
        triggered=True,
        confidence=0.9,
        context=ctx.execution.error_message or "Config error detected",
    )


def _rate_limit_friction(ctx: RuleContext) -> DetectionResult:
    return DetectionResult(
        triggered=has_repeated_rate_limit_errors(ctx.tool_history),
        confidence=0.85,
        context="Multiple rate limit errors suggest need for retry logic",
    )


def _secret_in_output(ctx: RuleContext) -> DetectionResult:
    return DetectionResult(
        triggered=contains_secret_pattern(ctx.execution.output),
        confidence=0.9,
        context="Potential secret pattern detected in execution output",
    )


def _permission_errors(ctx: RuleContext) -> DetectionResult:
    count = count_error_type(ctx.tool_history, ErrorCategory.PERMISSION_DENIED.value)
    return DetectionResult(
        triggered=count >= 2,
        confidence=0.75,
        context=f"{count} permission errors detected",
    )


def _tool_incompatibility(ctx: RuleContext) -> DetectionResult:
    return DetectionResult(
        triggered=detect_incompatibility_pattern(ctx.execution, ctx.all_history),
        confidence=0.7,
        context="Potential tool incompatibility detected in workflow",
    )


def _git_errors(ctx: RuleContext) -> DetectionResult:
    count = count_error_type(ctx.tool_history, ErrorCategory.GIT_ERROR.value)
    return DetectionResult(
        triggered=count >= 2,
        confidence=0.8,
        context=f"{count} git-related errors detected",
    )


# =============================================================================
# Built-in Rules
# =============================================================================

_T = ImprovementType
_S = ImprovementSeverity
_SC = ImprovementScope
_E = EstimationLevel

BUILTIN_DETECTION_RULES: tuple[DetectionRule, ...] = (
    # Performance
    DetectionRule(
        id="PERF-001-SLOW-EXECUTION",
        name="Slow Execution Detection",
        description="Detects when an execution takes significantly longer than the average for this tool",
        improvement_type=_T.PERFORMANCE.value,
        severity=_S.MEDIUM.value,
        scope=_SC.TOOL.value,
        suggested_action="Consider optimizing or caching frequently used operations",
        condition=_slow_execution,
        estimated_impact=_E.MEDIUM.value,
        estimated_effort=_E.MEDIUM.value,
        tags=("performance", "duration", "optimization"),
        min_history_required=5,
    ),
    DetectionRule(
        id="PERF-002-INCREASING-DURATION",
        name="Duration Trend Detection",
        description="Detects when execution times are trending upward over time",
        improvement_type=_T.PERFORMANCE.value,
        severity=_S.MEDIUM.value,
        scope=_SC.TOOL.value,
        suggested_action=(
            "Investigate what might be causing execution times to increase "
            "(data growth, code changes, etc.)"
        ),
        condition=_increasing_duration,
        estimated_impact=_E.MEDIUM.value,
        estimated_effort=_E.HIGH.value,
        tags=("performance", "trend", "degradation"),
        min_history_required=5,
    ),

    # Reliability
    DetectionRule(
        id="REL-001-REPEATED-ERROR",
        name="Repeated Error Detection",
        description="Detects when the same error type occurs multiple times",
        improvement_type=_T.RELIABILITY.value,
        severity=_S.HIGH.value,
        scope=_SC.TOOL.value,
        suggested_action="Investigate and fix the recurring error pattern",
        condition=_repeated_error,
        estimated_impact=_E.HIGH.value,
        estimated_effort=_E.MEDIUM.value,
        tags=("reliability", "error", "recurring"),
        min_history_required=3,
    ),
    DetectionRule(
        id="REL-002-FLAKY-TOOL",
        name="Flaky Tool Detection",
        description="Detects when a tool has an inconsistent success rate",
        improvement_type=_T.RELIABILITY.value,
        severity=_S.HIGH.value,
        scope=_SC.TOOL.value,
        suggested_action=(
            "Investigate why the tool fails intermittently - may need better "
            "error handling or retry logic"
        ),
        condition=_flaky_tool,
        estimated_impact=_E.HIGH.value,
        estimated_effort=_E.HIGH.value,
        tags=("reliability", "flaky", "inconsistent"),
        min_history_required=10,
    ),
    DetectionRule(
        id="REL-003-CONSECUTIVE-FAILURES",
        name="Consecutive Failures Detection",
        description="Detects when a tool fails multiple times in a row",
        improvement_type=_T.RELIABILITY.value,
        severity=_S.URGENT.value,
        scope=_SC.TOOL.value,
        suggested_action="Tool appears to be broken - immediate investigation required",
        condition=_consecutive_failures,
        estimated_impact=_E.HIGH.value,
        estimated_effort=_E.MEDIUM.value,
        tags=("reliability", "critical", "broken"),
        min_history_required=3,
        cooldown_ms=3_600_000,
    ),

    # Usability
    DetectionRule(
        id="USE-001-API-KEY-FRICTION",
        name="API Key Friction Detection",
        description="Detects repeated API key configuration errors",
        improvement_type=_T.USABILITY.value,
        severity=_S.HIGH.value,
        scope=_SC.LIFECYCLE.value,
        suggested_action=(
            "Centralize API key management - consider a shared config file "
            "or environment setup script"
        ),
        condition=_api_key_friction,
        estimated_impact=_E.HIGH.value,
        estimated_effort=_E.LOW.value,
        tags=("usability", "config", "api-key"),
        min_history_required=1,
        history_scope=HistoryScope.ALL,
    ),
    DetectionRule(
        id="USE-002-CONFIG-MISSING",
        name="Missing Config Detection",
        description="Detects configuration-related errors",
        improvement_type=_T.USABILITY.value,
        severity=_S.MEDIUM.value,
        scope=_SC.TOOL.value,
        suggested_action="Add default configuration or improve init command to set up required config",
        condition=_config_missing,
        estimated_impact=_E.MEDIUM.value,
        estimated_effort=_E.LOW.value,
        tags=("usability", "config", "setup"),
    ),
    DetectionRule(
        id="USE-003-RATE-LIMIT-FRICTION",
        name="Rate Limit Friction Detection",
        description="Detects repeated rate limit errors indicating need for better handling",
        improvement_type=_T.USABILITY.value,
        severity=_S.MEDIUM.value,
        scope=_SC.TOOL.value,
        suggested_action="Implement retry logic with exponential backoff and request queuing",
        condition=_rate_limit_friction,
        estimated_impact=_E.MEDIUM.value,
        estimated_effort=_E.MEDIUM.value,
        tags=("usability", "rate-limit", "retry"),
        min_history_required=3,
    ),

    # Security
    DetectionRule(
        id="SEC-001-SECRET-IN-OUTPUT",
        name="Secret Detection",
        description="Detects potential secret/credential exposure in output",
        improvement_type=_T.SECURITY.value,
        severity=_S.URGENT.value,
        scope=_SC.BOTH.value,
        suggested_action=(
            "Immediately investigate and rotate any exposed credentials. "
            "Add output filtering."
        ),
        condition=_secret_in_output,
        estimated_impact=_E.HIGH.value,
        estimated_effort=_E.MEDIUM.value,
        tags=("security", "secret", "critical"),
        cooldown_ms=0,
    ),
    DetectionRule(
        id="SEC-002-PERMISSION-ERRORS",
        name="Permission Error Pattern",
        description="Detects repeated permission errors that might indicate privilege issues",
        improvement_type=_T.SECURITY.value,
        severity=_S.MEDIUM.value,
        scope=_SC.TOOL.value,
        suggested_action="Review file/directory permissions and ensure tool runs with appropriate privileges",
        condition=_permission_errors,
        estimated_impact=_E.MEDIUM.value,
        estimated_effort=_E.LOW.value,
        tags=("security", "permissions"),
        min_history_required=2,
    ),

    # Integration
    DetectionRule(
        id="INT-001-TOOL-INCOMPATIBILITY",
        name="Tool Incompatibility Detection",
        description="Detects potential incompatibility between tools in the workflow",
        improvement_type=_T.INTEGRATION.value,
        severity=_S.HIGH.value,
        scope=_SC.LIFECYCLE.value,
        suggested_action="Review tool interactions and add compatibility checks or handoff logic",
        condition=_tool_incompatibility,
        estimated_impact=_E.HIGH.value,
        estimated_effort=_E.HIGH.value,
        tags=("integration", "compatibility", "workflow"),
        min_history_required=5,
        history_scope=HistoryScope.ALL,
    ),
    DetectionRule(
        id="INT-002-GIT-ERRORS",
        name="Git Operation Failures",
        description="Detects repeated git-related errors",
        improvement_type=_T.INTEGRATION.value,
        severity=_S.MEDIUM.value,
        scope=_SC.TOOL.value,
        suggested_action=(
            "Add git state validation before operations, improve error handling "
            "for common git issues"
        ),
        condition=_git_errors,
        estimated_impact=_E.MEDIUM.value,
        estimated_effort=_E.MEDIUM.value,
        tags=("integration", "git", "vcs"),
        min_history_required=2,
    ),
)
