"""
Execution Analysis
==================

Looks back over stored executions to answer two questions: which errors keep
happening (and whether they are getting worse), and how efficiently the tools
are being used (utilization, bottlenecks, time-of-day patterns and common
tool sequences). Both analyzers produce recommendations.

Usage:
    from lifecycle_observer.analysis import ErrorAnalyzer, EfficiencyAnalyzer

    errors = await ErrorAnalyzer(storage).analyze(days=30)
    print(format_error_analysis(errors))

    efficiency = await EfficiencyAnalyzer(storage).analyze(days=30)
    for line in efficiency.recommendations:
        print(line)
"""

import calendar
import math
from collections import Counter
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Callable, Optional

from lifecycle_observer.records import (
    ErrorCategory,
    ExecutionFilter,
    ExecutionRecord,
    ExecutionStatus,
    as_utc,
    utc_now,
)
from lifecycle_observer.storage import Storage

# Error trend classification: percent change beyond which a category is moving
TREND_CHANGE_PERCENT = 10

# Efficiency thresholds
BOTTLENECK_MIN_SAMPLES = 5
SLOW_TOOL_MS = 30_000
FREQUENT_FAILURE_RATE = 0.2
HIGH_VARIANCE_RATIO = 0.5
UNDERUTILIZED_DAYS = 7
UNDERUTILIZED_DAILY_AVG = 0.5
SEQUENCE_WINDOW = timedelta(minutes=10)
SEQUENCE_MIN_COUNT = 2
MAX_SEQUENCES = 10

_CATEGORY_ADVICE: dict[str, list[str]] = {
    ErrorCategory.API_KEY_MISSING.value: [
        "Centralize API key management across all tools",
        "Add API key validation before operations",
    ],
    ErrorCategory.API_RATE_LIMIT.value: [
        "Implement exponential backoff retry logic",
        "Consider adding request queuing",
        "Monitor API usage patterns",
    ],
    ErrorCategory.TIMEOUT.value: [
        "Review operation timeouts and increase if needed",
        "Add timeout configuration options",
    ],
    ErrorCategory.NETWORK_ERROR.value: [
        "Add retry logic for transient network failures",
        "Check network connectivity in preflight checks",
    ],
    ErrorCategory.GIT_ERROR.value: [
        "Validate git repository state before operations",
        "Add better error messages for common git issues",
    ],
    ErrorCategory.CONFIG_INVALID.value: [
        "Add config validation on tool startup",
        "Provide config migration/upgrade tools",
    ],
    ErrorCategory.FILE_NOT_FOUND.value: [
        "Validate file paths before operations",
        "Add better error messages with suggested fixes",
    ],
    ErrorCategory.PERMISSION_DENIED.value: [
        "Check file permissions in preflight",
        "Run with appropriate permissions",
    ],
}


def _category(execution: ExecutionRecord) -> str:
    return execution.error_type or ErrorCategory.UNKNOWN.value


# =============================================================================
# Error Analysis
# =============================================================================

@dataclass
class ErrorFrequency:
    """How often one error category occurred among failures."""
    category: str
    count: int
    percentage: float
    last_occurrence: Optional[datetime]
    affected_tools: list[str] = field(default_factory=list)
    affected_projects: list[str] = field(default_factory=list)


@dataclass
class ErrorTrend:
    """Failure count for one category in the current period versus the one before."""
    category: str
    current_period: int
    previous_period: int
    change: int
    change_percent: float
    trend: str  # increasing | stable | decreasing


@dataclass
class ErrorAnalysis:
    """Error breakdown, trends and recommendations for a time window."""
    total_errors: int
    total_executions: int
    error_rate: float  # percent
    by_category: list[ErrorFrequency] = field(default_factory=list)
    by_tool: dict[str, int] = field(default_factory=dict)
    by_project: dict[str, int] = field(default_factory=dict)
    trends: list[ErrorTrend] = field(default_factory=list)
    most_common: Optional[str] = None
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        for entry in data["by_category"]:
            if entry["last_occurrence"] is not None:
                entry["last_occurrence"] = entry["last_occurrence"].isoformat()
        return data


def error_frequency(failures: list[ExecutionRecord]) -> list[ErrorFrequency]:
    """Group failed executions by error category, most frequent first."""
    if not failures:
        return []

    grouped: dict[str, list[ExecutionRecord]] = {}
    for execution in failures:
        grouped.setdefault(_category(execution), []).append(execution)

    frequencies = []
    for category, records in grouped.items():
        frequencies.append(ErrorFrequency(
            category=category,
            count=len(records),
            percentage=len(records) / len(failures) * 100,
            last_occurrence=max(r.timestamp for r in records),
            affected_tools=sorted({r.tool for r in records}),
            affected_projects=sorted({r.project for r in records}),
        ))
    frequencies.sort(key=lambda f: f.count, reverse=True)
    return frequencies


def classify_trend(change_percent: float) -> str:
    if change_percent > TREND_CHANGE_PERCENT:
        return "increasing"
    if change_percent < -TREND_CHANGE_PERCENT:
        return "decreasing"
    return "stable"


def error_trends(current: list[ExecutionRecord], previous: list[ExecutionRecord]) -> list[ErrorTrend]:
    """Compare per-category failure counts between two periods, largest change first."""
    current_counts = Counter(_category(e) for e in current)
    previous_counts = Counter(_category(e) for e in previous)

    trends = []
    for category in set(current_counts) | set(previous_counts):
        now_count = current_counts[category]
        before = previous_counts[category]
        change = now_count - before
        if before > 0:
            change_percent = change / before * 100
        else:
            change_percent = 100.0 if now_count > 0 else 0.0
        trends.append(ErrorTrend(
            category=category,
            current_period=now_count,
            previous_period=before,
            change=change,
            change_percent=change_percent,
            trend=classify_trend(change_percent),
        ))
    trends.sort(key=lambda t: (-abs(t.change), t.category))
    return trends


def error_recommendations(
    frequencies: list[ErrorFrequency],
    trends: list[ErrorTrend],
    error_rate: float,
) -> list[str]:
    recommendations = []
    if error_rate > 20:
        recommendations.append(
            f"High error rate ({error_rate:.1f}%) - consider investigating root causes"
        )

    for freq in frequencies[:3]:
        if freq.count < 3:
            continue
        advice = _CATEGORY_ADVICE.get(freq.category)
        if advice:
            recommendations.extend(advice)
        elif freq.count >= 5:
            recommendations.append(
                f"Investigate recurring {freq.category} errors ({freq.count} occurrences)"
            )

    for trend in trends:
        if trend.trend == "increasing" and trend.change >= 3:
            recommendations.append(
                f"{trend.category} errors are increasing (+{trend.change}) - needs attention"
            )
    return recommendations


class ErrorAnalyzer:
    """
    Analyzes failed executions held in storage.

    Failures without an error category are counted as ``unknown``.
    """

    def __init__(self, storage: Storage, clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return as_utc(self._clock())

    async def _failures(
        self,
        since: Optional[datetime] = None,
        tool: Optional[str] = None,
        project: Optional[str] = None,
        error_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ExecutionRecord]:
        return await self.storage.query_executions(ExecutionFilter(
            tools=[tool] if tool else None,
            projects=[project] if project else None,
            statuses=[ExecutionStatus.FAILURE.value],
            error_types=[error_type] if error_type else None,
            since=since,
            limit=limit,
        ))

    async def frequency(
        self,
        days: int = 30,
        tool: Optional[str] = None,
        project: Optional[str] = None,
    ) -> list[ErrorFrequency]:
        since = self.now() - timedelta(days=days)
        return error_frequency(await self._failures(since, tool, project))

    async def trends(
        self,
        period_days: int = 7,
        tool: Optional[str] = None,
        project: Optional[str] = None,
    ) -> list[ErrorTrend]:
        """Compare the last ``period_days`` against the ``period_days`` before them."""
        current_start = self.now() - timedelta(days=period_days)
        failures = await self._failures(current_start - timedelta(days=period_days), tool, project)
        current = [e for e in failures if e.timestamp >= current_start]
        previous = [e for e in failures if e.timestamp < current_start]
        return error_trends(current, previous)

    async def analyze(
        self,
        days: int = 30,
        tool: Optional[str] = None,
        project: Optional[str] = None,
        trend_days: int = 7,
    ) -> ErrorAnalysis:
        """
        Full error analysis for the last ``days``.

        Args:
            days: Window of executions to analyze
            tool: Restrict to one tool
            project: Restrict to one project
            trend_days: Length of each period compared for trends

        Returns:
            ErrorAnalysis with an error rate in percent
        """
        since = self.now() - timedelta(days=days)
        executions = await self.storage.query_executions(ExecutionFilter(
            tools=[tool] if tool else None,
            projects=[project] if project else None,
            since=since,
        ))
        failures = [e for e in executions if e.status == ExecutionStatus.FAILURE.value]
        error_rate = len(failures) / len(executions) * 100 if executions else 0.0

        by_category = error_frequency(failures)
        trends = await self.trends(trend_days, tool, project)

        return ErrorAnalysis(
            total_errors=len(failures),
            total_executions=len(executions),
            error_rate=error_rate,
            by_category=by_category,
            by_tool=dict(Counter(e.tool for e in failures)),
            by_project=dict(Counter(e.project for e in failures)),
            trends=trends,
            most_common=by_category[0].category if by_category else None,
            recommendations=error_recommendations(by_category, trends, error_rate),
        )

    async def is_recurring(self, category: str, threshold: int = 3, window_hours: int = 24) -> bool:
        """True when ``category`` failed at least ``threshold`` times in the window."""
        since = self.now() - timedelta(hours=window_hours)
        return len(await self._failures(since, error_type=category)) >= threshold

    async def most_recent(self, category: str) -> Optional[ExecutionRecord]:
        failures = await self._failures(error_type=category, limit=1)
        return failures[0] if failures else None


def format_error_analysis(analysis: ErrorAnalysis) -> str:
    """Format an error analysis as plain text."""
    lines = [
        f"Errors:     {analysis.total_errors} of {analysis.total_executions} executions "
        f"({analysis.error_rate:.1f}%)",
    ]
    if analysis.most_common:
        lines.append(f"Most common: {analysis.most_common}")
    if analysis.by_category:
        lines.append("By Category:")
        for freq in analysis.by_category:
            lines.append(f"  {freq.category}: {freq.count} ({freq.percentage:.1f}%)")
    moving = [t for t in analysis.trends if t.trend != "stable"]
    if moving:
        lines.append("Trends:")
        for trend in moving:
            lines.append(f"  {trend.category}: {trend.trend} ({trend.change:+d})")
    if analysis.recommendations:
        lines.append("Recommendations:")
        for rec in analysis.recommendations:
            lines.append(f"  - {rec}")
    return "\n".join(lines)


# =============================================================================
# Efficiency Analysis
# =============================================================================

@dataclass
class UsagePattern:
    """Executions grouped by UTC weekday (Monday = 0) and hour."""
    day_of_week: int
    hour: int
    executions: int
    avg_duration: float
    success_rate: float


@dataclass
class WorkflowSequence:
    """Tools run one after another on the same project within the sequence window."""
    tools: list[str]
    count: int
    avg_total_duration: float
    success_rate: float


@dataclass
class Bottleneck:
    type: str  # slow_tool | frequent_failure | high_variance
    tool: str
    description: str
    severity: float  # 0..1
    data: dict[str, float] = field(default_factory=dict)


@dataclass
class ToolUtilization:
    tool: str
    total_executions: int
    usage_percent: float
    daily_avg: float
    days_since_last_use: int
    underutilized: bool


@dataclass
class EfficiencyAnalysis:
    """Utilization, bottlenecks and usage patterns for a time window."""
    timestamp: datetime
    period_start: datetime
    period_end: datetime
    total_executions: int = 0
    success_rate: float = 0.0
    avg_duration: float = 0.0
    total_duration: int = 0
    executions_per_day: float = 0.0
    tool_utilization: list[ToolUtilization] = field(default_factory=list)
    bottlenecks: list[Bottleneck] = field(default_factory=list)
    usage_patterns: list[UsagePattern] = field(default_factory=list)
    workflow_sequences: list[WorkflowSequence] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("timestamp", "period_start", "period_end"):
            data[key] = getattr(self, key).isoformat()
        return data


def tool_utilization(executions: list[ExecutionRecord], days: int, now: datetime) -> list[ToolUtilization]:
    by_tool: dict[str, list[ExecutionRecord]] = {}
    for execution in executions:
        by_tool.setdefault(execution.tool, []).append(execution)

    results = []
    for tool, records in by_tool.items():
        last_used = max(r.timestamp for r in records)
        days_since = (now - last_used).days
        daily_avg = len(records) / days
        results.append(ToolUtilization(
            tool=tool,
            total_executions=len(records),
            usage_percent=len(records) / len(executions) * 100,
            daily_avg=daily_avg,
            days_since_last_use=days_since,
            underutilized=days_since > UNDERUTILIZED_DAYS or daily_avg < UNDERUTILIZED_DAILY_AVG,
        ))
    results.sort(key=lambda u: u.total_executions, reverse=True)
    return results


def find_bottlenecks(executions: list[ExecutionRecord]) -> list[Bottleneck]:
    """Slow, failure-prone and erratic tools, most severe first."""
    by_tool: dict[str, list[ExecutionRecord]] = {}
    for execution in executions:
        by_tool.setdefault(execution.tool, []).append(execution)

    bottlenecks = []
    for tool, records in by_tool.items():
        if len(records) < BOTTLENECK_MIN_SAMPLES:
            continue

        durations = [r.duration for r in records]
        avg = sum(durations) / len(durations)
        failures = sum(1 for r in records if r.status == ExecutionStatus.FAILURE.value)
        rate = failures / len(records)

        if avg > SLOW_TOOL_MS:
            bottlenecks.append(Bottleneck(
                type="slow_tool",
                tool=tool,
                description=f"Average execution time is {avg / 1000:.1f}s",
                severity=min(avg / 60_000, 1.0),
                data={"avg_duration": avg, "executions": len(records)},
            ))

        if rate > FREQUENT_FAILURE_RATE:
            bottlenecks.append(Bottleneck(
                type="frequent_failure",
                tool=tool,
                description=f"Failure rate is {rate * 100:.1f}%",
                severity=rate,
                data={"failure_rate": rate, "failures": failures, "total": len(records)},
            ))

        std_dev = math.sqrt(sum((d - avg) ** 2 for d in durations) / len(durations))
        if avg > 0 and std_dev > avg * HIGH_VARIANCE_RATIO:
            bottlenecks.append(Bottleneck(
                type="high_variance",
                tool=tool,
                description=f"Execution time varies significantly (±{std_dev / 1000:.1f}s)",
                severity=min(std_dev / avg, 1.0),
                data={"avg_duration": avg, "std_dev": std_dev, "coefficient": std_dev / avg},
            ))

    bottlenecks.sort(key=lambda b: b.severity, reverse=True)
    return bottlenecks


def usage_patterns(executions: list[ExecutionRecord]) -> list[UsagePattern]:
    buckets: dict[tuple[int, int], list[ExecutionRecord]] = {}
    for execution in executions:
        ts = as_utc(execution.timestamp)
        buckets.setdefault((ts.weekday(), ts.hour), []).append(execution)

    patterns = []
    for (day, hour), records in buckets.items():
        successes = sum(1 for r in records if r.status == ExecutionStatus.SUCCESS.value)
        patterns.append(UsagePattern(
            day_of_week=day,
            hour=hour,
            executions=len(records),
            avg_duration=sum(r.duration for r in records) / len(records),
            success_rate=successes / len(records),
        ))
    patterns.sort(key=lambda p: p.executions, reverse=True)
    return patterns


def workflow_sequences(executions: list[ExecutionRecord]) -> list[WorkflowSequence]:
    """
    Tool chains seen at least twice.

    A chain starts at each execution and follows later executions of the same
    project that begin within the sequence window of it, skipping repeats of
    the previous tool.
    """
    ordered = sorted(executions, key=lambda e: e.timestamp)
    stats: dict[tuple[str, ...], list] = {}

    for i, start in enumerate(ordered[:-1]):
        chain = [start.tool]
        total = start.duration
        all_ok = start.status == ExecutionStatus.SUCCESS.value

        for following in ordered[i + 1:]:
            if following.timestamp - start.timestamp > SEQUENCE_WINDOW:
                break
            if following.project != start.project or following.tool == chain[-1]:
                continue
            chain.append(following.tool)
            total += following.duration
            all_ok = all_ok and following.status == ExecutionStatus.SUCCESS.value

        if len(chain) >= 2:
            entry = stats.setdefault(tuple(chain), [0, 0, 0])
            entry[0] += 1
            entry[1] += total
            entry[2] += int(all_ok)

    sequences = [
        WorkflowSequence(
            tools=list(chain),
            count=count,
            avg_total_duration=total / count,
            success_rate=ok / count,
        )
        for chain, (count, total, ok) in stats.items()
        if count >= SEQUENCE_MIN_COUNT
    ]
    sequences.sort(key=lambda s: s.count, reverse=True)
    return sequences[:MAX_SEQUENCES]


def format_hour(hour: int) -> str:
    suffix = "PM" if hour >= 12 else "AM"
    return f"{hour % 12 or 12}{suffix}"


def efficiency_recommendations(analysis: EfficiencyAnalysis) -> list[str]:
    recommendations = []
    if analysis.success_rate < 0.9:
        recommendations.append(
            f"Overall success rate is {analysis.success_rate * 100:.1f}% "
            "- investigate common failure patterns"
        )

    underused = [u.tool for u in analysis.tool_utilization if u.underutilized]
    if underused:
        recommendations.append(f"{len(underused)} tool(s) appear underutilized: {', '.join(underused)}")

    suffixes = {
        "slow_tool": "consider optimization",
        "frequent_failure": "investigate root cause",
        "high_variance": "inconsistent performance needs investigation",
    }
    for bottleneck in analysis.bottlenecks[:3]:
        recommendations.append(f"{bottleneck.tool}: {bottleneck.description} - {suffixes[bottleneck.type]}")

    peaks = [p for p in analysis.usage_patterns if p.executions >= 3][:3]
    if peaks:
        described = ", ".join(
            f"{format_hour(p.hour)} on {calendar.day_name[p.day_of_week]}" for p in peaks
        )
        recommendations.append(f"Peak usage times: {described}")
    return recommendations


class EfficiencyAnalyzer:
    """Analyzes how the lifecycle tools are used over a time window."""

    def __init__(self, storage: Storage, clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return as_utc(self._clock())

    async def analyze(self, days: int = 30) -> EfficiencyAnalysis:
        if days <= 0:
            raise ValueError(f"days must be positive, got {days}")
        now = self.now()
        since = now - timedelta(days=days)
        executions = await self.storage.query_executions(ExecutionFilter(since=since))

        analysis = EfficiencyAnalysis(timestamp=now, period_start=since, period_end=now)
        if not executions:
            analysis.recommendations = ["No execution data available for analysis"]
            return analysis

        successes = sum(1 for e in executions if e.status == ExecutionStatus.SUCCESS.value)
        total_duration = sum(e.duration for e in executions)

        analysis.total_executions = len(executions)
        analysis.success_rate = successes / len(executions)
        analysis.avg_duration = total_duration / len(executions)
        analysis.total_duration = total_duration
        analysis.executions_per_day = len(executions) / days
        analysis.tool_utilization = tool_utilization(executions, days, now)
        analysis.bottlenecks = find_bottlenecks(executions)
        analysis.usage_patterns = usage_patterns(executions)
        analysis.workflow_sequences = workflow_sequences(executions)
        analysis.recommendations = efficiency_recommendations(analysis)
        return analysis
