"""
Metrics Snapshot
================

Aggregates execution records into a point-in-time metrics snapshot. The alert
engine reads the snapshot (success rate, average duration, per-tool and
per-project breakdowns) alongside the raw recent executions.

Usage:
    from lifecycle_observer.metrics import build_snapshot, MetricsPeriod

    snapshot = build_snapshot(executions, period=MetricsPeriod.DAILY)
    print(format_snapshot_summary(snapshot))
"""

import csv
import io
import math
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional

from lifecycle_observer.records import ExecutionRecord, ExecutionStatus, as_utc, utc_now


class MetricsPeriod(Enum):
    """Time periods for metrics aggregation."""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass
class ToolMetrics:
    """Execution metrics for a single tool or project."""
    executions: int = 0
    success_rate: float = 1.0
    avg_duration: float = 0.0


@dataclass
class MetricsSnapshot:
    """A snapshot of metrics at a point in time."""
    timestamp: datetime
    period: str = MetricsPeriod.DAILY.value

    # Execution metrics
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    success_rate: float = 1.0
    avg_duration: float = 0.0
    p50_duration: float = 0.0
    p95_duration: float = 0.0
    p99_duration: float = 0.0

    by_tool: dict[str, ToolMetrics] = field(default_factory=dict)
    by_project: dict[str, ToolMetrics] = field(default_factory=dict)

    # AI usage
    total_tokens_used: int = 0
    total_api_calls: int = 0
    avg_tokens_per_execution: float = 0.0

    # Improvements
    improvements_detected: int = 0
    improvements_resolved: int = 0
    open_improvements: int = 0
    urgent_improvements: int = 0

    # Alerts
    alerts_triggered: int = 0
    alerts_resolved: int = 0
    active_alerts: int = 0
    critical_alerts: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


def percentile(sorted_values: list[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list (0 for empty input)."""
    if not sorted_values:
        return 0.0
    rank = math.ceil(pct / 100 * len(sorted_values))
    index = min(max(rank - 1, 0), len(sorted_values) - 1)
    return float(sorted_values[index])


def _group_metrics(executions: list[ExecutionRecord]) -> ToolMetrics:
    total = len(executions)
    if total == 0:
        return ToolMetrics()
    successes = sum(1 for e in executions if e.status == ExecutionStatus.SUCCESS.value)
    return ToolMetrics(
        executions=total,
        success_rate=successes / total,
        avg_duration=sum(e.duration for e in executions) / total,
    )


def build_snapshot(
    executions: list[ExecutionRecord],
    period: MetricsPeriod = MetricsPeriod.DAILY,
    now: Optional[datetime] = None,
) -> MetricsSnapshot:
    """
    Aggregate execution records into a MetricsSnapshot.

    Args:
        executions: Records to aggregate (any order)
        period: Period label for the snapshot
        now: Snapshot timestamp (defaults to current UTC time)

    Returns:
        MetricsSnapshot; an empty input reads as healthy (success rate 1.0)
    """
    snapshot = MetricsSnapshot(timestamp=now or utc_now(), period=period.value)
    total = len(executions)
    if total == 0:
        return snapshot

    successes = sum(1 for e in executions if e.status == ExecutionStatus.SUCCESS.value)
    failures = sum(1 for e in executions if e.status == ExecutionStatus.FAILURE.value)
    durations = sorted(e.duration for e in executions)

    snapshot.total_executions = total
    snapshot.successful_executions = successes
    snapshot.failed_executions = failures
    snapshot.success_rate = successes / total
    snapshot.avg_duration = sum(durations) / total
    snapshot.p50_duration = percentile(durations, 50)
    snapshot.p95_duration = percentile(durations, 95)
    snapshot.p99_duration = percentile(durations, 99)

    by_tool: dict[str, list[ExecutionRecord]] = {}
    by_project: dict[str, list[ExecutionRecord]] = {}
    for execution in executions:
        by_tool.setdefault(execution.tool, []).append(execution)
        by_project.setdefault(execution.project, []).append(execution)
    snapshot.by_tool = {name: _group_metrics(group) for name, group in by_tool.items()}
    snapshot.by_project = {name: _group_metrics(group) for name, group in by_project.items()}

    snapshot.total_tokens_used = sum(int(e.context.get("ai_tokens_used") or 0) for e in executions)
    snapshot.total_api_calls = sum(int(e.context.get("api_calls") or 0) for e in executions)
    snapshot.avg_tokens_per_execution = snapshot.total_tokens_used / total

    return snapshot


def format_snapshot_summary(snapshot: MetricsSnapshot) -> str:
    """Format a snapshot as a short plain-text summary."""
    lines = [
        f"Executions:   {snapshot.total_executions} "
        f"({snapshot.successful_executions} ok, {snapshot.failed_executions} failed)",
        f"Success Rate: {snapshot.success_rate:.1%}",
        f"Avg Duration: {snapshot.avg_duration:.0f}ms "
        f"(p50 {snapshot.p50_duration:.0f}ms, p95 {snapshot.p95_duration:.0f}ms)",
    ]
    if snapshot.by_tool:
        lines.append("By Tool:")
        for name, tm in sorted(snapshot.by_tool.items(), key=lambda x: x[1].executions, reverse=True):
            lines.append(f"  {name}: {tm.executions} runs ({tm.success_rate:.0%} success)")
    return "\n".join(lines)


@dataclass
class DailyMetrics:
    """Per-day execution totals (UTC dates)."""
    date: str
    executions: int
    success_rate: float
    avg_duration: float


def daily_trend(executions: list[ExecutionRecord]) -> list[DailyMetrics]:
    """Group executions by UTC date, oldest day first."""
    by_day: dict[str, list[ExecutionRecord]] = {}
    for execution in executions:
        by_day.setdefault(as_utc(execution.timestamp).date().isoformat(), []).append(execution)
    trend = []
    for day in sorted(by_day):
        group = _group_metrics(by_day[day])
        trend.append(DailyMetrics(day, group.executions, group.success_rate, group.avg_duration))
    return trend


def health_score(success_rate: float, active_alerts: int, open_improvements: int) -> int:
    """
    Score from 0 to 100.

    Failures cost up to 40 points, active alerts 10 each up to 30, and open
    improvements 3 each up to 30.
    """
    score = 100.0
    score -= (1 - success_rate) * 40
    score -= min(active_alerts * 10, 30)
    score -= min(open_improvements * 3, 30)
    return max(0, round(score))


def snapshot_to_csv(snapshot: MetricsSnapshot, trend: Optional[list[DailyMetrics]] = None) -> str:
    """Summary, per-tool and per-day sections as CSV text."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")

    writer.writerow(["metric", "value"])
    for key in (
        "total_executions", "successful_executions", "failed_executions", "success_rate",
        "avg_duration", "p50_duration", "p95_duration", "total_tokens_used", "total_api_calls",
    ):
        writer.writerow([key, getattr(snapshot, key)])

    writer.writerow([])
    writer.writerow(["tool", "executions", "success_rate", "avg_duration"])
    for name, tm in sorted(snapshot.by_tool.items()):
        writer.writerow([name, tm.executions, tm.success_rate, tm.avg_duration])

    if trend:
        writer.writerow([])
        writer.writerow(["date", "executions", "success_rate", "avg_duration"])
        for day in trend:
            writer.writerow([day.date, day.executions, day.success_rate, day.avg_duration])

    return buffer.getvalue()
