#!/usr/bin/env python3
"""
Observer CLI Tool
=================

Command-line interface for recording executions, running detection and
managing alerts.

Usage:
    lifecycle-observer rules [--alerts]
    lifecycle-observer record --tool TOOL --project NAME --status STATUS [--duration MS] [--error TEXT]
    lifecycle-observer detect [--full] [--dry-run] [--rule ID ...]
    lifecycle-observer check [--tool TOOL] [--project NAME]
    lifecycle-observer alerts [--all]
    lifecycle-observer ack ALERT_ID [--by NAME]
    lifecycle-observer resolve ALERT_ID --resolution TEXT [--by NAME]
    lifecycle-observer suppress ALERT_ID [--minutes N]
    lifecycle-observer improvements [--status STATUS] [--limit N]
    lifecycle-observer prune
    lifecycle-observer status [--project NAME]
    lifecycle-observer metrics [--period PERIOD] [--days N] [--tool TOOL] [--project NAME] [--export PATH]
    lifecycle-observer errors [--days N] [--tool TOOL] [--project NAME]
    lifecycle-observer efficiency [--days N]
"""

import argparse
import asyncio
import sys
from datetime import timedelta
from pathlib import Path

from lifecycle_observer.alert_manager import AlertNotFoundError
from lifecycle_observer.collector import categorize_error
from lifecycle_observer.config import ConfigError, ObserverConfig
from lifecycle_observer.improvement_detector import DetectionOptions
from lifecycle_observer.metrics import MetricsPeriod, format_snapshot_summary, snapshot_to_csv
from lifecycle_observer.notifications import format_category, format_severity
from lifecycle_observer.observer import LifecycleObserver, create_observer
from lifecycle_observer.output import (
    console,
    create_table,
    icon,
    print_error,
    print_header,
    print_info,
    print_key_value_table,
    print_muted,
    print_panel,
    print_success,
    print_table,
    print_warning,
    severity_style,
    setup_rich_logging,
)
from lifecycle_observer.records import (
    AlertFilter,
    AlertSeverity,
    AlertStatus,
    ExecutionRecord,
    ExecutionStatus,
    ImprovementFilter,
    ImprovementSeverity,
    generate_id,
)
from lifecycle_observer.registry import default_alert_registry, default_detection_registry
from lifecycle_observer.storage import StorageError


def load_config(args) -> ObserverConfig:
    """Load configuration, applying --data-dir if given."""
    config = ObserverConfig.load(Path(args.config) if args.config else None)
    if args.data_dir:
        config.data_dir = args.data_dir
    return config


# =============================================================================
# Commands
# =============================================================================

def cmd_rules(args, config: ObserverConfig):
    """List built-in rules."""
    if args.alerts:
        print_header("Alert Rules")
        table = create_table(columns=["ID", "Name", "Category", "Severity", "Cooldown"])
        for rule in default_alert_registry():
            table.add_row(
                rule.id,
                rule.name,
                format_category(rule.category),
                f"[{severity_style(rule.severity)}]{rule.severity}[/]",
                f"[lo.muted]{rule.cooldown_ms // 60_000}m[/]",
            )
    else:
        print_header("Detection Rules")
        table = create_table(columns=["ID", "Name", "Type", "Severity", "Min History"])
        for rule in default_detection_registry():
            table.add_row(
                rule.id,
                rule.name,
                rule.improvement_type,
                f"[{severity_style(rule.severity)}]{rule.severity}[/]",
                f"[lo.number]{rule.min_history_required}[/]",
            )
    print_table(table)


async def cmd_record(args, observer: LifecycleObserver):
    """Record a completed execution and run detection and alerting on it."""
    context = {}
    if args.branch:
        context["git_branch"] = args.branch
    metadata = {}
    if args.output:
        metadata["output"] = args.output
    error_type = args.error_type
    if args.status == ExecutionStatus.FAILURE.value and not error_type:
        error_type = categorize_error(args.error).value

    record = ExecutionRecord(
        id=generate_id("exec"),
        timestamp=observer.now() - timedelta(milliseconds=args.duration),
        tool=args.tool,
        project=args.project,
        project_path=args.project_path or str(Path.cwd()),
        command=args.command,
        duration=args.duration,
        status=args.status,
        error_type=error_type,
        error_message=args.error,
        context=context,
        metadata=metadata,
    )
    report = await observer.observe(record)

    print_success(f"Recorded execution {report.execution.id}")
    print_key_value_table({
        "Improvements created": len(report.detection.created),
        "Duplicates skipped": report.detection.deduplicated,
        "Alerts triggered": len(report.alerts),
        "Alerts auto-resolved": len(report.resolved),
    })


async def cmd_detect(args, observer: LifecycleObserver):
    """Run detection over recent executions."""
    options = DetectionOptions(
        rule_ids=args.rule or None,
        tools=args.tool or None,
        projects=args.project or None,
        dry_run=args.dry_run,
    )
    result = await observer.detect(full=args.full, options=options)

    print_header("Full Scan" if args.full else "Recent Detection")
    print_key_value_table({
        "Executions analyzed": result.executions_analyzed,
        "Rules evaluated": result.rules_evaluated,
        "Triggered": len(result.triggered),
        "Deduplicated": result.deduplicated,
        "Created": len(result.created),
    })

    if result.triggered:
        table = create_table(columns=["Rule", "Execution", "Tool", "Confidence"])
        for t in result.triggered:
            table.add_row(t.rule.id, t.execution.id, t.execution.tool, f"{t.confidence:.0%}")
        print_table(table)
    if args.dry_run:
        print_muted("Dry run: no improvements were saved.")


async def cmd_check(args, observer: LifecycleObserver):
    """Evaluate alert rules against recent executions."""
    alerts, resolved = await observer.check_alerts(args.tool, args.project)
    if not alerts:
        print_success("No new alerts")
    for alert in alerts:
        print_warning(f"{alert.id}: {alert.title} - {alert.message}")
    for alert in resolved:
        print_info(f"Auto-resolved {alert.id}: {alert.title}")


async def cmd_alerts(args, observer: LifecycleObserver):
    """List alerts."""
    if args.all:
        alerts = await observer.storage.query_alerts(AlertFilter(limit=args.limit))
    else:
        alerts = await observer.storage.query_alerts(AlertFilter(
            statuses=[AlertStatus.ACTIVE.value], limit=args.limit,
        ))

    if not alerts:
        print_muted("No alerts.")
        return

    print_header("Alerts" if args.all else "Active Alerts")
    table = create_table(columns=["ID", "Severity", "Status", "Title", "Tool", "Triggered"])
    for alert in alerts:
        table.add_row(
            alert.id,
            f"[{severity_style(alert.severity)}]{format_severity(alert.severity)}[/]",
            alert.status,
            alert.title,
            alert.tool or "-",
            f"[lo.timestamp]{alert.triggered_at:%Y-%m-%d %H:%M}[/]",
        )
    print_table(table)


async def cmd_ack(args, observer: LifecycleObserver):
    alert = await observer.alerts.acknowledge_alert(args.alert_id, args.by)
    print_success(f"Acknowledged {alert.id}")


async def cmd_resolve(args, observer: LifecycleObserver):
    alert = await observer.alerts.resolve_alert(args.alert_id, args.by, args.resolution)
    print_success(f"Resolved {alert.id}")


async def cmd_suppress(args, observer: LifecycleObserver):
    until = observer.now() + timedelta(minutes=args.minutes)
    alert = await observer.alerts.suppress_alert(args.alert_id, until, by=args.by)
    print_success(f"Suppressed {alert.id} until {until:%Y-%m-%d %H:%M} UTC")


async def cmd_improvements(args, observer: LifecycleObserver):
    """List improvement suggestions."""
    improvements = await observer.storage.query_improvements(ImprovementFilter(
        statuses=[args.status] if args.status else None,
        limit=args.limit,
    ))
    if not improvements:
        print_muted("No improvements.")
        return

    print_header("Improvements")
    table = create_table(columns=["ID", "Severity", "Type", "Title", "Tools", "Detected"])
    for imp in improvements:
        table.add_row(
            imp.id,
            f"[{severity_style(imp.severity)}]{imp.severity}[/]",
            imp.improvement_type,
            imp.title,
            ", ".join(imp.affected_tools),
            f"[lo.timestamp]{imp.detected_at:%Y-%m-%d %H:%M}[/]",
        )
    print_table(table)


def format_duration(ms: float) -> str:
    if ms < 1000:
        return f"{ms:.0f}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    return f"{ms / 60_000:.1f}m"


def health_style(score: int) -> str:
    if score >= 90:
        return "lo.ok"
    if score >= 70:
        return "lo.warn"
    return "lo.err"


async def cmd_status(args, observer: LifecycleObserver):
    """Show overall health, alerts, improvements and per-tool status."""
    report = await observer.status(project=args.project)
    snapshot = report.snapshot

    style = health_style(report.health_score)
    print_panel(
        f"[{style}]Health Score: {report.health_score}/100[/]\n"
        f"[lo.key]Executions:[/]   {snapshot.total_executions}\n"
        f"[lo.key]Success Rate:[/] {snapshot.success_rate:.1%}\n"
        f"[lo.key]Avg Duration:[/] {format_duration(snapshot.avg_duration)}",
        title="Lifecycle Observer Status",
        subtitle=f"{report.timestamp:%Y-%m-%d %H:%M} UTC",
    )

    critical = sum(1 for a in report.active_alerts if a.severity == AlertSeverity.CRITICAL.value)
    if report.active_alerts:
        print_warning(f"Active alerts: {len(report.active_alerts)} ({critical} critical, "
                      f"{report.acknowledged_alerts} acknowledged)")
        for alert in report.active_alerts[:3]:
            console.print(f"  [{severity_style(alert.severity)}]{icon('bullet')} {alert.title}[/]")
    else:
        print_success("No active alerts")

    urgent = sum(1 for i in report.open_improvements if i.severity == ImprovementSeverity.URGENT.value)
    if report.open_improvements:
        print_info(f"Open improvements: {len(report.open_improvements)} ({urgent} urgent)")
        for imp in report.open_improvements[:3]:
            console.print(f"  [{severity_style(imp.severity)}]{icon('bullet')} {imp.title}[/]")
    else:
        print_success("No open improvements")

    if snapshot.by_tool:
        table = create_table(title="Tools", columns=["Tool", "Runs", "Success", "Avg Time"])
        for name, tm in sorted(snapshot.by_tool.items(), key=lambda x: x[1].executions, reverse=True):
            table.add_row(name, str(tm.executions), f"{tm.success_rate:.1%}", format_duration(tm.avg_duration))
        print_table(table)

    if report.projects:
        table = create_table(title="Projects", columns=["Project", "Health", "Alerts", "Improvements"])
        for project in report.projects:
            table.add_row(
                project.name,
                f"[{health_style(project.health_score)}]{project.health_score}/100[/]",
                str(project.active_alerts),
                str(project.open_improvements),
            )
        print_table(table)


async def cmd_metrics(args, observer: LifecycleObserver):
    """Show execution metrics for a period, or export them as CSV."""
    report = await observer.metrics_report(
        MetricsPeriod(args.period), days=args.days, tool=args.tool, project=args.project,
    )
    snapshot = report.snapshot

    if args.export:
        path = Path(args.export)
        path.write_text(snapshot_to_csv(snapshot, report.daily))
        print_success(f"Metrics exported to {path}")
        return

    print_panel(format_snapshot_summary(snapshot), title=f"Metrics ({snapshot.period})",
                subtitle=f"since {report.since:%Y-%m-%d %H:%M} UTC")
    print_key_value_table({
        "Improvements": f"{snapshot.improvements_detected} detected, {snapshot.improvements_resolved} resolved",
        "Open": f"{snapshot.open_improvements} ({snapshot.urgent_improvements} urgent)",
        "Alerts": f"{snapshot.alerts_triggered} triggered, {snapshot.alerts_resolved} resolved",
        "Active": f"{snapshot.active_alerts} ({snapshot.critical_alerts} critical)",
    })
    if snapshot.total_tokens_used:
        print_muted(f"Tokens used: {snapshot.total_tokens_used}, API calls: {snapshot.total_api_calls}")

    if report.daily:
        table = create_table(title="Daily Trend", columns=["Date", "Runs", "Success", "Avg Time"])
        for day in report.daily:
            table.add_row(day.date, str(day.executions), f"{day.success_rate:.1%}", format_duration(day.avg_duration))
        print_table(table)


async def cmd_errors(args, observer: LifecycleObserver):
    """Show error frequency, trends and recommendations."""
    analysis = await observer.errors.analyze(days=args.days, tool=args.tool, project=args.project)
    if not analysis.total_errors:
        print_success(f"No failures in the last {args.days} days")
        return

    print_header("Error Analysis")
    print_key_value_table({
        "Failures": f"{analysis.total_errors} of {analysis.total_executions}",
        "Error rate": f"{analysis.error_rate:.1f}%",
        "Most common": analysis.most_common,
    })

    table = create_table(columns=["Category", "Count", "Share", "Tools", "Last Seen"])
    for freq in analysis.by_category:
        table.add_row(
            freq.category,
            str(freq.count),
            f"{freq.percentage:.1f}%",
            ", ".join(freq.affected_tools),
            f"[lo.timestamp]{freq.last_occurrence:%Y-%m-%d %H:%M}[/]",
        )
    print_table(table)

    for trend in analysis.trends:
        if trend.trend == "increasing":
            print_warning(f"{trend.category} increasing: {trend.previous_period} -> {trend.current_period}")
    for rec in analysis.recommendations:
        print_info(rec)


async def cmd_efficiency(args, observer: LifecycleObserver):
    """Show tool utilization, bottlenecks and common workflows."""
    analysis = await observer.efficiency.analyze(days=args.days)

    print_header(f"Efficiency (last {args.days} days)")
    print_key_value_table({
        "Executions": analysis.total_executions,
        "Per day": f"{analysis.executions_per_day:.1f}",
        "Success rate": f"{analysis.success_rate:.1%}",
        "Avg duration": format_duration(analysis.avg_duration),
    })

    if analysis.tool_utilization:
        table = create_table(title="Utilization", columns=["Tool", "Runs", "Share", "Per Day", "Last Used"])
        for u in analysis.tool_utilization:
            last_used = f"{u.days_since_last_use}d ago"
            if u.underutilized:
                last_used = f"[lo.warn]{last_used}[/]"
            table.add_row(u.tool, str(u.total_executions), f"{u.usage_percent:.1f}%", f"{u.daily_avg:.2f}", last_used)
        print_table(table)

    for bottleneck in analysis.bottlenecks:
        print_warning(f"{bottleneck.tool} ({bottleneck.type}): {bottleneck.description}")
    for sequence in analysis.workflow_sequences:
        print_muted(f"{' -> '.join(sequence.tools)}: {sequence.count} times, {sequence.success_rate:.0%} success")
    for rec in analysis.recommendations:
        print_info(rec)


async def cmd_prune(args, observer: LifecycleObserver):
    removed = await observer.prune()
    print_success(f"Pruned {removed} executions older than {observer.config.retention_days} days")


ASYNC_COMMANDS = {
    "record": cmd_record,
    "detect": cmd_detect,
    "check": cmd_check,
    "alerts": cmd_alerts,
    "ack": cmd_ack,
    "resolve": cmd_resolve,
    "suppress": cmd_suppress,
    "improvements": cmd_improvements,
    "prune": cmd_prune,
    "status": cmd_status,
    "metrics": cmd_metrics,
    "errors": cmd_errors,
    "efficiency": cmd_efficiency,
}


async def run_command(args, config: ObserverConfig) -> None:
    observer = await create_observer(config)
    try:
        await ASYNC_COMMANDS[args.command_name](args, observer)
    finally:
        await observer.close()


# =============================================================================
# Argument Parsing
# =============================================================================

def positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lifecycle-observer",
        description="Observe lifecycle tool executions, detect improvements and manage alerts",
    )
    parser.add_argument("--config", "-c", help="Path to a JSON config file")
    parser.add_argument("--data-dir", help="Override the data directory")
    parser.add_argument("--log-level", help="Override the log level (DEBUG, INFO, ...)")

    subparsers = parser.add_subparsers(dest="command_name", help="Commands")

    rules_parser = subparsers.add_parser("rules", help="List built-in rules")
    rules_parser.add_argument("--alerts", action="store_true", help="List alert rules instead of detection rules")

    record_parser = subparsers.add_parser("record", help="Record a completed execution")
    record_parser.add_argument("--tool", required=True)
    record_parser.add_argument("--project", required=True)
    record_parser.add_argument("--command", default="run")
    record_parser.add_argument("--project-path")
    record_parser.add_argument(
        "--status", required=True,
        choices=[s.value for s in ExecutionStatus if s is not ExecutionStatus.RUNNING],
    )
    record_parser.add_argument("--duration", type=int, default=0, help="Duration in milliseconds")
    record_parser.add_argument("--error", help="Error message")
    record_parser.add_argument("--error-type", help="Error category (inferred when omitted)")
    record_parser.add_argument("--branch", help="Git branch the tool ran on")
    record_parser.add_argument("--output", help="Captured tool output")

    detect_parser = subparsers.add_parser("detect", help="Run improvement detection")
    detect_parser.add_argument("--full", action="store_true", help="Scan the last 30 days instead of 24 hours")
    detect_parser.add_argument("--dry-run", action="store_true", help="Report without saving improvements")
    detect_parser.add_argument("--rule", action="append", help="Only run this rule id (repeatable)")
    detect_parser.add_argument("--tool", action="append", help="Only scan this tool (repeatable)")
    detect_parser.add_argument("--project", action="append", help="Only scan this project (repeatable)")

    check_parser = subparsers.add_parser("check", help="Evaluate alert rules")
    check_parser.add_argument("--tool")
    check_parser.add_argument("--project")

    alerts_parser = subparsers.add_parser("alerts", help="List alerts")
    alerts_parser.add_argument("--all", action="store_true", help="Include non-active alerts")
    alerts_parser.add_argument("--limit", type=int, default=50)

    ack_parser = subparsers.add_parser("ack", help="Acknowledge an alert")
    ack_parser.add_argument("alert_id")
    ack_parser.add_argument("--by", default="cli")

    resolve_parser = subparsers.add_parser("resolve", help="Resolve an alert")
    resolve_parser.add_argument("alert_id")
    resolve_parser.add_argument("--resolution", required=True)
    resolve_parser.add_argument("--by", default="cli")

    suppress_parser = subparsers.add_parser("suppress", help="Suppress an alert")
    suppress_parser.add_argument("alert_id")
    suppress_parser.add_argument("--minutes", type=int, default=60)
    suppress_parser.add_argument("--by", default="cli")

    improvements_parser = subparsers.add_parser("improvements", help="List improvement suggestions")
    improvements_parser.add_argument("--status", help="Filter by status (open, in_progress, ...)")
    improvements_parser.add_argument("--limit", type=int, default=50)

    subparsers.add_parser("prune", help="Delete executions past the retention window")

    status_parser = subparsers.add_parser("status", help="Show overall health")
    status_parser.add_argument("--project", help="Only this project")

    metrics_parser = subparsers.add_parser("metrics", help="Show execution metrics")
    metrics_parser.add_argument(
        "--period", default=MetricsPeriod.WEEKLY.value, choices=[p.value for p in MetricsPeriod],
    )
    metrics_parser.add_argument("--days", type=positive_int, help="Window in days (defaults to the period)")
    metrics_parser.add_argument("--tool")
    metrics_parser.add_argument("--project")
    metrics_parser.add_argument("--export", metavar="PATH", help="Write the metrics as CSV to PATH")

    errors_parser = subparsers.add_parser("errors", help="Analyze failures by category and trend")
    errors_parser.add_argument("--days", type=positive_int, default=30)
    errors_parser.add_argument("--tool")
    errors_parser.add_argument("--project")

    efficiency_parser = subparsers.add_parser("efficiency", help="Analyze tool utilization and bottlenecks")
    efficiency_parser.add_argument("--days", type=positive_int, default=30)


    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command_name:
        parser.print_help()
        sys.exit(1)

    try:
        config = load_config(args)
    except ConfigError as e:
        print_error(str(e))
        sys.exit(2)

    setup_rich_logging(args.log_level or config.log_level)

    if args.command_name == "rules":
        cmd_rules(args, config)
        return

    try:
        asyncio.run(run_command(args, config))
    except AlertNotFoundError as e:
        print_error(str(e))
        sys.exit(1)
    except StorageError as e:
        print_error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[lo.muted]Interrupted[/]")
        sys.exit(130)


if __name__ == "__main__":
    main()
