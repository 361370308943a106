"""
Lifecycle Observer
==================

Wires storage, the detection engine, the alert engine and notification
channels together for one observer instance. Everything is constructed
explicitly from an ObserverConfig; there is no module-level state beyond the
database engine opened by ``create_observer``.

Usage:
    from lifecycle_observer.config import ObserverConfig
    from lifecycle_observer.observer import create_observer

    observer = await create_observer(ObserverConfig.load())
    report = await observer.observe(record)
    await observer.close()
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from lifecycle_observer.alert_manager import AlertManager
from lifecycle_observer.analysis import EfficiencyAnalyzer, ErrorAnalyzer
from lifecycle_observer.collector import ExecutionCollector, ExecutionHandle
from lifecycle_observer.config import ObserverConfig
from lifecycle_observer.db import SqlStorage, get_engine, init_db
from lifecycle_observer.improvement_detector import (
    DetectionOptions,
    DetectionRunResult,
    ImprovementDetector,
)
from lifecycle_observer.metrics import (
    DailyMetrics,
    MetricsPeriod,
    MetricsSnapshot,
    build_snapshot,
    daily_trend,
    health_score,
)
from lifecycle_observer.notifications import (
    DEFAULT_ALERT_LOG,
    ConsoleChannel,
    FileChannel,
    NotificationChannel,
    NotificationDispatcher,
)
from lifecycle_observer.records import (
    Alert,
    AlertFilter,
    AlertSeverity,
    AlertStatus,
    ErrorCategory,
    ExecutionFilter,
    ExecutionRecord,
    ImprovementFilter,
    ImprovementSeverity,
    ImprovementStatus,
    ImprovementSuggestion,
    as_utc,
    utc_now,
)
from lifecycle_observer.storage import Storage

logger = logging.getLogger(__name__)


PERIOD_WINDOWS = {
    MetricsPeriod.HOURLY: timedelta(hours=1),
    MetricsPeriod.DAILY: timedelta(days=1),
    MetricsPeriod.WEEKLY: timedelta(days=7),
    MetricsPeriod.MONTHLY: timedelta(days=30),
}

OPEN_IMPROVEMENT_STATUSES = [ImprovementStatus.OPEN.value, ImprovementStatus.IN_PROGRESS.value]


@dataclass
class ObservationReport:
    """What a single ``observe`` call produced."""
    execution: ExecutionRecord
    detection: DetectionRunResult
    alerts: list[Alert] = field(default_factory=list)
    resolved: list[Alert] = field(default_factory=list)


@dataclass
class MetricsReport:
    snapshot: MetricsSnapshot
    daily: list[DailyMetrics]
    since: datetime


@dataclass
class ProjectStatus:
    name: str
    health_score: int
    executions: int
    success_rate: float
    avg_duration: float
    active_alerts: int
    open_improvements: int


@dataclass
class StatusReport:
    """Health overview built by ``LifecycleObserver.status``."""
    timestamp: datetime
    health_score: int
    snapshot: MetricsSnapshot
    active_alerts: list[Alert]
    acknowledged_alerts: int
    open_improvements: list[ImprovementSuggestion]
    projects: list[ProjectStatus] = field(default_factory=list)


def build_channels(config: ObserverConfig) -> list[NotificationChannel]:
    """Notification channels enabled by the configuration."""
    return [
        ConsoleChannel(enabled=config.console_notifications),
        FileChannel(config.data_path / DEFAULT_ALERT_LOG, enabled=config.file_notifications),
    ]


class LifecycleObserver:
    """
    Facade over the detection and alert engines.

    ``observe`` is the per-execution pipeline: persist, detect, alert,
    auto-resolve. Storage faults propagate out of it.
    """

    def __init__(
        self,
        config: ObserverConfig,
        storage: Storage,
        channels: Optional[list[NotificationChannel]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.storage = storage
        self._clock = clock or utc_now

        self.dispatcher = NotificationDispatcher(
            channels if channels is not None else build_channels(config),
            storage=storage,
            clock=self._clock,
        )
        self.detector = ImprovementDetector(storage, config=config, clock=self._clock)
        self.alerts = AlertManager(
            storage,
            thresholds=config.thresholds,
            on_alert=self.dispatcher.on_alert,
            clock=self._clock,
            window=config.alert_window,
            protected_branches=tuple(config.protected_branches),
        )
        self.collector = ExecutionCollector(storage, clock=self._clock)
        self.errors = ErrorAnalyzer(storage, clock=self._clock)
        self.efficiency = EfficiencyAnalyzer(storage, clock=self._clock)

    def now(self) -> datetime:
        return as_utc(self._clock())

    async def start(self) -> None:
        """Restore persisted detection cooldowns."""
        await self.detector.load_cooldowns()

    async def observe(self, execution: ExecutionRecord) -> ObservationReport:
        """
        Process one completed execution.

        Args:
            execution: Record to persist and evaluate

        Returns:
            ObservationReport with the detection run, new alerts and any
            alerts that auto-resolved
        """
        saved = await self.storage.insert_execution(execution)
        return await self._evaluate(saved)

    async def _evaluate(self, saved: ExecutionRecord) -> ObservationReport:
        detection = await self.detector.run_batch([saved])
        alerts, resolved = await self.check_alerts(saved.tool, saved.project)
        return ObservationReport(execution=saved, detection=detection, alerts=alerts, resolved=resolved)

    # =========================================================================
    # Tracked Executions
    # =========================================================================

    def track(
        self,
        tool: str,
        command: str,
        project: str,
        project_path: str = "",
        args: tuple = (),
        context: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> ExecutionHandle:
        """Start timing a tool invocation; complete it with ``finish``, ``succeed`` or ``fail``."""
        return self.collector.start(tool, command, project, project_path, args, context, metadata)

    async def finish(self, handle: ExecutionHandle, status: str, **kwargs) -> ObservationReport:
        """Persist a tracked execution through the collector and evaluate it."""
        saved = await self.collector.finish(handle, status, **kwargs)
        return await self._evaluate(saved)

    async def succeed(self, handle: ExecutionHandle) -> ObservationReport:
        return await self._evaluate(await self.collector.succeed(handle))

    async def fail(
        self,
        handle: ExecutionHandle,
        error: Union[str, BaseException],
        category: Optional[ErrorCategory] = None,
    ) -> ObservationReport:
        return await self._evaluate(await self.collector.fail(handle, error, category))

    async def check_alerts(
        self,
        tool: Optional[str] = None,
        project: Optional[str] = None,
    ) -> tuple[list[Alert], list[Alert]]:
        """
        Run alert rules over the recent executions of ``tool`` in ``project``,
        then sweep every active alert for auto-resolution.
        """
        recent = await self.storage.recent_executions(tool=tool, project=project, limit=self.config.alert_window)
        snapshot = build_snapshot(recent, period=MetricsPeriod.DAILY, now=self.now())

        alerts = await self.alerts.check_rules(recent, snapshot, tool=tool, project=project)
        resolved = await self.alerts.check_auto_resolve()
        return alerts, resolved

    async def detect(self, full: bool = False, options: Optional[DetectionOptions] = None) -> DetectionRunResult:
        if full:
            return await self.detector.run_full_scan(options)
        return await self.detector.detect_recent(options)

    # =========================================================================
    # Reporting
    # =========================================================================

    async def metrics_report(
        self,
        period: MetricsPeriod = MetricsPeriod.WEEKLY,
        days: Optional[int] = None,
        tool: Optional[str] = None,
        project: Optional[str] = None,
    ) -> MetricsReport:
        """
        Snapshot of the executions, improvements and alerts in a window.

        Args:
            period: Period label; also sets the window when ``days`` is omitted
            days: Window length in days
            tool: Restrict to one tool
            project: Restrict to one project
        """
        now = self.now()
        since = now - (timedelta(days=days) if days else PERIOD_WINDOWS[period])
        tools = [tool] if tool else None
        projects = [project] if project else None

        executions = await self.storage.query_executions(ExecutionFilter(
            tools=tools, projects=projects, since=since,
        ))
        snapshot = build_snapshot(executions, period=period, now=now)

        detected = await self.storage.query_improvements(ImprovementFilter(
            tools=tools, projects=projects, since=since,
        ))
        open_improvements = await self.storage.query_improvements(ImprovementFilter(
            tools=tools, projects=projects, statuses=OPEN_IMPROVEMENT_STATUSES,
        ))
        snapshot.improvements_detected = len(detected)
        snapshot.improvements_resolved = sum(
            1 for i in detected if i.status == ImprovementStatus.RESOLVED.value
        )
        snapshot.open_improvements = len(open_improvements)
        snapshot.urgent_improvements = sum(
            1 for i in open_improvements if i.severity == ImprovementSeverity.URGENT.value
        )

        triggered = await self.storage.query_alerts(AlertFilter(
            tools=tools, projects=projects, since=since,
        ))
        active = await self.storage.query_alerts(AlertFilter(
            tools=tools, projects=projects, statuses=[AlertStatus.ACTIVE.value],
        ))
        snapshot.alerts_triggered = len(triggered)
        snapshot.alerts_resolved = sum(1 for a in triggered if a.status == AlertStatus.RESOLVED.value)
        snapshot.active_alerts = len(active)
        snapshot.critical_alerts = sum(1 for a in active if a.severity == AlertSeverity.CRITICAL.value)

        return MetricsReport(snapshot=snapshot, daily=daily_trend(executions), since=since)

    async def status(self, project: Optional[str] = None) -> StatusReport:
        """Weekly health overview, overall and per project."""
        snapshot = (await self.metrics_report(MetricsPeriod.WEEKLY, project=project)).snapshot
        projects = [project] if project else None

        active = await self.storage.query_alerts(AlertFilter(
            projects=projects, statuses=[AlertStatus.ACTIVE.value],
        ))
        acknowledged = await self.storage.query_alerts(AlertFilter(
            projects=projects, statuses=[AlertStatus.ACKNOWLEDGED.value],
        ))
        open_improvements = await self.storage.query_improvements(ImprovementFilter(
            projects=projects, statuses=OPEN_IMPROVEMENT_STATUSES,
        ))

        project_statuses = []
        for name in sorted([project] if project else snapshot.by_project):
            pm = snapshot.by_project.get(name)
            project_alerts = sum(1 for a in active if a.project == name)
            project_improvements = sum(1 for i in open_improvements if name in i.affected_projects)
            success_rate = pm.success_rate if pm else 1.0
            project_statuses.append(ProjectStatus(
                name=name,
                health_score=health_score(success_rate, project_alerts, project_improvements),
                executions=pm.executions if pm else 0,
                success_rate=success_rate,
                avg_duration=pm.avg_duration if pm else 0.0,
                active_alerts=project_alerts,
                open_improvements=project_improvements,
            ))

        return StatusReport(
            timestamp=snapshot.timestamp,
            health_score=health_score(snapshot.success_rate, len(active), len(open_improvements)),
            snapshot=snapshot,
            active_alerts=active,
            acknowledged_alerts=len(acknowledged),
            open_improvements=open_improvements,
            projects=project_statuses,
        )

    async def prune(self) -> int:
        """Delete executions older than the retention window."""
        cutoff = self.now() - timedelta(days=self.config.retention_days)
        removed = await self.storage.prune_executions(cutoff)
        logger.info("Pruned %d executions older than %s", removed, cutoff.isoformat())
        return removed

    async def close(self) -> None:
        await self.storage.close()


async def create_observer(
    config: Optional[ObserverConfig] = None,
    channels: Optional[list[NotificationChannel]] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> LifecycleObserver:
    """Open the SQLite database named by ``config`` and build an observer over it."""
    config = config or ObserverConfig.load()
    session_maker = await init_db(config.db_path)
    storage = SqlStorage(session_maker, engine=get_engine(), clock=clock)
    observer = LifecycleObserver(config, storage, channels=channels, clock=clock)
    await observer.start()
    return observer
