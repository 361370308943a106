"""
Storage
=======

Persistence contract consumed by the detection and alert engines, plus an
in-process implementation used by tests and dry runs. The SQLite-backed
implementation lives in ``lifecycle_observer.db.repository``.

All query results are ordered most-recent-first.

Usage:
    storage = MemoryStorage()
    await storage.insert_execution(record)
    recent = await storage.recent_executions(tool="ai-pr-dev", limit=50)
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from lifecycle_observer.cooldown import CooldownEntry
from lifecycle_observer.records import (
    Alert,
    AlertFilter,
    AlertNotification,
    AlertStatus,
    ExecutionFilter,
    ExecutionRecord,
    ImprovementFilter,
    ImprovementStatus,
    ImprovementSuggestion,
    NewAlert,
    NewImprovement,
    as_utc,
    generate_id,
    utc_now,
)


class StorageError(Exception):
    """Raised when the storage backend cannot complete an operation."""
    pass


@dataclass
class AlertUpdate:
    """State transition for an alert."""
    status: str                                 # AlertStatus value
    actor: Optional[str] = None
    resolution: Optional[str] = None
    suppressed_until: Optional[datetime] = None


def apply_alert_update(target: Any, update: AlertUpdate, now: datetime) -> None:
    """Apply an AlertUpdate to an alert-shaped object (dataclass or ORM row)."""
    target.status = update.status
    if update.status == AlertStatus.ACKNOWLEDGED.value:
        target.acknowledged_at = now
        target.acknowledged_by = update.actor
    elif update.status == AlertStatus.RESOLVED.value:
        target.resolved_at = now
        target.resolved_by = update.actor
        target.resolution = update.resolution
    elif update.status == AlertStatus.SUPPRESSED.value:
        target.suppressed_until = as_utc(update.suppressed_until)


def _page(items: list, limit: Optional[int], offset: int) -> list:
    items = items[offset:] if offset else items
    return items[:limit] if limit is not None else items


class Storage:
    """
    Async storage contract.

    Subclasses implement every method; faults surface as StorageError (or
    the backend's own exception) and are never swallowed by the engines.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return as_utc(self._clock())

    # -------------------------------------------------------------------------
    # Executions
    # -------------------------------------------------------------------------

    async def insert_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        raise NotImplementedError

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        raise NotImplementedError

    async def query_executions(self, filter: Optional[ExecutionFilter] = None) -> list[ExecutionRecord]:
        raise NotImplementedError

    async def prune_executions(self, before: datetime) -> int:
        """Delete executions older than ``before``; returns the number removed."""
        raise NotImplementedError

    async def recent_executions(
        self,
        tool: Optional[str] = None,
        project: Optional[str] = None,
        limit: int = 50,
    ) -> list[ExecutionRecord]:
        """Most recent executions, optionally scoped to a tool and/or project."""
        return await self.query_executions(ExecutionFilter(
            tools=[tool] if tool else None,
            projects=[project] if project else None,
            limit=limit,
        ))

    # -------------------------------------------------------------------------
    # Improvements
    # -------------------------------------------------------------------------

    async def insert_improvement(self, data: NewImprovement) -> ImprovementSuggestion:
        raise NotImplementedError

    async def get_improvement(self, improvement_id: str) -> Optional[ImprovementSuggestion]:
        raise NotImplementedError

    async def query_improvements(self, filter: Optional[ImprovementFilter] = None) -> list[ImprovementSuggestion]:
        raise NotImplementedError

    async def update_improvement(
        self,
        improvement_id: str,
        status: str,
        resolution: Optional[str] = None,
    ) -> Optional[ImprovementSuggestion]:
        raise NotImplementedError

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    async def insert_alert(self, data: NewAlert) -> Alert:
        raise NotImplementedError

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        raise NotImplementedError

    async def query_alerts(self, filter: Optional[AlertFilter] = None) -> list[Alert]:
        raise NotImplementedError

    async def update_alert(self, alert_id: str, update: AlertUpdate) -> Optional[Alert]:
        raise NotImplementedError

    async def add_alert_notification(
        self,
        alert_id: str,
        notification: AlertNotification,
    ) -> Optional[Alert]:
        raise NotImplementedError

    async def is_rule_in_cooldown(self, rule_id: str, window_ms: int) -> bool:
        """True iff an alert from ``rule_id`` was triggered within ``window_ms``."""
        since = self.now() - timedelta(milliseconds=window_ms)
        alerts = await self.query_alerts(AlertFilter(triggered_by=rule_id, since=since, limit=1))
        return bool(alerts)

    async def is_rule_suppressed(self, rule_id: str) -> bool:
        """True iff a suppressed alert from ``rule_id`` is still within its suppression."""
        now = self.now()
        alerts = await self.query_alerts(AlertFilter(
            triggered_by=rule_id,
            statuses=[AlertStatus.SUPPRESSED.value],
        ))
        return any(a.suppressed_until and as_utc(a.suppressed_until) > now for a in alerts)

    # -------------------------------------------------------------------------
    # Detection cooldowns
    # -------------------------------------------------------------------------

    async def save_detection_cooldown(self, entry: CooldownEntry) -> None:
        raise NotImplementedError

    async def load_detection_cooldowns(self) -> list[CooldownEntry]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class MemoryStorage(Storage):
    """Storage kept in process memory. Nothing survives a restart."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self._executions: dict[str, ExecutionRecord] = {}
        self._improvements: dict[str, ImprovementSuggestion] = {}
        self._alerts: dict[str, Alert] = {}
        self._cooldowns: dict[tuple[str, str, str], CooldownEntry] = {}

    # Executions

    async def insert_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        if record.id in self._executions:
            raise StorageError(f"Execution already recorded: {record.id}")
        self._executions[record.id] = record
        return record

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        return self._executions.get(execution_id)

    async def query_executions(self, filter: Optional[ExecutionFilter] = None) -> list[ExecutionRecord]:
        filter = filter or ExecutionFilter()
        matches = [e for e in self._executions.values() if filter.matches(e)]
        matches.sort(key=lambda e: e.timestamp, reverse=True)
        return _page(matches, filter.limit, filter.offset)

    async def prune_executions(self, before: datetime) -> int:
        before = as_utc(before)
        stale = [key for key, e in self._executions.items() if e.timestamp < before]
        for key in stale:
            del self._executions[key]
        return len(stale)

    # Improvements

    async def insert_improvement(self, data: NewImprovement) -> ImprovementSuggestion:
        improvement = ImprovementSuggestion.from_new(data, generate_id("imp"), self.now())
        self._improvements[improvement.id] = improvement
        return replace(improvement)

    async def get_improvement(self, improvement_id: str) -> Optional[ImprovementSuggestion]:
        improvement = self._improvements.get(improvement_id)
        return replace(improvement) if improvement else None

    async def query_improvements(self, filter: Optional[ImprovementFilter] = None) -> list[ImprovementSuggestion]:
        filter = filter or ImprovementFilter()
        matches = [replace(i) for i in self._improvements.values() if filter.matches(i)]
        matches.sort(key=lambda i: i.detected_at, reverse=True)
        return _page(matches, filter.limit, filter.offset)

    async def update_improvement(
        self,
        improvement_id: str,
        status: str,
        resolution: Optional[str] = None,
    ) -> Optional[ImprovementSuggestion]:
        improvement = self._improvements.get(improvement_id)
        if improvement is None:
            return None
        improvement.status = ImprovementStatus(status).value
        improvement.status_updated_at = self.now()
        if resolution is not None:
            improvement.resolution = resolution
        return replace(improvement)

    # Alerts

    async def insert_alert(self, data: NewAlert) -> Alert:
        alert = Alert.from_new(data, generate_id("alert"), self.now())
        self._alerts[alert.id] = alert
        return replace(alert)

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        return replace(alert) if alert else None

    async def query_alerts(self, filter: Optional[AlertFilter] = None) -> list[Alert]:
        filter = filter or AlertFilter()
        matches = [replace(a) for a in self._alerts.values() if filter.matches(a)]
        matches.sort(key=lambda a: a.triggered_at, reverse=True)
        return _page(matches, filter.limit, filter.offset)

    async def update_alert(self, alert_id: str, update: AlertUpdate) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        if alert is None:
            return None
        apply_alert_update(alert, update, self.now())
        return replace(alert)

    async def add_alert_notification(
        self,
        alert_id: str,
        notification: AlertNotification,
    ) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        if alert is None:
            return None
        alert.notifications_sent = [*alert.notifications_sent, notification]
        return replace(alert)

    # Detection cooldowns

    async def save_detection_cooldown(self, entry: CooldownEntry) -> None:
        self._cooldowns[entry.key] = entry

    async def load_detection_cooldowns(self) -> list[CooldownEntry]:
        return list(self._cooldowns.values())
