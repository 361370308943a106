"""
Alert Manager
=============

Alert engine: evaluates alert rules against recent executions and a metrics
snapshot, renders messages, persists alerts and notifies, and sweeps active
alerts for auto-resolution. Acknowledge, resolve and suppress are state
transitions delegated to storage.

Rule condition and message faults are logged and the rule is skipped. The
durable cooldown check and alert persistence go through storage, and storage
faults propagate.

Usage:
    from lifecycle_observer.alert_manager import AlertManager

    manager = AlertManager(storage, on_alert=dispatcher.on_alert)
    alerts = await manager.check_rules(recent, snapshot, tool="ai-pr-dev", project="shop")
    resolved = await manager.check_auto_resolve()
"""

import inspect
import logging
import re
from dataclasses import asdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from lifecycle_observer.alert_rules import AlertRule, AlertRuleContext
from lifecycle_observer.config import AlertThresholds
from lifecycle_observer.metrics import MetricsPeriod, MetricsSnapshot, build_snapshot
from lifecycle_observer.records import (
    Alert,
    AlertFilter,
    AlertNotification,
    AlertSeverity,
    AlertStatus,
    ExecutionRecord,
    NewAlert,
    as_utc,
    utc_now,
)
from lifecycle_observer.registry import RuleRegistry, default_alert_registry
from lifecycle_observer.storage import AlertUpdate, Storage

logger = logging.getLogger(__name__)

AUTO_RESOLVE_ACTOR = "auto"
AUTO_RESOLVE_REASON = "Condition no longer met"

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")

AlertHook = Callable[[Alert], Union[None, Awaitable[None]]]


class AlertNotFoundError(Exception):
    """Raised when an alert state transition names an unknown alert."""

    def __init__(self, alert_id: str):
        super().__init__(f"Alert not found: {alert_id}")
        self.alert_id = alert_id


def render_template(template: str, values: dict[str, Any]) -> str:
    """Substitute ``{{name}}`` placeholders; unknown names are left verbatim."""
    def _replace(match: re.Match) -> str:
        value = values.get(match.group(1))
        return str(value) if value is not None else match.group(0)
    return _PLACEHOLDER.sub(_replace, template)


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class AlertManager:
    """
    Evaluates alert rules and manages alert lifecycle state.

    Alert cooldowns are checked against persisted alerts, so they survive
    restarts.
    """

    def __init__(
        self,
        storage: Storage,
        registry: Optional[RuleRegistry[AlertRule]] = None,
        thresholds: Optional[AlertThresholds] = None,
        on_alert: Optional[AlertHook] = None,
        clock: Optional[Callable[[], datetime]] = None,
        window: int = 50,
        protected_branches: tuple[str, ...] = ("main", "master"),
    ):
        """
        Args:
            storage: Storage collaborator for alerts and durable cooldowns
            registry: Alert rules (defaults to the built-in catalog)
            thresholds: Threshold configuration supplied to every rule
            on_alert: Hook called after each new alert is persisted
            clock: Time source (defaults to current UTC time)
            window: Number of recent executions evaluated per check
            protected_branches: Branches that must not receive direct pushes
        """
        self.storage = storage
        self.registry = registry or default_alert_registry()
        self.thresholds = thresholds or AlertThresholds()
        self.on_alert = on_alert
        self._clock = clock or utc_now
        self.window = window
        self.protected_branches = tuple(protected_branches)

    def now(self) -> datetime:
        return as_utc(self._clock())

    def build_context(
        self,
        recent_executions: list[ExecutionRecord],
        metrics: MetricsSnapshot,
        tool: Optional[str] = None,
        project: Optional[str] = None,
    ) -> AlertRuleContext:
        return AlertRuleContext(
            recent_executions=list(recent_executions[:self.window]),
            metrics=metrics,
            thresholds=self.thresholds,
            tool=tool,
            project=project,
            now=self.now(),
            protected_branches=self.protected_branches,
        )

    # =========================================================================
    # Rule Evaluation
    # =========================================================================

    async def _is_blocked(self, rule: AlertRule) -> bool:
        if rule.cooldown_ms > 0 and await self.storage.is_rule_in_cooldown(rule.id, rule.cooldown_ms):
            logger.debug("Alert rule %s in cooldown, skipping", rule.id)
            return True
        if await self.storage.is_rule_suppressed(rule.id):
            logger.debug("Alert rule %s suppressed, skipping", rule.id)
            return True
        return False

    async def check_rules(
        self,
        recent_executions: list[ExecutionRecord],
        metrics: MetricsSnapshot,
        tool: Optional[str] = None,
        project: Optional[str] = None,
    ) -> list[Alert]:
        """
        Evaluate every enabled alert rule and raise alerts for those that hold.

        Args:
            recent_executions: Most-recent-first executions to evaluate
            metrics: Aggregated metrics snapshot
            tool: Tool the executions belong to, if scoped
            project: Project the executions belong to, if scoped

        Returns:
            Newly created alerts in rule order
        """
        context = self.build_context(recent_executions, metrics, tool, project)
        triggered: list[Alert] = []

        for rule in self.registry.list_enabled():
            if await self._is_blocked(rule):
                continue

            try:
                fired = await _maybe_await(rule.condition(context))
                if not fired:
                    continue
                message = render_template(rule.message_template, rule.render_values(context))
                related = rule.select_related(context)
            except Exception as e:
                logger.error("Error checking alert rule %s: %s", rule.id, e, exc_info=True)
                continue

            alert = await self.trigger_alert(NewAlert(
                category=rule.category,
                severity=rule.severity,
                title=rule.name,
                message=message,
                tool=tool,
                project=project,
                triggered_by=rule.id,
                context={
                    "rule_id": rule.id,
                    "rule_name": rule.name,
                    "thresholds": asdict(self.thresholds),
                },
                related_executions=related,
            ))
            triggered.append(alert)
            logger.info("Alert %s triggered by %s: %s", alert.id, rule.id, message)

        return triggered

    async def trigger_alert(self, data: NewAlert) -> Alert:
        """Persist an alert and invoke the notification hook."""
        alert = await self.storage.insert_alert(data)

        if self.on_alert:
            try:
                await _maybe_await(self.on_alert(alert))
            except Exception as e:
                logger.error("Error in alert notification handler for %s: %s", alert.id, e, exc_info=True)

        return alert

    # =========================================================================
    # State Transitions
    # =========================================================================

    async def _transition(self, alert_id: str, update: AlertUpdate) -> Alert:
        alert = await self.storage.update_alert(alert_id, update)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return alert

    async def acknowledge_alert(self, alert_id: str, by: str) -> Alert:
        alert = await self._transition(alert_id, AlertUpdate(
            status=AlertStatus.ACKNOWLEDGED.value,
            actor=by,
        ))
        logger.info("Alert %s acknowledged by %s", alert_id, by)
        return alert

    async def resolve_alert(self, alert_id: str, by: str, resolution: str) -> Alert:
        alert = await self._transition(alert_id, AlertUpdate(
            status=AlertStatus.RESOLVED.value,
            actor=by,
            resolution=resolution,
        ))
        logger.info("Alert %s resolved by %s: %s", alert_id, by, resolution)
        return alert

    async def suppress_alert(self, alert_id: str, until: datetime, by: Optional[str] = None) -> Alert:
        """Suppress an alert; its rule may re-trigger once ``until`` has passed."""
        alert = await self._transition(alert_id, AlertUpdate(
            status=AlertStatus.SUPPRESSED.value,
            actor=by,
            suppressed_until=until,
        ))
        logger.info("Alert %s suppressed until %s", alert_id, until.isoformat())
        return alert

    async def record_notification(self, alert_id: str, notification: AlertNotification) -> Alert:
        alert = await self.storage.add_alert_notification(alert_id, notification)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return alert

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_active_alerts(self) -> list[Alert]:
        return await self.storage.query_alerts(AlertFilter(statuses=[AlertStatus.ACTIVE.value]))

    async def get_critical_alerts(self) -> list[Alert]:
        return await self.storage.query_alerts(AlertFilter(
            statuses=[AlertStatus.ACTIVE.value],
            severities=[AlertSeverity.CRITICAL.value],
        ))

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        return await self.storage.get_alert(alert_id)

    # =========================================================================
    # Auto-Resolve
    # =========================================================================

    async def check_auto_resolve(self) -> list[Alert]:
        """
        Resolve active alerts whose rule reports the condition has cleared.

        Each alert is evaluated against the recent executions of its own tool
        and project, loaded from storage, with a snapshot built from those
        executions. Predicate failures are logged and leave the alert active.
        """
        resolved: list[Alert] = []

        for alert in await self.get_active_alerts():
            rule = self.registry.by_id(alert.triggered_by)
            if rule is None or rule.auto_resolve is None:
                continue

            scoped = await self.storage.recent_executions(
                tool=alert.tool, project=alert.project, limit=self.window,
            )
            snapshot = build_snapshot(scoped, period=MetricsPeriod.DAILY, now=self.now())
            context = self.build_context(scoped, snapshot, alert.tool, alert.project)

            try:
                should_resolve = await _maybe_await(rule.auto_resolve(context))
            except Exception as e:
                logger.error("Error checking auto-resolve for %s: %s", alert.id, e, exc_info=True)
                continue
            if should_resolve:
                resolved.append(await self.resolve_alert(alert.id, AUTO_RESOLVE_ACTOR, AUTO_RESOLVE_REASON))

        return resolved
