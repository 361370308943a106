"""
Improvement Detector
====================

Detection engine: evaluates detection rules against an execution and its
history, applies minimum-history and cooldown gates, deduplicates against
open improvements and persists the rest.

Rules run strictly in registry order. A rule that raises is logged and
skipped; storage faults propagate to the caller.

Usage:
    from lifecycle_observer.improvement_detector import ImprovementDetector, DetectionOptions

    detector = ImprovementDetector(storage)
    await detector.load_cooldowns()

    result = await detector.detect_recent(DetectionOptions(dry_run=True))
    print(f"{len(result.triggered)} triggered, {result.deduplicated} duplicates")
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from lifecycle_observer.config import ObserverConfig
from lifecycle_observer.cooldown import CooldownTracker
from lifecycle_observer.detection_rules import (
    DetectionResult,
    DetectionRule,
    RuleContext,
    TriggeredImprovement,
)
from lifecycle_observer.records import (
    DetectionMethod,
    ExecutionFilter,
    ExecutionRecord,
    ImprovementFilter,
    ImprovementStatus,
    ImprovementSuggestion,
    NewImprovement,
    as_utc,
    utc_now,
)
from lifecycle_observer.registry import RuleRegistry, default_detection_registry
from lifecycle_observer.storage import Storage

logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(hours=24)
FULL_SCAN_WINDOW = timedelta(days=30)


@dataclass
class DetectionOptions:
    """Options for a detection run."""
    rule_ids: Optional[list[str]] = None
    since: Optional[datetime] = None
    tools: Optional[list[str]] = None
    projects: Optional[list[str]] = None
    skip_deduplication: bool = False
    dry_run: bool = False


@dataclass
class DetectionRunResult:
    """Summary of a detection run."""
    timestamp: datetime
    executions_analyzed: int = 0
    rules_evaluated: int = 0
    triggered: list[TriggeredImprovement] = field(default_factory=list)
    created: list[ImprovementSuggestion] = field(default_factory=list)
    deduplicated: int = 0


class ImprovementDetector:
    """
    Runs detection rules over executions and records improvements.

    Cooldowns live in the in-process tracker, which is authoritative; every
    recorded entry is mirrored to storage so ``load_cooldowns`` can restore
    them after a restart.
    """

    def __init__(
        self,
        storage: Storage,
        registry: Optional[RuleRegistry[DetectionRule]] = None,
        cooldowns: Optional[CooldownTracker] = None,
        config: Optional[ObserverConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            storage: Storage collaborator for history, improvements and cooldowns
            registry: Detection rules (defaults to the built-in catalog)
            cooldowns: Cooldown tracker (defaults to one sharing ``clock``)
            config: Observer configuration for window sizes and dedup tuning
            clock: Time source (defaults to current UTC time)
        """
        self.storage = storage
        self.registry = registry or default_detection_registry()
        self.config = config or ObserverConfig()
        self._clock = clock or utc_now
        self.cooldowns = cooldowns or CooldownTracker(
            clock=self._clock,
            ceiling=timedelta(hours=self.config.cooldown_ceiling_hours),
        )

    def now(self) -> datetime:
        return as_utc(self._clock())

    # =========================================================================
    # Evaluation
    # =========================================================================

    def _rules_to_run(self, rule_ids: Optional[list[str]] = None) -> list[DetectionRule]:
        if rule_ids:
            return [rule for rule in map(self.registry.by_id, rule_ids) if rule is not None]
        return self.registry.list_enabled()

    async def _history(self, execution: ExecutionRecord, limit: int, **scope) -> list[ExecutionRecord]:
        rows = await self.storage.query_executions(ExecutionFilter(
            until=execution.timestamp,
            limit=limit + 1,
            **scope,
        ))
        return [e for e in rows if e.id != execution.id][:limit]

    async def build_context(self, execution: ExecutionRecord) -> RuleContext:
        """Assemble the three most-recent-first history slices prior to ``execution``."""
        return RuleContext(
            execution=execution,
            tool_history=await self._history(
                execution, self.config.tool_history_limit, tools=[execution.tool]
            ),
            project_history=await self._history(
                execution, self.config.project_history_limit, projects=[execution.project]
            ),
            all_history=await self._history(execution, self.config.global_history_limit),
        )

    def _normalize(self, result: Union[DetectionResult, bool]) -> DetectionResult:
        if isinstance(result, bool):
            result = DetectionResult(triggered=result)
        if result.confidence is None:
            result = DetectionResult(
                triggered=result.triggered,
                confidence=self.config.default_confidence,
                context=result.context,
            )
        return result

    async def evaluate(
        self,
        execution: ExecutionRecord,
        rule_ids: Optional[list[str]] = None,
    ) -> list[TriggeredImprovement]:
        """
        Evaluate detection rules for a single execution.

        Args:
            execution: The execution to evaluate
            rule_ids: Restrict to these rule ids (defaults to all enabled rules)

        Returns:
            Triggered improvements in rule order
        """
        context = await self.build_context(execution)
        triggered: list[TriggeredImprovement] = []

        for rule in self._rules_to_run(rule_ids):
            history = context.history_for(rule.history_scope)
            if len(history) < rule.min_history_required:
                continue

            if self.cooldowns.is_in_cooldown(rule.id, execution.tool, execution.project, rule.cooldown_ms):
                logger.debug("Rule %s in cooldown for %s/%s", rule.id, execution.tool, execution.project)
                continue

            try:
                result = self._normalize(rule.condition(context))
            except Exception as e:
                logger.warning("Rule %s failed to evaluate: %s", rule.id, e, exc_info=True)
                continue

            if not result.triggered:
                continue

            if rule.cooldown_ms:
                entry = self.cooldowns.record(rule.id, execution.tool, execution.project)
                await self.storage.save_detection_cooldown(entry)

            triggered.append(TriggeredImprovement(
                rule=rule,
                execution=execution,
                confidence=result.confidence,
                context=result.context,
                affected_tools=[execution.tool],
                affected_projects=[execution.project],
            ))

        return triggered

    # =========================================================================
    # Batch Runs
    # =========================================================================

    async def run_batch(
        self,
        executions: list[ExecutionRecord],
        options: Optional[DetectionOptions] = None,
    ) -> DetectionRunResult:
        """
        Evaluate every execution, then deduplicate and persist the triggers.

        A storage failure aborts the remaining persistence and propagates;
        improvements already inserted stay written.
        """
        options = options or DetectionOptions()
        rules = self._rules_to_run(options.rule_ids)
        result = DetectionRunResult(
            timestamp=self.now(),
            executions_analyzed=len(executions),
            rules_evaluated=len(rules),
        )

        logger.info("Starting improvement detection: %d executions, %d rules", len(executions), len(rules))

        for execution in executions:
            result.triggered.extend(await self.evaluate(execution, options.rule_ids))

        for triggered in result.triggered:
            if not options.skip_deduplication and await self.is_duplicate(triggered):
                result.deduplicated += 1
                continue

            if options.dry_run:
                continue

            saved = await self.storage.insert_improvement(self.build_improvement(triggered))
            result.created.append(saved)
            logger.info("Created improvement %s from rule %s", saved.id, triggered.rule.id)

        return result

    async def _executions_since(self, since: datetime, options: DetectionOptions) -> list[ExecutionRecord]:
        return await self.storage.query_executions(ExecutionFilter(
            since=since,
            tools=options.tools,
            projects=options.projects,
        ))

    async def detect_recent(self, options: Optional[DetectionOptions] = None) -> DetectionRunResult:
        """Run detection over executions from the last 24 hours (or ``options.since``)."""
        options = options or DetectionOptions()
        since = options.since or self.now() - RECENT_WINDOW
        return await self.run_batch(await self._executions_since(since, options), options)

    async def run_full_scan(self, options: Optional[DetectionOptions] = None) -> DetectionRunResult:
        """Run detection over executions from the last 30 days (or ``options.since``)."""
        options = options or DetectionOptions()
        since = options.since or self.now() - FULL_SCAN_WINDOW
        return await self.run_batch(await self._executions_since(since, options), options)

    # =========================================================================
    # Deduplication & Improvement Building
    # =========================================================================

    async def is_duplicate(self, triggered: TriggeredImprovement) -> bool:
        """
        Check whether an equivalent improvement is already open.

        A duplicate is an open or in-progress improvement from the dedup
        window whose detection context names the same rule and which shares
        at least one tool and at least one project with the trigger.
        """
        since = self.now() - timedelta(days=self.config.dedup_window_days)
        existing = await self.storage.query_improvements(ImprovementFilter(
            statuses=[ImprovementStatus.OPEN.value, ImprovementStatus.IN_PROGRESS.value],
            tools=triggered.affected_tools,
            since=since,
        ))
        rule_id = triggered.rule.id
        tools = set(triggered.affected_tools)
        projects = set(triggered.affected_projects)
        return any(
            rule_id in (imp.detection_context or "")
            and tools & set(imp.affected_tools)
            and projects & set(imp.affected_projects)
            for imp in existing
        )

    def build_improvement(self, triggered: TriggeredImprovement) -> NewImprovement:
        rule = triggered.rule
        return NewImprovement(
            improvement_type=rule.improvement_type,
            severity=rule.severity,
            scope=rule.scope,
            title=rule.name,
            description=f"{rule.description}\n\n{triggered.context or ''}".strip(),
            suggested_action=rule.suggested_action,
            affected_tools=list(triggered.affected_tools),
            affected_projects=list(triggered.affected_projects),
            detected_by=DetectionMethod.RULE.value,
            detection_context=(
                f"Rule: {rule.id}\n"
                f"Confidence: {triggered.confidence * 100:.0f}%\n"
                f"Execution: {triggered.execution.id}"
            ),
            estimated_impact=rule.estimated_impact,
            estimated_effort=rule.estimated_effort,
            tags=list(rule.tags),
        )

    # =========================================================================
    # Cooldown State
    # =========================================================================

    async def load_cooldowns(self) -> int:
        """Restore persisted cooldown entries; returns the number restored."""
        entries = await self.storage.load_detection_cooldowns()
        restored = self.cooldowns.restore(entries)
        logger.debug("Restored %d detection cooldowns", restored)
        return restored

    def clear_cooldowns(self) -> None:
        self.cooldowns.clear()
