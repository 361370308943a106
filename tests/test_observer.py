"""
Tests for the observer facade: the per-execution pipeline end to end.
"""

from datetime import timedelta

import pytest
import pytest_asyncio

from lifecycle_observer.config import ObserverConfig
from lifecycle_observer.improvement_detector import DetectionOptions
from lifecycle_observer.notifications import ConsoleChannel, FileChannel
from lifecycle_observer.observer import LifecycleObserver, build_channels, create_observer
from lifecycle_observer.records import NewAlert, NewImprovement
from lifecycle_observer.storage import MemoryStorage


@pytest.fixture
def storage(clock):
    return MemoryStorage(clock=clock)


@pytest.fixture
def alert_log(tmp_path):
    return FileChannel(tmp_path / "alerts.jsonl")


@pytest.fixture
def observer(storage, alert_log, clock, tmp_path):
    config = ObserverConfig(data_dir=str(tmp_path))
    return LifecycleObserver(config, storage, channels=[alert_log], clock=clock)


def _improvement(severity):
    return NewImprovement(
        improvement_type="reliability",
        severity=severity,
        scope="tool",
        title="Add retries to ai-pr-dev",
        description="Timeouts keep failing reviews",
        suggested_action="Retry transient failures",
        affected_tools=["ai-pr-dev"],
        affected_projects=["shop"],
        detected_by="REL-001-HIGH-FAILURE-RATE",
    )


def _alert(tool, project, severity):
    return NewAlert(
        category="tool_failure",
        severity=severity,
        title="Consecutive Failures",
        message=f"{tool} has failed 3 consecutive times",
        triggered_by="ALERT-REL-001",
        tool=tool,
        project=project,
    )


class TestBuildChannels:

    def test_channels_follow_config(self, tmp_path):
        config = ObserverConfig(data_dir=str(tmp_path), console_notifications=False)
        console, log = build_channels(config)
        assert isinstance(console, ConsoleChannel)
        assert not console.is_enabled()
        assert log.is_enabled()
        assert log.path == tmp_path / "alerts.jsonl"


class TestObserve:

    @pytest.mark.asyncio
    async def test_failure_streak_raises_improvement_and_alert(
        self, observer, storage, alert_log, make_history, make_execution
    ):
        for record in make_history(["failure"] * 3):
            await storage.insert_execution(record)

        report = await observer.observe(make_execution("failure", minutes_ago=0))

        assert report.execution.status == "failure"
        created_rules = [i.detection_context.splitlines()[0] for i in report.detection.created]
        assert "Rule: REL-003-CONSECUTIVE-FAILURES" in created_rules
        [alert] = [a for a in report.alerts if a.triggered_by == "ALERT-REL-001"]
        assert alert.tool == "ai-pr-dev"
        assert alert.message == "ai-pr-dev has failed 4 consecutive times"

        logged = alert_log.read_alerts()
        assert alert.id in {entry["id"] for entry in logged}
        stored = await storage.get_alert(alert.id)
        assert [n.channel for n in stored.notifications_sent] == ["file"]

    @pytest.mark.asyncio
    async def test_success_auto_resolves(self, observer, storage, make_history, make_execution, clock):
        for record in make_history(["failure"] * 3):
            await storage.insert_execution(record)
        report = await observer.observe(make_execution("failure", minutes_ago=0))
        [alert] = [a for a in report.alerts if a.triggered_by == "ALERT-REL-001"]

        clock.advance(minutes=5)
        report = await observer.observe(make_execution("success", minutes_ago=0))

        assert [a.id for a in report.resolved] == [alert.id]
        assert (await storage.get_alert(alert.id)).resolved_by == "auto"

    @pytest.mark.asyncio
    async def test_repeat_failure_is_deduplicated(
        self, observer, storage, make_history, make_execution
    ):
        for record in make_history(["failure"] * 3):
            await storage.insert_execution(record)
        await observer.observe(make_execution("failure", minutes_ago=0))

        report = await observer.observe(make_execution("failure", minutes_ago=0))
        assert report.detection.deduplicated >= 1
        assert "Rule: REL-003-CONSECUTIVE-FAILURES" not in [
            i.detection_context.splitlines()[0] for i in report.detection.created
        ]

    @pytest.mark.asyncio
    async def test_alert_rules_scoped_to_project(self, observer, storage, make_history, make_execution):
        for record in make_history(["failure"] * 3, project="blog"):
            await storage.insert_execution(record)

        report = await observer.observe(make_execution("failure", minutes_ago=0))

        assert [a for a in report.alerts if a.triggered_by == "ALERT-REL-001"] == []


class TestAutoResolveSweep:

    @pytest_asyncio.fixture
    async def degraded(self, observer, storage, make_execution):
        for minutes in range(10, 30):
            await storage.insert_execution(make_execution(duration=100, minutes_ago=minutes))
        for minutes in range(1, 6):
            await storage.insert_execution(make_execution(duration=10_000, minutes_ago=minutes))
        return await observer.alerts.trigger_alert(NewAlert(
            category="performance_degradation",
            severity="warning",
            title="Performance Degradation",
            message="ai-pr-dev performance degraded",
            triggered_by="ALERT-PERF-001",
            tool="ai-pr-dev",
            project="shop",
        ))

    @pytest.mark.asyncio
    async def test_other_tool_does_not_resolve(self, observer, storage, degraded, make_execution):
        report = await observer.observe(make_execution(tool="ai-sql-dev", minutes_ago=0))

        assert report.resolved == []
        assert (await storage.get_alert(degraded.id)).status == "active"

    @pytest.mark.asyncio
    async def test_resolves_once_own_runs_recover(self, observer, storage, degraded, make_execution, clock):
        for _ in range(5):
            clock.advance(minutes=1)
            await observer.observe(make_execution(duration=100, minutes_ago=0))

        alert = await storage.get_alert(degraded.id)
        assert alert.status == "resolved"
        assert alert.resolved_by == "auto"


class TestTrackedExecutions:

    @pytest.mark.asyncio
    async def test_failed_run_goes_through_pipeline(self, observer, storage, make_history, clock):
        for record in make_history(["failure"] * 3):
            await storage.insert_execution(record)

        handle = observer.track("ai-pr-dev", "review", "shop", project_path="/work/shop")
        clock.advance(seconds=2)
        report = await observer.fail(handle, RuntimeError("fatal: git push failed"))

        assert report.execution.duration == 2000
        assert report.execution.error_type == "git_error"
        assert (await storage.get_execution(handle.id)).status == "failure"
        assert len(await storage.query_executions()) == 4
        [alert] = [a for a in report.alerts if a.triggered_by == "ALERT-REL-001"]
        assert alert.message == "ai-pr-dev has failed 4 consecutive times"

    @pytest.mark.asyncio
    async def test_succeeded_run_is_persisted_once(self, observer, storage, clock):
        handle = observer.track("ai-test-generator", "generate", "shop")
        observer.collector.record_metric(handle, "tests_written", 7)
        clock.advance(seconds=1)

        report = await observer.succeed(handle)

        assert report.execution.metadata["metrics"] == {"tests_written": 7}
        assert [e.id for e in await storage.query_executions()] == [handle.id]
        assert observer.collector.active_executions() == []

    @pytest.mark.asyncio
    async def test_finish_with_status(self, observer, clock):
        handle = observer.track("ai-docs-generator", "build", "shop")
        report = await observer.finish(handle, "timeout", error_message="deadline exceeded")
        assert report.execution.status == "timeout"
        assert report.execution.error_message == "deadline exceeded"


class TestReporting:

    @pytest_asyncio.fixture
    async def populated(self, observer, storage, make_execution):
        for minutes in (1, 2, 3):
            await storage.insert_execution(make_execution(minutes_ago=minutes))
        await storage.insert_execution(make_execution("failure", error_type="timeout", minutes_ago=4))
        await storage.insert_execution(make_execution(tool="ai-sql-dev", project="blog", minutes_ago=5))
        await storage.insert_execution(make_execution("failure", minutes_ago=60 * 24 * 10))

        await storage.insert_improvement(_improvement("urgent"))
        fixed = await storage.insert_improvement(_improvement("medium"))
        await storage.update_improvement(fixed.id, "resolved", resolution="Added retries")

        await storage.insert_alert(_alert("ai-pr-dev", "shop", "critical"))
        noisy = await storage.insert_alert(_alert("ai-sql-dev", "blog", "warning"))
        await observer.alerts.acknowledge_alert(noisy.id, "oncall")
        done = await storage.insert_alert(_alert("ai-pr-dev", "shop", "warning"))
        await observer.alerts.resolve_alert(done.id, "oncall", "Fixed upstream")

    @pytest.mark.asyncio
    async def test_weekly_metrics(self, observer, populated, clock):
        report = await observer.metrics_report()
        snapshot = report.snapshot

        assert report.since == clock() - timedelta(days=7)
        assert snapshot.total_executions == 5
        assert snapshot.success_rate == 0.8
        assert (snapshot.improvements_detected, snapshot.improvements_resolved) == (2, 1)
        assert (snapshot.open_improvements, snapshot.urgent_improvements) == (1, 1)
        assert (snapshot.alerts_triggered, snapshot.alerts_resolved) == (3, 1)
        assert (snapshot.active_alerts, snapshot.critical_alerts) == (1, 1)
        [today] = report.daily
        assert (today.date, today.executions) == ("2026-03-02", 5)

    @pytest.mark.asyncio
    async def test_metrics_scoped_to_tool(self, observer, populated):
        snapshot = (await observer.metrics_report(days=1, tool="ai-sql-dev")).snapshot

        assert snapshot.total_executions == 1
        assert snapshot.improvements_detected == 0
        assert snapshot.alerts_triggered == 1
        assert snapshot.active_alerts == 0

    @pytest.mark.asyncio
    async def test_status(self, observer, populated):
        status = await observer.status()

        assert status.health_score == 79
        assert [a.tool for a in status.active_alerts] == ["ai-pr-dev"]
        assert status.acknowledged_alerts == 1
        assert len(status.open_improvements) == 1
        assert [(p.name, p.health_score) for p in status.projects] == [("blog", 100), ("shop", 77)]
        shop = status.projects[1]
        assert (shop.executions, shop.active_alerts, shop.open_improvements) == (4, 1, 1)

    @pytest.mark.asyncio
    async def test_status_for_one_project(self, observer, populated):
        status = await observer.status(project="blog")

        [blog] = status.projects
        assert (blog.name, blog.executions, blog.health_score) == ("blog", 1, 100)
        assert status.active_alerts == []
        assert status.open_improvements == []

    @pytest.mark.asyncio
    async def test_status_with_no_data(self, observer):
        status = await observer.status()
        assert status.health_score == 100
        assert status.projects == []


class TestMaintenance:

    @pytest.mark.asyncio
    async def test_prune_uses_retention(self, observer, storage, make_execution):
        await storage.insert_execution(make_execution(minutes_ago=60 * 24 * 91))
        await storage.insert_execution(make_execution(minutes_ago=60 * 24 * 89))

        assert await observer.prune() == 1
        assert len(await storage.query_executions()) == 1

    @pytest.mark.asyncio
    async def test_detect_dry_run(self, observer, storage, make_history):
        for record in make_history(["failure"] * 5):
            await storage.insert_execution(record)

        result = await observer.detect(options=DetectionOptions(dry_run=True))
        assert result.executions_analyzed == 5
        assert result.triggered
        assert await storage.query_improvements() == []


@pytest.mark.asyncio
async def test_create_observer_with_sqlite(tmp_path, make_execution, clock):
    config = ObserverConfig(data_dir=str(tmp_path / "data"))
    observer = await create_observer(config, channels=[], clock=clock)
    try:
        report = await observer.observe(make_execution(duration=1500))
        assert report.alerts == []
        assert (tmp_path / "data" / "data.db").exists()

        clock.advance(days=200)
        assert await observer.prune() == 1
    finally:
        await observer.close()

    reopened = await create_observer(config, channels=[], clock=clock)
    try:
        assert await reopened.storage.query_executions() == []
        assert reopened.now() == clock()
    finally:
        await reopened.close()
