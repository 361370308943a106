"""
Tests for Execution Analysis
============================

Tests for error frequency and trends, recommendations, and the efficiency
analysis (utilization, bottlenecks, usage patterns, workflow sequences).
"""

import pytest

from lifecycle_observer.analysis import (
    EfficiencyAnalyzer,
    ErrorAnalyzer,
    classify_trend,
    error_frequency,
    error_recommendations,
    error_trends,
    find_bottlenecks,
    format_error_analysis,
    format_hour,
    usage_patterns,
    workflow_sequences,
)
from lifecycle_observer.storage import MemoryStorage


@pytest.fixture
def storage(clock):
    return MemoryStorage(clock=clock)


async def _store(storage, records):
    for record in records:
        await storage.insert_execution(record)


# =============================================================================
# Error Analysis
# =============================================================================

class TestErrorFrequency:

    def test_groups_by_category(self, make_execution):
        failures = [
            make_execution("failure", error_type="git_error", minutes_ago=5),
            make_execution("failure", error_type="git_error", tool="ai-sql-dev", minutes_ago=2),
            make_execution("failure", error_type="timeout", project="blog"),
        ]
        [git, timeout] = error_frequency(failures)

        assert (git.category, git.count) == ("git_error", 2)
        assert git.percentage == pytest.approx(200 / 3)
        assert git.affected_tools == ["ai-pr-dev", "ai-sql-dev"]
        assert git.last_occurrence == failures[1].timestamp
        assert timeout.affected_projects == ["blog"]

    def test_uncategorized_failure_counts_as_unknown(self, make_execution):
        [freq] = error_frequency([make_execution("failure")])
        assert freq.category == "unknown"

    def test_empty(self):
        assert error_frequency([]) == []


class TestErrorTrends:

    @pytest.mark.parametrize("change, expected", [
        (50.0, "increasing"),
        (10.0, "stable"),
        (-10.0, "stable"),
        (-11.0, "decreasing"),
    ])
    def test_classify(self, change, expected):
        assert classify_trend(change) == expected

    def test_compares_periods(self, make_execution):
        current = [make_execution("failure", error_type="timeout") for _ in range(4)]
        previous = [make_execution("failure", error_type="timeout")]
        previous += [make_execution("failure", error_type="git_error") for _ in range(2)]

        [timeout, git] = error_trends(current, previous)

        assert (timeout.current_period, timeout.previous_period, timeout.change) == (4, 1, 3)
        assert timeout.change_percent == 300
        assert timeout.trend == "increasing"
        assert (git.change, git.change_percent, git.trend) == (-2, -100, "decreasing")

    def test_new_category_is_increasing(self, make_execution):
        [trend] = error_trends([make_execution("failure", error_type="parse_error")], [])
        assert trend.change_percent == 100
        assert trend.trend == "increasing"

    @pytest.mark.asyncio
    async def test_analyzer_splits_periods(self, storage, clock, make_execution):
        await _store(storage, [
            make_execution("failure", error_type="timeout", minutes_ago=60),
            make_execution("failure", error_type="timeout", minutes_ago=60 * 24 * 10),
            make_execution("failure", error_type="timeout", minutes_ago=60 * 24 * 20),
        ])
        [trend] = await ErrorAnalyzer(storage, clock=clock).trends(period_days=7)
        assert (trend.current_period, trend.previous_period) == (1, 1)


class TestRecommendations:

    def test_high_error_rate_and_category_advice(self, make_execution):
        failures = [make_execution("failure", error_type="api_rate_limit") for _ in range(3)]
        recs = error_recommendations(error_frequency(failures), [], error_rate=60.0)
        assert recs[0] == "High error rate (60.0%) - consider investigating root causes"
        assert "Implement exponential backoff retry logic" in recs

    def test_rare_categories_get_no_advice(self, make_execution):
        failures = [make_execution("failure", error_type="timeout") for _ in range(2)]
        assert error_recommendations(error_frequency(failures), [], error_rate=5.0) == []

    def test_generic_advice_for_frequent_unknown(self, make_execution):
        failures = [make_execution("failure") for _ in range(5)]
        recs = error_recommendations(error_frequency(failures), [], error_rate=10.0)
        assert recs == ["Investigate recurring unknown errors (5 occurrences)"]

    def test_rising_trend(self, make_execution):
        trends = error_trends([make_execution("failure", error_type="git_error") for _ in range(3)], [])
        recs = error_recommendations([], trends, error_rate=0.0)
        assert recs == ["git_error errors are increasing (+3) - needs attention"]


class TestErrorAnalyzer:

    @pytest.mark.asyncio
    async def test_analyze(self, storage, clock, make_execution):
        await _store(storage, [
            make_execution("failure", error_type="git_error", minutes_ago=3),
            make_execution("failure", error_type="git_error", tool="ai-sql-dev", minutes_ago=2),
            make_execution("success", minutes_ago=1),
            make_execution("success", minutes_ago=1),
            make_execution("failure", error_type="git_error", minutes_ago=60 * 24 * 40),
        ])

        analysis = await ErrorAnalyzer(storage, clock=clock).analyze(days=30)

        assert analysis.total_executions == 4
        assert analysis.total_errors == 2
        assert analysis.error_rate == 50
        assert analysis.most_common == "git_error"
        assert analysis.by_tool == {"ai-pr-dev": 1, "ai-sql-dev": 1}
        assert analysis.by_project == {"shop": 2}
        assert analysis.to_dict()["by_category"][0]["last_occurrence"].startswith("2026-03-02")
        assert "git_error: 2 (100.0%)" in format_error_analysis(analysis)

    @pytest.mark.asyncio
    async def test_scoped_to_tool(self, storage, clock, make_execution):
        await _store(storage, [
            make_execution("failure", error_type="timeout"),
            make_execution("failure", error_type="timeout", tool="ai-sql-dev"),
        ])
        analysis = await ErrorAnalyzer(storage, clock=clock).analyze(tool="ai-sql-dev")
        assert analysis.total_errors == 1
        assert analysis.by_tool == {"ai-sql-dev": 1}

    @pytest.mark.asyncio
    async def test_empty(self, storage, clock):
        analysis = await ErrorAnalyzer(storage, clock=clock).analyze()
        assert analysis.error_rate == 0
        assert analysis.most_common is None
        assert analysis.recommendations == []

    @pytest.mark.asyncio
    async def test_recurring_and_most_recent(self, storage, clock, make_execution):
        analyzer = ErrorAnalyzer(storage, clock=clock)
        latest = make_execution("failure", error_type="network_error", minutes_ago=1)
        await _store(storage, [
            make_execution("failure", error_type="network_error", minutes_ago=30),
            make_execution("failure", error_type="network_error", minutes_ago=60 * 30),
            latest,
        ])

        assert not await analyzer.is_recurring("network_error", threshold=3)
        assert await analyzer.is_recurring("network_error", threshold=2)
        assert (await analyzer.most_recent("network_error")).id == latest.id
        assert await analyzer.most_recent("timeout") is None


# =============================================================================
# Efficiency Analysis
# =============================================================================

class TestBottlenecks:

    def test_needs_enough_samples(self, make_execution):
        assert find_bottlenecks([make_execution("failure", duration=90_000) for _ in range(4)]) == []

    def test_slow_and_failing(self, make_execution):
        runs = [make_execution("failure", duration=60_000) for _ in range(3)]
        runs += [make_execution(duration=60_000) for _ in range(2)]

        bottlenecks = {b.type: b for b in find_bottlenecks(runs)}

        assert set(bottlenecks) == {"slow_tool", "frequent_failure"}
        assert bottlenecks["slow_tool"].severity == 1.0
        assert bottlenecks["slow_tool"].description == "Average execution time is 60.0s"
        assert bottlenecks["frequent_failure"].severity == pytest.approx(0.6)

    def test_high_variance(self, make_execution):
        runs = [make_execution(duration=d) for d in (100, 100, 100, 100, 5000)]
        [bottleneck] = find_bottlenecks(runs)
        assert bottleneck.type == "high_variance"
        assert bottleneck.severity == 1.0


class TestPatterns:

    def test_usage_patterns_bucket_by_weekday_and_hour(self, make_execution):
        # The fixed clock is Monday 2026-03-02 12:00 UTC.
        runs = [make_execution(minutes_ago=5), make_execution("failure", minutes_ago=10)]
        runs.append(make_execution(minutes_ago=60 * 24))

        [monday, sunday] = usage_patterns(runs)

        assert (monday.day_of_week, monday.hour, monday.executions) == (0, 11, 2)
        assert monday.success_rate == 0.5
        assert (sunday.day_of_week, sunday.hour) == (6, 11)

    def test_format_hour(self):
        assert format_hour(0) == "12AM"
        assert format_hour(13) == "1PM"

    def test_workflow_sequences(self, make_execution):
        runs = []
        for start in (120, 60):
            runs.append(make_execution(tool="ai-feature-builder", minutes_ago=start))
            runs.append(make_execution(tool="ai-test-generator", minutes_ago=start - 2))
            runs.append(make_execution(tool="ai-pr-dev", minutes_ago=start - 4))
        runs.append(make_execution(tool="ai-sql-dev", project="blog", minutes_ago=59))

        sequences = {tuple(s.tools): s for s in workflow_sequences(runs)}

        full = sequences[("ai-feature-builder", "ai-test-generator", "ai-pr-dev")]
        assert full.count == 2
        assert full.avg_total_duration == 3000
        assert full.success_rate == 1.0
        assert all("ai-sql-dev" not in chain for chain in sequences)

    def test_single_occurrence_is_not_a_sequence(self, make_execution):
        runs = [make_execution(tool="ai-feature-builder", minutes_ago=5), make_execution(minutes_ago=4)]
        assert workflow_sequences(runs) == []


class TestEfficiencyAnalyzer:

    @pytest.mark.asyncio
    async def test_empty(self, storage, clock):
        analysis = await EfficiencyAnalyzer(storage, clock=clock).analyze(days=7)
        assert analysis.total_executions == 0
        assert analysis.recommendations == ["No execution data available for analysis"]

    @pytest.mark.asyncio
    async def test_analyze(self, storage, clock, make_execution):
        await _store(storage, [make_execution(minutes_ago=i) for i in range(1, 15)])
        await _store(storage, [make_execution(tool="ai-docs-generator", minutes_ago=60 * 24 * 9)])

        analysis = await EfficiencyAnalyzer(storage, clock=clock).analyze(days=10)

        assert analysis.total_executions == 15
        assert analysis.executions_per_day == 1.5
        busy, idle = analysis.tool_utilization
        assert (busy.tool, busy.total_executions, busy.underutilized) == ("ai-pr-dev", 14, False)
        assert (idle.tool, idle.days_since_last_use, idle.underutilized) == ("ai-docs-generator", 9, True)
        assert "1 tool(s) appear underutilized: ai-docs-generator" in analysis.recommendations
        assert "Peak usage times: 11AM on Monday" in analysis.recommendations
        assert analysis.to_dict()["period_end"] == clock().isoformat()

    @pytest.mark.asyncio
    async def test_rejects_empty_window(self, storage, clock):
        with pytest.raises(ValueError):
            await EfficiencyAnalyzer(storage, clock=clock).analyze(days=0)
