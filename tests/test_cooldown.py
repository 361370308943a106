"""
Tests for Cooldown Tracker
==========================

Tests for per-rule, per-(tool, project) cooldown windows.
"""

from datetime import timedelta

from lifecycle_observer.cooldown import CooldownEntry, CooldownTracker

RULE = "REL-003-CONSECUTIVE-FAILURES"
HOUR_MS = 3_600_000


class TestCooldownTracker:

    def test_recorded_key_is_in_cooldown(self, clock):
        tracker = CooldownTracker(clock=clock)
        tracker.record(RULE, "ai-pr-dev", "shop")

        assert tracker.is_in_cooldown(RULE, "ai-pr-dev", "shop", HOUR_MS)
        assert not tracker.is_in_cooldown(RULE, "ai-pr-dev", "billing", HOUR_MS)
        assert not tracker.is_in_cooldown(RULE, "ai-sql-dev", "shop", HOUR_MS)

    def test_cooldown_expires(self, clock):
        tracker = CooldownTracker(clock=clock)
        tracker.record(RULE, "ai-pr-dev", "shop")

        clock.advance(minutes=59)
        assert tracker.is_in_cooldown(RULE, "ai-pr-dev", "shop", HOUR_MS)
        clock.advance(minutes=1)
        assert not tracker.is_in_cooldown(RULE, "ai-pr-dev", "shop", HOUR_MS)

    def test_no_cooldown_configured(self, clock):
        tracker = CooldownTracker(clock=clock)
        tracker.record(RULE, "ai-pr-dev", "shop")
        assert not tracker.is_in_cooldown(RULE, "ai-pr-dev", "shop", None)
        assert not tracker.is_in_cooldown(RULE, "ai-pr-dev", "shop", 0)

    def test_record_overwrites(self, clock):
        tracker = CooldownTracker(clock=clock)
        tracker.record(RULE, "ai-pr-dev", "shop")
        clock.advance(minutes=50)
        entry = tracker.record(RULE, "ai-pr-dev", "shop")

        assert len(tracker) == 1
        assert tracker.entries() == [entry]
        clock.advance(minutes=30)
        assert tracker.is_in_cooldown(RULE, "ai-pr-dev", "shop", HOUR_MS)

    def test_purges_entries_past_ceiling(self, clock):
        tracker = CooldownTracker(clock=clock, ceiling=timedelta(hours=2))
        tracker.record(RULE, "ai-pr-dev", "shop")
        clock.advance(hours=3)
        tracker.record("REL-001-REPEATED-ERROR", "ai-pr-dev", "shop")

        assert [entry.rule_id for entry in tracker.entries()] == ["REL-001-REPEATED-ERROR"]

    def test_restore_skips_expired_and_keeps_newest(self, clock):
        tracker = CooldownTracker(clock=clock)
        now = clock()
        restored = tracker.restore([
            CooldownEntry(RULE, "ai-pr-dev", "shop", now - timedelta(minutes=30)),
            CooldownEntry(RULE, "ai-pr-dev", "shop", now - timedelta(minutes=50)),
            CooldownEntry(RULE, "ai-sql-dev", "shop", now - timedelta(hours=30)),
        ])

        assert restored == 1
        assert tracker.entries()[0].triggered_at == now - timedelta(minutes=30)
        assert not tracker.is_in_cooldown(RULE, "ai-sql-dev", "shop", HOUR_MS)

    def test_clear(self, clock):
        tracker = CooldownTracker(clock=clock)
        tracker.record(RULE, "ai-pr-dev", "shop")
        tracker.clear()
        assert len(tracker) == 0
