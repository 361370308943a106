"""
Cooldown Tracker
================

In-process timers that stop a detection rule from re-firing for the same
(tool, project) pair within the rule's cooldown window.

Usage:
    tracker = CooldownTracker()
    tracker.record("REL-003-CONSECUTIVE-FAILURES", "ai-pr-dev", "shop")
    tracker.is_in_cooldown("REL-003-CONSECUTIVE-FAILURES", "ai-pr-dev", "shop", 3_600_000)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from lifecycle_observer.records import as_utc, utc_now

DEFAULT_CEILING = timedelta(hours=24)

CooldownKey = tuple[str, str, str]


@dataclass(frozen=True)
class CooldownEntry:
    """Last trigger time of a rule for one (tool, project) pair."""
    rule_id: str
    tool: str
    project: str
    triggered_at: datetime

    @property
    def key(self) -> CooldownKey:
        return (self.rule_id, self.tool, self.project)


class CooldownTracker:
    """
    Per-rule, per-(tool, project) cooldown state.

    At most one entry exists per key. Entries older than the ceiling are
    purged every time a new entry is recorded.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        ceiling: timedelta = DEFAULT_CEILING,
    ):
        self._clock = clock or utc_now
        self.ceiling = ceiling
        self._entries: dict[CooldownKey, CooldownEntry] = {}

    def now(self) -> datetime:
        return as_utc(self._clock())

    def record(self, rule_id: str, tool: str, project: str) -> CooldownEntry:
        """Overwrite the entry for this key with the current time."""
        now = self.now()
        entry = CooldownEntry(rule_id, tool, project, now)
        self._entries[entry.key] = entry
        self._purge(now)
        return entry

    def is_in_cooldown(
        self,
        rule_id: str,
        tool: str,
        project: str,
        cooldown_ms: Optional[int],
    ) -> bool:
        """True iff an entry exists and fewer than ``cooldown_ms`` have elapsed."""
        if not cooldown_ms:
            return False
        entry = self._entries.get((rule_id, tool, project))
        if entry is None:
            return False
        return self.now() - entry.triggered_at < timedelta(milliseconds=cooldown_ms)

    def entries(self) -> list[CooldownEntry]:
        return list(self._entries.values())

    def restore(self, entries: Iterable[CooldownEntry]) -> int:
        """Load previously recorded entries, skipping any past the ceiling."""
        now = self.now()
        restored = 0
        for entry in entries:
            entry = CooldownEntry(entry.rule_id, entry.tool, entry.project, as_utc(entry.triggered_at))
            if now - entry.triggered_at >= self.ceiling:
                continue
            current = self._entries.get(entry.key)
            if current is None or current.triggered_at < entry.triggered_at:
                self._entries[entry.key] = entry
                restored += 1
        return restored

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _purge(self, now: datetime) -> None:
        expired = [
            key for key, entry in self._entries.items()
            if now - entry.triggered_at >= self.ceiling
        ]
        for key in expired:
            del self._entries[key]
