"""
Shared fixtures: a controllable clock and an execution record factory.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from lifecycle_observer.records import ExecutionRecord, generate_id

NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = NOW):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def make_execution(clock):
    """Factory for execution records timestamped relative to the clock."""
    def _make(
        status: str = "success",
        *,
        tool: str = "ai-pr-dev",
        project: str = "shop",
        duration: int = 1000,
        error_type: Optional[str] = None,
        error_message: Optional[str] = None,
        minutes_ago: float = 1,
        output: Optional[str] = None,
        context: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> ExecutionRecord:
        metadata = dict(metadata or {})
        if output is not None:
            metadata["output"] = output
        return ExecutionRecord(
            id=generate_id("exec"),
            timestamp=clock() - timedelta(minutes=minutes_ago),
            tool=tool,
            project=project,
            project_path=f"/work/{project}",
            command="run",
            duration=duration,
            status=status,
            error_type=error_type,
            error_message=error_message,
            context=dict(context or {}),
            metadata=metadata,
        )
    return _make


@pytest.fixture
def make_history(make_execution):
    """Most-recent-first list of executions, one minute apart."""
    def _history(statuses, **kwargs) -> list[ExecutionRecord]:
        return [
            make_execution(status, minutes_ago=index + 1, **kwargs)
            for index, status in enumerate(statuses)
        ]
    return _history
