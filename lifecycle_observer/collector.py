"""
Execution Collector
===================

Tracks a tool invocation from start to finish and persists the completed
ExecutionRecord. Failures without an explicit error category are classified
from the error text.

Usage:
    from lifecycle_observer.collector import ExecutionCollector

    collector = ExecutionCollector(storage)
    handle = collector.start("ai-pr-dev", "review", project="shop", project_path="/work/shop")
    collector.record_metric(handle, "files_reviewed", 12)
    record = await collector.succeed(handle)
"""

import logging
import re
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Union

from lifecycle_observer.records import (
    ErrorCategory,
    ExecutionRecord,
    ExecutionStatus,
    as_utc,
    generate_id,
    utc_now,
)
from lifecycle_observer.storage import Storage

logger = logging.getLogger(__name__)


# Checked in order; the first category with a matching pattern wins.
ERROR_PATTERNS: tuple[tuple[ErrorCategory, tuple[re.Pattern, ...]], ...] = (
    (ErrorCategory.API_KEY_MISSING, (
        re.compile(r"api[_\s]?key", re.IGNORECASE),
        re.compile(r"apikey", re.IGNORECASE),
        re.compile(r"ANTHROPIC_API_KEY"),
        re.compile(r"OPENAI_API_KEY"),
        re.compile(r"authentication.*required", re.IGNORECASE),
        re.compile(r"unauthorized.*api", re.IGNORECASE),
    )),
    (ErrorCategory.API_RATE_LIMIT, (
        re.compile(r"rate[_\s]?limit", re.IGNORECASE),
        re.compile(r"ratelimit", re.IGNORECASE),
        re.compile(r"429"),
        re.compile(r"too many requests", re.IGNORECASE),
        re.compile(r"quota exceeded", re.IGNORECASE),
        re.compile(r"throttl", re.IGNORECASE),
    )),
    (ErrorCategory.TIMEOUT, (
        re.compile(r"timeout", re.IGNORECASE),
        re.compile(r"timed?\s?out", re.IGNORECASE),
        re.compile(r"ETIMEDOUT"),
        re.compile(r"deadline exceeded", re.IGNORECASE),
    )),
    (ErrorCategory.NETWORK_ERROR, (
        re.compile(r"network", re.IGNORECASE),
        re.compile(r"ECONNREFUSED"),
        re.compile(r"ENOTFOUND"),
        re.compile(r"ECONNRESET"),
        re.compile(r"fetch failed", re.IGNORECASE),
        re.compile(r"connection refused", re.IGNORECASE),
        re.compile(r"dns", re.IGNORECASE),
        re.compile(r"socket", re.IGNORECASE),
    )),
    (ErrorCategory.PERMISSION_DENIED, (
        re.compile(r"EPERM"),
        re.compile(r"EACCES"),
        re.compile(r"permission denied", re.IGNORECASE),
        re.compile(r"access denied", re.IGNORECASE),
        re.compile(r"forbidden", re.IGNORECASE),
        re.compile(r"not authorized", re.IGNORECASE),
    )),
    (ErrorCategory.FILE_NOT_FOUND, (
        re.compile(r"ENOENT"),
        re.compile(r"no such file", re.IGNORECASE),
        re.compile(r"file not found", re.IGNORECASE),
        re.compile(r"does not exist", re.IGNORECASE),
        re.compile(r"cannot find", re.IGNORECASE),
        re.compile(r"missing file", re.IGNORECASE),
    )),
    (ErrorCategory.GIT_ERROR, (
        re.compile(r"git.*error", re.IGNORECASE),
        re.compile(r"fatal:.*git", re.IGNORECASE),
        re.compile(r"not a git repository", re.IGNORECASE),
        re.compile(r"merge conflict", re.IGNORECASE),
        re.compile(r"checkout failed", re.IGNORECASE),
        re.compile(r"push failed", re.IGNORECASE),
        re.compile(r"pull failed", re.IGNORECASE),
    )),
    (ErrorCategory.CONFIG_INVALID, (
        re.compile(r"config.*invalid", re.IGNORECASE),
        re.compile(r"invalid.*config", re.IGNORECASE),
        re.compile(r"configuration error", re.IGNORECASE),
        re.compile(r"missing.*config", re.IGNORECASE),
        re.compile(r"malformed.*config", re.IGNORECASE),
    )),
    (ErrorCategory.PARSE_ERROR, (
        re.compile(r"parse error", re.IGNORECASE),
        re.compile(r"syntax error", re.IGNORECASE),
        re.compile(r"SyntaxError"),
        re.compile(r"JSON.*parse", re.IGNORECASE),
        re.compile(r"unexpected token", re.IGNORECASE),
        re.compile(r"invalid.*syntax", re.IGNORECASE),
    )),
    (ErrorCategory.VALIDATION_ERROR, (
        re.compile(r"validation.*error", re.IGNORECASE),
        re.compile(r"validation.*failed", re.IGNORECASE),
        re.compile(r"invalid.*input", re.IGNORECASE),
        re.compile(r"schema.*error", re.IGNORECASE),
        re.compile(r"type.*error", re.IGNORECASE),
    )),
    (ErrorCategory.API_ERROR, (
        re.compile(r"api.*error", re.IGNORECASE),
        re.compile(r"APIError"),
        re.compile(r"500"),
        re.compile(r"502"),
        re.compile(r"503"),
        re.compile(r"internal server error", re.IGNORECASE),
        re.compile(r"service unavailable", re.IGNORECASE),
    )),
)


def categorize_error(error: Union[str, BaseException, None]) -> ErrorCategory:
    """
    Classify an error message (or exception) into an ErrorCategory.

    Exceptions are matched on ``"<TypeName>: <message>"`` so that the type
    name participates (``TimeoutError`` reads as a timeout).
    """
    if error is None:
        return ErrorCategory.UNKNOWN
    if isinstance(error, BaseException):
        text = f"{type(error).__name__}: {error}"
    else:
        text = str(error)

    for category, patterns in ERROR_PATTERNS:
        if any(pattern.search(text) for pattern in patterns):
            return category
    return ErrorCategory.UNKNOWN


@dataclass
class ExecutionHandle:
    """An execution in progress."""
    id: str
    tool: str
    command: str
    project: str
    project_path: str
    started_at: datetime
    args: tuple = ()
    context: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)


class ExecutionCollector:
    """
    Collects execution records for monitored tools.

    ``start`` opens a handle, metrics and context accumulate on it while the
    tool runs, and ``finish`` (or ``succeed``/``fail``/``cancel``) persists
    the record. Persistence faults propagate to the caller.
    """

    def __init__(self, storage: Storage, clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self._clock = clock or utc_now
        self._active: dict[str, ExecutionHandle] = {}

    def now(self) -> datetime:
        return as_utc(self._clock())

    def start(
        self,
        tool: str,
        command: str,
        project: str,
        project_path: str = "",
        args: tuple = (),
        context: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> ExecutionHandle:
        """Start tracking an execution."""
        handle = ExecutionHandle(
            id=generate_id("exec"),
            tool=tool,
            command=command,
            project=project,
            project_path=project_path,
            started_at=self.now(),
            args=tuple(args),
            context=dict(context or {}),
            metadata=dict(metadata or {}),
        )
        self._active[handle.id] = handle
        logger.debug("Started execution %s: %s %s (%s)", handle.id, tool, command, project)
        return handle

    def record_metric(self, handle: ExecutionHandle, key: str, value: Union[int, float, str]) -> None:
        handle.metrics[key] = value

    def update_context(self, handle: ExecutionHandle, **values) -> None:
        handle.context.update(values)

    def update_metadata(self, handle: ExecutionHandle, **values) -> None:
        handle.metadata.update(values)

    def active_executions(self) -> list[ExecutionHandle]:
        return list(self._active.values())

    async def finish(
        self,
        handle: ExecutionHandle,
        status: str,
        error_message: Optional[str] = None,
        error_stack: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> ExecutionRecord:
        """
        Complete an execution and persist its record.

        Args:
            handle: Handle returned by ``start``
            status: ExecutionStatus value
            error_message: Error text for failed executions
            error_stack: Stack trace for failed executions
            error_type: ErrorCategory value; inferred from ``error_message``
                for failures when omitted

        Returns:
            The persisted ExecutionRecord
        """
        duration = max(0, int((self.now() - handle.started_at).total_seconds() * 1000))

        if status == ExecutionStatus.FAILURE.value and not error_type:
            error_type = categorize_error(error_message).value

        metadata = dict(handle.metadata)
        if handle.metrics:
            metadata["metrics"] = dict(handle.metrics)

        record = ExecutionRecord(
            id=handle.id,
            timestamp=handle.started_at,
            tool=handle.tool,
            project=handle.project,
            project_path=handle.project_path,
            command=handle.command,
            duration=duration,
            status=status,
            error_type=error_type,
            error_message=error_message,
            error_stack=error_stack,
            args=handle.args,
            context=dict(handle.context),
            metadata=metadata,
        )

        saved = await self.storage.insert_execution(record)
        self._active.pop(handle.id, None)
        logger.info("Execution %s completed: %s %s %s in %dms",
                    saved.id, saved.tool, saved.command, saved.status, saved.duration)
        return saved

    async def succeed(self, handle: ExecutionHandle) -> ExecutionRecord:
        return await self.finish(handle, ExecutionStatus.SUCCESS.value)

    async def fail(
        self,
        handle: ExecutionHandle,
        error: Union[str, BaseException],
        category: Optional[ErrorCategory] = None,
    ) -> ExecutionRecord:
        """Complete an execution as failed, classifying ``error`` unless ``category`` is given."""
        error_stack = None
        if isinstance(error, BaseException) and error.__traceback__ is not None:
            error_stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return await self.finish(
            handle,
            ExecutionStatus.FAILURE.value,
            error_message=str(error),
            error_stack=error_stack,
            error_type=(category or categorize_error(error)).value,
        )

    async def cancel(self, handle: ExecutionHandle, reason: Optional[str] = None) -> ExecutionRecord:
        if reason:
            handle.metadata["cancellation_reason"] = reason
        return await self.finish(handle, ExecutionStatus.CANCELLED.value)
