"""
SQL Storage
===========

Storage implementation backed by the SQLAlchemy async ORM (SQLite via
aiosqlite). Each operation opens its own session and commits before
returning, so a failure never leaves earlier writes half-applied.

Usage:
    from lifecycle_observer.db import init_db, SqlStorage

    session_maker = await init_db(Path("~/.lifecycle-observer/data.db"))
    storage = SqlStorage(session_maker)
    await storage.insert_execution(record)
"""

from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from lifecycle_observer.cooldown import CooldownEntry
from lifecycle_observer.db.models import (
    AlertModel,
    DetectionCooldownModel,
    ExecutionModel,
    ImprovementModel,
)
from lifecycle_observer.records import (
    Alert,
    AlertFilter,
    AlertNotification,
    ExecutionFilter,
    ExecutionRecord,
    ImprovementFilter,
    ImprovementStatus,
    ImprovementSuggestion,
    NewAlert,
    NewImprovement,
    as_utc,
    generate_id,
)
from lifecycle_observer.storage import AlertUpdate, Storage, StorageError, apply_alert_update


# =============================================================================
# Row Conversion
# =============================================================================

def _execution_from_row(row: ExecutionModel) -> ExecutionRecord:
    return ExecutionRecord(
        id=row.id,
        timestamp=as_utc(row.timestamp),
        tool=row.tool,
        project=row.project,
        project_path=row.project_path or "",
        command=row.command or "",
        duration=row.duration,
        status=row.status,
        error_type=row.error_type,
        error_message=row.error_message,
        error_stack=row.error_stack,
        args=tuple(row.args or ()),
        context=dict(row.context or {}),
        metadata=dict(row.execution_metadata or {}),
    )


def _improvement_from_row(row: ImprovementModel) -> ImprovementSuggestion:
    return ImprovementSuggestion(
        id=row.id,
        improvement_type=row.improvement_type,
        severity=row.severity,
        scope=row.scope,
        title=row.title,
        description=row.description,
        suggested_action=row.suggested_action,
        affected_tools=list(row.affected_tools or []),
        affected_projects=list(row.affected_projects or []),
        detected_at=as_utc(row.detected_at),
        detected_by=row.detected_by,
        status=row.status,
        detection_context=row.detection_context,
        status_updated_at=as_utc(row.status_updated_at),
        resolution=row.resolution,
        related_improvements=list(row.related_improvements or []),
        estimated_impact=row.estimated_impact,
        estimated_effort=row.estimated_effort,
        tags=list(row.tags or []),
    )


def _alert_from_row(row: AlertModel) -> Alert:
    return Alert(
        id=row.id,
        category=row.category,
        severity=row.severity,
        status=row.status,
        title=row.title,
        message=row.message,
        triggered_at=as_utc(row.triggered_at),
        triggered_by=row.triggered_by,
        context=dict(row.context or {}),
        tool=row.tool,
        project=row.project,
        acknowledged_at=as_utc(row.acknowledged_at),
        acknowledged_by=row.acknowledged_by,
        resolved_at=as_utc(row.resolved_at),
        resolved_by=row.resolved_by,
        resolution=row.resolution,
        suppressed_until=as_utc(row.suppressed_until),
        related_executions=list(row.related_executions or []),
        notifications_sent=[AlertNotification.from_dict(n) for n in (row.notifications_sent or [])],
    )


def _paginate(stmt, limit: Optional[int], offset: int):
    if offset:
        stmt = stmt.offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    return stmt


class SqlStorage(Storage):
    """Storage persisted in the observer SQLite database."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        engine: Optional[AsyncEngine] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            session_maker: Session factory returned by ``init_db``
            engine: Engine to dispose on ``close()`` (optional)
            clock: Time source for insert timestamps and cooldown windows
        """
        super().__init__(clock)
        self._session_maker = session_maker
        self._engine = engine

    async def _run(self, operation, *args):
        """Run ``operation(session, *args)`` in a committed session."""
        try:
            async with self._session_maker() as session:
                result = await operation(session, *args)
                await session.commit()
                return result
        except SQLAlchemyError as e:
            raise StorageError(f"Database operation failed: {e}") from e

    # =========================================================================
    # Executions
    # =========================================================================

    async def insert_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        async def _insert(session: AsyncSession):
            session.add(ExecutionModel(
                id=record.id,
                timestamp=as_utc(record.timestamp),
                tool=record.tool,
                project=record.project,
                project_path=record.project_path,
                command=record.command,
                duration=record.duration,
                status=record.status,
                error_type=record.error_type,
                error_message=record.error_message,
                error_stack=record.error_stack,
                args=list(record.args),
                context=record.context,
                execution_metadata=record.metadata,
            ))
            return record
        return await self._run(_insert)

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        async def _get(session: AsyncSession):
            row = await session.get(ExecutionModel, execution_id)
            return _execution_from_row(row) if row else None
        return await self._run(_get)

    async def query_executions(self, filter: Optional[ExecutionFilter] = None) -> list[ExecutionRecord]:
        filter = filter or ExecutionFilter()
        stmt = select(ExecutionModel)
        if filter.tools:
            stmt = stmt.where(ExecutionModel.tool.in_(filter.tools))
        if filter.projects:
            stmt = stmt.where(ExecutionModel.project.in_(filter.projects))
        if filter.statuses:
            stmt = stmt.where(ExecutionModel.status.in_(filter.statuses))
        if filter.error_types:
            stmt = stmt.where(ExecutionModel.error_type.in_(filter.error_types))
        if filter.since:
            stmt = stmt.where(ExecutionModel.timestamp >= as_utc(filter.since))
        if filter.until:
            stmt = stmt.where(ExecutionModel.timestamp <= as_utc(filter.until))
        stmt = _paginate(stmt.order_by(ExecutionModel.timestamp.desc()), filter.limit, filter.offset)

        async def _query(session: AsyncSession):
            result = await session.execute(stmt)
            return [_execution_from_row(row) for row in result.scalars().all()]
        return await self._run(_query)

    async def prune_executions(self, before: datetime) -> int:
        async def _prune(session: AsyncSession):
            result = await session.execute(
                delete(ExecutionModel).where(ExecutionModel.timestamp < as_utc(before))
            )
            return result.rowcount or 0
        return await self._run(_prune)

    # =========================================================================
    # Improvements
    # =========================================================================

    async def insert_improvement(self, data: NewImprovement) -> ImprovementSuggestion:
        improvement = ImprovementSuggestion.from_new(data, generate_id("imp"), self.now())

        async def _insert(session: AsyncSession):
            session.add(ImprovementModel(**{
                key: getattr(improvement, key)
                for key in ImprovementModel.__table__.columns.keys()
            }))
            return improvement
        return await self._run(_insert)

    async def get_improvement(self, improvement_id: str) -> Optional[ImprovementSuggestion]:
        async def _get(session: AsyncSession):
            row = await session.get(ImprovementModel, improvement_id)
            return _improvement_from_row(row) if row else None
        return await self._run(_get)

    async def query_improvements(self, filter: Optional[ImprovementFilter] = None) -> list[ImprovementSuggestion]:
        filter = filter or ImprovementFilter()
        stmt = select(ImprovementModel)
        if filter.types:
            stmt = stmt.where(ImprovementModel.improvement_type.in_(filter.types))
        if filter.severities:
            stmt = stmt.where(ImprovementModel.severity.in_(filter.severities))
        if filter.statuses:
            stmt = stmt.where(ImprovementModel.status.in_(filter.statuses))
        if filter.scope:
            stmt = stmt.where(ImprovementModel.scope == filter.scope)
        if filter.detected_by:
            stmt = stmt.where(ImprovementModel.detected_by.in_(filter.detected_by))
        if filter.since:
            stmt = stmt.where(ImprovementModel.detected_at >= as_utc(filter.since))
        if filter.until:
            stmt = stmt.where(ImprovementModel.detected_at <= as_utc(filter.until))
        stmt = stmt.order_by(ImprovementModel.detected_at.desc())

        async def _query(session: AsyncSession):
            result = await session.execute(stmt)
            rows = [_improvement_from_row(row) for row in result.scalars().all()]
            # Tool, project and tag membership live in JSON columns
            rows = [item for item in rows if filter.matches(item)]
            if filter.offset:
                rows = rows[filter.offset:]
            return rows[:filter.limit] if filter.limit is not None else rows
        return await self._run(_query)

    async def update_improvement(
        self,
        improvement_id: str,
        status: str,
        resolution: Optional[str] = None,
    ) -> Optional[ImprovementSuggestion]:
        status = ImprovementStatus(status).value

        async def _update(session: AsyncSession):
            row = await session.get(ImprovementModel, improvement_id)
            if row is None:
                return None
            row.status = status
            row.status_updated_at = self.now()
            if resolution is not None:
                row.resolution = resolution
            await session.flush()
            return _improvement_from_row(row)
        return await self._run(_update)

    # =========================================================================
    # Alerts
    # =========================================================================

    async def insert_alert(self, data: NewAlert) -> Alert:
        alert = Alert.from_new(data, generate_id("alert"), self.now())

        async def _insert(session: AsyncSession):
            session.add(AlertModel(
                id=alert.id,
                category=alert.category,
                severity=alert.severity,
                status=alert.status,
                title=alert.title,
                message=alert.message,
                tool=alert.tool,
                project=alert.project,
                triggered_at=alert.triggered_at,
                triggered_by=alert.triggered_by,
                context=alert.context,
                related_executions=list(alert.related_executions),
                notifications_sent=[],
            ))
            return alert
        return await self._run(_insert)

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        async def _get(session: AsyncSession):
            row = await session.get(AlertModel, alert_id)
            return _alert_from_row(row) if row else None
        return await self._run(_get)

    async def query_alerts(self, filter: Optional[AlertFilter] = None) -> list[Alert]:
        filter = filter or AlertFilter()
        stmt = select(AlertModel)
        if filter.categories:
            stmt = stmt.where(AlertModel.category.in_(filter.categories))
        if filter.severities:
            stmt = stmt.where(AlertModel.severity.in_(filter.severities))
        if filter.statuses:
            stmt = stmt.where(AlertModel.status.in_(filter.statuses))
        if filter.tools:
            stmt = stmt.where(AlertModel.tool.in_(filter.tools))
        if filter.projects:
            stmt = stmt.where(AlertModel.project.in_(filter.projects))
        if filter.triggered_by:
            stmt = stmt.where(AlertModel.triggered_by == filter.triggered_by)
        if filter.since:
            stmt = stmt.where(AlertModel.triggered_at >= as_utc(filter.since))
        if filter.until:
            stmt = stmt.where(AlertModel.triggered_at <= as_utc(filter.until))
        stmt = _paginate(stmt.order_by(AlertModel.triggered_at.desc()), filter.limit, filter.offset)

        async def _query(session: AsyncSession):
            result = await session.execute(stmt)
            return [_alert_from_row(row) for row in result.scalars().all()]
        return await self._run(_query)

    async def update_alert(self, alert_id: str, update: AlertUpdate) -> Optional[Alert]:
        async def _update(session: AsyncSession):
            row = await session.get(AlertModel, alert_id)
            if row is None:
                return None
            apply_alert_update(row, update, self.now())
            await session.flush()
            return _alert_from_row(row)
        return await self._run(_update)

    async def add_alert_notification(
        self,
        alert_id: str,
        notification: AlertNotification,
    ) -> Optional[Alert]:
        async def _add(session: AsyncSession):
            row = await session.get(AlertModel, alert_id)
            if row is None:
                return None
            # Reassign so the JSON column is flagged dirty
            row.notifications_sent = [*(row.notifications_sent or []), notification.to_dict()]
            await session.flush()
            return _alert_from_row(row)
        return await self._run(_add)

    # =========================================================================
    # Detection cooldowns
    # =========================================================================

    async def save_detection_cooldown(self, entry: CooldownEntry) -> None:
        async def _save(session: AsyncSession):
            row = await session.get(DetectionCooldownModel, (entry.rule_id, entry.tool, entry.project))
            if row is None:
                session.add(DetectionCooldownModel(
                    rule_id=entry.rule_id,
                    tool=entry.tool,
                    project=entry.project,
                    triggered_at=as_utc(entry.triggered_at),
                ))
            else:
                row.triggered_at = as_utc(entry.triggered_at)
        await self._run(_save)

    async def load_detection_cooldowns(self) -> list[CooldownEntry]:
        async def _load(session: AsyncSession):
            result = await session.execute(select(DetectionCooldownModel))
            return [
                CooldownEntry(row.rule_id, row.tool, row.project, as_utc(row.triggered_at))
                for row in result.scalars().all()
            ]
        return await self._run(_load)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
