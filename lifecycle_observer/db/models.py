"""
Database Models for the Lifecycle Observer
==========================================

SQLAlchemy models for persisting executions, improvements, alerts and
detection cooldowns. Datetimes are stored as UTC.
"""

from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy import String, Integer, DateTime, JSON, Text, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ExecutionModel(Base):
    """One completed invocation of a monitored tool."""
    __tablename__ = "executions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    tool: Mapped[str] = mapped_column(String(50), index=True)
    project: Mapped[str] = mapped_column(String(255), index=True)
    project_path: Mapped[str] = mapped_column(Text, default="")
    command: Mapped[str] = mapped_column(String(100), default="")
    duration: Mapped[int] = mapped_column(Integer, default=0)  # ms
    status: Mapped[str] = mapped_column(String(20), index=True)
    error_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_stack: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    args: Mapped[List[str]] = mapped_column(JSON, default=list)
    context: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    # "metadata" is reserved on declarative classes
    execution_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)


class ImprovementModel(Base):
    """A suggested improvement produced by rule, AI or manual detection."""
    __tablename__ = "improvements"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    improvement_type: Mapped[str] = mapped_column(String(30), index=True)
    severity: Mapped[str] = mapped_column(String(20), index=True)
    scope: Mapped[str] = mapped_column(String(20))
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text)
    suggested_action: Mapped[str] = mapped_column(Text)
    affected_tools: Mapped[List[str]] = mapped_column(JSON, default=list)
    affected_projects: Mapped[List[str]] = mapped_column(JSON, default=list)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    detected_by: Mapped[str] = mapped_column(String(20))
    detection_context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="open", index=True)
    status_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    related_improvements: Mapped[List[str]] = mapped_column(JSON, default=list)
    estimated_impact: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    estimated_effort: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    tags: Mapped[List[str]] = mapped_column(JSON, default=list)


class AlertModel(Base):
    """An alert raised by an alert rule and its lifecycle state."""
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    category: Mapped[str] = mapped_column(String(50), index=True)
    severity: Mapped[str] = mapped_column(String(20), index=True)
    status: Mapped[str] = mapped_column(String(20), default="active", index=True)
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    tool: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    project: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    triggered_by: Mapped[str] = mapped_column(String(100))
    context: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    resolution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    suppressed_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    related_executions: Mapped[List[str]] = mapped_column(JSON, default=list)
    notifications_sent: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)

    __table_args__ = (
        Index("ix_alerts_rule_triggered", "triggered_by", "triggered_at"),
    )


class DetectionCooldownModel(Base):
    """Last trigger time of a detection rule for a (tool, project) pair."""
    __tablename__ = "detection_cooldowns"

    rule_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    tool: Mapped[str] = mapped_column(String(50), primary_key=True)
    project: Mapped[str] = mapped_column(String(255), primary_key=True)
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
