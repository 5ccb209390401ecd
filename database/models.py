"""
SQLAlchemy ORM models: Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB: on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - String primary keys (uuid hex): no database-specific sequences.
  - One open conversation per phone is enforced with a nullable unique
    `active_phone` column: it holds the phone while the conversation is
    active or paused and is NULL once closed. NULLs never collide in a
    unique index on any of the supported databases.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, String, Integer, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Flows
# ──────────────────────────────────────────────────────────────

class FlowRow(Base):
    __tablename__ = "flows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")

    activation_rules: Mapped[Any] = mapped_column(JSON, default=dict)
    draft: Mapped[Any] = mapped_column(JSON, default=dict)
    published: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    published_version: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_flows_active", "is_active"),
    )


class FlowVersionRow(Base):
    """Immutable snapshot of a flow's published content."""
    __tablename__ = "flow_versions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    flow_id: Mapped[str] = mapped_column(String(64), ForeignKey("flows.id"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[Any] = mapped_column(JSON, nullable=False)
    published_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("flow_id", "version", name="uq_flow_versions_flow_version"),
    )


# ──────────────────────────────────────────────────────────────
#  Conversations
# ──────────────────────────────────────────────────────────────

class ConversationRow(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    active_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, unique=True)

    flow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    flow_version: Mapped[int] = mapped_column(Integer, nullable=False)
    current_step_id: Mapped[str] = mapped_column(String(128), nullable=False)
    state: Mapped[str] = mapped_column(String(16), default="active")

    tags: Mapped[Any] = mapped_column(JSON, default=list)
    loop_detection: Mapped[Any] = mapped_column(JSON, default=dict)
    data: Mapped[Any] = mapped_column(JSON, default=dict)

    revision: Mapped[int] = mapped_column(Integer, default=0)
    applied_event_ids: Mapped[Any] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_conversations_phone", "phone"),
        Index("ix_conversations_state", "state"),
    )


# ──────────────────────────────────────────────────────────────
#  Contacts
# ──────────────────────────────────────────────────────────────

class ContactRow(Base):
    __tablename__ = "contacts"

    phone: Mapped[str] = mapped_column(String(32), primary_key=True)
    source: Mapped[str] = mapped_column(String(32), default="organic")
    status: Mapped[str] = mapped_column(String(32), default="pendiente")

    tags: Mapped[Any] = mapped_column(JSON, default=list)
    meta: Mapped[Any] = mapped_column(JSON, default=dict)

    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Message log
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_messages_phone_ts", "phone", "timestamp"),
    )


# ──────────────────────────────────────────────────────────────
#  Settings (key → JSON value)
# ──────────────────────────────────────────────────────────────

class SettingRow(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)


# ──────────────────────────────────────────────────────────────
#  Appointments
# ──────────────────────────────────────────────────────────────

class AppointmentRow(Base):
    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    patient_name: Mapped[str] = mapped_column(String(256), default="")
    patient_dni: Mapped[str] = mapped_column(String(32), default="")
    service: Mapped[str] = mapped_column(String(256), default="")
    date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    day_name: Mapped[str] = mapped_column(String(64), default="")
    time_slot: Mapped[str] = mapped_column(String(32), default="")
    status: Mapped[str] = mapped_column(String(16), default="pending")
    notes: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_appointments_phone", "phone"),
    )
