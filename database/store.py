"""
SqlStore: Portable SQL queries for PostgreSQL, MySQL, SQLite.

Conversation updates are a single conditional UPDATE
(`... WHERE id = :id AND revision = :expected`) so two workers racing on
the same conversation cannot both win, even across processes.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, and_
from sqlalchemy.exc import IntegrityError

from core.errors import ConversationConflictError
from database.models import (
    AppointmentRow, ContactRow, ConversationRow, FlowRow, FlowVersionRow,
    MessageRow, SettingRow,
)
from database.session import get_session
from database.store_base import BaseStore
from database.store_memory import apply_conversation_changes, publish_content
from models.schemas import (
    Appointment, Contact, Conversation, ConversationState, Flow, FlowContent,
    LeadSource, MessageDirection, MessageLogEntry, utcnow,
)

logger = structlog.get_logger()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored in UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _active_phone(conversation: Conversation) -> Optional[str]:
    return None if conversation.state == ConversationState.CLOSED else conversation.phone


class SqlStore(BaseStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Flows ──────────────────────────────────────────────

    async def save_flow(self, flow: Flow) -> Flow:
        values = self._flow_values(flow)
        async with get_session() as db:
            row = await db.get(FlowRow, flow.id)
            if row:
                for key, value in values.items():
                    setattr(row, key, value)
            else:
                db.add(FlowRow(id=flow.id, created_at=flow.created_at, **values))

            if flow.published is not None and flow.published_version > 0:
                stmt = select(FlowVersionRow).where(and_(
                    FlowVersionRow.flow_id == flow.id,
                    FlowVersionRow.version == flow.published_version,
                ))
                existing = (await db.execute(stmt)).scalar_one_or_none()
                if existing is None:
                    db.add(FlowVersionRow(
                        flow_id=flow.id,
                        version=flow.published_version,
                        content=flow.published.model_dump(mode="json"),
                    ))
        return flow

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        async with get_session() as db:
            row = await db.get(FlowRow, flow_id)
            return self._row_to_flow(row) if row else None

    async def find_active_published_flows(self) -> list[Flow]:
        async with get_session() as db:
            stmt = select(FlowRow).where(and_(
                FlowRow.is_active.is_(True),
                FlowRow.published_version > 0,
            ))
            result = await db.execute(stmt)
            flows = [self._row_to_flow(row) for row in result.scalars()]
        return [f for f in flows if f.published is not None]

    async def find_flow_by_version(self, flow_id: str, version: int) -> Optional[FlowContent]:
        async with get_session() as db:
            stmt = select(FlowVersionRow).where(and_(
                FlowVersionRow.flow_id == flow_id,
                FlowVersionRow.version == version,
            ))
            row = (await db.execute(stmt)).scalar_one_or_none()
            return FlowContent.model_validate(row.content) if row else None

    async def publish_flow(self, flow_id: str) -> Flow:
        flow = await self.get_flow(flow_id)
        if flow is None:
            raise KeyError(flow_id)
        published = publish_content(flow)
        await self.save_flow(published)
        logger.info("flow_published", flow_id=flow_id, version=published.published_version)
        return published

    # ── Conversations ──────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation_id)
            return self._row_to_conversation(row) if row else None

    async def find_active_conversation(self, phone: str) -> Optional[Conversation]:
        async with get_session() as db:
            stmt = (
                select(ConversationRow)
                .where(ConversationRow.active_phone == phone)
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_conversation(row) if row else None

    async def find_latest_conversation(self, phone: str) -> Optional[Conversation]:
        async with get_session() as db:
            stmt = (
                select(ConversationRow)
                .where(ConversationRow.phone == phone)
                .order_by(ConversationRow.created_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_conversation(row) if row else None

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        try:
            async with get_session() as db:
                db.add(ConversationRow(
                    id=conversation.id,
                    phone=conversation.phone,
                    active_phone=_active_phone(conversation),
                    created_at=conversation.created_at,
                    **self._conversation_values(conversation),
                ))
                await db.flush()
        except IntegrityError:
            raise ConversationConflictError(conversation.phone, "open conversation exists")
        return conversation

    async def update_conversation(
        self, conversation_id: str, expected_revision: int,
        expected_state: Optional[ConversationState] = None, **changes: Any,
    ) -> Optional[Conversation]:
        current = await self.get_conversation(conversation_id)
        if current is None or current.revision != expected_revision:
            return None
        updated = apply_conversation_changes(current, changes)

        conditions = [
            ConversationRow.id == conversation_id,
            ConversationRow.revision == expected_revision,
        ]
        if expected_state is not None:
            conditions.append(ConversationRow.state == expected_state.value)

        try:
            async with get_session() as db:
                result = await db.execute(
                    update(ConversationRow)
                    .where(and_(*conditions))
                    .values(
                        active_phone=_active_phone(updated),
                        **self._conversation_values(updated),
                    )
                )
                if result.rowcount != 1:
                    logger.debug("conversation_revision_mismatch",
                                 conversation_id=conversation_id,
                                 expected=expected_revision)
                    return None
        except IntegrityError:
            raise ConversationConflictError(current.phone, "open conversation exists")
        return updated

    # ── Contacts ───────────────────────────────────────────

    async def get_contact(self, phone: str) -> Optional[Contact]:
        async with get_session() as db:
            row = await db.get(ContactRow, phone)
            return self._row_to_contact(row) if row else None

    async def find_or_create_contact(self, phone: str, source: LeadSource) -> Contact:
        existing = await self.get_contact(phone)
        if existing:
            return existing
        contact = Contact(phone=phone, source=source)
        try:
            async with get_session() as db:
                db.add(ContactRow(phone=phone, **self._contact_values(contact)))
                await db.flush()
        except IntegrityError:
            # created concurrently by another worker
            return await self.get_contact(phone)
        logger.info("contact_created", phone=phone, source=source.value)
        return contact

    async def touch_last_seen(self, phone: str) -> None:
        async with get_session() as db:
            await db.execute(
                update(ContactRow)
                .where(ContactRow.phone == phone)
                .values(last_seen_at=utcnow())
            )

    async def update_contact(self, phone: str, **changes: Any) -> Optional[Contact]:
        async with get_session() as db:
            row = await db.get(ContactRow, phone)
            if row is None:
                return None
            data = self._row_to_contact(row).model_dump()
            data.update(changes)
            contact = Contact.model_validate(data)
            for key, value in self._contact_values(contact).items():
                setattr(row, key, value)
            return contact

    # ── Message log ────────────────────────────────────────

    async def append_message(
        self, phone: str, direction: MessageDirection, text: str,
        timestamp: datetime = None,
    ) -> MessageLogEntry:
        entry = MessageLogEntry(
            phone=phone, direction=direction, text=text,
            timestamp=timestamp or utcnow(),
        )
        async with get_session() as db:
            db.add(MessageRow(
                id=entry.id, phone=phone, direction=direction.value,
                text=text, timestamp=entry.timestamp,
            ))
        return entry

    async def get_messages(self, phone: str, limit: int = 50) -> list[MessageLogEntry]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.phone == phone)
                .order_by(MessageRow.timestamp.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            rows = list(result.scalars())
        return [
            MessageLogEntry(
                id=row.id, phone=row.phone, direction=MessageDirection(row.direction),
                text=row.text, timestamp=_aware(row.timestamp),
            )
            for row in reversed(rows)
        ]

    # ── Settings ───────────────────────────────────────────

    async def get_setting(self, key: str) -> Optional[Any]:
        async with get_session() as db:
            row = await db.get(SettingRow, key)
            return row.value if row else None

    async def set_setting(self, key: str, value: Any) -> None:
        async with get_session() as db:
            await db.merge(SettingRow(key=key, value=value))

    # ── Appointments ───────────────────────────────────────

    async def create_appointment(self, appointment: Appointment) -> Appointment:
        async with get_session() as db:
            db.add(AppointmentRow(
                id=appointment.id,
                phone=appointment.phone,
                patient_name=appointment.patient_name,
                patient_dni=appointment.patient_dni,
                service=appointment.service,
                date=appointment.date,
                day_name=appointment.day_name,
                time_slot=appointment.time_slot,
                status=appointment.status.value,
                notes=appointment.notes,
                created_at=appointment.created_at,
            ))
        return appointment

    async def list_appointments(self, phone: str = None) -> list[Appointment]:
        async with get_session() as db:
            stmt = select(AppointmentRow).order_by(AppointmentRow.created_at)
            if phone is not None:
                stmt = stmt.where(AppointmentRow.phone == phone)
            result = await db.execute(stmt)
            return [
                Appointment(
                    id=row.id, phone=row.phone,
                    patient_name=row.patient_name, patient_dni=row.patient_dni,
                    service=row.service, date=_aware(row.date),
                    day_name=row.day_name, time_slot=row.time_slot,
                    status=row.status, notes=row.notes,
                    created_at=_aware(row.created_at),
                )
                for row in result.scalars()
            ]

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _flow_values(flow: Flow) -> dict[str, Any]:
        return {
            "name": flow.name,
            "description": flow.description,
            "activation_rules": flow.activation_rules.model_dump(mode="json"),
            "draft": flow.draft.model_dump(mode="json"),
            "published": flow.published.model_dump(mode="json") if flow.published else None,
            "published_version": flow.published_version,
            "is_active": flow.is_active,
            "updated_at": flow.updated_at,
        }

    @staticmethod
    def _row_to_flow(row: FlowRow) -> Flow:
        return Flow(
            id=row.id,
            name=row.name,
            description=row.description or "",
            activation_rules=row.activation_rules or {},
            draft=row.draft,
            published=row.published or None,
            published_version=row.published_version or 0,
            is_active=bool(row.is_active),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _conversation_values(conversation: Conversation) -> dict[str, Any]:
        data = conversation.model_dump(mode="json")
        return {
            "flow_id": conversation.flow_id,
            "flow_version": conversation.flow_version,
            "current_step_id": conversation.current_step_id,
            "state": conversation.state.value,
            "tags": data["tags"],
            "loop_detection": data["loop_detection"],
            "data": data["data"],
            "revision": conversation.revision,
            "applied_event_ids": data["applied_event_ids"],
            "updated_at": conversation.updated_at,
        }

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> Conversation:
        return Conversation(
            id=row.id,
            phone=row.phone,
            flow_id=row.flow_id,
            flow_version=row.flow_version,
            current_step_id=row.current_step_id,
            state=ConversationState(row.state),
            tags=row.tags or [],
            loop_detection=row.loop_detection or {},
            data=row.data or {},
            revision=row.revision or 0,
            applied_event_ids=row.applied_event_ids or [],
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _contact_values(contact: Contact) -> dict[str, Any]:
        return {
            "source": contact.source.value,
            "status": contact.status.value,
            "tags": list(contact.tags),
            "meta": dict(contact.meta),
            "first_seen_at": contact.first_seen_at,
            "last_seen_at": contact.last_seen_at,
        }

    @staticmethod
    def _row_to_contact(row: ContactRow) -> Contact:
        return Contact(
            phone=row.phone,
            source=row.source,
            status=row.status,
            tags=row.tags or [],
            meta=row.meta or {},
            first_seen_at=_aware(row.first_seen_at),
            last_seen_at=_aware(row.last_seen_at),
        )
