"""
InMemoryStore: Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlStore
  - Compare-and-update is trivially atomic: the event loop never switches
    tasks inside a method body that does not await
  - All data lost on process restart

Records are kept as JSON-ready dicts and rebuilt into models on read, so
callers never share mutable state with the store.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional

from core.errors import ConversationConflictError, FlowValidationError
from database.store_base import BaseStore
from models.schemas import (
    Appointment, Contact, Conversation, ConversationState, Flow, FlowContent,
    LeadSource, MessageDirection, MessageLogEntry, utcnow,
)
from models.validation import validate_flow_content

logger = structlog.get_logger()


def apply_conversation_changes(conversation: Conversation, changes: dict[str, Any]) -> Conversation:
    """Return a new revision of `conversation` with `changes` applied."""
    data = conversation.model_dump()
    data.update(changes)
    data["revision"] = conversation.revision + 1
    data["updated_at"] = utcnow()
    return Conversation.model_validate(data)


def publish_content(flow: Flow) -> Flow:
    """Validate a flow's draft and promote it to the next published version."""
    errors = validate_flow_content(flow.draft)
    if errors:
        logger.error("invalid_flow_publish", flow_id=flow.id, errors=errors)
        raise FlowValidationError(flow.name, errors)
    return flow.model_copy(update={
        "published": flow.draft.model_copy(deep=True),
        "published_version": flow.published_version + 1,
        "updated_at": utcnow(),
    })


class InMemoryStore(BaseStore):
    """
    Full-featured in-memory store with the same interface as SqlStore.
    """

    def __init__(self):
        self._flows: dict[str, dict] = {}                   # id → flow dict
        self._flow_versions: dict[str, dict] = {}           # "flow_id:version" → content dict
        self._conversations: dict[str, dict] = {}           # id → conversation dict
        self._contacts: dict[str, dict] = {}                # phone → contact dict
        self._messages: dict[str, list[dict]] = defaultdict(list)  # phone → [entry dicts]
        self._settings: dict[str, Any] = {}
        self._appointments: dict[str, dict] = {}
        logger.info("inmemory_store_initialized")

    def _mark_dirty(self, *collections: str):
        """Hook for persistent subclasses."""

    # ── Flows ─────────────────────────────────────────────

    async def save_flow(self, flow: Flow) -> Flow:
        self._flows[flow.id] = flow.model_dump(mode="json")
        if flow.published is not None and flow.published_version > 0:
            key = f"{flow.id}:{flow.published_version}"
            self._flow_versions.setdefault(key, flow.published.model_dump(mode="json"))
        self._mark_dirty("flows", "flow_versions")
        return flow

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        data = self._flows.get(flow_id)
        return Flow.model_validate(data) if data else None

    async def find_active_published_flows(self) -> list[Flow]:
        return [
            Flow.model_validate(f) for f in self._flows.values()
            if f.get("is_active") and f.get("published") is not None
        ]

    async def find_flow_by_version(self, flow_id: str, version: int) -> Optional[FlowContent]:
        data = self._flow_versions.get(f"{flow_id}:{version}")
        return FlowContent.model_validate(data) if data else None

    async def publish_flow(self, flow_id: str) -> Flow:
        flow = await self.get_flow(flow_id)
        if flow is None:
            raise KeyError(flow_id)
        published = publish_content(flow)
        await self.save_flow(published)
        logger.info("flow_published", flow_id=flow_id, version=published.published_version)
        return published

    # ── Conversations ─────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        data = self._conversations.get(conversation_id)
        return Conversation.model_validate(data) if data else None

    def _open_for_phone(self, phone: str) -> list[dict]:
        return [
            c for c in self._conversations.values()
            if c["phone"] == phone and c["state"] != ConversationState.CLOSED.value
        ]

    async def find_active_conversation(self, phone: str) -> Optional[Conversation]:
        open_convs = self._open_for_phone(phone)
        if not open_convs:
            return None
        open_convs.sort(key=lambda c: c.get("updated_at", ""), reverse=True)
        return Conversation.model_validate(open_convs[0])

    async def find_latest_conversation(self, phone: str) -> Optional[Conversation]:
        convs = [c for c in self._conversations.values() if c["phone"] == phone]
        if not convs:
            return None
        convs.sort(key=lambda c: c.get("created_at", ""), reverse=True)
        return Conversation.model_validate(convs[0])

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        if conversation.state != ConversationState.CLOSED and self._open_for_phone(conversation.phone):
            raise ConversationConflictError(conversation.phone, "open conversation exists")
        self._conversations[conversation.id] = conversation.model_dump(mode="json")
        self._mark_dirty("conversations")
        return conversation

    async def update_conversation(
        self, conversation_id: str, expected_revision: int,
        expected_state: Optional[ConversationState] = None, **changes: Any,
    ) -> Optional[Conversation]:
        current = await self.get_conversation(conversation_id)
        if current is None:
            return None
        if current.revision != expected_revision:
            logger.debug("conversation_revision_mismatch",
                         conversation_id=conversation_id,
                         expected=expected_revision, actual=current.revision)
            return None
        if expected_state is not None and current.state != expected_state:
            return None
        updated = apply_conversation_changes(current, changes)
        self._conversations[conversation_id] = updated.model_dump(mode="json")
        self._mark_dirty("conversations")
        return updated

    # ── Contacts ──────────────────────────────────────────

    async def get_contact(self, phone: str) -> Optional[Contact]:
        data = self._contacts.get(phone)
        return Contact.model_validate(data) if data else None

    async def find_or_create_contact(self, phone: str, source: LeadSource) -> Contact:
        existing = await self.get_contact(phone)
        if existing:
            return existing
        contact = Contact(phone=phone, source=source)
        self._contacts[phone] = contact.model_dump(mode="json")
        self._mark_dirty("contacts")
        logger.info("contact_created", phone=phone, source=source.value)
        return contact

    async def touch_last_seen(self, phone: str) -> None:
        await self.update_contact(phone, last_seen_at=utcnow())

    async def update_contact(self, phone: str, **changes: Any) -> Optional[Contact]:
        current = await self.get_contact(phone)
        if current is None:
            return None
        data = current.model_dump()
        data.update(changes)
        contact = Contact.model_validate(data)
        self._contacts[phone] = contact.model_dump(mode="json")
        self._mark_dirty("contacts")
        return contact

    # ── Message log ───────────────────────────────────────

    async def append_message(
        self, phone: str, direction: MessageDirection, text: str,
        timestamp: datetime = None,
    ) -> MessageLogEntry:
        entry = MessageLogEntry(
            phone=phone, direction=direction, text=text,
            timestamp=timestamp or utcnow(),
        )
        self._messages[phone].append(entry.model_dump(mode="json"))
        self._mark_dirty("messages")
        return entry

    async def get_messages(self, phone: str, limit: int = 50) -> list[MessageLogEntry]:
        return [MessageLogEntry.model_validate(m) for m in self._messages.get(phone, [])[-limit:]]

    # ── Settings ──────────────────────────────────────────

    async def get_setting(self, key: str) -> Optional[Any]:
        return self._settings.get(key)

    async def set_setting(self, key: str, value: Any) -> None:
        self._settings[key] = value
        self._mark_dirty("settings")

    # ── Appointments ──────────────────────────────────────

    async def create_appointment(self, appointment: Appointment) -> Appointment:
        self._appointments[appointment.id] = appointment.model_dump(mode="json")
        self._mark_dirty("appointments")
        return appointment

    async def list_appointments(self, phone: str = None) -> list[Appointment]:
        items = [
            Appointment.model_validate(a) for a in self._appointments.values()
            if phone is None or a["phone"] == phone
        ]
        items.sort(key=lambda a: a.created_at)
        return items

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "flows": len(self._flows),
            "flow_versions": len(self._flow_versions),
            "conversations": len(self._conversations),
            "contacts": len(self._contacts),
            "messages": sum(len(v) for v in self._messages.values()),
            "appointments": len(self._appointments),
        }
