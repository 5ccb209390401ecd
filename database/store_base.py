"""
Abstract Store: Interface for all storage backends.

Implementations:
  - SqlStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryStore (dict-based, single-process, no persistence)
  - FileStore     (JSON files on disk, single-process, durable)

Conversation writes are compare-and-update: `update_conversation` only
applies when the stored revision (and optionally state) still match what
the caller read, and returns None otherwise. `create_conversation` refuses
to open a second non-closed conversation for the same phone.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import (
    Appointment, Contact, Conversation, ConversationState, Flow, FlowContent,
    LeadSource, MessageDirection, MessageLogEntry,
)


class BaseStore(ABC):
    """Interface that all store backends must implement."""

    # ── Flows ─────────────────────────────────────────────────

    @abstractmethod
    async def save_flow(self, flow: Flow) -> Flow:
        ...

    @abstractmethod
    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        ...

    @abstractmethod
    async def find_active_published_flows(self) -> list[Flow]:
        ...

    @abstractmethod
    async def find_flow_by_version(self, flow_id: str, version: int) -> Optional[FlowContent]:
        """Published content of `flow_id` as it was at `version`."""
        ...

    @abstractmethod
    async def publish_flow(self, flow_id: str) -> Flow:
        """Copy draft to published, bump the version and snapshot it."""
        ...

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def find_active_conversation(self, phone: str) -> Optional[Conversation]:
        """The phone's open conversation (active or paused), if any."""
        ...

    @abstractmethod
    async def find_latest_conversation(self, phone: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        """Raises ConversationConflictError if the phone already has an open one."""
        ...

    @abstractmethod
    async def update_conversation(
        self, conversation_id: str, expected_revision: int,
        expected_state: Optional[ConversationState] = None, **changes: Any,
    ) -> Optional[Conversation]:
        ...

    # ── Contacts ──────────────────────────────────────────────

    @abstractmethod
    async def get_contact(self, phone: str) -> Optional[Contact]:
        ...

    @abstractmethod
    async def find_or_create_contact(self, phone: str, source: LeadSource) -> Contact:
        ...

    @abstractmethod
    async def touch_last_seen(self, phone: str) -> None:
        ...

    @abstractmethod
    async def update_contact(self, phone: str, **changes: Any) -> Optional[Contact]:
        ...

    # ── Message log ───────────────────────────────────────────

    @abstractmethod
    async def append_message(
        self, phone: str, direction: MessageDirection, text: str, timestamp=None,
    ) -> MessageLogEntry:
        ...

    @abstractmethod
    async def get_messages(self, phone: str, limit: int = 50) -> list[MessageLogEntry]:
        """Last `limit` entries for phone, in chronological order."""
        ...

    # ── Settings ──────────────────────────────────────────────

    @abstractmethod
    async def get_setting(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set_setting(self, key: str, value: Any) -> None:
        ...

    # ── Appointments ──────────────────────────────────────────

    @abstractmethod
    async def create_appointment(self, appointment: Appointment) -> Appointment:
        ...

    @abstractmethod
    async def list_appointments(self, phone: str = None) -> list[Appointment]:
        ...
