"""
Core data models for the flow bot.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class LeadSource(str, Enum):
    META_ADS = "meta_ads"
    ORGANIC = "organic"


class LeadStatus(str, Enum):
    AGENDADO = "agendado"
    NO_AGENDADO = "no_agendado"
    PENDIENTE = "pendiente"


class ConversationState(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"


class MessageDirection(str, Enum):
    IN = "in"
    OUT = "out"


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


# ──────────────────────────────────────────────────────────────
#  Flow definition: the dialogue graph
# ──────────────────────────────────────────────────────────────

class SourceRules(BaseModel):
    meta_ads: bool = True
    organic: bool = True


class WhatsAppStatusRules(BaseModel):
    agendado: bool = False          # number saved in the business phone
    no_agendado: bool = True        # unknown number


class ActivationRules(BaseModel):
    """When a flow applies to an inbound contact."""
    sources: SourceRules = Field(default_factory=SourceRules)
    whatsapp_status: WhatsAppStatusRules = Field(default_factory=WhatsAppStatusRules)
    priority: int = 1
    force_restart: bool = False

    def matches(self, source: LeadSource, is_known_contact: bool) -> bool:
        source_ok = (
            (source == LeadSource.META_ADS and self.sources.meta_ads)
            or (source == LeadSource.ORGANIC and self.sources.organic)
        )
        status_ok = (
            (is_known_contact and self.whatsapp_status.agendado)
            or (not is_known_contact and self.whatsapp_status.no_agendado)
        )
        return source_ok and status_ok


class StepOption(BaseModel):
    """A selectable branch from one step to another."""
    id: str = ""
    key: str                                  # shown to the user, e.g. "A"
    label: str = ""
    next_step_id: str


class StepActions(BaseModel):
    register_appointment: bool = False
    pause_conversation: bool = False
    add_tags: list[str] = []
    set_lead_status: Optional[LeadStatus] = None

    @property
    def is_empty(self) -> bool:
        return not (
            self.register_appointment or self.pause_conversation
            or self.add_tags or self.set_lead_status
        )


class FlowStep(BaseModel):
    id: str
    title: str = ""
    message: str = ""
    options: list[StepOption] = []
    fallback_message: Optional[str] = None    # overrides the flow-level text
    actions: Optional[StepActions] = None


DEFAULT_FALLBACK_MESSAGE = (
    "No entendí esa opción. Por favor elegí una de las opciones válidas (ej: A)."
)


class FlowContent(BaseModel):
    """One version of the dialogue graph (draft or published)."""
    entry_step_id: str
    fallback_message: str = DEFAULT_FALLBACK_MESSAGE
    steps: dict[str, FlowStep] = {}

    def get_step(self, step_id: str) -> Optional[FlowStep]:
        return self.steps.get(step_id)


class Flow(BaseModel):
    """
    A versioned dialogue definition.

    Only `published` drives live conversations. `draft` belongs to the
    editor and is never read by the engine.
    """
    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    activation_rules: ActivationRules = Field(default_factory=ActivationRules)
    draft: FlowContent
    published: Optional[FlowContent] = None
    published_version: int = 0
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Conversation: one live dialogue per phone
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Entering:
    """Step just entered; its prompt has not been sent yet."""


@dataclass(frozen=True)
class AwaitingInput:
    """Prompt sent; inbound text is read as an answer."""
    mismatches: int = 0


StepPhase = Union[Entering, AwaitingInput]


class LoopDetection(BaseModel):
    """
    Per-step bookkeeping. `messages_in_current_step` doubles as the
    entry-send flag (0) and the wrong-answer counter (n - 1 for n >= 1).
    """
    current_step_id: str = ""
    messages_in_current_step: int = 0
    last_step_change_at: datetime = Field(default_factory=utcnow)

    @property
    def phase(self) -> StepPhase:
        if self.messages_in_current_step <= 0:
            return Entering()
        return AwaitingInput(mismatches=self.messages_in_current_step - 1)


# Applied inbound event ids kept per phone; older ids fall off the front.
APPLIED_EVENTS_KEPT = 100


class Conversation(BaseModel):
    id: str = Field(default_factory=_new_id)
    phone: str
    flow_id: str
    flow_version: int
    current_step_id: str
    state: ConversationState = ConversationState.ACTIVE
    tags: list[str] = []
    loop_detection: LoopDetection = Field(default_factory=LoopDetection)
    data: dict[str, Any] = {}                 # per-dialogue scratch values (e.g. chosen day)
    revision: int = 0                         # bumped by the store on every write
    applied_event_ids: list[str] = []        # oldest first, carried into the next conversation
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.state == ConversationState.ACTIVE

    @property
    def is_paused(self) -> bool:
        return self.state == ConversationState.PAUSED

    def has_applied(self, event_id: str) -> bool:
        return bool(event_id) and event_id in self.applied_event_ids

    def applied_with(self, event_id: str) -> list[str]:
        """The applied-id list after recording event_id."""
        if not event_id or event_id in self.applied_event_ids:
            return list(self.applied_event_ids)
        return [*self.applied_event_ids, event_id][-APPLIED_EVENTS_KEPT:]


# ──────────────────────────────────────────────────────────────
#  Contact, message log, appointment
# ──────────────────────────────────────────────────────────────

class Contact(BaseModel):
    """Durable record per phone, independent of any one conversation."""
    phone: str
    source: LeadSource = LeadSource.ORGANIC
    status: LeadStatus = LeadStatus.PENDIENTE
    tags: list[str] = []
    meta: dict[str, str] = {}                 # name, dni, … (best effort)
    first_seen_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)

    @property
    def name(self) -> str:
        return self.meta.get("name") or self.meta.get("nombre") or ""


class MessageLogEntry(BaseModel):
    id: str = Field(default_factory=_new_id)
    phone: str
    direction: MessageDirection
    text: str
    timestamp: datetime = Field(default_factory=utcnow)


class Appointment(BaseModel):
    id: str = Field(default_factory=_new_id)
    phone: str
    patient_name: str = ""
    patient_dni: str = ""
    service: str = ""
    date: Optional[datetime] = None
    day_name: str = ""                        # e.g. "Martes 23/01"
    time_slot: str = ""
    status: AppointmentStatus = AppointmentStatus.PENDING
    notes: str = ""
    created_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Settings values (read from the settings store)
# ──────────────────────────────────────────────────────────────

class DaySchedule(BaseModel):
    open: str = "09:00"
    close: str = "20:00"
    active: bool = True


WEEKDAY_KEYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def _default_schedule() -> dict[str, DaySchedule]:
    return {day: DaySchedule(active=day != "sunday") for day in WEEKDAY_KEYS}


class BusinessHours(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = False
    schedule: dict[str, DaySchedule] = Field(default_factory=_default_schedule)
    closed_message: str = Field(alias="closedMessage", default=(
        "¡Hola! 👋 Gracias por escribirnos. En este momento la clínica está cerrada. "
        "Te contactaremos apenas estemos de regreso."
    ))


class PaymentConfig(BaseModel):
    enabled: bool = False
    link: str = ""
    message: str = (
        "💳 Para confirmar tu turno, por favor realizá el pago de la consulta "
        "en el siguiente link:\n{LINK}"
    )

    def render(self) -> str:
        return self.message.replace("{LINK}", self.link)


# ──────────────────────────────────────────────────────────────
#  Inbound events: what the transport hands the engine
# ──────────────────────────────────────────────────────────────

class TextMessage(BaseModel):
    kind: str = "text"
    phone: str
    text: str = ""
    event_id: str = Field(default_factory=_new_id)
    source: LeadSource = LeadSource.ORGANIC
    sender_name: str = ""
    received_at: datetime = Field(default_factory=utcnow)


class CallRejected(BaseModel):
    kind: str = "call"
    phone: str
    call_id: str = ""
    event_id: str = Field(default_factory=_new_id)
    received_at: datetime = Field(default_factory=utcnow)


InboundEvent = Union[TextMessage, CallRejected]
