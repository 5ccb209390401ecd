"""Shared test fixtures for FlowBot."""
from datetime import date
from typing import Any

import pytest
import pytest_asyncio

from channels.base import ChannelError, ContactInfo, Transport
from config.settings import EngineConfig, Settings, WhatsAppConfig
from core.orchestrator import ConversationEngine
from core.session import BotSession
from database.store_memory import InMemoryStore
from models.schemas import (
    ActivationRules, Flow, FlowContent, FlowStep, LeadStatus, SourceRules,
    StepActions, StepOption, TextMessage, WhatsAppStatusRules,
)

PATIENT_PHONE = "5491155550001"
BOT_NUMBER = "5491100000000"

# Monday; the next six working days run Tuesday 23/01 to Monday 29/01.
TODAY = date(2024, 1, 22)


# ──────────────────────────────────────────────────────────────
#  Recording transport
# ──────────────────────────────────────────────────────────────

class RecordingTransport(Transport):
    """Transport double that records every call."""

    def __init__(self, known: set[str] = None, names: dict[str, str] = None):
        self.sent: list[tuple[str, str]] = []
        self.typing: list[str] = []
        self.rejected_calls: list[str] = []
        self.labels: dict[str, list[str]] = {}
        self.known = known or set()
        self.names = names or {}
        self.fail_sends = False

    def texts_to(self, phone: str) -> list[str]:
        return [text for to, text in self.sent if to == phone]

    async def send_text(self, phone: str, text: str) -> dict[str, Any]:
        if self.fail_sends:
            raise ChannelError("delivery failed", "whatsapp", retryable=True)
        self.sent.append((phone, text))
        return {"status": "sent"}

    async def send_typing(self, phone: str) -> None:
        self.typing.append(phone)

    async def get_contact(self, phone: str) -> ContactInfo:
        return ContactInfo(is_known=phone in self.known, name=self.names.get(phone, ""))

    async def reject_call(self, call_id: str) -> None:
        self.rejected_calls.append(call_id)

    async def get_labels(self, phone: str) -> list[str]:
        return list(self.labels.get(phone, []))

    async def add_label(self, phone: str, label: str) -> None:
        self.labels.setdefault(phone, []).append(label)

    async def remove_label(self, phone: str, label: str) -> None:
        if label in self.labels.get(phone, []):
            self.labels[phone].remove(label)


# ──────────────────────────────────────────────────────────────
#  Flows
# ──────────────────────────────────────────────────────────────

def _opt(key: str, label: str, next_step_id: str) -> StepOption:
    return StepOption(id=f"opt_{key.lower()}", key=key, label=label, next_step_id=next_step_id)


def build_dental_content() -> FlowContent:
    days = [_opt(letter, "", "confirmado") for letter in "ABCDEF"]
    steps = [
        FlowStep(
            id="inicio",
            title="Bienvenida",
            message="¡Hola! 👋 Bienvenido a Clínica Sonrisa. ¿En qué podemos ayudarte?",
            options=[
                _opt("A", "Sacar turno", "servicio"),
                _opt("B", "Precios", "precios"),
                _opt("C", "Hablar con recepción", "recepcion"),
            ],
        ),
        FlowStep(
            id="servicio",
            title="Elegir servicio",
            message="¿Qué tratamiento necesitás?",
            options=[
                _opt("A", "Limpieza", "limpieza"),
                _opt("M", "Volver al menú", "inicio"),
            ],
            fallback_message="Elegí A para limpieza o M para volver.",
        ),
        FlowStep(
            id="limpieza",
            title="Elegir día",
            message="Elegí el día para tu limpieza:\n{PROXIMOS_DIAS}",
            options=days,
            actions=StepActions(add_tags=["limpieza"]),
        ),
        FlowStep(
            id="confirmado",
            title="Turno confirmado",
            message="¡Listo! Tu turno quedó registrado.",
            options=[_opt("A", "Volver al inicio", "inicio")],
            actions=StepActions(register_appointment=True, set_lead_status=LeadStatus.AGENDADO),
        ),
        FlowStep(
            id="precios",
            title="Precios",
            message="Limpieza: $20.000\nOrtodoncia: a consultar",
            options=[_opt("M", "Volver al menú", "inicio")],
        ),
        FlowStep(
            id="recepcion",
            title="Derivación",
            message="Te comunicamos con recepción.",
            actions=StepActions(pause_conversation=True),
        ),
    ]
    return FlowContent(entry_step_id="inicio", steps={s.id: s for s in steps})


def make_flow(
    name: str = "Clínica Sonrisa",
    priority: int = 100,
    force_restart: bool = False,
    content: FlowContent = None,
    meta_ads: bool = True,
    organic: bool = True,
    known: bool = True,
    unknown: bool = True,
    published: bool = True,
) -> Flow:
    content = content or build_dental_content()
    return Flow(
        name=name,
        activation_rules=ActivationRules(
            sources=SourceRules(meta_ads=meta_ads, organic=organic),
            whatsapp_status=WhatsAppStatusRules(agendado=known, no_agendado=unknown),
            priority=priority,
            force_restart=force_restart,
        ),
        draft=content,
        published=content if published else None,
        published_version=1 if published else 0,
    )


def text(body: str, phone: str = PATIENT_PHONE, event_id: str = None, **kwargs) -> TextMessage:
    if event_id is not None:
        kwargs["event_id"] = event_id
    return TextMessage(phone=phone, text=body, **kwargs)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def dental_content() -> FlowContent:
    return build_dental_content()


@pytest.fixture
def dental_flow() -> Flow:
    return make_flow()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        whatsapp=WhatsAppConfig(own_number=BOT_NUMBER),
        engine=EngineConfig(typing_delay_min_seconds=0, typing_delay_max_seconds=0),
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def session(store, transport, settings) -> BotSession:
    return BotSession(store, transport, settings, today=lambda: TODAY)


@pytest.fixture
def engine(session) -> ConversationEngine:
    return ConversationEngine(session)


@pytest_asyncio.fixture
async def live_engine(engine, store, dental_flow) -> ConversationEngine:
    """Engine with the dental flow published."""
    await store.save_flow(dental_flow)
    return engine
