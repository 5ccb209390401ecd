"""
Stall detection and human handoff.

StallDetector decides, for an unmatched input, whether the dialogue has
stalled: the user asked for a person, or the per-step counter went past
the fallback threshold. HandoffManager applies the handoff: pause the
conversation, tag it, tell the user an advisor is coming, label the chat
and notify the business number.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from channels.base import ChannelError, Transport
from database.store_base import BaseStore
from models.schemas import Contact, Conversation, ConversationState, FlowStep
from utils.text import HANDOFF_KEYWORDS, find_handoff_keyword

if TYPE_CHECKING:
    from config.settings import EngineConfig
    from core.outbound import OutboundMessenger

logger = structlog.get_logger()

AUTO_HANDOFF_TAG = "auto-handoff"


# ──────────────────────────────────────────────────────────────
#  Stall Detector
# ──────────────────────────────────────────────────────────────

class StallReason(str, Enum):
    NONE = "none"
    KEYWORD = "keyword"
    MAX_RETRIES = "max_retries"


@dataclass(frozen=True)
class StallVerdict:
    reason: StallReason
    keyword: str = ""

    @property
    def stalled(self) -> bool:
        return self.reason != StallReason.NONE


class StallDetector:

    def __init__(self, threshold: int = 3, keywords: tuple[str, ...] = HANDOFF_KEYWORDS):
        self.threshold = threshold
        self.keywords = keywords

    def check(self, inbound_text: str, count: int) -> StallVerdict:
        """`count` is the step counter after this unmatched input."""
        keyword = find_handoff_keyword(inbound_text, self.keywords)
        if keyword:
            return StallVerdict(StallReason.KEYWORD, keyword)
        if count > self.threshold:
            return StallVerdict(StallReason.MAX_RETRIES)
        return StallVerdict(StallReason.NONE)


def describe_reason(reason: str, keyword: str = "", count: int = 0) -> str:
    if reason == StallReason.KEYWORD.value:
        return f"Pidió hablar con una persona ({keyword})"
    if reason == StallReason.MAX_RETRIES.value:
        return f"Loop detectado ({count} mensajes sin avance)"
    return reason or "Pausa por paso del flujo"


# ──────────────────────────────────────────────────────────────
#  Handoff Manager
# ──────────────────────────────────────────────────────────────

class HandoffManager:

    def __init__(
        self,
        store: BaseStore,
        transport: Transport,
        outbound: "OutboundMessenger",
        config: "EngineConfig",
        own_number: str = "",
    ):
        self.store = store
        self.transport = transport
        self.outbound = outbound
        self.config = config
        self.own_number = own_number

    async def pause(
        self, conversation: Conversation, reason: str,
        step: Optional[FlowStep] = None, contact: Optional[Contact] = None,
        notify: bool = True, **changes,
    ) -> Optional[Conversation]:
        """
        Pause the conversation and hand it to a human.

        Returns the paused conversation, or None when another writer got
        there first (nothing is sent in that case).
        """
        tags = list(conversation.tags)
        if AUTO_HANDOFF_TAG not in tags:
            tags.append(AUTO_HANDOFF_TAG)

        paused = await self.store.update_conversation(
            conversation.id, conversation.revision,
            expected_state=ConversationState.ACTIVE,
            state=ConversationState.PAUSED, tags=tags, **changes,
        )
        if paused is None:
            logger.info("handoff_lost_race", phone=conversation.phone,
                        conversation_id=conversation.id)
            return None

        logger.info("conversation_handed_off",
                    phone=conversation.phone, conversation_id=conversation.id,
                    step_id=conversation.current_step_id, reason=reason)

        await self.outbound.send(conversation.phone, self.config.advisor_message)
        await self._sync_label(conversation.phone)

        if notify:
            await self._notify_business(paused, reason, step, contact)
        return paused

    async def _sync_label(self, phone: str):
        label = self.config.handoff_label
        if not label:
            return
        try:
            if label not in await self.transport.get_labels(phone):
                await self.transport.add_label(phone, label)
        except ChannelError as e:
            logger.warning("handoff_label_failed", phone=phone, label=label, error=str(e))

    async def _notify_business(
        self, conversation: Conversation, reason: str,
        step: Optional[FlowStep], contact: Optional[Contact],
    ):
        if not self.own_number:
            logger.debug("handoff_notification_skipped", phone=conversation.phone)
            return
        text = (
            "🚨 DERIVACIÓN AUTOMÁTICA\n\n"
            f"Contacto: {conversation.phone}\n"
            f"Nombre: {(contact.name if contact else '') or 'N/A'}\n"
            f"Razón: {reason}\n"
            f"Último paso: {(step.title or step.id) if step else conversation.current_step_id}\n\n"
            "Revisar conversación en el panel de admin."
        )
        await self.outbound.send(self.own_number, text, log=False)
