"""
Side-Effect Dispatcher: runs the actions of a step when a conversation
enters it.

Actions run in a fixed order: tags, lead status, appointment capture,
pause. Every action is isolated: a failure is logged and the remaining
actions still run. The transition that triggered them always stands.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime, time, timezone
from typing import Optional

from context.stall_detector import AUTO_HANDOFF_TAG, HandoffManager
from core.outbound import OutboundMessenger
from database.store_base import BaseStore
from models.schemas import (
    Appointment, Contact, Conversation, FlowStep, LeadStatus, PaymentConfig,
)

logger = structlog.get_logger()

PAYMENT_CONFIG_KEY = "payment_config"


def _union(existing: list[str], new: list[str]) -> list[str]:
    merged = list(existing)
    for tag in new:
        if tag not in merged:
            merged.append(tag)
    return merged


class SideEffectDispatcher:

    def __init__(self, store: BaseStore, outbound: OutboundMessenger, handoff: HandoffManager):
        self.store = store
        self.outbound = outbound
        self.handoff = handoff

    async def run(self, conversation: Conversation, step: FlowStep, contact: Contact) -> Conversation:
        """Apply `step.actions`. Returns the latest known conversation."""
        actions = step.actions
        if actions is None or actions.is_empty:
            return conversation

        log = logger.bind(phone=conversation.phone, step_id=step.id)

        if actions.add_tags:
            try:
                conversation, contact = await self._add_tags(conversation, contact, actions.add_tags)
            except Exception as e:
                log.error("action_failed", action="add_tags", error=str(e))

        if actions.set_lead_status:
            try:
                contact = await self._set_lead_status(contact, actions.set_lead_status)
            except Exception as e:
                log.error("action_failed", action="set_lead_status", error=str(e))

        if actions.register_appointment:
            try:
                await self._register_appointment(conversation, contact)
            except Exception as e:
                log.error("action_failed", action="register_appointment", error=str(e))

        if actions.pause_conversation:
            try:
                paused = await self.handoff.pause(
                    conversation, reason="Paso del flujo pausa la conversación",
                    step=step, contact=contact, notify=False,
                )
                if paused is not None:
                    conversation = paused
            except Exception as e:
                log.error("action_failed", action="pause_conversation", error=str(e))

        return conversation

    # ── Actions ────────────────────────────────────────────

    async def _add_tags(self, conversation: Conversation, contact: Contact, tags: list[str]):
        merged = _union(conversation.tags, tags)
        if merged != conversation.tags:
            updated = await self.store.update_conversation(
                conversation.id, conversation.revision, tags=merged,
            )
            if updated is None:
                logger.warning("add_tags_conflict", phone=conversation.phone)
            else:
                conversation = updated

        contact_tags = _union(contact.tags, tags)
        if contact_tags != contact.tags:
            contact = await self.store.update_contact(contact.phone, tags=contact_tags) or contact

        logger.info("tags_added", phone=conversation.phone, tags=tags)
        return conversation, contact

    async def _set_lead_status(self, contact: Contact, status: LeadStatus) -> Contact:
        updated = await self.store.update_contact(contact.phone, status=status)
        logger.info("lead_status_set", phone=contact.phone, status=status.value)
        return updated or contact

    async def _register_appointment(self, conversation: Conversation, contact: Contact) -> Appointment:
        service = ", ".join(t for t in conversation.tags if t != AUTO_HANDOFF_TAG)
        chosen = conversation.data.get("selected_day") or {}

        appointment = Appointment(
            phone=conversation.phone,
            patient_name=contact.name,
            patient_dni=contact.meta.get("dni", ""),
            service=service,
            day_name=chosen.get("label", ""),
            date=self._chosen_date(chosen.get("date")),
            notes=f"Registrado desde el flujo {conversation.flow_id} v{conversation.flow_version}",
        )
        await self.store.create_appointment(appointment)
        logger.info("appointment_registered",
                    phone=conversation.phone, appointment_id=appointment.id,
                    service=service, day=appointment.day_name)

        payment = await self._payment_config()
        if payment.enabled and payment.link:
            sent = await self.outbound.send(conversation.phone, payment.render())
            logger.info("payment_link_sent", phone=conversation.phone, delivered=sent)
        return appointment

    async def _payment_config(self) -> PaymentConfig:
        raw = await self.store.get_setting(PAYMENT_CONFIG_KEY)
        return PaymentConfig.model_validate(raw) if raw else PaymentConfig()

    @staticmethod
    def _chosen_date(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        return datetime.combine(date.fromisoformat(value), time(), tzinfo=timezone.utc)
