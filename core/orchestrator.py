"""
Conversation Engine: the central coordinator for inbound events.

Architecture:
  Inbound:  webhook → InboundEvent → dedup → per-phone lock
            → applied-event check → log + contact bookkeeping
            → load / select / create conversation → business-hours notice
            → StepExecutor decides → store claims the new state
            → dispatcher side effects → outbound replies

Writes come before sends. Every conversation write is a compare-and-update
on the revision the event read; if another event already moved the
conversation, this one is dropped and nothing is sent for it.
Each write also records the event id, so a late re-delivery of any recent
event is recognized as already applied.

Collaborators (admin panel, agents) act through resume_conversation,
close_conversation and get_conversation_view.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from channels.base import ChannelError, ContactInfo
from context.stall_detector import describe_reason
from context.state_machine import OutcomeKind, StepOutcome
from core.errors import ConversationConflictError, FlowVersionNotFoundError, MissingDataError
from core.session import BotSession
from models.schemas import (
    CallRejected, Contact, Conversation, ConversationState, Entering, Flow,
    FlowContent, InboundEvent, LeadSource, LoopDetection, MessageDirection,
    TextMessage,
)
from rules.business_hours import closed_notice_for
from rules.selector import FlowSignals

logger = structlog.get_logger()

CALL_LOG_TEXT = "📞 Llamada entrante (rechazada)"


class ConversationEngine:
    """
    Turns inbound events into dialogue progress.

    Every entry point returns a small result dict describing what happened,
    which the API layer passes through and tests assert on.
    """

    def __init__(self, session: BotSession):
        self.session = session
        self.store = session.store
        self.transport = session.transport
        self.outbound = session.outbound
        self.executor = session.executor
        self.selector = session.selector
        self.handoff = session.handoff
        self.dispatcher = session.dispatcher
        self.config = session.settings.engine

    # ══════════════════════════════════════════════════════════
    #  INBOUND
    # ══════════════════════════════════════════════════════════

    async def on_inbound_message(self, message: TextMessage) -> dict[str, Any]:
        return await self.handle_event(message)

    async def on_inbound_call(self, call: CallRejected) -> dict[str, Any]:
        return await self.handle_event(call)

    async def handle_event(self, event: InboundEvent) -> dict[str, Any]:
        """Main entry point for every inbound event."""
        if self.session.dedup.is_duplicate(f"{event.phone}:{event.event_id}"):
            logger.info("duplicate_event_dropped", phone=event.phone, event_id=event.event_id)
            return {"status": "duplicate", "phone": event.phone}

        async with self.session.locks.hold(event.phone):
            try:
                return await self._process(event)
            except MissingDataError as e:
                logger.error("event_aborted_missing_data",
                             phone=event.phone, event_id=event.event_id, error=str(e))
                return {"status": "aborted", "phone": event.phone, "error": str(e)}

    async def _process(self, event: InboundEvent) -> dict[str, Any]:
        phone = event.phone
        is_call = isinstance(event, CallRejected)
        text = "" if is_call else event.text
        source = LeadSource.ORGANIC if is_call else event.source

        logger.info("inbound_event", phone=phone, kind=event.kind,
                    event_id=event.event_id, text=text[:100])

        # 1. Idempotence: applied ids survive restarts, so the latest
        #    conversation for the phone knows every recent event.
        conversation = await self.store.find_active_conversation(phone)
        history = conversation or await self.store.find_latest_conversation(phone)
        if history is not None and history.has_applied(event.event_id):
            logger.info("event_already_applied", phone=phone, event_id=event.event_id)
            return {"status": "already_applied", "phone": phone, "conversation_id": history.id}

        # 2. Log + contact bookkeeping
        await self.store.append_message(
            phone, MessageDirection.IN, CALL_LOG_TEXT if is_call else text,
            timestamp=event.received_at,
        )
        info = await self._lookup_contact(phone)
        contact = await self._touch_contact(phone, source, info, getattr(event, "sender_name", ""))

        # 3. Conversation
        if conversation is not None and conversation.is_paused:
            logger.info("conversation_paused_event_ignored", phone=phone,
                        conversation_id=conversation.id)
            return {"status": "paused", "phone": phone, "conversation_id": conversation.id}

        if conversation is None:
            flow = await self.selector.select_flow(FlowSignals(
                is_known_contact=info.is_known, source=source, inbound_text=text,
            ))
            if flow is None:
                logger.info("no_flow_for_contact", phone=phone, source=source.value,
                            known=info.is_known)
                return {"status": "no_flow", "phone": phone}
            carried = history.applied_event_ids if history is not None else []
            conversation = await self._start(flow, phone, carried)
            if conversation is None:
                return {"status": "conflict", "phone": phone}

        elif not is_call:
            flow = await self.selector.select_flow(FlowSignals(
                is_known_contact=info.is_known, source=source,
                force_only=True, inbound_text=text,
            ))
            if flow is not None:
                conversation = await self._restart(conversation, flow)
                if conversation is None:
                    return {"status": "conflict", "phone": phone}

        content = await self._content_for(conversation)

        # 4. Business hours, only for events the bot is going to answer
        notice = await closed_notice_for(
            self.store, phone, self.session.settings.timezone,
            self.config.closed_notice_cooldown_hours,
        )
        if notice:
            await self.outbound.send(phone, notice)

        if is_call:
            return await self._handle_call(event, conversation, content)
        return await self._handle_text(event, conversation, content, contact)

    # ── Text ──────────────────────────────────────────────────

    async def _handle_text(
        self, event: TextMessage, conversation: Conversation,
        content: FlowContent, contact: Contact,
    ) -> dict[str, Any]:
        outcome = self.executor.advance(conversation, content, event.text)

        if outcome.escalated:
            paused = await self.handoff.pause(
                conversation,
                reason=describe_reason(outcome.reason, outcome.keyword, outcome.count),
                step=outcome.step, contact=contact,
                applied_event_ids=conversation.applied_with(event.event_id), **outcome.changes,
            )
            if paused is None:
                return self._conflict(conversation)
            return self._result("escalated", paused, outcome)

        updated = await self.store.update_conversation(
            conversation.id, conversation.revision,
            expected_state=ConversationState.ACTIVE,
            applied_event_ids=conversation.applied_with(event.event_id), **outcome.changes,
        )
        if updated is None:
            return self._conflict(conversation)

        if outcome.kind == OutcomeKind.MATCHED:
            updated = await self.dispatcher.run(updated, outcome.next_step, contact)

        await self.outbound.send(conversation.phone, outcome.reply)
        return self._result(outcome.kind.value, updated, outcome)

    # ── Calls ─────────────────────────────────────────────────

    async def _handle_call(
        self, event: CallRejected, conversation: Conversation, content: FlowContent,
    ) -> dict[str, Any]:
        step = self.executor.current_step(conversation, content)
        entering = isinstance(conversation.loop_detection.phase, Entering)
        changes = self.executor.enter(conversation, step).changes if entering else {}

        updated = await self.store.update_conversation(
            conversation.id, conversation.revision,
            expected_state=ConversationState.ACTIVE,
            applied_event_ids=conversation.applied_with(event.event_id), **changes,
        )
        if updated is None:
            return self._conflict(conversation)

        try:
            await self.transport.reject_call(event.call_id)
        except ChannelError as e:
            logger.warning("call_reject_failed", phone=event.phone,
                           call_id=event.call_id, error=str(e))
        await self.outbound.send(event.phone, self.config.call_rejected_message)
        await self.outbound.send(event.phone, self.executor.render(step))

        logger.info("call_handled", phone=event.phone, step_id=step.id, entered=entering)
        return {
            "status": "call_rejected",
            "phone": event.phone,
            "conversation_id": updated.id,
            "step_id": step.id,
        }

    # ══════════════════════════════════════════════════════════
    #  CONVERSATION LIFECYCLE
    # ══════════════════════════════════════════════════════════

    async def _start(
        self, flow: Flow, phone: str, applied_event_ids: Optional[list[str]] = None,
    ) -> Optional[Conversation]:
        entry = flow.published.entry_step_id
        conversation = Conversation(
            phone=phone,
            flow_id=flow.id,
            flow_version=flow.published_version,
            current_step_id=entry,
            applied_event_ids=list(applied_event_ids or []),
            loop_detection=LoopDetection(current_step_id=entry, messages_in_current_step=0),
        )
        try:
            created = await self.store.create_conversation(conversation)
        except ConversationConflictError as e:
            logger.info("conversation_create_lost_race", phone=phone, error=str(e))
            return None
        logger.info("conversation_started", phone=phone, conversation_id=created.id,
                    flow_id=flow.id, flow_name=flow.name, version=flow.published_version)
        return created

    async def _restart(self, conversation: Conversation, flow: Flow) -> Optional[Conversation]:
        closed = await self.store.update_conversation(
            conversation.id, conversation.revision,
            expected_state=ConversationState.ACTIVE,
            state=ConversationState.CLOSED,
        )
        if closed is None:
            logger.info("conversation_restart_lost_race", phone=conversation.phone)
            return None
        logger.info("conversation_force_restarted", phone=conversation.phone,
                    old_conversation_id=conversation.id, flow_id=flow.id)
        return await self._start(flow, conversation.phone, closed.applied_event_ids)

    async def _content_for(self, conversation: Conversation) -> FlowContent:
        content = await self.store.find_flow_by_version(conversation.flow_id, conversation.flow_version)
        if content is None:
            raise FlowVersionNotFoundError(conversation.flow_id, conversation.flow_version)
        return content

    async def _lookup_contact(self, phone: str) -> ContactInfo:
        try:
            return await self.transport.get_contact(phone)
        except ChannelError as e:
            logger.warning("contact_lookup_failed", phone=phone, error=str(e))
            return ContactInfo()

    async def _touch_contact(
        self, phone: str, source: LeadSource, info: ContactInfo, sender_name: str,
    ) -> Contact:
        contact = await self.store.find_or_create_contact(phone, source)
        await self.store.touch_last_seen(phone)
        name = info.name or sender_name
        if name and not contact.name:
            contact = await self.store.update_contact(phone, meta={**contact.meta, "name": name}) or contact
        return contact

    # ══════════════════════════════════════════════════════════
    #  COLLABORATOR ACTIONS
    # ══════════════════════════════════════════════════════════

    async def resume_conversation(self, phone: str) -> Optional[Conversation]:
        """Hand a paused conversation back to the bot at its current step."""
        async with self.session.locks.hold(phone):
            conversation = await self.store.find_active_conversation(phone)
            if conversation is None or not conversation.is_paused:
                return None
            resumed = await self.store.update_conversation(
                conversation.id, conversation.revision,
                expected_state=ConversationState.PAUSED,
                state=ConversationState.ACTIVE,
                loop_detection=LoopDetection(
                    current_step_id=conversation.current_step_id,
                    messages_in_current_step=1,
                ),
            )
            if resumed is None:
                return None
            label = self.config.handoff_label
            if label:
                try:
                    await self.transport.remove_label(phone, label)
                except ChannelError as e:
                    logger.warning("handoff_label_remove_failed", phone=phone, error=str(e))
            logger.info("conversation_resumed", phone=phone, conversation_id=resumed.id)
            return resumed

    async def close_conversation(self, phone: str) -> Optional[Conversation]:
        async with self.session.locks.hold(phone):
            conversation = await self.store.find_active_conversation(phone)
            if conversation is None:
                return None
            closed = await self.store.update_conversation(
                conversation.id, conversation.revision,
                state=ConversationState.CLOSED,
            )
            if closed is not None:
                logger.info("conversation_closed", phone=phone, conversation_id=closed.id)
            return closed

    async def get_conversation_view(self, phone: str, limit: int = 20) -> Optional[dict[str, Any]]:
        """Read model for the admin panel."""
        conversation = (
            await self.store.find_active_conversation(phone)
            or await self.store.find_latest_conversation(phone)
        )
        if conversation is None:
            return None

        content = await self.store.find_flow_by_version(conversation.flow_id, conversation.flow_version)
        step = content.get_step(conversation.current_step_id) if content else None
        contact = await self.store.get_contact(phone)
        messages = await self.store.get_messages(phone, limit=limit)

        return {
            "conversation_id": conversation.id,
            "phone": phone,
            "state": conversation.state.value,
            "flow_id": conversation.flow_id,
            "flow_version": conversation.flow_version,
            "current_step_id": conversation.current_step_id,
            "current_step_title": step.title if step else "",
            "tags": conversation.tags,
            "messages_in_current_step": conversation.loop_detection.messages_in_current_step,
            "contact": contact.model_dump(mode="json") if contact else None,
            "messages": [m.model_dump(mode="json") for m in messages],
        }

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _conflict(conversation: Conversation) -> dict[str, Any]:
        logger.info("event_lost_race", phone=conversation.phone,
                    conversation_id=conversation.id, revision=conversation.revision)
        return {"status": "conflict", "phone": conversation.phone, "conversation_id": conversation.id}

    @staticmethod
    def _result(status: str, conversation: Conversation, outcome: StepOutcome) -> dict[str, Any]:
        return {
            "status": status,
            "phone": conversation.phone,
            "conversation_id": conversation.id,
            "step_id": conversation.current_step_id,
            "state": conversation.state.value,
            "count": outcome.count,
            "reply": outcome.reply,
        }
