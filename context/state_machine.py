"""
Step State Machine: evaluates one inbound text against a conversation's
current step and decides what happens next.

The executor is pure: it reads the conversation and the pinned flow
content and returns a StepOutcome describing the reply to send and the
changes to persist. The engine owns I/O, so a conversation can be
claimed in the store before anything leaves the process.

Phases (derived from loop_detection.messages_in_current_step):
  Entering                : prompt not sent yet; input is not evaluated
  AwaitingInput(mismatches): prompt sent; input is read as an answer

Outcomes:
  SENT_INITIAL : prompt sent on entry, counter set to 1
  MATCHED      : option chosen, conversation moves to next_step
  FALLBACK     : no option matched, fallback text + prompt re-sent
  ESCALATED    : handoff keyword or too many mismatches
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Optional

from core.errors import StepNotFoundError
from models.schemas import (
    Conversation, Entering, FlowContent, FlowStep,
    LoopDetection, StepOption, utcnow,
)
from context.stall_detector import StallDetector, StallReason
from templates.formatter import DEFAULT_UPCOMING_DAYS, has_upcoming_days, render, upcoming_days
from utils.text import BACK_FRAGMENT, BACK_OPTION_KEY, normalize

logger = structlog.get_logger()

DEFAULT_FALLBACK_THRESHOLD = 3


# ──────────────────────────────────────────────────────────────
#  Outcome
# ──────────────────────────────────────────────────────────────

class OutcomeKind(str, Enum):
    SENT_INITIAL = "sent_initial"
    MATCHED = "matched"
    FALLBACK = "fallback"
    ESCALATED = "escalated"


@dataclass
class StepOutcome:
    kind: OutcomeKind
    step: FlowStep                              # step the input was read against
    reply: str = ""                             # text for the user, "" when escalating
    changes: dict[str, Any] = field(default_factory=dict)
    next_step: Optional[FlowStep] = None
    option: Optional[StepOption] = None
    count: int = 0                              # messages_in_current_step after this event
    reason: str = ""                            # escalation reason
    keyword: str = ""

    @property
    def escalated(self) -> bool:
        return self.kind == OutcomeKind.ESCALATED

    def __repr__(self):
        if self.kind == OutcomeKind.MATCHED:
            return f"<StepOutcome matched {self.step.id} → {self.next_step.id}>"
        return f"<StepOutcome {self.kind.value} at {self.step.id} count={self.count}>"


# ──────────────────────────────────────────────────────────────
#  Option matching
# ──────────────────────────────────────────────────────────────

def match_option(step: FlowStep, inbound_text: str) -> Optional[StepOption]:
    """First option whose key or label equals the input, in declaration order."""
    text = normalize(inbound_text)
    if not text:
        return None
    for opt in step.options:
        key = normalize(opt.key)
        if text == key or (opt.label and text == normalize(opt.label)):
            return opt
        if key == BACK_OPTION_KEY and BACK_FRAGMENT in text:
            return opt
    return None


# ──────────────────────────────────────────────────────────────
#  Step Executor
# ──────────────────────────────────────────────────────────────

class StepExecutor:
    """
    Advances a conversation one event at a time.

    `fallback_threshold` is the highest counter value that still gets a
    fallback; the mismatch that pushes the counter past it escalates.
    """

    def __init__(
        self,
        fallback_threshold: int = DEFAULT_FALLBACK_THRESHOLD,
        days_count: int = DEFAULT_UPCOMING_DAYS,
        today: Callable[[], date] = None,
    ):
        self.fallback_threshold = fallback_threshold
        self.stall_detector = StallDetector(threshold=fallback_threshold)
        self.days_count = days_count
        self._today = today or date.today

    def render(self, step: FlowStep) -> str:
        return render(step, self._today(), self.days_count)

    def current_step(self, conversation: Conversation, content: FlowContent) -> FlowStep:
        step = content.get_step(conversation.current_step_id)
        if step is None:
            raise StepNotFoundError(conversation.current_step_id, conversation.flow_id, conversation.flow_version)
        return step

    def advance(
        self, conversation: Conversation, content: FlowContent,
        inbound_text: str, now: datetime = None,
    ) -> StepOutcome:
        now = now or utcnow()
        step = self.current_step(conversation, content)
        loop = conversation.loop_detection
        phase = loop.phase

        if isinstance(phase, Entering):
            return self.enter(conversation, step, now)

        option = match_option(step, inbound_text)
        if option is not None:
            return self._matched(conversation, content, step, option, inbound_text, now)

        count = loop.messages_in_current_step + 1
        new_loop = LoopDetection(
            current_step_id=step.id,
            messages_in_current_step=count,
            last_step_change_at=loop.last_step_change_at,
        )

        verdict = self.stall_detector.check(inbound_text, count)
        if verdict.reason == StallReason.KEYWORD:
            logger.info("handoff_keyword_detected",
                        phone=conversation.phone, step_id=step.id, keyword=verdict.keyword)
            return StepOutcome(
                kind=OutcomeKind.ESCALATED, step=step,
                count=loop.messages_in_current_step,
                reason=verdict.reason.value, keyword=verdict.keyword,
            )
        if verdict.reason == StallReason.MAX_RETRIES:
            logger.info("stall_detected",
                        phone=conversation.phone, step_id=step.id, count=count)
            return StepOutcome(
                kind=OutcomeKind.ESCALATED, step=step, count=count,
                reason=verdict.reason.value,
                changes={"loop_detection": new_loop},
            )

        fallback = step.fallback_message or content.fallback_message
        logger.debug("option_not_matched", phone=conversation.phone, step_id=step.id, count=count)
        return StepOutcome(
            kind=OutcomeKind.FALLBACK, step=step, count=count,
            reply=f"{fallback}\n\n{self.render(step)}",
            changes={"loop_detection": new_loop},
        )

    def enter(self, conversation: Conversation, step: FlowStep, now: datetime = None) -> StepOutcome:
        """Send the current step's prompt for the first time."""
        now = now or utcnow()
        return StepOutcome(
            kind=OutcomeKind.SENT_INITIAL, step=step, count=1,
            reply=self.render(step),
            changes={"loop_detection": LoopDetection(
                current_step_id=step.id,
                messages_in_current_step=1,
                last_step_change_at=now,
            )},
        )

    def _matched(
        self, conversation: Conversation, content: FlowContent, step: FlowStep,
        option: StepOption, inbound_text: str, now: datetime,
    ) -> StepOutcome:
        next_step = content.get_step(option.next_step_id)
        if next_step is None:
            raise StepNotFoundError(option.next_step_id, conversation.flow_id, conversation.flow_version)

        changes: dict[str, Any] = {
            "current_step_id": next_step.id,
            "loop_detection": LoopDetection(
                current_step_id=next_step.id,
                messages_in_current_step=1,
                last_step_change_at=now,
            ),
        }

        if has_upcoming_days(step):
            chosen = self._chosen_day(inbound_text)
            if chosen is not None:
                changes["data"] = {**conversation.data, "selected_day": chosen}

        logger.info("step_transition",
                    phone=conversation.phone, from_step=step.id,
                    to_step=next_step.id, option=option.key)
        return StepOutcome(
            kind=OutcomeKind.MATCHED, step=step, next_step=next_step,
            option=option, count=1, reply=self.render(next_step),
            changes=changes,
        )

    def _chosen_day(self, inbound_text: str) -> Optional[dict[str, str]]:
        text = normalize(inbound_text)
        for day in upcoming_days(self._today(), self.days_count):
            if text == day.letter.lower():
                return {"letter": day.letter, "label": day.label, "date": day.date.isoformat()}
        return None
