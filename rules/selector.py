"""
Flow Selector: decides which published flow applies to an inbound contact.

A flow is eligible when its activation rules accept both the lead source
(Meta ad referral vs. organic) and whether the number is saved in the
business address book. Force-only selection is used while a conversation
is already running: only flows flagged `force_restart` qualify, and only
when the inbound text is a restart command.

Among eligible flows the highest priority wins. Ties go to the most
recently updated flow, then to the alphabetically first name, so the
choice never depends on store iteration order.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Optional

from database.store_base import BaseStore
from models.schemas import Flow, LeadSource
from utils.text import RESTART_KEYWORDS, is_restart_command

logger = structlog.get_logger()


@dataclass
class FlowSignals:
    is_known_contact: bool
    source: LeadSource = LeadSource.ORGANIC
    force_only: bool = False
    inbound_text: str = ""


def _rank(flow: Flow):
    return (-flow.activation_rules.priority, -flow.updated_at.timestamp(), flow.name)


class FlowSelector:

    def __init__(self, store: BaseStore, restart_keywords: tuple[str, ...] = RESTART_KEYWORDS):
        self.store = store
        self.restart_keywords = restart_keywords

    def eligible(self, flows: list[Flow], signals: FlowSignals) -> list[Flow]:
        """Filter and rank flows for the given signals. Pure."""
        if signals.force_only and not is_restart_command(signals.inbound_text, self.restart_keywords):
            return []

        candidates = []
        for flow in flows:
            if not flow.is_active or flow.published is None:
                continue
            rules = flow.activation_rules
            if not rules.matches(signals.source, signals.is_known_contact):
                continue
            if signals.force_only and not rules.force_restart:
                continue
            candidates.append(flow)

        return sorted(candidates, key=_rank)

    async def select_flow(self, signals: FlowSignals) -> Optional[Flow]:
        flows = await self.store.find_active_published_flows()
        ranked = self.eligible(flows, signals)
        if not ranked:
            logger.debug("no_flow_selected",
                         source=signals.source.value,
                         known=signals.is_known_contact,
                         force_only=signals.force_only)
            return None

        chosen = ranked[0]
        logger.info("flow_selected",
                    flow_id=chosen.id, flow_name=chosen.name,
                    priority=chosen.activation_rules.priority,
                    force_only=signals.force_only,
                    candidates=len(ranked))
        return chosen
