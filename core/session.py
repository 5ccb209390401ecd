"""
BotSession: everything one running bot needs, wired once.

Holds the settings, the store and the transport, and builds the engine's
collaborators from them. Components receive the session (or the pieces
they need) explicitly; nothing is read from module globals at event time.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from channels.base import MessageDeduplicator, Transport
from config.settings import Settings, get_settings
from context.stall_detector import HandoffManager
from context.state_machine import StepExecutor
from core.dispatcher import SideEffectDispatcher
from core.locks import PhoneLocks
from core.outbound import OutboundMessenger
from database.store_base import BaseStore
from rules.selector import FlowSelector

logger = structlog.get_logger()


class BotSession:

    def __init__(
        self,
        store: BaseStore,
        transport: Transport,
        settings: Optional[Settings] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.transport = transport
        self.today = today or self._local_today

        engine_cfg = self.settings.engine
        self.outbound = OutboundMessenger(
            transport, store,
            delay_min=engine_cfg.typing_delay_min_seconds,
            delay_max=engine_cfg.typing_delay_max_seconds,
        )
        self.executor = StepExecutor(
            fallback_threshold=engine_cfg.fallback_threshold,
            days_count=engine_cfg.upcoming_days,
            today=self.today,
        )
        self.selector = FlowSelector(store)
        self.handoff = HandoffManager(
            store, transport, self.outbound, engine_cfg,
            own_number=self.settings.whatsapp.own_number,
        )
        self.dispatcher = SideEffectDispatcher(store, self.outbound, self.handoff)
        self.locks = PhoneLocks()
        self.dedup = MessageDeduplicator(ttl_seconds=engine_cfg.dedup_ttl_seconds)

        logger.info("bot_session_created",
                    app=self.settings.app_name,
                    store=type(store).__name__,
                    transport=type(transport).__name__)

    def _local_today(self) -> date:
        return datetime.now(ZoneInfo(self.settings.timezone)).date()

    async def shutdown(self):
        await self.transport.shutdown()
        logger.info("bot_session_closed")
