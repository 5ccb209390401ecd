"""
Outbound messenger: every text the bot sends goes through here.

Each send shows a typing indicator, waits a random human-like delay,
delivers through the transport and records the text in the message log.
Delivery failures are logged and reported as False; they never raise.
"""
from __future__ import annotations

import asyncio
import random
import structlog

from channels.base import ChannelError, Transport
from database.store_base import BaseStore
from models.schemas import MessageDirection

logger = structlog.get_logger()


class OutboundMessenger:

    def __init__(
        self,
        transport: Transport,
        store: BaseStore,
        delay_min: float = 3.0,
        delay_max: float = 6.0,
    ):
        self.transport = transport
        self.store = store
        self.delay_min = delay_min
        self.delay_max = max(delay_min, delay_max)

    async def _typing_pause(self, phone: str):
        try:
            await self.transport.send_typing(phone)
        except ChannelError as e:
            logger.debug("typing_indicator_failed", phone=phone, error=str(e))
        if self.delay_max > 0:
            await asyncio.sleep(random.uniform(self.delay_min, self.delay_max))

    async def send(self, phone: str, text: str, log: bool = True) -> bool:
        if not text:
            return False
        await self._typing_pause(phone)
        try:
            await self.transport.send_text(phone, text)
        except ChannelError as e:
            logger.error("outbound_send_failed", phone=phone,
                         error=str(e), retryable=e.retryable)
            return False

        if log:
            await self.store.append_message(phone, MessageDirection.OUT, text)
        logger.debug("outbound_sent", phone=phone, chars=len(text))
        return True
