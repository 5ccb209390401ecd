"""
Business-hours gate.

Outside opening hours the contact gets the configured closed notice, at
most once per cooldown window, and processing carries on: the dialogue
still answers so the contact can leave their choices for the morning.
"""
from __future__ import annotations

import structlog
from datetime import datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from database.store_base import BaseStore
from models.schemas import WEEKDAY_KEYS, BusinessHours, MessageDirection, utcnow

logger = structlog.get_logger()

BUSINESS_HOURS_KEY = "business_hours"


def _parse_hhmm(value: str) -> time:
    hours, _, minutes = (value or "00:00").partition(":")
    return time(int(hours), int(minutes or 0))


def is_open(hours: BusinessHours, now: datetime, tz: str) -> bool:
    """True when `now` falls inside today's open/close window in `tz`."""
    if not hours.enabled:
        return True
    local = now.astimezone(ZoneInfo(tz))
    day = hours.schedule.get(WEEKDAY_KEYS[local.weekday()])
    if day is None or not day.active:
        return False
    current = local.time().replace(tzinfo=None)
    return _parse_hhmm(day.open) <= current < _parse_hhmm(day.close)


async def load_business_hours(store: BaseStore) -> BusinessHours:
    raw = await store.get_setting(BUSINESS_HOURS_KEY)
    return BusinessHours.model_validate(raw) if raw else BusinessHours()


async def closed_notice_due(
    store: BaseStore, phone: str, hours: BusinessHours,
    cooldown_hours: float, now: Optional[datetime] = None,
) -> bool:
    """Whether the closed notice has not been sent to `phone` within the cooldown."""
    now = now or utcnow()
    cutoff = now - timedelta(hours=cooldown_hours)
    for entry in reversed(await store.get_messages(phone, limit=50)):
        if entry.timestamp < cutoff:
            break
        if entry.direction == MessageDirection.OUT and entry.text == hours.closed_message:
            return False
    return True


async def closed_notice_for(
    store: BaseStore, phone: str, tz: str, cooldown_hours: float,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """The closed message to send now, or None."""
    now = now or utcnow()
    hours = await load_business_hours(store)
    if is_open(hours, now, tz):
        return None
    if not await closed_notice_due(store, phone, hours, cooldown_hours, now):
        logger.debug("closed_notice_suppressed", phone=phone)
        return None
    logger.info("outside_business_hours", phone=phone)
    return hours.closed_message
