"""Tests for the business-hours gate."""
from datetime import datetime, timedelta, timezone

import pytest

from models.schemas import BusinessHours, DaySchedule, MessageDirection
from rules.business_hours import (
    BUSINESS_HOURS_KEY, closed_notice_due, closed_notice_for, is_open,
)

TZ = "America/Argentina/Buenos_Aires"      # UTC-3, no DST

# Monday 2024-01-22 10:00 local
MONDAY_MORNING = datetime(2024, 1, 22, 13, 0, tzinfo=timezone.utc)
# Sunday 2024-01-21 10:00 local
SUNDAY_MORNING = datetime(2024, 1, 21, 13, 0, tzinfo=timezone.utc)
# Monday 2024-01-22 21:30 local
MONDAY_NIGHT = datetime(2024, 1, 23, 0, 30, tzinfo=timezone.utc)


class TestIsOpen:
    def test_disabled_is_always_open(self):
        assert is_open(BusinessHours(enabled=False), SUNDAY_MORNING, TZ)

    def test_inside_window(self):
        assert is_open(BusinessHours(enabled=True), MONDAY_MORNING, TZ)

    def test_after_close(self):
        assert not is_open(BusinessHours(enabled=True), MONDAY_NIGHT, TZ)

    def test_inactive_day(self):
        assert not is_open(BusinessHours(enabled=True), SUNDAY_MORNING, TZ)

    def test_custom_schedule(self):
        hours = BusinessHours(enabled=True, schedule={
            "monday": DaySchedule(open="11:00", close="12:00"),
        })
        assert not is_open(hours, MONDAY_MORNING, TZ)
        assert is_open(hours, MONDAY_MORNING + timedelta(hours=1, minutes=30), TZ)

    def test_closed_message_accepts_stored_key(self):
        hours = BusinessHours.model_validate({"enabled": True, "closedMessage": "Cerrado"})
        assert hours.closed_message == "Cerrado"


class TestClosedNotice:
    @pytest.mark.asyncio
    async def test_due_when_never_sent(self, store):
        assert await closed_notice_due(store, "123", BusinessHours(), 12, MONDAY_NIGHT)

    @pytest.mark.asyncio
    async def test_suppressed_within_cooldown(self, store):
        hours = BusinessHours()
        await store.append_message("123", MessageDirection.OUT, hours.closed_message,
                                   timestamp=MONDAY_NIGHT - timedelta(hours=2))
        assert not await closed_notice_due(store, "123", hours, 12, MONDAY_NIGHT)

    @pytest.mark.asyncio
    async def test_due_again_after_cooldown(self, store):
        hours = BusinessHours()
        await store.append_message("123", MessageDirection.OUT, hours.closed_message,
                                   timestamp=MONDAY_NIGHT - timedelta(hours=13))
        assert await closed_notice_due(store, "123", hours, 12, MONDAY_NIGHT)

    @pytest.mark.asyncio
    async def test_notice_for_reads_setting(self, store):
        await store.set_setting(BUSINESS_HOURS_KEY, {"enabled": True, "closedMessage": "Volvemos mañana"})
        assert await closed_notice_for(store, "123", TZ, 12, now=MONDAY_NIGHT) == "Volvemos mañana"
        assert await closed_notice_for(store, "123", TZ, 12, now=MONDAY_MORNING) is None

    @pytest.mark.asyncio
    async def test_no_setting_means_open(self, store):
        assert await closed_notice_for(store, "123", TZ, 12, now=MONDAY_NIGHT) is None
