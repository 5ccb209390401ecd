"""
Message Formatter: renders a step into the text the user receives.

Plain steps:
    <template>

    A) Label one
    B) Label two

Steps whose template contains {PROXIMOS_DIAS} get a lettered list of the
next working days instead, and their option list is not appended (the day
list already is the menu).
"""
from __future__ import annotations

import string
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from models.schemas import FlowStep

UPCOMING_DAYS_PLACEHOLDER = "{PROXIMOS_DIAS}"
DEFAULT_UPCOMING_DAYS = 6

WEEKDAY_NAMES = ["Lunes", "Martes", "Miércoles", "Jueves", "Viernes", "Sábado", "Domingo"]
_SUNDAY = 6


@dataclass(frozen=True)
class UpcomingDay:
    letter: str
    date: date

    @property
    def label(self) -> str:
        return f"{WEEKDAY_NAMES[self.date.weekday()]} {self.date.day:02d}/{self.date.month:02d}"

    @property
    def line(self) -> str:
        return f"{self.letter}) {self.label}"


def upcoming_days(today: Optional[date] = None, count: int = DEFAULT_UPCOMING_DAYS) -> list[UpcomingDay]:
    """The next `count` calendar days after `today`, skipping Sundays."""
    today = today or date.today()
    days: list[UpcomingDay] = []
    current = today
    while len(days) < count:
        current += timedelta(days=1)
        if current.weekday() == _SUNDAY:
            continue
        days.append(UpcomingDay(letter=string.ascii_uppercase[len(days)], date=current))
    return days


def has_upcoming_days(step: FlowStep) -> bool:
    return UPCOMING_DAYS_PLACEHOLDER in (step.message or "")


def render(step: FlowStep, today: Optional[date] = None, days_count: int = DEFAULT_UPCOMING_DAYS) -> str:
    message = step.message or ""

    if UPCOMING_DAYS_PLACEHOLDER in message:
        listing = "\n".join(d.line for d in upcoming_days(today, days_count))
        return message.replace(UPCOMING_DAYS_PLACEHOLDER, listing)

    text = message + "\n\n"
    for opt in step.options:
        text += f"{opt.key}) {opt.label}\n"
    return text.rstrip()
