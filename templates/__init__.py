"""
Outbound message templates.

A step's message template is rendered into chat text together with its
lettered option menu, or with the dynamic list of upcoming days.
"""
from templates.formatter import (
    UPCOMING_DAYS_PLACEHOLDER, UpcomingDay,
    has_upcoming_days, render, upcoming_days,
)

__all__ = [
    "UPCOMING_DAYS_PLACEHOLDER", "UpcomingDay",
    "has_upcoming_days", "render", "upcoming_days",
]
