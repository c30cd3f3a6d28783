"""Date parsing shared by tasks, the task generator and the assistant."""

import re
from datetime import date, datetime, timedelta
from typing import Any, Optional

from dateutil import parser as date_parser

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def parse_date(value: Any) -> Optional[date]:
    """Parse ``value`` into a date, or None when it is empty or unparsable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date_parser.parse(str(value)).date()
    except (ValueError, OverflowError):
        return None


def to_date_string(value: Any) -> Optional[str]:
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else None


def parse_relative_date(raw: str, today: Optional[date] = None) -> Optional[date]:
    """
    Parse the relative expressions people type in commands.

    Supports today, tomorrow, next week, this week, +N days, +N weeks,
    next N days, <weekday>, this <weekday>, next <weekday>, and falls back to
    a regular date parse.
    """
    text = (raw or "").strip().lower().rstrip(".")
    now = today or date.today()
    if not text:
        return None

    if text == "today" or text == "this week":
        return now
    if text == "tomorrow":
        return now + timedelta(days=1)
    if text == "next week":
        return now + timedelta(weeks=1)

    match = re.match(r"^\+?(\d+)\s+days?$", text) or re.match(r"^next\s+(\d+)\s+days?$", text)
    if match:
        return now + timedelta(days=int(match.group(1)))
    match = re.match(r"^\+?(\d+)\s+weeks?$", text)
    if match:
        return now + timedelta(weeks=int(match.group(1)))

    for index, weekday in enumerate(WEEKDAYS):
        if text in (weekday, f"this {weekday}"):
            return now + timedelta(days=(index - now.weekday()) % 7)
        if text == f"next {weekday}":
            ahead = (index - now.weekday()) % 7
            return now + timedelta(days=ahead or 7)

    return parse_date(raw)
