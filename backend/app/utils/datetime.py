"""
UTC clock and calendar-boundary helpers.

Every timestamp in the quota tables is a naive datetime in UTC. Daily
windows roll over at 00:00 UTC and monthly windows on the 1st at 00:00
UTC, regardless of the server's local timezone.
"""

from __future__ import annotations

import datetime


def utcnow() -> datetime.datetime:
    """Return the current UTC time as a naive datetime."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime.datetime) -> datetime.datetime:
    """Convert an aware datetime to naive UTC; naive input is assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)


def start_of_next_day(now: datetime.datetime) -> datetime.datetime:
    """Midnight (UTC) of the calendar day after `now`."""
    tomorrow = now.date() + datetime.timedelta(days=1)
    return datetime.datetime.combine(tomorrow, datetime.time.min)


def start_of_next_month(now: datetime.datetime) -> datetime.datetime:
    """First day of the calendar month after `now`, at midnight (UTC)."""
    if now.month == 12:
        return datetime.datetime(now.year + 1, 1, 1)
    return datetime.datetime(now.year, now.month + 1, 1)
