# -*- coding: utf-8 -*-
"""Clock boundary: the single source of "now" for every mutation."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now_iso(self) -> str:
        """Return the current instant as an ISO-8601 string."""
        ...


def format_iso(moment: datetime) -> str:
    """Format *moment* as UTC ISO-8601 with millisecond precision and a Z suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 string; naive values are treated as UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def normalize_iso(value: str) -> str:
    """Rewrite any ISO-8601 timestamp in the stored form (UTC, ms, ``Z``).

    Stored stamps sort lexicographically in time order only in this form.
    """
    return format_iso(parse_iso(value))


def latest(a: str, b: str) -> str:
    """Return whichever timestamp is later (ties keep *a*)."""
    return b if parse_iso(b) > parse_iso(a) else a


class SystemClock:
    """Wall clock in UTC."""

    def now_iso(self) -> str:
        return format_iso(datetime.now(timezone.utc))
