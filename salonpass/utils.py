"""Phone and time helpers shared by the services."""
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from flask import current_app

from .errors import ValidationError

_NON_DIGITS = re.compile(r"\D")
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def utc_now() -> datetime:
    """Return the current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_phone(raw: str | None) -> str:
    """Normalize a Mexican phone number to its ``52``-prefixed digits.

    ``5214421234567`` (old mobile prefix) becomes ``524421234567`` and a bare
    10-digit number gets the ``52`` country code. Anything else is kept as
    digits only.
    """
    phone = _NON_DIGITS.sub("", raw or "")
    if not phone:
        raise ValidationError("phone is required")
    if len(phone) == 13 and phone.startswith("521"):
        phone = "52" + phone[3:]
    elif len(phone) == 10:
        phone = "52" + phone
    return phone


def business_tz() -> ZoneInfo:
    return ZoneInfo(current_app.config["TIMEZONE"])


def parse_date(value: str | None) -> str:
    try:
        return datetime.strptime(value or "", "%Y-%m-%d").date().isoformat()
    except ValueError as exc:
        raise ValidationError("date must use YYYY-MM-DD") from exc


def parse_time(value: str | None) -> str:
    if not value or not _TIME_RE.match(value):
        raise ValidationError("time must use HH:MM")
    return value


def parse_duration(value: object) -> int:
    try:
        minutes = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("durationMinutes must be an integer") from exc
    if minutes <= 0:
        raise ValidationError("durationMinutes must be greater than zero")
    return minutes


def local_to_utc(date_str: str, time_str: str) -> datetime:
    """Interpret a business-local date and time and return naive UTC."""
    local = datetime.strptime(f"{date_str} {time_str}", "%Y-%m-%d %H:%M").replace(tzinfo=business_tz())
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def utc_to_local(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).astimezone(business_tz())


def compute_interval(date_str: str, time_str: str, duration_minutes: int) -> tuple[datetime, datetime]:
    start = local_to_utc(date_str, time_str)
    return start, start + timedelta(minutes=duration_minutes)


def isoformat(value: datetime | None) -> str | None:
    """Render a naive UTC timestamp as ISO-8601 with a ``Z`` suffix."""
    return value.isoformat() + "Z" if value else None
