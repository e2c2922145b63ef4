"""
FieldOps Service Workflow
Clock / timezone source.

Every service reads "now" through ``get_clock()`` so tests can freeze
time by installing a FrozenClock in ``app.extensions["clock"]``.

Usage:
    from fieldops.services.clock import get_clock, org_today

    now = get_clock().now()                 # aware UTC datetime
    local = get_clock().local(now, "Europe/Rome")
    today = org_today()                     # date in ORG_TIMEZONE
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app, has_app_context

from fieldops.core.exceptions import ValidationError

_FALLBACK_TZ = "Europe/Rome"


def resolve_zone(tz_name: str | None) -> ZoneInfo:
    """Return a ZoneInfo, raising ValidationError for unknown names."""
    name = (tz_name or "").strip() or _FALLBACK_TZ
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {name}", details={"timezone": "invalid"}) from exc


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are treated as UTC (SQLite drops tzinfo)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock:
    """System clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def local(self, at: datetime | None = None, tz_name: str | None = None) -> datetime:
        at = as_utc(at or self.now())
        return at.astimezone(resolve_zone(tz_name))

    def today(self, tz_name: str | None = None) -> date:
        return self.local(None, tz_name).date()


class FrozenClock(Clock):
    """Clock pinned to a fixed instant; ``advance`` moves it forward."""

    def __init__(self, at: datetime):
        self._at = as_utc(at)

    def now(self) -> datetime:
        return self._at

    def set(self, at: datetime) -> None:
        self._at = as_utc(at)

    def advance(self, delta) -> None:
        self._at = self._at + delta


_default_clock = Clock()


def init_clock(app, clock: Clock | None = None) -> None:
    app.extensions["clock"] = clock or _default_clock


def get_clock() -> Clock:
    if has_app_context():
        return current_app.extensions.get("clock", _default_clock)
    return _default_clock


def org_timezone() -> str:
    if has_app_context():
        return current_app.config.get("ORG_TIMEZONE", _FALLBACK_TZ)
    return _FALLBACK_TZ


def org_today() -> date:
    """Calendar day in the organizational timezone (the dedup day)."""
    return get_clock().today(org_timezone())
