from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo


_PANEL_FORMATS = (
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
    "%d-%m-%Y %H:%M:%S",
    "%d-%m-%Y",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; treat them as UTC so comparisons stay aware.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_panel_expiry(raw: str | None, *, tz_name: str) -> datetime | None:
    # Panel prints local wall-clock dates (dd/mm/yyyy); return None when unparseable.
    if not raw:
        return None
    cleaned = " ".join(raw.strip().split())
    tz = ZoneInfo(tz_name)
    for fmt in _PANEL_FORMATS:
        try:
            parsed = datetime.strptime(cleaned, fmt)
        except ValueError:
            continue
        return parsed.replace(tzinfo=tz).astimezone(timezone.utc)
    try:
        parsed = datetime.fromisoformat(cleaned)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(timezone.utc)


def to_unix_seconds(value: datetime | None) -> str:
    # Partner API encodes expiry as a unix-seconds string.
    if value is None:
        return ""
    return str(int(as_utc(value).timestamp()))


def from_unix_seconds(raw: str | int | None) -> datetime | None:
    if raw in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None
