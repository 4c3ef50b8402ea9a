"""Datetime parsing and normalization: lax input -> aware UTC output."""

from __future__ import annotations

from datetime import UTC, date, datetime

import pendulum


def parse_datetime(value: str | date | datetime, default_tz: str = "UTC") -> datetime:
    """Parse a lax datetime value into a timezone-aware datetime.

    Accepts datetime and date objects (as produced by YAML front matter) and
    strings in ISO 8601 or space-separated variants:
    - 2026-02-02T22:21:29Z
    - 2026-02-02 22:21:29.975359+00
    - 2026-02-02 22:21
    - 2026-02-02

    Missing timezone defaults to default_tz.
    Missing time components default to zeros.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            tz = pendulum.timezone(default_tz)
            value = value.replace(tzinfo=tz)  # type: ignore[arg-type]
        return value

    if isinstance(value, date):
        return pendulum.datetime(value.year, value.month, value.day, tz=default_tz)

    value_str = value.strip()

    parsed = pendulum.parse(value_str, tz=default_tz, strict=False)
    if not isinstance(parsed, pendulum.DateTime):
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(
            parsed.year, parsed.month, parsed.day, tz=default_tz  # type: ignore[union-attr]
        )
    return parsed  # type: ignore[return-value]


def as_utc(dt: datetime) -> datetime:
    """Return dt as an aware UTC datetime.

    SQLite drops tzinfo on round-trip; naive values read back from the
    database are UTC by construction.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def is_after(value: datetime | None, reference: datetime | None) -> bool:
    """Return True when value is strictly later than reference.

    A missing value never counts as a change; a missing reference means every
    present value is newer.
    """
    if value is None:
        return False
    if reference is None:
        return True
    return as_utc(value) > as_utc(reference)


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(UTC)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    return as_utc(dt).isoformat()
