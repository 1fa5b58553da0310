# -*- coding: utf-8 -*-
"""Time helpers for snowcoupler."""

# Import datetime helpers.
from datetime import datetime, timedelta, timezone

# Import numpy for datetime64 conversions.
import numpy as np

# Julian day number of 1970-01-01T00:00 UTC.
_JULIAN_UNIX_EPOCH = 2440587.5


def utc_now_iso() -> str:
    """Return current UTC time as an ISO-8601 string with 'Z'."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_iso8601_to_utc_datetime(value: str | None) -> datetime:
    """Parse ISO-8601 string into an aware UTC datetime (fallback: now)."""
    if not value:
        return datetime.now(timezone.utc)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_datetime64(dt: datetime) -> np.datetime64:
    """Convert an aware datetime to a naive UTC numpy.datetime64."""
    return np.datetime64(dt.astimezone(timezone.utc).replace(tzinfo=None))


def julian_days(dt: datetime) -> float:
    """Return the (astronomical) Julian date of an aware datetime."""
    return _JULIAN_UNIX_EPOCH + dt.timestamp() / 86400.0


def output_due(dt: datetime, start: float, days_between: float, dt_s: float) -> bool:
    """Decide whether an output with a given cadence falls on this step.

    `days_between` is the output period in days, `start` the offset of the
    first output (in Julian days, or days relative to an integer Julian date
    when smaller than one period). Outputs fire when the current date lies
    within half a model step of an output instant.
    """
    if days_between <= 0.0:
        return True
    half_step = 0.5 * dt_s / 86400.0
    elapsed = julian_days(dt) - start
    if elapsed < -half_step:
        return False
    remainder = elapsed % days_between
    return remainder < half_step or (days_between - remainder) <= half_step


def iso_label(dt: datetime) -> str:
    """ISO timestamp without timezone suffix, minute precision (SMET style)."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M")


def num_label(dt: datetime) -> str:
    """Compact numeric timestamp used in file names."""
    return dt.astimezone(timezone.utc).strftime("%Y%m%d%H%M")


def step_dates(start: datetime, end: datetime, dt_s: float) -> list[datetime]:
    """Return all step dates in [start, end) spaced by dt_s seconds."""
    if dt_s <= 0.0:
        raise ValueError("Step length must be positive")
    out = []
    cur = start
    step = timedelta(seconds=float(dt_s))
    while cur < end:
        out.append(cur)
        cur = cur + step
    return out
