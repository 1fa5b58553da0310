# -*- coding: utf-8 -*-
"""Time helpers: parsing, labels and output cadence."""

# Import stdlib helpers.
from datetime import datetime, timedelta, timezone

# Import pytest.
import pytest

# Import package modules.
from snowcoupler.time_utils import (
    iso_label,
    julian_days,
    num_label,
    output_due,
    parse_iso8601_to_utc_datetime,
    step_dates,
)


def test_parse_iso8601():
    dt = parse_iso8601_to_utc_datetime("2024-01-01T01:00:00+01:00")
    assert dt == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_iso8601_to_utc_datetime("2024-01-01T00:00:00Z") == dt
    assert parse_iso8601_to_utc_datetime("2024-01-01T00:00:00") == dt


def test_labels():
    dt = datetime(2024, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert iso_label(dt) == "2024-02-03T04:05"
    assert num_label(dt) == "202402030405"


def test_julian_days_epoch():
    assert julian_days(datetime(1970, 1, 1, tzinfo=timezone.utc)) == pytest.approx(2440587.5)


def test_daily_output_at_midnight_only():
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    due = [output_due(start + timedelta(hours=h), 0.5, 1.0, 3600.0) for h in range(48)]
    # Julian days start at noon: an offset of 0.5 days aligns outputs with midnight UTC.
    assert [h for h, d in enumerate(due) if d] == [0, 24]


def test_zero_period_outputs_every_step():
    assert output_due(datetime(2024, 1, 1, 7, tzinfo=timezone.utc), 0.0, 0.0, 3600.0)


def test_output_not_before_start():
    dt = datetime(2024, 1, 1, tzinfo=timezone.utc)
    start = julian_days(dt) + 1.0
    assert not output_due(dt, start, 1.0, 3600.0)
    assert output_due(dt + timedelta(days=1), start, 1.0, 3600.0)


def test_step_dates():
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    dates = step_dates(start, start + timedelta(hours=3), 3600.0)
    assert dates == [start + timedelta(hours=h) for h in range(3)]
    with pytest.raises(ValueError):
        step_dates(start, start, 0.0)
