"""Next-occurrence computation for recurring schedules.

Arithmetic is done on wall-clock calendar days in the schedule's time zone, so
an 07:00 daily schedule stays at 07:00 across daylight-saving transitions.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, tzinfo

from .models import RecurrenceRule

WEEKEND_SET = {5, 6}


def _normalize(dt: datetime, zone: tzinfo | None) -> datetime:
    # Round-trip through UTC so a wall time inside a DST gap lands on a real instant.
    return dt.astimezone(UTC).astimezone(zone or dt.tzinfo)


def _add_calendar_day(dt: datetime) -> datetime:
    return dt + timedelta(days=1)


def next_occurrence(after: datetime, rule: RecurrenceRule, *, zone: tzinfo | None = None) -> datetime | None:
    """Return the next fire time after ``after`` for ``rule``; None for one-shot rules.

    ``zone`` selects the calendar used for day arithmetic. When omitted the
    tzinfo already attached to ``after`` is used.
    """
    if rule == "none":
        return None
    if after.tzinfo is None:
        after = after.astimezone()
    local = after.astimezone(zone) if zone else after
    candidate = _add_calendar_day(local)
    if rule == "weekdays":
        while candidate.weekday() in WEEKEND_SET:
            candidate = _add_calendar_day(candidate)
    elif rule != "daily":
        raise ValueError(f"Unknown recurrence rule: {rule!r}")
    return _normalize(candidate, zone)


def next_occurrence_after(
    anchor: datetime,
    rule: RecurrenceRule,
    reference: datetime,
    *,
    zone: tzinfo | None = None,
) -> datetime | None:
    """Advance ``anchor`` by whole occurrences until it is strictly after ``reference``."""
    candidate: datetime | None = anchor
    # Bounded: a daily rule needs one step per missed day.
    for _ in range(3660):
        candidate = next_occurrence(candidate, rule, zone=zone)
        if candidate is None or candidate > reference:
            return candidate
    return candidate
