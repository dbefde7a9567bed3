"""Recurrence pattern engine.

Pure date math: a pattern plus a range yields the calendar dates of a series,
and a recurring master record expands into concrete occurrence records.
Weeks always start on Sunday for week-boundary arithmetic. A monthly or yearly
series whose start day does not exist in a later month (the 31st, or the 29th
of February) skips that month rather than clamping to its last day.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from enum import Enum

from dateutil.rrule import (
    DAILY,
    FR,
    MO,
    MONTHLY,
    SA,
    SU,
    TH,
    TU,
    WE,
    WEEKLY,
    YEARLY,
    rrule,
)

from reservation_calendar.domain.errors import ValidationError
from reservation_calendar.domain.records import (
    EDITABLE_FIELDS,
    OccurrenceException,
    ReservationRecord,
    normalize_patch,
)


class Frequency(str, Enum):
    """How often a series repeats."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Weekday(str, Enum):
    """Day of week, ordered from Sunday."""

    SUNDAY = "sunday"
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"

    @property
    def offset(self) -> int:
        """Offset from the Sunday that starts the week."""
        return _WEEKDAY_ORDER.index(self)

    @classmethod
    def of(cls, value: date) -> Weekday:
        """Return the weekday of a calendar date."""
        return _WEEKDAY_ORDER[(value.weekday() + 1) % 7]


_WEEKDAY_ORDER: tuple[Weekday, ...] = tuple(Weekday)

_DAY_ABBREVIATIONS = {
    Weekday.SUNDAY: "Su",
    Weekday.MONDAY: "M",
    Weekday.TUESDAY: "Tu",
    Weekday.WEDNESDAY: "W",
    Weekday.THURSDAY: "Th",
    Weekday.FRIDAY: "F",
    Weekday.SATURDAY: "S",
}

_RRULE_FREQUENCIES = {
    Frequency.DAILY: DAILY,
    Frequency.WEEKLY: WEEKLY,
    Frequency.MONTHLY: MONTHLY,
    Frequency.YEARLY: YEARLY,
}

_RRULE_WEEKDAYS = {
    Weekday.SUNDAY: SU,
    Weekday.MONDAY: MO,
    Weekday.TUESDAY: TU,
    Weekday.WEDNESDAY: WE,
    Weekday.THURSDAY: TH,
    Weekday.FRIDAY: FR,
    Weekday.SATURDAY: SA,
}


def _coerce_weekday(value: object) -> Weekday:
    if isinstance(value, Weekday):
        return value
    try:
        return Weekday(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError(
            f"Unknown weekday: {value!r}", field="days_of_week"
        ) from exc


@dataclass(frozen=True)
class RecurrencePattern:
    """Repetition rule: frequency, interval and, for weekly, the weekdays."""

    frequency: Frequency
    interval: int = 1
    days_of_week: frozenset[Weekday] = frozenset()

    def __post_init__(self) -> None:
        try:
            frequency = Frequency(self.frequency)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown frequency: {self.frequency!r}", field="frequency"
            ) from exc
        days = frozenset(_coerce_weekday(day) for day in self.days_of_week)
        object.__setattr__(self, "frequency", frequency)
        object.__setattr__(self, "days_of_week", days)
        if (
            isinstance(self.interval, bool)
            or not isinstance(self.interval, int)
            or self.interval < 1
        ):
            raise ValidationError(
                "Interval must be a positive integer", field="interval"
            )
        if frequency is Frequency.WEEKLY and not days:
            raise ValidationError(
                "A weekly pattern needs at least one weekday", field="days_of_week"
            )
        if frequency is not Frequency.WEEKLY and days:
            raise ValidationError(
                "Weekdays only apply to weekly patterns", field="days_of_week"
            )

    @property
    def ordered_days(self) -> list[Weekday]:
        return sorted(self.days_of_week, key=lambda day: day.offset)

    def with_weekday(self, day: Weekday | str) -> RecurrencePattern:
        """Return a weekly pattern that also repeats on ``day``."""
        return replace(self, days_of_week=self.days_of_week | {_coerce_weekday(day)})

    def without_weekday(self, day: Weekday | str) -> RecurrencePattern:
        """Return a weekly pattern without ``day``; the last day cannot go."""
        remaining = self.days_of_week - {_coerce_weekday(day)}
        if not remaining:
            raise ValidationError(
                "Cannot remove the last selected weekday", field="days_of_week"
            )
        return replace(self, days_of_week=remaining)


@dataclass(frozen=True)
class EndDate:
    """Series ends on a calendar date (inclusive)."""

    until: date


@dataclass(frozen=True)
class OccurrenceCount:
    """Series ends after a fixed number of pattern dates."""

    count: int

    def __post_init__(self) -> None:
        count = self.count
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise ValidationError("Occurrence count must be positive", field="count")


RangeEnd = EndDate | OccurrenceCount | None


@dataclass(frozen=True)
class RecurrenceRange:
    """When a series starts and how it ends; ``end=None`` never ends."""

    start_date: date
    end: RangeEnd = None

    def __post_init__(self) -> None:
        if isinstance(self.end, EndDate) and self.end.until < self.start_date:
            raise ValidationError("End date is before the start date", field="end")


@dataclass(frozen=True)
class Recurrence:
    """Pattern and range plus ad-hoc additions and exclusions."""

    pattern: RecurrencePattern
    range: RecurrenceRange
    additions: tuple[date, ...] = field(default=())
    exclusions: tuple[date, ...] = field(default=())

    def __post_init__(self) -> None:
        object.__setattr__(self, "additions", tuple(sorted(set(self.additions))))
        object.__setattr__(self, "exclusions", tuple(sorted(set(self.exclusions))))

    def covers(self, value: date) -> bool:
        """True when the pattern and range alone produce ``value``."""
        return bool(occurrences_in_window(self.pattern, self.range, value, value))

    def occurrence_dates(self, window_start: date, window_end: date) -> list[date]:
        """Pattern dates plus additions minus exclusions inside the window."""
        excluded = set(self.exclusions)
        dates = {
            day
            for day in occurrences_in_window(
                self.pattern, self.range, window_start, window_end
            )
            if day not in excluded
        }
        dates.update(
            day
            for day in self.additions
            if window_start <= day <= window_end and day not in excluded
        )
        return sorted(dates)

    def toggle_date(self, value: date) -> Recurrence:
        """Flip one calendar date in or out of the series."""
        if value in self.exclusions:
            return replace(
                self, exclusions=tuple(d for d in self.exclusions if d != value)
            )
        if self.covers(value):
            return replace(self, exclusions=(*self.exclusions, value))
        if value in self.additions:
            additions = tuple(d for d in self.additions if d != value)
            return replace(self, additions=additions)
        return replace(self, additions=(*self.additions, value))

    def with_pattern(self, pattern: RecurrencePattern) -> Recurrence:
        return replace(self, pattern=pattern).pruned()

    def with_range(self, range_: RecurrenceRange) -> Recurrence:
        return replace(self, range=range_).pruned()

    def without_weekday(self, day: Weekday | str) -> Recurrence:
        return self.with_pattern(self.pattern.without_weekday(day))

    def pruned(self) -> Recurrence:
        """Drop additions the pattern already produces."""
        return replace(
            self, additions=tuple(d for d in self.additions if not self.covers(d))
        )


def _week_start(value: date) -> date:
    return value - timedelta(days=(value.weekday() + 1) % 7)


def is_date_in_pattern(
    pattern: RecurrencePattern, start_date: date, value: date
) -> bool:
    """Return whether ``value`` matches ``pattern`` for a series from ``start_date``."""
    if value < start_date:
        return False
    interval = pattern.interval
    if pattern.frequency is Frequency.DAILY:
        return (value - start_date).days % interval == 0
    if pattern.frequency is Frequency.WEEKLY:
        if Weekday.of(value) not in pattern.days_of_week:
            return False
        weeks = (_week_start(value) - _week_start(start_date)).days // 7
        return weeks % interval == 0
    if pattern.frequency is Frequency.MONTHLY:
        months = (value.year - start_date.year) * 12 + value.month - start_date.month
        return value.day == start_date.day and months % interval == 0
    years = value.year - start_date.year
    return (
        value.month == start_date.month
        and value.day == start_date.day
        and years % interval == 0
    )


def _pattern_dates(
    pattern: RecurrencePattern, start: date, until: date
) -> Iterator[date]:
    """Yield every pattern date from ``start`` through ``until`` in order."""
    byweekday = [_RRULE_WEEKDAYS[day] for day in pattern.ordered_days]
    rule = rrule(
        _RRULE_FREQUENCIES[pattern.frequency],
        dtstart=datetime.combine(start, time()),
        interval=pattern.interval,
        wkst=SU,
        byweekday=byweekday or None,
        until=datetime.combine(until, time()),
    )
    for occurrence in rule:
        yield occurrence.date()


def occurrences_in_window(
    pattern: RecurrencePattern,
    range_: RecurrenceRange,
    window_start: date,
    window_end: date,
) -> list[date]:
    """Return the sorted pattern dates of a series that fall inside a window.

    Occurrence counts are always counted from the series start, so a window
    opening after the count is exhausted yields nothing.
    """
    if window_end < window_start:
        return []
    until = window_end
    remaining: int | None = None
    if isinstance(range_.end, EndDate):
        until = min(until, range_.end.until)
    elif isinstance(range_.end, OccurrenceCount):
        remaining = range_.end.count

    dates: list[date] = []
    for current in _pattern_dates(pattern, range_.start_date, until):
        if remaining is not None:
            if remaining == 0:
                break
            remaining -= 1
        if current >= window_start:
            dates.append(current)
    return dates


def align_start_date(pattern: RecurrencePattern, start: date) -> date:
    """Move a weekly series start forward to its first selected weekday."""
    if pattern.frequency is not Frequency.WEEKLY:
        return start
    current = start
    while Weekday.of(current) not in pattern.days_of_week:
        current += timedelta(days=1)
    return current


def _shift_to(master: ReservationRecord, occurrence_date: date) -> ReservationRecord:
    start = master.start
    end = master.end
    if start is not None:
        shifted_start = datetime.combine(occurrence_date, start.timetz())
        shifted_end = shifted_start + (end - start) if end is not None else None
        start, end = shifted_start, shifted_end
    return replace(
        master,
        id=(
            f"{master.id}-{occurrence_date.isoformat()}"
            if master.id is not None
            else None
        ),
        series_master_id=master.id,
        occurrence_date=occurrence_date,
        recurrence=None,
        start=start,
        end=end,
        is_ad_hoc=False,
    )


def _override_fields(overrides: dict[str, object]) -> dict[str, object]:
    return normalize_patch(
        {
            name: value
            for name, value in overrides.items()
            if name in EDITABLE_FIELDS and name != "recurrence"
        }
    )


def expand_series(
    master: ReservationRecord,
    window_start: date,
    window_end: date,
    exceptions: Iterable[OccurrenceException] = (),
) -> list[ReservationRecord]:
    """Expand a recurring master into concrete occurrences inside a window."""
    recurrence = master.recurrence
    if recurrence is None:
        return []

    by_date = {exception.occurrence_date: exception for exception in exceptions}
    for excluded in recurrence.exclusions:
        by_date[excluded] = OccurrenceException(
            series_master_id=master.id or "",
            occurrence_date=excluded,
            cancelled=True,
        )

    pattern_dates = occurrences_in_window(
        recurrence.pattern, recurrence.range, window_start, window_end
    )
    added = {
        day for day in recurrence.additions if window_start <= day <= window_end
    } - set(pattern_dates)

    occurrences: list[ReservationRecord] = []
    for day in sorted(set(pattern_dates) | added):
        exception = by_date.get(day)
        if exception is not None and exception.cancelled:
            continue
        occurrence = _shift_to(master, day)
        if day in added:
            occurrence = replace(occurrence, is_ad_hoc=True)
        if exception is not None:
            occurrence = replace(occurrence, **_override_fields(exception.overrides))
        occurrences.append(occurrence)
    return occurrences


def occurrence_overrides(
    master: ReservationRecord, occurrence: ReservationRecord
) -> dict[str, object]:
    """Collapse an occurrence back into the exception overrides it carries."""
    if occurrence.occurrence_date is None:
        raise ValidationError("Record is not an occurrence of a series")
    baseline = _shift_to(master, occurrence.occurrence_date)
    return {
        name: getattr(occurrence, name)
        for name in EDITABLE_FIELDS
        if name != "recurrence" and getattr(occurrence, name) != getattr(baseline, name)
    }


def to_graph_recurrence(
    recurrence: Recurrence, time_zone: str = "Eastern Standard Time"
) -> dict[str, object]:
    """Build the calendar-provider recurrence payload for a series."""
    pattern = recurrence.pattern
    start = recurrence.range.start_date
    payload_pattern: dict[str, object] = {
        "type": pattern.frequency.value,
        "interval": pattern.interval,
        "firstDayOfWeek": Weekday.SUNDAY.value,
    }
    if pattern.frequency is Frequency.WEEKLY:
        payload_pattern["daysOfWeek"] = [day.value for day in pattern.ordered_days]
    elif pattern.frequency is Frequency.MONTHLY:
        payload_pattern["type"] = "absoluteMonthly"
        payload_pattern["dayOfMonth"] = start.day
    elif pattern.frequency is Frequency.YEARLY:
        payload_pattern["type"] = "absoluteYearly"
        payload_pattern["dayOfMonth"] = start.day
        payload_pattern["month"] = start.month

    payload_range: dict[str, object] = {
        "type": "noEnd",
        "startDate": start.isoformat(),
        "recurrenceTimeZone": time_zone,
    }
    end = recurrence.range.end
    if isinstance(end, EndDate):
        payload_range["type"] = "endDate"
        payload_range["endDate"] = end.until.isoformat()
    elif isinstance(end, OccurrenceCount):
        payload_range["type"] = "numbered"
        payload_range["numberOfOccurrences"] = end.count
    return {"pattern": payload_pattern, "range": payload_range}


def format_recurrence_summary(recurrence: Recurrence) -> str:
    """Return a short human-readable description of a series."""
    pattern = recurrence.pattern
    interval = pattern.interval
    if pattern.frequency is Frequency.DAILY:
        summary = "Occurs every " + ("day" if interval == 1 else f"{interval} days")
    elif pattern.frequency is Frequency.WEEKLY:
        days = ", ".join(_DAY_ABBREVIATIONS[day] for day in pattern.ordered_days)
        if interval == 1:
            summary = f"Occurs every {days}"
        else:
            summary = f"Occurs every {interval} weeks on {days}"
    elif pattern.frequency is Frequency.MONTHLY:
        summary = "Occurs every " + ("month" if interval == 1 else f"{interval} months")
    else:
        summary = "Occurs every " + ("year" if interval == 1 else f"{interval} years")

    end = recurrence.range.end
    if isinstance(end, EndDate):
        until = end.until
        summary += f"\nUntil {until:%b} {until.day}, {until.year}"
    elif isinstance(end, OccurrenceCount):
        plural = "s" if end.count > 1 else ""
        summary += f"\nFor {end.count} occurrence{plural}"
    return summary


def recurrence_to_dict(recurrence: Recurrence) -> dict[str, object]:
    """Serialize a recurrence for storage."""
    end = recurrence.range.end
    range_payload: dict[str, object] = {
        "start_date": recurrence.range.start_date.isoformat()
    }
    if isinstance(end, EndDate):
        range_payload["end_date"] = end.until.isoformat()
    elif isinstance(end, OccurrenceCount):
        range_payload["occurrence_count"] = end.count
    return {
        "pattern": {
            "frequency": recurrence.pattern.frequency.value,
            "interval": recurrence.pattern.interval,
            "days_of_week": [day.value for day in recurrence.pattern.ordered_days],
        },
        "range": range_payload,
        "additions": [day.isoformat() for day in recurrence.additions],
        "exclusions": [day.isoformat() for day in recurrence.exclusions],
    }


def recurrence_from_dict(payload: dict[str, object]) -> Recurrence:
    """Parse a stored recurrence; invalid payloads raise ``ValidationError``."""
    pattern = payload.get("pattern")
    range_payload = payload.get("range")
    if not isinstance(pattern, dict) or not isinstance(range_payload, dict):
        raise ValidationError(
            "Recurrence needs a pattern and a range", field="recurrence"
        )
    if not range_payload.get("start_date"):
        raise ValidationError("Recurrence needs a start date", field="recurrence")
    try:
        return _parse_recurrence(pattern, range_payload, payload)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            f"Malformed recurrence: {exc}", field="recurrence"
        ) from exc


def _parse_recurrence(
    pattern: dict[str, object],
    range_payload: dict[str, object],
    payload: dict[str, object],
) -> Recurrence:
    end: RangeEnd = None
    if range_payload.get("end_date"):
        end = EndDate(date.fromisoformat(str(range_payload["end_date"])))
    elif range_payload.get("occurrence_count") is not None:
        end = OccurrenceCount(int(range_payload["occurrence_count"]))
    return Recurrence(
        pattern=RecurrencePattern(
            frequency=pattern.get("frequency"),
            interval=int(pattern.get("interval", 1)),
            days_of_week=frozenset(pattern.get("days_of_week") or ()),
        ),
        range=RecurrenceRange(
            start_date=date.fromisoformat(str(range_payload["start_date"])),
            end=end,
        ),
        additions=tuple(
            date.fromisoformat(str(d)) for d in payload.get("additions") or ()
        ),
        exclusions=tuple(
            date.fromisoformat(str(d)) for d in payload.get("exclusions") or ()
        ),
    )
