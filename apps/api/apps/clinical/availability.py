"""
Free slot calculation for a practitioner's day.

Pure logic: takes a working-hours template and the already reserved
intervals, yields candidate slots. No database access here; callers pass
the blocking appointments in.
"""
from dataclasses import dataclass, field
from datetime import date as date_cls, datetime, time, timedelta
from typing import Iterable, Iterator, List, NamedTuple, Sequence

from django.conf import settings

from .exceptions import InvalidRequest


class TimeInterval(NamedTuple):
    """Half-open wall-clock interval [start, end)."""
    start: time
    end: time

    def overlaps(self, other: 'TimeInterval') -> bool:
        return self.start < other.end and other.start < self.end

    def to_dict(self):
        return {
            'start_time': self.start.strftime('%H:%M'),
            'end_time': self.end.strftime('%H:%M'),
        }


def parse_time(value) -> time:
    """Accept a time or an 'HH:MM' / 'HH:MM:SS' string."""
    if isinstance(value, time):
        return value
    for fmt in ('%H:%M', '%H:%M:%S'):
        try:
            return datetime.strptime(str(value), fmt).time()
        except ValueError:
            continue
    raise InvalidRequest(f"Invalid time value: {value!r}", field='time')


@dataclass(frozen=True)
class WorkingHours:
    start: time
    end: time
    breaks: Sequence[TimeInterval] = field(default_factory=tuple)

    def __post_init__(self):
        if self.end <= self.start:
            raise InvalidRequest('Working hours end must be after start')
        for window in self.breaks:
            if window.end <= window.start:
                raise InvalidRequest('Break end must be after start')

    @classmethod
    def from_settings(cls) -> 'WorkingHours':
        """Template from settings.CLINICAL_SCHEDULING."""
        config = settings.CLINICAL_SCHEDULING
        return cls(
            start=parse_time(config['WORKING_HOURS_START']),
            end=parse_time(config['WORKING_HOURS_END']),
            breaks=tuple(
                TimeInterval(parse_time(start), parse_time(end))
                for start, end in config.get('BREAKS', [])
            ),
        )


# A slot can never be longer than the day it sits in
MAX_SLOT_MINUTES = 24 * 60


def _seconds(value: time) -> int:
    return value.hour * 3600 + value.minute * 60 + value.second


def _clock(seconds: int) -> time:
    return time(seconds // 3600, seconds % 3600 // 60, seconds % 60)


def default_granularity() -> int:
    return int(settings.CLINICAL_SCHEDULING['SLOT_DURATION_MINUTES'])


class SlotCalendar:
    """
    Bookable slots for one practitioner on one date.

    Iterating recomputes from the inputs every time, so the same calendar can
    be walked more than once and never serves a stale cached list. Slots that
    would run past the end of the working window are dropped, as are slots
    touching a break or a booked interval.
    """

    def __init__(
        self,
        practitioner_id,
        date: date_cls,
        working_hours: WorkingHours,
        granularity_minutes: int,
        booked_intervals: Iterable[TimeInterval] = (),
    ):
        if not isinstance(granularity_minutes, int) or isinstance(granularity_minutes, bool) \
                or not 0 < granularity_minutes <= MAX_SLOT_MINUTES:
            raise InvalidRequest(
                f"Slot duration must be between 1 and {MAX_SLOT_MINUTES} minutes",
                field='slot_duration',
            )
        self.practitioner_id = practitioner_id
        self.date = date
        self.working_hours = working_hours
        self.granularity = timedelta(minutes=granularity_minutes)
        self.booked_intervals = tuple(booked_intervals)

    def _candidates(self) -> Iterator[TimeInterval]:
        # Wall-clock arithmetic in seconds; the calendar date never enters it
        step = int(self.granularity.total_seconds())
        cursor = _seconds(self.working_hours.start)
        window_end = _seconds(self.working_hours.end)
        while cursor + step <= window_end:
            yield TimeInterval(_clock(cursor), _clock(cursor + step))
            cursor += step

    def __iter__(self) -> Iterator[TimeInterval]:
        blocked = tuple(self.working_hours.breaks) + self.booked_intervals
        for candidate in self._candidates():
            if not any(candidate.overlaps(interval) for interval in blocked):
                yield candidate

    def __contains__(self, interval) -> bool:
        return any(slot == interval for slot in self)

    def to_list(self) -> List[TimeInterval]:
        return list(self)


def available_slots(practitioner_id, date, working_hours, granularity_minutes, booked_intervals):
    """Lazy, restartable sequence of free intervals for (practitioner, date)."""
    return SlotCalendar(practitioner_id, date, working_hours, granularity_minutes, booked_intervals)
