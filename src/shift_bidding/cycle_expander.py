"""
Cycle Expander for the Shift Bidding core

Projects a fixed-length day template onto the absolute calendar. All
day-of-cycle arithmetic lives here so metrics, calendar exports and holiday
alignment share a single mapping. Dates are civil calendar dates and are
never shifted by time zone.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional, Sequence, Union

from .data_manager import ValidationError, parse_hhmm


DEFAULT_CYCLE_LENGTH = 56


class _Off:
    """Sentinel for a day with no shift"""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "OFF"

    def __reduce__(self):
        return (_Off, ())


OFF = _Off()


@dataclass(frozen=True)
class ShiftCodeInfo:
    """A shift code as the metrics engine sees it"""
    code: str
    begin_time: str  # "HH:MM" local
    end_time: str
    category: Optional[str] = None
    hours_length: float = 0.0

    @property
    def begin_minutes(self) -> int:
        return parse_hhmm(self.begin_time, f"{self.code} begin_time")

    @property
    def end_minutes(self) -> int:
        return parse_hhmm(self.end_time, f"{self.code} end_time")

    @property
    def is_overnight(self) -> bool:
        """Ends on the next civil date; a begin equal to the end is a full 24 hours"""
        return self.end_minutes <= self.begin_minutes


DayEntry = Union[ShiftCodeInfo, _Off]


@dataclass(frozen=True)
class ShiftTemplate:
    """Ordered day entries, one per template day"""
    days: tuple
    line_number: Optional[str] = None
    group_name: Optional[str] = None

    def __len__(self):
        return len(self.days)

    def entry(self, template_day: int) -> DayEntry:
        """Entry for a 1-based template day"""
        return self.days[template_day - 1]

    @classmethod
    def from_entries(cls, entries: Sequence[Optional[DayEntry]], **kwargs) -> 'ShiftTemplate':
        return cls(days=tuple(OFF if e is None else e for e in entries), **kwargs)


@dataclass(frozen=True)
class ExpandedDay:
    absolute_date: date
    template_day_index: int  # 1-based
    entry: DayEntry

    @property
    def is_working(self) -> bool:
        return self.entry is not OFF


def _check_cycle_length(cycle_length: int):
    if not isinstance(cycle_length, int) or cycle_length < 1:
        raise ValidationError(f"cycle_length must be a positive integer, got {cycle_length!r}")


def expand(template: ShiftTemplate, start_date: date, num_cycles: int,
           cycle_length: int = DEFAULT_CYCLE_LENGTH) -> List[ExpandedDay]:
    """
    Replicate a template across num_cycles cycles starting on start_date.

    Offset d maps to template day (d mod cycle_length) + 1 and date
    start_date + d.

    Raises:
        ValidationError: num_cycles < 1 or template length != cycle_length
    """
    _check_cycle_length(cycle_length)
    if not isinstance(num_cycles, int) or num_cycles < 1:
        raise ValidationError(f"num_cycles must be at least 1, got {num_cycles!r}")
    if len(template) != cycle_length:
        raise ValidationError(f"Template has {len(template)} days, expected {cycle_length}")
    if not isinstance(start_date, date):
        raise ValidationError(f"start_date must be a date, got {start_date!r}")

    return [
        ExpandedDay(
            absolute_date=start_date + timedelta(days=offset),
            template_day_index=(offset % cycle_length) + 1,
            entry=template.days[offset % cycle_length],
        )
        for offset in range(cycle_length * num_cycles)
    ]


def template_day_for(target: date, start_date: date, cycle_length: int = DEFAULT_CYCLE_LENGTH) -> int:
    """1-based template day that falls on target; dates before start_date wrap backwards"""
    _check_cycle_length(cycle_length)
    # Python's modulo is non-negative for a positive divisor
    return ((target - start_date).days % cycle_length) + 1


def cycle_number(target: date, start_date: date, cycle_length: int = DEFAULT_CYCLE_LENGTH) -> int:
    """1-based cycle containing target; 0 or less before start_date"""
    _check_cycle_length(cycle_length)
    return ((target - start_date).days // cycle_length) + 1


def date_for_template_day(start_date: date, template_day: int, cycle: int = 1,
                          cycle_length: int = DEFAULT_CYCLE_LENGTH) -> date:
    _check_cycle_length(cycle_length)
    if not 1 <= template_day <= cycle_length:
        raise ValidationError(f"Template day must be between 1 and {cycle_length}, got {template_day}")
    if cycle < 1:
        raise ValidationError(f"Cycle must be at least 1, got {cycle}")
    return start_date + timedelta(days=(cycle - 1) * cycle_length + template_day - 1)


def period_end(start_date: date, num_cycles: int, cycle_length: int = DEFAULT_CYCLE_LENGTH) -> date:
    """Last date (inclusive) covered by num_cycles cycles"""
    _check_cycle_length(cycle_length)
    if num_cycles < 1:
        raise ValidationError(f"num_cycles must be at least 1, got {num_cycles!r}")
    return start_date + timedelta(days=cycle_length * num_cycles - 1)
