"""
Metrics Calculator for the Shift Bidding core

Derives pattern statistics for a bid line from its expanded schedule:
weekend exposure, consecutive work blocks, off stretches, holiday overlap
and a weighted match score against a bidder's selection filters.

The calculator is a pure function of its inputs. Holidays are fetched by
the caller beforehand, and nothing here touches the database.
"""

import logging
import math
from dataclasses import dataclass, field, asdict
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .config import CategoryBoundary
from .cycle_expander import (
    DEFAULT_CYCLE_LENGTH,
    OFF,
    ExpandedDay,
    ShiftCodeInfo,
    ShiftTemplate,
    expand,
    template_day_for,
)
from .data_manager import ValidationError, parse_hhmm


logger = logging.getLogger(__name__)

CATEGORY_INTENTS = ("any", "mix")
OTHER_CATEGORY = "Other"

# Block counts at which the block sub-scores bottom out
MAX_EXPECTED_5DAY_BLOCKS = 6
MAX_EXPECTED_4DAY_BLOCKS = 8

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


@dataclass(frozen=True)
class BidPeriodInfo:
    """Calendar anchor of a bid period"""
    start_date: date
    num_cycles: int
    cycle_length: int = DEFAULT_CYCLE_LENGTH

    @property
    def total_days(self) -> int:
        return self.cycle_length * self.num_cycles

    @property
    def end_date(self) -> date:
        return self.start_date + timedelta(days=self.total_days - 1)

    def contains(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


@dataclass(frozen=True)
class SelectionFilters:
    """A bidder's preferences; they shape the score and never the counts"""
    selected_groups: Tuple[str, ...] = ()
    day_off_dates: Tuple[date, ...] = ()
    shift_codes: Tuple[str, ...] = ()
    shift_categories: Tuple[str, ...] = ()
    shift_lengths: Tuple[float, ...] = ()
    category_intent: str = "any"

    def __post_init__(self):
        if self.category_intent not in CATEGORY_INTENTS:
            raise ValidationError(
                f"category_intent must be one of {', '.join(CATEGORY_INTENTS)}, got {self.category_intent!r}"
            )


@dataclass(frozen=True)
class MetricWeights:
    group: float = 1.0
    days: float = 3.0
    shift: float = 2.0
    blocks5day: float = 1.0
    blocks4day: float = 1.0
    weekend: float = 2.0
    saturday: float = 1.0
    sunday: float = 1.0

    @classmethod
    def from_dict(cls, data: Dict[str, float]) -> 'MetricWeights':
        """Build from settings keys such as "weekend_weight" """
        values = {}
        for key, value in data.items():
            name = key[:-len("_weight")] if key.endswith("_weight") else key
            if name not in cls.__dataclass_fields__:
                raise ValidationError(f"Unknown metric weight '{key}'")
            if value < 0:
                raise ValidationError(f"Metric weight '{key}' cannot be negative")
            values[name] = float(value)
        return cls(**values)


@dataclass(frozen=True)
class HolidayExposure:
    holidays_in_period: int
    holidays_working: int
    holidays_off: int
    estimated: bool = False


@dataclass
class MetricsResult:
    """Everything derived for one bid line; recomputed as a whole, never edited"""
    # Weekends
    weekends_on: int = 0
    full_weekends_on: int = 0
    solitary_saturdays: int = 0
    solitary_sundays: int = 0
    total_weekends: int = 0
    saturdays_on: int = 0
    sundays_on: int = 0
    # Weekdays worked / present in the period
    mondays_on: int = 0
    tuesdays_on: int = 0
    wednesdays_on: int = 0
    thursdays_on: int = 0
    fridays_on: int = 0
    mondays_in_period: int = 0
    tuesdays_in_period: int = 0
    wednesdays_in_period: int = 0
    thursdays_in_period: int = 0
    fridays_in_period: int = 0
    saturdays_in_period: int = 0
    sundays_in_period: int = 0
    total_days_worked: int = 0
    total_days_in_period: int = 0
    total_hours: float = 0.0
    # Work blocks
    single_days: int = 0
    blocks_2day: int = 0
    blocks_3day: int = 0
    blocks_4day: int = 0
    blocks_5day: int = 0
    blocks_6day: int = 0
    blocks_7day_plus: int = 0
    longest_stretch: int = 0
    friday_weekend_blocks: int = 0
    weekday_blocks: int = 0
    # Off stretches
    off_blocks_2day: int = 0
    off_blocks_3day: int = 0
    off_blocks_4day: int = 0
    off_blocks_5day: int = 0
    off_blocks_6day: int = 0
    off_blocks_7day_plus: int = 0
    longest_off_stretch: int = 0
    shortest_off_stretch: int = 0
    # Holidays
    holidays_working: int = 0
    holidays_off: int = 0
    estimated: bool = False
    # Shifts
    shift_counts: Dict[str, int] = field(default_factory=dict)
    category_counts: Dict[str, int] = field(default_factory=dict)
    shift_pattern: str = "No shifts"
    # Score
    score: int = 0
    explanation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MetricsResult':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class ShiftCategorizer:
    """
    Maps shift codes to categories.

    A code's own category wins. Codes without one are bucketed by start
    time into the configured half-open ranges; anything unmatched is
    "Other". Ranges may wrap past midnight but must not overlap.
    """

    def __init__(self, boundaries: Sequence[CategoryBoundary] = ()):
        self._ranges: List[Tuple[str, int, int]] = []
        covered = [None] * (24 * 60)
        for boundary in boundaries:
            start = parse_hhmm(boundary.start, f"{boundary.name} start")
            end = parse_hhmm(boundary.end, f"{boundary.name} end")
            if start == end:
                raise ValidationError(f"Category '{boundary.name}' has an empty range")
            for minute in self._minutes(start, end):
                if covered[minute] is not None:
                    raise ValidationError(
                        f"Category '{boundary.name}' overlaps '{covered[minute]}' at "
                        f"{minute // 60:02d}:{minute % 60:02d}"
                    )
                covered[minute] = boundary.name
            self._ranges.append((boundary.name, start, end))
        self._covered = covered

    @staticmethod
    def _minutes(start: int, end: int) -> Iterable[int]:
        if start < end:
            return range(start, end)
        return list(range(start, 24 * 60)) + list(range(0, end))

    def category_for(self, shift_code: ShiftCodeInfo) -> str:
        if shift_code.category:
            return shift_code.category
        try:
            minute = parse_hhmm(shift_code.begin_time)
        except ValidationError:
            return OTHER_CATEGORY
        return self._covered[minute] or OTHER_CATEGORY


def _runs(flags: Sequence[bool], value: bool) -> List[Tuple[int, int]]:
    """(start index, length) of every maximal run of value"""
    runs = []
    start = None
    for index, flag in enumerate(flags):
        if flag == value:
            if start is None:
                start = index
        elif start is not None:
            runs.append((start, index - start))
            start = None
    if start is not None:
        runs.append((start, len(flags) - start))
    return runs


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _short_date(day: date) -> str:
    return f"{day.strftime('%b')} {day.day}"


def _list_with_overflow(items: List[str], limit: int = 8) -> str:
    if len(items) <= limit:
        return ", ".join(items)
    return f"{', '.join(items[:limit])} + {len(items) - limit} more"


def _holiday_dates(holidays: Iterable[Any]) -> List[date]:
    """Accept Holiday objects or bare dates"""
    dates = set()
    for holiday in holidays:
        day = getattr(holiday, "date", holiday)
        if not isinstance(day, date):
            raise ValidationError(f"Holiday entry {holiday!r} has no date")
        dates.add(day)
    return sorted(dates)


def estimate_holiday_exposure(holidays: Iterable[Any], start_date: date, num_cycles: int,
                              cycle_length: int = DEFAULT_CYCLE_LENGTH) -> HolidayExposure:
    """
    Exposure for a line without detailed shift data.

    Every holiday in the period is counted as potentially worked, so the
    figure is an upper bound. The result is flagged estimated and must not
    be mixed with exact results.
    """
    period = BidPeriodInfo(start_date, num_cycles, cycle_length)
    in_period = [d for d in _holiday_dates(holidays) if period.contains(d)]
    return HolidayExposure(
        holidays_in_period=len(in_period),
        holidays_working=len(in_period),
        holidays_off=0,
        estimated=True,
    )


class MetricsCalculator:
    """Computes MetricsResult values for schedule templates"""

    def __init__(self, categorizer: Optional[ShiftCategorizer] = None):
        self.categorizer = categorizer or ShiftCategorizer()

    def compute(self, schedule: Optional[ShiftTemplate], bid_period: BidPeriodInfo,
                holidays: Iterable[Any] = (), selection_filters: Optional[SelectionFilters] = None,
                weights: Optional[MetricWeights] = None) -> MetricsResult:
        """
        Compute metrics and score for one schedule over a bid period.

        Args:
            schedule: the line's template; None means no schedule is linked
            bid_period: start date, cycle count and cycle length
            holidays: Holiday objects or dates; those outside the period are ignored
            selection_filters: bidder preferences used only for the score
            weights: relative weight of each score criterion

        Raises:
            ValidationError: no template, or template/period do not fit together
        """
        if schedule is None:
            raise ValidationError("Bid line has no linked schedule template")

        filters = selection_filters or SelectionFilters()
        weights = weights or MetricWeights()
        days = expand(schedule, bid_period.start_date, bid_period.num_cycles, bid_period.cycle_length)

        if not any(day.is_working for day in days):
            return MetricsResult(shift_pattern="No shifts", score=0, explanation="No shifts")

        result = MetricsResult()
        self._count_days(days, result)
        self._count_weekends(days, result)
        self._count_blocks(days, result)
        self._count_off_stretches(days, result)
        self._count_holidays(days, _holiday_dates(holidays), result)
        self._count_shifts(days, result)
        result.score, result.explanation = self._score(schedule, bid_period, days, result, filters, weights)
        logger.debug(f"Metrics for line {schedule.line_number}: {result.shift_pattern}, "
                     f"weekends {result.weekends_on}/{result.total_weekends}, score {result.score}")
        return result

    def _count_days(self, days: List[ExpandedDay], result: MetricsResult):
        result.total_days_in_period = len(days)
        for day in days:
            name = WEEKDAY_NAMES[day.absolute_date.weekday()]
            setattr(result, f"{name}s_in_period", getattr(result, f"{name}s_in_period") + 1)
            if day.is_working:
                result.total_days_worked += 1
                setattr(result, f"{name}s_on", getattr(result, f"{name}s_on") + 1)

    def _count_weekends(self, days: List[ExpandedDay], result: MetricsResult):
        # Weekends are keyed by their Saturday
        weekends: Dict[date, List[bool]] = {}
        for day in days:
            weekday = day.absolute_date.weekday()
            if weekday == 5:
                weekends.setdefault(day.absolute_date, [False, False])[0] = day.is_working
            elif weekday == 6:
                saturday = day.absolute_date - timedelta(days=1)
                weekends.setdefault(saturday, [False, False])[1] = day.is_working

        result.total_weekends = len(weekends)
        for saturday_on, sunday_on in weekends.values():
            if saturday_on or sunday_on:
                result.weekends_on += 1
            if saturday_on and sunday_on:
                result.full_weekends_on += 1
            elif saturday_on:
                result.solitary_saturdays += 1
            elif sunday_on:
                result.solitary_sundays += 1

    def _count_blocks(self, days: List[ExpandedDay], result: MetricsResult):
        flags = [day.is_working for day in days]
        for start, length in _runs(flags, True):
            if length == 1:
                result.single_days += 1
            elif length >= 7:
                result.blocks_7day_plus += 1
            else:
                setattr(result, f"blocks_{length}day", getattr(result, f"blocks_{length}day") + 1)
            result.longest_stretch = max(result.longest_stretch, length)

            weekdays = [days[i].absolute_date.weekday() for i in range(start, start + length)]
            if any(weekdays[i:i + 3] == [4, 5, 6] for i in range(len(weekdays) - 2)):
                result.friday_weekend_blocks += 1
            if weekdays == [0, 1, 2, 3, 4]:
                result.weekday_blocks += 1

    def _count_off_stretches(self, days: List[ExpandedDay], result: MetricsResult):
        flags = [day.is_working for day in days]
        lengths = [length for _, length in _runs(flags, False)]
        for length in lengths:
            if length >= 7:
                result.off_blocks_7day_plus += 1
            elif length >= 2:
                setattr(result, f"off_blocks_{length}day", getattr(result, f"off_blocks_{length}day") + 1)
        if lengths:
            result.longest_off_stretch = max(lengths)
            result.shortest_off_stretch = min(lengths)

    def _count_holidays(self, days: List[ExpandedDay], holiday_dates: List[date], result: MetricsResult):
        by_date = {day.absolute_date: day for day in days}
        for holiday in holiday_dates:
            day = by_date.get(holiday)
            if day is None:
                continue
            if day.is_working:
                result.holidays_working += 1
            else:
                result.holidays_off += 1

    def _count_shifts(self, days: List[ExpandedDay], result: MetricsResult):
        order = []
        hours = 0.0
        for day in days:
            if not day.is_working:
                continue
            code = day.entry.code
            if code not in result.shift_counts:
                order.append(code)
                result.shift_counts[code] = 0
            result.shift_counts[code] += 1
            category = self.categorizer.category_for(day.entry)
            result.category_counts[category] = result.category_counts.get(category, 0) + 1
            hours += day.entry.hours_length
        result.total_hours = round(hours, 2)

        if len(order) == 1:
            result.shift_pattern = order[0]
        elif len(order) <= 3:
            result.shift_pattern = "/".join(order)
        else:
            result.shift_pattern = "Mixed"

    def _score(self, schedule: ShiftTemplate, bid_period: BidPeriodInfo, days: List[ExpandedDay],
               result: MetricsResult, filters: SelectionFilters,
               weights: MetricWeights) -> Tuple[int, str]:
        total = 0.0
        total_weight = 0.0
        explanation: List[str] = []

        def add(sub_score: float, weight: float):
            nonlocal total, total_weight
            if weight > 0:
                total += sub_score * weight
                total_weight += weight

        # Group
        if filters.selected_groups:
            if schedule.group_name not in filters.selected_groups:
                return 0, "Group mismatch"
            add(100.0, weights.group)
            explanation.append("Group matches")

        # Requested days off, looked up on the template so dates outside the period still map
        if filters.day_off_dates:
            matched, missing = [], []
            for requested in filters.day_off_dates:
                template_day = template_day_for(requested, bid_period.start_date, bid_period.cycle_length)
                if schedule.entry(template_day) is OFF:
                    matched.append(_short_date(requested))
                else:
                    missing.append(_short_date(requested))
            match_rate = len(matched) / len(filters.day_off_dates)
            add(100 * match_rate, weights.days)
            explanation.append(
                f"{_round_half_up(match_rate * 100)}% of requested days off match "
                f"({len(matched)}/{len(filters.day_off_dates)})"
            )
            if matched:
                explanation.append(f"Days off: {_list_with_overflow(matched)}")
            if missing:
                explanation.append(f"Missing: {_list_with_overflow(missing)}")

        total_shifts = result.total_days_worked

        # Shift codes
        if filters.shift_codes:
            selected = [code for code in filters.shift_codes if code in result.shift_counts]
            match_count = sum(result.shift_counts[code] for code in selected)
            match_rate = match_count / total_shifts
            add(100 * match_rate, weights.shift)
            percent = _round_half_up(match_rate * 100)
            if len(selected) == 1:
                text = f"{match_count} of {total_shifts} total shifts are {selected[0]} ({percent}%)"
            elif selected:
                details = ", ".join(f"{code}: {result.shift_counts[code]}" for code in selected)
                text = f"{match_count} of {total_shifts} total shifts are {details} ({percent}%)"
            else:
                text = f"{percent}% of shifts match selected codes"
            others = [(c, n) for c, n in result.shift_counts.items() if c not in filters.shift_codes]
            if others:
                other_count = total_shifts - match_count
                if len(others) == 1:
                    text += f"; The other {other_count} shifts are: {others[0][0]}"
                else:
                    text += f"; The other {other_count} shifts are: " + ", ".join(f"{c}: {n}" for c, n in others)
            explanation.append(text)

        # Shift categories
        if filters.shift_categories:
            found = [c for c in result.category_counts if c in filters.shift_categories]
            wants_mix = filters.category_intent == "mix" and len(filters.shift_categories) > 1
            if wants_mix and len(found) < 2:
                return 0, "Single shift type (looking for variety)"
            match_rate = sum(result.category_counts[c] for c in found) / total_shifts
            add(100 * match_rate, weights.shift)
            if wants_mix:
                explanation.append(f"{len(found)} different shift types ({', '.join(found)})")
            else:
                explanation.append(f"{_round_half_up(match_rate * 100)}% of shifts match selected categories")

        # Shift lengths
        if filters.shift_lengths:
            wanted = {float(length) for length in filters.shift_lengths}
            match_count = sum(1 for day in days if day.is_working and float(day.entry.hours_length) in wanted)
            match_rate = match_count / total_shifts
            add(100 * match_rate, weights.shift)
            explanation.append(f"{_round_half_up(match_rate * 100)}% of shifts match selected lengths")

        # Work blocks, fewer is better
        if weights.blocks5day > 0:
            add(max(0.0, 100 - result.blocks_5day / MAX_EXPECTED_5DAY_BLOCKS * 100), weights.blocks5day)
            if result.blocks_5day:
                explanation.append(f"{result.blocks_5day} five-day work blocks")
        if weights.blocks4day > 0:
            add(max(0.0, 100 - result.blocks_4day / MAX_EXPECTED_4DAY_BLOCKS * 100), weights.blocks4day)
            if result.blocks_4day:
                explanation.append(f"{result.blocks_4day} four-day work blocks")

        # Weekends, fewer worked is better
        if result.total_weekends:
            full = result.full_weekends_on
            saturdays_only = result.solitary_saturdays
            sundays_only = result.solitary_sundays
            if weights.weekend > 0:
                add(100 * (1 - full / result.total_weekends), weights.weekend)
                if full:
                    explanation.append(f"{full} of {result.total_weekends} full weekends working")
            if weights.saturday > 0:
                add(100 * (1 - (full + saturdays_only) / result.total_weekends), weights.saturday)
                if saturdays_only:
                    explanation.append(f"{saturdays_only} solitary Saturdays working")
            if weights.sunday > 0:
                add(100 * (1 - (full + sundays_only) / result.total_weekends), weights.sunday)
                if sundays_only:
                    explanation.append(f"{sundays_only} solitary Sundays working")

        final = total / total_weight if total_weight > 0 else 0.0

        days_off = result.total_days_in_period - result.total_days_worked
        off_ratio = days_off / result.total_days_in_period
        final += off_ratio * 10
        if off_ratio > 0.4:
            explanation.append(f"{days_off} total days off")

        return max(0, min(100, _round_half_up(final))), "; ".join(explanation)
