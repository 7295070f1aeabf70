"""
Holiday Resolver for the Shift Bidding core

Supplies the holidays that overlap a date range. The calculated resolver
derives Canadian statutory holidays and common observances from calendar
rules; results can be narrowed with a HolidayFilter and cached per range.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from dateutil.easter import easter

from .data_manager import ExternalServiceError, ValidationError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Holiday:
    date: date
    name: str
    nationwide: bool = True
    provinces: Tuple[str, ...] = ()
    types: Tuple[str, ...] = ("Public",)

    def to_dict(self):
        return {
            "date": self.date.isoformat(),
            "name": self.name,
            "nationwide": self.nationwide,
            "provinces": list(self.provinces),
            "types": list(self.types),
        }


@dataclass(frozen=True)
class HolidayFilter:
    """Narrows a holiday list; empty criteria are ignored"""
    only_nationwide: bool = False
    include_provinces: Tuple[str, ...] = ()
    exclude_provinces: Tuple[str, ...] = ()
    include_types: Tuple[str, ...] = ()
    exclude_types: Tuple[str, ...] = ()
    include_holidays: Tuple[str, ...] = ()
    exclude_holidays: Tuple[str, ...] = ()

    def accepts(self, holiday: Holiday) -> bool:
        if self.only_nationwide and not holiday.nationwide:
            return False
        if self.exclude_provinces and any(p in self.exclude_provinces for p in holiday.provinces):
            return False
        if self.include_provinces and not holiday.nationwide and \
                not any(p in self.include_provinces for p in holiday.provinces):
            return False
        if self.exclude_types and any(t in self.exclude_types for t in holiday.types):
            return False
        if self.include_types and not any(t in self.include_types for t in holiday.types):
            return False
        if self.exclude_holidays and holiday.name in self.exclude_holidays:
            return False
        if self.include_holidays and holiday.name not in self.include_holidays:
            return False
        return True

    def apply(self, holidays: Iterable[Holiday]) -> List[Holiday]:
        return [h for h in holidays if self.accepts(h)]


HOLIDAY_FILTERS: Dict[str, HolidayFilter] = {
    "COMMON_ONLY": HolidayFilter(include_holidays=(
        "New Year's Day", "Good Friday", "Easter Monday", "Victoria Day",
        "Canada Day", "Civic Holiday", "Labour Day", "Thanksgiving",
        "Christmas Day", "Boxing Day", "Christmas Eve", "New Year's Eve",
    )),
    "NO_OBSCURE": HolidayFilter(exclude_holidays=(
        "Islander Day", "Heritage Day", "Louis Riel Day", "Discovery Day",
        "Orangemen's Day", "St. George's Day", "Memorial Day", "Saint Patrick's Day",
        "St-Jean-Baptiste Day", "Armistice Day",
    )),
    # Federal statutory holidays, what most workplaces observe
    "WORKPLACE_STANDARD": HolidayFilter(
        only_nationwide=True,
        include_types=("Public",),
        exclude_holidays=("Halloween", "Valentine's Day", "St. Patrick's Day", "Groundhog Day"),
    ),
    "ESSENTIAL_ONLY": HolidayFilter(include_holidays=(
        "New Year's Day", "Good Friday", "Victoria Day", "Canada Day",
        "Labour Day", "Thanksgiving", "Christmas Day", "Boxing Day",
    )),
}


def get_holiday_filter(name: Optional[str]) -> Optional[HolidayFilter]:
    """Look up a preset by name; None means no filtering"""
    if name is None:
        return None
    try:
        return HOLIDAY_FILTERS[name]
    except KeyError:
        raise ValidationError(f"Unknown holiday filter '{name}'")


def nth_weekday(year: int, month: int, weekday: int, occurrence: int) -> date:
    """Date of the nth given weekday (Monday=0) in a month"""
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + (occurrence - 1) * 7)


def victoria_day(year: int) -> date:
    """Last Monday before May 25"""
    may_24 = date(year, 5, 24)
    return may_24 - timedelta(days=may_24.weekday())


class HolidayResolver:
    """Base class: return holidays whose date falls within [start, end]"""

    def get_holidays(self, start: date, end: date) -> List[Holiday]:
        raise NotImplementedError


class StaticHolidayResolver(HolidayResolver):
    """Serves a fixed list of holidays, e.g. ones maintained by an administrator"""

    def __init__(self, holidays: Iterable[Holiday], holiday_filter: Optional[HolidayFilter] = None):
        self.holidays = sorted(holidays, key=lambda h: h.date)
        self.holiday_filter = holiday_filter

    def get_holidays(self, start: date, end: date) -> List[Holiday]:
        found = [h for h in self.holidays if start <= h.date <= end]
        if self.holiday_filter:
            found = self.holiday_filter.apply(found)
        return found


class CalculatedHolidayResolver(HolidayResolver):
    """Canadian statutory holidays and common observances computed from calendar rules"""

    def __init__(self, holiday_filter: Optional[HolidayFilter] = None):
        self.holiday_filter = holiday_filter

    def holidays_for_year(self, year: int) -> List[Holiday]:
        easter_sunday = easter(year)
        holidays = [
            Holiday(date(year, 1, 1), "New Year's Day"),
            Holiday(easter_sunday - timedelta(days=2), "Good Friday"),
            Holiday(easter_sunday + timedelta(days=1), "Easter Monday", nationwide=False),
            Holiday(victoria_day(year), "Victoria Day"),
            Holiday(date(year, 7, 1), "Canada Day"),
            Holiday(nth_weekday(year, 9, 0, 1), "Labour Day"),
            Holiday(nth_weekday(year, 10, 0, 2), "Thanksgiving"),
            Holiday(date(year, 11, 11), "Remembrance Day"),
            Holiday(date(year, 12, 25), "Christmas Day"),
            Holiday(date(year, 12, 26), "Boxing Day"),
            # Provincial
            Holiday(nth_weekday(year, 2, 0, 3), "Family Day", nationwide=False,
                    provinces=("CA-AB", "CA-BC", "CA-ON")),
            Holiday(nth_weekday(year, 8, 0, 1), "Civic Holiday", nationwide=False,
                    provinces=("CA-BC", "CA-NB", "CA-NS", "CA-NT", "CA-NU", "CA-ON", "CA-PE", "CA-SK")),
            # Observances organizations often recognize
            Holiday(date(year, 12, 24), "Christmas Eve", nationwide=False, types=("Optional",)),
            Holiday(date(year, 12, 31), "New Year's Eve", nationwide=False, types=("Optional",)),
            Holiday(date(year, 10, 31), "Halloween", nationwide=False, types=("Observance",)),
            Holiday(date(year, 2, 2), "Groundhog Day", nationwide=False, types=("Observance",)),
            Holiday(date(year, 2, 14), "Valentine's Day", nationwide=False, types=("Observance",)),
            Holiday(date(year, 3, 17), "St. Patrick's Day", nationwide=False, types=("Observance",)),
        ]
        holidays.sort(key=lambda h: h.date)
        return holidays

    def get_holidays(self, start: date, end: date) -> List[Holiday]:
        if end < start:
            raise ValidationError(f"Holiday range end {end} is before start {start}")
        found = []
        for year in range(start.year, end.year + 1):
            found.extend(h for h in self.holidays_for_year(year) if start <= h.date <= end)
        if self.holiday_filter:
            found = self.holiday_filter.apply(found)
        return found


class CachedHolidayResolver(HolidayResolver):
    """
    Caches another resolver's answers per date range.

    Call invalidate() whenever the active bid period's start date or cycle
    count changes. Failures of the wrapped resolver surface as
    ExternalServiceError and are never cached.
    """

    def __init__(self, resolver: HolidayResolver):
        self.resolver = resolver
        self._cache: Dict[Tuple[date, date], List[Holiday]] = {}

    def get_holidays(self, start: date, end: date) -> List[Holiday]:
        key = (start, end)
        if key in self._cache:
            return list(self._cache[key])

        try:
            holidays = self.resolver.get_holidays(start, end)
        except (ExternalServiceError, ValidationError):
            raise
        except Exception as e:
            logger.error(f"Holiday lookup for {start}..{end} failed: {e}", exc_info=True)
            raise ExternalServiceError(f"Holiday lookup failed: {e}") from e

        self._cache[key] = list(holidays)
        return list(holidays)

    def invalidate(self):
        if self._cache:
            logger.info(f"Clearing {len(self._cache)} cached holiday range(s)")
        self._cache.clear()


def build_holiday_resolver(filter_name: Optional[str] = "WORKPLACE_STANDARD") -> CachedHolidayResolver:
    """The default resolver stack: calculated holidays, filtered, cached"""
    return CachedHolidayResolver(CalculatedHolidayResolver(get_holiday_filter(filter_name)))
