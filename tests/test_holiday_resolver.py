import pytest
import sys
from pathlib import Path
from datetime import date

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from shift_bidding.data_manager import ExternalServiceError, ValidationError
from shift_bidding.holiday_resolver import (
    CachedHolidayResolver,
    CalculatedHolidayResolver,
    Holiday,
    HolidayFilter,
    HolidayResolver,
    StaticHolidayResolver,
    build_holiday_resolver,
    get_holiday_filter,
    nth_weekday,
    victoria_day,
)


class CountingResolver(HolidayResolver):
    """Records how often it is asked"""

    def __init__(self, holidays):
        self.holidays = holidays
        self.calls = 0

    def get_holidays(self, start, end):
        self.calls += 1
        return [h for h in self.holidays if start <= h.date <= end]


class BrokenResolver(HolidayResolver):
    def get_holidays(self, start, end):
        raise ConnectionError("holiday service unreachable")


def names(holidays):
    return {h.name: h.date for h in holidays}


def test_calculated_holidays_2025():
    holidays = names(CalculatedHolidayResolver().get_holidays(date(2025, 1, 1), date(2025, 12, 31)))

    assert holidays["New Year's Day"] == date(2025, 1, 1)
    assert holidays["Family Day"] == date(2025, 2, 17)
    assert holidays["Good Friday"] == date(2025, 4, 18)
    assert holidays["Easter Monday"] == date(2025, 4, 21)
    assert holidays["Victoria Day"] == date(2025, 5, 19)
    assert holidays["Canada Day"] == date(2025, 7, 1)
    assert holidays["Civic Holiday"] == date(2025, 8, 4)
    assert holidays["Labour Day"] == date(2025, 9, 1)
    assert holidays["Thanksgiving"] == date(2025, 10, 13)
    assert holidays["Christmas Day"] == date(2025, 12, 25)


def test_easter_dates_follow_the_lunar_calendar():
    good_fridays = {
        year: names(CalculatedHolidayResolver().holidays_for_year(year))["Good Friday"]
        for year in (2024, 2026)
    }
    assert good_fridays[2024] == date(2024, 3, 29)
    assert good_fridays[2026] == date(2026, 4, 3)


def test_range_spanning_years():
    holidays = CalculatedHolidayResolver().get_holidays(date(2025, 12, 20), date(2026, 1, 5))
    assert [h.name for h in holidays] == [
        "Christmas Eve", "Christmas Day", "Boxing Day", "New Year's Eve", "New Year's Day",
    ]


def test_reversed_range_is_rejected():
    with pytest.raises(ValidationError):
        CalculatedHolidayResolver().get_holidays(date(2025, 2, 1), date(2025, 1, 1))


def test_workplace_standard_keeps_federal_holidays_only():
    resolver = CalculatedHolidayResolver(get_holiday_filter("WORKPLACE_STANDARD"))
    holidays = names(resolver.get_holidays(date(2025, 1, 1), date(2025, 12, 31)))

    assert "Christmas Day" in holidays
    assert "Good Friday" in holidays
    assert "Family Day" not in holidays
    assert "Halloween" not in holidays
    assert "Christmas Eve" not in holidays


def test_essential_only_preset():
    resolver = CalculatedHolidayResolver(get_holiday_filter("ESSENTIAL_ONLY"))
    holidays = resolver.get_holidays(date(2025, 1, 1), date(2025, 12, 31))
    assert len(holidays) == 8


def test_province_filter_keeps_provincial_holidays():
    ontario = HolidayFilter(include_provinces=("CA-ON",), exclude_types=("Observance", "Optional"))
    holidays = names(CalculatedHolidayResolver(ontario).get_holidays(date(2025, 1, 1), date(2025, 12, 31)))
    assert "Family Day" in holidays
    assert "Civic Holiday" in holidays
    assert "Christmas Day" in holidays
    assert "Halloween" not in holidays

    quebec = HolidayFilter(include_provinces=("CA-QC",))
    assert "Family Day" not in names(quebec.apply(CalculatedHolidayResolver().holidays_for_year(2025)))


def test_unknown_filter_name():
    with pytest.raises(ValidationError):
        get_holiday_filter("EVERYTHING")
    assert get_holiday_filter(None) is None


def test_date_helpers():
    assert nth_weekday(2025, 9, 0, 1) == date(2025, 9, 1)
    assert nth_weekday(2025, 10, 0, 2) == date(2025, 10, 13)
    assert victoria_day(2026) == date(2026, 5, 18)
    # May 24 itself is a Monday
    assert victoria_day(2027) == date(2027, 5, 24)


def test_static_resolver_filters_by_range():
    resolver = StaticHolidayResolver([
        Holiday(date(2025, 3, 1), "Local Day"),
        Holiday(date(2025, 1, 8), "Founders Day"),
    ])
    assert [h.name for h in resolver.get_holidays(date(2025, 1, 1), date(2025, 2, 1))] == ["Founders Day"]


def test_cache_serves_repeated_ranges():
    """
    Why this is important: metrics for every line of a period ask for the
    same range. Without caching, recalculating a period would hit the
    holiday source once per line.
    """
    source = CountingResolver([Holiday(date(2025, 1, 8), "Founders Day")])
    cached = CachedHolidayResolver(source)

    first = cached.get_holidays(date(2025, 1, 1), date(2025, 2, 1))
    second = cached.get_holidays(date(2025, 1, 1), date(2025, 2, 1))

    assert first == second
    assert source.calls == 1

    cached.get_holidays(date(2025, 1, 1), date(2025, 3, 1))
    assert source.calls == 2


def test_cache_invalidate():
    source = CountingResolver([])
    cached = CachedHolidayResolver(source)

    cached.get_holidays(date(2025, 1, 1), date(2025, 2, 1))
    cached.invalidate()
    cached.get_holidays(date(2025, 1, 1), date(2025, 2, 1))

    assert source.calls == 2


def test_cache_returns_copies():
    cached = CachedHolidayResolver(CountingResolver([Holiday(date(2025, 1, 8), "Founders Day")]))
    cached.get_holidays(date(2025, 1, 1), date(2025, 2, 1)).clear()
    assert len(cached.get_holidays(date(2025, 1, 1), date(2025, 2, 1))) == 1


def test_source_failure_becomes_external_service_error():
    cached = CachedHolidayResolver(BrokenResolver())
    with pytest.raises(ExternalServiceError):
        cached.get_holidays(date(2025, 1, 1), date(2025, 2, 1))


def test_validation_errors_pass_through_the_cache():
    cached = CachedHolidayResolver(CalculatedHolidayResolver())
    with pytest.raises(ValidationError):
        cached.get_holidays(date(2025, 2, 1), date(2025, 1, 1))


def test_default_resolver_stack():
    resolver = build_holiday_resolver()
    assert isinstance(resolver, CachedHolidayResolver)
    holidays = names(resolver.get_holidays(date(2025, 1, 1), date(2025, 12, 31)))
    assert "Canada Day" in holidays
    assert "Family Day" not in holidays
