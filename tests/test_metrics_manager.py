import pytest
import sys
import os
import tempfile
from pathlib import Path
from datetime import date

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sqlalchemy import select

from shift_bidding.cycle_expander import OFF
from shift_bidding.data_manager import DataManager, ExternalServiceError, NotFoundError, ValidationError
from shift_bidding.holiday_resolver import CachedHolidayResolver, Holiday, HolidayResolver, StaticHolidayResolver
from shift_bidding.metrics_manager import ACTIVATED_BID_PERIOD, MetricsManager, template_from_schedule
from shift_bidding.models import ActivityLog


HOLIDAYS = [Holiday(date(2025, 1, 8), "Founders Day"), Holiday(date(2025, 2, 17), "Family Day")]


class CountingResolver(StaticHolidayResolver):
    def __init__(self, holidays):
        super().__init__(holidays)
        self.calls = 0

    def get_holidays(self, start, end):
        self.calls += 1
        return super().get_holidays(start, end)


class UnreachableResolver(HolidayResolver):
    def get_holidays(self, start, end):
        raise TimeoutError("holiday API timed out")


def week_one_weekdays():
    """Monday-Friday DAY shifts in week one, off for the rest of the cycle"""
    return ["DAY"] * 5 + ["OFF"] * 51


@pytest.fixture
def data_manager():
    """Fresh file-backed database per test"""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as temp_file:
        temp_path = temp_file.name

    dm = DataManager(f"sqlite:///{temp_path}")
    yield dm

    dm.dispose()
    os.unlink(temp_path)


@pytest.fixture
def setup(data_manager):
    data_manager.add_shift_code("DAY", "07:00", "15:00", "Days", 8.0)
    data_manager.add_shift_code("EVE", "15:00", "23:00", "Afternoons", 8.0)
    period = data_manager.add_bid_period("Winter 2025", date(2025, 1, 6), 1)
    operation = data_manager.add_operation("Patrol")
    schedule = data_manager.add_schedule(period.id, "1", week_one_weekdays(), operation.id, group_name="A")
    linked = data_manager.import_bid_line("1", operation.id, bid_period_id=period.id, schedule_id=schedule.id)
    unlinked = data_manager.import_bid_line("2", operation.id, bid_period_id=period.id)
    return {
        "period": period,
        "operation": operation,
        "schedule": schedule,
        "linked": linked,
        "unlinked": unlinked,
    }


@pytest.fixture
def resolver():
    return CountingResolver(HOLIDAYS)


@pytest.fixture
def manager(data_manager, resolver):
    return MetricsManager(data_manager, CachedHolidayResolver(resolver))


def test_template_from_stored_schedule(data_manager, setup):
    schedule = data_manager.get_schedule(setup["schedule"].id)
    template = template_from_schedule(schedule, 56)

    assert len(template) == 56
    assert template.entry(1).code == "DAY"
    assert template.entry(1).hours_length == 8.0
    assert template.entry(6) is OFF
    assert template.group_name == "A"

    with pytest.raises(ValidationError):
        template_from_schedule(schedule, 57)


def test_compute_line_uses_schedule_period_and_holidays(manager, setup):
    result = manager.compute_line(setup["linked"].id)

    assert result.blocks_5day == 1
    assert result.weekends_on == 0
    assert result.holidays_working == 1
    # Family Day falls in an off week
    assert result.holidays_off == 1


def test_compute_line_without_schedule(manager, setup):
    with pytest.raises(ValidationError):
        manager.compute_line(setup["unlinked"].id)
    with pytest.raises(NotFoundError):
        manager.compute_line(999)


def test_recalculate_stores_and_replaces(manager, setup):
    assert manager.get_metrics(setup["linked"].id) is None

    stored = manager.recalculate_line(setup["linked"].id)
    assert manager.get_metrics(setup["linked"].id) == stored

    manager.recalculate_line(setup["linked"].id)
    assert manager.get_metrics(setup["linked"].id) == stored


def test_recalculate_unlinked_line_clears_cache(manager, setup):
    assert manager.recalculate_line(setup["unlinked"].id) is None
    assert manager.get_metrics(setup["unlinked"].id) is None


def test_link_and_unlink_schedule(manager, data_manager, setup):
    schedule = data_manager.add_schedule(setup["period"].id, "2", ["EVE"] * 56, setup["operation"].id)

    result = manager.link_schedule(setup["unlinked"].id, schedule.id)
    assert result.shift_pattern == "EVE"
    assert result.longest_stretch == 56
    assert manager.get_metrics(setup["unlinked"].id).total_days_worked == 56

    manager.unlink_schedule(setup["unlinked"].id)
    assert manager.get_metrics(setup["unlinked"].id) is None


def test_recalculate_period_reports_skipped_lines(manager, setup):
    summary = manager.recalculate_period(setup["period"].id)

    assert summary.updated == 1
    assert summary.skipped == 1
    assert summary.skipped_lines == ["2"]

    with pytest.raises(NotFoundError):
        manager.recalculate_period(999)


def test_activate_period_is_exclusive_and_recomputes(manager, data_manager, resolver, setup):
    """
    Why this is important: holidays are cached per date range. Activating a
    period must drop the cache and rebuild every line's metrics so nobody
    bids on numbers computed for a different calendar.
    """
    other = data_manager.add_bid_period("Spring 2025", date(2025, 3, 3), 1)
    manager.activate_bid_period(other.id)
    assert resolver.calls == 1
    manager.compute_line(setup["linked"].id)
    manager.compute_line(setup["linked"].id)
    assert resolver.calls == 2

    summary = manager.activate_bid_period(setup["period"].id, actor_id=None)

    assert summary.updated == 1
    assert data_manager.get_active_bid_period().id == setup["period"].id
    assert data_manager.get_bid_period(other.id).is_active is False
    # One fresh lookup after the cache was dropped, shared by every line
    assert resolver.calls == 3
    assert manager.get_metrics(setup["linked"].id).holidays_working == 1

    with data_manager.session() as session:
        actions = list(session.scalars(select(ActivityLog.action)))
    assert actions.count(ACTIVATED_BID_PERIOD) == 2


def test_update_bid_period_shifts_holiday_exposure(manager, data_manager, setup):
    manager.recalculate_line(setup["linked"].id)

    # Starting a week earlier moves Jan 8 into an off week too
    manager.update_bid_period(setup["period"].id, start_date=date(2024, 12, 30))

    result = manager.get_metrics(setup["linked"].id)
    assert result.holidays_working == 0
    assert result.holidays_off == 2


def test_holiday_exposure_exact_and_estimated(manager, setup):
    exact = manager.holiday_exposure(setup["linked"].id)
    assert exact.estimated is False
    assert exact.holidays_working == 1

    estimate = manager.holiday_exposure(setup["unlinked"].id)
    assert estimate.estimated is True
    assert estimate.holidays_in_period == 2
    assert estimate.holidays_working == 2


def test_holiday_exposure_uses_active_period_for_orphan_lines(manager, data_manager, setup):
    orphan = data_manager.import_bid_line("3", setup["operation"].id)
    with pytest.raises(ValidationError):
        manager.holiday_exposure(orphan.id)

    data_manager.set_active_bid_period(setup["period"].id)
    assert manager.holiday_exposure(orphan.id).estimated is True


def test_holiday_source_failure_propagates(data_manager, setup):
    manager = MetricsManager(data_manager, CachedHolidayResolver(UnreachableResolver()))
    with pytest.raises(ExternalServiceError):
        manager.compute_line(setup["linked"].id)


def test_activation_with_failing_holiday_source_changes_nothing(data_manager, setup):
    """
    Why this is important: if holidays cannot be resolved, the period must
    not go live with stale or missing metrics. The previous active period
    stays active and no activation is logged.
    """
    other = data_manager.add_bid_period("Spring 2025", date(2025, 3, 3), 1)
    data_manager.set_active_bid_period(other.id)
    manager = MetricsManager(data_manager, CachedHolidayResolver(UnreachableResolver()))

    with pytest.raises(ExternalServiceError):
        manager.activate_bid_period(setup["period"].id)

    assert data_manager.get_active_bid_period().id == other.id
    assert manager.get_metrics(setup["linked"].id) is None
    with data_manager.session() as session:
        actions = list(session.scalars(select(ActivityLog.action)))
    assert ACTIVATED_BID_PERIOD not in actions


def test_activate_unknown_period(manager):
    with pytest.raises(NotFoundError):
        manager.activate_bid_period(999)


def test_period_end(manager, setup):
    assert manager.period_end(setup["period"].id) == date(2025, 3, 2)
