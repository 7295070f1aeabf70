"""
Metrics Manager for the Shift Bidding core

Keeps the cached MetricsResult of every bid line in step with its inputs.
Metrics are recomputed wholesale when a schedule is linked, when the
active bid period changes, or when the holiday cache is invalidated.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session, selectinload

from .cycle_expander import OFF, ShiftCodeInfo, ShiftTemplate, period_end
from .data_manager import DataManager, NotFoundError, ValidationError
from .holiday_resolver import CachedHolidayResolver
from .metrics_calculator import (
    BidPeriodInfo,
    HolidayExposure,
    MetricsCalculator,
    MetricsResult,
    MetricWeights,
    estimate_holiday_exposure,
)
from .models import ActivityLog, BidLine, BidPeriod, MetricsRecord, Schedule, ScheduleShift, utcnow


logger = logging.getLogger(__name__)

ACTIVATED_BID_PERIOD = "ACTIVATED_BID_PERIOD"


@dataclass
class RecalculationSummary:
    bid_period_id: int
    updated: int = 0
    skipped: int = 0
    skipped_lines: List[str] = field(default_factory=list)


def template_from_schedule(schedule: Schedule, cycle_length: int) -> ShiftTemplate:
    """Build the day template of a stored schedule; every day 1..cycle_length must be present"""
    by_day = {shift.day_number: shift for shift in schedule.shifts}
    missing = [day for day in range(1, cycle_length + 1) if day not in by_day]
    if missing or len(by_day) != cycle_length:
        raise ValidationError(
            f"Schedule {schedule.line_number} does not cover days 1..{cycle_length}"
            + (f" (missing {missing[:5]})" if missing else "")
        )

    entries = []
    for day in range(1, cycle_length + 1):
        code = by_day[day].shift_code
        if code is None:
            entries.append(OFF)
        else:
            entries.append(ShiftCodeInfo(
                code=code.code,
                begin_time=code.begin_time,
                end_time=code.end_time,
                category=code.category,
                hours_length=code.hours_length,
            ))
    return ShiftTemplate.from_entries(entries, line_number=schedule.line_number, group_name=schedule.group_name)


class MetricsManager:
    """Recomputes and stores bid line metrics"""

    def __init__(self, data_manager: DataManager, holiday_resolver: CachedHolidayResolver,
                 calculator: Optional[MetricsCalculator] = None, weights: Optional[MetricWeights] = None):
        self.data_manager = data_manager
        self.holiday_resolver = holiday_resolver
        self.calculator = calculator or MetricsCalculator()
        self.weights = weights or MetricWeights()

    @property
    def cycle_length(self) -> int:
        return self.data_manager.cycle_length

    def _period_info(self, period: BidPeriod) -> BidPeriodInfo:
        return BidPeriodInfo(period.start_date, period.num_cycles, self.cycle_length)

    def _holidays_for(self, info: BidPeriodInfo):
        # ExternalServiceError propagates: undercounting holidays silently is worse than failing
        return self.holiday_resolver.get_holidays(info.start_date, info.end_date)

    @staticmethod
    def _load_line(session: Session, bid_line_id: int) -> BidLine:
        bid_line = session.scalars(
            select(BidLine)
            .where(BidLine.id == bid_line_id)
            .options(
                selectinload(BidLine.schedule).selectinload(Schedule.shifts).selectinload(ScheduleShift.shift_code),
                selectinload(BidLine.schedule).selectinload(Schedule.bid_period),
                selectinload(BidLine.bid_period),
            )
        ).first()
        if bid_line is None:
            raise NotFoundError(f"Bid line {bid_line_id} not found")
        return bid_line

    def compute_line(self, bid_line_id: int) -> MetricsResult:
        """Compute metrics for a line without storing them"""
        with self.data_manager.session() as session:
            bid_line = self._load_line(session, bid_line_id)
            if bid_line.schedule is None:
                raise ValidationError(f"Line {bid_line.line_number} has no linked schedule")
            template = template_from_schedule(bid_line.schedule, self.cycle_length)
            info = self._period_info(bid_line.schedule.bid_period)

        return self.calculator.compute(template, info, self._holidays_for(info), weights=self.weights)

    def recalculate_line(self, bid_line_id: int) -> Optional[MetricsResult]:
        """
        Recompute and store a line's metrics.

        Returns:
            The new result, or None when the line has no schedule (its cache is cleared)
        """
        with self.data_manager.session() as session:
            bid_line = session.get(BidLine, bid_line_id)
            if bid_line is None:
                raise NotFoundError(f"Bid line {bid_line_id} not found")
            has_schedule = bid_line.schedule_id is not None

        if not has_schedule:
            self._store(bid_line_id, None)
            return None

        result = self.compute_line(bid_line_id)
        self._store(bid_line_id, result)
        return result

    def _store(self, bid_line_id: int, result: Optional[MetricsResult]):
        with self.data_manager.transaction() as session:
            session.execute(delete(MetricsRecord).where(MetricsRecord.bid_line_id == bid_line_id))
            if result is not None:
                session.add(MetricsRecord(bid_line_id=bid_line_id, payload=result.to_dict(), computed_at=utcnow()))

    def get_metrics(self, bid_line_id: int) -> Optional[MetricsResult]:
        with self.data_manager.session() as session:
            record = session.scalars(
                select(MetricsRecord).where(MetricsRecord.bid_line_id == bid_line_id)
            ).first()
            return MetricsResult.from_dict(record.payload) if record else None

    def recalculate_period(self, bid_period_id: int) -> RecalculationSummary:
        """Recompute every line of a period; lines that cannot be computed are skipped"""
        with self.data_manager.session() as session:
            if session.get(BidPeriod, bid_period_id) is None:
                raise NotFoundError(f"Bid period {bid_period_id} not found")
            lines = session.execute(
                select(BidLine.id, BidLine.line_number)
                .outerjoin(BidLine.schedule)
                .where(or_(BidLine.bid_period_id == bid_period_id, Schedule.bid_period_id == bid_period_id))
                .order_by(BidLine.id)
            ).all()

        summary = RecalculationSummary(bid_period_id=bid_period_id)
        for bid_line_id, line_number in lines:
            try:
                result = self.recalculate_line(bid_line_id)
            except ValidationError as e:
                logger.warning(f"Skipping metrics for line {line_number}: {e}")
                result = None
            if result is None:
                summary.skipped += 1
                summary.skipped_lines.append(line_number)
            else:
                summary.updated += 1

        logger.info(f"Recalculated metrics for period {bid_period_id}: "
                    f"{summary.updated} updated, {summary.skipped} skipped")
        return summary

    def activate_bid_period(self, bid_period_id: int, actor_id: Optional[int] = None) -> RecalculationSummary:
        """
        Make the period the only active one and recompute all of its lines.

        Holidays are resolved before anything is written, so a failing holiday
        source leaves the previously active period in place.

        Raises:
            NotFoundError: unknown bid period
            ExternalServiceError: the holiday source failed
        """
        period = self.data_manager.get_bid_period(bid_period_id)
        self.holiday_resolver.invalidate()
        self._holidays_for(self._period_info(period))

        self.data_manager.set_active_bid_period(bid_period_id)
        summary = self.recalculate_period(bid_period_id)

        with self.data_manager.transaction() as session:
            session.add(ActivityLog(
                user_id=actor_id,
                action=ACTIVATED_BID_PERIOD,
                details={
                    "bid_period_id": bid_period_id,
                    "metrics_updated": summary.updated,
                    "metrics_skipped": summary.skipped,
                },
            ))
        return summary

    def update_bid_period(self, bid_period_id: int, start_date: Optional[date] = None,
                          num_cycles: Optional[int] = None) -> RecalculationSummary:
        """Move a period's calendar anchor; cached holidays and metrics are rebuilt"""
        self.data_manager.update_bid_period(bid_period_id, start_date=start_date, num_cycles=num_cycles)
        self.holiday_resolver.invalidate()
        return self.recalculate_period(bid_period_id)

    def link_schedule(self, bid_line_id: int, schedule_id: int) -> MetricsResult:
        self.data_manager.set_bid_line_schedule(bid_line_id, schedule_id)
        return self.recalculate_line(bid_line_id)

    def unlink_schedule(self, bid_line_id: int):
        self.data_manager.set_bid_line_schedule(bid_line_id, None)
        self._store(bid_line_id, None)

    def holiday_exposure(self, bid_line_id: int) -> HolidayExposure:
        """
        Holiday exposure of a line. Exact when a schedule is linked; otherwise an
        explicitly estimated upper bound over the line's (or the active) period.
        """
        with self.data_manager.session() as session:
            bid_line = self._load_line(session, bid_line_id)
            if bid_line.schedule is not None:
                exact = True
            else:
                exact = False
                period = bid_line.bid_period or session.scalars(
                    select(BidPeriod).where(BidPeriod.is_active.is_(True))
                ).first()
                if period is None:
                    raise ValidationError(f"Line {bid_line.line_number} has no schedule and no bid period")
                info = self._period_info(period)

        if exact:
            result = self.compute_line(bid_line_id)
            return HolidayExposure(
                holidays_in_period=result.holidays_working + result.holidays_off,
                holidays_working=result.holidays_working,
                holidays_off=result.holidays_off,
                estimated=False,
            )
        return estimate_holiday_exposure(self._holidays_for(info), info.start_date, info.num_cycles,
                                         info.cycle_length)

    def period_end(self, bid_period_id: int) -> date:
        period = self.data_manager.get_bid_period(bid_period_id)
        return period_end(period.start_date, period.num_cycles, self.cycle_length)
