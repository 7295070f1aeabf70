"""
Database tables for the Shift Bidding core

SQLAlchemy declarative models. Timestamps are stored as naive UTC values;
calendar dates (bid period start, holidays) are plain civil dates.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Current UTC time without tzinfo, the form every timestamp column holds"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LineStatus(Enum):
    AVAILABLE = "AVAILABLE"
    TAKEN = "TAKEN"
    BLACKED_OUT = "BLACKED_OUT"


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    badge_number: Mapped[Optional[str]] = mapped_column(String(50))
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="OFFICER")
    seniority: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    favorites: Mapped[List["FavoriteLine"]] = relationship(back_populates="user")

    @property
    def display_name(self) -> str:
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}"
        return self.badge_number or self.username


class Operation(Base):
    __tablename__ = "operations"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)


class ShiftCode(Base):
    __tablename__ = "shift_codes"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    begin_time: Mapped[str] = mapped_column(String(5), nullable=False)  # "HH:MM" local
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(50))
    hours_length: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)


class BidPeriod(Base):
    __tablename__ = "bid_periods"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    num_cycles: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("num_cycles >= 1", name="ck_bid_periods_num_cycles"),
    )


class Schedule(Base):
    __tablename__ = "schedules"

    id: Mapped[int] = mapped_column(primary_key=True)
    bid_period_id: Mapped[int] = mapped_column(ForeignKey("bid_periods.id"), nullable=False, index=True)
    operation_id: Mapped[Optional[int]] = mapped_column(ForeignKey("operations.id"))
    line_number: Mapped[str] = mapped_column(String(20), nullable=False)
    group_name: Mapped[Optional[str]] = mapped_column(String(100))

    bid_period: Mapped[BidPeriod] = relationship()
    operation: Mapped[Optional[Operation]] = relationship()
    shifts: Mapped[List["ScheduleShift"]] = relationship(
        back_populates="schedule",
        order_by="ScheduleShift.day_number",
        cascade="all, delete-orphan",
    )


class ScheduleShift(Base):
    __tablename__ = "schedule_shifts"

    id: Mapped[int] = mapped_column(primary_key=True)
    schedule_id: Mapped[int] = mapped_column(ForeignKey("schedules.id"), nullable=False)
    day_number: Mapped[int] = mapped_column(Integer, nullable=False)  # 1-based template day
    shift_code_id: Mapped[Optional[int]] = mapped_column(ForeignKey("shift_codes.id"))  # None means off

    schedule: Mapped[Schedule] = relationship(back_populates="shifts")
    shift_code: Mapped[Optional[ShiftCode]] = relationship()

    __table_args__ = (
        UniqueConstraint("schedule_id", "day_number", name="uq_schedule_shifts_day"),
    )


class BidLine(Base):
    __tablename__ = "bid_lines"

    id: Mapped[int] = mapped_column(primary_key=True)
    line_number: Mapped[str] = mapped_column(String(20), nullable=False)
    operation_id: Mapped[int] = mapped_column(ForeignKey("operations.id"), nullable=False, index=True)
    bid_period_id: Mapped[Optional[int]] = mapped_column(ForeignKey("bid_periods.id"), index=True)
    schedule_id: Mapped[Optional[int]] = mapped_column(ForeignKey("schedules.id"))
    group_name: Mapped[Optional[str]] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=LineStatus.AVAILABLE.value)
    taken_by: Mapped[Optional[str]] = mapped_column(String(200))
    taken_by_user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    taken_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    operation: Mapped[Operation] = relationship()
    bid_period: Mapped[Optional[BidPeriod]] = relationship()
    schedule: Mapped[Optional[Schedule]] = relationship()

    __table_args__ = (
        CheckConstraint(
            "status IN ('AVAILABLE', 'TAKEN', 'BLACKED_OUT')",
            name="ck_bid_lines_status",
        ),
        # Holder fields are set exactly when the line is not available
        CheckConstraint(
            "(status = 'AVAILABLE' AND taken_by IS NULL AND taken_at IS NULL) OR "
            "(status != 'AVAILABLE' AND taken_by IS NOT NULL AND taken_at IS NOT NULL)",
            name="ck_bid_lines_holder",
        ),
    )


class FavoriteLine(Base):
    __tablename__ = "favorite_lines"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    bid_line_id: Mapped[int] = mapped_column(ForeignKey("bid_lines.id"), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    tags: Mapped[Optional[list]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    user: Mapped[User] = relationship(back_populates="favorites")
    bid_line: Mapped[BidLine] = relationship()

    __table_args__ = (
        UniqueConstraint("user_id", "bid_line_id", name="uq_favorite_lines_user_line"),
        CheckConstraint("rank >= 1", name="ck_favorite_lines_rank"),
        Index("ix_favorite_lines_user_rank", "user_id", "rank"),
    )


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    bid_line_id: Mapped[Optional[int]] = mapped_column(ForeignKey("bid_lines.id"))
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[Optional[dict]] = mapped_column(JSON)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)

    user: Mapped[Optional[User]] = relationship()
    bid_line: Mapped[Optional[BidLine]] = relationship()


class NotificationRecord(Base):
    __tablename__ = "notification_records"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    subject: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    delivery_method: Mapped[str] = mapped_column(String(20), nullable=False, default="IN_APP")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="DELIVERED")
    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class MetricsRecord(Base):
    __tablename__ = "metrics_records"

    id: Mapped[int] = mapped_column(primary_key=True)
    bid_line_id: Mapped[int] = mapped_column(ForeignKey("bid_lines.id"), unique=True, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    bid_line: Mapped[BidLine] = relationship()
