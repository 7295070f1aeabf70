"""
Data Manager for the Shift Bidding core

Owns the database engine and transaction scope, the error taxonomy shared by
every component, and the administrative CRUD used to set up operations,
shift codes, bid periods, schedules and bid lines.
"""

import logging
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from sqlalchemy import create_engine, event, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from .models import (
    Base,
    BidLine,
    BidPeriod,
    LineStatus,
    NotificationRecord,
    Operation,
    Schedule,
    ScheduleShift,
    ShiftCode,
    User,
)


logger = logging.getLogger(__name__)


class BidLineError(Exception):
    """Base exception for shift bidding operations"""
    pass


class ValidationError(BidLineError):
    """Raised for malformed template, date, cycle or settings input"""
    pass


class NotFoundError(BidLineError):
    """Raised when a bid line, user, schedule or period does not exist"""
    pass


class ConflictError(BidLineError):
    """Raised when a state change lost a race; carries the authoritative state"""

    def __init__(self, message: str, current_state=None, bid_line=None):
        super().__init__(message)
        self.current_state = current_state
        self.bid_line = bid_line


class ConcurrencyError(ConflictError):
    """Raised when a transaction could not be serialized within the retry budget"""
    pass


class PolicyError(BidLineError):
    """Raised when an organization policy forbids the operation"""
    pass


class ExternalServiceError(BidLineError):
    """Raised when a collaborator (holiday source, broadcaster) fails"""
    pass


def _is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


class DataManager:
    """Manages the transactional store and administrative CRUD"""

    def __init__(self, database_url: str = "sqlite:///data/shift_bidding.db",
                 cycle_length: int = 56, echo: bool = False):
        self.database_url = database_url
        self.cycle_length = cycle_length

        if _is_sqlite(database_url) and database_url not in ("sqlite://", "sqlite:///:memory:"):
            # Make sure the directory of a file database exists
            db_path = Path(database_url.split("///", 1)[-1])
            db_path.parent.mkdir(parents=True, exist_ok=True)

        connect_args = {"timeout": 30, "check_same_thread": False} if _is_sqlite(database_url) else {}
        self.engine = create_engine(database_url, echo=echo, connect_args=connect_args)

        if _is_sqlite(database_url):
            self._configure_sqlite(self.engine)

        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)
        logger.info(f"Data manager ready on {self.engine.url.render_as_string(hide_password=True)}")

    @staticmethod
    def _configure_sqlite(engine):
        """Take the write lock at BEGIN so transactions serialize instead of deadlocking on upgrade"""

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            # Let SQLAlchemy's "begin" event emit BEGIN instead of the driver
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    @property
    def is_sqlite(self) -> bool:
        return _is_sqlite(self.database_url)

    def session(self) -> Session:
        return self._session_factory()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session scoped to one transaction: commit on success, roll back on any error"""
        session = self._session_factory()
        try:
            with session.begin():
                yield session
        finally:
            session.close()

    def dispose(self):
        self.engine.dispose()

    # User Management
    def add_user(self, username: str, first_name: Optional[str] = None, last_name: Optional[str] = None,
                 badge_number: Optional[str] = None, role: str = "OFFICER",
                 seniority: Optional[int] = None) -> User:
        """Add new user"""
        if not username or not username.strip():
            raise ValidationError("Username is required")
        try:
            with self.transaction() as session:
                user = User(
                    username=username.strip(),
                    first_name=first_name,
                    last_name=last_name,
                    badge_number=badge_number,
                    role=role,
                    seniority=seniority,
                )
                session.add(user)
                session.flush()
        except IntegrityError:
            raise ValidationError(f"Username '{username}' already exists")
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self.session() as session:
            return session.get(User, user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self.session() as session:
            return session.scalars(select(User).where(User.username == username)).first()

    # Operations and shift codes
    def add_operation(self, name: str) -> Operation:
        if not name or not name.strip():
            raise ValidationError("Operation name is required")
        try:
            with self.transaction() as session:
                operation = Operation(name=name.strip())
                session.add(operation)
                session.flush()
        except IntegrityError:
            raise ValidationError(f"Operation '{name}' already exists")
        return operation

    def add_shift_code(self, code: str, begin_time: str, end_time: str,
                       category: Optional[str] = None, hours_length: float = 0.0) -> ShiftCode:
        """Add a shift code; begin/end are local "HH:MM" times"""
        for label, value in (("begin_time", begin_time), ("end_time", end_time)):
            parse_hhmm(value, label)
        if hours_length < 0:
            raise ValidationError("hours_length cannot be negative")
        try:
            with self.transaction() as session:
                shift_code = ShiftCode(
                    code=code.strip(),
                    begin_time=begin_time,
                    end_time=end_time,
                    category=category,
                    hours_length=hours_length,
                )
                session.add(shift_code)
                session.flush()
        except IntegrityError:
            raise ValidationError(f"Shift code '{code}' already exists")
        return shift_code

    def get_shift_codes(self) -> List[ShiftCode]:
        with self.session() as session:
            return list(session.scalars(select(ShiftCode).order_by(ShiftCode.code)))

    # Bid periods
    def add_bid_period(self, name: str, start_date: date, num_cycles: int) -> BidPeriod:
        if not isinstance(start_date, date):
            raise ValidationError(f"start_date must be a date, got {start_date!r}")
        if not isinstance(num_cycles, int) or num_cycles < 1:
            raise ValidationError(f"num_cycles must be at least 1, got {num_cycles!r}")
        with self.transaction() as session:
            period = BidPeriod(name=name, start_date=start_date, num_cycles=num_cycles, is_active=False)
            session.add(period)
            session.flush()
        return period

    def get_bid_period(self, bid_period_id: int) -> BidPeriod:
        with self.session() as session:
            period = session.get(BidPeriod, bid_period_id)
        if period is None:
            raise NotFoundError(f"Bid period {bid_period_id} not found")
        return period

    def get_active_bid_period(self) -> Optional[BidPeriod]:
        with self.session() as session:
            return session.scalars(select(BidPeriod).where(BidPeriod.is_active.is_(True))).first()

    def set_active_bid_period(self, bid_period_id: int) -> bool:
        """Make one period active and every other inactive. Returns False if it already was."""
        with self.transaction() as session:
            period = session.get(BidPeriod, bid_period_id)
            if period is None:
                raise NotFoundError(f"Bid period {bid_period_id} not found")
            if period.is_active:
                return False
            session.execute(
                update(BidPeriod)
                .where(BidPeriod.is_active.is_(True), BidPeriod.id != bid_period_id)
                .values(is_active=False)
            )
            period.is_active = True
        logger.info(f"Bid period {bid_period_id} is now active")
        return True

    def update_bid_period(self, bid_period_id: int, start_date: Optional[date] = None,
                          num_cycles: Optional[int] = None) -> BidPeriod:
        """Change the period's calendar anchor; callers must invalidate holiday caches and metrics"""
        if num_cycles is not None and (not isinstance(num_cycles, int) or num_cycles < 1):
            raise ValidationError(f"num_cycles must be at least 1, got {num_cycles!r}")
        with self.transaction() as session:
            period = session.get(BidPeriod, bid_period_id)
            if period is None:
                raise NotFoundError(f"Bid period {bid_period_id} not found")
            if start_date is not None:
                period.start_date = start_date
            if num_cycles is not None:
                period.num_cycles = num_cycles
        return period

    # Schedules
    def add_schedule(self, bid_period_id: int, line_number: str, day_codes: Sequence[Optional[str]],
                     operation_id: Optional[int] = None, group_name: Optional[str] = None) -> Schedule:
        """
        Create a schedule from one code per template day.

        Args:
            day_codes: exactly cycle_length entries; None, "" or "OFF" mark a day off
        """
        if len(day_codes) != self.cycle_length:
            raise ValidationError(
                f"Schedule {line_number} has {len(day_codes)} days, expected {self.cycle_length}"
            )

        with self.transaction() as session:
            if session.get(BidPeriod, bid_period_id) is None:
                raise NotFoundError(f"Bid period {bid_period_id} not found")

            codes = {sc.code: sc for sc in session.scalars(select(ShiftCode))}
            schedule = Schedule(
                bid_period_id=bid_period_id,
                operation_id=operation_id,
                line_number=str(line_number),
                group_name=group_name,
            )
            for day_number, code in enumerate(day_codes, start=1):
                shift_code = None
                if code and code.strip().upper() != "OFF":
                    shift_code = codes.get(code.strip())
                    if shift_code is None:
                        raise ValidationError(f"Unknown shift code '{code}' on day {day_number}")
                schedule.shifts.append(ScheduleShift(day_number=day_number, shift_code=shift_code))
            session.add(schedule)
            session.flush()
        return schedule

    def get_schedule(self, schedule_id: int) -> Schedule:
        with self.session() as session:
            schedule = session.scalars(
                select(Schedule)
                .where(Schedule.id == schedule_id)
                .options(
                    selectinload(Schedule.shifts).selectinload(ScheduleShift.shift_code),
                    selectinload(Schedule.bid_period),
                )
            ).first()
        if schedule is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        return schedule

    # Bid lines
    def import_bid_line(self, line_number: str, operation_id: int, bid_period_id: Optional[int] = None,
                        group_name: Optional[str] = None, schedule_id: Optional[int] = None) -> BidLine:
        """Create an AVAILABLE bid line"""
        with self.transaction() as session:
            if session.get(Operation, operation_id) is None:
                raise NotFoundError(f"Operation {operation_id} not found")
            if schedule_id is not None and session.get(Schedule, schedule_id) is None:
                raise NotFoundError(f"Schedule {schedule_id} not found")
            bid_line = BidLine(
                line_number=str(line_number),
                operation_id=operation_id,
                bid_period_id=bid_period_id,
                group_name=group_name,
                schedule_id=schedule_id,
                status=LineStatus.AVAILABLE.value,
            )
            session.add(bid_line)
            session.flush()
        return bid_line

    def get_bid_line(self, bid_line_id: int) -> BidLine:
        with self.session() as session:
            bid_line = session.scalars(
                select(BidLine)
                .where(BidLine.id == bid_line_id)
                .options(selectinload(BidLine.operation))
            ).first()
        if bid_line is None:
            raise NotFoundError(f"Bid line {bid_line_id} not found")
        return bid_line

    def get_bid_lines(self, bid_period_id: Optional[int] = None,
                      operation_id: Optional[int] = None) -> List[BidLine]:
        query = select(BidLine).options(selectinload(BidLine.operation)).order_by(BidLine.id)
        if bid_period_id is not None:
            query = query.where(BidLine.bid_period_id == bid_period_id)
        if operation_id is not None:
            query = query.where(BidLine.operation_id == operation_id)
        with self.session() as session:
            return list(session.scalars(query))

    def set_bid_line_schedule(self, bid_line_id: int, schedule_id: Optional[int]) -> BidLine:
        """Link (or unlink with None) a schedule; metrics must be recomputed afterwards"""
        with self.transaction() as session:
            bid_line = session.get(BidLine, bid_line_id)
            if bid_line is None:
                raise NotFoundError(f"Bid line {bid_line_id} not found")
            if schedule_id is not None and session.get(Schedule, schedule_id) is None:
                raise NotFoundError(f"Schedule {schedule_id} not found")
            bid_line.schedule_id = schedule_id
        return bid_line

    # Notifications
    def add_notification(self, user_id: int, notification_type: str, subject: str, message: str,
                         metadata: Optional[dict] = None) -> NotificationRecord:
        """Record an in-app notification; delivery to other channels happens elsewhere"""
        with self.transaction() as session:
            record = NotificationRecord(
                user_id=user_id,
                type=notification_type,
                subject=subject,
                message=message,
                meta=metadata,
            )
            session.add(record)
            session.flush()
        return record

    def get_notifications(self, user_id: int) -> List[NotificationRecord]:
        with self.session() as session:
            return list(session.scalars(
                select(NotificationRecord)
                .where(NotificationRecord.user_id == user_id)
                .order_by(NotificationRecord.created_at, NotificationRecord.id)
            ))


def parse_hhmm(value: str, label: str = "time") -> int:
    """Parse "HH:MM" into minutes after midnight"""
    try:
        hours_str, minutes_str = value.split(":")
        hours, minutes = int(hours_str), int(minutes_str)
    except (AttributeError, ValueError):
        raise ValidationError(f"{label} must be HH:MM, got {value!r}")
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValidationError(f"{label} out of range: {value!r}")
    return hours * 60 + minutes
