"""
Claim State Machine for the Shift Bidding core

Owns bid line status transitions:

    AVAILABLE -> TAKEN          claim / assign
    TAKEN -> AVAILABLE          release
    AVAILABLE|TAKEN -> BLACKED_OUT
    BLACKED_OUT -> AVAILABLE    release

Each transition is one conditional UPDATE guarded by the expected current
status, so two racing callers can never both succeed. The activity row is
written in the same transaction; events and notifications follow the commit.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .data_manager import BidLineError, ConcurrencyError, ConflictError, DataManager, NotFoundError, PolicyError, ValidationError
from .event_broadcaster import BidLineEvent, EventBroadcaster, publish_safely
from .models import ActivityLog, BidLine, FavoriteLine, LineStatus, User, utcnow
from .rank_ledger import LINE_TAKEN_NOTIFICATION, natural_key


logger = logging.getLogger(__name__)


class Actions:
    """Activity log action names"""
    CLAIMED = "BID_LINE_CLAIMED"
    ASSIGNED = "ADMIN_ASSIGNED_LINE"
    RELEASED = "ADMIN_RELEASED_LINE"
    BLACKED_OUT = "ADMIN_BLACKED_OUT_LINE"


ADMIN_ACTIONS = ("assign", "release", "blackout")

# Status a line must currently have for each admin action
_ALLOWED_FROM = {
    "assign": (LineStatus.AVAILABLE,),
    "release": (LineStatus.TAKEN, LineStatus.BLACKED_OUT),
    "blackout": (LineStatus.AVAILABLE, LineStatus.TAKEN),
}

_ACTION_NAMES = {
    "assign": Actions.ASSIGNED,
    "release": Actions.RELEASED,
    "blackout": Actions.BLACKED_OUT,
}


@dataclass(frozen=True)
class Available:
    status = LineStatus.AVAILABLE


@dataclass(frozen=True)
class Taken:
    by: str
    at: datetime
    by_user_id: Optional[int] = None
    status = LineStatus.TAKEN


@dataclass(frozen=True)
class BlackedOut:
    by: str
    at: datetime
    by_user_id: Optional[int] = None
    status = LineStatus.BLACKED_OUT


LineState = Union[Available, Taken, BlackedOut]


def state_of(bid_line: BidLine) -> LineState:
    """Tagged state of a stored bid line"""
    status = LineStatus(bid_line.status)
    if status is LineStatus.AVAILABLE:
        return Available()
    if status is LineStatus.TAKEN:
        return Taken(bid_line.taken_by, bid_line.taken_at, bid_line.taken_by_user_id)
    return BlackedOut(bid_line.taken_by, bid_line.taken_at, bid_line.taken_by_user_id)


@dataclass(frozen=True)
class BidLineSnapshot:
    """A bid line as committed, detached from any session"""
    id: int
    line_number: str
    operation_id: int
    operation_name: Optional[str]
    bid_period_id: Optional[int]
    group_name: Optional[str]
    schedule_id: Optional[int]
    notes: Optional[str]
    state: LineState

    @property
    def status(self) -> LineStatus:
        return self.state.status

    @property
    def taken_by(self) -> Optional[str]:
        return getattr(self.state, "by", None)

    @property
    def taken_at(self) -> Optional[datetime]:
        return getattr(self.state, "at", None)

    @classmethod
    def from_row(cls, bid_line: BidLine) -> 'BidLineSnapshot':
        return cls(
            id=bid_line.id,
            line_number=bid_line.line_number,
            operation_id=bid_line.operation_id,
            operation_name=bid_line.operation.name if bid_line.operation else None,
            bid_period_id=bid_line.bid_period_id,
            group_name=bid_line.group_name,
            schedule_id=bid_line.schedule_id,
            notes=bid_line.notes,
            state=state_of(bid_line),
        )


def _describe(snapshot: BidLineSnapshot) -> str:
    if isinstance(snapshot.state, Taken):
        return f"already taken by {snapshot.taken_by}"
    if isinstance(snapshot.state, BlackedOut):
        return "blacked out"
    return "available"


class ClaimStateMachine:
    """Exactly-once bid line transitions"""

    def __init__(self, data_manager: DataManager, broadcaster: Optional[EventBroadcaster] = None,
                 can_claim_lines: bool = True):
        self.data_manager = data_manager
        self.broadcaster = broadcaster
        self.can_claim_lines = can_claim_lines

    @staticmethod
    def _load(session: Session, bid_line_id: int) -> Optional[BidLine]:
        return session.scalars(
            select(BidLine)
            .where(BidLine.id == bid_line_id)
            .options(selectinload(BidLine.operation))
            .execution_options(populate_existing=True)
        ).first()

    def get_line(self, bid_line_id: int) -> BidLineSnapshot:
        with self.data_manager.session() as session:
            bid_line = self._load(session, bid_line_id)
            if bid_line is None:
                raise NotFoundError(f"Bid line {bid_line_id} not found")
            return BidLineSnapshot.from_row(bid_line)

    def _conflict(self, session: Session, bid_line_id: int, message_for) -> BidLineError:
        """Build the error for a guarded update that matched no row"""
        current = self._load(session, bid_line_id)
        if current is None:
            return NotFoundError(f"Bid line {bid_line_id} not found")
        snapshot = BidLineSnapshot.from_row(current)
        return ConflictError(message_for(snapshot), current_state=snapshot.state, bid_line=snapshot)

    @contextmanager
    def _transaction(self, bid_line_id: int):
        """Write transaction whose lock timeouts surface as ConcurrencyError"""
        try:
            with self.data_manager.transaction() as session:
                yield session
        except OperationalError as e:
            logger.warning(f"Database busy while changing bid line {bid_line_id}: {e}")
            raise self._contention_error(bid_line_id) from e

    def _contention_error(self, bid_line_id: int) -> ConcurrencyError:
        snapshot = None
        try:
            snapshot = self.get_line(bid_line_id)
        except (SQLAlchemyError, NotFoundError) as e:
            logger.warning(f"Could not read the current state of bid line {bid_line_id}: {e}")

        if snapshot is None:
            return ConcurrencyError(f"Bid line {bid_line_id} is busy, please try again")
        return ConcurrencyError(
            f"Line {snapshot.line_number} is busy, please try again (currently {_describe(snapshot)})",
            current_state=snapshot.state,
            bid_line=snapshot,
        )

    def claim(self, bid_line_id: int, actor_id: int) -> BidLineSnapshot:
        """
        Take an AVAILABLE line for the acting user.

        Raises:
            PolicyError: self-claiming is disabled for the organization
            NotFoundError: unknown bid line or user
            ConflictError: the line is no longer available; carries its current state
            ConcurrencyError: the store stayed locked past its busy timeout
        """
        if not self.can_claim_lines:
            raise PolicyError("Claiming lines directly is disabled; lines are assigned by an administrator")

        with self._transaction(bid_line_id) as session:
            actor = session.get(User, actor_id)
            if actor is None:
                raise NotFoundError(f"User {actor_id} not found")

            now = utcnow()
            result = session.execute(
                update(BidLine)
                .where(BidLine.id == bid_line_id, BidLine.status == LineStatus.AVAILABLE.value)
                .values(
                    status=LineStatus.TAKEN.value,
                    taken_by=actor.display_name,
                    taken_by_user_id=actor_id,
                    taken_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise self._conflict(
                    session, bid_line_id,
                    lambda line: f"Line {line.line_number} is {_describe(line)}",
                )

            snapshot = BidLineSnapshot.from_row(self._load(session, bid_line_id))
            session.add(ActivityLog(
                user_id=actor_id,
                bid_line_id=bid_line_id,
                action=Actions.CLAIMED,
                details={"line_number": snapshot.line_number, "operation_id": snapshot.operation_id},
                timestamp=now,
            ))

        logger.info(f"Line {snapshot.line_number} claimed by user {actor_id}")
        self._publish(Actions.CLAIMED, snapshot, actor_id)
        return snapshot

    def admin_transition(self, bid_line_id: int, action: str, payload: Optional[Dict[str, Any]] = None) -> BidLineSnapshot:
        """
        Apply an administrative assign, release or blackout.

        Args:
            action: "assign", "release" or "blackout"
            payload: actor_id (required); officer_name (required for assign);
                optional officer_id and notes

        Raises:
            ValidationError: unknown action or missing payload fields
            NotFoundError: unknown bid line, actor or officer
            ConflictError: the line is not in a state the action applies to
            ConcurrencyError: the store stayed locked past its busy timeout
        """
        payload = payload or {}
        if action not in ADMIN_ACTIONS:
            raise ValidationError(f"Unknown action '{action}', expected one of {', '.join(ADMIN_ACTIONS)}")
        actor_id = payload.get("actor_id")
        if actor_id is None:
            raise ValidationError("actor_id is required")
        officer_name = (payload.get("officer_name") or "").strip()
        officer_id = payload.get("officer_id")
        notes = payload.get("notes")
        if action == "assign" and not officer_name:
            raise ValidationError("officer_name is required to assign a line")

        allowed = [status.value for status in _ALLOWED_FROM[action]]

        with self._transaction(bid_line_id) as session:
            actor = session.get(User, actor_id)
            if actor is None:
                raise NotFoundError(f"User {actor_id} not found")
            if officer_id is not None and session.get(User, officer_id) is None:
                raise NotFoundError(f"Officer {officer_id} not found")

            previous = self._load(session, bid_line_id)
            if previous is None:
                raise NotFoundError(f"Bid line {bid_line_id} not found")
            previous_status = previous.status
            previous_holder = previous.taken_by

            now = utcnow()
            values, details = self._transition_values(action, actor, officer_name, officer_id, now)
            if notes is not None:
                values["notes"] = notes
                details["notes"] = notes

            result = session.execute(
                update(BidLine)
                .where(BidLine.id == bid_line_id, BidLine.status.in_(allowed))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise self._conflict(
                    session, bid_line_id,
                    lambda line: f"Cannot {action} line {line.line_number}: it is {_describe(line)}",
                )

            snapshot = BidLineSnapshot.from_row(self._load(session, bid_line_id))
            details.update({
                "line_number": snapshot.line_number,
                "operation_id": snapshot.operation_id,
                "previous_status": previous_status,
                "previous_holder": previous_holder,
            })
            session.add(ActivityLog(
                user_id=actor_id,
                bid_line_id=bid_line_id,
                action=_ACTION_NAMES[action],
                details=details,
                timestamp=now,
            ))

        logger.info(f"Line {snapshot.line_number}: {action} by user {actor_id} -> {snapshot.status.value}")
        self._publish(_ACTION_NAMES[action], snapshot, actor_id)
        if action == "assign":
            self._notify_favoriters(snapshot, officer_id)
        return snapshot

    @staticmethod
    def _transition_values(action: str, actor: User, officer_name: str, officer_id: Optional[int],
                           now: datetime) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        if action == "assign":
            return ({
                "status": LineStatus.TAKEN.value,
                "taken_by": officer_name,
                "taken_by_user_id": officer_id,
                "taken_at": now,
            }, {"officer_name": officer_name, "officer_id": officer_id})
        if action == "release":
            return ({
                "status": LineStatus.AVAILABLE.value,
                "taken_by": None,
                "taken_by_user_id": None,
                "taken_at": None,
            }, {})
        return ({
            "status": LineStatus.BLACKED_OUT.value,
            "taken_by": actor.display_name,
            "taken_by_user_id": actor.id,
            "taken_at": now,
        }, {})

    def _publish(self, action: str, snapshot: BidLineSnapshot, actor_id: int):
        publish_safely(self.broadcaster, BidLineEvent(
            action=action,
            bid_line_id=snapshot.id,
            line_number=snapshot.line_number,
            operation_id=snapshot.operation_id,
            status=snapshot.status.value,
            taken_by=snapshot.taken_by,
            actor_id=actor_id,
        ))

    def _notify_favoriters(self, snapshot: BidLineSnapshot, officer_id: Optional[int]) -> int:
        """
        Tell everyone who favorited an assigned line, listing their remaining
        available favorites by operation. Failures are logged, never raised.
        """
        try:
            with self.data_manager.session() as session:
                user_ids = list(session.scalars(
                    select(FavoriteLine.user_id).where(FavoriteLine.bid_line_id == snapshot.id)
                ))
                messages = []
                for user_id in user_ids:
                    if user_id == officer_id:
                        continue
                    remaining = self._remaining_favorites(session, user_id)
                    messages.append((user_id, remaining))

            for user_id, remaining in messages:
                if remaining:
                    listing = "; ".join(f"{op}: {', '.join(lines)}" for op, lines in remaining.items())
                    body = (f"Line {snapshot.line_number} ({snapshot.operation_name}) has been taken. "
                            f"Your remaining available favorites: {listing}")
                else:
                    body = (f"Line {snapshot.line_number} ({snapshot.operation_name}) has been taken. "
                            f"You have no remaining available favorites.")
                self.data_manager.add_notification(
                    user_id,
                    LINE_TAKEN_NOTIFICATION,
                    "Favorited Line Taken",
                    body,
                    {
                        "bid_line_id": snapshot.id,
                        "line_number": snapshot.line_number,
                        "remaining_favorites": remaining,
                    },
                )
            return len(messages)
        except SQLAlchemyError as e:
            logger.warning(f"Could not notify users who favorited line {snapshot.line_number}: {e}")
            return 0

    @staticmethod
    def _remaining_favorites(session: Session, user_id: int) -> Dict[str, List[str]]:
        favorites = session.scalars(
            select(FavoriteLine)
            .join(FavoriteLine.bid_line)
            .where(FavoriteLine.user_id == user_id, BidLine.status == LineStatus.AVAILABLE.value)
            .options(selectinload(FavoriteLine.bid_line).selectinload(BidLine.operation))
            .order_by(FavoriteLine.rank)
        ).all()
        grouped: Dict[str, List[str]] = {}
        for favorite in sorted(favorites, key=lambda f: (f.bid_line.operation.name, natural_key(f.bid_line.line_number))):
            grouped.setdefault(favorite.bid_line.operation.name, []).append(favorite.bid_line.line_number)
        return grouped
