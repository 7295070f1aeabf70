"""
Rank Ledger for the Shift Bidding core

Keeps every user's favorite lines in a dense order: ranks are exactly
1..count after each completed operation. Changes for one user are
serialized by the database (a row lock on the user, or BEGIN IMMEDIATE on
SQLite) and retried a bounded number of times when the store reports a
lock or constraint conflict.
"""

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .data_manager import ConcurrencyError, DataManager, NotFoundError, ValidationError
from .models import BidLine, FavoriteLine, LineStatus, User


logger = logging.getLogger(__name__)

T = TypeVar("T")

SORT_OPTIONS = ("rank", "date_added", "line_number", "status")
FILTER_OPTIONS = ("all", "available", "taken", "has_notes")

LINE_TAKEN_NOTIFICATION = "LINE_TAKEN"


@dataclass(frozen=True)
class FavoriteToggle:
    favorited: bool
    rank: Optional[int] = None


@dataclass(frozen=True)
class FavoriteEntry:
    """A favorite as shown in a user's list"""
    bid_line_id: int
    line_number: str
    operation_name: str
    status: str
    rank: int
    taken_by: Optional[str]
    notes: Optional[str]
    tags: Optional[list]
    created_at: datetime


def natural_key(value: str) -> Tuple:
    """Sort key that orders "2" before "10" and keeps text segments alphabetical"""
    return tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part.lower())
        for part in re.split(r"(\d+)", value or "") if part
    )


class RankLedger:
    """Dense per-user favorite ranking"""

    def __init__(self, data_manager: DataManager, retry_attempts: int = 3, retry_delay: float = 0.05):
        if retry_attempts < 1:
            raise ValidationError("retry_attempts must be at least 1")
        self.data_manager = data_manager
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay

    def _run(self, description: str, work: Callable[[Session], T]) -> T:
        """Run work in its own transaction, re-running the whole transaction on lock conflicts"""
        for attempt in range(1, self.retry_attempts + 1):
            try:
                with self.data_manager.transaction() as session:
                    return work(session)
            except (OperationalError, IntegrityError) as e:
                logger.warning(f"Attempt {attempt}/{self.retry_attempts} to {description} failed: {e}")
                if attempt < self.retry_attempts:
                    time.sleep(self.retry_delay * attempt)

        raise ConcurrencyError(f"Could not {description} after {self.retry_attempts} attempts")

    @staticmethod
    def _lock_user(session: Session, user_id: int) -> User:
        """Serialize rank changes for one user; a no-op lock clause on SQLite, which locked at BEGIN"""
        user = session.scalars(select(User).where(User.id == user_id).with_for_update()).first()
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    @staticmethod
    def _get_favorite(session: Session, user_id: int, bid_line_id: int) -> Optional[FavoriteLine]:
        return session.scalars(
            select(FavoriteLine).where(
                FavoriteLine.user_id == user_id,
                FavoriteLine.bid_line_id == bid_line_id,
            )
        ).first()

    @staticmethod
    def _close_gap(session: Session, user_id: int, removed_rank: int):
        session.execute(
            update(FavoriteLine)
            .where(FavoriteLine.user_id == user_id, FavoriteLine.rank > removed_rank)
            .values(rank=FavoriteLine.rank - 1)
        )

    def toggle_favorite(self, user_id: int, bid_line_id: int) -> FavoriteToggle:
        """
        Add the line to the user's favorites at the bottom, or remove it and close the gap.

        Raises:
            NotFoundError: unknown user or bid line
            ConcurrencyError: the change could not be serialized within the retry budget
        """
        def work(session: Session):
            self._lock_user(session, user_id)
            bid_line = session.get(BidLine, bid_line_id)
            if bid_line is None:
                raise NotFoundError(f"Bid line {bid_line_id} not found")

            existing = self._get_favorite(session, user_id, bid_line_id)
            if existing is not None:
                removed_rank = existing.rank
                session.delete(existing)
                session.flush()
                self._close_gap(session, user_id, removed_rank)
                return FavoriteToggle(favorited=False), None

            max_rank = session.scalar(
                select(func.max(FavoriteLine.rank)).where(FavoriteLine.user_id == user_id)
            ) or 0
            favorite = FavoriteLine(user_id=user_id, bid_line_id=bid_line_id, rank=max_rank + 1)
            session.add(favorite)
            session.flush()

            taken_line = bid_line.line_number if bid_line.status == LineStatus.TAKEN.value else None
            return FavoriteToggle(favorited=True, rank=favorite.rank), taken_line

        toggle, taken_line = self._run(f"toggle favorite {bid_line_id} for user {user_id}", work)
        logger.info(f"User {user_id} {'added' if toggle.favorited else 'removed'} favorite "
                    f"{bid_line_id}" + (f" at rank {toggle.rank}" if toggle.favorited else ""))

        if taken_line is not None:
            self._notify_line_taken(user_id, bid_line_id, taken_line)
        return toggle

    def _notify_line_taken(self, user_id: int, bid_line_id: int, line_number: str):
        """Tell the user the line they just favorited is already taken; never fails the toggle"""
        try:
            self.data_manager.add_notification(
                user_id,
                LINE_TAKEN_NOTIFICATION,
                "Favorited Line Taken",
                f"Line {line_number} has already been taken",
                {"bid_line_id": bid_line_id, "line_number": line_number},
            )
        except SQLAlchemyError as e:
            logger.warning(f"Could not record line-taken notification for user {user_id}: {e}")

    def remove_favorite(self, user_id: int, bid_line_id: int) -> bool:
        """Remove a favorite and close the gap. Returns False if it was not a favorite."""
        def work(session: Session) -> bool:
            self._lock_user(session, user_id)
            existing = self._get_favorite(session, user_id, bid_line_id)
            if existing is None:
                return False
            removed_rank = existing.rank
            session.delete(existing)
            session.flush()
            self._close_gap(session, user_id, removed_rank)
            return True

        return self._run(f"remove favorite {bid_line_id} for user {user_id}", work)

    def move_favorite(self, user_id: int, bid_line_id: int, new_rank: int) -> int:
        """Move a favorite to new_rank, shifting the ones in between by one"""
        def work(session: Session) -> int:
            self._lock_user(session, user_id)
            favorite = self._get_favorite(session, user_id, bid_line_id)
            if favorite is None:
                raise NotFoundError(f"Bid line {bid_line_id} is not a favorite of user {user_id}")

            count = session.scalar(
                select(func.count()).select_from(FavoriteLine).where(FavoriteLine.user_id == user_id)
            )
            if not isinstance(new_rank, int) or not 1 <= new_rank <= count:
                raise ValidationError(f"Rank must be between 1 and {count}, got {new_rank!r}")

            old_rank = favorite.rank
            if new_rank < old_rank:
                session.execute(
                    update(FavoriteLine)
                    .where(FavoriteLine.user_id == user_id,
                           FavoriteLine.rank >= new_rank, FavoriteLine.rank < old_rank)
                    .values(rank=FavoriteLine.rank + 1)
                )
            elif new_rank > old_rank:
                session.execute(
                    update(FavoriteLine)
                    .where(FavoriteLine.user_id == user_id,
                           FavoriteLine.rank > old_rank, FavoriteLine.rank <= new_rank)
                    .values(rank=FavoriteLine.rank - 1)
                )
            favorite.rank = new_rank
            return new_rank

        return self._run(f"move favorite {bid_line_id} for user {user_id}", work)

    def update_notes(self, user_id: int, bid_line_id: int, notes: Optional[str] = None,
                     tags: Optional[list] = None) -> bool:
        """Set notes and/or tags on an existing favorite"""
        def work(session: Session) -> bool:
            favorite = self._get_favorite(session, user_id, bid_line_id)
            if favorite is None:
                raise NotFoundError(f"Bid line {bid_line_id} is not a favorite of user {user_id}")
            if notes is not None:
                favorite.notes = notes
            if tags is not None:
                favorite.tags = list(tags)
            return True

        return self._run(f"update notes on favorite {bid_line_id}", work)

    def list_favorites(self, user_id: int, sort_by: str = "rank", filter_by: str = "all") -> List[FavoriteEntry]:
        if sort_by not in SORT_OPTIONS:
            raise ValidationError(f"sort_by must be one of {', '.join(SORT_OPTIONS)}")
        if filter_by not in FILTER_OPTIONS:
            raise ValidationError(f"filter_by must be one of {', '.join(FILTER_OPTIONS)}")

        with self.data_manager.session() as session:
            if session.get(User, user_id) is None:
                raise NotFoundError(f"User {user_id} not found")
            favorites = session.scalars(
                select(FavoriteLine)
                .where(FavoriteLine.user_id == user_id)
                .options(selectinload(FavoriteLine.bid_line).selectinload(BidLine.operation))
                .order_by(FavoriteLine.rank)
            ).all()

            entries = [
                FavoriteEntry(
                    bid_line_id=fav.bid_line_id,
                    line_number=fav.bid_line.line_number,
                    operation_name=fav.bid_line.operation.name,
                    status=fav.bid_line.status,
                    rank=fav.rank,
                    taken_by=fav.bid_line.taken_by,
                    notes=fav.notes,
                    tags=fav.tags,
                    created_at=fav.created_at,
                )
                for fav in favorites
            ]

        if filter_by == "available":
            entries = [e for e in entries if e.status == LineStatus.AVAILABLE.value]
        elif filter_by == "taken":
            entries = [e for e in entries if e.status == LineStatus.TAKEN.value]
        elif filter_by == "has_notes":
            entries = [e for e in entries if e.notes and e.notes.strip()]

        if sort_by == "date_added":
            entries.sort(key=lambda e: e.created_at, reverse=True)
        elif sort_by == "line_number":
            entries.sort(key=lambda e: natural_key(e.line_number))
        elif sort_by == "status":
            entries.sort(key=lambda e: (e.status, e.rank))
        return entries

    def ranks(self, user_id: int) -> List[int]:
        with self.data_manager.session() as session:
            return list(session.scalars(
                select(FavoriteLine.rank).where(FavoriteLine.user_id == user_id).order_by(FavoriteLine.rank)
            ))

    def repair_ranks(self, user_id: Optional[int] = None) -> Dict[int, int]:
        """
        Renumber ranks densely by (rank, created_at) for legacy data with gaps or duplicates.

        Returns:
            Number of favorites renumbered, per user that needed it
        """
        with self.data_manager.session() as session:
            query = select(FavoriteLine.user_id).distinct()
            if user_id is not None:
                query = query.where(FavoriteLine.user_id == user_id)
            user_ids = list(session.scalars(query))

        repaired = {}
        for uid in user_ids:
            def work(session: Session, uid=uid) -> int:
                self._lock_user(session, uid)
                favorites = session.scalars(
                    select(FavoriteLine)
                    .where(FavoriteLine.user_id == uid)
                    .order_by(FavoriteLine.rank, FavoriteLine.created_at, FavoriteLine.id)
                ).all()
                changed = 0
                for expected, favorite in enumerate(favorites, start=1):
                    if favorite.rank != expected:
                        favorite.rank = expected
                        changed += 1
                return changed

            changed = self._run(f"repair ranks for user {uid}", work)
            if changed:
                repaired[uid] = changed
                logger.info(f"Renumbered {changed} favorite(s) for user {uid}")
        return repaired
