"""
Activity Feed for the Shift Bidding core

Read model over the activity log: recent bid line transitions, newest
first, bounded by a count and a time window. Also clears old entries.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import selectinload

from .claim_state_machine import Actions
from .data_manager import DataManager, ValidationError
from .models import ActivityLog, BidLine, User, utcnow


logger = logging.getLogger(__name__)

CLEARED_ACTIVITY = "ADMIN_CLEARED_ACTIVITY_LOG"
CLEAR_MODES = ("all", "older_than_days", "by_bid_period")

# action -> (type, status shown in the feed)
FEED_ACTIONS = {
    Actions.CLAIMED: ("claim", "TAKEN"),
    Actions.ASSIGNED: ("assign", "TAKEN"),
    Actions.RELEASED: ("release", "AVAILABLE"),
    Actions.BLACKED_OUT: ("blackout", "BLACKED_OUT"),
}


@dataclass(frozen=True)
class ActivityEntry:
    id: int
    timestamp: datetime
    actor_name: str
    action: str
    type: str
    status: str
    line_number: str
    operation_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "actor_name": self.actor_name,
            "action": self.action,
            "type": self.type,
            "status": self.status,
            "line_number": self.line_number,
            "operation_name": self.operation_name,
        }


def actor_name(user: Optional[User]) -> str:
    if user is None:
        return "Unknown User"
    if user.first_name and user.last_name:
        return f"{user.first_name} {user.last_name}"
    return user.badge_number or "Unknown User"


class ActivityFeed:
    """Newest-first view of bid line activity"""

    def __init__(self, data_manager: DataManager, default_limit: int = 50, default_hours: int = 24):
        self.data_manager = data_manager
        self.default_limit = default_limit
        self.default_hours = default_hours

    def recent(self, limit: Optional[int] = None, hours: Optional[int] = None,
               now: Optional[datetime] = None) -> List[ActivityEntry]:
        limit = self.default_limit if limit is None else limit
        hours = self.default_hours if hours is None else hours
        if limit < 1 or hours < 1:
            raise ValidationError("limit and hours must be positive")

        cutoff = (now or utcnow()) - timedelta(hours=hours)
        with self.data_manager.session() as session:
            rows = session.scalars(
                select(ActivityLog)
                .where(ActivityLog.timestamp >= cutoff, ActivityLog.action.in_(list(FEED_ACTIONS)))
                .options(
                    selectinload(ActivityLog.user),
                    selectinload(ActivityLog.bid_line).selectinload(BidLine.operation),
                )
                .order_by(ActivityLog.timestamp.desc(), ActivityLog.id.desc())
                .limit(limit)
            ).all()

            entries = []
            for row in rows:
                details = row.details or {}
                feed_type, status = FEED_ACTIONS[row.action]
                line_number = (row.bid_line.line_number if row.bid_line else None) \
                    or details.get("line_number") or "Unknown"
                operation_name = (row.bid_line.operation.name if row.bid_line and row.bid_line.operation else None) \
                    or details.get("operation_name") or "Unknown Operation"
                entries.append(ActivityEntry(
                    id=row.id,
                    timestamp=row.timestamp,
                    actor_name=actor_name(row.user),
                    action=row.action,
                    type=feed_type,
                    status=status,
                    line_number=line_number,
                    operation_name=operation_name,
                ))
        return entries

    def clear(self, mode: str, actor_id: Optional[int] = None, days: Optional[int] = None,
              bid_period_id: Optional[int] = None) -> int:
        """
        Delete activity entries and log the clearing itself.

        Args:
            mode: "all", "older_than_days" (needs days >= 1) or "by_bid_period" (needs bid_period_id)

        Returns:
            Number of entries deleted
        """
        if mode not in CLEAR_MODES:
            raise ValidationError(f"Invalid clear mode '{mode}', expected one of {', '.join(CLEAR_MODES)}")
        if mode == "older_than_days" and (not days or days < 1):
            raise ValidationError("days is required and must be at least 1")
        if mode == "by_bid_period" and bid_period_id is None:
            raise ValidationError("bid_period_id is required")

        with self.data_manager.transaction() as session:
            statement = delete(ActivityLog)
            if mode == "older_than_days":
                statement = statement.where(ActivityLog.timestamp < utcnow() - timedelta(days=days))
            elif mode == "by_bid_period":
                line_ids = select(BidLine.id).where(BidLine.bid_period_id == bid_period_id)
                statement = statement.where(ActivityLog.bid_line_id.in_(line_ids))
            deleted = session.execute(statement.execution_options(synchronize_session=False)).rowcount

            session.add(ActivityLog(
                user_id=actor_id,
                action=CLEARED_ACTIVITY,
                details={"mode": mode, "days": days, "bid_period_id": bid_period_id, "deleted": deleted},
            ))

        logger.info(f"Cleared {deleted} activity entries ({mode})")
        return deleted
