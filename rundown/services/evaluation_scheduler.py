"""
Evaluation Scheduler

Runs once per slot (morning, afternoon, evening). For today's weekday and
the slot, every user whose preferences match gets one queue entry:

    notification_enabled
    AND message_day == today       (legacy send_day when message_day is unset)
    AND (message_time_period == slot OR message_time_period IS NULL)

Re-running a slot is safe: (user_id, scheduled_day, period) is the queue's
natural key, checked before insert and enforced by a unique constraint.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Dict, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rundown.core.config import settings
from rundown.models import NotificationQueueEntry, User, utc_now
from rundown.services.audit_log import record_event
from rundown.services.period_generator import week_start

logger = logging.getLogger(__name__)

WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


@dataclass(frozen=True)
class Slot:
    name: str
    hour: int  # UTC
    priority: int  # lower runs first


SLOTS: Dict[str, Slot] = {
    "morning": Slot("morning", 9, 1),
    "afternoon": Slot("afternoon", 15, 2),
    "evening": Slot("evening", 21, 3),
}


def get_slot(name: str) -> Slot:
    try:
        return SLOTS[name]
    except KeyError:
        raise ValueError(f"Unknown slot: {name}") from None


def weekday_name(day: date) -> str:
    return WEEKDAYS[day.weekday()]


def find_due_users(db: Session, day: date, slot: Slot) -> List[User]:
    today = weekday_name(day).lower()
    return (
        db.query(User)
        .filter(
            User.is_active.is_(True),
            User.notification_enabled.is_(True),
            or_(
                func.lower(User.message_day) == today,
                and_(User.message_day.is_(None), func.lower(User.send_day) == today),
            ),
            or_(User.message_time_period == slot.name, User.message_time_period.is_(None)),
        )
        .order_by(User.created_at.asc())
        .all()
    )


def messages_this_week(db: Session, user_id, day: date) -> int:
    """Entries that count against max_messages_per_week: pending, or sent with a delivery."""
    since = datetime.combine(week_start(day), time.min)
    return (
        db.query(NotificationQueueEntry)
        .filter(
            NotificationQueueEntry.user_id == user_id,
            NotificationQueueEntry.created_at >= since,
            or_(
                NotificationQueueEntry.status.in_(("queued", "processing")),
                and_(NotificationQueueEntry.status == "sent", NotificationQueueEntry.outcome == "delivered"),
            ),
        )
        .count()
    )


def _entry_exists(db: Session, user_id, day: date, slot: Slot) -> bool:
    return (
        db.query(NotificationQueueEntry.id)
        .filter(
            NotificationQueueEntry.user_id == user_id,
            NotificationQueueEntry.scheduled_day == day,
            NotificationQueueEntry.period == slot.name,
        )
        .first()
        is not None
    )


def schedule_slot(db: Session, slot_name: str, now: Optional[datetime] = None) -> Dict:
    """
    Enqueue one evaluation per due user for `slot_name` today.

    Returns counts: matched, enqueued, duplicates (already queued for this
    day and slot), capped (weekly message limit reached).
    """
    slot = get_slot(slot_name)
    now = now or utc_now()
    day = now.date()

    users = find_due_users(db, day, slot)
    logger.info(f"Scheduler {slot.name} for {weekday_name(day)}: {len(users)} users due")

    enqueued = duplicates = capped = 0
    for user in users:
        if _entry_exists(db, user.id, day, slot):
            duplicates += 1
            continue

        if user.max_messages_per_week is not None and messages_this_week(db, user.id, day) >= user.max_messages_per_week:
            logger.info(f"User {user.id} reached max messages per week ({user.max_messages_per_week})")
            capped += 1
            continue

        entry = NotificationQueueEntry(
            user_id=user.id,
            created_at=now,
            updated_at=now,
            scheduled_for=datetime.combine(day, time(slot.hour)),
            scheduled_day=day,
            period=slot.name,
            priority=slot.priority,
            status="queued",
            attempts=0,
            max_attempts=settings.QUEUE_MAX_ATTEMPTS,
        )
        db.add(entry)
        try:
            db.flush()
            record_event(
                db,
                "queue.enqueued",
                user_id=user.id,
                payload={"entry_id": str(entry.id), "day": day.isoformat(), "slot": slot.name},
            )
            db.commit()
            enqueued += 1
        except IntegrityError:
            # A concurrent run inserted the same (user, day, slot).
            db.rollback()
            duplicates += 1

    result = {
        "slot": slot.name,
        "day": day.isoformat(),
        "weekday": weekday_name(day),
        "matched": len(users),
        "enqueued": enqueued,
        "duplicates": duplicates,
        "capped": capped,
    }
    logger.info(f"Scheduler {slot.name} done: {result}")
    return result
