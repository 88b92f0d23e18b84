"""
Goal Ledger

Tracks which goal governs which dates.

A goal change never rewrites a period that is already under way: when a
user replaces an active goal mid-period, the new goal takes effect at the
next period boundary. History rows are the source of truth for "what goal
applied on date D"; the latest row with effective_date <= D wins.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional, Union
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from rundown.models import Goal, GoalHistory, User, utc_now
from rundown.services.audit_log import record_event
from rundown.services.goal_presets import LEGACY_GOAL_TYPES, build_goal
from rundown.services.period_generator import current_period

logger = logging.getLogger(__name__)


@dataclass
class GoalChange:
    goal: Goal
    history: GoalHistory
    effective_date: date
    deferred: bool  # True when a prior goal keeps governing the current period
    replaced_goal_id: Optional[UUID] = None


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


def get_active_goal(db: Session, user_id: UUID) -> Optional[Goal]:
    return (
        db.query(Goal)
        .filter(Goal.user_id == user_id, Goal.is_active.is_(True))
        .order_by(Goal.created_at.desc())
        .first()
    )


def get_goal_history(db: Session, user_id: UUID) -> List[GoalHistory]:
    return (
        db.query(GoalHistory)
        .filter(GoalHistory.user_id == user_id)
        .order_by(GoalHistory.effective_date.asc(), GoalHistory.created_at.asc())
        .all()
    )


def _has_history(db: Session, user_id: UUID) -> bool:
    return db.query(GoalHistory.id).filter(GoalHistory.user_id == user_id).first() is not None


def _legacy_goal(user: Optional[User], on: date) -> Optional[Goal]:
    """
    Transient goal built from the single-field columns on users.

    Effective from the user's creation date. Never added to the session.
    """
    if user is None:
        return None
    value = user.goal_value or user.goal_per_week
    if not value and not user.goal_type:
        return None
    if user.created_at and on < user.created_at.date():
        return None
    goal_type = LEGACY_GOAL_TYPES.get(user.goal_type or "", user.goal_type)
    if goal_type not in LEGACY_GOAL_TYPES.values():
        goal_type = "total_activities"
    return build_goal(goal_type, float(value or 3), user_id=user.id, cadence="weekly")


def resolve_active_goal(db: Session, user_id: UUID, at_date: Union[date, datetime]) -> Optional[Goal]:
    """
    The goal that governed `user_id` on `at_date`.

    Looks at goal history first. Dates before the earliest history row fall
    back to the legacy single-field goal on the user row, so weeks that ran
    under a pre-history goal keep being judged against it.
    """
    on = _as_date(at_date)

    entry = (
        db.query(GoalHistory)
        .filter(GoalHistory.user_id == user_id, GoalHistory.effective_date <= on)
        .order_by(GoalHistory.effective_date.desc(), GoalHistory.created_at.desc())
        .first()
    )
    if entry is not None:
        return entry.goal

    return _legacy_goal(db.get(User, user_id), on)


def compute_effective_date(prior: Optional[Goal], new_goal: Goal, now: datetime) -> date:
    """
    Date from which `new_goal` governs evaluation.

    - No prior goal (or the prior goal's period is not running): the start
      of the new goal's current period.
    - Prior goal mid-period: the first day after that period.
    - Exactly on a boundary: that boundary.
    """
    if prior is not None:
        period = current_period(prior, now)
        if period is not None and period.contains(now):
            if now == period.start:
                return period.start.date()
            return period.next_start.date()

    period = current_period(new_goal, now)
    if period is None:
        return now.date()
    return period.start.date()


def _insert_history(db: Session, goal: Goal, effective: date) -> GoalHistory:
    history = GoalHistory(
        user_id=goal.user_id,
        goal_id=goal.id,
        goal_type=goal.goal_type,
        goal_value=goal.target_value,
        effective_date=effective,
    )
    db.add(history)
    db.flush()
    return history


def record_goal_change(db: Session, user_id: UUID, new_goal: Goal, now: Optional[datetime] = None) -> GoalChange:
    """
    Replace the user's active goal, in one transaction.

    Deactivates the prior goal, stores the new one, drops history rows at or
    after the new effective date (an earlier pending change that never took
    effect), and appends the new history row. Any failure rolls the whole
    change back so progress is never computed against a half-applied goal.
    """
    now = now or utc_now()

    try:
        prior = get_active_goal(db, user_id)
        legacy = None
        if prior is None and not _has_history(db, user_id):
            legacy = _legacy_goal(db.get(User, user_id), now.date())
        effective = compute_effective_date(prior or legacy, new_goal, now)

        if prior is not None:
            prior.is_active = False

        new_goal.user_id = user_id
        new_goal.is_active = True
        new_goal.created_at = now
        db.add(new_goal)
        db.flush()

        superseded = (
            db.query(GoalHistory)
            .filter(GoalHistory.user_id == user_id, GoalHistory.effective_date >= effective)
            .delete(synchronize_session=False)
        )

        history = _insert_history(db, new_goal, effective)

        record_event(
            db,
            "goal.changed",
            user_id=user_id,
            payload={
                "goal_id": str(new_goal.id),
                "goal_type": new_goal.goal_type,
                "goal_value": new_goal.target_value,
                "effective_date": effective.isoformat(),
                "replaced_goal_id": str(prior.id) if prior else None,
                "superseded_history_rows": superseded,
            },
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Goal change for user {user_id} rolled back: {e}")
        raise

    deferred = (prior is not None or legacy is not None) and effective > now.date()
    logger.info(
        f"Recorded goal change for user {user_id}: {new_goal.goal_type}={new_goal.target_value} "
        f"effective {effective.isoformat()}" + (" (deferred)" if deferred else "")
    )
    return GoalChange(
        goal=new_goal,
        history=history,
        effective_date=effective,
        deferred=deferred,
        replaced_goal_id=prior.id if prior else None,
    )
