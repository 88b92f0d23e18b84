"""
Progress Aggregator

Measures a goal over a period from synced activity records, and keeps
per-period progress snapshots up to date.

Metrics:
- count:    number of matching activities
- distance: summed distance in the goal's unit (miles = m / 1609.34, km = m / 1000)
- duration: summed moving time in minutes
- streak:   longest run of consecutive days with at least one matching activity
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence
from uuid import UUID
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rundown.core.exceptions import ActivityFetchError
from rundown.models import Activity, Goal, GoalProgress, utc_now
from rundown.services.period_generator import Period, generate_periods

logger = logging.getLogger(__name__)

METERS_PER_MILE = 1609.34
METERS_PER_KM = 1000.0
UPCOMING_DEADLINE_DAYS = 2


@dataclass
class Progress:
    current: float
    target: float

    @property
    def is_met(self) -> bool:
        return self.current >= self.target

    @property
    def is_partial(self) -> bool:
        return 0 < self.current < self.target

    @property
    def remaining(self) -> float:
        return max(0.0, round(self.target - self.current, 2))

    @property
    def percent(self) -> int:
        if not self.target:
            return 100
        return min(100, int(round(self.current / self.target * 100)))

    def to_dict(self) -> Dict:
        return {
            "current": self.current,
            "target": self.target,
            "remaining": self.remaining,
            "percent": self.percent,
            "is_met": self.is_met,
        }


def fetch_activities(
    db: Session,
    user_id: UUID,
    period: Period,
    activity_types: Optional[Sequence[str]] = None,
) -> List[Activity]:
    """
    Activities for `user_id` starting within the period (up to its next_start).

    Store errors surface as ActivityFetchError; retrying is the caller's job.
    """
    try:
        q = db.query(Activity).filter(
            Activity.user_id == user_id,
            Activity.start_time >= period.start,
            Activity.start_time < period.next_start,
        )
        if activity_types:
            q = q.filter(Activity.activity_type.in_(list(activity_types)))
        return q.order_by(Activity.start_time.asc()).all()
    except SQLAlchemyError as e:
        raise ActivityFetchError(f"Could not load activities for user {user_id}: {e}") from e


def longest_streak(days: Iterable[date]) -> int:
    """Longest run of consecutive calendar days in `days` (duplicates ignored)."""
    ordered = sorted(set(days))
    if not ordered:
        return 0

    best = current = 1
    for prev, curr in zip(ordered, ordered[1:]):
        if (curr - prev).days == 1:
            current += 1
            best = max(best, current)
        else:
            current = 1
    return best


def aggregate(goal: Goal, activities: Sequence[Activity]) -> float:
    metric = goal.metric or "count"

    if metric == "count":
        return float(len(activities))

    if metric == "distance":
        divisor = METERS_PER_MILE if goal.target_unit == "miles" else METERS_PER_KM
        total = sum((a.distance_m or 0) / divisor for a in activities)
        return round(total, 2)

    if metric == "duration":
        total = sum((a.moving_time_s or 0) / 60 for a in activities)
        return round(total, 2)

    if metric == "streak":
        return float(longest_streak(a.start_time.date() for a in activities))

    raise ValueError(f"Unknown goal metric: {metric}")


def calculate_progress(db: Session, user_id: UUID, goal: Goal, period: Period) -> Progress:
    """Progress of `goal` for `user_id` over `period`."""
    activities = fetch_activities(db, user_id, period, goal.activity_types)
    return Progress(current=aggregate(goal, activities), target=float(goal.target_value))


def upsert_progress_snapshot(db: Session, goal: Goal, period: Period, progress: Progress) -> GoalProgress:
    snapshot = (
        db.query(GoalProgress)
        .filter(GoalProgress.goal_id == goal.id, GoalProgress.period_start == period.start)
        .first()
    )
    if snapshot is None:
        snapshot = GoalProgress(
            goal_id=goal.id,
            user_id=goal.user_id,
            period_start=period.start,
            period_end=period.end,
        )
        db.add(snapshot)

    snapshot.current_value = progress.current
    snapshot.target_value = progress.target
    snapshot.is_achieved = progress.is_met
    snapshot.last_updated = utc_now()
    return snapshot


def update_user_progress(db: Session, user_id: UUID, now: Optional[datetime] = None) -> Dict:
    """
    Refresh progress snapshots for every active goal of `user_id`.

    One goal failing is logged and does not stop the others.
    """
    now = now or utc_now()
    goals = db.query(Goal).filter(Goal.user_id == user_id, Goal.is_active.is_(True)).all()

    updated: List[str] = []
    for goal in goals:
        try:
            for period in generate_periods(goal, now):
                progress = calculate_progress(db, user_id, goal, period)
                upsert_progress_snapshot(db, goal, period, progress)
            db.commit()
            updated.append(str(goal.id))
        except (ActivityFetchError, SQLAlchemyError) as e:
            db.rollback()
            logger.error(f"Error updating goal {goal.id}: {e}")

    return {"updated_goals": updated}


def update_all_user_progress(db: Session, now: Optional[datetime] = None) -> Dict:
    """Refresh snapshots for every user with an active goal."""
    user_ids = [
        row[0]
        for row in db.query(Goal.user_id).filter(Goal.is_active.is_(True)).distinct().all()
    ]

    results = []
    for user_id in user_ids:
        result = update_user_progress(db, user_id, now)
        results.append({"user_id": str(user_id), "status": "success", **result})

    logger.info(f"Updated goal progress for {len(results)} users")
    return {"updated_users": len(results), "results": results}


def check_missed_goals(db: Session, user_id: UUID, now: Optional[datetime] = None) -> Dict:
    """
    Ended-and-unachieved snapshots, plus unachieved ones due within two days.
    """
    now = now or utc_now()
    snapshots = (
        db.query(GoalProgress)
        .join(Goal, Goal.id == GoalProgress.goal_id)
        .filter(GoalProgress.user_id == user_id, Goal.is_active.is_(True))
        .all()
    )

    missed = [s for s in snapshots if not s.is_achieved and s.period_end < now]
    upcoming = []
    for s in snapshots:
        if s.is_achieved or s.period_end < now:
            continue
        if s.period_end - now <= timedelta(days=UPCOMING_DEADLINE_DAYS):
            upcoming.append(s)

    return {
        "missed_goals": missed,
        "upcoming_deadlines": upcoming,
        "should_notify": bool(missed or upcoming),
    }
