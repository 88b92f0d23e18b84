"""
Goals API Router

Service-facing goal endpoints: record a goal change, look up the goal in
force on a date, and read current progress.
"""

from datetime import date, datetime
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from rundown.core.auth import require_service_key
from rundown.core.database import get_db
from rundown.core.exceptions import NotFoundError, ValidationError
from rundown.models import User, utc_now
from rundown.services.goal_ledger import record_goal_change, resolve_active_goal
from rundown.services.goal_presets import build_goal
from rundown.services.period_generator import current_period
from rundown.services.progress_aggregator import calculate_progress

router = APIRouter(
    prefix="/v1/users/{user_id}",
    tags=["Goals"],
    dependencies=[Depends(require_service_key)],
)


class GoalCreateRequest(BaseModel):
    goal_type: str
    target_value: float = Field(gt=0)
    cadence: Literal["daily", "weekly", "monthly", "custom"] = "weekly"
    metric: Optional[Literal["count", "distance", "duration", "streak"]] = None
    target_unit: Optional[str] = None
    activity_types: Optional[List[str]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class GoalResponse(BaseModel):
    id: Optional[UUID] = None
    goal_type: str
    metric: str
    target_value: float
    target_unit: str
    cadence: str
    activity_types: Optional[List[str]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class GoalChangeResponse(BaseModel):
    goal: GoalResponse
    effective_date: date
    deferred: bool
    replaced_goal_id: Optional[UUID] = None


class PeriodResponse(BaseModel):
    start: datetime
    end: datetime


class ProgressResponse(BaseModel):
    goal: GoalResponse
    period: PeriodResponse
    current: float
    target: float
    remaining: float
    percent: int
    is_met: bool


def _get_user(db: Session, user_id: UUID) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User", str(user_id))
    return user


@router.post("/goals", response_model=GoalChangeResponse, status_code=201)
def create_goal(user_id: UUID, request: GoalCreateRequest, db: Session = Depends(get_db)):
    """Replace the user's active goal. Mid-period changes take effect next period."""
    user = _get_user(db, user_id)
    try:
        goal = build_goal(
            request.goal_type,
            request.target_value,
            cadence=request.cadence,
            metric=request.metric,
            target_unit=request.target_unit,
            activity_types=request.activity_types,
            start_date=request.start_date,
            end_date=request.end_date,
        )
    except ValueError as e:
        raise ValidationError(str(e), field="goal")

    change = record_goal_change(db, user.id, goal)
    return GoalChangeResponse(
        goal=GoalResponse.model_validate(change.goal),
        effective_date=change.effective_date,
        deferred=change.deferred,
        replaced_goal_id=change.replaced_goal_id,
    )


@router.get("/goals/active", response_model=GoalResponse)
def get_active_goal_on(
    user_id: UUID,
    at: Optional[date] = Query(None, description="Date to resolve (YYYY-MM-DD); defaults to today"),
    db: Session = Depends(get_db),
):
    _get_user(db, user_id)
    on = at or utc_now().date()
    goal = resolve_active_goal(db, user_id, on)
    if goal is None:
        raise NotFoundError("Goal", f"user {user_id} on {on.isoformat()}")
    return GoalResponse.model_validate(goal)


@router.get("/progress", response_model=ProgressResponse)
def get_progress(user_id: UUID, db: Session = Depends(get_db)):
    """Progress of the goal in force now, over its current period."""
    _get_user(db, user_id)
    now = utc_now()
    goal = resolve_active_goal(db, user_id, now)
    period = current_period(goal, now) if goal is not None else None
    if goal is None or period is None:
        raise NotFoundError("Goal", f"user {user_id}")

    progress = calculate_progress(db, user_id, goal, period)
    return ProgressResponse(
        goal=GoalResponse.model_validate(goal),
        period=PeriodResponse(start=period.start, end=period.end),
        **progress.to_dict(),
    )
