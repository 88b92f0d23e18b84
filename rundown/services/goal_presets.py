"""
Goal Presets

The goal kinds the product offers, and how each one is measured.

A preset fixes the metric, the activity-type filter and the unit; the user
only picks a target and a cadence. `custom` goals carry their own settings.
"""

from dataclasses import dataclass
from datetime import date
from typing import Dict, Optional, Tuple

from rundown.models import Goal


RUN_TYPES: Tuple[str, ...] = ("Run", "VirtualRun", "TrailRun")
RIDE_TYPES: Tuple[str, ...] = ("Ride", "VirtualRide", "EBikeRide", "MountainBikeRide", "GravelRide")

METRICS = ("count", "distance", "duration", "streak")
UNITS_BY_METRIC = {
    "count": ("activities", "runs", "rides"),
    "distance": ("miles", "kilometers"),
    "duration": ("minutes",),
    "streak": ("days",),
}


@dataclass(frozen=True)
class GoalPreset:
    metric: str
    unit: str
    activity_types: Optional[Tuple[str, ...]]
    message_goal_type: str  # key into the message bank's {goalType} display table


GOAL_PRESETS: Dict[str, GoalPreset] = {
    "total_activities": GoalPreset("count", "activities", None, "activities"),
    "total_runs": GoalPreset("count", "runs", RUN_TYPES, "runs"),
    "total_miles_running": GoalPreset("distance", "miles", RUN_TYPES, "miles"),
    "total_rides_biking": GoalPreset("count", "rides", RIDE_TYPES, "bike_activities"),
    "total_miles_biking": GoalPreset("distance", "miles", RIDE_TYPES, "bike_miles"),
    "streak_days": GoalPreset("streak", "days", None, "activities"),
}

# Single-field goal values stored on users before goal history existed.
LEGACY_GOAL_TYPES = {
    "runs": "total_runs",
    "run_miles": "total_miles_running",
    "miles": "total_miles_running",
    "activities": "total_activities",
    "bike_rides": "total_rides_biking",
    "bike_activities": "total_rides_biking",
    "bike_miles": "total_miles_biking",
}


def build_goal(
    goal_type: str,
    target_value: float,
    *,
    user_id=None,
    cadence: str = "weekly",
    metric: Optional[str] = None,
    target_unit: Optional[str] = None,
    activity_types=None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> Goal:
    """
    Build an unsaved Goal from a preset key (or 'custom' plus explicit settings).

    Raises ValueError for unknown presets or inconsistent custom settings.
    """
    if target_value is None or target_value <= 0:
        raise ValueError("target_value must be positive")
    if cadence == "custom" and not (start_date and end_date):
        raise ValueError("custom cadence requires start_date and end_date")
    if start_date and end_date and end_date < start_date:
        raise ValueError("end_date must not be before start_date")

    if goal_type in GOAL_PRESETS:
        preset = GOAL_PRESETS[goal_type]
        metric = preset.metric
        target_unit = preset.unit
        activity_types = list(preset.activity_types) if preset.activity_types else None
    elif goal_type == "custom":
        metric = metric or "count"
        if metric not in METRICS:
            raise ValueError(f"Unknown metric: {metric}")
        target_unit = target_unit or UNITS_BY_METRIC[metric][0]
        if target_unit not in UNITS_BY_METRIC[metric]:
            raise ValueError(f"Unit {target_unit} does not fit metric {metric}")
        activity_types = list(activity_types) if activity_types else None
    else:
        raise ValueError(f"Unknown goal type: {goal_type}")

    return Goal(
        user_id=user_id,
        goal_type=goal_type,
        metric=metric,
        target_unit=target_unit,
        activity_types=activity_types,
        target_value=float(target_value),
        cadence=cadence,
        start_date=start_date,
        end_date=end_date,
        is_active=True,
    )


def message_goal_type(goal: Goal) -> str:
    """The message-bank goal type used to phrase messages about `goal`."""
    preset = GOAL_PRESETS.get(goal.goal_type)
    if preset is not None:
        return preset.message_goal_type
    types = set(goal.activity_types or [])
    if goal.metric == "distance":
        return "bike_miles" if types and types <= set(RIDE_TYPES) else "miles"
    if types and types <= set(RUN_TYPES):
        return "runs"
    if types and types <= set(RIDE_TYPES):
        return "bike_activities"
    return "activities"
