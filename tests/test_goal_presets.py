"""Goal presets and message goal-type mapping."""

import pytest

from rundown.services.goal_presets import RIDE_TYPES, RUN_TYPES, build_goal, message_goal_type


class TestBuildGoal:

    def test_preset_fixes_metric_unit_and_filter(self):
        goal = build_goal("total_miles_running", 10)
        assert goal.metric == "distance"
        assert goal.target_unit == "miles"
        assert goal.activity_types == list(RUN_TYPES)

    def test_total_activities_has_no_filter(self):
        assert build_goal("total_activities", 3).activity_types is None

    def test_custom_duration_goal(self):
        goal = build_goal("custom", 120, metric="duration", activity_types=["Swim"])
        assert goal.target_unit == "minutes"
        assert goal.activity_types == ["Swim"]

    def test_custom_cadence_requires_dates(self):
        with pytest.raises(ValueError, match="start_date"):
            build_goal("total_runs", 3, cadence="custom")

    @pytest.mark.parametrize("kwargs", [
        {"goal_type": "total_laps", "target_value": 3},
        {"goal_type": "total_runs", "target_value": 0},
        {"goal_type": "custom", "target_value": 3, "metric": "elevation"},
        {"goal_type": "custom", "target_value": 3, "metric": "distance", "target_unit": "minutes"},
    ])
    def test_invalid_goals_rejected(self, kwargs):
        with pytest.raises(ValueError):
            build_goal(**kwargs)


class TestMessageGoalType:

    @pytest.mark.parametrize("goal_type,expected", [
        ("total_runs", "runs"),
        ("total_miles_running", "miles"),
        ("total_activities", "activities"),
        ("total_rides_biking", "bike_activities"),
        ("total_miles_biking", "bike_miles"),
    ])
    def test_presets(self, goal_type, expected):
        assert message_goal_type(build_goal(goal_type, 3)) == expected

    def test_custom_ride_distance(self):
        goal = build_goal("custom", 50, metric="distance", activity_types=list(RIDE_TYPES[:2]))
        assert message_goal_type(goal) == "bike_miles"
