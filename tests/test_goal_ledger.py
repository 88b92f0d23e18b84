"""Goal ledger: deferred goal changes, history resolution and atomicity."""

from datetime import date, datetime

import pytest

from rundown.models import AccountabilityEvent, Goal, GoalHistory, User
from rundown.services import goal_ledger
from rundown.services.goal_ledger import (
    get_active_goal,
    record_goal_change,
    resolve_active_goal,
)
from rundown.services.goal_presets import build_goal


class TestRecordGoalChange:

    def test_first_goal_is_effective_from_current_period_start(self, db_session, test_user):
        change = record_goal_change(db_session, test_user.id, build_goal("total_runs", 3), now=datetime(2024, 6, 5, 10, 0))
        assert change.effective_date == date(2024, 6, 3)
        assert change.deferred is False
        assert change.replaced_goal_id is None

    def test_mid_week_change_is_deferred_to_next_monday(self, db_session, test_user):
        first = record_goal_change(
            db_session, test_user.id, build_goal("total_runs", 3), now=datetime(2024, 6, 3, 8, 0)
        ).goal

        change = record_goal_change(
            db_session, test_user.id, build_goal("total_runs", 5), now=datetime(2024, 6, 5, 12, 0)
        )

        assert change.effective_date == date(2024, 6, 10)
        assert change.deferred is True
        assert change.replaced_goal_id == first.id
        for day in range(3, 10):
            assert resolve_active_goal(db_session, test_user.id, date(2024, 6, day)).id == first.id
        assert resolve_active_goal(db_session, test_user.id, date(2024, 6, 10)).id == change.goal.id

    def test_change_deactivates_prior_goal(self, db_session, test_user):
        first = record_goal_change(db_session, test_user.id, build_goal("total_runs", 3), now=datetime(2024, 6, 3, 8, 0)).goal
        second = record_goal_change(db_session, test_user.id, build_goal("total_activities", 4), now=datetime(2024, 6, 5)).goal

        db_session.refresh(first)
        assert first.is_active is False
        assert get_active_goal(db_session, test_user.id).id == second.id
        assert db_session.query(Goal).filter(Goal.user_id == test_user.id, Goal.is_active.is_(True)).count() == 1

    def test_pending_change_is_replaced_by_later_change(self, db_session, test_user):
        record_goal_change(db_session, test_user.id, build_goal("total_runs", 3), now=datetime(2024, 6, 3, 8, 0))
        record_goal_change(db_session, test_user.id, build_goal("total_runs", 5), now=datetime(2024, 6, 5))
        latest = record_goal_change(db_session, test_user.id, build_goal("total_runs", 7), now=datetime(2024, 6, 6)).goal

        rows = db_session.query(GoalHistory).filter(GoalHistory.user_id == test_user.id).all()
        assert sorted((r.effective_date, r.goal_value) for r in rows) == [
            (date(2024, 6, 3), 3.0),
            (date(2024, 6, 10), 7.0),
        ]
        assert resolve_active_goal(db_session, test_user.id, date(2024, 6, 12)).id == latest.id

    def test_change_records_audit_event(self, db_session, test_user):
        record_goal_change(db_session, test_user.id, build_goal("total_runs", 3), now=datetime(2024, 6, 3, 8, 0))
        events = db_session.query(AccountabilityEvent).filter(AccountabilityEvent.event_type == "goal.changed").all()
        assert len(events) == 1
        assert events[0].payload["effective_date"] == "2024-06-03"

    def test_history_failure_rolls_back_goal_write(self, db_session, test_user, monkeypatch):
        first = record_goal_change(db_session, test_user.id, build_goal("total_runs", 3), now=datetime(2024, 6, 3, 8, 0)).goal

        def broken_insert(db, goal, effective):
            raise RuntimeError("history write failed")

        monkeypatch.setattr(goal_ledger, "_insert_history", broken_insert)
        with pytest.raises(RuntimeError):
            record_goal_change(db_session, test_user.id, build_goal("total_runs", 9), now=datetime(2024, 6, 5))

        assert get_active_goal(db_session, test_user.id).id == first.id
        assert db_session.query(Goal).filter(Goal.user_id == test_user.id).count() == 1
        assert db_session.query(GoalHistory).filter(GoalHistory.user_id == test_user.id).count() == 1


class TestResolveActiveGoal:

    def test_date_before_any_history_resolves_to_none(self, db_session, test_user):
        record_goal_change(db_session, test_user.id, build_goal("total_runs", 3), now=datetime(2024, 6, 5))
        assert resolve_active_goal(db_session, test_user.id, date(2024, 5, 1)) is None

    def test_legacy_single_field_goal_when_no_history(self, db_session):
        user = User(email="legacy@example.com", created_at=datetime(2024, 1, 1), goal_type="runs", goal_per_week=4)
        db_session.add(user)
        db_session.commit()

        goal = resolve_active_goal(db_session, user.id, date(2024, 6, 5))
        assert goal.goal_type == "total_runs"
        assert goal.target_value == 4.0
        assert goal.cadence == "weekly"
        assert resolve_active_goal(db_session, user.id, date(2023, 12, 1)) is None

    def test_user_without_any_goal(self, db_session, test_user):
        assert resolve_active_goal(db_session, test_user.id, date(2024, 6, 5)) is None


class TestLegacyGoalMigration:

    @pytest.fixture
    def legacy_user(self, db_session):
        user = User(email="migrated@example.com", created_at=datetime(2024, 1, 1), goal_type="runs", goal_per_week=3)
        db_session.add(user)
        db_session.commit()
        return user

    def test_first_recorded_goal_waits_for_the_legacy_week_to_end(self, db_session, legacy_user):
        change = record_goal_change(
            db_session, legacy_user.id, build_goal("total_runs", 10), now=datetime(2024, 6, 5, 12, 0)
        )

        assert change.effective_date == date(2024, 6, 10)
        assert change.deferred is True
        assert change.replaced_goal_id is None
        assert resolve_active_goal(db_session, legacy_user.id, date(2024, 6, 4)).target_value == 3.0
        assert resolve_active_goal(db_session, legacy_user.id, date(2024, 6, 10)).target_value == 10.0

    def test_weeks_before_first_history_row_keep_the_legacy_goal(self, db_session, legacy_user):
        record_goal_change(db_session, legacy_user.id, build_goal("total_runs", 10), now=datetime(2024, 6, 5, 12, 0))

        earlier = resolve_active_goal(db_session, legacy_user.id, date(2024, 5, 29))
        assert earlier is not None
        assert earlier.goal_type == "total_runs"
        assert earlier.target_value == 3.0

    def test_change_on_monday_midnight_takes_effect_immediately(self, db_session, legacy_user):
        change = record_goal_change(db_session, legacy_user.id, build_goal("total_runs", 10), now=datetime(2024, 6, 10))

        assert change.effective_date == date(2024, 6, 10)
        assert change.deferred is False


class TestPeriodBoundary:

    def test_change_in_last_second_of_week_is_deferred(self, db_session, test_user):
        first = record_goal_change(
            db_session, test_user.id, build_goal("total_runs", 3), now=datetime(2024, 6, 3, 8, 0)
        ).goal

        change = record_goal_change(
            db_session, test_user.id, build_goal("total_runs", 5), now=datetime(2024, 6, 9, 23, 59, 59, 500000)
        )

        assert change.effective_date == date(2024, 6, 10)
        assert resolve_active_goal(db_session, test_user.id, date(2024, 6, 5)).id == first.id
        assert db_session.query(GoalHistory).filter(GoalHistory.user_id == test_user.id).count() == 2
