"""
Delivery pass: evaluation, per-contact fan-out, retries and queue recovery.

Every test runs in the week of Monday 2024-06-03. The test user wants a
Sunday-evening check-in, so schedule_slot("evening") at 2024-06-09 21:00
enqueues exactly one entry for them.
"""

from datetime import timedelta

import pytest

from rundown.core.exceptions import ActivityFetchError
from rundown.models import MessageDelivery, NotificationQueueEntry, User
from rundown.services import delivery_coordinator
from rundown.services.delivery_coordinator import (
    STALE_CLAIM_ERROR,
    SendGate,
    claim_batch,
    decide_intent,
    reap_stale_claims,
    run_delivery_pass,
)
from rundown.services.evaluation_scheduler import schedule_slot
from rundown.services.message_bank import MessageIntent
from rundown.services.progress_aggregator import Progress
from rundown.services.transports import DeliveryResult

from conftest import WEEK_SUNDAY_EVENING


def no_sleep(_seconds):
    pass


def run_pass(db_session, fake_transports, deduplicator, **kwargs):
    kwargs.setdefault("sleep", no_sleep)
    return run_delivery_pass(db_session, fake_transports, deduplicator, now=WEEK_SUNDAY_EVENING, **kwargs)


def queue_entry(db_session):
    return db_session.query(NotificationQueueEntry).one()


def failure(code):
    return DeliveryResult(success=False, error_code=code, error_message=f"{code} from provider")


@pytest.fixture
def scheduled(db_session, test_user, make_goal, make_activity, make_contact):
    """One missed goal (1 of 3 activities), one email contact, one queued entry."""
    make_goal(test_user, "total_activities", 3)
    make_activity(test_user)
    contact = make_contact(test_user, email="buddy@example.com")
    schedule_slot(db_session, "evening", now=WEEK_SUNDAY_EVENING)
    return contact


class TestDecideIntent:

    def test_met_goal_skipped_unless_opted_in(self, test_user):
        assert decide_intent(test_user, Progress(3, 3)) == (None, "skipped_goal_met")
        test_user.send_if_goal_met = True
        assert decide_intent(test_user, Progress(4, 3)) == (MessageIntent.CONGRATULATORY, None)

    def test_partial_goal(self, test_user):
        assert decide_intent(test_user, Progress(1, 3)) == (MessageIntent.MISSED_GOAL, None)
        test_user.send_if_partial_goal = False
        assert decide_intent(test_user, Progress(1, 3)) == (None, "skipped_partial")
        # Zero progress is a miss, not a partial.
        assert decide_intent(test_user, Progress(0, 3)) == (MessageIntent.MISSED_GOAL, None)

    def test_weekly_summary_preference(self, test_user):
        test_user.unmet_message_type = "weekly-summary"
        assert decide_intent(test_user, Progress(0, 3)) == (MessageIntent.WEEKLY_SUMMARY, None)


class TestEndToEnd:

    def test_missed_goal_sends_exactly_one_message(self, db_session, scheduled, fake_transports, deduplicator):
        result = run_pass(db_session, fake_transports, deduplicator)

        assert result.claimed == 1
        assert result.sent == 1
        assert result.send_attempts == 1

        entry = queue_entry(db_session)
        assert entry.status == "sent"
        assert entry.outcome == "delivered"
        assert entry.completed_at == WEEK_SUNDAY_EVENING

        [email] = fake_transports.email.sent
        assert email["recipient"] == "buddy@example.com"
        assert email["subject"]
        assert "This week's progress: 1 out of 3 activities completed" in email["content"]
        assert scheduled.opt_out_token in email["html"]

        delivery = db_session.query(MessageDelivery).one()
        assert delivery.status == "sent"
        assert delivery.channel == "email"
        assert delivery.intent == "missed-goal"
        assert "{" not in delivery.message_text

    def test_entry_is_never_sent_twice(self, db_session, scheduled, fake_transports, deduplicator):
        run_pass(db_session, fake_transports, deduplicator)
        schedule_slot(db_session, "evening", now=WEEK_SUNDAY_EVENING)
        again = run_pass(db_session, fake_transports, deduplicator)

        assert again.claimed == 0
        assert len(fake_transports.email.sent) == 1
        assert db_session.query(NotificationQueueEntry).count() == 1

    def test_met_goal_resolves_without_sending(self, db_session, scheduled, test_user, make_activity,
                                               fake_transports, deduplicator):
        make_activity(test_user)
        make_activity(test_user)

        result = run_pass(db_session, fake_transports, deduplicator)

        assert result.skipped == 1
        assert queue_entry(db_session).outcome == "skipped_goal_met"
        assert queue_entry(db_session).status == "sent"
        assert fake_transports.email.sent == []

    def test_met_goal_congratulates_when_opted_in(self, db_session, scheduled, test_user, make_activity,
                                                 fake_transports, deduplicator):
        make_activity(test_user)
        make_activity(test_user)
        test_user.send_if_goal_met = True
        db_session.commit()

        run_pass(db_session, fake_transports, deduplicator)

        assert db_session.query(MessageDelivery).one().intent == "congratulatory"
        assert len(fake_transports.email.sent) == 1

    def test_partial_goal_skipped_when_opted_out(self, db_session, scheduled, test_user,
                                                 fake_transports, deduplicator):
        test_user.send_if_partial_goal = False
        db_session.commit()

        run_pass(db_session, fake_transports, deduplicator)

        assert queue_entry(db_session).outcome == "skipped_partial"
        assert fake_transports.email.sent == []

    def test_no_goal(self, db_session, test_user, make_contact, fake_transports, deduplicator):
        make_contact(test_user)
        schedule_slot(db_session, "evening", now=WEEK_SUNDAY_EVENING)

        run_pass(db_session, fake_transports, deduplicator)

        assert queue_entry(db_session).outcome == "skipped_no_goal"

    def test_no_contacts(self, db_session, test_user, make_goal, fake_transports, deduplicator):
        make_goal(test_user, "total_activities", 3)
        schedule_slot(db_session, "evening", now=WEEK_SUNDAY_EVENING)

        run_pass(db_session, fake_transports, deduplicator)

        assert queue_entry(db_session).outcome == "skipped_no_contacts"

    def test_opted_out_contact_is_not_messaged(self, db_session, scheduled, test_user, make_contact,
                                               fake_transports, deduplicator):
        scheduled.opted_out_at = WEEK_SUNDAY_EVENING - timedelta(days=1)
        scheduled.is_active = False
        db_session.commit()

        run_pass(db_session, fake_transports, deduplicator)

        assert queue_entry(db_session).outcome == "skipped_no_contacts"
        assert fake_transports.email.sent == []

    def test_notifications_disabled_after_scheduling(self, db_session, scheduled, test_user,
                                                     fake_transports, deduplicator):
        test_user.notification_enabled = False
        db_session.commit()

        run_pass(db_session, fake_transports, deduplicator)

        assert queue_entry(db_session).outcome == "skipped_disabled"

    def test_unknown_style_falls_back_to_supportive(self, db_session, scheduled, test_user,
                                                    fake_transports, deduplicator):
        test_user.message_style = "grumpy"
        db_session.commit()

        result = run_pass(db_session, fake_transports, deduplicator)

        assert result.sent == 1

    def test_sms_contact_gets_plain_text(self, db_session, test_user, make_goal, make_contact,
                                         fake_transports, deduplicator):
        make_goal(test_user, "total_activities", 3)
        make_contact(test_user, phone="+15550001111")
        schedule_slot(db_session, "evening", now=WEEK_SUNDAY_EVENING)

        run_pass(db_session, fake_transports, deduplicator)

        [sms] = fake_transports.sms.sent
        assert sms["recipient"] == "+15550001111"
        assert "html" not in sms
        assert fake_transports.email.sent == []


class TestFailures:

    def test_retryable_failure_requeues_until_attempts_exhausted(self, db_session, scheduled,
                                                                 fake_transports, deduplicator):
        fake_transports.email.results = [failure("network_error")] * 3

        first = run_pass(db_session, fake_transports, deduplicator)
        entry = queue_entry(db_session)
        assert first.requeued == 1
        assert entry.status == "queued"
        assert entry.attempts == 1
        assert "network_error" in entry.last_error

        run_pass(db_session, fake_transports, deduplicator)
        third = run_pass(db_session, fake_transports, deduplicator)

        db_session.refresh(entry)
        assert third.failed == 1
        assert entry.status == "failed"
        assert entry.attempts == 3
        assert entry.outcome == "undeliverable"
        assert db_session.query(MessageDelivery).one().attempts == 3

        # Terminal: nothing more to claim.
        assert run_pass(db_session, fake_transports, deduplicator).claimed == 0

    def test_activity_fetch_error_requeues_then_fails(self, db_session, scheduled, fake_transports,
                                                      deduplicator, monkeypatch):
        def unavailable(*args, **kwargs):
            raise ActivityFetchError("upstream 503")

        monkeypatch.setattr(delivery_coordinator, "calculate_progress", unavailable)

        first = run_pass(db_session, fake_transports, deduplicator)
        entry = queue_entry(db_session)
        assert first.requeued == 1
        assert entry.status == "queued"
        assert entry.attempts == 1
        assert entry.last_error == "upstream 503"
        assert entry.claim_token is None

        run_pass(db_session, fake_transports, deduplicator)
        third = run_pass(db_session, fake_transports, deduplicator)

        db_session.refresh(entry)
        assert third.failed == 1
        assert entry.status == "failed"
        assert entry.attempts == 3
        assert fake_transports.email.sent == []

    def test_failed_send_does_not_use_up_template(self, db_session, scheduled, fake_transports, deduplicator):
        fake_transports.email.results = [failure("network_error")]

        run_pass(db_session, fake_transports, deduplicator)
        assert len(deduplicator.store) == 0

        run_pass(db_session, fake_transports, deduplicator)
        assert len(deduplicator.store) == 1

    def test_permanent_failure_is_not_retried(self, db_session, scheduled, fake_transports, deduplicator):
        fake_transports.email.results = [failure("invalid_recipient")]

        result = run_pass(db_session, fake_transports, deduplicator)

        entry = queue_entry(db_session)
        assert result.failed == 1
        assert entry.status == "failed"
        assert entry.attempts == 1
        assert entry.outcome == "undeliverable"

    def test_retry_only_resends_to_unreached_contacts(self, db_session, scheduled, test_user, make_contact,
                                                      fake_transports, deduplicator):
        make_contact(test_user, phone="+15550002222", name="Jo")
        fake_transports.sms.results = [failure("server_error")]

        first = run_pass(db_session, fake_transports, deduplicator)
        assert first.requeued == 1

        second = run_pass(db_session, fake_transports, deduplicator)
        assert second.sent == 1

        assert len(fake_transports.email.sent) == 1
        assert len(fake_transports.sms.sent) == 2
        entry = queue_entry(db_session)
        assert entry.status == "sent"
        assert entry.outcome == "delivered"
        assert {d.status for d in db_session.query(MessageDelivery).all()} == {"sent"}

    def test_partial_delivery_with_permanent_error_counts_as_sent(self, db_session, scheduled, test_user,
                                                                  make_contact, fake_transports, deduplicator):
        make_contact(test_user, phone="+15550003333", name="Jo")
        fake_transports.sms.results = [failure("unsubscribed")]

        result = run_pass(db_session, fake_transports, deduplicator)

        entry = queue_entry(db_session)
        assert result.sent == 1
        assert entry.outcome == "delivered"
        assert "unsubscribed" in entry.last_error


class TestQueueMechanics:

    def test_second_claim_gets_nothing(self, db_session, scheduled):
        first = claim_batch(db_session, 10, WEEK_SUNDAY_EVENING)
        second = claim_batch(db_session, 10, WEEK_SUNDAY_EVENING)

        assert len(first) == 1
        assert first[0].status == "processing"
        assert first[0].claim_token is not None
        assert second == []

    def test_future_entries_are_not_claimed(self, db_session, scheduled):
        assert claim_batch(db_session, 10, WEEK_SUNDAY_EVENING - timedelta(hours=1)) == []

    def test_reaper_requeues_stale_claims(self, db_session, scheduled):
        claim_batch(db_session, 10, WEEK_SUNDAY_EVENING)
        later = WEEK_SUNDAY_EVENING + timedelta(minutes=31)

        assert reap_stale_claims(db_session, now=WEEK_SUNDAY_EVENING + timedelta(minutes=10))["reaped"] == 0
        result = reap_stale_claims(db_session, now=later)

        entry = queue_entry(db_session)
        assert result == {"reaped": 1, "requeued": 1, "failed": 0}
        assert entry.status == "queued"
        assert entry.attempts == 1
        assert entry.last_error == STALE_CLAIM_ERROR
        assert entry.claim_token is None

    def test_reaper_fails_entries_out_of_attempts(self, db_session, scheduled):
        entry = queue_entry(db_session)
        entry.attempts = 2
        db_session.commit()
        claim_batch(db_session, 10, WEEK_SUNDAY_EVENING)

        result = reap_stale_claims(db_session, now=WEEK_SUNDAY_EVENING + timedelta(hours=1))

        assert result["failed"] == 1
        assert queue_entry(db_session).status == "failed"

    def test_send_limit_releases_remaining_entries(self, db_session, make_goal, make_contact,
                                                   fake_transports, deduplicator):
        for label in ("a", "b"):
            user = User(email=f"{label}@example.com", message_day="Sunday")
            db_session.add(user)
            db_session.commit()
            make_goal(user, "total_activities", 3)
            make_contact(user)
        schedule_slot(db_session, "evening", now=WEEK_SUNDAY_EVENING)

        result = run_pass(db_session, fake_transports, deduplicator, max_sends=1)

        assert result.sent == 1
        assert result.released == 1
        assert result.stopped_reason == "send_limit"
        statuses = sorted((e.status, e.attempts) for e in db_session.query(NotificationQueueEntry).all())
        assert statuses == [("queued", 0), ("sent", 0)]

    def test_time_budget_releases_remaining_entries(self, db_session, make_goal, make_contact,
                                                    fake_transports, deduplicator):
        for label in ("a", "b"):
            user = User(email=f"{label}@example.com", message_day="Sunday")
            db_session.add(user)
            db_session.commit()
            make_goal(user, "total_activities", 3)
            make_contact(user)
        schedule_slot(db_session, "evening", now=WEEK_SUNDAY_EVENING)

        ticks = iter([0.0, 0.0, 500.0])

        result = run_pass(db_session, fake_transports, deduplicator, time_budget_s=60,
                          monotonic=lambda: next(ticks))

        assert result.sent == 1
        assert result.released == 1
        assert result.stopped_reason == "time_budget"


class TestSendGate:

    def test_pauses_between_sub_batches_and_caps_sends(self):
        pauses = []
        gate = SendGate(max_sends=5, sub_batch_size=2, pause_s=0.5, sleep=pauses.append, budget=lambda: None)

        assert all(gate.acquire() for _ in range(5))
        assert pauses == [0.5, 0.5]
        assert gate.acquire() is False
        assert gate.closed_reason == "send_limit"

    def test_exhausted_global_budget_closes_gate(self):
        gate = SendGate(max_sends=5, sub_batch_size=2, pause_s=0, sleep=no_sleep, budget=lambda: False)

        assert gate.acquire() is False
        assert gate.closed_reason == "global_budget"
