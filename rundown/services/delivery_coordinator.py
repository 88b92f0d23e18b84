"""
Delivery Coordinator

Drains the notification queue in bounded, restartable passes.

Entry lifecycle:

    queued -> processing -> sent      delivered, or resolved without a message
    queued -> processing -> queued    retryable failure, attempts += 1
    queued -> processing -> failed    permanent failure, or attempts exhausted

Claiming is a single conditional UPDATE (status='queued' -> 'processing',
stamped with a claim token) so two concurrent passes never pick up the
same entry. Entries stranded in 'processing' by a crashed pass are
returned to the queue by reap_stale_claims().

One entry fans out to every active contact of its user. Each contact gets
its own MessageDelivery row; a retry only re-sends to contacts that have
not been reached yet.

Send policy when the goal was met / partly met / missed:
- met:     congratulatory message if send_if_goal_met, otherwise skipped
- partial: user's unmet message type if send_if_partial_goal, otherwise skipped
- missed:  user's unmet message type (missed-goal or weekly-summary)
"""

import logging
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rundown.core.cache import acquire_send_budget
from rundown.core.config import settings
from rundown.core.exceptions import PermanentRecipientError, TransientError, TransportError
from rundown.models import Contact, Goal, MessageDelivery, NotificationQueueEntry, User, utc_now
from rundown.services.audit_log import record_event
from rundown.services.email_service import render_accountability_email
from rundown.services.goal_ledger import resolve_active_goal
from rundown.services.goal_presets import message_goal_type
from rundown.services.message_bank import MessageIntent, MessageStyle, format_message
from rundown.services.message_deduplicator import MessageDeduplicator, hash_message
from rundown.services.period_generator import Period, current_period
from rundown.services.progress_aggregator import Progress, calculate_progress
from rundown.services.transports import DeliveryResult, Transports, is_retryable

logger = logging.getLogger(__name__)

STALE_CLAIM_ERROR = "stale processing timeout"

PERIOD_LABELS = {
    "daily": "Today's progress",
    "weekly": "This week's progress",
    "monthly": "This month's progress",
    "custom": "Progress so far",
}

# Entry-level results of process_entry()
RESULT_SENT = "sent"
RESULT_SKIPPED = "skipped"
RESULT_REQUEUED = "requeued"
RESULT_FAILED = "failed"
RESULT_RELEASED = "released"


@dataclass
class DeliveryPassResult:
    claimed: int = 0
    sent: int = 0
    skipped: int = 0
    requeued: int = 0
    failed: int = 0
    released: int = 0
    send_attempts: int = 0
    stopped_reason: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class Evaluation:
    goal: Optional[Goal]
    period: Optional[Period]
    progress: Optional[Progress]
    intent: Optional[MessageIntent]
    skip_outcome: Optional[str] = None


class SendGate:
    """
    Outbound pacing for one pass: a per-run cap, the app-wide Redis budget,
    and a short pause between sub-batches.
    """

    def __init__(
        self,
        max_sends: int,
        sub_batch_size: int,
        pause_s: float,
        sleep: Callable[[float], None] = time.sleep,
        budget: Callable[[], Optional[bool]] = acquire_send_budget,
    ):
        self.max_sends = max_sends
        self.sub_batch_size = max(1, sub_batch_size)
        self.pause_s = pause_s
        self.sleep = sleep
        self.budget = budget
        self.used = 0
        self.closed_reason: Optional[str] = None

    def acquire(self) -> bool:
        if self.closed_reason:
            return False
        if self.used >= self.max_sends:
            self.closed_reason = "send_limit"
            return False
        # None means Redis is unavailable: fall back to the per-run cap.
        if self.budget() is False:
            self.closed_reason = "global_budget"
            return False
        if self.used and self.used % self.sub_batch_size == 0 and self.pause_s:
            self.sleep(self.pause_s)
        self.used += 1
        return True


class _GateClosed(Exception):
    pass


# --- Queue transitions ---


def claim_batch(db: Session, batch_size: int, now: Optional[datetime] = None) -> List[NotificationQueueEntry]:
    """
    Atomically move up to `batch_size` due entries from queued to processing.

    Returns only the rows this call claimed, highest priority first.
    """
    now = now or utc_now()
    token = uuid.uuid4()

    candidates = (
        select(NotificationQueueEntry.id)
        .where(
            NotificationQueueEntry.status == "queued",
            NotificationQueueEntry.scheduled_for <= now,
        )
        .order_by(NotificationQueueEntry.priority.asc(), NotificationQueueEntry.created_at.asc())
        .limit(batch_size)
        .with_for_update(skip_locked=True)
    )
    db.execute(
        update(NotificationQueueEntry)
        .where(
            NotificationQueueEntry.id.in_(candidates.scalar_subquery()),
            NotificationQueueEntry.status == "queued",
        )
        .values(status="processing", claim_token=token, claimed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    return (
        db.query(NotificationQueueEntry)
        .filter(NotificationQueueEntry.claim_token == token, NotificationQueueEntry.status == "processing")
        .order_by(NotificationQueueEntry.priority.asc(), NotificationQueueEntry.created_at.asc())
        .all()
    )


def release_claims(db: Session, entries: List[NotificationQueueEntry], now: Optional[datetime] = None) -> int:
    """Return claimed-but-unprocessed entries to the queue without using an attempt."""
    now = now or utc_now()
    released = 0
    for entry in entries:
        if entry.status != "processing":
            continue
        entry.status = "queued"
        entry.claim_token = None
        entry.claimed_at = None
        entry.updated_at = now
        released += 1
    db.commit()
    return released


def reap_stale_claims(db: Session, now: Optional[datetime] = None, stale_after_minutes: Optional[int] = None) -> Dict:
    """
    Recover entries left in processing past the staleness threshold.

    The abandoned run counts as an attempt: the entry is re-queued, or
    failed once attempts reach max_attempts.
    """
    now = now or utc_now()
    minutes = stale_after_minutes or settings.QUEUE_STALE_AFTER_MINUTES
    cutoff = now - timedelta(minutes=minutes)

    stale = (
        db.query(NotificationQueueEntry)
        .filter(
            NotificationQueueEntry.status == "processing",
            NotificationQueueEntry.claimed_at < cutoff,
        )
        .all()
    )

    requeued = failed = 0
    for entry in stale:
        entry.attempts = (entry.attempts or 0) + 1
        entry.last_error = STALE_CLAIM_ERROR
        entry.claim_token = None
        entry.claimed_at = None
        entry.updated_at = now
        if entry.attempts >= entry.max_attempts:
            entry.status = "failed"
            entry.completed_at = now
            failed += 1
        else:
            entry.status = "queued"
            requeued += 1
        record_event(
            db,
            "queue.reaped",
            user_id=entry.user_id,
            payload={"entry_id": str(entry.id), "attempts": entry.attempts, "status": entry.status},
        )
    db.commit()

    if stale:
        logger.warning(f"Reaped {len(stale)} stale queue entries ({requeued} requeued, {failed} failed)")
    return {"reaped": len(stale), "requeued": requeued, "failed": failed}


def _resolve(entry: NotificationQueueEntry, outcome: str, now: datetime) -> None:
    entry.status = "sent"
    entry.outcome = outcome
    entry.claim_token = None
    entry.completed_at = now
    entry.updated_at = now


def _record_failed_attempt(
    entry: NotificationQueueEntry,
    error: str,
    now: datetime,
    retryable: bool = True,
    outcome: Optional[str] = None,
) -> str:
    entry.attempts = (entry.attempts or 0) + 1
    entry.last_error = error[:1000]
    entry.claim_token = None
    entry.updated_at = now
    if retryable and entry.attempts < entry.max_attempts:
        entry.status = "queued"
        entry.claimed_at = None
        return RESULT_REQUEUED
    entry.status = "failed"
    entry.outcome = outcome
    entry.completed_at = now
    return RESULT_FAILED


# --- Evaluation ---


def decide_intent(user: User, progress: Progress) -> Tuple[Optional[MessageIntent], Optional[str]]:
    """(intent, None) to send, or (None, skip_outcome) to resolve silently."""
    if progress.is_met:
        if user.send_if_goal_met:
            return MessageIntent.CONGRATULATORY, None
        return None, "skipped_goal_met"

    if progress.is_partial and not user.send_if_partial_goal:
        return None, "skipped_partial"

    try:
        return MessageIntent(user.unmet_message_type or MessageIntent.MISSED_GOAL.value), None
    except ValueError:
        logger.warning(f"User {user.id} has unknown unmet_message_type {user.unmet_message_type!r}")
        return MessageIntent.MISSED_GOAL, None


def evaluate_entry(db: Session, entry: NotificationQueueEntry, user: User) -> Evaluation:
    """Goal and progress for the period containing the entry's scheduled time."""
    goal = resolve_active_goal(db, user.id, entry.scheduled_day)
    if goal is None:
        return Evaluation(None, None, None, None, "skipped_no_goal")

    period = current_period(goal, entry.scheduled_for)
    if period is None:
        return Evaluation(goal, None, None, None, "skipped_no_goal")

    progress = calculate_progress(db, user.id, goal, period)
    intent, skip_outcome = decide_intent(user, progress)
    return Evaluation(goal, period, progress, intent, skip_outcome)


def _style_for(user: User) -> MessageStyle:
    try:
        return MessageStyle(user.message_style)
    except ValueError:
        logger.warning(f"User {user.id} has unknown message_style {user.message_style!r}; using supportive")
        return MessageStyle.SUPPORTIVE


def message_data(user: User, evaluation: Evaluation) -> Dict:
    progress = evaluation.progress
    return {
        "user": user.display_name,
        "goalType": message_goal_type(evaluation.goal),
        "completed": progress.current,
        "goal": progress.target,
        "remaining": progress.remaining,
        "progressPercent": progress.percent,
    }


def progress_line(evaluation: Evaluation) -> str:
    label = PERIOD_LABELS.get(evaluation.goal.cadence, PERIOD_LABELS["custom"])
    data = {"completed": evaluation.progress.current, "goal": evaluation.progress.target}
    return format_message(
        f"{label}: {{completed}} out of {{goal}} {evaluation.goal.target_unit} completed",
        data,
    )


def active_contacts(db: Session, user_id) -> List[Contact]:
    return (
        db.query(Contact)
        .filter(Contact.user_id == user_id, Contact.is_active.is_(True), Contact.opted_out_at.is_(None))
        .order_by(Contact.created_at.asc())
        .all()
    )


# --- Per-contact delivery ---


def _send(transport, address: str, content: str, extras: Dict) -> DeliveryResult:
    try:
        return transport.send(address, content, **extras)
    except (TransportError, PermanentRecipientError) as e:
        return DeliveryResult(success=False, error_code=e.error_code, error_message=str(e))


def _deliver_to_contact(
    db: Session,
    entry: NotificationQueueEntry,
    user: User,
    contact: Contact,
    evaluation: Evaluation,
    transports: Transports,
    deduplicator: MessageDeduplicator,
    gate: SendGate,
    now: datetime,
) -> Optional[MessageDelivery]:
    """Send to one contact and record the outcome. None if the contact has no address."""
    route = transports.for_contact(contact)
    if route is None:
        return None
    channel, transport, address = route

    if not gate.acquire():
        raise _GateClosed(gate.closed_reason)

    template = deduplicator.pick_message(contact.id, _style_for(user), evaluation.intent)
    text = format_message(template, message_data(user, evaluation))

    extras: Dict = {}
    if channel == "email":
        subject, html_body, text_body = render_accountability_email(
            text, contact.opt_out_token, progress_line(evaluation)
        )
        extras = {"subject": subject, "html": html_body}
        content = text_body
    else:
        content = text

    result = _send(transport, address, content, extras)

    delivery = (
        db.query(MessageDelivery)
        .filter(MessageDelivery.queue_entry_id == entry.id, MessageDelivery.contact_id == contact.id)
        .first()
    )
    if delivery is None:
        delivery = MessageDelivery(queue_entry_id=entry.id, user_id=user.id, contact_id=contact.id, attempts=0)
        db.add(delivery)

    delivery.channel = channel
    delivery.intent = evaluation.intent.value
    delivery.message_text = text
    delivery.content_hash = hash_message(template)
    delivery.attempts = (delivery.attempts or 0) + 1
    delivery.provider_message_id = result.provider_message_id
    delivery.error_code = result.error_code
    delivery.error_message = result.error_message
    if result.success:
        delivery.status = "sent"
        delivery.sent_at = now
        deduplicator.mark_sent(contact.id, template)
        record_event(
            db,
            "message.sent",
            user_id=user.id,
            contact_id=contact.id,
            payload={"entry_id": str(entry.id), "channel": channel, "intent": evaluation.intent.value},
        )
    else:
        delivery.status = "failed"
        record_event(
            db,
            "message.failed",
            user_id=user.id,
            contact_id=contact.id,
            payload={"entry_id": str(entry.id), "channel": channel, "error_code": result.error_code},
        )
        logger.warning(f"Delivery to contact {contact.id} via {channel} failed: {result.error_code}")
    # Per-contact outcomes are committed individually.
    db.commit()
    return delivery


def process_entry(
    db: Session,
    entry: NotificationQueueEntry,
    transports: Transports,
    deduplicator: MessageDeduplicator,
    gate: SendGate,
    now: Optional[datetime] = None,
) -> str:
    """
    Evaluate one claimed entry and fan out to the user's contacts.

    Returns one of sent / skipped / requeued / failed / released. Commits.
    """
    now = now or utc_now()
    user = db.get(User, entry.user_id)

    if user is None or not user.is_active or not user.notification_enabled:
        _resolve(entry, "skipped_disabled", now)
        db.commit()
        return RESULT_SKIPPED

    evaluation = evaluate_entry(db, entry, user)
    if evaluation.skip_outcome:
        _resolve(entry, evaluation.skip_outcome, now)
        db.commit()
        logger.info(f"Entry {entry.id} for user {user.id} resolved: {evaluation.skip_outcome}")
        return RESULT_SKIPPED

    contacts = active_contacts(db, user.id)
    if not contacts:
        _resolve(entry, "skipped_no_contacts", now)
        db.commit()
        return RESULT_SKIPPED

    already_sent = {
        row.contact_id
        for row in db.query(MessageDelivery.contact_id).filter(
            MessageDelivery.queue_entry_id == entry.id,
            MessageDelivery.status == "sent",
        )
    }

    delivered = len([c for c in contacts if c.id in already_sent])
    retryable_errors: List[str] = []
    permanent_errors: List[str] = []

    try:
        for contact in contacts:
            if contact.id in already_sent:
                continue
            delivery = _deliver_to_contact(
                db, entry, user, contact, evaluation, transports, deduplicator, gate, now
            )
            if delivery is None:
                permanent_errors.append(f"contact {contact.id}: no address")
            elif delivery.status == "sent":
                delivered += 1
            elif is_retryable(delivery.error_code):
                retryable_errors.append(f"contact {contact.id}: {delivery.error_code} {delivery.error_message or ''}".strip())
            else:
                permanent_errors.append(f"contact {contact.id}: {delivery.error_code}")
    except _GateClosed:
        # Deliveries made so far are recorded; the rest go out on a later pass.
        entry.status = "queued"
        entry.claim_token = None
        entry.claimed_at = None
        entry.updated_at = now
        db.commit()
        return RESULT_RELEASED

    if retryable_errors:
        result = _record_failed_attempt(
            entry,
            "; ".join(retryable_errors + permanent_errors),
            now,
            retryable=True,
            outcome="undeliverable" if not delivered else None,
        )
        if result == RESULT_FAILED and delivered:
            # Out of attempts, but at least one contact was reached.
            _resolve(entry, "delivered", now)
            result = RESULT_SENT
        db.commit()
        return result

    if delivered:
        if permanent_errors:
            entry.last_error = "; ".join(permanent_errors)[:1000]
        _resolve(entry, "delivered", now)
        db.commit()
        return RESULT_SENT

    result = _record_failed_attempt(
        entry, "; ".join(permanent_errors) or "no deliverable contacts", now, retryable=False, outcome="undeliverable"
    )
    db.commit()
    return result


# --- Pass ---


def run_delivery_pass(
    db: Session,
    transports: Transports,
    deduplicator: MessageDeduplicator,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
    max_sends: Optional[int] = None,
    sub_batch_size: Optional[int] = None,
    pause_s: Optional[float] = None,
    time_budget_s: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
) -> DeliveryPassResult:
    """
    Claim one batch and process it.

    Stops early (returning unprocessed entries to the queue) when the time
    budget runs out or the outbound send limit is reached.
    """
    now = now or utc_now()
    batch_size = batch_size or settings.DELIVERY_BATCH_SIZE
    time_budget_s = time_budget_s if time_budget_s is not None else settings.DELIVERY_TIME_BUDGET_S
    gate = SendGate(
        max_sends=max_sends or settings.DELIVERY_MAX_SENDS_PER_RUN,
        sub_batch_size=sub_batch_size or settings.DELIVERY_SUB_BATCH_SIZE,
        pause_s=pause_s if pause_s is not None else settings.DELIVERY_SUB_BATCH_PAUSE_S,
        sleep=sleep,
    )
    deadline = monotonic() + time_budget_s

    result = DeliveryPassResult()
    entries = claim_batch(db, batch_size, now)
    result.claimed = len(entries)
    if not entries:
        logger.info("Delivery pass: nothing to send")
        return result

    for index, entry in enumerate(entries):
        if monotonic() >= deadline:
            result.stopped_reason = "time_budget"
        elif gate.closed_reason:
            result.stopped_reason = gate.closed_reason
        if result.stopped_reason:
            result.released += release_claims(db, entries[index:], now)
            break

        entry_id = entry.id
        try:
            outcome = process_entry(db, entry, transports, deduplicator, gate, now)
        except (TransientError, SQLAlchemyError) as e:
            db.rollback()
            logger.error(f"Error processing queue entry {entry_id}: {e}")
            entry = db.get(NotificationQueueEntry, entry_id)
            outcome = _record_failed_attempt(entry, str(e), now, retryable=True)
            db.commit()

        if outcome == RESULT_SENT:
            result.sent += 1
        elif outcome == RESULT_SKIPPED:
            result.skipped += 1
        elif outcome == RESULT_REQUEUED:
            result.requeued += 1
        elif outcome == RESULT_FAILED:
            result.failed += 1
        elif outcome == RESULT_RELEASED:
            result.released += 1

    if gate.closed_reason and not result.stopped_reason:
        result.stopped_reason = gate.closed_reason
    result.send_attempts = gate.used

    logger.info(
        f"Delivery pass: claimed={result.claimed} sent={result.sent} skipped={result.skipped} "
        f"requeued={result.requeued} failed={result.failed} released={result.released} "
        f"send_attempts={result.send_attempts}"
        + (f" stopped={result.stopped_reason}" if result.stopped_reason else "")
    )
    return result
