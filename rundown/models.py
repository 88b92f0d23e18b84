from sqlalchemy import Column, Integer, Boolean, CheckConstraint, Float, Date, DateTime, ForeignKey, Text, Index, UniqueConstraint, JSON, Uuid
from sqlalchemy.orm import relationship
from rundown.core.database import Base
import uuid
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


QUEUE_STATUSES = ("queued", "processing", "sent", "failed")
TIME_PERIODS = ("morning", "afternoon", "evening")


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    email = Column(Text, unique=True, nullable=True)
    name = Column(Text, nullable=True)
    first_name = Column(Text, nullable=True)

    # Soft-disable only; users are never hard-deleted.
    is_active = Column(Boolean, default=True, nullable=False)

    # --- MESSAGING PREFERENCES ---
    message_style = Column(Text, default="supportive", nullable=False)
    notification_enabled = Column(Boolean, default=True, nullable=False)
    message_day = Column(Text, nullable=True)  # 'Monday'..'Sunday'
    send_day = Column(Text, nullable=True)  # legacy column, same meaning as message_day
    message_time_period = Column(Text, nullable=True)  # 'morning' | 'afternoon' | 'evening' | NULL = any slot
    send_if_goal_met = Column(Boolean, default=False, nullable=False)
    send_if_partial_goal = Column(Boolean, default=True, nullable=False)
    unmet_message_type = Column(Text, default="missed-goal", nullable=False)  # 'missed-goal' | 'weekly-summary'
    max_messages_per_week = Column(Integer, default=3, nullable=False)
    push_token = Column(Text, nullable=True)

    # --- LEGACY SINGLE-FIELD GOAL (pre goal_history users) ---
    goal_type = Column(Text, nullable=True)
    goal_value = Column(Float, nullable=True)
    goal_per_week = Column(Integer, nullable=True)

    # --- STRAVA ---
    strava_athlete_id = Column(Integer, nullable=True)
    strava_access_token = Column(Text, nullable=True)
    last_strava_sync = Column(DateTime, nullable=True)

    goals = relationship("Goal", back_populates="user", lazy="dynamic")
    contacts = relationship("Contact", back_populates="user", lazy="dynamic")

    @property
    def display_name(self) -> str:
        if self.first_name:
            return self.first_name
        if self.name:
            return self.name
        if self.email:
            return self.email.split("@")[0]
        return "your friend"


class Goal(Base):
    """
    A user's activity goal.

    At most one row per user has is_active=True at any instant; the
    goal ledger enforces this when recording a change.
    """
    __tablename__ = "goal"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    goal_type = Column(Text, nullable=False)  # preset key, e.g. 'total_runs', or 'custom'
    metric = Column(Text, nullable=False, default="count")  # 'count' | 'distance' | 'duration' | 'streak'
    activity_types = Column(JSON, nullable=True)  # NULL = every activity type
    target_value = Column(Float, nullable=False)
    target_unit = Column(Text, nullable=False, default="activities")
    cadence = Column(Text, nullable=False, default="weekly")  # 'daily' | 'weekly' | 'monthly' | 'custom'
    start_date = Column(Date, nullable=True)  # custom cadence only
    end_date = Column(Date, nullable=True)  # custom cadence only
    is_active = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("cadence IN ('daily', 'weekly', 'monthly', 'custom')", name="ck_goal_cadence"),
        CheckConstraint("metric IN ('count', 'distance', 'duration', 'streak')", name="ck_goal_metric"),
        Index("ix_goal_user_active", "user_id", "is_active"),
    )

    user = relationship("User", back_populates="goals")


class GoalHistory(Base):
    """
    Append-only log of goal changes.

    The goal in force on date D is the row with the latest effective_date <= D.
    """
    __tablename__ = "goal_history"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    goal_id = Column(Uuid, ForeignKey("goal.id"), nullable=False)
    goal_type = Column(Text, nullable=False)
    goal_value = Column(Float, nullable=False)
    effective_date = Column(Date, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_goal_history_user_effective", "user_id", "effective_date"),
    )

    goal = relationship("Goal")


class GoalProgress(Base):
    """Snapshot of progress for one goal over one period."""
    __tablename__ = "goal_progress"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    goal_id = Column(Uuid, ForeignKey("goal.id"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    current_value = Column(Float, nullable=False, default=0)
    target_value = Column(Float, nullable=False)
    is_achieved = Column(Boolean, nullable=False, default=False)
    last_updated = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("goal_id", "period_start", name="uq_goal_progress_goal_period"),
    )

    goal = relationship("Goal")


class Activity(Base):
    """Synced activity. Immutable once stored; upserted by provider id."""
    __tablename__ = "activity"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(Text, nullable=False, default="strava")
    external_activity_id = Column(Text, nullable=False)
    name = Column(Text, nullable=True)
    activity_type = Column(Text, nullable=False)  # e.g. 'Run', 'VirtualRun', 'Ride'
    start_time = Column(DateTime, nullable=False, index=True)
    distance_m = Column(Float, nullable=False, default=0)
    moving_time_s = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "external_activity_id", name="uq_activity_provider_external_id"),
    )


class Contact(Base):
    """Accountability contact. Soft-deleted via is_active; never removed."""
    __tablename__ = "contact"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    name = Column(Text, nullable=True)
    email = Column(Text, nullable=True)
    phone = Column(Text, nullable=True)
    relationship_type = Column("relationship", Text, nullable=True)  # 'friend' | 'partner' | 'coach' | ...
    is_active = Column(Boolean, default=True, nullable=False)
    opt_out_token = Column(Text, unique=True, nullable=False)
    opted_out_at = Column(DateTime, nullable=True)
    invited_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="contacts")

    @property
    def can_receive(self) -> bool:
        return bool(self.is_active and self.opted_out_at is None and (self.email or self.phone))


class NotificationQueueEntry(Base):
    """
    One accountability evaluation for one user in one scheduler slot.

    Lifecycle: queued -> processing -> sent | failed, with retryable
    failures returning to queued while attempts < max_attempts.
    """
    __tablename__ = "notification_queue"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    scheduled_for = Column(DateTime, nullable=False)
    scheduled_day = Column(Date, nullable=False)
    period = Column(Text, nullable=False)  # scheduler slot
    priority = Column(Integer, nullable=False, default=3)

    status = Column(Text, nullable=False, default="queued", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)
    # 'delivered' | 'skipped_goal_met' | 'skipped_partial' | 'skipped_no_goal'
    # | 'skipped_no_contacts' | 'skipped_disabled' | 'undeliverable'
    outcome = Column(Text, nullable=True)

    claim_token = Column(Uuid, nullable=True, index=True)
    claimed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "scheduled_day", "period", name="uq_queue_user_day_period"),
        CheckConstraint(
            "status IN ('queued', 'processing', 'sent', 'failed')",
            name="ck_queue_status",
        ),
        Index("ix_queue_status_priority", "status", "priority", "created_at"),
    )

    user = relationship("User")
    deliveries = relationship("MessageDelivery", back_populates="queue_entry", lazy="dynamic")


class MessageDelivery(Base):
    """Per-contact outcome of one queue entry. Also serves as message history."""
    __tablename__ = "message_delivery"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    queue_entry_id = Column(Uuid, ForeignKey("notification_queue.id"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    contact_id = Column(Uuid, ForeignKey("contact.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)

    channel = Column(Text, nullable=False)  # 'email' | 'sms'
    intent = Column(Text, nullable=False)
    message_text = Column(Text, nullable=False)
    content_hash = Column(Text, nullable=False)
    status = Column(Text, nullable=False)  # 'sent' | 'failed'
    provider_message_id = Column(Text, nullable=True)
    error_code = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    sent_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("queue_entry_id", "contact_id", name="uq_delivery_entry_contact"),
    )

    queue_entry = relationship("NotificationQueueEntry", back_populates="deliveries")
    contact = relationship("Contact")


class SentMessageLog(Base):
    """Content hashes sent to a contact; backs the database dedup store."""
    __tablename__ = "sent_message_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    contact_id = Column(Text, nullable=False)
    window_days = Column(Integer, nullable=False)
    content_hash = Column(Text, nullable=False)
    sent_at = Column(DateTime, default=utc_now, nullable=False, index=True)

    __table_args__ = (
        Index("ix_sent_message_contact_hash", "contact_id", "window_days", "content_hash"),
    )


class AccountabilityEvent(Base):
    """
    Append-only audit log for the accountability pipeline.

    Write-only from the application; payloads carry ids and codes, not
    message bodies or addresses.
    """
    __tablename__ = "accountability_event"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime, default=utc_now, nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=True, index=True)
    contact_id = Column(Uuid, ForeignKey("contact.id"), nullable=True)
    event_type = Column(Text, nullable=False, index=True)  # e.g. goal.changed | message.sent
    payload = Column(JSON, nullable=False, default=dict)
