"""
Accountability Tasks

Thin Celery wrappers around the scheduler, delivery pass, reaper,
progress refresh and dedup pruning. Each task opens its own session and
returns a JSON-serialisable summary.
"""

from typing import Dict
import logging

from celery import Task
from sqlalchemy.orm import Session

from rundown.core.config import settings
from rundown.core.database import get_db_sync
from rundown.services.delivery_coordinator import reap_stale_claims, run_delivery_pass
from rundown.services.evaluation_scheduler import schedule_slot
from rundown.services.message_deduplicator import DatabaseDedupStore, MessageDeduplicator
from rundown.services.progress_aggregator import update_all_user_progress
from rundown.services.transports import build_transports
from rundown.tasks import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.schedule_accountability_slot", bind=True)
def schedule_accountability_slot_task(self: Task, slot: str) -> Dict:
    """Enqueue evaluations for every user due in `slot` today."""
    db: Session = get_db_sync()
    try:
        result = schedule_slot(db, slot)
        logger.info(f"Scheduled {slot} slot", extra={"extra_fields": result})
        return result
    except ValueError as e:
        logger.error(f"Invalid slot {slot}: {e}")
        return {"status": "error", "message": str(e)}
    finally:
        db.close()


@celery_app.task(name="tasks.run_delivery_pass", bind=True)
def run_delivery_pass_task(self: Task) -> Dict:
    """One bounded pass over the notification queue."""
    db: Session = get_db_sync()
    try:
        deduplicator = MessageDeduplicator(DatabaseDedupStore(db))
        result = run_delivery_pass(db, build_transports(), deduplicator)
        summary = result.to_dict()
        logger.info("Delivery pass finished", extra={"extra_fields": summary})
        return summary
    finally:
        db.close()


@celery_app.task(name="tasks.reap_stale_queue_entries", bind=True)
def reap_stale_queue_entries_task(self: Task) -> Dict:
    db: Session = get_db_sync()
    try:
        return reap_stale_claims(db)
    finally:
        db.close()


@celery_app.task(name="tasks.update_all_goal_progress", bind=True)
def update_all_goal_progress_task(self: Task) -> Dict:
    db: Session = get_db_sync()
    try:
        result = update_all_user_progress(db)
        return {"status": "success", "updated_users": result["updated_users"]}
    finally:
        db.close()


@celery_app.task(name="tasks.prune_dedup_history", bind=True)
def prune_dedup_history_task(self: Task) -> Dict:
    """Delete dedup hashes older than the dedup window."""
    db: Session = get_db_sync()
    try:
        deduplicator = MessageDeduplicator(DatabaseDedupStore(db))
        removed = deduplicator.clear_old_history(settings.DEDUP_WINDOW_DAYS)
        return {"status": "success", "removed": removed}
    finally:
        db.close()
