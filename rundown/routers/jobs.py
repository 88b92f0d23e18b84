"""
Job Trigger API Router

Runs the scheduler, delivery pass and reaper synchronously for external
schedulers (cron, uptime pingers). Guarded by X-Cron-Secret. The Celery
beat schedule calls the same services.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from rundown.core.auth import require_service_key
from rundown.core.database import get_db
from rundown.core.exceptions import ValidationError
from rundown.services.delivery_coordinator import reap_stale_claims, run_delivery_pass
from rundown.services.evaluation_scheduler import SLOTS, schedule_slot
from rundown.services.message_deduplicator import DatabaseDedupStore, MessageDeduplicator
from rundown.services.transports import Transports, build_transports

router = APIRouter(
    prefix="/v1/jobs",
    tags=["Jobs"],
    dependencies=[Depends(require_service_key)],
)


def get_transports() -> Transports:
    return build_transports()


def get_deduplicator(db: Session = Depends(get_db)) -> MessageDeduplicator:
    return MessageDeduplicator(DatabaseDedupStore(db))


@router.post("/schedule/{slot}")
def trigger_schedule(slot: str, db: Session = Depends(get_db)):
    """Enqueue evaluations for `slot` (morning, afternoon or evening)."""
    if slot not in SLOTS:
        raise ValidationError(f"Unknown slot '{slot}'. Expected one of: {', '.join(SLOTS)}", field="slot")
    return schedule_slot(db, slot)


@router.post("/deliver")
def trigger_delivery(
    db: Session = Depends(get_db),
    transports: Transports = Depends(get_transports),
    deduplicator: MessageDeduplicator = Depends(get_deduplicator),
):
    """Run one bounded delivery pass."""
    return run_delivery_pass(db, transports, deduplicator).to_dict()


@router.post("/reap")
def trigger_reap(db: Session = Depends(get_db)):
    """Return stale processing entries to the queue."""
    return reap_stale_claims(db)
