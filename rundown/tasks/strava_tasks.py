"""
Strava Sync Tasks

Background activity sync. Auth and upstream failures are logged per user
and never stop the sweep.
"""

from typing import Dict
from uuid import UUID
import logging

from celery import Task
from sqlalchemy.orm import Session

from rundown.core.database import get_db_sync
from rundown.core.exceptions import ActivityFetchError
from rundown.models import User
from rundown.services.strava_service import sync_user_activities
from rundown.tasks import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.sync_strava_activities", bind=True, max_retries=3)
def sync_strava_activities_task(self: Task, user_id: str) -> Dict:
    """Sync one user's activities; retried with backoff on transient errors."""
    db: Session = get_db_sync()
    try:
        user = db.get(User, UUID(str(user_id)))
        if not user:
            return {"status": "error", "message": "User not found"}
        if not user.strava_access_token:
            return {"status": "skipped", "message": "No Strava connection"}
        return {"status": "success", **sync_user_activities(db, user)}
    except ActivityFetchError as e:
        db.rollback()
        logger.warning(f"Strava sync failed for user {user_id}: {e}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))
    finally:
        db.close()


@celery_app.task(name="tasks.sync_all_strava_users", bind=True)
def sync_all_strava_users_task(self: Task) -> Dict:
    """Sync every active user with a Strava connection."""
    db: Session = get_db_sync()
    try:
        users = (
            db.query(User)
            .filter(User.is_active.is_(True), User.strava_access_token.isnot(None))
            .all()
        )
        synced = failed = 0
        for user in users:
            try:
                sync_user_activities(db, user)
                synced += 1
            except ActivityFetchError as e:
                db.rollback()
                failed += 1
                logger.warning(f"Strava sync failed for user {user.id}: {e}")
        logger.info(f"Strava sweep: {synced} synced, {failed} failed")
        return {"status": "success", "synced": synced, "failed": failed}
    finally:
        db.close()
