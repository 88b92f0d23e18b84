"""
Strava activity sync

Pulls activity summaries from /athlete/activities and upserts them into
the activity table keyed by (provider, external_activity_id). The
accountability pipeline reads activities only from the database; this
module is the only writer.

Auth failures, rate limiting and upstream errors all surface as
ActivityFetchError (transient). OAuth and token refresh live elsewhere.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import requests
from sqlalchemy.orm import Session

from rundown.core.config import settings
from rundown.core.exceptions import ActivityFetchError
from rundown.models import Activity, User, utc_now

logger = logging.getLogger(__name__)

PROVIDER = "strava"
PER_PAGE = 200
MAX_PAGES = 10
INITIAL_SYNC_DAYS = 30


def _to_epoch(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


def parse_start_date(value: str) -> datetime:
    """Strava ISO-8601 UTC ('2024-01-01T10:00:00Z') -> naive UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _get_page(url: str, headers: Dict, params: Dict, max_retries: int) -> List[Dict]:
    for attempt in range(max_retries):
        try:
            r = requests.get(url, headers=headers, params=params, timeout=settings.EXTERNAL_API_TIMEOUT)
        except requests.exceptions.RequestException as e:
            if attempt == max_retries - 1:
                raise ActivityFetchError(f"Strava request failed after {max_retries} attempts: {e}") from e
            time.sleep(2 ** attempt)  # 1s, 2s, 4s
            continue

        if r.status_code == 401:
            raise ActivityFetchError("Strava rejected the access token (401)")
        if r.status_code == 429:
            raise ActivityFetchError(f"Strava rate limited (Retry-After {r.headers.get('Retry-After', 'unknown')})")
        if r.status_code >= 500:
            if attempt == max_retries - 1:
                raise ActivityFetchError(f"Strava upstream error {r.status_code}")
            time.sleep(2 ** attempt)
            continue
        if r.status_code != 200:
            raise ActivityFetchError(f"Strava returned {r.status_code}: {r.text[:200]}")

        data = r.json()
        return data if isinstance(data, list) else []

    return []


def list_activities(
    user: User,
    after: datetime,
    before: Optional[datetime] = None,
    per_page: int = PER_PAGE,
    max_pages: int = MAX_PAGES,
) -> List[Dict]:
    """
    Activity summaries for `user` started in (after, before).

    Each item carries at least id, type, start_date, distance (meters) and
    moving_time (seconds).
    """
    if not user.strava_access_token:
        raise ActivityFetchError(f"User {user.id} has no Strava connection")

    url = f"{settings.STRAVA_API_BASE.rstrip('/')}/athlete/activities"
    headers = {"Authorization": f"Bearer {user.strava_access_token}"}
    params: Dict = {"per_page": per_page, "after": _to_epoch(after)}
    if before is not None:
        params["before"] = _to_epoch(before)

    activities: List[Dict] = []
    for page in range(1, max_pages + 1):
        params["page"] = page
        batch = _get_page(url, headers, params, settings.EXTERNAL_API_RETRY_ATTEMPTS)
        activities.extend(batch)
        if len(batch) < per_page:
            break
    else:
        logger.warning(f"Strava sync for user {user.id} stopped at {max_pages} pages")

    return activities


def upsert_activity_summaries(db: Session, user_id, summaries: List[Dict]) -> Dict[str, int]:
    """
    Insert new activities and refresh changed ones. Does not commit.
    """
    created = updated = skipped = 0
    for summary in summaries:
        external_id = summary.get("id")
        start = summary.get("start_date")
        if external_id is None or not start:
            skipped += 1
            continue

        activity_type = summary.get("type") or summary.get("sport_type") or "Workout"
        fields = {
            "name": summary.get("name"),
            "activity_type": activity_type,
            "start_time": parse_start_date(start),
            "distance_m": float(summary.get("distance") or 0),
            "moving_time_s": int(summary.get("moving_time") or 0),
        }

        existing = (
            db.query(Activity)
            .filter(Activity.provider == PROVIDER, Activity.external_activity_id == str(external_id))
            .first()
        )
        if existing is None:
            db.add(Activity(user_id=user_id, provider=PROVIDER, external_activity_id=str(external_id), **fields))
            created += 1
        else:
            for key, value in fields.items():
                setattr(existing, key, value)
            updated += 1

    db.flush()
    return {"created": created, "updated": updated, "skipped": skipped}


def sync_user_activities(db: Session, user: User, now: Optional[datetime] = None) -> Dict:
    """Fetch everything since the last sync (or the last 30 days) and store it."""
    now = now or utc_now()
    after = user.last_strava_sync or (now - timedelta(days=INITIAL_SYNC_DAYS))

    summaries = list_activities(user, after=after, before=now)
    counts = upsert_activity_summaries(db, user.id, summaries)
    user.last_strava_sync = now
    db.commit()

    logger.info(
        f"Strava sync for user {user.id}: {counts['created']} new, "
        f"{counts['updated']} updated, {counts['skipped']} skipped"
    )
    return {"user_id": str(user.id), **counts}
