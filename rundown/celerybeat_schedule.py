"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule. All times are UTC.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Scheduler slots: enqueue one evaluation per due user.
    'schedule-accountability-morning': {
        'task': 'tasks.schedule_accountability_slot',
        'schedule': crontab(hour=9, minute=0),
        'args': ('morning',),
    },
    'schedule-accountability-afternoon': {
        'task': 'tasks.schedule_accountability_slot',
        'schedule': crontab(hour=15, minute=0),
        'args': ('afternoon',),
    },
    'schedule-accountability-evening': {
        'task': 'tasks.schedule_accountability_slot',
        'schedule': crontab(hour=21, minute=0),
        'args': ('evening',),
    },
    # Drain the queue in bounded passes.
    'deliver-accountability-messages': {
        'task': 'tasks.run_delivery_pass',
        'schedule': crontab(minute='*/5'),
    },
    # Return entries stranded in processing by a crashed pass.
    'reap-stale-queue-entries': {
        'task': 'tasks.reap_stale_queue_entries',
        'schedule': crontab(minute='*/15'),
    },
    # Pull new activities, then refresh progress snapshots.
    'sync-strava-activities': {
        'task': 'tasks.sync_all_strava_users',
        'schedule': crontab(minute=30),
    },
    'update-goal-progress': {
        'task': 'tasks.update_all_goal_progress',
        'schedule': crontab(minute=45),
    },
    # Drop dedup hashes that fell out of the window.
    'prune-dedup-history': {
        'task': 'tasks.prune_dedup_history',
        'schedule': crontab(hour=3, minute=30),
    },
}
