"""
Celery Beat Schedule Configuration

Beat is the single ticking driver of the pipeline; every entry here only
enqueues work for the worker pool.
"""

from datetime import timedelta

from celery.schedules import crontab

from core.config import settings

# Schedule configuration
beat_schedule = {
    # Retry scheduler tick: enqueue due notifications (bounded batch).
    'sweep-webhook-notifications': {
        'task': 'tasks.sweep_webhook_notifications',
        'schedule': timedelta(seconds=settings.RETRY_SCAN_INTERVAL_S),
    },
    # Owned activities whose aggregation lost every optimistic-lock retry.
    'sweep-unaggregated-activities': {
        'task': 'tasks.sweep_unaggregated_activities',
        'schedule': crontab(minute='*/15'),
    },
    # Uploads that arrived before their account was linked.
    'reconcile-unresolved-activities': {
        'task': 'tasks.reconcile_unresolved_activities',
        'schedule': crontab(minute=30),  # hourly
    },
    # Catch-up pull of the last few days for deliveries the webhooks missed.
    'backfill-garmin-activities': {
        'task': 'tasks.backfill_garmin_activities',
        'schedule': crontab(hour=3, minute=15),  # daily
    },
}
