"""Celery beat schedule configuration."""
from __future__ import annotations

from celery.schedules import crontab

CELERY_BEAT_SCHEDULE = {
    # Compensating delivery for events whose post-commit flush failed
    "flush-outbox": {
        "task": "events.flush_outbox",
        "schedule": 60,
    },
    "cleanup-expired-tracking": {
        "task": "referrals.cleanup_expired_tracking",
        "schedule": crontab(minute=15, hour=3),
    },
}
