from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery("territory_api", broker=settings.redis_url, backend=settings.redis_url, include=["app.territories.tasks"])

if settings.territory_reconcile_interval_seconds > 0:
    celery_app.conf.beat_schedule = {
        "territory-reconcile-counters": {
            "task": "app.territories.reconcile_counters",
            "schedule": float(settings.territory_reconcile_interval_seconds),
        },
    }
