"""
Celery application used as the durable delivery substrate for work items.
"""
from celery import Celery

from config import get_settings


settings = get_settings()

celery_app = Celery(
    "ledger_tasks",
    broker=settings.broker_url,
    backend=settings.redis_url,
    include=["tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    timezone=settings.timezone,
    enable_utc=True,

    # Re-deliver items whose worker died mid-flight; processing is idempotent.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    task_time_limit=300,
    task_soft_time_limit=240,

    worker_prefetch_multiplier=1,
    worker_concurrency=4,
)


if __name__ == "__main__":
    celery_app.start()
