"""
Celery tasks that drain recurring-transaction work items.
"""
import logging
from typing import Any, Optional

from celery import Task
from celery.signals import worker_process_shutdown
from pydantic import ValidationError

from celery_app import celery_app, settings
from dispatcher import PROCESS_TASK_NAME, CeleryWorkQueue
from ledger import TransientStoreError
from processor import ProcessStatus
from runtime import Runtime, build_runtime
from schemas import RecurrenceDue


logger = logging.getLogger(__name__)

_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(settings, queue=CeleryWorkQueue(celery_app))
    return _runtime


def configure_runtime(runtime: Optional[Runtime]) -> None:
    global _runtime
    _runtime = runtime


@worker_process_shutdown.connect
def _close_runtime(**_kwargs) -> None:
    global _runtime
    if _runtime is not None:
        _runtime.close()
        _runtime = None


class LedgerTask(Task):
    def on_failure(self, exc, task_id, args, kwargs, einfo) -> None:
        logger.error(
            f"job_failed: task={self.name} task_id={task_id} args={args} error={exc!r}"
        )


@celery_app.task(
    bind=True,
    base=LedgerTask,
    name=PROCESS_TASK_NAME,
    autoretry_for=(TransientStoreError,),
    retry_backoff=settings.retry_backoff_secs,
    retry_backoff_max=600,
    retry_jitter=False,
    max_retries=max(settings.max_attempts - 1, 0),
)
def process_recurring_transaction(self, payload: Any) -> dict:
    try:
        event = RecurrenceDue.model_validate(payload)
    except ValidationError as exc:
        logger.error(f"invalid_work_item: payload={payload!r} errors={exc.errors()}")
        return {"status": "dropped", "error": "Missing required event data"}

    runtime = get_runtime()
    outcome = runtime.processor().process(event)
    if outcome.status == ProcessStatus.throttled:
        # Deferred as a fresh delivery so waiting never eats into the retry budget.
        runtime.queue.enqueue(event, countdown=outcome.retry_after)
        return {"status": outcome.status.value, "retry_after": outcome.retry_after}

    return {
        "status": outcome.status.value,
        "transaction_id": event.transaction_id,
        "occurrence_id": outcome.occurrence_id,
        "reason": outcome.reason,
    }
