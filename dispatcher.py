from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from celery import Celery

from ledger import LedgerStore
from models import Transaction, utcnow
from schemas import RecurrenceDue


logger = logging.getLogger(__name__)

PROCESS_TASK_NAME = "tasks.process_recurring_transaction"


class WorkQueue(Protocol):
    def enqueue(self, event: RecurrenceDue, countdown: Optional[float] = None) -> None:
        ...


class CeleryWorkQueue:
    """Hands work items to the Celery broker; delivery and retries are Celery's job."""

    def __init__(self, app: Celery, task_name: str = PROCESS_TASK_NAME) -> None:
        self.app = app
        self.task_name = task_name

    def enqueue(self, event: RecurrenceDue, countdown: Optional[float] = None) -> None:
        self.app.send_task(
            self.task_name,
            args=[event.model_dump(mode="json", by_alias=True)],
            countdown=countdown,
        )


class DueItemScanner:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def scan(self, now: datetime) -> list[Transaction]:
        return self.store.find_due(now)


@dataclass
class DispatchSummary:
    found: int = 0
    dispatched: int = 0
    failed: int = 0


class Dispatcher:
    def __init__(self, scanner: DueItemScanner, queue: WorkQueue) -> None:
        self.scanner = scanner
        self.queue = queue

    def run(self, now: Optional[datetime] = None) -> DispatchSummary:
        now = now or utcnow()
        due = self.scanner.scan(now)
        summary = DispatchSummary(found=len(due))
        for txn in due:
            event = RecurrenceDue(transaction_id=txn.id, user_id=txn.user_id)
            try:
                self.queue.enqueue(event)
            except Exception:
                # The next scan picks the transaction up again while it stays due.
                summary.failed += 1
                logger.exception(
                    f"dispatch_failed: transaction_id={txn.id} user_id={txn.user_id}"
                )
                continue
            summary.dispatched += 1
        logger.info(
            f"dispatch_run: found={summary.found} dispatched={summary.dispatched} "
            f"failed={summary.failed}"
        )
        return summary
