from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from ledger import LedgerStore
from models import utcnow
from recurrence import InvalidRecurrenceInterval, is_transaction_due
from schemas import RecurrenceDue
from throttle import RateLimiter


logger = logging.getLogger(__name__)


class ProcessStatus(str, Enum):
    processed = "processed"
    skipped = "skipped"
    throttled = "throttled"


@dataclass(frozen=True)
class ProcessOutcome:
    status: ProcessStatus
    occurrence_id: Optional[str] = None
    retry_after: float = 0.0
    reason: Optional[str] = None


class RecurringTransactionProcessor:
    """Applies one ``RecurrenceDue`` work item to the ledger.

    Items are admitted through a per-user rate limiter first. An admitted
    item re-reads the transaction and becomes a no-op when it is gone or no
    longer due, which makes repeated delivery of the same item harmless.
    """

    def __init__(self, store: LedgerStore, limiter: RateLimiter) -> None:
        self.store = store
        self.limiter = limiter

    def process(
        self,
        event: RecurrenceDue,
        now: Optional[datetime] = None,
        clock: Optional[float] = None,
    ) -> ProcessOutcome:
        now = now or utcnow()
        decision = self.limiter.acquire(event.user_id, now=clock)
        if not decision.allowed:
            return ProcessOutcome(
                ProcessStatus.throttled, retry_after=decision.retry_after
            )

        txn = self.store.get_transaction(event.transaction_id, event.user_id)
        if txn is None:
            return self._skip(event, "transaction_missing")
        if txn.account is None:
            return self._skip(event, "account_missing")
        if not is_transaction_due(txn, now):
            return self._skip(event, "not_due")

        try:
            occurrence = self.store.create_occurrence(txn.id, txn.user_id, now)
        except InvalidRecurrenceInterval:
            logger.error(
                f"recurrence_invalid_interval: transaction_id={txn.id} "
                f"interval={txn.recurring_interval!r}"
            )
            raise
        if occurrence is None:
            return self._skip(event, "already_processed")

        logger.info(
            f"recurrence_processed: transaction_id={txn.id} user_id={txn.user_id} "
            f"occurrence_id={occurrence.id} amount={occurrence.amount} type={occurrence.type.value}"
        )
        return ProcessOutcome(ProcessStatus.processed, occurrence_id=occurrence.id)

    def _skip(self, event: RecurrenceDue, reason: str) -> ProcessOutcome:
        logger.info(
            f"recurrence_skipped: transaction_id={event.transaction_id} "
            f"user_id={event.user_id} reason={reason}"
        )
        return ProcessOutcome(ProcessStatus.skipped, reason=reason)
