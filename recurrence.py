from datetime import datetime, timedelta
from typing import Optional

from models import RecurringInterval, Transaction, TransactionStatus
from periods import days_in_month


class InvalidRecurrenceInterval(ValueError):
    pass


def _add_months(base: datetime, months: int) -> datetime:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1

    dim = days_in_month(year, month)
    day = min(base.day, dim)
    return base.replace(year=year, month=month, day=day)


def calculate_next_recurring_date(
    reference: datetime, interval: Optional[RecurringInterval]
) -> datetime:
    if interval == RecurringInterval.daily:
        return reference + timedelta(days=1)
    if interval == RecurringInterval.weekly:
        return reference + timedelta(weeks=1)
    if interval == RecurringInterval.monthly:
        return _add_months(reference, 1)
    if interval == RecurringInterval.yearly:
        return _add_months(reference, 12)
    raise InvalidRecurrenceInterval(f"Unsupported recurring interval: {interval!r}")


def is_transaction_due(txn: Transaction, now: datetime) -> bool:
    if not txn.is_recurring or txn.status != TransactionStatus.completed:
        return False
    # Never re-fired yet.
    if txn.last_processed is None:
        return True
    return txn.next_recurring_date is not None and txn.next_recurring_date <= now
