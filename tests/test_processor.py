from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import add_account, add_transaction, add_user
from models import Account, RecurringInterval, Transaction, TransactionStatus, TransactionType
from processor import ProcessStatus, RecurringTransactionProcessor
from recurrence import InvalidRecurrenceInterval
from schemas import RecurrenceDue
from throttle import MemoryCounterStore, RateLimiter


NOW = datetime(2024, 5, 15, 0, 0)


def _processor(store, limit: int = 10) -> RecurringTransactionProcessor:
    return RecurringTransactionProcessor(
        store, RateLimiter(MemoryCounterStore(), limit=limit, period_seconds=60)
    )


def _event(txn) -> RecurrenceDue:
    return RecurrenceDue(transaction_id=txn.id, user_id=txn.user_id)


def test_monthly_expense_end_to_end(store, session_factory):
    user = add_user(session_factory)
    account = add_account(session_factory, user, balance="1000.00")
    original = add_transaction(
        session_factory,
        account,
        amount="50.00",
        interval=RecurringInterval.monthly,
        next_recurring_date=NOW,
        last_processed=datetime(2024, 4, 15),
    )

    outcome = _processor(store).process(_event(original), now=NOW, clock=0.0)

    assert outcome.status == ProcessStatus.processed
    with session_factory() as session:
        assert session.get(Account, account.id).balance == Decimal("950.00")
        reloaded = session.get(Transaction, original.id)
        assert reloaded.last_processed == NOW
        assert reloaded.next_recurring_date == datetime(2024, 6, 15, 0, 0)
        occurrence = session.get(Transaction, outcome.occurrence_id)
    assert occurrence.date == NOW
    assert occurrence.status == TransactionStatus.completed
    assert occurrence.is_recurring is False
    assert occurrence.recurring_interval is None
    assert occurrence.last_processed is None
    assert occurrence.amount == Decimal("50.00")
    assert occurrence.category == original.category
    assert occurrence.account_id == account.id
    assert occurrence.description == "Internet (Recurring)"


def test_income_occurrence_increases_balance(store, session_factory):
    user = add_user(session_factory)
    account = add_account(session_factory, user, balance="10.00")
    original = add_transaction(
        session_factory,
        account,
        amount="2500.00",
        type=TransactionType.income,
        category="salary",
        interval=RecurringInterval.monthly,
        next_recurring_date=datetime(2024, 6, 1),
    )

    outcome = _processor(store).process(_event(original), now=NOW, clock=0.0)

    assert outcome.status == ProcessStatus.processed
    with session_factory() as session:
        assert session.get(Account, account.id).balance == Decimal("2510.00")


def test_redelivery_is_a_no_op(store, session_factory):
    user = add_user(session_factory)
    account = add_account(session_factory, user, balance="1000.00")
    original = add_transaction(
        session_factory,
        account,
        interval=RecurringInterval.daily,
        next_recurring_date=NOW,
        last_processed=datetime(2024, 5, 14),
    )
    processor = _processor(store)

    first = processor.process(_event(original), now=NOW, clock=0.0)
    second = processor.process(_event(original), now=NOW, clock=1.0)

    assert first.status == ProcessStatus.processed
    assert second.status == ProcessStatus.skipped
    assert second.reason == "not_due"
    with session_factory() as session:
        assert session.get(Account, account.id).balance == Decimal("950.00")
        occurrences = session.scalars(
            select(Transaction).where(Transaction.is_recurring.is_(False))
        ).all()
    assert len(occurrences) == 1


def test_stale_claim_after_read_is_rejected(store, session_factory):
    user = add_user(session_factory)
    account = add_account(session_factory, user, balance="1000.00")
    original = add_transaction(
        session_factory,
        account,
        interval=RecurringInterval.weekly,
        next_recurring_date=NOW,
        last_processed=datetime(2024, 5, 8),
    )

    assert store.create_occurrence(original.id, user.id, NOW) is not None
    assert store.create_occurrence(original.id, user.id, NOW) is None
    with session_factory() as session:
        assert session.get(Account, account.id).balance == Decimal("950.00")


def test_missing_or_foreign_transaction_is_skipped(store, session_factory):
    owner = add_user(session_factory)
    other = add_user(session_factory, email="bob@example.com")
    account = add_account(session_factory, owner)
    original = add_transaction(
        session_factory,
        account,
        interval=RecurringInterval.monthly,
        next_recurring_date=NOW,
    )
    processor = _processor(store)

    missing = processor.process(
        RecurrenceDue(transaction_id="nope", user_id=owner.id), now=NOW, clock=0.0
    )
    foreign = processor.process(
        RecurrenceDue(transaction_id=original.id, user_id=other.id), now=NOW, clock=0.0
    )

    assert missing.status == ProcessStatus.skipped
    assert missing.reason == "transaction_missing"
    assert foreign.status == ProcessStatus.skipped
    with session_factory() as session:
        assert session.get(Account, account.id).balance == Decimal("1000.00")


def test_fifteen_items_for_one_user_respect_the_cap(store, session_factory):
    user = add_user(session_factory)
    account = add_account(session_factory, user, balance="1000.00")
    items = [
        add_transaction(
            session_factory,
            account,
            amount="1.00",
            interval=RecurringInterval.monthly,
            next_recurring_date=NOW,
            last_processed=datetime(2024, 4, 15),
        )
        for _ in range(15)
    ]
    processor = _processor(store, limit=10)

    outcomes = [
        processor.process(_event(txn), now=NOW, clock=100.0 + i)
        for i, txn in enumerate(items)
    ]
    processed = [o for o in outcomes if o.status == ProcessStatus.processed]
    deferred = [
        txn for txn, o in zip(items, outcomes) if o.status == ProcessStatus.throttled
    ]
    assert len(processed) == 10
    assert len(deferred) == 5
    assert all(
        0 < o.retry_after <= 60 for o in outcomes if o.status == ProcessStatus.throttled
    )

    later = [
        processor.process(_event(txn), now=NOW, clock=100.0 + 61 + i)
        for i, txn in enumerate(deferred)
    ]
    assert all(o.status == ProcessStatus.processed for o in later)
    with session_factory() as session:
        assert session.get(Account, account.id).balance == Decimal("985.00")


def test_other_users_are_not_slowed_down(store, session_factory):
    busy = add_user(session_factory)
    quiet = add_user(session_factory, email="quiet@example.com")
    busy_account = add_account(session_factory, busy)
    quiet_account = add_account(session_factory, quiet)
    processor = _processor(store, limit=1)

    first = add_transaction(
        session_factory, busy_account, interval=RecurringInterval.daily, next_recurring_date=NOW
    )
    second = add_transaction(
        session_factory, busy_account, interval=RecurringInterval.daily, next_recurring_date=NOW
    )
    theirs = add_transaction(
        session_factory, quiet_account, interval=RecurringInterval.daily, next_recurring_date=NOW
    )

    assert processor.process(_event(first), now=NOW, clock=0.0).status == ProcessStatus.processed
    assert processor.process(_event(second), now=NOW, clock=1.0).status == ProcessStatus.throttled
    assert processor.process(_event(theirs), now=NOW, clock=1.0).status == ProcessStatus.processed


def test_invalid_interval_fails_only_that_item(store, session_factory, monkeypatch):
    user = add_user(session_factory)
    account = add_account(session_factory, user, balance="1000.00")
    original = add_transaction(
        session_factory,
        account,
        interval=RecurringInterval.monthly,
        next_recurring_date=NOW,
    )

    def bad_interval(reference, interval):
        raise InvalidRecurrenceInterval(f"Unsupported recurring interval: {interval!r}")

    monkeypatch.setattr("ledger.calculate_next_recurring_date", bad_interval)
    with pytest.raises(InvalidRecurrenceInterval):
        _processor(store).process(_event(original), now=NOW, clock=0.0)

    with session_factory() as session:
        assert session.get(Account, account.id).balance == Decimal("1000.00")
        assert session.get(Transaction, original.id).last_processed is None
