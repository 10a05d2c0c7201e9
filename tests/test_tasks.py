from datetime import datetime, timedelta
from decimal import Decimal

import pytest

import tasks
from conftest import RecordingQueue, make_settings
from database import init_db
from ledger import TransientStoreError
from models import AccountType, RecurringInterval, TransactionType
from runtime import build_runtime
from schemas import AccountIn, TransactionIn


@pytest.fixture
def runtime(tmp_path):
    rt = build_runtime(make_settings(tmp_path, throttle_limit=1), queue=RecordingQueue())
    init_db(rt.engine)
    tasks.configure_runtime(rt)
    yield rt
    tasks.configure_runtime(None)
    rt.close()


def _recurring(rt, user_id: str, account_id: str):
    txn = rt.store.create_transaction(
        user_id,
        TransactionIn(
            type=TransactionType.expense,
            amount=Decimal("12.00"),
            date=datetime.utcnow() - timedelta(days=40),
            account_id=account_id,
            category="streaming",
            is_recurring=True,
            recurring_interval=RecurringInterval.monthly,
        ),
    )
    return {"transactionId": txn.id, "userId": user_id}


def test_malformed_payload_is_dropped(runtime):
    result = tasks.process_recurring_transaction.apply(args=[{"userId": "u1"}]).get()
    assert result["status"] == "dropped"
    assert runtime.queue.events == []


def test_task_processes_and_then_defers_same_user(runtime):
    user = runtime.store.create_user("ana@example.com")
    account = runtime.store.create_account(
        user.id, AccountIn(name="Main", type=AccountType.current, balance=Decimal("100"))
    )
    first = _recurring(runtime, user.id, account.id)
    second = _recurring(runtime, user.id, account.id)

    done = tasks.process_recurring_transaction.apply(args=[first]).get()
    deferred = tasks.process_recurring_transaction.apply(args=[second]).get()

    assert done["status"] == "processed"
    assert done["occurrence_id"]
    assert deferred["status"] == "throttled"
    assert len(runtime.queue.events) == 1
    event, countdown = runtime.queue.events[0]
    assert event.transaction_id == second["transactionId"]
    assert 0 < countdown <= 60
    # 100 - 12 - 12 at creation, then one occurrence.
    assert runtime.store.get_account(user.id, account.id).balance == Decimal("64.00")


def test_retry_policy_is_bounded_exponential():
    task = tasks.process_recurring_transaction
    assert TransientStoreError in task.autoretry_for
    assert task.max_retries == tasks.settings.max_attempts - 1
    assert task.retry_backoff
