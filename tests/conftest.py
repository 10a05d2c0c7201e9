from datetime import datetime
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from config import Settings
from database import Base, make_session_factory
from ledger import LedgerStore
from models import (
    Account,
    AccountType,
    RecurringInterval,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)


class RecordingQueue:
    def __init__(self, fail_on: Optional[set[str]] = None) -> None:
        self.events = []
        self.fail_on = fail_on or set()

    def enqueue(self, event, countdown=None) -> None:
        if event.transaction_id in self.fail_on:
            raise ConnectionError("broker unavailable")
        self.events.append((event, countdown))


class RecordingNotifier:
    def __init__(self, result: bool = True) -> None:
        self.sent = []
        self.result = result

    def send(self, to: str, subject: str, html: str) -> bool:
        self.sent.append((to, subject, html))
        return self.result


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        database_url=f"sqlite:///{tmp_path / 'ledger.db'}",
        timezone="UTC",
        redis_url="redis://localhost:6379/15",
        broker_url="redis://localhost:6379/15",
        rate_limit_backend="memory",
        throttle_limit=10,
        throttle_period_secs=60,
        max_attempts=3,
        retry_backoff_secs=2,
        budget_alert_threshold=80,
        smtp_host=None,
        smtp_port=587,
        smtp_username=None,
        smtp_password=None,
        smtp_use_tls=True,
        email_from="Ledger <noreply@example.com>",
        email_override_to=None,
        gemini_api_key=None,
        gemini_model="gemini-1.5-flash",
        insight_timeout_secs=1.0,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory) -> LedgerStore:
    return LedgerStore(session_factory)


def add_user(session_factory, email: str = "ana@example.com", name: str = "Ana") -> User:
    with session_factory() as session:
        user = User(email=email, name=name)
        session.add(user)
        session.commit()
        return user


def add_account(
    session_factory,
    user: User,
    balance: str = "1000.00",
    is_default: bool = True,
    name: str = "Main",
) -> Account:
    with session_factory() as session:
        account = Account(
            user_id=user.id,
            name=name,
            type=AccountType.current,
            balance=Decimal(balance),
            is_default=is_default,
        )
        session.add(account)
        session.commit()
        return account


def add_transaction(
    session_factory,
    account: Account,
    *,
    amount: str = "50.00",
    type: TransactionType = TransactionType.expense,
    date: datetime = datetime(2024, 1, 15, 9, 0),
    category: str = "utilities",
    interval: Optional[RecurringInterval] = None,
    next_recurring_date: Optional[datetime] = None,
    last_processed: Optional[datetime] = None,
    status: TransactionStatus = TransactionStatus.completed,
    description: Optional[str] = "Internet",
) -> Transaction:
    with session_factory() as session:
        txn = Transaction(
            user_id=account.user_id,
            account_id=account.id,
            type=type,
            amount=Decimal(amount),
            description=description,
            date=date,
            category=category,
            status=status,
            is_recurring=interval is not None,
            recurring_interval=interval,
            next_recurring_date=next_recurring_date,
            last_processed=last_processed,
        )
        session.add(txn)
        session.commit()
        return txn
