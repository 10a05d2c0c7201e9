from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Iterator, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.orm import Session, joinedload, sessionmaker

from database import session_scope
from models import (
    Account,
    Budget,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from periods import month_end, month_start
from recurrence import calculate_next_recurring_date, is_transaction_due
from schemas import AccountIn, BudgetIn, TransactionIn


logger = logging.getLogger(__name__)

RECURRING_SUFFIX = " (Recurring)"


class LedgerError(Exception):
    pass


class TransientStoreError(LedgerError):
    """The store was unreachable or the commit failed; safe to retry."""


class LedgerIntegrityError(LedgerError):
    pass


def signed_amount(txn_type: TransactionType, amount: Decimal) -> Decimal:
    if txn_type == TransactionType.expense:
        return -amount
    return amount


def _balance_effect(txn: Transaction) -> Decimal:
    if txn.status != TransactionStatus.completed:
        return Decimal("0")
    return signed_amount(txn.type, txn.amount)


def _due_clause(now: datetime):
    return and_(
        Transaction.is_recurring.is_(True),
        Transaction.status == TransactionStatus.completed,
        or_(
            Transaction.last_processed.is_(None),
            Transaction.next_recurring_date <= now,
        ),
    )


class LedgerStore:
    """Atomic read-modify-write access to accounts, transactions and budgets.

    Every method runs in its own unit of work. Driver-level failures are
    re-raised as :class:`TransientStoreError` so callers can retry them, and
    constraint violations as :class:`LedgerIntegrityError`.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    @contextmanager
    def _scope(self) -> Iterator[Session]:
        try:
            with session_scope(self.session_factory) as session:
                yield session
        except IntegrityError as exc:
            raise LedgerIntegrityError(str(exc.orig)) from exc
        except (
            OperationalError,
            InterfaceError,
            DisconnectionError,
            PoolTimeoutError,
        ) as exc:
            raise TransientStoreError(str(exc)) from exc

    # -- recurrence pipeline -------------------------------------------------

    def find_due(self, now: datetime) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(_due_clause(now))
            .order_by(Transaction.next_recurring_date, Transaction.id)
        )
        with self._scope() as session:
            return list(session.scalars(stmt).unique().all())

    def get_transaction(
        self, transaction_id: str, user_id: str
    ) -> Optional[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.account))
            .where(Transaction.id == transaction_id, Transaction.user_id == user_id)
        )
        with self._scope() as session:
            return session.scalar(stmt)

    def create_occurrence(
        self, transaction_id: str, user_id: str, now: datetime
    ) -> Optional[Transaction]:
        """Materialise one occurrence of a recurring transaction.

        The original row is claimed with a conditional update that only
        matches while it is still due, so a duplicate delivery that races
        this one finds nothing to claim and returns ``None``. The claim, the
        new occurrence row and the balance increment commit together.
        """
        with self._scope() as session:
            original = session.scalar(
                select(Transaction).where(
                    Transaction.id == transaction_id,
                    Transaction.user_id == user_id,
                )
            )
            if original is None or not is_transaction_due(original, now):
                return None
            next_date = calculate_next_recurring_date(now, original.recurring_interval)

            claimed = session.execute(
                update(Transaction)
                .where(Transaction.id == original.id, _due_clause(now))
                .values(last_processed=now, next_recurring_date=next_date)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                logger.info(
                    f"occurrence_skipped: transaction_id={transaction_id} reason=already_claimed"
                )
                return None

            occurrence = Transaction(
                user_id=original.user_id,
                account_id=original.account_id,
                type=original.type,
                amount=original.amount,
                description=f"{original.description or ''}{RECURRING_SUFFIX}".strip(),
                date=now,
                category=original.category,
                status=TransactionStatus.completed,
                is_recurring=False,
            )
            session.add(occurrence)

            adjusted = session.execute(
                update(Account)
                .where(
                    Account.id == original.account_id,
                    Account.user_id == original.user_id,
                )
                .values(
                    balance=Account.balance
                    + signed_amount(original.type, original.amount)
                )
                .execution_options(synchronize_session=False)
            )
            if adjusted.rowcount != 1:
                raise LedgerIntegrityError(
                    f"Account {original.account_id} missing for transaction {original.id}"
                )
            session.flush()
            return occurrence

    def find_budgets(self) -> list[tuple[Budget, Account, User]]:
        stmt = (
            select(Budget, Account, User)
            .join(User, User.id == Budget.user_id)
            .join(
                Account,
                and_(Account.user_id == Budget.user_id, Account.is_default.is_(True)),
            )
            .order_by(Budget.user_id, Account.created_at)
        )
        seen: set[str] = set()
        rows: list[tuple[Budget, Account, User]] = []
        with self._scope() as session:
            for budget, account, user in session.execute(stmt).all():
                if budget.id in seen:
                    logger.warning(
                        f"multiple_default_accounts: user_id={budget.user_id}"
                    )
                    continue
                seen.add(budget.id)
                rows.append((budget, account, user))
        return rows

    def aggregate_expenses(
        self, user_id: str, account_id: str, start: datetime, end: datetime
    ) -> Decimal:
        stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.user_id == user_id,
            Transaction.account_id == account_id,
            Transaction.type == TransactionType.expense,
            Transaction.status != TransactionStatus.failed,
            Transaction.date >= start,
            Transaction.date <= end,
        )
        with self._scope() as session:
            total = session.execute(stmt).scalar_one()
        return Decimal(str(total or 0)).quantize(Decimal("0.01"))

    def find_transactions_in_range(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.date >= start,
                Transaction.date <= end,
            )
            .order_by(Transaction.date, Transaction.id)
        )
        with self._scope() as session:
            return list(session.scalars(stmt).all())

    def find_users(self) -> list[User]:
        with self._scope() as session:
            return list(session.scalars(select(User).order_by(User.created_at)).all())

    def mark_alert_sent(self, budget_id: str, when: datetime) -> None:
        with self._scope() as session:
            session.execute(
                update(Budget)
                .where(Budget.id == budget_id)
                .values(last_alert_sent=when)
                .execution_options(synchronize_session=False)
            )

    # -- user actions --------------------------------------------------------

    def create_user(self, email: str, name: Optional[str] = None) -> User:
        with self._scope() as session:
            user = User(email=email, name=name)
            session.add(user)
            session.flush()
            return user

    def _owned_account(self, session: Session, user_id: str, account_id: str) -> Account:
        account = session.get(Account, account_id)
        if not account or account.user_id != user_id:
            raise ValueError("Account not found")
        return account

    def _apply_balance(self, session: Session, account_id: str, delta: Decimal) -> None:
        if not delta:
            return
        session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance=Account.balance + delta)
            .execution_options(synchronize_session=False)
        )

    def get_account(self, user_id: str, account_id: str) -> Account:
        with self._scope() as session:
            return self._owned_account(session, user_id, account_id)

    def list_accounts(self, user_id: str) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == user_id)
            .order_by(Account.created_at.desc())
        )
        with self._scope() as session:
            return list(session.scalars(stmt).all())

    def create_account(self, user_id: str, data: AccountIn) -> Account:
        with self._scope() as session:
            if session.get(User, user_id) is None:
                raise ValueError("User not found")
            existing = session.execute(
                select(func.count(Account.id)).where(Account.user_id == user_id)
            ).scalar_one()
            should_be_default = existing == 0 or data.is_default
            if should_be_default:
                session.execute(
                    update(Account)
                    .where(Account.user_id == user_id, Account.is_default.is_(True))
                    .values(is_default=False)
                    .execution_options(synchronize_session=False)
                )
            account = Account(
                user_id=user_id,
                name=data.name,
                type=data.type,
                balance=data.balance,
                is_default=should_be_default,
            )
            session.add(account)
            session.flush()
            return account

    def set_default_account(self, user_id: str, account_id: str) -> Account:
        with self._scope() as session:
            account = self._owned_account(session, user_id, account_id)
            session.execute(
                update(Account)
                .where(
                    Account.user_id == user_id,
                    Account.id != account_id,
                    Account.is_default.is_(True),
                )
                .values(is_default=False)
                .execution_options(synchronize_session=False)
            )
            account.is_default = True
            session.flush()
            return account

    def create_transaction(self, user_id: str, data: TransactionIn) -> Transaction:
        with self._scope() as session:
            account = self._owned_account(session, user_id, data.account_id)
            txn = Transaction(
                user_id=user_id,
                account_id=account.id,
                type=data.type,
                amount=data.amount,
                description=data.description,
                date=data.date,
                category=data.category,
                status=TransactionStatus.completed,
                is_recurring=data.is_recurring,
                recurring_interval=data.recurring_interval,
                next_recurring_date=(
                    calculate_next_recurring_date(data.date, data.recurring_interval)
                    if data.is_recurring
                    else None
                ),
            )
            session.add(txn)
            self._apply_balance(session, account.id, _balance_effect(txn))
            session.flush()
            return txn

    def update_transaction(
        self, user_id: str, transaction_id: str, data: TransactionIn
    ) -> Transaction:
        with self._scope() as session:
            txn = session.get(Transaction, transaction_id)
            if not txn or txn.user_id != user_id:
                raise ValueError("Transaction not found")
            new_account = self._owned_account(session, user_id, data.account_id)

            self._apply_balance(session, txn.account_id, -_balance_effect(txn))

            txn.account_id = new_account.id
            txn.type = data.type
            txn.amount = data.amount
            txn.description = data.description
            txn.date = data.date
            txn.category = data.category
            txn.is_recurring = data.is_recurring
            txn.recurring_interval = data.recurring_interval
            if data.is_recurring:
                txn.next_recurring_date = calculate_next_recurring_date(
                    data.date, data.recurring_interval
                )
            else:
                txn.next_recurring_date = None
                txn.last_processed = None

            self._apply_balance(session, new_account.id, _balance_effect(txn))
            session.flush()
            return txn

    def delete_transactions(self, user_id: str, transaction_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(transaction_ids))
        if not ids:
            return 0
        with self._scope() as session:
            txns = session.scalars(
                select(Transaction).where(
                    Transaction.user_id == user_id, Transaction.id.in_(ids)
                )
            ).all()
            reversal: dict[str, Decimal] = defaultdict(Decimal)
            for txn in txns:
                reversal[txn.account_id] -= _balance_effect(txn)
                session.delete(txn)
            for account_id, delta in reversal.items():
                self._apply_balance(session, account_id, delta)
            return len(txns)

    def upsert_budget(self, user_id: str, data: BudgetIn) -> Budget:
        with self._scope() as session:
            budget = session.scalar(select(Budget).where(Budget.user_id == user_id))
            if budget is None:
                budget = Budget(user_id=user_id, amount=data.amount)
                session.add(budget)
            else:
                budget.amount = data.amount
            session.flush()
            return budget

    def current_budget(
        self, user_id: str, account_id: str, now: datetime
    ) -> tuple[Optional[Budget], Decimal]:
        with self._scope() as session:
            budget = session.scalar(select(Budget).where(Budget.user_id == user_id))
        expenses = self.aggregate_expenses(
            user_id, account_id, month_start(now), month_end(now)
        )
        return budget, expenses
