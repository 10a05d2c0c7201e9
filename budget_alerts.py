from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo

from ledger import LedgerStore
from models import Account, Budget, User, utcnow
from notifications import Notifier, render_budget_alert
from periods import local_month_start, same_calendar_month, to_local
from schemas import BudgetAlertData


logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


def percentage_used(expenses: Decimal, budget_amount: Decimal) -> Decimal:
    if budget_amount <= 0:
        return HUNDRED if expenses > 0 else Decimal("0")
    return expenses / budget_amount * HUNDRED


def should_alert(
    used: Decimal,
    threshold: Decimal,
    last_alert_sent: Optional[datetime],
    now: datetime,
    tz: ZoneInfo = ZoneInfo("UTC"),
) -> bool:
    if used < threshold:
        return False
    if last_alert_sent is None:
        return True
    return not same_calendar_month(to_local(last_alert_sent, tz), to_local(now, tz))


@dataclass
class BudgetAlertSummary:
    checked: int = 0
    alerted: int = 0
    failed: int = 0


class BudgetAlertEvaluator:
    def __init__(
        self,
        store: LedgerStore,
        notifier: Notifier,
        threshold: int = 80,
        timezone: str = "UTC",
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.threshold = Decimal(threshold)
        self.tz = ZoneInfo(timezone)

    def run(self, now: Optional[datetime] = None) -> BudgetAlertSummary:
        now = now or utcnow()
        summary = BudgetAlertSummary()
        for budget, account, user in self.store.find_budgets():
            summary.checked += 1
            try:
                if self.evaluate(budget, account, user, now):
                    summary.alerted += 1
            except Exception:
                summary.failed += 1
                logger.exception(
                    f"budget_check_failed: budget_id={budget.id} user_id={user.id}"
                )
        logger.info(
            f"budget_alerts_run: checked={summary.checked} alerted={summary.alerted} "
            f"failed={summary.failed}"
        )
        return summary

    def evaluate(
        self, budget: Budget, account: Account, user: User, now: datetime
    ) -> bool:
        expenses = self.store.aggregate_expenses(
            user.id, account.id, local_month_start(now, self.tz), now
        )
        used = percentage_used(expenses, budget.amount)
        if not should_alert(used, self.threshold, budget.last_alert_sent, now, self.tz):
            return False

        data = BudgetAlertData(
            account_name=account.name,
            percentage_used=used.quantize(Decimal("0.1")),
            budget_amount=budget.amount,
            total_expenses=expenses,
        )
        html = render_budget_alert(user.name, data)
        sent = self.notifier.send(user.email, f"Budget Alert for {account.name}", html)
        if not sent:
            logger.warning(f"budget_alert_not_delivered: user_id={user.id}")
            return False

        self.store.mark_alert_sent(budget.id, now)
        logger.info(
            f"budget_alert_sent: user_id={user.id} account_id={account.id} "
            f"percentage_used={data.percentage_used}"
        )
        return True
