from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from insights import InsightGenerator, insights_or_fallback
from ledger import LedgerStore
from models import Transaction, TransactionType, User, utcnow
from notifications import Notifier, render_monthly_report
from periods import Period, local_previous_month, to_local
from schemas import MonthlyReportData, MonthlyStats


logger = logging.getLogger(__name__)

UNCATEGORIZED = "uncategorized"


def aggregate_stats(transactions: Iterable[Transaction]) -> MonthlyStats:
    total_income = Decimal("0")
    total_expenses = Decimal("0")
    by_category: dict[str, Decimal] = {}
    for txn in transactions:
        if txn.type == TransactionType.expense:
            total_expenses += txn.amount
            category = (txn.category or "").strip() or UNCATEGORIZED
            by_category[category] = by_category.get(category, Decimal("0")) + txn.amount
        else:
            total_income += txn.amount
    return MonthlyStats(
        total_income=total_income,
        total_expenses=total_expenses,
        by_category=by_category,
    )


@dataclass
class MonthlyReportSummary:
    users: int = 0
    sent: int = 0
    failed: int = 0


class MonthlyReportAggregator:
    def __init__(
        self,
        store: LedgerStore,
        insights: InsightGenerator,
        notifier: Notifier,
        timezone: str = "UTC",
    ) -> None:
        self.store = store
        self.insights = insights
        self.notifier = notifier
        self.tz = ZoneInfo(timezone)

    def build_stats(self, user_id: str, period: Period) -> MonthlyStats:
        transactions = self.store.find_transactions_in_range(
            user_id, period.start, period.end
        )
        return aggregate_stats(transactions)

    def build_report(self, user: User, period: Period) -> MonthlyReportData:
        stats = self.build_stats(user.id, period)
        month_name = to_local(period.start, self.tz).strftime("%B")
        insights = insights_or_fallback(self.insights, month_name, stats)
        return MonthlyReportData(month=month_name, stats=stats, insights=insights)

    def run(self, now: Optional[datetime] = None) -> MonthlyReportSummary:
        now = now or utcnow()
        period = local_previous_month(now, self.tz)
        summary = MonthlyReportSummary()
        for user in self.store.find_users():
            summary.users += 1
            try:
                report = self.build_report(user, period)
                html = render_monthly_report(user.name, report)
                sent = self.notifier.send(
                    user.email,
                    f"Your Monthly Financial Report - {report.month}",
                    html,
                )
            except Exception:
                summary.failed += 1
                logger.exception(f"monthly_report_failed: user_id={user.id}")
                continue
            if sent:
                summary.sent += 1
            else:
                summary.failed += 1
        logger.info(
            f"monthly_reports_run: period_start={period.start.isoformat()} tz={self.tz.key} "
            f"users={summary.users} sent={summary.sent} failed={summary.failed}"
        )
        return summary
