"""Process-wide client handles.

Built once at process start (scheduler, worker or CLI) and handed to the
components explicitly. ``close()`` releases the shared connections.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from budget_alerts import BudgetAlertEvaluator
from config import Settings, get_settings
from database import build_engine, make_session_factory
from dispatcher import CeleryWorkQueue, Dispatcher, DueItemScanner, WorkQueue
from insights import GeminiInsightGenerator, InsightGenerator
from ledger import LedgerStore
from notifications import EmailNotifier, LoggingNotifier, Notifier
from processor import RecurringTransactionProcessor
from reports import MonthlyReportAggregator
from throttle import CounterStore, RateLimiter, RedisCounterStore, build_counter_store


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    store: LedgerStore
    counters: CounterStore
    limiter: RateLimiter
    notifier: Notifier
    insights: InsightGenerator
    queue: WorkQueue

    def dispatcher(self) -> Dispatcher:
        return Dispatcher(DueItemScanner(self.store), self.queue)

    def processor(self) -> RecurringTransactionProcessor:
        return RecurringTransactionProcessor(self.store, self.limiter)

    def budget_alerts(self) -> BudgetAlertEvaluator:
        return BudgetAlertEvaluator(
            self.store,
            self.notifier,
            self.settings.budget_alert_threshold,
            timezone=self.settings.timezone,
        )

    def monthly_reports(self) -> MonthlyReportAggregator:
        return MonthlyReportAggregator(
            self.store, self.insights, self.notifier, timezone=self.settings.timezone
        )

    def close(self) -> None:
        if isinstance(self.counters, RedisCounterStore):
            self.counters.close()
        self.engine.dispose()
        logger.info("runtime_closed")


def _build_notifier(settings: Settings) -> Notifier:
    if not settings.smtp_host:
        return LoggingNotifier()
    return EmailNotifier(
        host=settings.smtp_host,
        port=settings.smtp_port,
        sender=settings.email_from,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        override_to=settings.email_override_to,
    )


def build_runtime(
    settings: Optional[Settings] = None, queue: Optional[WorkQueue] = None
) -> Runtime:
    settings = settings or get_settings()
    engine = build_engine(settings.database_url)
    session_factory = make_session_factory(engine)
    counters = build_counter_store(settings.rate_limit_backend, settings.redis_url)
    if queue is None:
        from celery_app import celery_app

        queue = CeleryWorkQueue(celery_app)
    runtime = Runtime(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        store=LedgerStore(session_factory),
        counters=counters,
        limiter=RateLimiter(
            counters,
            limit=settings.throttle_limit,
            period_seconds=settings.throttle_period_secs,
        ),
        notifier=_build_notifier(settings),
        insights=GeminiInsightGenerator(
            settings.gemini_api_key,
            settings.gemini_model,
            settings.insight_timeout_secs,
        ),
        queue=queue,
    )
    logger.info(
        f"runtime_built: rate_limit_backend={settings.rate_limit_backend} "
        f"throttle={settings.throttle_limit}/{settings.throttle_period_secs}s"
    )
    return runtime
