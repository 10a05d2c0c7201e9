import smtplib
from decimal import Decimal

from notifications import (
    EmailNotifier,
    LoggingNotifier,
    render_budget_alert,
    render_monthly_report,
)
from schemas import BudgetAlertData, MonthlyReportData, MonthlyStats


def test_budget_alert_template_shows_figures():
    html = render_budget_alert(
        "Ana",
        BudgetAlertData(
            account_name="Main <Checking>",
            percentage_used=Decimal("85.0"),
            budget_amount=Decimal("4000.00"),
            total_expenses=Decimal("3400.00"),
        ),
    )
    assert "Hello Ana" in html
    assert "85.0%" in html
    assert "$4,000.00" in html
    assert "$600.00" in html
    assert "Main &lt;Checking&gt;" in html


def test_monthly_report_template_lists_categories_and_insights():
    html = render_monthly_report(
        None,
        MonthlyReportData(
            month="December",
            stats=MonthlyStats(
                total_income=Decimal("5000"),
                total_expenses=Decimal("3500"),
                by_category={"housing": Decimal("1500"), "groceries": Decimal("600")},
            ),
            insights=["Housing is 43% of spending."],
        ),
    )
    assert "Hello there" in html
    assert "December" in html
    assert "$1,500.00" in html
    assert "Housing is 43% of spending." in html


def test_email_failure_returns_false(monkeypatch):
    class Unreachable:
        def __init__(self, *args, **kwargs):
            raise OSError("connection refused")

    monkeypatch.setattr(smtplib, "SMTP", Unreachable)
    notifier = EmailNotifier(host="smtp.invalid", port=25, sender="a@example.com")
    assert notifier.send("b@example.com", "Hi", "<p>hi</p>") is False


def test_email_is_redirected_when_override_set(monkeypatch):
    sent = []

    class FakeSMTP:
        def __init__(self, *args, **kwargs):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def starttls(self):
            pass

        def login(self, username, password):
            pass

        def send_message(self, message):
            sent.append(message)

    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    notifier = EmailNotifier(
        host="smtp.example.com",
        port=587,
        sender="a@example.com",
        username="user",
        password="secret",
        override_to="dev@example.com",
    )
    assert notifier.send("real@example.com", "Report", "<p>report</p>") is True
    assert sent[0]["To"] == "dev@example.com"


def test_logging_notifier_accepts_everything():
    assert LoggingNotifier().send("x@example.com", "s", "<p></p>") is True
