from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from pathlib import Path
from typing import Optional, Protocol

from jinja2 import Environment, FileSystemLoader, select_autoescape

from schemas import BudgetAlertData, MonthlyReportData


logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

templates = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)


def format_money(value) -> str:
    return f"${value:,.2f}"


templates.filters["money"] = format_money


class Notifier(Protocol):
    def send(self, to: str, subject: str, html: str) -> bool:
        ...


def render_budget_alert(user_name: Optional[str], data: BudgetAlertData) -> str:
    template = templates.get_template("emails/budget_alert.html")
    return template.render(user_name=user_name or "there", data=data)


def render_monthly_report(user_name: Optional[str], data: MonthlyReportData) -> str:
    template = templates.get_template("emails/monthly_report.html")
    return template.render(user_name=user_name or "there", data=data)


class EmailNotifier:
    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        override_to: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.override_to = override_to
        self.timeout = timeout

    def send(self, to: str, subject: str, html: str) -> bool:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = self.override_to or to
        message["Subject"] = subject
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(html, subtype="html")
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password or "")
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(f"email_failed: to={to} subject={subject!r} error={exc}")
            return False
        logger.info(f"email_sent: to={to} subject={subject!r}")
        return True


class LoggingNotifier:
    """Used when no SMTP host is configured."""

    def send(self, to: str, subject: str, html: str) -> bool:
        logger.info(f"email_skipped: to={to} subject={subject!r} reason=smtp_not_configured")
        return True
