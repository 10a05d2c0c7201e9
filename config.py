import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        redis_url: str,
        broker_url: str,
        rate_limit_backend: str,
        throttle_limit: int,
        throttle_period_secs: int,
        max_attempts: int,
        retry_backoff_secs: int,
        budget_alert_threshold: int,
        smtp_host: Optional[str],
        smtp_port: int,
        smtp_username: Optional[str],
        smtp_password: Optional[str],
        smtp_use_tls: bool,
        email_from: str,
        email_override_to: Optional[str],
        gemini_api_key: Optional[str],
        gemini_model: str,
        insight_timeout_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.redis_url = redis_url
        self.broker_url = broker_url
        self.rate_limit_backend = rate_limit_backend
        self.throttle_limit = throttle_limit
        self.throttle_period_secs = throttle_period_secs
        self.max_attempts = max_attempts
        self.retry_backoff_secs = retry_backoff_secs
        self.budget_alert_threshold = budget_alert_threshold
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.email_from = email_from
        self.email_override_to = email_override_to
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.insight_timeout_secs = insight_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    redis_url = os.getenv("LEDGER_REDIS_URL", "redis://localhost:6379/0")
    return Settings(
        database_url=database_url,
        timezone=os.getenv("LEDGER_TIMEZONE", "UTC"),
        redis_url=redis_url,
        broker_url=os.getenv("LEDGER_BROKER_URL", redis_url),
        rate_limit_backend=os.getenv("LEDGER_RATE_LIMIT_BACKEND", "redis").lower(),
        throttle_limit=int(os.getenv("LEDGER_THROTTLE_LIMIT", "10")),
        throttle_period_secs=int(os.getenv("LEDGER_THROTTLE_PERIOD_SECS", "60")),
        max_attempts=int(os.getenv("LEDGER_MAX_ATTEMPTS", "3")),
        retry_backoff_secs=int(os.getenv("LEDGER_RETRY_BACKOFF_SECS", "2")),
        budget_alert_threshold=int(os.getenv("LEDGER_BUDGET_ALERT_THRESHOLD", "80")),
        smtp_host=os.getenv("LEDGER_SMTP_HOST") or None,
        smtp_port=int(os.getenv("LEDGER_SMTP_PORT", "587")),
        smtp_username=os.getenv("LEDGER_SMTP_USERNAME") or None,
        smtp_password=os.getenv("LEDGER_SMTP_PASSWORD") or None,
        smtp_use_tls=_env_bool("LEDGER_SMTP_USE_TLS", default=True),
        email_from=os.getenv("LEDGER_EMAIL_FROM", "Ledger <noreply@localhost>"),
        email_override_to=os.getenv("LEDGER_EMAIL_OVERRIDE_TO") or None,
        gemini_api_key=os.getenv("LEDGER_GEMINI_API_KEY") or None,
        gemini_model=os.getenv("LEDGER_GEMINI_MODEL", "gemini-1.5-flash"),
        insight_timeout_secs=float(os.getenv("LEDGER_INSIGHT_TIMEOUT_SECS", "15")),
    )
