import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_max_age_days: int,
        cron_secret: str,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_days = session_max_age_days
        self.cron_secret = cron_secret
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TIMEZONE", "Europe/Berlin")
    session_secret = os.getenv(
        "BUDGET_SESSION_SECRET",
        "5c1b0e2f9a7d4c3e8b6a1f0d2e4c6a8b9d7f5e3c1a0b2d4f6e8a9c7b5d3f1e0a",
    )
    session_max_age_days = int(os.getenv("BUDGET_SESSION_MAX_AGE_DAYS", "7"))
    cron_secret = os.getenv("BUDGET_CRON_SECRET", "")
    scheduler_enabled = _env_flag("BUDGET_SCHEDULER_ENABLED", "true")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_max_age_days=session_max_age_days,
        cron_secret=cron_secret,
        scheduler_enabled=scheduler_enabled,
    )
