import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        log_level: str,
        scheduler_enabled: bool,
        webhook_sweep_minutes: int,
        webhook_max_attempts: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.log_level = log_level
        self.scheduler_enabled = scheduler_enabled
        self.webhook_sweep_minutes = webhook_sweep_minutes
        self.webhook_max_attempts = webhook_max_attempts


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINTECH_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "fintech.db"
    database_url = os.getenv("FINTECH_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINTECH_TIMEZONE", "UTC")
    log_level = os.getenv("FINTECH_LOG_LEVEL", "INFO").upper()
    scheduler_enabled = _env_flag("FINTECH_SCHEDULER_ENABLED", True)
    webhook_sweep_minutes = int(os.getenv("FINTECH_WEBHOOK_SWEEP_MINUTES", "5"))
    webhook_max_attempts = int(os.getenv("FINTECH_WEBHOOK_MAX_ATTEMPTS", "3"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        log_level=log_level,
        scheduler_enabled=scheduler_enabled,
        webhook_sweep_minutes=webhook_sweep_minutes,
        webhook_max_attempts=webhook_max_attempts,
    )
