import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        ledger_key: str,
        alert_interval_minutes: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.ledger_key = ledger_key
        self.alert_interval_minutes = alert_interval_minutes


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("BUDGET_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "budget.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("BUDGET_TIMEZONE", "Europe/Berlin")
    ledger_key = os.getenv("BUDGET_LEDGER_KEY", "1")
    alert_interval_minutes = int(os.getenv("BUDGET_ALERT_INTERVAL_MINUTES", "60"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        ledger_key=ledger_key,
        alert_interval_minutes=alert_interval_minutes,
    )
