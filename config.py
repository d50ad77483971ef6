import os
from functools import lru_cache
from pathlib import Path


WEEKDAY_NAMES = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        week_starts_on: int,
        default_tenant: str,
        populate_batch_size: int,
        populate_batch_pause_secs: float,
        refresh_window_days: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.week_starts_on = week_starts_on
        self.default_tenant = default_tenant
        self.populate_batch_size = populate_batch_size
        self.populate_batch_pause_secs = populate_batch_pause_secs
        self.refresh_window_days = refresh_window_days


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("TRENDS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_weekday(value: str) -> int:
    key = value.strip().lower()
    if key.isdigit():
        day = int(key)
        if 0 <= day <= 6:
            return day
    if key in WEEKDAY_NAMES:
        return WEEKDAY_NAMES[key]
    raise ValueError(f"Invalid TRENDS_WEEK_STARTS_ON value: {value!r}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "trends.db"
    database_url = os.getenv("TRENDS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("TRENDS_TIMEZONE", "UTC")
    week_starts_on = _parse_weekday(os.getenv("TRENDS_WEEK_STARTS_ON", "sunday"))
    default_tenant = os.getenv("TRENDS_DEFAULT_TENANT", "default")
    populate_batch_size = int(os.getenv("TRENDS_POPULATE_BATCH_SIZE", "100"))
    populate_batch_pause_secs = float(
        os.getenv("TRENDS_POPULATE_BATCH_PAUSE_SECS", "0.1")
    )
    refresh_window_days = int(os.getenv("TRENDS_REFRESH_WINDOW_DAYS", "35"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        week_starts_on=week_starts_on,
        default_tenant=default_tenant,
        populate_batch_size=populate_batch_size,
        populate_batch_pause_secs=populate_batch_pause_secs,
        refresh_window_days=refresh_window_days,
    )
