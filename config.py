import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        cloud_database_url: str,
        timezone: str,
        free_category_limit: int,
        trend_months: int,
    ) -> None:
        self.database_url = database_url
        self.cloud_database_url = cloud_database_url
        self.timezone = timezone
        self.free_category_limit = free_category_limit
        self.trend_months = trend_months


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("PROSPER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    default_cloud_db = data_dir / "cloud.db"
    database_url = os.getenv("PROSPER_DATABASE_URL", f"sqlite:///{default_db}")
    cloud_database_url = os.getenv(
        "PROSPER_CLOUD_DATABASE_URL", f"sqlite:///{default_cloud_db}"
    )
    timezone = os.getenv("PROSPER_TIMEZONE", "UTC")
    free_category_limit = int(os.getenv("PROSPER_FREE_CATEGORY_LIMIT", "5"))
    trend_months = int(os.getenv("PROSPER_TREND_MONTHS", "6"))
    return Settings(
        database_url=database_url,
        cloud_database_url=cloud_database_url,
        timezone=timezone,
        free_category_limit=free_category_limit,
        trend_months=trend_months,
    )
