import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        token_secret: str,
        token_max_age_secs: int,
        log_level: str,
        cors_origins: list[str],
    ) -> None:
        self.database_url = database_url
        self.token_secret = token_secret
        self.token_max_age_secs = token_max_age_secs
        self.log_level = log_level
        self.cors_origins = cors_origins


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("EXPENSES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _split_origins(raw: str) -> list[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("EXPENSES_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "expenses.db"
        database_url = f"sqlite:///{default_db}"
    token_secret = os.getenv(
        "EXPENSES_TOKEN_SECRET",
        "4f1c9a0b7e2d8c35a6b1f0e9d2c7a4b8e5f3a9c1d7b2e6f0a8c4d1e9b3f7a2c5",
    )
    token_max_age_secs = int(os.getenv("EXPENSES_TOKEN_MAX_AGE_SECS", "3600"))
    log_level = os.getenv("EXPENSES_LOG_LEVEL", "INFO").upper()
    cors_origins = _split_origins(os.getenv("EXPENSES_CORS_ORIGINS", "*"))
    return Settings(
        database_url=database_url,
        token_secret=token_secret,
        token_max_age_secs=token_max_age_secs,
        log_level=log_level,
        cors_origins=cors_origins,
    )
