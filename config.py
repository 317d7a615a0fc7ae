import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        default_user_id: int,
        fx_base_url: str,
        fx_timeout_secs: float,
        fx_cache_ttl_secs: float,
    ) -> None:
        self.database_url = database_url
        self.default_user_id = default_user_id
        self.fx_base_url = fx_base_url
        self.fx_timeout_secs = fx_timeout_secs
        self.fx_cache_ttl_secs = fx_cache_ttl_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    default_user_id = int(os.getenv("FINANCE_DEFAULT_USER_ID", "1"))
    fx_base_url = os.getenv(
        "FINANCE_FX_BASE_URL", "https://open.er-api.com/v6/latest"
    ).rstrip("/")
    fx_timeout_secs = float(os.getenv("FINANCE_FX_TIMEOUT_SECS", "5"))
    fx_cache_ttl_secs = float(os.getenv("FINANCE_FX_CACHE_TTL_SECS", "3600"))
    return Settings(
        database_url=database_url,
        default_user_id=default_user_id,
        fx_base_url=fx_base_url,
        fx_timeout_secs=fx_timeout_secs,
        fx_cache_ttl_secs=fx_cache_ttl_secs,
    )
