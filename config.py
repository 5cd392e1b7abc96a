import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        token_secret: str,
        refresh_token_secret: str,
        access_token_ttl_secs: int,
        refresh_token_ttl_secs: int,
        bcrypt_rounds: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.token_secret = token_secret
        self.refresh_token_secret = refresh_token_secret
        self.access_token_ttl_secs = access_token_ttl_secs
        self.refresh_token_ttl_secs = refresh_token_ttl_secs
        self.bcrypt_rounds = bcrypt_rounds
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    token_secret = os.getenv(
        "LEDGER_TOKEN_SECRET",
        "3f1c9a7e52b84d06a1e0c7b9d24f6a8831c5e7f09b2d4a6c8e1f3a5b7d9c0e2f",
    )
    refresh_token_secret = os.getenv(
        "LEDGER_REFRESH_TOKEN_SECRET",
        "a94e0d27c61f8b35e2d7a0c4f19b6e83d5c2a7f04e8b1d6c3a9f2e7b0d5c8a1e",
    )
    access_token_ttl_secs = int(os.getenv("LEDGER_ACCESS_TOKEN_TTL_SECS", "86400"))
    refresh_token_ttl_secs = int(
        os.getenv("LEDGER_REFRESH_TOKEN_TTL_SECS", str(7 * 86400))
    )
    bcrypt_rounds = int(os.getenv("LEDGER_BCRYPT_ROUNDS", "12"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        token_secret=token_secret,
        refresh_token_secret=refresh_token_secret,
        access_token_ttl_secs=access_token_ttl_secs,
        refresh_token_ttl_secs=refresh_token_ttl_secs,
        bcrypt_rounds=bcrypt_rounds,
        log_level=log_level,
    )
