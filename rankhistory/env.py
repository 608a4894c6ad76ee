import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_DB_PATH = "data/rankhistory.db"
DEFAULT_API_BASE = "https://pro-api.coinmarketcap.com"
DEFAULT_RATE_LIMIT_MS = 2100
DEFAULT_TOKEN_SCOPE = 1000


def load_env() -> None:
    """Load .env from project root if present."""
    env_path = Path.cwd() / ".env"
    if not env_path.exists():
        return
    load_dotenv(dotenv_path=env_path)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise SystemExit(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Runtime configuration read from the environment."""

    db_path: Path
    cmc_api_key: Optional[str]
    cmc_api_base: str
    rate_limit_ms: int
    token_scope: int
    log_level: str
    log_dir: Path

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=Path(os.getenv("RANKHISTORY_DB") or DEFAULT_DB_PATH),
            cmc_api_key=os.getenv("CMC_API_KEY") or None,
            cmc_api_base=os.getenv("CMC_API_BASE") or DEFAULT_API_BASE,
            rate_limit_ms=_int_env("BACKFILL_RATE_LIMIT_MS", DEFAULT_RATE_LIMIT_MS),
            token_scope=_int_env("BACKFILL_TOKEN_SCOPE", DEFAULT_TOKEN_SCOPE),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
            log_dir=Path(os.getenv("LOG_DIR") or "logs"),
        )
