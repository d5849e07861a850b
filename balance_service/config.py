import os
import logging
from dataclasses import dataclass
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Service runtime configuration."""
    database_url: str = "sqlite:///./balances.db"
    jwt_secret: str = "devsecret"
    internal_token: str = "internal-dev-token"
    rabbitmq_url: Optional[str] = None      # events disabled when unset

    allow_negative: bool = False
    auto_create: bool = True                # False -> UnknownUser on first write

    max_retries: int = 3
    retry_backoff: float = 0.05             # seconds, doubled per attempt
    lock_timeout: float = 5.0
    history_page_size: int = 100
    pool_timeout: float = 5.0

    log_level: str = "INFO"
    algorithm: str = "HS256"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./balances.db"),
            jwt_secret=os.getenv("JWT_SECRET", "devsecret"),
            internal_token=os.getenv("INTERNAL_TOKEN", "internal-dev-token"),
            rabbitmq_url=os.getenv("RABBITMQ_URL") or None,
            allow_negative=_env_bool("BALANCE_ALLOW_NEGATIVE", "false"),
            auto_create=_env_bool("BALANCE_AUTO_CREATE", "true"),
            max_retries=int(os.getenv("STORE_MAX_RETRIES", "3")),
            retry_backoff=float(os.getenv("STORE_RETRY_BACKOFF", "0.05")),
            lock_timeout=float(os.getenv("STORE_LOCK_TIMEOUT", "5.0")),
            history_page_size=int(os.getenv("HISTORY_PAGE_SIZE", "100")),
            pool_timeout=float(os.getenv("DB_POOL_TIMEOUT", "5.0")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
