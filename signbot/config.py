import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_DATABASE_URL = "sqlite:///signbot.db"
DEFAULT_PLANNING_CACHE_TTL = 120
DEFAULT_HTTP_TIMEOUT = 15


def _optional(name: str) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    register_key: Optional[str] = None
    admin_key: Optional[str] = None
    edsquare_webhook_url: Optional[str] = None
    sign_webhook_url: Optional[str] = None
    planning_cache_ttl: int = DEFAULT_PLANNING_CACHE_TTL
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Reads the environment (.env is loaded at import time)"""
    return Settings(
        database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
        register_key=_optional("REGISTER_KEY"),
        admin_key=_optional("ADMIN_KEY"),
        edsquare_webhook_url=_optional("EDSQUARE_WEBHOOK_URL"),
        sign_webhook_url=_optional("SIGN_WEBHOOK_URL"),
        planning_cache_ttl=int(os.getenv("PLANNING_CACHE_TTL_SECONDS", str(DEFAULT_PLANNING_CACHE_TTL))),
        http_timeout=float(os.getenv("HTTP_TIMEOUT_SECONDS", str(DEFAULT_HTTP_TIMEOUT))),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
