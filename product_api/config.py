import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from product_api.exceptions import ConfigurationError

load_dotenv()


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _list_env(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    mongo_uri: Optional[str] = None
    port: int = 5000
    connect_attempts: int = 15
    connect_delay_ms: int = 3000
    db_name: Optional[str] = None
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            mongo_uri=os.getenv("MONGO_URI") or None,
            port=_int_env("PORT", 5000, minimum=1),
            connect_attempts=_int_env("MONGO_CONNECT_ATTEMPTS", 15, minimum=1),
            connect_delay_ms=_int_env("MONGO_CONNECT_DELAY_MS", 3000),
            db_name=os.getenv("MONGO_DB_NAME") or None,
            cors_origins=_list_env("CORS_ORIGINS", "*"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def require_mongo_uri(self) -> str:
        if not self.mongo_uri:
            raise ConfigurationError("MONGO_URI is not set")
        return self.mongo_uri
