"""Runtime configuration, read once from the environment (.env supported)."""
import os
from dataclasses import dataclass, field
from typing import Tuple

from dotenv import load_dotenv

load_dotenv()

DEFAULT_DATABASE_URL = "sqlite:///./caloryia.db"
DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"


def _split_csv(raw: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _collect_api_keys() -> Tuple[str, ...]:
    keys = [os.getenv("OPENAI_API_KEY", "").strip()]
    keys.extend(_split_csv(os.getenv("OPENAI_EXTRA_KEYS", "")))
    # Placeholders like "x" or "test" are not real keys
    return tuple(k for k in keys if len(k) > 5)


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    openai_api_keys: Tuple[str, ...] = ()
    openai_model: str = "gpt-4o-mini"
    ai_max_retries: int = 3
    ai_backoff_seconds: float = 1.5
    ai_timeout_seconds: float = 60.0
    ai_key_strategy: str = "random"
    mirror_dir: str = "./.caloryia_mirror"
    checkout_url: str = ""
    cors_origins: Tuple[str, ...] = field(default_factory=lambda: _split_csv(DEFAULT_CORS_ORIGINS))
    log_level: str = "INFO"

    @property
    def remote_configured(self) -> bool:
        return bool(self.database_url)

    @property
    def ai_configured(self) -> bool:
        return bool(self.openai_api_keys)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL).strip(),
            openai_api_keys=_collect_api_keys(),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            ai_max_retries=int(os.getenv("AI_MAX_RETRIES", "3")),
            ai_backoff_seconds=float(os.getenv("AI_BACKOFF_SECONDS", "1.5")),
            ai_timeout_seconds=float(os.getenv("AI_TIMEOUT_SECONDS", "60")),
            ai_key_strategy=os.getenv("AI_KEY_STRATEGY", "random"),
            mirror_dir=os.getenv("MIRROR_DIR", "./.caloryia_mirror"),
            checkout_url=os.getenv("CHECKOUT_URL", "").strip(),
            cors_origins=_split_csv(os.getenv("CORS_ORIGINS", DEFAULT_CORS_ORIGINS)),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
