import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from kinddraw.errors import ConfigurationError

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def _env(name: str) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    database_url: Optional[str] = None
    database_read_url: Optional[str] = None
    jwt_secret: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            stripe_secret_key=_env("STRIPE_SECRET_KEY"),
            # STRIPE_WEBHOOKS_SECRET is the older name some deployments still use
            stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET") or _env("STRIPE_WEBHOOKS_SECRET"),
            database_url=_env("DATABASE_URL"),
            database_read_url=_env("DATABASE_READ_URL"),
            jwt_secret=_env("JWT_SECRET"),
            log_level=(_env("LOG_LEVEL") or "INFO").upper(),
        )

    @property
    def read_url(self) -> Optional[str]:
        return self.database_read_url or self.database_url

    def missing(self) -> List[str]:
        """Names of required settings that are not configured."""
        required = {
            "STRIPE_SECRET_KEY": self.stripe_secret_key,
            "STRIPE_WEBHOOK_SECRET": self.stripe_webhook_secret,
            "DATABASE_URL": self.database_url,
        }
        return [name for name, value in required.items() if not value]

    def require_stripe_key(self) -> str:
        if not self.stripe_secret_key:
            raise ConfigurationError("Missing STRIPE_SECRET_KEY")
        return self.stripe_secret_key

    def require_webhook_secrets(self) -> tuple:
        if not self.stripe_secret_key or not self.stripe_webhook_secret:
            raise ConfigurationError("Missing STRIPE_SECRET_KEY or STRIPE_WEBHOOK_SECRET")
        return self.stripe_secret_key, self.stripe_webhook_secret

    def require_database_url(self) -> str:
        if not self.database_url:
            raise ConfigurationError("Missing DATABASE_URL")
        return self.database_url


def get_settings() -> Settings:
    return Settings.from_env()
