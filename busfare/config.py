import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"


@dataclass(frozen=True)
class Settings:
    database_url: str
    webhook_secret: str
    provider: str = "openpix"
    jwt_secret: Optional[str] = None
    log_level: str = "INFO"
    lock_timeout_seconds: float = 10.0

    @property
    def signature_header(self) -> str:
        return f"x-{self.provider}-signature"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(dotenv_path=ENV_PATH)

        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

        webhook_secret = os.getenv("PROVIDER_WEBHOOK_SECRET")
        if not webhook_secret:
            raise RuntimeError("PROVIDER_WEBHOOK_SECRET is not set. Check your .env file.")

        return cls(
            database_url=database_url,
            webhook_secret=webhook_secret,
            provider=os.getenv("PAYMENT_PROVIDER", "openpix").lower(),
            jwt_secret=os.getenv("JWT_SECRET"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            lock_timeout_seconds=float(os.getenv("LOCK_TIMEOUT_SECONDS", "10")),
        )
