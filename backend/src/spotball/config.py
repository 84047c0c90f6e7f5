from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .domain import StoreBackend

logger = logging.getLogger(__name__)

DEV_JWT_SECRET = "dev-secret-change-me"


def load_dotenv_file(repo_root: Path) -> None:
    env_path = repo_root / "config" / ".env"
    if not env_path.exists():
        return
    load_dotenv(dotenv_path=env_path, override=False)


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from None
    if value < 1:
        raise RuntimeError(f"{name} must be at least 1")
    return value


@dataclass(frozen=True)
class Settings:
    store_backend: str = "inmemory"
    jwt_secret: str = DEV_JWT_SECRET
    admin_username: str = "admin"
    admin_password_hash: str = ""
    admin_password: str = ""
    max_tickets_per_participant: int = 100
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        backend = StoreBackend(
            kind=os.environ.get("STORE_BACKEND", "inmemory").strip().lower() or "inmemory"
        )
        secret = os.environ.get("JWT_SECRET", "").strip()
        if not secret:
            logger.warning("JWT_SECRET is not set; using the development secret")
            secret = DEV_JWT_SECRET
        return cls(
            store_backend=backend.kind,
            jwt_secret=secret,
            admin_username=os.environ.get("ADMIN_USERNAME", "admin").strip() or "admin",
            admin_password_hash=os.environ.get("ADMIN_PASSWORD_HASH", "").strip(),
            admin_password=os.environ.get("ADMIN_PASSWORD", ""),
            max_tickets_per_participant=_int_env("MAX_TICKETS_PER_PARTICIPANT", 100),
            log_level=os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )
