"""Process configuration, read once from the environment (and an optional .env file)."""

import logging
import os
import secrets
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger("invoice_import.config")

DEFAULT_OBJECT_STORE_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "data", "objects")


@dataclass(slots=True)
class Settings:
    signing_secret: str
    database_url: Optional[str] = None
    object_store_dir: str = DEFAULT_OBJECT_STORE_DIR
    bucket_name: str = "invoices"
    public_base_url: str = "http://localhost:8000"
    notify_timeout_seconds: float = 2.0
    handler_timeout_seconds: float = 5.0
    worker_max_retries: int = 3
    object_lifetime_seconds: int = 24 * 60 * 60
    housekeeping_interval_seconds: float = 60.0
    log_level: str = "INFO"


def _number(name: str, default: str, cast):
    raw = os.environ.get(name, default)
    try:
        return cast(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid value for {name}: {raw!r}") from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    load_dotenv()

    signing_secret = os.environ.get("UPLOAD_SIGNING_SECRET")
    if not signing_secret:
        # Upload URLs issued before a restart stop verifying with a generated secret
        logger.warning("UPLOAD_SIGNING_SECRET is not set; generating an ephemeral signing secret")
        signing_secret = secrets.token_hex(32)

    return Settings(
        signing_secret=signing_secret,
        database_url=os.environ.get("DATABASE_URL") or None,
        object_store_dir=os.environ.get("OBJECT_STORE_DIR", DEFAULT_OBJECT_STORE_DIR),
        bucket_name=os.environ.get("INVOICE_BUCKET", "invoices"),
        public_base_url=os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000"),
        notify_timeout_seconds=_number("NOTIFY_TIMEOUT_SECONDS", "2.0", float),
        handler_timeout_seconds=_number("HANDLER_TIMEOUT_SECONDS", "5.0", float),
        worker_max_retries=_number("WORKER_MAX_RETRIES", "3", int),
        object_lifetime_seconds=_number("OBJECT_LIFETIME_SECONDS", str(24 * 60 * 60), int),
        housekeeping_interval_seconds=_number("HOUSEKEEPING_INTERVAL_SECONDS", "60", float),
        log_level=os.environ.get("APP_LOG_LEVEL", "INFO").upper(),
    )
