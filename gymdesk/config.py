import logging
import os
from dataclasses import dataclass

from .database import DB_FILE

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


@dataclass
class AppConfig:
    db_file: str = DB_FILE
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 5000
    renewal_max_attempts: int = 3
    invoice_max_attempts: int = 5
    seed_plans: bool = True


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got '{raw}'.")
    if value <= 0:
        raise ValueError(f"Environment variable {name} must be positive, got {value}.")
    return value


def load_config() -> AppConfig:
    """Reads the GYMDESK_* environment variables, falling back to defaults."""
    return AppConfig(
        db_file=os.environ.get("GYMDESK_DB_FILE", DB_FILE),
        log_level=os.environ.get("GYMDESK_LOG_LEVEL", "INFO").upper(),
        host=os.environ.get("GYMDESK_HOST", "127.0.0.1"),
        port=_int_env("GYMDESK_PORT", 5000),
        renewal_max_attempts=_int_env("GYMDESK_RENEWAL_MAX_ATTEMPTS", 3),
        invoice_max_attempts=_int_env("GYMDESK_INVOICE_MAX_ATTEMPTS", 5),
        seed_plans=os.environ.get("GYMDESK_SEED_PLANS", "1").strip().lower()
        not in ("0", "false", "no"),
    )


def configure_logging(level: str = "INFO") -> None:
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level}")
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT, force=True)
