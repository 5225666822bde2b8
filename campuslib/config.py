import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    # Priority: LIBRARY_DB_FILE, then a per-process temp file
    database_file: str = os.getenv(
        "LIBRARY_DB_FILE",
        os.path.join(tempfile.gettempdir(), f"campuslib_{os.getpid()}.db"),
    )
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "5"))

    # Circulation defaults, overridden at runtime by the system_settings table
    default_loan_period_days: int = int(os.getenv("DEFAULT_LOAN_PERIOD_DAYS", "14"))
    default_fine_rate_per_day: str = os.getenv("DEFAULT_FINE_RATE_PER_DAY", "0.50")
    default_max_renewals: int = int(os.getenv("DEFAULT_MAX_RENEWALS", "2"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Campus Library")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for the API and CLI entry points."""
    name = (level or settings.log_level or "INFO").upper()
    if settings.debug and level is None:
        name = "DEBUG"
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
