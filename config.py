import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: Optional[str] = os.getenv("LIBRARY_DB_FILE")
    db_timeout: float = float(os.getenv("DB_TIMEOUT", "5"))

    # Concurrency settings
    lock_timeout_seconds: float = float(os.getenv("LOCK_TIMEOUT_SECONDS", "5"))

    # Loan policy defaults, used until a policy is saved in the database
    default_loan_duration_days: int = int(os.getenv("DEFAULT_LOAN_DURATION_DAYS", "14"))
    default_max_renewals: int = int(os.getenv("DEFAULT_MAX_RENEWALS", "2"))
    default_max_concurrent_loans: int = int(os.getenv("DEFAULT_MAX_CONCURRENT_LOANS", "5"))

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG")
    environment: str = os.getenv("ENVIRONMENT", "development")

    # Pagination for loan and audit listings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))


settings = Settings()
