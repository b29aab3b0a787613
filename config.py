import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Application
    app_name: str = os.getenv("APP_NAME", "Library Circulation API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # API
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Database
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")

    # Circulation rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    fine_rate_per_day: float = float(os.getenv("FINE_RATE_PER_DAY", "1.0"))
    # Fines are assessed manually unless this is switched on
    auto_fine_on_return: bool = _env_flag("AUTO_FINE_ON_RETURN")

    # Reports
    popular_books_limit: int = int(os.getenv("POPULAR_BOOKS_LIMIT", "10"))

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))


settings = Settings()
