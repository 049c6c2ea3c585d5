"""Configuration management from environment variables."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env then .env.local (local values win)
load_dotenv()
load_dotenv(".env.local", override=True)

# Project root
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))
STATE_DB = DATA_DIR / "state.db"

# Ensure directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)


class Config:
    """Application configuration."""

    # VendLive
    VENDLIVE_BASE_URL: str = os.getenv("VENDLIVE_BASE_URL", "https://vendlive.com")
    VENDLIVE_TOKEN: str | None = os.getenv("VENDLIVE_TOKEN")
    VENDLIVE_ACCOUNT_ID: str | None = os.getenv("VENDLIVE_ACCOUNT_ID")

    # HTTP
    TIMEOUT: float = float(os.getenv("TIMEOUT", "30"))
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "3"))
    RETRY_DELAY: float = float(os.getenv("RETRY_DELAY", "1.0"))
    ENRICH_CONCURRENCY: int = int(os.getenv("ENRICH_CONCURRENCY", "10"))

    # Sync
    SYNC_MODE: str = os.getenv("SYNC_MODE", "incremental")
    SYNC_START_DATE: str | None = os.getenv("SYNC_START_DATE")
    SYNC_DAYS: int = int(os.getenv("SYNC_DAYS", "1"))
    # Full mode wipes the tables, so its window reaches back to the start of history
    FULL_SYNC_START_DATE: str = os.getenv("FULL_SYNC_START_DATE", "2024-01-01")
    PAGE_SIZE: int = int(os.getenv("PAGE_SIZE", "100"))
    PAGE_DELAY: float = float(os.getenv("PAGE_DELAY", "1.0"))
    MAX_PAGES: int = int(os.getenv("MAX_PAGES", "0"))
    UPSERT_BATCH_SIZE: int = int(os.getenv("UPSERT_BATCH_SIZE", "200"))
    UPSERT_PAUSE: float = float(os.getenv("UPSERT_PAUSE", "0.5"))
    UNKNOWN_PRODUCT_POLICY: str = os.getenv("UNKNOWN_PRODUCT_POLICY", "placeholder")
    UNIQUE_ID_MODE: str = os.getenv("UNIQUE_ID_MODE", "stable")

    # Supabase
    SUPABASE_URL: str | None = os.getenv("SUPABASE_URL")
    SUPABASE_SERVICE_ROLE: str | None = os.getenv("SUPABASE_SERVICE_ROLE")
    ORDERS_TABLE: str = os.getenv("ORDERS_TABLE", "orders")
    SALES_TABLE: str = os.getenv("SALES_TABLE", "sales")
    DAILY_STATS_TABLE: str = os.getenv("DAILY_STATS_TABLE", "daily_stats")
    SYNC_LOGS_TABLE: str = os.getenv("SYNC_LOGS_TABLE", "sync_logs")

    # API
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:5173")
    PORT: int = int(os.getenv("PORT", "3001"))
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    BACKEND_VERSION: str = "1.0.0"

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def validate(cls, require_supabase: bool = True, require_vendlive: bool = True) -> None:
        """Validate required configuration."""
        errors = []
        if require_supabase:
            if not cls.SUPABASE_URL:
                errors.append("SUPABASE_URL is required")
            if not cls.SUPABASE_SERVICE_ROLE:
                errors.append("SUPABASE_SERVICE_ROLE is required")
        if require_vendlive and not cls.VENDLIVE_TOKEN:
            errors.append("VENDLIVE_TOKEN is required")
        if cls.UNKNOWN_PRODUCT_POLICY not in ("placeholder", "skip"):
            errors.append("UNKNOWN_PRODUCT_POLICY must be 'placeholder' or 'skip'")
        if cls.UNIQUE_ID_MODE not in ("stable", "run_scoped"):
            errors.append("UNIQUE_ID_MODE must be 'stable' or 'run_scoped'")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")

    @classmethod
    def is_production(cls) -> bool:
        return cls.ENVIRONMENT.lower() == "production"


config = Config()
