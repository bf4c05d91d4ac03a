import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from booking.state import BookingOptions


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default) in {"1", "true", "True", "yes"}


class Settings(BaseModel):
    data_dir: Path = Path(os.getcwd()) / "data"
    storage_backend: str = "json"  # json | sqlite | memory
    sqlite_db_path: Optional[str] = None
    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: float = Field(default=1000, ge=0)
    max_retry_delay_ms: float = Field(default=10000, ge=0)
    max_alternatives: int = Field(default=5, ge=0)
    optimistic_updates: bool = True
    slot_granularity: int = Field(default=30, ge=1)
    horizon_days: int = Field(default=30, ge=1)
    log_level: str = "INFO"

    def booking_options(self) -> BookingOptions:
        return BookingOptions(
            enable_optimistic_updates=self.optimistic_updates,
            max_retry_attempts=self.max_retries,
            retry_delay_ms=self.retry_delay_ms,
            max_retry_delay_ms=self.max_retry_delay_ms,
            max_alternative_suggestions=self.max_alternatives,
        )


def load_settings() -> Settings:
    # Load environment variables from .env if present
    load_dotenv(override=False)
    return Settings(
        data_dir=Path(os.getenv("SCHEDULER_DATA_DIR") or Path(os.getcwd()) / "data"),
        storage_backend=os.getenv("STORAGE_BACKEND", "json").lower(),
        sqlite_db_path=os.getenv("SQLITE_DB_PATH"),
        max_retries=int(os.getenv("BOOKING_MAX_RETRIES", "3")),
        retry_delay_ms=float(os.getenv("BOOKING_RETRY_DELAY_MS", "1000")),
        max_retry_delay_ms=float(os.getenv("BOOKING_MAX_RETRY_DELAY_MS", "10000")),
        max_alternatives=int(os.getenv("BOOKING_MAX_ALTERNATIVES", "5")),
        optimistic_updates=_flag("BOOKING_OPTIMISTIC_UPDATES", "1"),
        slot_granularity=int(os.getenv("SLOT_GRANULARITY_MINUTES", "30")),
        horizon_days=int(os.getenv("AVAILABILITY_HORIZON_DAYS", "30")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
