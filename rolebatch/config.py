from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    default_batch_size: int
    max_items: int
    max_call_retries: int
    retry_backoff_seconds: float
    call_timeout_seconds: float
    item_workers: int
    sync_item_limit: int
    seconds_per_item: float
    expiry_sweep_minutes: int


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "rolebatch"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./rolebatch.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        default_batch_size=int(os.getenv("DEFAULT_BATCH_SIZE", "100")),
        max_items=int(os.getenv("MAX_ITEMS", "10000")),
        max_call_retries=int(os.getenv("MAX_CALL_RETRIES", "2")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "0.5")),
        call_timeout_seconds=float(os.getenv("CALL_TIMEOUT_SECONDS", "5")),
        item_workers=int(os.getenv("ITEM_WORKERS", "1")),
        sync_item_limit=int(os.getenv("SYNC_ITEM_LIMIT", "500")),
        seconds_per_item=float(os.getenv("SECONDS_PER_ITEM", "0.1")),
        expiry_sweep_minutes=int(os.getenv("EXPIRY_SWEEP_MINUTES", "15")),
    )
