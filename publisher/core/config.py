from typing import Dict

from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "Storefront Publisher"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"  # "development", "staging" or "production"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = "sqlite:///./publisher.db"

    # Sentry (optional - error tracking disabled when empty)
    SENTRY_DSN: str = ""

    # Queue processor
    RUN_QUEUE_PROCESSOR: bool = True  # False on API replicas that should not dispatch
    QUEUE_INTERVAL_SECONDS: int = 30
    QUEUE_BATCH_SIZE: int = 10
    QUEUE_STALE_PROCESSING_MINUTES: int = 30

    # Queue-level retries (across dispatch attempts)
    QUEUE_MAX_RETRIES: int = 5
    QUEUE_RETRY_INITIAL_DELAY_SECONDS: float = 1.0
    QUEUE_RETRY_MAX_DELAY_SECONDS: float = 300.0  # 5 minutes
    QUEUE_RETRY_BACKOFF_MULTIPLIER: float = 2.0

    # In-call retries (within a single dispatch attempt)
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 10.0
    RETRY_JITTER_SECONDS: float = 0.1

    # Circuit breakers (one per platform)
    BREAKER_FAILURE_THRESHOLD: int = 5
    BREAKER_SUCCESS_THRESHOLD: int = 2
    BREAKER_TIMEOUT_SECONDS: float = 30.0
    BREAKER_PERSIST: bool = True

    # Requests per minute per platform. Keys other than "default" are the
    # platforms accepted by the queue.
    PLATFORM_RATE_LIMITS: Dict[str, int] = {
        "printify": 60,
        "printful": 120,
        "etsy": 10,
        "shopify": 40,
        "amazon": 20,
        "redbubble": 30,
        "teespring": 20,
        "default": 60,
    }

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()
