from typing import List, Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):

    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # every store round trip is bounded by this (seconds)
    STORE_TIMEOUT_SECONDS: float = 0.25
    STORE_CIRCUIT_FAILURE_THRESHOLD: int = 5
    STORE_CIRCUIT_RECOVERY_SECONDS: float = 10.0

    # profiles listed here deny instead of admit while the store is down
    RATE_LIMIT_FAIL_CLOSED_PROFILES: List[str] = []
    # profile applied app-wide by RateLimitMiddleware, "" disables it
    DEFAULT_RATE_LIMIT_PROFILE: str = ""

    IDEMPOTENCY_KEY_PREFIX: str = "webhook:processed"
    IDEMPOTENCY_TTL_SECONDS: int = 24 * 60 * 60
    IDEMPOTENCY_RESERVATION_TTL_SECONDS: int = 300

    class Config:
        env_file = ".env"
        extra = "ignore"


config_settings = Settings()
