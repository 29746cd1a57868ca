import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict


class IdentifierStrategy(str, Enum):
    IP = "ip"
    USER_ID = "user"


@dataclass(frozen=True)
class RateLimitProfile:
    name: str
    key_prefix: str
    max_requests: int
    window_seconds: int
    identifier_strategy: IdentifierStrategy = IdentifierStrategy.IP

    def __post_init__(self):
        if self.max_requests < 0:
            raise ValueError(f"profile {self.name}: max_requests must be >= 0")
        if self.window_seconds <= 0:
            raise ValueError(f"profile {self.name}: window_seconds must be > 0")

    def record_key(self, identifier: str) -> str:
        return f"{self.key_prefix}:{identifier}"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    limit: int
    reset_at: int           # unix seconds

    def retry_after(self, now: float = None) -> int:
        if now is None:
            now = time.time()
        return max(0, math.ceil(self.reset_at - now))

    def to_headers(self, include_retry_after: bool = False) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if include_retry_after:
            headers["Retry-After"] = str(self.retry_after())
        return headers

    def to_dict(self, now: float = None) -> Dict[str, int]:
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "resetAt": self.reset_at,
            "retryAfter": self.retry_after(now),
        }
