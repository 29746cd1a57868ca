from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from reqguard.rate_limiting.models import RateLimitResult


class StoreError(RuntimeError):
    """Base for failures talking to the shared state store."""


class StoreUnavailable(StoreError):
    """Connection or transport failure, or the store circuit is open."""


class StoreTimeout(StoreError):
    """A store round trip exceeded its bounded wait."""


class InvalidConfiguration(ValueError):
    """Unknown profile or namespace. A programmer error, never user facing."""


class RateLimitExceeded(Exception):

    def __init__(self, result: "RateLimitResult", profile_name: str):
        super().__init__(f"rate limit exceeded for profile {profile_name}")
        self.result = result
        self.profile_name = profile_name
