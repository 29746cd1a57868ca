from types import MappingProxyType
from typing import Mapping

from reqguard.common.errors import InvalidConfiguration
from reqguard.rate_limiting.constants import RATE_LIMIT_PREFIX
from reqguard.rate_limiting.models import IdentifierStrategy, RateLimitProfile


def _profile(name: str, max_requests: int, window_seconds: int,
             strategy: IdentifierStrategy = IdentifierStrategy.IP, prefix: str = None) -> RateLimitProfile:
    return RateLimitProfile(
        name=name,
        key_prefix=f"{RATE_LIMIT_PREFIX}:{prefix or name}",
        max_requests=max_requests,
        window_seconds=window_seconds,
        identifier_strategy=strategy,
    )


AUTH = _profile("auth", 5, 15 * 60)                               # login / reset-password brute force
PASSWORD_RESET = _profile("password_reset", 3, 60 * 60, prefix="password")
EMAIL_VERIFY = _profile("email_verify", 3, 60 * 60, prefix="email-verify")
CHECKOUT = _profile("checkout", 10, 60)
SEARCH = _profile("search", 30, 60)
UPLOAD = _profile("upload", 10, 10 * 60)
API = _profile("api", 100, 60)
ADMIN = _profile("admin", 200, 60, IdentifierStrategy.USER_ID)
CART = _profile("cart", 100, 60 * 60)
DATA_EXPORT = _profile("data_export", 5, 60 * 60, IdentifierStrategy.USER_ID, prefix="gdpr-export")
DATA_DELETION = _profile("data_deletion", 3, 60 * 60, IdentifierStrategy.USER_ID, prefix="gdpr-delete")


PROFILES: Mapping[str, RateLimitProfile] = MappingProxyType({
    p.name: p for p in (
        AUTH, PASSWORD_RESET, EMAIL_VERIFY, CHECKOUT, SEARCH, UPLOAD,
        API, ADMIN, CART, DATA_EXPORT, DATA_DELETION,
    )
})


def get_profile(name: str) -> RateLimitProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise InvalidConfiguration(f"unknown rate limit profile: {name!r}") from None
