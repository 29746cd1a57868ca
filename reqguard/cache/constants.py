from enum import Enum

from reqguard.common.logging_setup import get_logger

logger = get_logger("reqguard.cache")



class CacheNamespace(str, Enum):
    PRODUCTS = "products"
    COURSES = "courses"
    EVENTS = "events"
    CART = "cart"
    USER = "user"


class CacheTTL:
    """Suggested per-call ttls (seconds); the cache itself holds no ttl policy."""
    PRODUCTS = 5 * 60
    COURSES = 10 * 60
    EVENTS = 10 * 60
    CART = 30 * 60
    USER = 15 * 60
    SHORT = 60
    MEDIUM = 5 * 60
    LONG = 60 * 60


SCAN_BATCH_SIZE = 500
DELETE_BATCH_SIZE = 500
LOCK_TIMEOUT_SECONDS = 5      # get_or_set recompute lock lease
LOCK_POLL_INTERVAL = 0.05
LOCK_SUFFIX = ":lock"          # get_or_set recompute locks live at <key>:lock
