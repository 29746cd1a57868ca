from reqguard.common.logging_setup import get_logger

logger = get_logger("reqguard.rate_limit")

RATE_LIMIT_PREFIX = "rl"      # store key prefix shared by all profiles
EXPIRY_BUFFER_SECONDS = 10    # record keys outlive their window by this much
UNKNOWN_IDENTIFIER = "unknown"
SESSION_COOKIE = "session_id"
