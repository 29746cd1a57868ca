from reqguard.common.logging_setup import get_logger

logger = get_logger("reqguard.admin")
