from reqguard import __version__
from reqguard.common.logging_setup import get_logger

logger = get_logger("reqguard.api")

cur_version = __version__
version_prefix = "/api/v1"
