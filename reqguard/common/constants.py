import contextvars
from typing import Optional

# set per request by RequestIdMiddleware, read by the logging layer
request_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)
