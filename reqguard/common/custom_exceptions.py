
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from reqguard.common.constants import request_id_ctx
from reqguard.common.errors import InvalidConfiguration, RateLimitExceeded, StoreError, StoreTimeout
from reqguard.common.logging_setup import get_logger
from reqguard.common.utils import build_error, json_error
from reqguard.rate_limiting.models import RateLimitResult

logger = get_logger("reqguard.errors")

STORE_RETRY_AFTER_SECONDS = 30


def rate_limited_response(result: RateLimitResult) -> JSONResponse:
    rid = request_id_ctx.get(None)
    details = {"message": "Too many requests", **result.to_dict()}
    payload = build_error(code="RATE_LIMITED", details=details, request_id=rid)
    return json_error(payload, status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                      headers=result.to_headers(include_retry_after=True))


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    return rate_limited_response(exc.result)


async def store_error_handler(request: Request, exc: StoreError):
    # only reached from fail-closed paths (idempotency); the sender should retry later
    rid = request_id_ctx.get(None)
    logger.error(
        "store.unavailable.request_failed",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "request_id": rid,
        },
    )
    code = "STORE_TIMEOUT" if isinstance(exc, StoreTimeout) else "STORE_UNAVAILABLE"
    payload = build_error(code=code, details={"message": "temporarily unavailable, retry later"}, request_id=rid)
    return json_error(payload, status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                      headers={"Retry-After": str(STORE_RETRY_AFTER_SECONDS)})


async def invalid_configuration_handler(request: Request, exc: InvalidConfiguration):
    rid = request_id_ctx.get(None)
    logger.error(
        "configuration.invalid",
        extra={"path": request.url.path, "request_id": rid},
        exc_info=exc,
    )
    payload = build_error(code="SERVER_ERROR", details={"message": "Internal Server Error"}, request_id=rid)
    return json_error(payload, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


async def fallback_handler(request: Request, exc: Exception):

    rid = request_id_ctx.get(None)

    logger.error(
        "unexpected.exception",
        extra={
            "path": request.url.path,
            "method": request.method,
            "request_id": rid,
        },
        exc_info=exc,
    )

    payload = build_error(code="SERVER_ERROR", details={"message": "Internal Server Error"}, request_id=rid)
    return json_error(payload, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    rid = request_id_ctx.get(None)
    logger.warning(
        "request.validation_failed",
        extra={
            "errors": exc.errors(),
            "path": request.url.path,
            "request_id": rid,
        },
    )

    payload = build_error(code="UNPROCESSABLE_ENTITY", details={"message": "invalid request"}, request_id=rid)
    return json_error(payload, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY)


async def http_exception_handler(request: Request, exc: HTTPException):

    rid = request_id_ctx.get(None)
    payload = build_error(code=f"HTTP_{exc.status_code}", details={"message": exc.detail}, request_id=rid)
    return json_error(payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


def register_all_exceptions(app: FastAPI):

    app.add_exception_handler(Exception, fallback_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(InvalidConfiguration, invalid_configuration_handler)
