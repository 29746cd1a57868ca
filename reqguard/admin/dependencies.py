import hmac
from fastapi import HTTPException, Request, status
from reqguard.admin.constants import logger
from reqguard.config.admin_config import admin_config


async def require_admin(request: Request):
    # no secret configured means nobody is an admin
    secret = admin_config.ADMIN_SECRET
    supplied = request.headers.get("X-Admin-Secret", "")
    if not secret or not hmac.compare_digest(supplied.encode(), secret.encode()):
        logger.warning("admin.auth.failed", extra={
            "path": request.url.path, "secret_configured": bool(secret),
        })
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="admin authorization required")


def admin_identity(request: Request) -> str:
    return str(
        request.headers.get("X-Admin-User")
        or getattr(request.state, "user_identifier", None)
        or (request.client.host if request.client else "unknown")
    )
