from fastapi import APIRouter

from reqguard.admin.routes import admin_router
from reqguard.api.constants import version_prefix
from reqguard.api.routes import health_router

public_routers = APIRouter(prefix=version_prefix)

public_routers.include_router(health_router, tags=["health"])

#--------------------------------------------------------------------------------------------------------

admin_routers = APIRouter(prefix=f"{version_prefix}/admin")

admin_routers.include_router(admin_router, tags=["admin"])
