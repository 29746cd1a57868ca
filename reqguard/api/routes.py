from fastapi import APIRouter, Depends

from reqguard.api.constants import cur_version, logger
from reqguard.api.dependencies import get_store
from reqguard.common.errors import StoreUnavailable
from reqguard.common.utils import success_response
from reqguard.store.base import SharedStateStore

health_router = APIRouter()


@health_router.get("/health")
async def health(store: SharedStateStore = Depends(get_store)):
    # StoreError propagates to store_error_handler -> 503
    if not await store.ping():
        logger.warning("health.store_ping_failed")
        raise StoreUnavailable("store did not answer ping")
    return success_response({"status": "healthy", "store": "up", "version": cur_version})
