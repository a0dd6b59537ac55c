from fastapi import APIRouter, HTTPException
from utils import log

from clients.couchbase import check_connection

from .auctions import router as auctions_router
from .lots import router as lots_router

logger = log.get_logger(__name__)

router = APIRouter(prefix="/api")
router.include_router(auctions_router)
router.include_router(lots_router)


@router.get("/health", tags=["health"])
async def route_health():
    """Liveness plus a Couchbase ping."""
    try:
        await check_connection()
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=503, detail="Database unavailable")
    return {"status": "ok"}
