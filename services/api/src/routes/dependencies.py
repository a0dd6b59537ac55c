from typing import Optional

from fastapi import Header, HTTPException, Request, status

import conf
from models.operations.exceptions import BiddingError, BidderNotEligible, NotFound
from notifications import NotificationGateway
from utils import log

logger = log.get_logger(__name__)


async def require_admin(
    x_admin_api_key: Optional[str] = Header(None, alias="X-Admin-API-Key"),
):
    """
    Dependency guarding admin routes with the shared ADMIN_API_KEY.
    """
    expected = conf.get_admin_api_key()
    if not expected:
        # No key configured: admin routes are open (local development)
        return
    if x_admin_api_key != expected:
        logger.warning("Admin route called without a valid API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin privileges required",
        )


def get_gateway(request: Request) -> NotificationGateway:
    return request.app.state.gateway


def http_status_for(e: BiddingError, ineligible_status: int = status.HTTP_400_BAD_REQUEST) -> int:
    if isinstance(e, NotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(e, BidderNotEligible):
        return ineligible_status
    return status.HTTP_400_BAD_REQUEST


def to_http_exception(e: BiddingError, ineligible_status: int = status.HTTP_400_BAD_REQUEST) -> HTTPException:
    return HTTPException(status_code=http_status_for(e, ineligible_status), detail=str(e))
