from __future__ import annotations

from fastapi import APIRouter, Depends

from billing_service.api.dependencies import get_portal_service
from billing_service.core.config import settings
from billing_service.models.schemas import PortalRequest, PortalResponse
from billing_service.services.checkout import PortalService
from billing_service.utils.helpers import run_with_deadline

router = APIRouter(tags=["portal"])


@router.post("/portal", response_model=PortalResponse)
async def create_portal_session(
    payload: PortalRequest,
    service: PortalService = Depends(get_portal_service),
):
    """Stripe customer-portal URL for an existing customer."""
    url = await run_with_deadline(
        service.create_portal_link(payload.user_id, payload.return_url),
        settings.REQUEST_TIMEOUT_SECONDS,
        operation="portal session",
    )
    return PortalResponse(portal_url=url)
