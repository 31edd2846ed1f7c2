from __future__ import annotations

from fastapi import APIRouter, Depends

from billing_service.api.dependencies import get_status_service
from billing_service.core.config import settings
from billing_service.models.schemas import SubscriptionStatusResponse
from billing_service.services.subscription_status import SubscriptionStatusService
from billing_service.utils.helpers import run_with_deadline

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("/{user_id}/{product_id}", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    user_id: str,
    product_id: str,
    service: SubscriptionStatusService = Depends(get_status_service),
):
    """Mirrored subscription state.

    When nothing is on file ``status`` is ``"none"``, ``subscription_id`` and
    ``product_id`` are empty strings and ``current_period_end`` is ``null``
    rather than a zero timestamp.
    """
    payload = await run_with_deadline(
        service.get_status(user_id, product_id),
        settings.REQUEST_TIMEOUT_SECONDS,
        operation="subscription status",
    )
    return SubscriptionStatusResponse(**payload)
