"""
Billing Webhook Handlers

Entry points for inbound billing events:
- /webhooks/stripe: signed Stripe events, normalized before processing
- /webhooks/billing-events: pre-normalized events from other adapters (admin key)

Idempotency, retries and dispatch live in the WebhookEventProcessor; these
routes only verify, normalize and report the outcome.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.routes.admin import verify_admin_api_key
from app.domain.billing import NormalizedBillingEvent
from app.domain.billing.models import ProcessEventResult
from app.infrastructure.db.dependencies import EngineDep
from app.infrastructure.payments.stripe_service import (
    StripeService,
    StripeServiceError,
    get_stripe_service,
)


logger = logging.getLogger(__name__)

router = APIRouter()


def _webhook_response(result: ProcessEventResult) -> Dict[str, Any]:
    response: Dict[str, Any] = {
        "status": "success" if result.status == "processed" else result.status,
    }
    if result.billing_event_id:
        response["billing_event_id"] = result.billing_event_id
    if result.error:
        response["message"] = result.error
    return response


# =============================================================================
# Webhook Endpoints
# =============================================================================

@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    engine: EngineDep,
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """
    Handle Stripe webhook events.

    Returns 200 once the event is stored, including when its handler failed
    and a retry was scheduled; the retry drain owns redelivery from there.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe signature"
        )

    try:
        event = stripe_service.parse_webhook(payload, signature)
    except StripeServiceError as e:
        logger.error(f"Webhook signature verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature"
        )

    logger.info(f"Received Stripe webhook: {event.type} ({event.id})")
    result = await engine.webhooks.process_event(event)
    return _webhook_response(result)


@router.post(
    "/webhooks/billing-events",
    dependencies=[Depends(verify_admin_api_key)],
)
async def billing_event_webhook(event: NormalizedBillingEvent, engine: EngineDep):
    """Process an event already in the `{type, id, data, metadata}` shape."""
    if event.metadata.source is None:
        event.metadata.source = "internal"
    result = await engine.webhooks.process_event(event)
    return _webhook_response(result)
