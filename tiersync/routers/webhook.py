from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from tiersync.core.container import Services, get_services
from tiersync.models import WebhookAck
from tiersync.services.reconcile import Outcome

router = APIRouter(tags=["webhooks"])


@router.post("/api/stripe/webhook", response_model=WebhookAck)
async def stripe_webhook(req: Request, services: Services = Depends(get_services)) -> WebhookAck:
    # Signature verification needs the body exactly as received.
    payload = await req.body()
    sig = req.headers.get("stripe-signature")

    result = await services.reconciler.handle(payload, sig)

    if result.outcome == Outcome.REJECTED:
        raise HTTPException(400, f"Webhook rejected: {result.reason}")
    if result.outcome == Outcome.FAILED:
        raise HTTPException(500, f"Webhook processing failed: {result.reason}")

    return WebhookAck(
        received=True,
        outcome=result.outcome.value,
        event_id=result.event_id,
        reason=result.reason,
    )
