from __future__ import annotations

import logging
from urllib.parse import urljoin

from fastapi import APIRouter, Depends, HTTPException, Request

from tiersync.core.container import Services, get_services
from tiersync.core.errors import ProviderUnavailable, StoreUnavailable
from tiersync.core.normalize import normalize_email
from tiersync.models import (
    CheckoutSessionReq,
    CheckoutSessionResp,
    EntitlementOut,
    PortalSessionReq,
    PortalSessionResp,
)
from tiersync.services.user_store import entitlement_view

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing"])


def ensure_stripe_configured(services: Services) -> None:
    if not services.gateway.configured:
        raise HTTPException(501, "Stripe is not configured")


def build_return_url(req: Request, fallback_query: str) -> str:
    return urljoin(str(req.base_url), fallback_query.lstrip("/"))


@router.post("/api/billing/checkout_session", response_model=CheckoutSessionResp)
def create_checkout_session(
    body: CheckoutSessionReq,
    req: Request,
    services: Services = Depends(get_services),
) -> CheckoutSessionResp:
    ensure_stripe_configured(services)
    settings = services.settings
    if not settings.stripe_price_id:
        raise HTTPException(501, "Missing STRIPE_PRICE_ID")
    email = normalize_email(body.email)
    if not email:
        raise HTTPException(400, "Invalid email")

    success_url = settings.stripe_success_url or build_return_url(req, "/billing?status=success")
    cancel_url = settings.stripe_cancel_url or build_return_url(req, "/billing?status=cancel")

    try:
        session = services.gateway.create_checkout_session(
            user_id=body.uid,
            email=email,
            price_id=settings.stripe_price_id,
            success_url=success_url,
            cancel_url=cancel_url,
        )
    except ProviderUnavailable as exc:
        logger.error("checkout session for %s failed: %s", body.uid, exc, extra={"user_id": body.uid})
        raise HTTPException(502, "Checkout is temporarily unavailable") from exc

    return CheckoutSessionResp(session_id=session.id, url=session.url)


@router.post("/api/billing/portal_session", response_model=PortalSessionResp)
def create_portal_session(
    body: PortalSessionReq,
    req: Request,
    services: Services = Depends(get_services),
) -> PortalSessionResp:
    ensure_stripe_configured(services)
    store = services.store
    try:
        record = store.get_by_internal_id(body.uid)
        if not record:
            raise HTTPException(404, "User not found")

        customer_id = record.get("stripe_customer_id")
        if not customer_id:
            customer_id = services.gateway.create_customer(body.uid, record.get("email"))
            if not store.link_customer(body.uid, customer_id):
                # Linked concurrently (e.g. by a webhook); the stored link wins.
                customer_id = (store.get_by_internal_id(body.uid) or {}).get("stripe_customer_id") or customer_id
            logger.info("created customer %s for user %s", customer_id, body.uid, extra={"user_id": body.uid})

        return_url = services.settings.stripe_portal_return_url or build_return_url(req, "/billing?status=portal")
        session = services.gateway.create_portal_session(customer_id=customer_id, return_url=return_url)
    except StoreUnavailable as exc:
        logger.error("portal session for %s failed: %s", body.uid, exc, extra={"user_id": body.uid})
        raise HTTPException(503, "User store unavailable") from exc
    except ProviderUnavailable as exc:
        logger.error("portal session for %s failed: %s", body.uid, exc, extra={"user_id": body.uid})
        raise HTTPException(502, "Billing portal is temporarily unavailable") from exc

    return PortalSessionResp(url=session.url)


@router.get("/api/billing/entitlement/{uid}", response_model=EntitlementOut)
def get_entitlement(uid: str, services: Services = Depends(get_services)) -> EntitlementOut:
    try:
        record = services.store.get_by_internal_id(uid)
    except StoreUnavailable as exc:
        raise HTTPException(503, "User store unavailable") from exc
    view = entitlement_view(record)
    return EntitlementOut(
        user_id=uid,
        tier=view["tier"],
        tier_status=view.get("tier_status"),
        tier_since=view.get("tier_since"),
        stripe_customer_id=view.get("stripe_customer_id"),
        stripe_subscription_id=view.get("stripe_subscription_id"),
        last_reconciled_at=view.get("last_reconciled_at"),
    )
