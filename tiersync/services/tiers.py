from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tiersync.services.events import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionUpdated,
)

TIER_FREE = "free"
TIER_PRO = "pro"

# past_due keeps access while the provider retries the payment.
ENTITLED_STATUSES = frozenset({"trialing", "active", "past_due"})


@dataclass(frozen=True)
class TierDecision:
    tier: str
    tier_status: str
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    invoice_id: Optional[str] = None


def tier_for_status(status: str) -> str:
    return TIER_PRO if (status or "").lower() in ENTITLED_STATUSES else TIER_FREE


def decide(event: BillingEvent) -> Optional[TierDecision]:
    """Map an event to the entitlement it implies, or None for no-op."""
    if isinstance(event, CheckoutCompleted):
        if event.mode == "subscription":
            return TierDecision(
                tier=TIER_PRO,
                tier_status="active",
                subscription_id=event.subscription_id,
                customer_id=event.customer_id,
            )
        if event.mode == "payment":
            return TierDecision(tier=TIER_PRO, tier_status="paid", customer_id=event.customer_id)
        return None

    if isinstance(event, SubscriptionUpdated):
        status = event.status.lower()
        return TierDecision(
            tier=tier_for_status(status),
            tier_status=status,
            subscription_id=event.subscription_id,
            customer_id=event.customer_id,
        )

    if isinstance(event, SubscriptionDeleted):
        return TierDecision(tier=TIER_FREE, tier_status="canceled", customer_id=event.customer_id)

    if isinstance(event, InvoicePaymentSucceeded):
        return TierDecision(
            tier=TIER_PRO,
            tier_status="active",
            subscription_id=event.subscription_id,
            customer_id=event.customer_id,
            invoice_id=event.invoice_id,
        )

    return None
