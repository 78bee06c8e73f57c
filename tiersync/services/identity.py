"""Maps the correlation data on a billing event to one internal user id.

Sources are tried in order of decreasing certainty:

1. the internal id embedded in checkout metadata by our own session creator,
2. an existing user already linked to the Stripe customer id,
3. the customer's email, taken from the event or fetched from Stripe, matched
   against existing users. A match is backfilled with the customer id so the
   next event for that customer resolves at step 2. A user already linked to
   a different customer is left alone and the event is unresolvable.

No user is ever created here. An email that matches nobody is unresolvable.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from tiersync.core.normalize import normalize_email
from tiersync.services.events import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from tiersync.services.stripe_gateway import StripeGateway
from tiersync.services.user_store import UserStore

logger = logging.getLogger(__name__)

VIA_DIRECT = "direct_id"
VIA_CUSTOMER = "customer_id"
VIA_EMAIL = "email"


@dataclass(frozen=True)
class Correlation:
    internal_user_id: Optional[str] = None
    customer_id: Optional[str] = None
    email: Optional[str] = None

    def describe(self) -> Dict[str, Any]:
        return {
            "internal_user_id": self.internal_user_id,
            "customer_id": self.customer_id,
            "has_email": bool(self.email),
        }


@dataclass(frozen=True)
class Resolution:
    user_id: str
    via: str
    record: Optional[Dict[str, Any]] = None


def correlation_for(event: BillingEvent) -> Correlation:
    if isinstance(event, CheckoutCompleted):
        return Correlation(event.internal_user_id, event.customer_id, event.email)
    if isinstance(event, (SubscriptionUpdated, SubscriptionDeleted, InvoicePaymentSucceeded)):
        return Correlation(customer_id=event.customer_id)
    return Correlation()


class IdentityResolver:
    def __init__(self, store: UserStore, gateway: StripeGateway) -> None:
        self.store = store
        self.gateway = gateway

    def resolve(self, corr: Correlation) -> Optional[Resolution]:
        if corr.internal_user_id:
            return Resolution(corr.internal_user_id, VIA_DIRECT, self.store.get_by_internal_id(corr.internal_user_id))

        if corr.customer_id:
            record = self.store.get_by_external_customer_id(corr.customer_id)
            if record:
                return Resolution(record["user_id"], VIA_CUSTOMER, record)

        email = normalize_email(corr.email)
        if not email and corr.customer_id:
            email = normalize_email(self.gateway.fetch_customer_email(corr.customer_id))
        if not email:
            return None

        record = self.store.get_by_email(email)
        if not record:
            return None

        user_id = record["user_id"]
        linked = record.get("stripe_customer_id")
        if corr.customer_id and linked != corr.customer_id:
            if linked or not self.store.link_customer(user_id, corr.customer_id):
                logger.warning(
                    "user %s matched by email already links customer %s, not %s; skipping",
                    user_id,
                    linked or "another customer",
                    corr.customer_id,
                    extra={"user_id": user_id, "customer_id": corr.customer_id, "linked_customer_id": linked},
                )
                return None
            logger.info(
                "linked customer %s to user %s by email",
                corr.customer_id,
                user_id,
                extra={"user_id": user_id, "customer_id": corr.customer_id},
            )
            record = {**record, "stripe_customer_id": corr.customer_id}
        return Resolution(user_id, VIA_EMAIL, record)
