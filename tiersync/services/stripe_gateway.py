from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import stripe

from tiersync.core.errors import InvalidSignature, ProviderUnavailable
from tiersync.core.settings import S, Settings

logger = logging.getLogger(__name__)


def build_stripe_client(settings: Settings) -> Optional[stripe.StripeClient]:
    if not settings.stripe_secret_key:
        return None
    return stripe.StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.RequestsClient(timeout=settings.stripe_timeout_seconds),
        max_network_retries=1,
    )


class StripeGateway:
    """The subset of Stripe the reconciler and the session endpoints need."""

    def __init__(
        self,
        client: Optional[stripe.StripeClient],
        *,
        webhook_secret: str = S.stripe_webhook_secret,
        tolerance: int = S.stripe_webhook_tolerance_seconds,
    ) -> None:
        self.client = client
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    @property
    def configured(self) -> bool:
        return self.client is not None

    def _require_client(self) -> stripe.StripeClient:
        if self.client is None:
            raise ProviderUnavailable("Stripe is not configured")
        return self.client

    def verify_signature(self, payload: bytes, sig_header: Optional[str]) -> None:
        """Check the Stripe-Signature header against the exact payload bytes."""
        if not self.webhook_secret:
            raise InvalidSignature("webhook secret not configured")
        if not sig_header:
            raise InvalidSignature("missing Stripe-Signature header")
        # stripe < 16 formats the payload into the signed string unchanged.
        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as exc:
            raise InvalidSignature("payload is not valid UTF-8") from exc
        try:
            stripe.WebhookSignature.verify_header(body, sig_header, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature(str(exc)) from exc

    def fetch_customer_email(self, customer_id: str) -> Optional[str]:
        client = self._require_client()
        try:
            customer = client.customers.retrieve(customer_id)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                logger.info("stripe customer %s not found", customer_id, extra={"customer_id": customer_id})
                return None
            raise ProviderUnavailable(f"customer lookup failed: {exc}") from exc
        except stripe.StripeError as exc:
            raise ProviderUnavailable(f"customer lookup failed: {exc}") from exc

        if getattr(customer, "deleted", False):
            return None
        return getattr(customer, "email", None) or None

    def create_customer(self, user_id: str, email: Optional[str]) -> str:
        client = self._require_client()
        params: Dict[str, Any] = {"metadata": {"uid": user_id}}
        if email:
            params["email"] = email
        try:
            customer = client.customers.create(params)
        except stripe.StripeError as exc:
            raise ProviderUnavailable(f"customer create failed: {exc}") from exc
        return customer.id

    def create_checkout_session(
        self,
        *,
        user_id: str,
        email: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Any:
        client = self._require_client()
        try:
            return client.checkout.sessions.create({
                "mode": "subscription",
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "customer_email": email,
                "client_reference_id": user_id,
                "allow_promotion_codes": True,
                "metadata": {"uid": user_id},
                "subscription_data": {"metadata": {"uid": user_id}},
            })
        except stripe.StripeError as exc:
            raise ProviderUnavailable(f"checkout session create failed: {exc}") from exc

    def create_portal_session(self, *, customer_id: str, return_url: str) -> Any:
        client = self._require_client()
        try:
            return client.billing_portal.sessions.create({"customer": customer_id, "return_url": return_url})
        except stripe.StripeError as exc:
            raise ProviderUnavailable(f"portal session create failed: {exc}") from exc
