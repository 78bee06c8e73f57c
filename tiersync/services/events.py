"""Typed decoding of verified Stripe webhook payloads.

Everything downstream of ``decode_event`` works with the frozen dataclasses
below, never with the raw JSON mapping.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from tiersync.core.errors import MalformedEvent
from tiersync.core.normalize import stripe_id


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    event_type: str
    created: int
    mode: str
    internal_user_id: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_id: str
    event_type: str
    created: int
    customer_id: str
    status: str
    subscription_id: str


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    event_type: str
    created: int
    customer_id: str
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class InvoicePaymentSucceeded:
    event_id: str
    event_type: str
    created: int
    invoice_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class Unhandled:
    event_id: str
    event_type: str
    created: int

    @property
    def raw_type(self) -> str:
        return self.event_type


BillingEvent = Union[
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentSucceeded,
    Unhandled,
]


def _opt_str(obj: Dict[str, Any], key: str) -> Optional[str]:
    value = obj.get(key)
    return value if isinstance(value, str) and value else None


def _require_id(obj: Dict[str, Any], key: str, event_type: str) -> str:
    value = stripe_id(obj.get(key))
    if not value:
        raise MalformedEvent(f"{event_type}: missing {key}")
    return value


def _checkout_completed(base: Dict[str, Any], obj: Dict[str, Any]) -> CheckoutCompleted:
    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {}
    details = obj.get("customer_details") or {}
    if not isinstance(details, dict):
        details = {}

    uid = _opt_str(metadata, "uid") or _opt_str(metadata, "user_id") or _opt_str(obj, "client_reference_id")
    email = _opt_str(details, "email") or _opt_str(obj, "customer_email")

    return CheckoutCompleted(
        **base,
        mode=_opt_str(obj, "mode") or "payment",
        internal_user_id=uid,
        customer_id=stripe_id(obj.get("customer")),
        subscription_id=stripe_id(obj.get("subscription")),
        email=email,
    )


def _subscription_updated(base: Dict[str, Any], obj: Dict[str, Any]) -> SubscriptionUpdated:
    status = _opt_str(obj, "status")
    if not status:
        raise MalformedEvent(f"{base['event_type']}: missing status")
    return SubscriptionUpdated(
        **base,
        customer_id=_require_id(obj, "customer", base["event_type"]),
        status=status,
        subscription_id=_require_id(obj, "id", base["event_type"]),
    )


def _subscription_deleted(base: Dict[str, Any], obj: Dict[str, Any]) -> SubscriptionDeleted:
    return SubscriptionDeleted(
        **base,
        customer_id=_require_id(obj, "customer", base["event_type"]),
        subscription_id=stripe_id(obj.get("id")),
    )


def _invoice_subscription(obj: Dict[str, Any]) -> Optional[str]:
    sub = stripe_id(obj.get("subscription"))
    if sub:
        return sub
    # Newer API versions move it under parent.subscription_details.
    parent = obj.get("parent") or {}
    details = parent.get("subscription_details") if isinstance(parent, dict) else None
    if isinstance(details, dict):
        return stripe_id(details.get("subscription"))
    return None


def _invoice_payment_succeeded(base: Dict[str, Any], obj: Dict[str, Any]) -> InvoicePaymentSucceeded:
    return InvoicePaymentSucceeded(
        **base,
        invoice_id=_require_id(obj, "id", base["event_type"]),
        customer_id=stripe_id(obj.get("customer")),
        subscription_id=_invoice_subscription(obj),
    )


_DECODERS = {
    "checkout.session.completed": _checkout_completed,
    "customer.subscription.created": _subscription_updated,
    "customer.subscription.updated": _subscription_updated,
    "customer.subscription.deleted": _subscription_deleted,
    "invoice.payment_succeeded": _invoice_payment_succeeded,
}


def decode_event(payload: bytes) -> BillingEvent:
    """Decode a verified payload into one of the event variants.

    Raises ``MalformedEvent`` when the payload is not a Stripe event object,
    or when a handled event type lacks a field it cannot do without. Unknown
    event types decode to ``Unhandled``.
    """
    try:
        raw = json.loads(payload)
    except (TypeError, ValueError, UnicodeDecodeError) as exc:
        raise MalformedEvent(f"payload is not valid JSON: {exc}") from exc

    if not isinstance(raw, dict):
        raise MalformedEvent("payload root is not an object")

    event_id = raw.get("id")
    event_type = raw.get("type")
    if not isinstance(event_id, str) or not event_id:
        raise MalformedEvent("missing event id")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEvent("missing event type")

    created = raw.get("created", 0)
    if isinstance(created, bool) or not isinstance(created, int):
        raise MalformedEvent("created is not an integer timestamp")

    base = {"event_id": event_id, "event_type": event_type, "created": created}

    decoder = _DECODERS.get(event_type)
    if decoder is None:
        return Unhandled(**base)

    data = raw.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise MalformedEvent(f"{event_type}: missing data.object")

    return decoder(base, obj)
