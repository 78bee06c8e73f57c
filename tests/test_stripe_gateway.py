from __future__ import annotations

import hashlib
import hmac
import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import stripe

from tiersync.core.errors import InvalidSignature, ProviderUnavailable
from tiersync.services.stripe_gateway import StripeGateway

from conftest import WEBHOOK_SECRET, make_event, sign_payload


def test_verify_signature_accepts_valid_header(gateway: StripeGateway) -> None:
    payload = make_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"})
    gateway.verify_signature(payload, sign_payload(payload))


def test_verify_signature_rejects_tampered_body(gateway: StripeGateway) -> None:
    payload = make_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"})
    header = sign_payload(payload)
    tampered = payload.replace(b"cus_1", b"cus_2")

    with pytest.raises(InvalidSignature):
        gateway.verify_signature(tampered, header)


def test_verify_signature_rejects_reformatted_json(gateway: StripeGateway) -> None:
    payload = make_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"})
    header = sign_payload(payload)

    with pytest.raises(InvalidSignature):
        gateway.verify_signature(payload.replace(b", ", b","), header)


def test_verify_signature_rejects_wrong_secret(gateway: StripeGateway) -> None:
    payload = make_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"})

    with pytest.raises(InvalidSignature):
        gateway.verify_signature(payload, sign_payload(payload, secret="whsec_other"))


def test_verify_signature_rejects_old_timestamp(gateway: StripeGateway) -> None:
    payload = make_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"})
    header = sign_payload(payload, timestamp=int(time.time()) - 3600)

    with pytest.raises(InvalidSignature):
        gateway.verify_signature(payload, header)


def test_verify_signature_requires_header(gateway: StripeGateway) -> None:
    with pytest.raises(InvalidSignature):
        gateway.verify_signature(b"{}", None)


def test_verify_signature_fails_closed_without_secret() -> None:
    gw = StripeGateway(MagicMock(), webhook_secret="", tolerance=300)
    payload = b"{}"

    with pytest.raises(InvalidSignature):
        gw.verify_signature(payload, sign_payload(payload, secret=WEBHOOK_SECRET))


def test_fetch_customer_email(gateway: StripeGateway, stripe_client: MagicMock) -> None:
    stripe_client.customers.retrieve.return_value = SimpleNamespace(id="cus_9", email="u2@example.com")

    assert gateway.fetch_customer_email("cus_9") == "u2@example.com"
    stripe_client.customers.retrieve.assert_called_once_with("cus_9")


def test_fetch_customer_email_deleted_customer(gateway: StripeGateway, stripe_client: MagicMock) -> None:
    stripe_client.customers.retrieve.return_value = SimpleNamespace(id="cus_9", deleted=True)

    assert gateway.fetch_customer_email("cus_9") is None


def test_fetch_customer_email_missing_customer(gateway: StripeGateway, stripe_client: MagicMock) -> None:
    stripe_client.customers.retrieve.side_effect = stripe.InvalidRequestError(
        "No such customer: 'cus_gone'", "id", code="resource_missing"
    )

    assert gateway.fetch_customer_email("cus_gone") is None


def test_fetch_customer_email_transport_error_is_retryable(gateway: StripeGateway, stripe_client: MagicMock) -> None:
    stripe_client.customers.retrieve.side_effect = stripe.APIConnectionError("connection reset")

    with pytest.raises(ProviderUnavailable):
        gateway.fetch_customer_email("cus_9")


def test_unconfigured_client_is_retryable() -> None:
    gw = StripeGateway(None, webhook_secret=WEBHOOK_SECRET)

    assert gw.configured is False
    with pytest.raises(ProviderUnavailable):
        gw.fetch_customer_email("cus_9")


def test_checkout_session_embeds_internal_id(gateway: StripeGateway, stripe_client: MagicMock) -> None:
    stripe_client.checkout.sessions.create.return_value = SimpleNamespace(id="cs_1", url="https://checkout.example/cs_1")

    session = gateway.create_checkout_session(
        user_id="u1",
        email="u1@example.com",
        price_id="price_pro",
        success_url="https://app.example/ok",
        cancel_url="https://app.example/cancel",
    )

    assert session.id == "cs_1"
    params = stripe_client.checkout.sessions.create.call_args.args[0]
    assert params["metadata"] == {"uid": "u1"}
    assert params["client_reference_id"] == "u1"
    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": "price_pro", "quantity": 1}]


def test_verify_signature_passes_decoded_text_to_stripe(gateway: StripeGateway, monkeypatch) -> None:
    def format_and_compare(payload, header, secret, tolerance=None):
        # Mirrors stripe < 16, which formats the payload with %s.
        parts = dict(p.split("=", 1) for p in header.split(","))
        signed = "%d.%s" % (int(parts["t"]), payload)
        expected = hmac.new(secret.encode("utf-8"), signed.encode("utf-8"), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, parts["v1"]):
            raise stripe.SignatureVerificationError("no match", header, payload)
        return True

    monkeypatch.setattr(stripe.WebhookSignature, "verify_header", staticmethod(format_and_compare))
    payload = make_event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"})

    gateway.verify_signature(payload, sign_payload(payload))


def test_verify_signature_rejects_non_utf8_body(gateway: StripeGateway) -> None:
    payload = b'{"id": "evt_1", "bad": "\xff"}'

    with pytest.raises(InvalidSignature):
        gateway.verify_signature(payload, sign_payload(payload))
