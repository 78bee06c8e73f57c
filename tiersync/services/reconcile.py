"""Per-delivery orchestration of a Stripe webhook.

received -> verified -> decoded -> resolved -> decided -> applied, with early
exits to rejected (signature or payload), skipped (nothing to do or nobody to
apply it to) and failed (retryable). Only ``EntitlementWriter.apply`` makes
anything durable, so a failure before it leaves no partial state.
"""
from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import Executor
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from tiersync.core.errors import InvalidSignature, MalformedEvent, RetryableError
from tiersync.metrics import record_webhook_outcome
from tiersync.services.entitlements import EntitlementWriter
from tiersync.services.event_ledger import EventLedger
from tiersync.services.events import BillingEvent, Unhandled, decode_event
from tiersync.services.identity import VIA_DIRECT, IdentityResolver, correlation_for
from tiersync.services.stripe_gateway import StripeGateway
from tiersync.services.tiers import decide
from tiersync.services.user_store import UserStore

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    REJECTED = "rejected"
    FAILED = "failed"


_HTTP_STATUS = {
    Outcome.APPLIED: 200,
    Outcome.SKIPPED: 200,
    Outcome.REJECTED: 400,
    Outcome.FAILED: 500,
}


@dataclass(frozen=True)
class ReconcileResult:
    outcome: Outcome
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    reason: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.outcome]


def _result(event: BillingEvent, outcome: Outcome, reason: Optional[str] = None, user_id: Optional[str] = None) -> ReconcileResult:
    return ReconcileResult(outcome, event.event_id, event.event_type, reason, user_id)


class Reconciler:
    def __init__(
        self,
        gateway: StripeGateway,
        store: UserStore,
        ledger: Optional[EventLedger] = None,
        *,
        executor: Optional[Executor] = None,
        timeout: float = 10.0,
        ordering_guard: bool = True,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.ledger = ledger
        self.executor = executor
        self.timeout = timeout
        self.resolver = IdentityResolver(store, gateway)
        self.writer = EntitlementWriter(store, ordering_guard=ordering_guard)

    async def handle(self, payload: bytes, sig_header: Optional[str]) -> ReconcileResult:
        start = time.perf_counter()
        try:
            result = await self._handle(payload, sig_header)
        except Exception:
            logger.exception("unexpected error handling webhook", extra={"outcome": "failed"})
            result = ReconcileResult(Outcome.FAILED, reason="internal_error")
        record_webhook_outcome(result.event_type or "unknown", result.outcome.value, time.perf_counter() - start)
        return result

    async def _handle(self, payload: bytes, sig_header: Optional[str]) -> ReconcileResult:
        try:
            self.gateway.verify_signature(payload, sig_header)
        except InvalidSignature as exc:
            logger.warning("rejected webhook: bad signature (%s)", exc, extra={"outcome": "rejected", "reason": "signature"})
            return ReconcileResult(Outcome.REJECTED, reason="invalid_signature")

        try:
            event = decode_event(payload)
        except MalformedEvent as exc:
            logger.warning("rejected webhook: malformed payload (%s)", exc, extra={"outcome": "rejected", "reason": "malformed"})
            return ReconcileResult(Outcome.REJECTED, reason="malformed_event")

        if isinstance(event, Unhandled):
            logger.debug("ignoring %s %s", event.event_type, event.event_id, extra={"event_id": event.event_id})
            return _result(event, Outcome.SKIPPED, "unhandled_type")

        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self.executor, self.reconcile, event),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "timed out reconciling %s %s after %ss",
                event.event_type,
                event.event_id,
                self.timeout,
                extra={"event_id": event.event_id, "event_type": event.event_type, "outcome": "failed"},
            )
            return _result(event, Outcome.FAILED, "timeout")

    def reconcile(self, event: BillingEvent) -> ReconcileResult:
        """Resolve, decide and apply one decoded event. Never raises."""
        try:
            return self._reconcile(event)
        except RetryableError as exc:
            logger.error(
                "retryable failure on %s %s: %s",
                event.event_type,
                event.event_id,
                exc,
                extra={"event_id": event.event_id, "event_type": event.event_type, "outcome": "failed"},
            )
            return _result(event, Outcome.FAILED, type(exc).__name__)
        except Exception:
            logger.exception(
                "unexpected error on %s %s",
                event.event_type,
                event.event_id,
                extra={"event_id": event.event_id, "event_type": event.event_type, "outcome": "failed"},
            )
            return _result(event, Outcome.FAILED, "internal_error")

    def _reconcile(self, event: BillingEvent) -> ReconcileResult:
        if self.ledger is not None and self.ledger.is_processed(event.event_id):
            logger.info("duplicate delivery of %s", event.event_id, extra={"event_id": event.event_id})
            return _result(event, Outcome.SKIPPED, "duplicate")

        # No-op events stop here, before any lookup.
        decision = decide(event)
        if decision is None:
            return _result(event, Outcome.SKIPPED, "no_decision")

        corr = correlation_for(event)
        resolution = self.resolver.resolve(corr)
        if resolution is None:
            logger.warning(
                "unresolvable %s %s: internal_user_id=%s customer_id=%s has_email=%s",
                event.event_type,
                event.event_id,
                corr.internal_user_id,
                corr.customer_id,
                bool(corr.email),
                extra={"event_id": event.event_id, "event_type": event.event_type, **corr.describe()},
            )
            return _result(event, Outcome.SKIPPED, "unresolvable")

        current = resolution.record or {}
        linked = current.get("stripe_customer_id")
        write_customer = resolution.via == VIA_DIRECT or not linked or linked == decision.customer_id

        applied = self.writer.apply(
            resolution.user_id,
            decision,
            event_id=event.event_id,
            event_created=event.created,
            current=current,
            write_customer=write_customer,
            reassign_customer=resolution.via == VIA_DIRECT,
        )
        if not applied:
            logger.info(
                "stale %s %s for user %s; a newer event is already applied",
                event.event_type,
                event.event_id,
                resolution.user_id,
                extra={"event_id": event.event_id, "user_id": resolution.user_id},
            )
            return _result(event, Outcome.SKIPPED, "stale", resolution.user_id)

        if self.ledger is not None:
            try:
                self.ledger.mark_processed(event.event_id, event.event_type, Outcome.APPLIED.value)
            except RetryableError as exc:
                # Not retried; a redelivery re-applies the same write.
                logger.warning("could not record %s as processed: %s", event.event_id, exc, extra={"event_id": event.event_id})

        return _result(event, Outcome.APPLIED, resolution.via, resolution.user_id)
