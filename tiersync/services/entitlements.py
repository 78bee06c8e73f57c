from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from tiersync.core.time import now_ts
from tiersync.services.tiers import TierDecision
from tiersync.services.user_store import UserStore

logger = logging.getLogger(__name__)


class EntitlementWriter:
    """Applies a tier decision to one user document as a merge-write.

    Values are absolute, so applying the same decision again leaves the
    stored entitlement unchanged. Optional ids are only ever set, never
    cleared.
    """

    def __init__(self, store: UserStore, *, ordering_guard: bool = True) -> None:
        self.store = store
        self.ordering_guard = ordering_guard

    def build_fields(
        self,
        decision: TierDecision,
        *,
        current: Optional[Dict[str, Any]],
        event_id: str,
        event_created: int,
        write_customer: bool = True,
    ) -> Dict[str, Any]:
        current = current or {}
        ts = now_ts()
        fields: Dict[str, Any] = {
            "tier": decision.tier,
            "tier_status": decision.tier_status,
            "last_reconciled_at": ts,
            "last_event_created": int(event_created),
            "last_event_id": event_id,
        }
        if current.get("tier") != decision.tier or not current.get("tier_since"):
            fields["tier_since"] = ts
        if decision.subscription_id:
            fields["stripe_subscription_id"] = decision.subscription_id
        if decision.customer_id and write_customer:
            fields["stripe_customer_id"] = decision.customer_id
        if decision.invoice_id:
            fields["last_invoice_id"] = decision.invoice_id
        return fields

    def _release_customer(self, user_id: str, customer_id: str) -> None:
        for holder in self.store.list_by_external_customer_id(customer_id):
            previous = holder.get("user_id")
            if not previous or previous == user_id:
                continue
            if self.store.unlink_customer(previous, customer_id):
                logger.warning(
                    "moved customer %s from user %s to user %s",
                    customer_id,
                    previous,
                    user_id,
                    extra={"customer_id": customer_id, "user_id": user_id, "previous_user_id": previous},
                )

    def apply(
        self,
        user_id: str,
        decision: TierDecision,
        *,
        event_id: str,
        event_created: int,
        current: Optional[Dict[str, Any]] = None,
        write_customer: bool = True,
        reassign_customer: bool = False,
    ) -> bool:
        """Write the decision; False means a newer event was already applied."""
        fields = self.build_fields(
            decision,
            current=current,
            event_id=event_id,
            event_created=event_created,
            write_customer=write_customer,
        )
        applied = self.store.merge_write(
            user_id,
            fields,
            event_created=event_created if self.ordering_guard else None,
        )
        customer_id = fields.get("stripe_customer_id")
        if applied and reassign_customer and customer_id and (current or {}).get("stripe_customer_id") != customer_id:
            self._release_customer(user_id, customer_id)
        if applied:
            logger.info(
                "user %s tier=%s status=%s",
                user_id,
                decision.tier,
                decision.tier_status,
                extra={"user_id": user_id, "event_id": event_id, "tier": decision.tier},
            )
        return applied
