from __future__ import annotations

from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from tiersync.core.errors import StoreUnavailable
from tiersync.core.settings import S
from tiersync.core.time import now_ts
from tiersync.services.ttl import with_ttl


class EventLedger:
    """Ids of Stripe events whose effect has already been applied."""

    def __init__(self, table: Any, ttl_seconds: int = S.stripe_event_ttl_seconds) -> None:
        self.table = table
        self.ttl_seconds = ttl_seconds

    def is_processed(self, event_id: str) -> bool:
        try:
            resp = self.table.get_item(Key={"pk": "STRIPE_EVENT", "sk": event_id})
        except (ClientError, BotoCoreError) as exc:
            raise StoreUnavailable(f"event ledger read failed: {exc}") from exc
        return "Item" in resp and resp["Item"] is not None

    def mark_processed(self, event_id: str, event_type: str, outcome: str) -> bool:
        ts = now_ts()
        try:
            self.table.put_item(
                Item=with_ttl(
                    {"pk": "STRIPE_EVENT", "sk": event_id, "type": event_type, "outcome": outcome, "ts": ts},
                    self.ttl_seconds,
                    now=ts,
                ),
                ConditionExpression="attribute_not_exists(pk)",
            )
            return True
        except ClientError as exc:
            if exc.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise StoreUnavailable(f"event ledger write failed: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailable(f"event ledger write failed: {exc}") from exc
