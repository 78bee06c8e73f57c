from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from tiersync.core.errors import StoreUnavailable
from tiersync.core.settings import S, Settings

logger = logging.getLogger(__name__)

ENTITLEMENT_FIELDS = (
    "tier",
    "tier_status",
    "tier_since",
    "stripe_customer_id",
    "stripe_subscription_id",
    "last_invoice_id",
    "last_reconciled_at",
    "last_event_created",
    "last_event_id",
)

GUARD_EXPR = "attribute_not_exists(last_event_created) OR last_event_created <= :event_created"


def _is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class UserStore:
    """User documents keyed by ``user_id``, with GSIs on customer id and email."""

    def __init__(self, table: Any, settings: Settings = S) -> None:
        self.table = table
        self.customer_index = settings.users_customer_index
        self.email_index = settings.users_email_index

    def get_by_internal_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            resp = self.table.get_item(Key={"user_id": user_id})
        except (ClientError, BotoCoreError) as exc:
            raise StoreUnavailable(f"get_item failed: {exc}") from exc
        return resp.get("Item")

    def _query(self, index: str, attr: str, value: str) -> List[Dict[str, Any]]:
        try:
            resp = self.table.query(
                IndexName=index,
                KeyConditionExpression=Key(attr).eq(value),
            )
        except (ClientError, BotoCoreError) as exc:
            raise StoreUnavailable(f"query on {index} failed: {exc}") from exc
        return resp.get("Items", [])

    def _query_one(self, index: str, attr: str, value: str) -> Optional[Dict[str, Any]]:
        items = self._query(index, attr, value)
        if not items:
            return None
        if len(items) > 1:
            logger.warning(
                "multiple users share %s=%s; using %s",
                attr,
                value,
                items[0].get("user_id"),
                extra={attr: value, "user_ids": [it.get("user_id") for it in items]},
            )
        return items[0]

    def get_by_external_customer_id(self, customer_id: str) -> Optional[Dict[str, Any]]:
        return self._query_one(self.customer_index, "stripe_customer_id", customer_id)

    def list_by_external_customer_id(self, customer_id: str) -> List[Dict[str, Any]]:
        return self._query(self.customer_index, "stripe_customer_id", customer_id)

    def get_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self._query_one(self.email_index, "email", email)

    def merge_write(
        self,
        user_id: str,
        fields: Dict[str, Any],
        *,
        event_created: Optional[int] = None,
    ) -> bool:
        """Set ``fields`` on the user document, leaving other attributes alone.

        With ``event_created`` the write only lands if no newer event has been
        applied. Returns False when that guard rejects the write.
        """
        if not fields:
            return True

        sets = []
        values: Dict[str, Any] = {}
        for key, value in fields.items():
            sets.append(f"{key} = :{key}")
            values[f":{key}"] = value

        kwargs: Dict[str, Any] = {
            "Key": {"user_id": user_id},
            "UpdateExpression": "SET " + ", ".join(sets),
            "ExpressionAttributeValues": values,
        }
        if event_created is not None:
            values[":event_created"] = int(event_created)
            kwargs["ConditionExpression"] = GUARD_EXPR

        try:
            self.table.update_item(**kwargs)
        except ClientError as exc:
            if _is_conditional_failure(exc):
                return False
            raise StoreUnavailable(f"update_item failed: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailable(f"update_item failed: {exc}") from exc
        return True

    def link_customer(self, user_id: str, customer_id: str) -> bool:
        """Attach a customer id to an existing user that has no other link."""
        try:
            self.table.update_item(
                Key={"user_id": user_id},
                UpdateExpression="SET stripe_customer_id = :c",
                ConditionExpression=(
                    "attribute_exists(user_id) AND "
                    "(attribute_not_exists(stripe_customer_id) OR stripe_customer_id = :c)"
                ),
                ExpressionAttributeValues={":c": customer_id},
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                return False
            raise StoreUnavailable(f"update_item failed: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailable(f"update_item failed: {exc}") from exc
        return True

    def unlink_customer(self, user_id: str, customer_id: str) -> bool:
        """Drop ``customer_id`` from a user, only if it is still the linked one."""
        try:
            self.table.update_item(
                Key={"user_id": user_id},
                UpdateExpression="REMOVE stripe_customer_id",
                ConditionExpression="stripe_customer_id = :c",
                ExpressionAttributeValues={":c": customer_id},
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                return False
            raise StoreUnavailable(f"update_item failed: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailable(f"update_item failed: {exc}") from exc
        return True


def entitlement_view(item: Optional[Dict[str, Any]], keys: Iterable[str] = ENTITLEMENT_FIELDS) -> Dict[str, Any]:
    item = item or {}
    out = {k: item.get(k) for k in keys}
    out["tier"] = out.get("tier") or "free"
    # DynamoDB hands numbers back as Decimal.
    for k in ("tier_since", "last_reconciled_at", "last_event_created"):
        if out.get(k) is not None:
            out[k] = int(out[k])
    return out
