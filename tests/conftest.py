from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import re
import sys
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tiersync.services.event_ledger import EventLedger
from tiersync.services.reconcile import Reconciler
from tiersync.services.stripe_gateway import StripeGateway
from tiersync.services.user_store import UserStore

WEBHOOK_SECRET = "whsec_test"

_TOKEN = re.compile(
    r"\s*(?:attribute_not_exists\((\w+)\)|attribute_exists\((\w+)\)|(\w+)\s*(<=|>=|<|>|=)\s*(:\w+)|(\()|(\))|(AND)|(OR))"
)


def _tokenize(expr: str) -> List[Tuple[str, ...]]:
    tokens: List[Tuple[str, ...]] = []
    expr = expr.strip()
    pos = 0
    while pos < len(expr):
        m = _TOKEN.match(expr, pos)
        if not m:
            raise ValueError(f"unsupported condition near {expr[pos:]!r}")
        if m.group(1):
            tokens.append(("not_exists", m.group(1)))
        elif m.group(2):
            tokens.append(("exists", m.group(2)))
        elif m.group(3):
            tokens.append(("cmp", m.group(3), m.group(4), m.group(5)))
        else:
            tokens.append((next(g for g in m.groups()[5:] if g),))
        pos = m.end()
    return tokens


def evaluate_condition(expr: str, item: Dict[str, Any], values: Dict[str, Any]) -> bool:
    tokens = _tokenize(expr)
    pos = 0

    def atom() -> bool:
        nonlocal pos
        tok = tokens[pos]
        pos += 1
        if tok[0] == "(":
            result = disjunction()
            pos += 1  # ")"
            return result
        if tok[0] == "not_exists":
            return tok[1] not in item
        if tok[0] == "exists":
            return tok[1] in item
        _, attr, op, ref = tok
        if attr not in item:
            return False
        left, right = item[attr], values[ref]
        return {
            "=": left == right,
            "<=": left <= right,
            ">=": left >= right,
            "<": left < right,
            ">": left > right,
        }[op]

    def conjunction() -> bool:
        nonlocal pos
        result = atom()
        while pos < len(tokens) and tokens[pos][0] == "AND":
            pos += 1
            rhs = atom()
            result = result and rhs
        return result

    def disjunction() -> bool:
        nonlocal pos
        result = conjunction()
        while pos < len(tokens) and tokens[pos][0] == "OR":
            pos += 1
            rhs = conjunction()
            result = result or rhs
        return result

    return disjunction()


def conditional_failure(operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        operation,
    )


class FakeTable:
    """In-memory stand-in for the boto3 Table calls the service makes."""

    def __init__(self, key_names: Tuple[str, ...]) -> None:
        self.key_names = key_names
        self.items: Dict[Tuple[str, ...], Dict[str, Any]] = {}
        self.fail_with: Optional[Exception] = None
        self.fail_on: Tuple[str, ...] = ()
        self.calls: List[str] = []

    def _key(self, key: Dict[str, Any]) -> Tuple[str, ...]:
        return tuple(key[k] for k in self.key_names)

    def _maybe_fail(self, op: str) -> None:
        self.calls.append(op)
        if self.fail_with is not None and (not self.fail_on or op in self.fail_on):
            raise self.fail_with

    def seed(self, **item: Any) -> Dict[str, Any]:
        self.items[self._key(item)] = dict(item)
        return item

    def get(self, *key: str) -> Optional[Dict[str, Any]]:
        return self.items.get(tuple(key))

    def get_item(self, *, Key: Dict[str, Any], **_: Any) -> Dict[str, Any]:
        self._maybe_fail("get_item")
        item = self.items.get(self._key(Key))
        return {"Item": dict(item)} if item else {}

    def put_item(
        self,
        *,
        Item: Dict[str, Any],
        ConditionExpression: Optional[str] = None,
        ExpressionAttributeValues: Optional[Dict[str, Any]] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        self._maybe_fail("put_item")
        key = self._key(Item)
        existing = self.items.get(key, {})
        if ConditionExpression and not evaluate_condition(ConditionExpression, existing, ExpressionAttributeValues or {}):
            raise conditional_failure("PutItem")
        self.items[key] = dict(Item)
        return {}

    def update_item(
        self,
        *,
        Key: Dict[str, Any],
        UpdateExpression: str,
        ExpressionAttributeValues: Optional[Dict[str, Any]] = None,
        ConditionExpression: Optional[str] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        self._maybe_fail("update_item")
        values = ExpressionAttributeValues or {}
        key = self._key(Key)
        existing = self.items.get(key, {})
        if ConditionExpression and not evaluate_condition(ConditionExpression, existing, values):
            raise conditional_failure("UpdateItem")

        item = dict(existing) or dict(Key)
        expr = UpdateExpression.strip()
        if expr.startswith("SET"):
            for assignment in expr[3:].split(","):
                left, right = assignment.split("=", 1)
                item[left.strip()] = values[right.strip()]
        elif expr.startswith("REMOVE"):
            for attr in expr[6:].split(","):
                item.pop(attr.strip(), None)
        else:
            raise ValueError(f"unsupported update {expr!r}")
        self.items[key] = item
        return {}

    def query(self, *, KeyConditionExpression: Any, IndexName: Optional[str] = None, **_: Any) -> Dict[str, List[Dict[str, Any]]]:
        self._maybe_fail("query")
        key, value = KeyConditionExpression.get_expression()["values"]
        matches = [dict(item) for item in self.items.values() if item.get(key.name) == value]
        return {"Items": matches}


def run_async(coro):
    return asyncio.run(coro)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + payload
    sig = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def make_event(
    event_type: str,
    data_object: Dict[str, Any],
    *,
    event_id: str = "evt_1",
    created: int = 1_700_000_000,
) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": data_object},
    }).encode()


@pytest.fixture
def users_table() -> FakeTable:
    return FakeTable(("user_id",))


@pytest.fixture
def events_table() -> FakeTable:
    return FakeTable(("pk", "sk"))


@pytest.fixture
def stripe_client() -> MagicMock:
    client = MagicMock()
    client.customers.retrieve.return_value = SimpleNamespace(id="cus_x", email=None, deleted=False)
    return client


@pytest.fixture
def gateway(stripe_client: MagicMock) -> StripeGateway:
    return StripeGateway(stripe_client, webhook_secret=WEBHOOK_SECRET, tolerance=300)


@pytest.fixture
def store(users_table: FakeTable) -> UserStore:
    return UserStore(users_table)


@pytest.fixture
def ledger(events_table: FakeTable) -> EventLedger:
    return EventLedger(events_table, ttl_seconds=3600)


@pytest.fixture
def reconciler(gateway: StripeGateway, store: UserStore, ledger: EventLedger) -> Reconciler:
    return Reconciler(gateway, store, ledger, timeout=5.0, ordering_guard=True)
