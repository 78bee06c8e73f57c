from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Request

from tiersync.core.aws import build_dynamodb
from tiersync.core.settings import Settings
from tiersync.core.tables import build_tables
from tiersync.services.event_ledger import EventLedger
from tiersync.services.reconcile import Reconciler
from tiersync.services.stripe_gateway import StripeGateway, build_stripe_client
from tiersync.services.user_store import UserStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    gateway: StripeGateway
    store: UserStore
    ledger: EventLedger
    reconciler: Reconciler
    executor: Optional[ThreadPoolExecutor] = None

    def close(self) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=True)
            self.executor = None


def build_services(settings: Settings, *, ddb: Any = None, stripe_client: Any = None) -> Services:
    """Construct every long-lived client once, at process start."""
    if ddb is None:
        ddb = build_dynamodb(settings)
    tables = build_tables(ddb, settings)
    if stripe_client is None:
        stripe_client = build_stripe_client(settings)
    if stripe_client is None:
        logger.warning("STRIPE_SECRET_KEY is not set; customer lookups and sessions are disabled")

    gateway = StripeGateway(
        stripe_client,
        webhook_secret=settings.stripe_webhook_secret,
        tolerance=settings.stripe_webhook_tolerance_seconds,
    )
    store = UserStore(tables.users, settings)
    ledger = EventLedger(tables.stripe_events, settings.stripe_event_ttl_seconds)
    executor = ThreadPoolExecutor(max_workers=settings.reconcile_workers, thread_name_prefix="reconcile")
    reconciler = Reconciler(
        gateway,
        store,
        ledger,
        executor=executor,
        timeout=settings.reconcile_timeout_seconds,
        ordering_guard=settings.reconcile_ordering_guard,
    )
    return Services(settings, gateway, store, ledger, reconciler, executor)


def get_services(request: Request) -> Services:
    return request.app.state.services
