from __future__ import annotations

import os
from dataclasses import dataclass

@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")
    ddb_connect_timeout_seconds: float = float(os.environ.get("DDB_CONNECT_TIMEOUT_SECONDS", "3"))
    ddb_read_timeout_seconds: float = float(os.environ.get("DDB_READ_TIMEOUT_SECONDS", "5"))

    # DynamoDB tables
    users_table_name: str = os.environ.get("USERS_TABLE_NAME", "users")
    users_customer_index: str = os.environ.get("USERS_CUSTOMER_INDEX", "stripe_customer_id-index")
    users_email_index: str = os.environ.get("USERS_EMAIL_INDEX", "email-index")
    stripe_events_table_name: str = os.environ.get("STRIPE_EVENTS_TABLE_NAME", "stripe_events")

    # TTL
    ddb_ttl_attr: str = os.environ.get("DDB_TTL_ATTR", "ttl_epoch")
    stripe_event_ttl_seconds: int = int(os.environ.get("STRIPE_EVENT_TTL_SECONDS", str(7 * 24 * 3600)))

    # Stripe
    stripe_secret_key: str = os.environ.get("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    stripe_webhook_tolerance_seconds: int = int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300"))
    stripe_price_id: str = os.environ.get("STRIPE_PRICE_ID", os.environ.get("STRIPE_PRICE_PRO_MONTHLY", ""))
    stripe_success_url: str = os.environ.get("STRIPE_SUCCESS_URL", "")
    stripe_cancel_url: str = os.environ.get("STRIPE_CANCEL_URL", "")
    stripe_portal_return_url: str = os.environ.get("STRIPE_PORTAL_RETURN_URL", "")
    stripe_timeout_seconds: int = int(os.environ.get("STRIPE_TIMEOUT_SECONDS", "10"))

    # Reconciliation
    reconcile_timeout_seconds: float = float(os.environ.get("RECONCILE_TIMEOUT_SECONDS", "10"))
    reconcile_workers: int = int(os.environ.get("RECONCILE_WORKERS", "8"))
    reconcile_ordering_guard: bool = os.environ.get("RECONCILE_ORDERING_GUARD", "1") not in ("0", "false", "False")

    # Observability
    metrics_enabled: bool = os.environ.get("METRICS_ENABLED", "1") not in ("0", "false", "False")
    log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()

    # Server
    host: str = os.environ.get("HOST", "0.0.0.0")
    port: int = int(os.environ.get("PORT", "8000"))


S = Settings()
