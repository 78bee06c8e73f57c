from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .settings import Settings

@dataclass(frozen=True)
class Tables:
    users: Any
    stripe_events: Any


def build_tables(ddb: Any, settings: Settings) -> Tables:
    return Tables(
        users=ddb.Table(settings.users_table_name),
        stripe_events=ddb.Table(settings.stripe_events_table_name),
    )
