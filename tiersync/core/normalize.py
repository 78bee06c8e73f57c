from __future__ import annotations

from typing import Any, Optional

def normalize_email(s: Optional[str]) -> Optional[str]:
    s = (s or "").strip().lower()
    if "@" not in s or len(s) > 254:
        return None
    return s

def stripe_id(value: Any) -> Optional[str]:
    # Expandable fields arrive either as "cus_..." or as the expanded object.
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        inner = value.get("id")
        return inner if isinstance(inner, str) and inner else None
    return None
