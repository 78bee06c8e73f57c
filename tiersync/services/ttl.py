from __future__ import annotations
from typing import Any, Dict, Optional
from tiersync.core.settings import S
from tiersync.core.time import now_ts

def with_ttl(item: Dict[str, Any], ttl_seconds: int, *, now: Optional[int] = None, attr: str = S.ddb_ttl_attr) -> Dict[str, Any]:
    """Stamp ``item`` so DynamoDB expires it ``ttl_seconds`` after ``now``."""
    item[attr] = int(now if now is not None else now_ts()) + int(ttl_seconds)
    return item
