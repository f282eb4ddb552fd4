"""UTC helpers shared by entitlement and lifecycle code.

Business rules never read the wall clock themselves; callers pass ``now``
and these helpers fill in the default and repair naive values coming back
from storage (SQLite drops tzinfo).
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_now(now: Optional[datetime] = None) -> datetime:
    if now is None:
        return utc_now()
    return ensure_utc(now)
