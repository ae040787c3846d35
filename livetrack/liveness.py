"""
Online/offline decision for cached bus locations
"""

from datetime import datetime, timezone
from typing import Optional, Union


def _as_utc(value: Union[datetime, str]) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def is_online(
    updated_at: Optional[Union[datetime, str]],
    threshold_seconds: float,
    now: Optional[datetime] = None
) -> bool:
    """
    A bus is online when its last fix is at most `threshold_seconds` old.

    The boundary is inclusive. A missing timestamp is always offline.
    """
    if not updated_at:
        return False
    now = _as_utc(now) if now is not None else datetime.now(timezone.utc)
    age = (now - _as_utc(updated_at)).total_seconds()
    return age <= threshold_seconds
