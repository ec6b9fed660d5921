from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from backend.app.models import ClickEventRecord


def normalize(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(value.strip().lower().split())


def normalize_phone(value: Optional[str]) -> str:
    """Digits only; WhatsApp session ids such as ``5511999999999@c.us`` keep the number part."""
    if not value:
        return ""
    number = value.split("@", 1)[0]
    return "".join(char for char in number if char.isdigit())


def is_duplicate_click(
    existing: ClickEventRecord,
    *,
    tenant_id: int,
    session_id: Optional[str],
    tracking_id: str,
    clicked_at: datetime,
    window_seconds: int,
) -> bool:
    if window_seconds <= 0 or not session_id:
        return False
    if existing.tenant_id != tenant_id:
        return False
    if existing.tracking_id != tracking_id:
        return False
    if normalize(existing.session_id) != normalize(session_id):
        return False
    age = clicked_at - existing.clicked_at_utc
    return timedelta(0) <= age <= timedelta(seconds=window_seconds)
