"""
Click-to-message matching over an already fetched candidate list.

Nothing here touches storage, so the policy can be exercised directly in unit
tests. Priority, highest confidence first:

1. ``explicit_token``: the message text mentions the tracking id of a candidate
   click as a whole word (the website snippet and generated links put the id
   into the prefilled WhatsApp text). Any id shape counts, generated ``wa_...``
   ids and short custom ones alike; punctuation such as ``-`` or ``=`` next to
   the id does not prevent the match.
2. ``temporal_single``: exactly one eligible click inside the window.
3. ``temporal_nearest``: several eligible clicks; the most recent one wins.
   This is a best-effort heuristic, not a guarantee of correctness.

No eligible click means no match. Clicks outside the window are never
considered, so the engine prefers false negatives to false positives.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from backend.app.models import (
    ClickEventRecord,
    ClickEventType,
    CorrelationMethod,
    InboundMessage,
)

# a tracking id counts only when it is not part of a longer word
_ID_CHARS = "A-Za-z0-9_"


@dataclass(frozen=True)
class ClickMatch:
    click: ClickEventRecord
    method: CorrelationMethod
    elapsed_seconds: int


def mentions_tracking_id(content: Optional[str], tracking_id: str) -> bool:
    if not content or not tracking_id:
        return False
    pattern = rf"(?<![{_ID_CHARS}]){re.escape(tracking_id)}(?![{_ID_CHARS}])"
    return re.search(pattern, content) is not None


def is_candidate(
    click: ClickEventRecord,
    *,
    tenant_id: int,
    received_at: datetime,
    window: timedelta,
) -> bool:
    if click.tenant_id != tenant_id:
        return False
    if click.converted or click.matched_at_utc is not None:
        return False
    if click.event_type == ClickEventType.page_view:
        return False
    return received_at - window <= click.clicked_at_utc <= received_at


def elapsed_seconds(click: ClickEventRecord, received_at: datetime) -> int:
    return max(0, int((received_at - click.clicked_at_utc).total_seconds()))


def match_click(
    candidates: Iterable[ClickEventRecord],
    message: InboundMessage,
    *,
    window: timedelta,
) -> Optional[ClickMatch]:
    eligible = [
        click
        for click in candidates
        if is_candidate(
            click,
            tenant_id=message.tenant_id,
            received_at=message.received_at_utc,
            window=window,
        )
    ]
    if not eligible:
        return None
    # most recent first; equal timestamps fall back to the id so ties are stable
    eligible.sort(key=lambda click: (click.clicked_at_utc, click.id), reverse=True)

    for click in eligible:
        if mentions_tracking_id(message.content, click.tracking_id):
            return ClickMatch(
                click=click,
                method=CorrelationMethod.explicit_token,
                elapsed_seconds=elapsed_seconds(click, message.received_at_utc),
            )

    method = (
        CorrelationMethod.temporal_single
        if len(eligible) == 1
        else CorrelationMethod.temporal_nearest
    )
    nearest = eligible[0]
    return ClickMatch(
        click=nearest,
        method=method,
        elapsed_seconds=elapsed_seconds(nearest, message.received_at_utc),
    )
