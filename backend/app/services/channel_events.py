from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from backend.app.models import InboundMessage, WebhookEventRequest
from backend.app.services.correlation import (
    MalformedTimestampError,
    correlate_inbound_message,
    parse_timestamp,
)
from backend.app.services.dedupe import normalize_phone
from backend.app.store import InMemoryStore

if TYPE_CHECKING:
    from backend.app.observability import MetricsRegistry

logger = logging.getLogger("wa_attribution.channel_events")

INBOUND_EVENT_TYPES = {"inbound_message", "message", "message_received"}


class PermanentWebhookError(Exception):
    pass


def _message_text(data: dict[str, Any]) -> Optional[str]:
    for key in ("content", "text", "body"):
        value = data.get(key)
        # WhatsApp Cloud nests the body: {"text": {"body": "..."}}
        if isinstance(value, dict):
            value = value.get("body")
        if isinstance(value, str) and value.strip():
            return value
    return None


def build_inbound_message(*, payload: WebhookEventRequest, tenant_id: int) -> InboundMessage:
    data = payload.payload
    phone = payload.phone or data.get("phone") or data.get("from") or data.get("sender_id")
    if not isinstance(phone, str) or not normalize_phone(phone):
        raise PermanentWebhookError("inbound message missing phone")
    content = _message_text(data)
    if content is None:
        raise PermanentWebhookError("inbound message missing content")

    received_raw = data.get("received_at")
    if received_raw is None:
        received_raw = data.get("timestamp")
    message_id = data.get("message_id") or data.get("id")
    return InboundMessage(
        tenant_id=tenant_id,
        phone_number=normalize_phone(phone),
        content=content,
        received_at_utc=parse_timestamp(received_raw),
        message_id=str(message_id) if message_id else None,
    )


def process_channel_event(
    *,
    store: InMemoryStore,
    payload: WebhookEventRequest,
    tenant_id: int,
    window_minutes: int,
    metrics: Optional["MetricsRegistry"] = None,
) -> str:
    event_type = (payload.event_type or "").strip().lower()
    if event_type not in INBOUND_EVENT_TYPES:
        return "ignored_event_type"

    try:
        message = build_inbound_message(payload=payload, tenant_id=tenant_id)
    except MalformedTimestampError as exc:
        logger.warning(
            "correlation_skipped tenant_id=%s event_id=%s reason=%s",
            tenant_id,
            payload.event_id,
            exc,
        )
        if metrics is not None:
            metrics.record_correlation("skipped")
        return "correlation_skipped:malformed_timestamp"

    try:
        correlation = correlate_inbound_message(
            store,
            message,
            window_minutes=window_minutes,
            metrics=metrics,
        )
    except Exception:
        # correlation must never fail message ingestion
        logger.exception(
            "correlation_failed tenant_id=%s event_id=%s", tenant_id, payload.event_id
        )
        if metrics is not None:
            metrics.record_correlation("skipped")
        return "correlation_skipped:error"

    if correlation is None:
        return "no_correlation"
    return f"correlated:{correlation.correlation_method.value}:{correlation.tracking_id}"
