from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

from backend.app.models import CorrelationRecord, InboundMessage, utc_now
from backend.app.services.matching import match_click
from backend.app.store import InMemoryStore, RecoverableQueryError

if TYPE_CHECKING:
    from backend.app.observability import MetricsRegistry

logger = logging.getLogger("wa_attribution.correlation")

MAX_CLAIM_ATTEMPTS = 3

_NUMERIC = re.compile(r"^\d+(\.\d+)?$")


class MalformedTimestampError(ValueError):
    pass


def parse_timestamp(value: Any) -> datetime:
    """
    Normalise a provider timestamp to naive UTC. Accepts datetimes, epoch
    seconds (or milliseconds) as numbers or digit strings, and ISO-8601.
    """
    if value is None or value == "":
        return utc_now()
    if isinstance(value, bool):
        raise MalformedTimestampError(f"unsupported timestamp: {value!r}")
    try:
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, (int, float)):
            parsed = _from_epoch(float(value))
        elif isinstance(value, str):
            raw = value.strip()
            if _NUMERIC.match(raw):
                parsed = _from_epoch(float(raw))
            else:
                parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        else:
            raise MalformedTimestampError(f"unsupported timestamp: {value!r}")
        # offsets near datetime.min/max overflow on conversion
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    except (ValueError, OverflowError, OSError) as exc:
        if isinstance(exc, MalformedTimestampError):
            raise
        raise MalformedTimestampError(f"unparseable timestamp: {value!r}") from exc
    return parsed


def _from_epoch(seconds: float) -> datetime:
    if seconds > 1e11:
        seconds = seconds / 1000
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def correlate_inbound_message(
    store: InMemoryStore,
    message: InboundMessage,
    *,
    window_minutes: int,
    metrics: Optional["MetricsRegistry"] = None,
) -> Optional[CorrelationRecord]:
    window = timedelta(minutes=window_minutes)
    for attempt in range(1, MAX_CLAIM_ATTEMPTS + 1):
        try:
            candidates = store.list_correlation_candidates(
                tenant_id=message.tenant_id,
                received_at=message.received_at_utc,
                window=window,
            )
            match = match_click(candidates, message, window=window)
            if match is None:
                logger.info(
                    "correlation_miss tenant_id=%s phone=%s candidates=%s",
                    message.tenant_id,
                    message.phone_number,
                    len(candidates),
                )
                _count(metrics, "miss")
                return None
            record = store.claim_click(
                click_id=match.click.id,
                message=message,
                method=match.method,
            )
        except RecoverableQueryError as exc:
            logger.warning(
                "correlation_skipped tenant_id=%s phone=%s reason=%s",
                message.tenant_id,
                message.phone_number,
                exc,
            )
            _count(metrics, "skipped")
            return None

        if record is not None:
            logger.info(
                "correlation_recorded tenant_id=%s phone=%s tracking_id=%s method=%s elapsed_s=%s",
                record.tenant_id,
                record.phone_number,
                record.tracking_id,
                record.correlation_method.value,
                record.time_elapsed_seconds,
            )
            _count(metrics, record.correlation_method.value)
            return record
        logger.info(
            "correlation_claim_lost tenant_id=%s click_id=%s attempt=%s",
            message.tenant_id,
            match.click.id,
            attempt,
        )

    _count(metrics, "miss")
    return None


def _count(metrics: Optional["MetricsRegistry"], outcome: str) -> None:
    if metrics is not None:
        metrics.record_correlation(outcome)
