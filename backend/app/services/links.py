from __future__ import annotations

import secrets
import time
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

# Query parameters owned by the link registry; stale values on a base url are replaced.
TRACKING_QUERY_PARAMS = {"utm_source", "utm_medium", "utm_campaign", "wa", "tenant"}

DEFAULT_CAMPAIGN_NAME = "whatsapp_campaign"


def generate_tracking_id() -> str:
    millis = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"wa_{millis}_{suffix}"


def build_destination_url(
    *,
    base_url: str,
    campaign_name: str,
    tracking_id: str,
    tenant_id: int,
) -> str:
    parts = urlsplit(base_url)
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key not in TRACKING_QUERY_PARAMS
    ]
    query.extend(
        [
            ("utm_source", "whatsapp"),
            ("utm_medium", "chat"),
            ("utm_campaign", campaign_name),
            ("wa", tracking_id),
            ("tenant", str(tenant_id)),
        ]
    )
    return urlunsplit(parts._replace(query=urlencode(query)))


def build_tracked_url(*, tracking_base_url: str, tracking_id: str, tenant_id: int) -> str:
    return f"{tracking_base_url.rstrip('/')}/track/{quote(tracking_id)}?tenant={tenant_id}"
