from __future__ import annotations

import json
from string import Template

from backend.app.models import TrackingOption
from backend.app.services.links import build_destination_url

TEST_TRACKING_ID = "wa_test"
TEST_CAMPAIGN_NAME = "integration_test"

_SNIPPET = Template(
    """<!-- WhatsApp click attribution -->
<script>
(function () {
  var endpoint = $endpoint;
  var tenantId = $tenant_id;
  var params = new URLSearchParams(window.location.search);
  if (params.get("tenant") && params.get("tenant") !== String(tenantId)) {
    return;
  }
  if (params.get("wa")) {
    sessionStorage.setItem("wa_tracking_id", params.get("wa"));
  }
  var sessionId = sessionStorage.getItem("wa_session_id");
  if (!sessionId) {
    sessionId = "sess_" + Date.now().toString(36) + Math.random().toString(36).slice(2, 8);
    sessionStorage.setItem("wa_session_id", sessionId);
  }

  function track(extra) {
    var body = {
      tenant_id: tenantId,
      tracking_id: sessionStorage.getItem("wa_tracking_id"),
      utm_data: {
        utm_source: params.get("utm_source"),
        utm_medium: params.get("utm_medium"),
        utm_campaign: params.get("utm_campaign"),
        utm_content: params.get("utm_content"),
        utm_term: params.get("utm_term"),
        landing_page: window.location.pathname
      },
      page_url: window.location.href,
      referrer: document.referrer || null,
      user_agent: navigator.userAgent,
      session_id: sessionId,
      event_type: "whatsapp_click"
    };
    Object.assign(body, extra || {});
    return fetch(endpoint, {
      method: "POST",
      headers: { "Content-Type": "application/json" },
      body: JSON.stringify(body),
      keepalive: true
    }).then(function (response) { return response.json(); });
  }

  window.waAttribution = { track: track };
$auto_bind})();
</script>
<!-- End WhatsApp click attribution -->"""
)

_AUTO_BIND = """
  document.addEventListener("click", function (event) {
    var anchor = event.target.closest('a[href*="wa.me"], a[href*="api.whatsapp.com"]');
    if (!anchor) {
      return;
    }
    var text = new URL(anchor.href, window.location.href).searchParams.get("text");
    track({ message: text });
  }, true);
"""


def build_tracking_snippet(
    *, tenant_id: int, tracking_base_url: str, tracking_option: TrackingOption
) -> str:
    """
    HTML snippet for the tenant's site. ``automatic`` binds every WhatsApp
    anchor on the page; ``manual`` only exposes ``window.waAttribution.track``.
    """
    endpoint = f"{tracking_base_url.rstrip('/')}/track/whatsapp-click"
    return _SNIPPET.substitute(
        endpoint=json.dumps(endpoint),
        tenant_id=int(tenant_id),
        auto_bind=_AUTO_BIND if tracking_option == TrackingOption.automatic else "",
    )


def build_test_url(*, site_url: str, tenant_id: int) -> str:
    return build_destination_url(
        base_url=site_url,
        campaign_name=TEST_CAMPAIGN_NAME,
        tracking_id=TEST_TRACKING_ID,
        tenant_id=tenant_id,
    )
