from __future__ import annotations


def _click(client, tracking_id: str, source: str, page: str, event_type: str = "whatsapp_click"):
    response = client.post(
        "/track/whatsapp-click",
        json={
            "tracking_id": tracking_id,
            "utm_data": {"utm_source": source},
            "page_url": page,
            "event_type": event_type,
        },
    )
    assert response.status_code == 200


def test_tracking_stats_summarises_the_funnel(client) -> None:
    link = client.post(
        "/links", json={"base_url": "https://loja.example.com", "campaign_name": "verao"}
    ).json()
    tracking_id = link["tracking_id"]

    _click(client, tracking_id, "instagram", "https://loja.example.com/a")
    _click(client, "wa_1_direct0001", "", "https://loja.example.com/b")
    _click(client, tracking_id, "instagram", "https://loja.example.com/a", event_type="page_view")
    client.post(
        "/webhooks/whatsapp",
        json={
            "event_id": "evt_stats_1",
            "event_type": "inbound_message",
            "phone": "5511999990010",
            "payload": {"content": f"oi {tracking_id}"},
        },
    )
    client.post("/conversions", json={"tracking_id": tracking_id, "conversion_value": 100})
    client.post("/conversions", json={"tracking_id": tracking_id, "conversion_value": 50})

    response = client.get("/tracking/stats")
    assert response.status_code == 200
    stats = response.json()

    assert stats["total_clicks"] == 2
    assert stats["page_views"] == 1
    assert stats["correlated_clicks"] == 1
    assert stats["correlation_rate"] == 50.0
    assert stats["correlations_by_method"] == {
        "explicit_token": 1,
        "temporal_single": 0,
        "temporal_nearest": 0,
    }
    assert stats["conversions"] == 2
    assert stats["revenue"] == 150.0
    assert stats["avg_order_value"] == 75.0

    by_source = {row["utm_source"]: row for row in stats["source_stats"]}
    assert by_source["instagram"] == {
        "utm_source": "instagram",
        "clicks": 1,
        "correlated": 1,
        "conversion_rate": 100.0,
    }
    assert by_source["direct"]["correlated"] == 0
    assert {row["page_url"] for row in stats["top_pages"]} == {
        "https://loja.example.com/a",
        "https://loja.example.com/b",
    }
    assert stats["top_links"][0] == {
        "tracking_id": tracking_id,
        "campaign_name": "verao",
        "clicks_count": 1,
    }


def test_tracking_stats_are_tenant_scoped(client) -> None:
    _click(client, "wa_1_tenant0001", "google", "https://loja.example.com/")

    other = client.get("/tracking/stats", headers={"X-Tenant-ID": "2"}).json()
    assert other["total_clicks"] == 0
    assert other["avg_seconds_to_message"] is None
    assert other["avg_order_value"] is None


def test_tracking_stats_rejects_inverted_range(client) -> None:
    response = client.get("/tracking/stats?date_from=2026-03-10&date_to=2026-03-01")
    assert response.status_code == 400
