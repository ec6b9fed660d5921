from __future__ import annotations


def _click(client, **overrides) -> dict:
    payload = {
        "utm_data": {"utm_source": "google"},
        "page_url": "https://loja.example.com/produto",
        "session_id": "sess_assoc",
    }
    payload.update(overrides)
    response = client.post("/track/whatsapp-click", json=payload)
    assert response.status_code == 200
    return response.json()


def test_integration_setup_returns_snippet_and_test_url(client) -> None:
    response = client.post(
        "/integration/setup",
        json={
            "site_url": "https://loja.example.com/?ref=ads",
            "conversion_types": ["Purchase", "lead", "purchase"],
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["tenant_id"] == 1
    assert body["tracking_option"] == "automatic"
    assert body["conversion_types"] == ["purchase", "lead"]
    assert '"https://track.example.com/track/whatsapp-click"' in body["tracking_snippet"]
    assert "var tenantId = 1;" in body["tracking_snippet"]
    assert 'a[href*="wa.me"]' in body["tracking_snippet"]
    assert body["test_url"].startswith("https://loja.example.com/?ref=ads&utm_source=whatsapp")
    assert "wa=wa_test" in body["test_url"]
    assert body["test_url"].endswith("tenant=1")


def test_manual_integration_does_not_bind_anchors(client) -> None:
    response = client.post(
        "/integration/setup",
        json={"site_url": "https://loja.example.com", "tracking_option": "manual"},
    )
    snippet = response.json()["tracking_snippet"]
    assert "window.waAttribution = { track: track };" in snippet
    assert "addEventListener" not in snippet


def test_integration_setup_is_replaced_per_tenant(client) -> None:
    first = client.post("/integration/setup", json={"site_url": "https://old.example.com"})
    second = client.post("/integration/setup", json={"site_url": "https://new.example.com"})
    assert first.status_code == second.status_code == 200

    stored = client.get("/integration/setup")
    assert stored.status_code == 200
    assert stored.json()["site_url"] == "https://new.example.com"

    other_tenant = client.get("/integration/setup", headers={"X-Tenant-ID": "2"})
    assert other_tenant.status_code == 404


def test_integration_setup_requires_http_site_url(client) -> None:
    response = client.post("/integration/setup", json={"site_url": "ftp://loja.example.com"})
    assert response.status_code == 422


def test_associate_phone_by_tracking_id(client) -> None:
    click = _click(client, tracking_id="wa_1700000000000_assoc0001")

    response = client.post(
        "/track/associate-user",
        json={"phone": "+55 11 99999-0050", "tracking_id": "wa_1700000000000_assoc0001"},
    )

    assert response.status_code == 200
    assert response.json() == {"phone": "5511999990050", "click_ids": [click["click_id"]]}
    clicks = client.get("/clicks", params={"tracking_id": "wa_1700000000000_assoc0001"}).json()
    assert clicks[0]["phone"] == "5511999990050"


def test_associate_phone_by_session_keeps_known_phones(client) -> None:
    anonymous = _click(client, tracking_id="wa_1700000000000_assoc0002")
    known = _click(client, tracking_id="wa_1700000000000_assoc0003", phone="5511999990051")

    response = client.post(
        "/track/associate-user",
        json={"phone": "5511999990052", "session_id": "sess_assoc"},
    )

    assert response.status_code == 200
    assert response.json()["click_ids"] == [anonymous["click_id"]]
    phones = {click["id"]: click["phone"] for click in client.get("/clicks").json()}
    assert phones[anonymous["click_id"]] == "5511999990052"
    assert phones[known["click_id"]] == "5511999990051"


def test_associate_phone_unknown_click_is_not_found(client) -> None:
    response = client.post(
        "/track/associate-user",
        json={"phone": "5511999990053", "tracking_id": "wa_1700000000000_missing01"},
    )
    assert response.status_code == 404


def test_associate_phone_requires_a_click_reference(client) -> None:
    response = client.post("/track/associate-user", json={"phone": "5511999990054"})
    assert response.status_code == 422

    short_phone = client.post(
        "/track/associate-user", json={"phone": "123", "session_id": "sess_assoc"}
    )
    assert short_phone.status_code == 422
