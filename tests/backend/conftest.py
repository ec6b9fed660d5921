from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("WHATSAPP_WEBHOOK_SECRET", "")
    monkeypatch.setenv("TRACKING_BASE_URL", "https://track.example.com")
    monkeypatch.setenv("TRACKING_FALLBACK_URL", "https://wa.me/5511999999999")
    app = create_app()
    return TestClient(app)
