from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import OperationalError

from backend.app.models import CorrelationMethod, InboundMessage, UtmData
from backend.app.observability import MetricsRegistry
from backend.app.persistence import SqlitePersistence
from backend.app.services.correlation import correlate_inbound_message
from backend.app.store import InMemoryStore

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _record_click(
    store: InMemoryStore,
    *,
    minutes_ago: float,
    tracking_id: str,
    tenant_id: int = 1,
    session_id: Optional[str] = None,
):
    click, _ = store.record_click(
        tenant_id=tenant_id,
        tracking_id=tracking_id,
        utm=UtmData(utm_source="instagram", utm_campaign="verao"),
        session_id=session_id,
        page_url="https://loja.example.com/produto",
        referrer=None,
        user_agent="pytest",
        ip_address="127.0.0.1",
        clicked_at=NOW - timedelta(minutes=minutes_ago),
    )
    return click


def _message(phone: str, *, content: str = "Ola!", tenant_id: int = 1, at: datetime = NOW):
    return InboundMessage(
        tenant_id=tenant_id,
        phone_number=phone,
        content=content,
        received_at_utc=at,
        message_id=f"msg_{phone}",
    )


def test_correlation_consumes_click_once() -> None:
    store = InMemoryStore()
    click = _record_click(store, minutes_ago=5, tracking_id="wa_1_single01")

    first = correlate_inbound_message(store, _message("5511900000001"), window_minutes=30)
    second = correlate_inbound_message(store, _message("5511900000002"), window_minutes=30)

    assert first is not None
    assert first.click_id == click.id
    assert first.correlation_method == CorrelationMethod.temporal_single
    assert first.time_elapsed_seconds == 300
    assert first.correlated_at_utc == NOW
    assert store.get_click(click.id).matched_at_utc == NOW
    assert second is None
    assert len(store.correlations) == 1


def test_two_messages_take_two_distinct_clicks() -> None:
    store = InMemoryStore()
    older = _record_click(store, minutes_ago=10, tracking_id="wa_1_older001")
    newer = _record_click(store, minutes_ago=2, tracking_id="wa_1_newer001")

    first = correlate_inbound_message(store, _message("5511900000001"), window_minutes=30)
    second = correlate_inbound_message(store, _message("5511900000002"), window_minutes=30)

    assert first is not None and second is not None
    assert first.click_id == newer.id
    assert first.correlation_method == CorrelationMethod.temporal_nearest
    assert second.click_id == older.id
    assert second.correlation_method == CorrelationMethod.temporal_single


def test_tenants_never_share_clicks() -> None:
    store = InMemoryStore()
    _record_click(store, minutes_ago=1, tracking_id="wa_1_tenant01", tenant_id=1)

    result = correlate_inbound_message(
        store, _message("5511900000001", tenant_id=2), window_minutes=30
    )

    assert result is None
    assert store.correlations == []


def test_click_outside_window_is_not_matched() -> None:
    store = InMemoryStore()
    _record_click(store, minutes_ago=45, tracking_id="wa_1_stale0001")

    assert correlate_inbound_message(store, _message("5511900000001"), window_minutes=30) is None
    assert correlate_inbound_message(store, _message("5511900000001"), window_minutes=60) is not None


def test_concurrent_messages_never_share_a_click() -> None:
    store = InMemoryStore()
    _record_click(store, minutes_ago=3, tracking_id="wa_1_race00001")
    barrier = threading.Barrier(8)

    def worker(index: int):
        barrier.wait()
        return correlate_inbound_message(
            store, _message(f"55119000000{index:02d}"), window_minutes=30
        )

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(executor.map(worker, range(8)))

    winners = [result for result in results if result is not None]
    assert len(winners) == 1
    assert len(store.correlations) == 1


def test_lost_claim_retries_with_remaining_candidates(monkeypatch) -> None:
    store = InMemoryStore()
    stolen = _record_click(store, minutes_ago=1, tracking_id="wa_1_stolen001")
    remaining = _record_click(store, minutes_ago=6, tracking_id="wa_1_remain001")
    original_claim = store.claim_click
    calls: list[str] = []

    def racing_claim(*, click_id, message, method):
        calls.append(click_id)
        if len(calls) == 1:
            # another worker consumes the click between query and claim
            original_claim(click_id=click_id, message=_message("5511911111111"), method=method)
        return original_claim(click_id=click_id, message=message, method=method)

    monkeypatch.setattr(store, "claim_click", racing_claim)

    result = correlate_inbound_message(store, _message("5511900000001"), window_minutes=30)

    assert calls == [stolen.id, remaining.id]
    assert result is not None
    assert result.click_id == remaining.id
    assert result.correlation_method == CorrelationMethod.temporal_single


def test_storage_failure_skips_correlation_and_counts_it(monkeypatch, tmp_path) -> None:
    persistence = SqlitePersistence(f"sqlite:///{(tmp_path / 'attr.sqlite3').as_posix()}")
    store = InMemoryStore(persistence=persistence)
    click = _record_click(store, minutes_ago=2, tracking_id="wa_1_dbfail001")
    metrics = MetricsRegistry()

    def broken_claim(record):
        raise OperationalError("UPDATE click_events", {}, Exception("database is locked"))

    monkeypatch.setattr(persistence, "claim_click_and_insert_correlation", broken_claim)

    result = correlate_inbound_message(
        store, _message("5511900000001"), window_minutes=30, metrics=metrics
    )

    assert result is None
    assert store.get_click(click.id).matched_at_utc is None
    assert metrics.snapshot().correlations == {"skipped": 1}


def test_metrics_count_outcomes_by_method() -> None:
    store = InMemoryStore()
    metrics = MetricsRegistry()
    _record_click(store, minutes_ago=2, tracking_id="wa_1700000000000_metric001")

    correlate_inbound_message(
        store,
        _message("5511900000001", content="pedido wa_1700000000000_metric001"),
        window_minutes=30,
        metrics=metrics,
    )
    correlate_inbound_message(store, _message("5511900000002"), window_minutes=30, metrics=metrics)

    assert metrics.snapshot().correlations == {"explicit_token": 1, "miss": 1}
