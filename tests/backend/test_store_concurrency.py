from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from backend.app.models import UtmData
from backend.app.store import InMemoryStore


def test_click_write_and_read_concurrent() -> None:
    store = InMemoryStore()
    link = store.create_link(
        tenant_id=1, base_url="https://loja.example.com", tracking_base_url="http://t"
    )
    today = link.created_at_utc.date()
    read_errors: list[Exception] = []

    def writer(index: int) -> None:
        store.record_click(
            tenant_id=1,
            tracking_id=link.tracking_id,
            utm=UtmData(utm_source="instagram"),
            session_id=f"sess_{index}",
            page_url="https://loja.example.com",
            referrer=None,
            user_agent="concurrency-test",
            ip_address="127.0.0.1",
            dedup_window_seconds=10,
        )

    def reader() -> None:
        for _ in range(300):
            try:
                store.list_clicks(tenant_id=1, limit=100)
                store.tracking_stats(tenant_id=1, date_from=today, date_to=today)
            except Exception as exc:  # pragma: no cover - regression trap
                read_errors.append(exc)

    with ThreadPoolExecutor(max_workers=10) as executor:
        futures = [executor.submit(writer, i) for i in range(300)]
        futures.extend(executor.submit(reader) for _ in range(4))
        for future in futures:
            future.result()

    assert not read_errors
    assert store.resolve_link(link.tracking_id).clicks_count == 300


def test_concurrent_duplicate_clicks_count_once() -> None:
    store = InMemoryStore()
    link = store.create_link(
        tenant_id=1, base_url="https://loja.example.com", tracking_base_url="http://t"
    )

    def writer(_: int) -> bool:
        _, deduplicated = store.record_click(
            tenant_id=1,
            tracking_id=link.tracking_id,
            utm=UtmData(),
            session_id="sess_same",
            page_url=None,
            referrer=None,
            user_agent=None,
            ip_address=None,
            dedup_window_seconds=10,
        )
        return deduplicated

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(executor.map(writer, range(20)))

    assert results.count(False) == 1
    assert store.resolve_link(link.tracking_id).clicks_count == 1
