from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from backend.app.models import ClickEventRecord, ClickEventType, CorrelationMethod, InboundMessage
from backend.app.services.correlation import MalformedTimestampError, parse_timestamp
from backend.app.services.matching import match_click, mentions_tracking_id

RECEIVED_AT = datetime(2026, 3, 1, 12, 0, 0)
WINDOW = timedelta(minutes=30)


def _click(
    click_id: str,
    *,
    minutes_ago: float,
    tracking_id: str = "wa_1700000000000_abc123xyz",
    tenant_id: int = 1,
    **overrides,
) -> ClickEventRecord:
    data = {
        "id": click_id,
        "tenant_id": tenant_id,
        "tracking_id": tracking_id,
        "event_type": ClickEventType.whatsapp_click,
        "session_id": None,
        "utm_source": "instagram",
        "utm_medium": None,
        "utm_campaign": None,
        "utm_content": None,
        "utm_term": None,
        "landing_page": None,
        "page_url": None,
        "referrer": None,
        "user_agent": None,
        "ip_address": None,
        "phone": None,
        "session_duration": None,
        "clicked_at_utc": RECEIVED_AT - timedelta(minutes=minutes_ago),
    }
    data.update(overrides)
    return ClickEventRecord(**data)


def _message(content: str = "Oi, quero saber mais", tenant_id: int = 1) -> InboundMessage:
    return InboundMessage(
        tenant_id=tenant_id,
        phone_number="5511999990000",
        content=content,
        received_at_utc=RECEIVED_AT,
    )


def test_no_candidates_is_a_silent_miss() -> None:
    assert match_click([], _message(), window=WINDOW) is None


def test_single_candidate_in_window_is_temporal_single() -> None:
    match = match_click([_click("clk_1", minutes_ago=5)], _message(), window=WINDOW)

    assert match is not None
    assert match.click.id == "clk_1"
    assert match.method == CorrelationMethod.temporal_single
    assert match.elapsed_seconds == 300


def test_several_candidates_pick_most_recent() -> None:
    candidates = [
        _click("clk_old", minutes_ago=20, tracking_id="wa_1_old000"),
        _click("clk_new", minutes_ago=2, tracking_id="wa_1_new000"),
        _click("clk_mid", minutes_ago=10, tracking_id="wa_1_mid000"),
    ]
    match = match_click(candidates, _message(), window=WINDOW)

    assert match is not None
    assert match.click.id == "clk_new"
    assert match.method == CorrelationMethod.temporal_nearest


def test_equal_timestamps_break_ties_by_click_id() -> None:
    candidates = [_click("clk_a", minutes_ago=3), _click("clk_b", minutes_ago=3)]

    first = match_click(candidates, _message(), window=WINDOW)
    second = match_click(list(reversed(candidates)), _message(), window=WINDOW)

    assert first is not None and second is not None
    assert first.click.id == second.click.id == "clk_b"


def test_explicit_token_beats_recency() -> None:
    candidates = [
        _click("clk_old", minutes_ago=25, tracking_id="wa_1700000000000_target001"),
        _click("clk_new", minutes_ago=1, tracking_id="wa_1700000000999_other0001"),
    ]
    message = _message("Vim pelo anuncio wa_1700000000000_target001 (Origem: instagram)")

    match = match_click(candidates, message, window=WINDOW)

    assert match is not None
    assert match.click.id == "clk_old"
    assert match.method == CorrelationMethod.explicit_token


def test_unknown_token_falls_back_to_temporal() -> None:
    candidates = [_click("clk_1", minutes_ago=4)]
    message = _message("codigo wa_1234567890123_unknown99")

    match = match_click(candidates, message, window=WINDOW)

    assert match is not None
    assert match.method == CorrelationMethod.temporal_single


def test_window_edges_are_inclusive_and_outside_is_ignored() -> None:
    edge = _click("clk_edge", minutes_ago=30)
    outside = _click("clk_outside", minutes_ago=30.5)

    assert match_click([outside], _message(), window=WINDOW) is None
    match = match_click([edge, outside], _message(), window=WINDOW)
    assert match is not None
    assert match.click.id == "clk_edge"
    assert match.method == CorrelationMethod.temporal_single


def test_clicks_after_message_are_not_candidates() -> None:
    future = _click("clk_future", minutes_ago=-1)
    assert match_click([future], _message(), window=WINDOW) is None


def test_ineligible_clicks_are_filtered() -> None:
    candidates = [
        _click("clk_other_tenant", minutes_ago=1, tenant_id=2),
        _click("clk_converted", minutes_ago=1, converted=True),
        _click("clk_matched", minutes_ago=1, matched_at_utc=RECEIVED_AT),
        _click("clk_page_view", minutes_ago=1, event_type=ClickEventType.page_view),
    ]
    assert match_click(candidates, _message(), window=WINDOW) is None


def test_tracking_id_is_found_in_query_style_text() -> None:
    text = "link?wa=wa_1700000000000_k3j4h5g6f&tenant=1"
    assert mentions_tracking_id(text, "wa_1700000000000_k3j4h5g6f")
    assert not mentions_tracking_id(None, "wa_1700000000000_k3j4h5g6f")


@pytest.mark.parametrize(
    "content",
    [
        "Oi! wa_1700000000000_abc123xyz-obrigado",
        "Codigo:wa_1700000000000_abc123xyz.",
        "(wa_1700000000000_abc123xyz)",
    ],
)
def test_tracking_id_next_to_punctuation_is_explicit(content) -> None:
    candidates = [
        _click("clk_token", minutes_ago=20),
        _click("clk_recent", minutes_ago=1, tracking_id="wa_1700000000999_other0001"),
    ]
    match = match_click(candidates, _message(content), window=WINDOW)
    assert match is not None
    assert match.click.id == "clk_token"
    assert match.method == CorrelationMethod.explicit_token


def test_short_custom_tracking_id_is_explicit() -> None:
    candidates = [
        _click("clk_custom", minutes_ago=20, tracking_id="bio7"),
        _click("clk_recent", minutes_ago=1, tracking_id="wa_1700000000999_other0001"),
    ]
    match = match_click(candidates, _message("Vim do link bio7, tem estoque?"), window=WINDOW)
    assert match is not None
    assert match.click.id == "clk_custom"
    assert match.method == CorrelationMethod.explicit_token


def test_tracking_id_inside_a_longer_word_is_not_explicit() -> None:
    candidates = [
        _click("clk_custom", minutes_ago=20, tracking_id="promo"),
        _click("clk_recent", minutes_ago=1, tracking_id="wa_1700000000999_other0001"),
    ]
    message = _message("Tem promocao hoje? wa_1700000000999_other00012")

    match = match_click(candidates, message, window=WINDOW)
    assert match is not None
    assert match.click.id == "clk_recent"
    assert match.method == CorrelationMethod.temporal_nearest


def test_parse_timestamp_accepts_epoch_iso_and_datetime() -> None:
    expected = datetime(2023, 11, 14, 22, 13, 20)

    assert parse_timestamp(1700000000) == expected
    assert parse_timestamp("1700000000") == expected
    assert parse_timestamp(1700000000000) == expected
    assert parse_timestamp("2023-11-14T22:13:20Z") == expected
    assert parse_timestamp("2023-11-14T19:13:20-03:00") == expected
    assert parse_timestamp(datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)) == expected


def test_parse_timestamp_defaults_to_now_when_missing() -> None:
    before = datetime.now(timezone.utc).replace(tzinfo=None)
    parsed = parse_timestamp(None)
    assert parsed.tzinfo is None
    assert parsed >= before


@pytest.mark.parametrize(
    "value",
    [
        "yesterday",
        "2023-13-45T99:00:00",
        True,
        ["1700000000"],
        "0001-01-01T00:00:00+01:00",
        "9999-12-31T23:59:59-01:00",
    ],
)
def test_parse_timestamp_rejects_malformed_values(value) -> None:
    with pytest.raises(MalformedTimestampError):
        parse_timestamp(value)
