import asyncio

import pytest

from signal_tracker.alerts import AlertDispatcher
from signal_tracker.config import default_config
from signal_tracker.errors import ProviderUnavailable
from signal_tracker.evaluator import apply_tick
from signal_tracker.formatters import format_event
from signal_tracker.models import PriceObservation, new_signal
from signal_tracker.notifier.telegram import MAX_MESSAGE_LEN, clip_message
from signal_tracker.notifier.webhook import event_payload
from signal_tracker.providers.mexc import parse_fair_price, to_contract_symbol


def _ticked():
    s = new_signal(
        direction="LONG",
        pair="BTC/USDT",
        targets=[10, 12],
        stop_loss=8,
        entry_min=9,
        entry_max=9.5,
        channel_name="Alpha <VIP>",
        signal_id="s9",
        created_at_ms=0,
    )
    apply_tick(s, PriceObservation(price=10.0, observed_at_ms=1_700_000_000_000))
    return s


def test_format_event_html_escapes_and_summarizes():
    s = _ticked()
    cfg = default_config().alerts
    text = format_event(s, s.updates[-1], cfg)
    assert "<b>TARGET REACHED</b>" in text
    assert "Alpha &lt;VIP&gt;" in text
    assert "TP1 reached at price 10" in text
    assert "Reached: 1/2" in text
    assert "Score: 0.3" in text


def test_format_event_markdown_v2():
    s = _ticked()
    cfg = default_config().alerts
    cfg.parse_mode = "MarkdownV2"
    text = format_event(s, s.updates[-1], cfg)
    assert "\\|" in text
    assert "BTC/USDT LONG" in text


def test_webhook_payload():
    s = _ticked()
    payload = event_payload(s, s.updates[-1], secret="k")
    assert payload["event"] == "TP_REACHED"
    assert payload["score"] == 0.3
    assert payload["secret"] == "k"


def test_dispatcher_disabled_by_default():
    async def _run():
        s = _ticked()
        alerts = AlertDispatcher(default_config())
        assert not alerts.enabled()
        assert await alerts.dispatch(s, s.updates) == 0

    asyncio.run(_run())


def test_dispatcher_filters_by_event_type():
    cfg = default_config()
    cfg.alerts.notify_tp = False
    alerts = AlertDispatcher(cfg)
    s = _ticked()
    assert not alerts.wants(s.updates[-1])


def test_mexc_symbol_and_payload_parsing():
    assert to_contract_symbol("btc/usdt") == "BTC_USDT"
    assert to_contract_symbol("ETH-USDT") == "ETH_USDT"
    ok = {"success": True, "code": 0, "data": {"symbol": "BTC_USDT", "fairPrice": 87216.7}}
    assert parse_fair_price("BTC/USDT", ok) == 87216.7
    for bad in ({"success": False}, {"success": True, "data": {}}, {"success": True, "data": {"fairPrice": 0}}, []):
        with pytest.raises(ProviderUnavailable):
            parse_fair_price("BTC/USDT", bad)


def test_telegram_clip_message():
    assert clip_message("short") == "short"
    clipped = clip_message("x" * (MAX_MESSAGE_LEN + 50))
    assert len(clipped) == MAX_MESSAGE_LEN
    assert clipped.endswith("…")
