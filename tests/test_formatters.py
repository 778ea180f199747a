from chart_confluence_bot.config import AlertsConfig
from chart_confluence_bot.formatters import format_signal, signal_headline
from chart_confluence_bot.models import SignalRationale, SignalType, TradingSignal
from chart_confluence_bot.notifier.webhook import format_price, signal_payload


def _signal(**kw):
    base = dict(
        signal_type=SignalType.BUY,
        entry_price=102.0,
        stop_loss=100.0,
        take_profit=112.0,
        risk_reward_ratio=5.0,
        confidence_score=0.8,
        rationale=SignalRationale(
            "4h bullish BOS at 105 (80%)",
            "15m bullish CHOCH at 103 (85%)",
            "",
            "1m bullish BOS at 102 (80%)",
        ),
        signal_id="sig-1",
        capture_id="cap-1",
        created_at_ms=1760616171000,
    )
    base.update(kw)
    return TradingSignal(**base)


def test_headline():
    assert signal_headline(_signal()) == "BUY Signal at $102.00"
    assert signal_headline(_signal(signal_type=SignalType.SELL, entry_price=1.08985)) == "SELL Signal at $1.09"


def test_html_message_lists_levels_and_confluence():
    text = format_signal(_signal(), AlertsConfig(footer="not advice"), app_name="Bot <1>")
    lines = text.split("\n")
    assert lines[0] == "Bot &lt;1&gt;"
    assert lines[1] == "▲ <b>BUY Signal at $102.00</b>"
    assert "Confidence: 80%" in lines
    assert "Time (UTC): 2025-10-16 12:02" in lines
    assert "Stop Loss: 100.00 (risk 2)" in lines
    assert "Take Profit: 112.00 (reward 10)" in lines
    assert "R:R 1:5" in lines
    assert "<b>Confluence</b>" in lines
    # empty rationale parts are dropped
    assert sum(1 for ln in lines if ln.startswith("- ")) == 3
    assert lines[-1] == "not advice"


def test_markdown_v2_escapes_specials():
    cfg = AlertsConfig(parse_mode="MarkdownV2", include_rationale=False)
    text = format_signal(_signal(signal_type=SignalType.SELL), cfg)
    assert "▼ *SELL Signal at $102\\.00*" in text
    assert "Entry: 102\\.00" in text
    assert "Confluence" not in text


def test_webhook_payload():
    payload = signal_payload(_signal(entry_price=1.089800001), secret="s3")
    assert payload["signal_type"] == "buy"
    assert payload["entry_price"] == 1.0898
    assert payload["status"] == "pending"
    assert payload["chart_capture_id"] == "cap-1"
    assert payload["created_at_ms"] == 1760616171000
    assert payload["secret"] == "s3"
    assert "secret" not in signal_payload(_signal())
    assert format_price(100.0) == "100"
