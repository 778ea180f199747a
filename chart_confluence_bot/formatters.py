from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import Optional

from .models import SignalType, TradingSignal


def _fmt_ms(ts_ms: int, tz=timezone.utc) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).astimezone(tz)
    return dt.strftime("%Y-%m-%d %H:%M")


def _escape_markdown_v2(text: str) -> str:
    specials = r"\_*[]()~`>#+-=|{}.!"
    escaped = []
    for ch in str(text):
        if ch in specials:
            escaped.append("\\" + ch)
        else:
            escaped.append(ch)
    return "".join(escaped)


def _escape_text(text: str, parse_mode: str) -> str:
    if parse_mode == "MARKDOWNV2":
        return _escape_markdown_v2(text)
    return html.escape(str(text), quote=False)


def _bold(text: str, parse_mode: str) -> str:
    escaped = _escape_text(text, parse_mode)
    if parse_mode == "MARKDOWNV2":
        return f"*{escaped}*"
    return f"<b>{escaped}</b>"


def _fmt_price(val: Optional[float]) -> str:
    if val is None:
        return "-"
    return f"{val:,.2f}" if abs(val) >= 100 else f"{val:g}"


def signal_headline(signal: TradingSignal) -> str:
    """Short one-line summary, e.g. ``BUY Signal at $102.00``."""
    return f"{signal.signal_type.value.upper()} Signal at ${signal.entry_price:.2f}"


def format_signal(signal: TradingSignal, cfg, *, app_name: str = "") -> str:
    """Format a signal for Telegram alerts (HTML or MarkdownV2)."""
    parse_mode = (getattr(cfg, "parse_mode", "HTML") or "HTML").upper()
    arrow = "▲" if signal.signal_type == SignalType.BUY else "▼"

    lines = []
    if app_name:
        lines.append(_escape_text(app_name, parse_mode))
    lines.append(f"{arrow} {_bold(signal_headline(signal), parse_mode)}")
    lines.append(_escape_text(f"Confidence: {signal.confidence_score * 100:.0f}%", parse_mode))
    if signal.created_at_ms is not None:
        lines.append(_escape_text(f"Time (UTC): {_fmt_ms(signal.created_at_ms)}", parse_mode))
    lines.append("")
    lines.append(_escape_text(f"Entry: {_fmt_price(signal.entry_price)}", parse_mode))
    lines.append(_escape_text(
        f"Stop Loss: {_fmt_price(signal.stop_loss)} (risk {_fmt_price(signal.risk())})",
        parse_mode,
    ))
    lines.append(_escape_text(
        f"Take Profit: {_fmt_price(signal.take_profit)} (reward {_fmt_price(signal.reward())})",
        parse_mode,
    ))
    lines.append(_escape_text(f"R:R 1:{signal.risk_reward_ratio:g}", parse_mode))

    if getattr(cfg, "include_rationale", True):
        r = signal.rationale
        parts = [r.tf_4h_structure, r.tf_15m_action, r.tf_3m_orderblock, r.tf_1m_entry]
        parts = [p for p in parts if p]
        if parts:
            lines.append("")
            lines.append(_bold("Confluence", parse_mode))
            for p in parts:
                lines.append(_escape_text(f"- {p}", parse_mode))

    footer = (getattr(cfg, "footer", "") or "").strip()
    if footer:
        lines.append("")
        lines.append(_escape_text(footer, parse_mode))

    return "\n".join(lines)
