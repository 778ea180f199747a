from __future__ import annotations

import json
import logging
from typing import Any, Dict

import aiohttp

from ..models import TradingSignal

log = logging.getLogger("webhook")


def format_price(x: float) -> str:
    """Format like '#.########' then strip trailing zeros/dot."""
    s = f"{x:.8f}"
    s = s.rstrip("0").rstrip(".")
    return s or "0"


def signal_payload(sig: TradingSignal, secret: str = "") -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "signal_id": sig.signal_id,
        "signal_type": sig.signal_type.value,
        "entry_price": float(format_price(sig.entry_price)),
        "stop_loss": float(format_price(sig.stop_loss)),
        "take_profit": float(format_price(sig.take_profit)),
        "risk_reward_ratio": sig.risk_reward_ratio,
        "confidence_score": round(sig.confidence_score, 4),
        "status": sig.status.value,
        "timeframe_4h_structure": sig.rationale.tf_4h_structure,
        "timeframe_15m_action": sig.rationale.tf_15m_action,
        "timeframe_3m_orderblock": sig.rationale.tf_3m_orderblock,
        "timeframe_1m_entry": sig.rationale.tf_1m_entry,
    }
    if sig.capture_id:
        payload["chart_capture_id"] = sig.capture_id
    if sig.created_at_ms is not None:
        payload["created_at_ms"] = int(sig.created_at_ms)
    if secret:
        payload["secret"] = secret
    return payload


class WebhookNotifier:
    def __init__(self, *, enabled: bool, url: str, secret: str, timeout_s: int, headers: dict):
        self._enabled = bool(enabled)
        self.url = url or ""
        self.secret = secret or ""
        self.timeout_s = int(timeout_s) if timeout_s is not None else 10
        self.headers = headers or {}

    def enabled(self) -> bool:
        return self._enabled and bool(self.url)

    async def send_signal(self, sig: TradingSignal) -> None:
        if not self.enabled():
            return
        payload = json.dumps(signal_payload(sig, self.secret), separators=(",", ":"))
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_s)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, data=payload, headers={"Content-Type": "application/json", **self.headers}) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        log.warning("webhook_bad_status status=%s body=%s", resp.status, text[:200])
        except Exception as e:
            # Log but do not crash
            log.warning("webhook_post_failed err=%s", e)
