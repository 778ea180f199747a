from __future__ import annotations

import aiohttp
from typing import List, Optional
import logging

from ..formatters import format_signal
from ..models import TradingSignal

log = logging.getLogger("telegram")


class TelegramNotifier:
    def __init__(
        self,
        token: str,
        chat_ids: List[str],
        *,
        alerts_cfg=None,
        app_name: str = "",
        disable_web_page_preview: bool = True,
    ):
        self.token = (token or "").strip()
        self.chat_ids = [str(x).strip() for x in (chat_ids or []) if str(x).strip()]
        self.alerts_cfg = alerts_cfg
        self.app_name = app_name
        self.disable_web_page_preview = disable_web_page_preview

    def enabled(self) -> bool:
        return bool(self.token) and bool(self.chat_ids)

    def _parse_mode(self) -> str:
        mode = (getattr(self.alerts_cfg, "parse_mode", "HTML") or "HTML")
        return "MarkdownV2" if mode.upper() == "MARKDOWNV2" else "HTML"

    async def send_signal(self, signal: TradingSignal) -> None:
        text = format_signal(signal, self.alerts_cfg, app_name=self.app_name)
        await self.send(text, parse_mode=self._parse_mode())

    async def send(self, text: str, *, parse_mode: Optional[str] = None) -> None:
        if not self.enabled():
            return
        url = f"https://api.telegram.org/bot{self.token}/sendMessage"
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=15)) as sess:
            for chat_id in self.chat_ids:
                payload = {
                    "chat_id": chat_id,
                    "text": text,
                    "disable_web_page_preview": self.disable_web_page_preview,
                }
                if parse_mode:
                    payload["parse_mode"] = parse_mode
                try:
                    async with sess.post(url, json=payload) as resp:
                        if resp.status != 200:
                            body = await resp.text()
                            log.warning("telegram_send_failed chat_id=%s status=%s body=%s", chat_id, resp.status, body[:2000])
                except Exception as e:
                    log.exception("telegram_send_exception chat_id=%s err=%s", chat_id, e)
