from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from ..errors import VisionServiceError
from ..models import Timeframe

log = logging.getLogger("vision")

SYSTEM_PROMPT = """You are an expert trading chart analyst specializing in market structure analysis.
Analyze the chart and identify:
- CHOCH (Change of Character): When price breaks previous structure creating new highs/lows
- BOS (Break of Structure): Strong directional moves breaking key levels
- Order Blocks: Areas where institutions placed large orders (demand/supply zones)
- Liquidity: Areas with stop loss clusters (liquidity pools)
- POI (Points of Interest): Key decision points where price might react
- Fibonacci 50: Mid-point retracement levels

Write one structure per line. Each line must name the structure, say whether it is
bullish or bearish, and give its price level as a plain number.
State the overall trend (uptrend, downtrend or ranging) on its own line."""


def build_messages(image_b64: str, timeframe: Timeframe, instructions: Sequence[str] = ()) -> List[Dict[str, Any]]:
    system = SYSTEM_PROMPT
    rules = [r.strip() for r in instructions if r and r.strip()]
    if rules:
        system += "\n\nTrading Rules:\n" + "\n".join(rules)
    return [
        {"role": "system", "content": system},
        {
            "role": "user",
            "content": [
                {
                    "type": "text",
                    "text": (
                        f"Analyze this {timeframe.value} trading chart. Identify all market structures, "
                        "trend direction, and key price levels."
                    ),
                },
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:image/png;base64,{image_b64}"},
                },
            ],
        },
    ]


class OpenAIVisionAnalyzer:
    """Chat-completions client returning the model's free-text chart analysis."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o",
        max_tokens: int = 2000,
        timeout_s: int = 60,
        max_retries: int = 3,
        backoff_s: float = 1.0,
    ):
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.max_tokens = int(max_tokens)
        self.timeout_s = timeout_s
        self.max_retries = max(1, int(max_retries))
        self.backoff_s = float(backoff_s)

        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self) -> None:
        """Close the shared aiohttp session (best-effort)."""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.timeout_s,
            connect=min(10, self.timeout_s),
            sock_connect=min(10, self.timeout_s),
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout())
        return self._session

    async def analyze(self, image_b64: str, timeframe: Timeframe, instructions: Sequence[str] = ()) -> str:
        if not self.api_key:
            raise VisionServiceError("OpenAI API key is not configured")

        url = f"{self.base_url}/chat/completions"
        body = {
            "model": self.model,
            "messages": build_messages(image_b64, timeframe, instructions),
            "max_tokens": self.max_tokens,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        sess = await self._get_session()

        backoff = self.backoff_s
        last_err: Optional[BaseException] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                async with sess.post(url, json=body, headers=headers) as resp:
                    if resp.status == 429 or resp.status >= 500:
                        txt = await resp.text()
                        retry_after = resp.headers.get("Retry-After")
                        sleep_s = float(retry_after) if (retry_after and retry_after.isdigit()) else backoff
                        last_err = VisionServiceError(f"OpenAI API error: {resp.status} {txt[:300]}")
                        log.warning(
                            "vision_retryable status=%s tf=%s attempt=%d/%d sleep=%.1fs",
                            resp.status,
                            timeframe.value,
                            attempt,
                            self.max_retries,
                            sleep_s,
                        )
                        if attempt < self.max_retries:
                            await asyncio.sleep(sleep_s)
                            backoff = min(backoff * 2.0, 30.0)
                        continue

                    if resp.status != 200:
                        txt = await resp.text()
                        raise VisionServiceError(f"OpenAI API error: {resp.status} {txt[:500]}")

                    data = await resp.json(content_type=None)

                last_err = None
                break

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_err = e
                if attempt >= self.max_retries:
                    break
                log.warning(
                    "vision_timeout_or_client_err attempt=%d/%d tf=%s backoff=%.1fs err=%s",
                    attempt,
                    self.max_retries,
                    timeframe.value,
                    backoff,
                    e,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2.0, 30.0)

        if last_err is not None:
            if isinstance(last_err, VisionServiceError):
                raise last_err
            raise VisionServiceError(f"OpenAI request failed: {last_err!r}") from last_err

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise VisionServiceError(f"Unexpected OpenAI response shape: {str(data)[:300]}") from e
        return content or ""
