from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

import aiohttp
import websockets

from ..errors import StoreError
from ..models import (
    KIND_FROM_WIRE,
    KIND_WIRE_NAMES,
    CaptureStatus,
    Coordinates,
    Direction,
    MarketStructure,
    SignalRationale,
    SignalStatus,
    SignalType,
    StoredStructure,
    Timeframe,
    TradingSignal,
)
from ..store import SignalStore

log = logging.getLogger("supabase")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).isoformat()


def _ms(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    s = str(value).replace("Z", "+00:00")
    # postgres may emit fewer than 6 fractional digits
    if "." in s:
        head, tail = s.split(".", 1)
        frac = ""
        rest = ""
        for i, ch in enumerate(tail):
            if not ch.isdigit():
                rest = tail[i:]
                break
            frac += ch
        s = f"{head}.{frac[:6].ljust(6, '0')}{rest}"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // timedelta(milliseconds=1)


def structure_to_row(user_id: str, capture_id: str, s: MarketStructure) -> Dict[str, Any]:
    c = s.coordinates
    return {
        "chart_capture_id": capture_id,
        "user_id": user_id,
        "timeframe": s.timeframe.value,
        "structure_type": KIND_WIRE_NAMES[s.kind],
        "direction": s.direction.value,
        "price_level": s.price_level,
        "confidence": s.confidence,
        "coordinates": {"x": c.x, "y": c.y, "width": c.width, "height": c.height},
    }


def structure_from_row(row: Dict[str, Any]) -> StoredStructure:
    coords = row.get("coordinates") or {}
    return StoredStructure(
        structure_id=str(row["id"]),
        user_id=str(row["user_id"]),
        capture_id=str(row["chart_capture_id"]),
        structure=MarketStructure(
            kind=KIND_FROM_WIRE[row["structure_type"]],
            direction=Direction(row["direction"]),
            price_level=float(row["price_level"]),
            confidence=float(row["confidence"]),
            timeframe=Timeframe(row["timeframe"]),
            coordinates=Coordinates(
                x=float(coords.get("x", 0)),
                y=float(coords.get("y", 0)),
                width=float(coords.get("width", 0)),
                height=float(coords.get("height", 0)),
            ),
        ),
        detected_at_ms=_ms(row.get("detected_at")) or 0,
    )


def signal_to_row(user_id: str, capture_id: Optional[str], sig: TradingSignal) -> Dict[str, Any]:
    return {
        "user_id": user_id,
        "chart_capture_id": capture_id,
        "signal_type": sig.signal_type.value,
        "entry_price": sig.entry_price,
        "stop_loss": sig.stop_loss,
        "take_profit": sig.take_profit,
        "risk_reward_ratio": sig.risk_reward_ratio,
        "confidence_score": sig.confidence_score,
        "timeframe_4h_structure": sig.rationale.tf_4h_structure,
        "timeframe_15m_action": sig.rationale.tf_15m_action,
        "timeframe_3m_orderblock": sig.rationale.tf_3m_orderblock,
        "timeframe_1m_entry": sig.rationale.tf_1m_entry,
        "status": sig.status.value,
        "alert_sent": sig.alert_sent,
    }


def signal_from_row(row: Dict[str, Any]) -> TradingSignal:
    return TradingSignal(
        signal_type=SignalType(row["signal_type"]),
        entry_price=float(row["entry_price"]),
        stop_loss=float(row["stop_loss"]),
        take_profit=float(row["take_profit"]),
        risk_reward_ratio=float(row["risk_reward_ratio"]),
        confidence_score=float(row["confidence_score"]),
        rationale=SignalRationale(
            tf_4h_structure=row.get("timeframe_4h_structure") or "",
            tf_15m_action=row.get("timeframe_15m_action") or "",
            tf_3m_orderblock=row.get("timeframe_3m_orderblock") or "",
            tf_1m_entry=row.get("timeframe_1m_entry") or "",
        ),
        status=SignalStatus(row.get("status") or "pending"),
        alert_sent=bool(row.get("alert_sent")),
        signal_id=str(row["id"]) if row.get("id") is not None else None,
        user_id=row.get("user_id"),
        capture_id=row.get("chart_capture_id"),
        created_at_ms=_ms(row.get("created_at")),
    )


def realtime_join_message(user_id: str, access_token: str, ref: str = "1") -> Dict[str, Any]:
    return {
        "topic": "realtime:signal_alerts",
        "event": "phx_join",
        "payload": {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [
                    {
                        "event": "INSERT",
                        "schema": "public",
                        "table": "trading_signals",
                        "filter": f"user_id=eq.{user_id}",
                    }
                ],
            },
            "access_token": access_token,
        },
        "ref": ref,
        "join_ref": ref,
    }


def record_from_realtime(msg: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Pull the inserted row out of a postgres_changes frame, if it is one."""
    if msg.get("event") != "postgres_changes":
        return None
    data = (msg.get("payload") or {}).get("data") or {}
    if data.get("type") not in (None, "INSERT"):
        return None
    record = data.get("record")
    return record if isinstance(record, dict) else None


class SupabaseSignalStore(SignalStore):
    """PostgREST-backed store with realtime INSERT notifications."""

    def __init__(
        self,
        url: str,
        key: str,
        *,
        schema: str = "public",
        timeout_s: int = 15,
        realtime: bool = True,
        ws_heartbeat_s: int = 30,
        max_retries: int = 3,
        backoff_s: float = 0.8,
    ):
        super().__init__()
        if not url or not key:
            raise ValueError("Supabase store requires url and key (SUPABASE_URL / SUPABASE_KEY).")
        self.url = url.rstrip("/")
        self.key = key
        self.schema = schema
        self.timeout_s = timeout_s
        self.realtime = realtime
        self.ws_heartbeat_s = ws_heartbeat_s
        self.max_retries = max(1, int(max_retries))
        self.backoff_s = backoff_s
        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self) -> None:
        """Close the shared aiohttp session (best-effort)."""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_s))
        return self._session

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
            "Content-Type": "application/json",
            "Accept-Profile": self.schema,
            "Content-Profile": self.schema,
            "Prefer": "return=representation",
        }

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[Dict[str, str]] = None,
        body: Any = None,
    ) -> List[Dict[str, Any]]:
        url = f"{self.url}/rest/v1/{table}"
        sess = await self._get_session()
        backoff = float(self.backoff_s)
        last_err: Optional[BaseException] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                async with sess.request(method, url, params=params, json=body, headers=self._headers()) as resp:
                    if resp.status == 429 or resp.status >= 500:
                        txt = await resp.text()
                        retry_after = resp.headers.get("Retry-After")
                        sleep_s = float(retry_after) if (retry_after and retry_after.isdigit()) else backoff
                        last_err = StoreError(f"supabase {method} {table} failed: {resp.status} {txt[:500]}")
                        log.warning(
                            "rest_retryable status=%s method=%s table=%s attempt=%d/%d sleep=%.1fs",
                            resp.status,
                            method,
                            table,
                            attempt,
                            self.max_retries,
                            sleep_s,
                        )
                        if attempt < self.max_retries:
                            await asyncio.sleep(sleep_s)
                            backoff = min(backoff * 2.0, 20.0)
                        continue

                    if resp.status >= 400:
                        txt = await resp.text()
                        raise StoreError(f"supabase {method} {table} failed: {resp.status} {txt[:500]}")
                    if resp.status == 204:
                        return []
                    data = await resp.json(content_type=None)
                return data if isinstance(data, list) else [data]
            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_err = e
                if attempt >= self.max_retries:
                    break
                log.warning(
                    "rest_timeout_or_client_err attempt=%d/%d table=%s backoff=%.1fs err=%s",
                    attempt,
                    self.max_retries,
                    table,
                    backoff,
                    e,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2.0, 20.0)
        if isinstance(last_err, StoreError):
            raise last_err
        raise StoreError(f"supabase {method} {table} failed: {last_err!r}")

    async def create_capture(self, user_id: str, capture_url: str, captured_at_ms: int) -> str:
        rows = await self._request("POST", "chart_captures", body={
            "user_id": user_id,
            "capture_url": capture_url,
            "capture_timestamp": _iso(captured_at_ms),
            "analysis_status": CaptureStatus.PENDING.value,
        })
        if not rows:
            raise StoreError("chart_captures insert returned no row")
        return str(rows[0]["id"])

    async def set_capture_status(self, capture_id: str, status: CaptureStatus) -> None:
        await self._request(
            "PATCH",
            "chart_captures",
            params={"id": f"eq.{capture_id}"},
            body={"analysis_status": status.value},
        )

    async def save_structures(self, user_id: str, capture_id: str, structures: Sequence[MarketStructure]) -> List[str]:
        if not structures:
            return []
        rows = await self._request(
            "POST",
            "market_structures",
            body=[structure_to_row(user_id, capture_id, s) for s in structures],
        )
        return [str(r["id"]) for r in rows]

    async def save_signal(self, user_id: str, capture_id: Optional[str], signal: TradingSignal) -> TradingSignal:
        rows = await self._request("POST", "trading_signals", body=signal_to_row(user_id, capture_id, signal))
        if not rows:
            raise StoreError("trading_signals insert returned no row")
        rec = signal_from_row(rows[0])
        if not self.realtime:
            await self._publish(rec)
        return rec

    async def get_signal(self, signal_id: str) -> Optional[TradingSignal]:
        rows = await self._request("GET", "trading_signals", params={"id": f"eq.{signal_id}", "select": "*", "limit": "1"})
        return signal_from_row(rows[0]) if rows else None

    async def mark_alert_sent(self, signal_id: str) -> bool:
        # filtered PATCH is the compare-and-set: only a false row is updated
        rows = await self._request(
            "PATCH",
            "trading_signals",
            params={"id": f"eq.{signal_id}", "alert_sent": "is.false"},
            body={"alert_sent": True},
        )
        return len(rows) == 1

    async def list_signals(
        self,
        user_id: str,
        *,
        statuses: Optional[Iterable[SignalStatus]] = None,
        since_ms: Optional[int] = None,
        unalerted_only: bool = False,
        limit: int = 50,
    ) -> List[TradingSignal]:
        params = {
            "select": "*",
            "user_id": f"eq.{user_id}",
            "order": "created_at.desc",
            "limit": str(int(limit)),
        }
        if statuses is not None:
            params["status"] = "in.(" + ",".join(s.value for s in statuses) + ")"
        if since_ms is not None:
            params["created_at"] = f"gte.{_iso(since_ms)}"
        if unalerted_only:
            params["alert_sent"] = "is.false"
        rows = await self._request("GET", "trading_signals", params=params)
        return [signal_from_row(r) for r in rows]

    async def list_structures(
        self,
        user_id: str,
        *,
        timeframe: Optional[Timeframe] = None,
        since_ms: Optional[int] = None,
        limit: int = 20,
    ) -> List[StoredStructure]:
        params = {
            "select": "*",
            "user_id": f"eq.{user_id}",
            "order": "detected_at.desc",
            "limit": str(int(limit)),
        }
        if timeframe is not None:
            params["timeframe"] = f"eq.{timeframe.value}"
        if since_ms is not None:
            params["detected_at"] = f"gte.{_iso(since_ms)}"
        rows = await self._request("GET", "market_structures", params=params)
        return [structure_from_row(r) for r in rows]

    async def get_settings(self, user_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._request(
            "GET",
            "user_settings",
            params={"select": "*", "user_id": f"eq.{user_id}", "limit": "1"},
        )
        return rows[0] if rows else None

    def _ws_url(self) -> str:
        base = self.url.replace("https://", "wss://").replace("http://", "ws://")
        return f"{base}/realtime/v1/websocket?apikey={self.key}&vsn=1.0.0"

    async def stream_new_signals(self, user_id: str) -> AsyncIterator[TradingSignal]:
        """Yields newly inserted signals for the user. Auto-reconnects."""
        backoff = 1
        while True:
            try:
                async with websockets.connect(self._ws_url(), close_timeout=5, max_queue=1000) as ws:
                    backoff = 1
                    await ws.send(json.dumps(realtime_join_message(user_id, self.key)))
                    log.info("realtime_subscribed user=%s", user_id)
                    hb = asyncio.create_task(self._heartbeat(ws))
                    try:
                        async for msg in ws:
                            try:
                                j = json.loads(msg)
                            except ValueError:
                                continue
                            record = record_from_realtime(j)
                            if record is None:
                                continue
                            try:
                                yield signal_from_row(record)
                            except (KeyError, ValueError) as e:
                                log.warning("realtime_bad_record err=%s", e)
                    finally:
                        hb.cancel()
                        with contextlib.suppress(asyncio.CancelledError, Exception):
                            await hb
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("realtime_error err=%s reconnect_in=%ss", e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 60)

    async def _heartbeat(self, ws) -> None:
        ref = 100
        while True:
            await asyncio.sleep(self.ws_heartbeat_s)
            ref += 1
            await ws.send(json.dumps({"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": str(ref)}))

    async def run_realtime(self, user_id: str) -> None:
        """Feed realtime inserts to the subscribed observers."""
        async for sig in self.stream_new_signals(user_id):
            await self._publish(sig)
