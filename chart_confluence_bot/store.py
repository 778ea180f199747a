from __future__ import annotations

import asyncio
from dataclasses import replace
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from .errors import StoreError
from .models import (
    CaptureStatus,
    MarketStructure,
    SignalStatus,
    StoredStructure,
    Timeframe,
    TradingSignal,
)

log = logging.getLogger("store")

SignalObserver = Callable[[TradingSignal], Awaitable[None]]


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


class SignalStore:
    """Persistence contract for structures, signals and per-user settings.

    Records are append-only apart from ``alert_sent``, which only moves
    false -> true through ``mark_alert_sent``.
    """

    def __init__(self) -> None:
        self._observers: List[SignalObserver] = []

    def subscribe(self, observer: SignalObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    async def _publish(self, signal: TradingSignal) -> None:
        for obs in list(self._observers):
            try:
                await obs(signal)
            except Exception as e:
                log.exception("observer_failed signal_id=%s err=%s", signal.signal_id, e)

    async def create_capture(self, user_id: str, capture_url: str, captured_at_ms: int) -> str:
        raise NotImplementedError

    async def set_capture_status(self, capture_id: str, status: CaptureStatus) -> None:
        raise NotImplementedError

    async def save_structures(self, user_id: str, capture_id: str, structures: Sequence[MarketStructure]) -> List[str]:
        raise NotImplementedError

    async def save_signal(self, user_id: str, capture_id: Optional[str], signal: TradingSignal) -> TradingSignal:
        raise NotImplementedError

    async def get_signal(self, signal_id: str) -> Optional[TradingSignal]:
        raise NotImplementedError

    async def mark_alert_sent(self, signal_id: str) -> bool:
        """Compare-and-set alert_sent false -> true. True only for the caller that flipped it."""
        raise NotImplementedError

    async def list_signals(
        self,
        user_id: str,
        *,
        statuses: Optional[Iterable[SignalStatus]] = None,
        since_ms: Optional[int] = None,
        unalerted_only: bool = False,
        limit: int = 50,
    ) -> List[TradingSignal]:
        raise NotImplementedError

    async def list_structures(
        self,
        user_id: str,
        *,
        timeframe: Optional[Timeframe] = None,
        since_ms: Optional[int] = None,
        limit: int = 20,
    ) -> List[StoredStructure]:
        raise NotImplementedError

    async def get_settings(self, user_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemorySignalStore(SignalStore):
    def __init__(self) -> None:
        super().__init__()
        self._lock = asyncio.Lock()
        self._signals: Dict[str, TradingSignal] = {}
        self._structures: List[StoredStructure] = []
        self._settings: Dict[str, Dict[str, Any]] = {}
        self.captures: Dict[str, Dict[str, Any]] = {}

    async def create_capture(self, user_id: str, capture_url: str, captured_at_ms: int) -> str:
        cid = new_id()
        self.captures[cid] = {
            "user_id": user_id,
            "capture_url": capture_url,
            "capture_timestamp_ms": captured_at_ms,
            "analysis_status": CaptureStatus.PENDING,
        }
        return cid

    async def set_capture_status(self, capture_id: str, status: CaptureStatus) -> None:
        row = self.captures.get(capture_id)
        if row is None:
            raise StoreError(f"unknown capture {capture_id}")
        row["analysis_status"] = status

    def put_settings(self, user_id: str, settings: Dict[str, Any]) -> None:
        self._settings[user_id] = dict(settings)

    async def get_settings(self, user_id: str) -> Optional[Dict[str, Any]]:
        row = self._settings.get(user_id)
        return dict(row) if row is not None else None

    async def save_structures(self, user_id: str, capture_id: str, structures: Sequence[MarketStructure]) -> List[str]:
        ids: List[str] = []
        ts = now_ms()
        async with self._lock:
            for s in structures:
                sid = new_id()
                self._structures.append(StoredStructure(
                    structure_id=sid,
                    user_id=user_id,
                    capture_id=capture_id,
                    structure=s,
                    detected_at_ms=ts,
                ))
                ids.append(sid)
        return ids

    async def save_signal(self, user_id: str, capture_id: Optional[str], signal: TradingSignal) -> TradingSignal:
        rec = signal.with_record(signal_id=new_id(), user_id=user_id, capture_id=capture_id, created_at_ms=now_ms())
        async with self._lock:
            self._signals[rec.signal_id] = rec
        await self._publish(rec)
        return rec

    async def get_signal(self, signal_id: str) -> Optional[TradingSignal]:
        return self._signals.get(signal_id)

    async def mark_alert_sent(self, signal_id: str) -> bool:
        async with self._lock:
            rec = self._signals.get(signal_id)
            if rec is None:
                raise StoreError(f"unknown signal {signal_id}")
            if rec.alert_sent:
                return False
            self._signals[signal_id] = replace(rec, alert_sent=True)
            return True

    async def list_signals(
        self,
        user_id: str,
        *,
        statuses: Optional[Iterable[SignalStatus]] = None,
        since_ms: Optional[int] = None,
        unalerted_only: bool = False,
        limit: int = 50,
    ) -> List[TradingSignal]:
        wanted = set(statuses) if statuses is not None else None
        rows = [
            s for s in self._signals.values()
            if s.user_id == user_id
            and (wanted is None or s.status in wanted)
            and (since_ms is None or (s.created_at_ms or 0) >= since_ms)
            and (not unalerted_only or not s.alert_sent)
        ]
        # dict keeps insertion order, so ties on created_at resolve newest-insert first
        rows = list(reversed(rows))
        rows.sort(key=lambda s: s.created_at_ms or 0, reverse=True)
        return rows[: max(0, int(limit))]

    async def list_structures(
        self,
        user_id: str,
        *,
        timeframe: Optional[Timeframe] = None,
        since_ms: Optional[int] = None,
        limit: int = 20,
    ) -> List[StoredStructure]:
        rows = [
            r for r in self._structures
            if r.user_id == user_id
            and (timeframe is None or r.structure.timeframe == timeframe)
            and (since_ms is None or r.detected_at_ms >= since_ms)
        ]
        rows = list(reversed(rows))
        rows.sort(key=lambda r: r.detected_at_ms, reverse=True)
        return rows[: max(0, int(limit))]
