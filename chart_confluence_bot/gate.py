from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence

from .errors import StoreError
from .models import SignalStatus, TradingSignal
from .store import SignalStore, now_ms

log = logging.getLogger("gate")


class AlertGate:
    """Single authority on whether a signal has been announced."""

    def __init__(self, store: SignalStore):
        self.store = store

    async def try_acquire(self, signal_id: str) -> bool:
        try:
            won = await self.store.mark_alert_sent(signal_id)
        except StoreError as e:
            # not flipped; the poller will offer it again
            log.warning("alert_gate_store_failed signal_id=%s err=%s", signal_id, e)
            return False
        if not won:
            log.info("alert_gate_duplicate signal_id=%s", signal_id)
        return won


class AlertDispatcher:
    """New-record observer: runs the gate, then fans out to notifiers."""

    def __init__(self, gate: AlertGate, notifiers: Sequence[object]):
        self.gate = gate
        self.notifiers = list(notifiers)
        self.sent_total = 0
        self.duplicate_total = 0

    async def __call__(self, signal: TradingSignal) -> None:
        await self.dispatch(signal)

    async def dispatch(self, signal: TradingSignal) -> bool:
        if not signal.signal_id:
            log.warning("dispatch_skipped reason=unsaved_signal")
            return False
        if signal.alert_sent:
            self.duplicate_total += 1
            return False
        if not await self.gate.try_acquire(signal.signal_id):
            self.duplicate_total += 1
            return False

        self.sent_total += 1
        latency_ms = now_ms() - int(signal.created_at_ms or now_ms())
        log.info(
            "alert %s entry=%g sl=%g tp=%g conf=%.2f signal_id=%s latency_ms=%d sent_total=%d duplicate_total=%d",
            signal.signal_type.value,
            signal.entry_price,
            signal.stop_loss,
            signal.take_profit,
            signal.confidence_score,
            signal.signal_id,
            latency_ms,
            self.sent_total,
            self.duplicate_total,
        )
        for notifier in self.notifiers:
            if not notifier.enabled():
                continue
            try:
                await notifier.send_signal(signal)
            except Exception as e:
                log.warning("notifier_failed notifier=%s signal_id=%s err=%s", type(notifier).__name__, signal.signal_id, e)
        return True


class SignalPoller:
    """Polling refresh path: re-offers recent un-alerted signals to the dispatcher."""

    ACTIVE_STATUSES = (SignalStatus.PENDING, SignalStatus.ACTIVE)

    def __init__(
        self,
        store: SignalStore,
        dispatcher: AlertDispatcher,
        user_id: str,
        *,
        interval_s: float = 30.0,
        lookback_s: float = 3600.0,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.user_id = user_id
        self.interval_s = max(1.0, float(interval_s))
        self.lookback_s = max(0.0, float(lookback_s))

    async def poll_once(self) -> int:
        since: Optional[int] = now_ms() - int(self.lookback_s * 1000) if self.lookback_s else None
        rows: List[TradingSignal] = await self.store.list_signals(
            self.user_id,
            statuses=self.ACTIVE_STATUSES,
            since_ms=since,
            unalerted_only=True,
        )
        sent = 0
        # oldest first so alerts go out in creation order
        for sig in reversed(rows):
            if await self.dispatcher.dispatch(sig):
                sent += 1
        return sent

    async def run_forever(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                log.warning("poll_failed user=%s err=%s", self.user_id, e)
            await asyncio.sleep(self.interval_s)
