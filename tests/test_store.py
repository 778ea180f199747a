import asyncio

import pytest

from chart_confluence_bot.errors import StoreError
from chart_confluence_bot.models import (
    CaptureStatus,
    Direction,
    MarketStructure,
    SignalRationale,
    SignalStatus,
    SignalType,
    StructureKind,
    Timeframe,
    TradingSignal,
)
from chart_confluence_bot.store import InMemorySignalStore


def _sig(entry: float) -> TradingSignal:
    return TradingSignal(
        signal_type=SignalType.SELL,
        entry_price=entry,
        stop_loss=entry + 1.0,
        take_profit=entry - 5.0,
        risk_reward_ratio=5.0,
        confidence_score=0.8,
        rationale=SignalRationale(tf_4h_structure="4h trend bearish"),
    )


def test_saved_signal_gets_identity_and_defaults():
    async def _run():
        store = InMemorySignalStore()
        return await store.save_signal("u1", "cap", _sig(50.0))

    rec = asyncio.run(_run())
    assert rec.signal_id
    assert rec.user_id == "u1"
    assert rec.capture_id == "cap"
    assert rec.created_at_ms is not None
    assert rec.status == SignalStatus.PENDING
    assert rec.alert_sent is False


def test_list_signals_newest_first_and_filtered():
    async def _run():
        store = InMemorySignalStore()
        a = await store.save_signal("u1", "c1", _sig(50.0))
        b = await store.save_signal("u1", "c2", _sig(51.0))
        await store.save_signal("u2", "c3", _sig(52.0))
        await store.mark_alert_sent(a.signal_id)
        everything = await store.list_signals("u1")
        unalerted = await store.list_signals("u1", unalerted_only=True)
        finished = await store.list_signals("u1", statuses=[SignalStatus.TRIGGERED])
        limited = await store.list_signals("u1", limit=1)
        future = await store.list_signals("u1", since_ms=b.created_at_ms + 60_000)
        return a, b, everything, unalerted, finished, limited, future

    a, b, everything, unalerted, finished, limited, future = asyncio.run(_run())
    assert [s.signal_id for s in everything] == [b.signal_id, a.signal_id]
    assert [s.signal_id for s in unalerted] == [b.signal_id]
    assert finished == []
    assert [s.signal_id for s in limited] == [b.signal_id]
    assert future == []


def test_structures_by_timeframe():
    s4h = MarketStructure(StructureKind.BREAK_OF_STRUCTURE, Direction.BULLISH, 10.0, 0.85, Timeframe.H4)
    s1m = MarketStructure(StructureKind.ORDER_BLOCK, Direction.BEARISH, 9.0, 0.75, Timeframe.M1)

    async def _run():
        store = InMemorySignalStore()
        ids = await store.save_structures("u1", "cap", [s4h, s1m])
        only_4h = await store.list_structures("u1", timeframe=Timeframe.H4)
        other_user = await store.list_structures("u2")
        return ids, only_4h, other_user

    ids, only_4h, other_user = asyncio.run(_run())
    assert len(ids) == 2
    assert [r.structure for r in only_4h] == [s4h]
    assert only_4h[0].capture_id == "cap"
    assert other_user == []


def test_capture_status_and_settings():
    async def _run():
        store = InMemorySignalStore()
        cid = await store.create_capture("u1", "file:///tmp/caps", 1_000)
        await store.set_capture_status(cid, CaptureStatus.COMPLETED)
        store.put_settings("u1", {"risk_reward_ratio": 3.0})
        return store, cid, await store.get_settings("u1"), await store.get_settings("nobody")

    store, cid, settings, missing = asyncio.run(_run())
    assert store.captures[cid]["analysis_status"] == CaptureStatus.COMPLETED
    assert settings == {"risk_reward_ratio": 3.0}
    assert missing is None


def test_mark_unknown_signal_raises():
    with pytest.raises(StoreError):
        asyncio.run(InMemorySignalStore().mark_alert_sent("nope"))


def test_unsubscribe_stops_notifications():
    seen = []

    async def observer(sig):
        seen.append(sig.signal_id)

    async def _run():
        store = InMemorySignalStore()
        unsubscribe = store.subscribe(observer)
        first = await store.save_signal("u1", "c", _sig(1.0))
        unsubscribe()
        await store.save_signal("u1", "c", _sig(2.0))
        return first

    first = asyncio.run(_run())
    assert seen == [first.signal_id]
