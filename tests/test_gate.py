import asyncio

from chart_confluence_bot.errors import StoreError
from chart_confluence_bot.gate import AlertDispatcher, AlertGate, SignalPoller
from chart_confluence_bot.models import SignalRationale, SignalType, TradingSignal
from chart_confluence_bot.store import InMemorySignalStore


def _sig(entry: float = 102.0) -> TradingSignal:
    return TradingSignal(
        signal_type=SignalType.BUY,
        entry_price=entry,
        stop_loss=entry - 2.0,
        take_profit=entry + 10.0,
        risk_reward_ratio=5.0,
        confidence_score=0.8,
        rationale=SignalRationale(),
    )


class RecordingNotifier:
    def __init__(self, enabled: bool = True):
        self._enabled = enabled
        self.sent = []

    def enabled(self) -> bool:
        return self._enabled

    async def send_signal(self, signal: TradingSignal) -> None:
        # yield so concurrent dispatches interleave
        await asyncio.sleep(0)
        self.sent.append(signal.signal_id)


class FailingNotifier(RecordingNotifier):
    async def send_signal(self, signal: TradingSignal) -> None:
        raise RuntimeError("boom")


def test_concurrent_gate_calls_win_exactly_once():
    async def _run():
        store = InMemorySignalStore()
        rec = await store.save_signal("u1", "cap", _sig())
        gate = AlertGate(store)
        results = await asyncio.gather(*[gate.try_acquire(rec.signal_id) for _ in range(2)])
        return results, await store.get_signal(rec.signal_id)

    results, stored = asyncio.run(_run())
    assert sorted(results) == [False, True]
    assert stored.alert_sent is True


def test_gate_many_concurrent_callers():
    async def _run():
        store = InMemorySignalStore()
        rec = await store.save_signal("u1", "cap", _sig())
        gate = AlertGate(store)
        return await asyncio.gather(*[gate.try_acquire(rec.signal_id) for _ in range(25)])

    results = asyncio.run(_run())
    assert results.count(True) == 1


def test_gate_unknown_signal_does_not_alert():
    gate = AlertGate(InMemorySignalStore())
    assert asyncio.run(gate.try_acquire("missing")) is False


def test_dispatcher_notifies_once_under_duplicate_delivery():
    async def _run():
        store = InMemorySignalStore()
        notifier = RecordingNotifier()
        muted = RecordingNotifier(enabled=False)
        dispatcher = AlertDispatcher(AlertGate(store), [notifier, muted])
        store.subscribe(dispatcher)
        rec = await store.save_signal("u1", "cap", _sig())
        # realtime redelivery and a polling refresh racing on the same record
        await asyncio.gather(dispatcher(rec), dispatcher(rec))
        return rec, notifier, muted, dispatcher

    rec, notifier, muted, dispatcher = asyncio.run(_run())
    assert notifier.sent == [rec.signal_id]
    assert muted.sent == []
    assert dispatcher.sent_total == 1
    assert dispatcher.duplicate_total == 2


def test_notifier_failure_does_not_block_others():
    async def _run():
        store = InMemorySignalStore()
        good = RecordingNotifier()
        dispatcher = AlertDispatcher(AlertGate(store), [FailingNotifier(), good])
        store.subscribe(dispatcher)
        rec = await store.save_signal("u1", "cap", _sig())
        return rec, good

    rec, good = asyncio.run(_run())
    assert good.sent == [rec.signal_id]


def test_unsaved_or_already_alerted_signal_is_skipped():
    async def _run():
        store = InMemorySignalStore()
        notifier = RecordingNotifier()
        dispatcher = AlertDispatcher(AlertGate(store), [notifier])
        a = await dispatcher.dispatch(_sig())
        rec = await store.save_signal("u1", "cap", _sig())
        await store.mark_alert_sent(rec.signal_id)
        b = await dispatcher.dispatch(await store.get_signal(rec.signal_id))
        return a, b, notifier

    a, b, notifier = asyncio.run(_run())
    assert a is False and b is False
    assert notifier.sent == []


def test_poller_picks_up_unalerted_signals_in_creation_order():
    async def _run():
        store = InMemorySignalStore()
        # saved before anyone subscribed, e.g. while the realtime channel was down
        first = await store.save_signal("u1", "cap1", _sig(100.0))
        second = await store.save_signal("u1", "cap2", _sig(101.0))
        await store.save_signal("u2", "cap3", _sig(102.0))
        notifier = RecordingNotifier()
        dispatcher = AlertDispatcher(AlertGate(store), [notifier])
        poller = SignalPoller(store, dispatcher, "u1", lookback_s=0)
        sent_first = await poller.poll_once()
        sent_again = await poller.poll_once()
        return first, second, notifier, sent_first, sent_again

    first, second, notifier, sent_first, sent_again = asyncio.run(_run())
    assert sent_first == 2
    assert sent_again == 0
    assert set(notifier.sent) == {first.signal_id, second.signal_id}


class BrokenStore(InMemorySignalStore):
    async def mark_alert_sent(self, signal_id: str) -> bool:
        raise StoreError("connection reset")


def test_store_failure_fails_closed():
    assert asyncio.run(AlertGate(BrokenStore()).try_acquire("any")) is False
