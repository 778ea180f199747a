import asyncio

from chart_confluence_bot.config import SignalSettings, config_from_dict
from chart_confluence_bot.errors import VisionServiceError
from chart_confluence_bot.gate import AlertDispatcher, AlertGate
from chart_confluence_bot.models import CaptureStatus, REQUIRED_TIMEFRAMES, SignalType, Timeframe
from chart_confluence_bot.runner import AlertRunner, CaptureCycleRunner
from chart_confluence_bot.store import InMemorySignalStore, now_ms

TEXTS = {
    Timeframe.H4: "Overall uptrend.\nBullish BOS confirmed at 1.0950\nLiquidity resting below 1.0820",
    Timeframe.M15: "Bullish CHOCH at 1.0905 after the sweep",
    Timeframe.M3: "Bullish order block (demand) at 1.0890",
    Timeframe.M1: "Bullish BOS on the 1m at 1.0898, entry trigger",
}


class FakeAnalyzer:
    def __init__(self, texts, fail=()):
        self.texts = texts
        self.fail = set(fail)
        self.calls = []

    async def analyze(self, image_b64, timeframe, instructions=()):
        self.calls.append((timeframe, list(instructions)))
        await asyncio.sleep(0)
        if timeframe in self.fail:
            raise VisionServiceError("OpenAI API error: 503")
        return self.texts[timeframe]


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def enabled(self):
        return True

    async def send_signal(self, signal):
        self.sent.append(signal)


IMAGES = {tf: "aW1n" for tf in REQUIRED_TIMEFRAMES}


def test_full_cycle_persists_and_alerts_once():
    async def _run():
        store = InMemorySignalStore()
        notifier = RecordingNotifier()
        store.subscribe(AlertDispatcher(AlertGate(store), [notifier]))
        analyzer = FakeAnalyzer(TEXTS)
        runner = CaptureCycleRunner(analyzer, store, SignalSettings(), instructions=["rule A"])
        res = await runner.run_cycle("u1", IMAGES, capture_url="file:///caps")
        structures = await store.list_structures("u1", limit=100)
        stored = await store.get_signal(res.signal.signal_id)
        return res, store, notifier, analyzer, structures, stored

    res, store, notifier, analyzer, structures, stored = asyncio.run(_run())
    assert res.reason == "confluence"
    assert res.signal.signal_type == SignalType.BUY
    assert res.signal.entry_price == 1.0898
    assert res.signal.stop_loss == 1.089
    assert res.signal.capture_id == res.capture_id
    assert [s.signal_id for s in notifier.sent] == [res.signal.signal_id]
    assert stored.alert_sent is True
    assert len(structures) == 5
    assert store.captures[res.capture_id]["analysis_status"] == CaptureStatus.COMPLETED
    assert all(instr == ["rule A"] for _, instr in analyzer.calls)


def test_vision_failure_stalls_the_cycle():
    async def _run():
        store = InMemorySignalStore()
        notifier = RecordingNotifier()
        store.subscribe(AlertDispatcher(AlertGate(store), [notifier]))
        runner = CaptureCycleRunner(FakeAnalyzer(TEXTS, fail=[Timeframe.M3]), store, SignalSettings())
        res = await runner.run_cycle("u1", IMAGES)
        return res, store, notifier, runner

    res, store, notifier, runner = asyncio.run(_run())
    assert res.signal is None
    assert res.reason == "incomplete_bundle"
    assert res.missing == ["3m"]
    assert "3m" in res.failed
    assert notifier.sent == []
    assert store.captures[res.capture_id]["analysis_status"] == CaptureStatus.FAILED
    assert res.capture_id not in runner.pool


def test_user_settings_are_read_per_cycle():
    async def _run():
        store = InMemorySignalStore()
        store.put_settings("u1", {"min_confidence_threshold": 0.8})
        runner = CaptureCycleRunner(FakeAnalyzer(TEXTS), store, SignalSettings())
        strict = await runner.run_cycle("u1", IMAGES)
        store.put_settings("u1", {"min_confidence_threshold": 0.75, "risk_reward_ratio": 2.0})
        relaxed = await runner.run_cycle("u1", IMAGES)
        return strict, relaxed

    strict, relaxed = asyncio.run(_run())
    assert strict.signal is None
    assert strict.reason.startswith("confidence_below_threshold")
    assert relaxed.signal.risk_reward_ratio == 2.0
    assert strict.capture_id != relaxed.capture_id


def test_alert_runner_run_once_reads_capture_directory(tmp_path):
    for tf in REQUIRED_TIMEFRAMES:
        (tmp_path / f"{tf.value}.png").write_bytes(b"\x89PNG fake")
    cfg = config_from_dict({
        "capture": {"directory": str(tmp_path), "user_id": "u1"},
        "telegram": {"enabled": False},
    })
    store = InMemorySignalStore()
    runner = AlertRunner(cfg, store=store, analyzer=FakeAnalyzer(TEXTS))

    async def _run():
        res = await runner.run_once()
        return res, await store.list_signals("u1")

    res, signals = asyncio.run(_run())
    assert res.signal is not None
    assert [s.signal_id for s in signals] == [res.signal.signal_id]
    assert signals[0].alert_sent is True
    assert runner.dispatcher.sent_total == 1


def test_alert_runner_with_empty_directory(tmp_path):
    cfg = config_from_dict({"capture": {"directory": str(tmp_path)}, "telegram": {"enabled": False}})
    runner = AlertRunner(cfg, store=InMemorySignalStore(), analyzer=FakeAnalyzer(TEXTS))
    assert asyncio.run(runner.run_once()) is None


class OutOfBandStore(InMemorySignalStore):
    """Saves without notifying observers, like a store whose inserts arrive over realtime."""

    async def save_signal(self, user_id, capture_id, signal):
        rec = signal.with_record(signal_id=f"sig-{len(self._signals) + 1}", user_id=user_id, capture_id=capture_id, created_at_ms=now_ms())
        async with self._lock:
            self._signals[rec.signal_id] = rec
        return rec


def test_run_once_announces_when_store_publishes_out_of_band(tmp_path):
    for tf in REQUIRED_TIMEFRAMES:
        (tmp_path / f"{tf.value}.png").write_bytes(b"\x89PNG fake")
    cfg = config_from_dict({
        "capture": {"directory": str(tmp_path), "user_id": "u1"},
        "telegram": {"enabled": False},
    })
    store = OutOfBandStore()
    runner = AlertRunner(cfg, store=store, analyzer=FakeAnalyzer(TEXTS))

    async def _run():
        res = await runner.run_once()
        again = await runner.poller.poll_once()
        return res, await store.get_signal(res.signal.signal_id), again

    res, stored, again = asyncio.run(_run())
    assert res.signal.signal_id == "sig-1"
    assert stored.alert_sent is True
    assert runner.dispatcher.sent_total == 1
    assert again == 0
