from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from .aggregator import AggregatorPool
from .capture import DirectoryCaptureSource
from .config import Config, SignalSettings
from .decision import decide, log_decision
from .errors import StoreError
from .extractor import build_analysis
from .gate import AlertDispatcher, AlertGate, SignalPoller
from .models import CaptureStatus, Timeframe, TimeframeAnalysis, TradingSignal
from .notifier.telegram import TelegramNotifier
from .notifier.webhook import WebhookNotifier
from .providers.openai_vision import OpenAIVisionAnalyzer
from .providers.supabase import SupabaseSignalStore
from .store import InMemorySignalStore, SignalStore, now_ms

log = logging.getLogger("runner")


@dataclass
class CycleResult:
    capture_id: str
    signal: Optional[TradingSignal] = None
    reason: str = ""
    missing: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


class CaptureCycleRunner:
    """One capture cycle: vision per timeframe -> structures -> bundle -> decision -> persist."""

    def __init__(
        self,
        analyzer,
        store: SignalStore,
        defaults: SignalSettings,
        *,
        instructions: Sequence[str] = (),
        concurrency: int = 4,
        pool: Optional[AggregatorPool] = None,
    ):
        self.analyzer = analyzer
        self.store = store
        self.defaults = defaults
        self.instructions = list(instructions)
        self.concurrency = max(1, int(concurrency))
        self.pool = pool or AggregatorPool()

    async def settings_for(self, user_id: str) -> SignalSettings:
        try:
            row = await self.store.get_settings(user_id)
        except StoreError as e:
            log.warning("settings_load_failed user=%s err=%s using=defaults", user_id, e)
            return self.defaults
        try:
            return self.defaults.merged(row)
        except ValueError as e:
            log.warning("settings_invalid user=%s err=%s using=defaults", user_id, e)
            return self.defaults

    async def _set_status(self, capture_id: str, status: CaptureStatus) -> None:
        try:
            await self.store.set_capture_status(capture_id, status)
        except StoreError as e:
            log.warning("capture_status_failed capture=%s status=%s err=%s", capture_id, status.value, e)

    async def _analyze_all(self, images: Dict[Timeframe, str]) -> List[Tuple[Timeframe, Optional[TimeframeAnalysis], Optional[str]]]:
        sem = asyncio.Semaphore(self.concurrency)

        async def _one(tf: Timeframe, image_b64: str):
            try:
                async with sem:
                    text = await self.analyzer.analyze(image_b64, tf, self.instructions)
            except Exception as e:
                return (tf, None, repr(e))
            return (tf, build_analysis(text, tf), None)

        return await asyncio.gather(*[_one(tf, img) for tf, img in images.items()])

    async def run_cycle(self, user_id: str, images: Dict[Timeframe, str], *, capture_url: str = "") -> CycleResult:
        capture_id = await self.store.create_capture(user_id, capture_url, now_ms())
        agg = self.pool.get(capture_id)
        result = CycleResult(capture_id=capture_id)
        await self._set_status(capture_id, CaptureStatus.ANALYZING)
        log.info("cycle_start capture=%s user=%s timeframes=%s", capture_id, user_id, [tf.value for tf in images])

        for tf, analysis, err in await self._analyze_all(images):
            if analysis is None:
                # no analysis for this timeframe; never substitute a neutral one
                result.failed[tf.value] = err or "unknown"
                log.warning("vision_failed capture=%s tf=%s err=%s", capture_id, tf.value, err)
                continue
            agg.add(analysis)
            try:
                await self.store.save_structures(user_id, capture_id, analysis.structures)
            except StoreError as e:
                log.warning("structures_save_failed capture=%s tf=%s err=%s", capture_id, tf.value, e)

        if not agg.is_complete():
            result.missing = [tf.value for tf in agg.missing()]
            result.reason = "incomplete_bundle"
            log.warning("cycle_stalled capture=%s missing=%s", capture_id, result.missing)
            self.pool.discard(capture_id)
            await self._set_status(capture_id, CaptureStatus.FAILED)
            return result

        bundle = agg.to_bundle()
        self.pool.discard(capture_id)
        settings = await self.settings_for(user_id)
        decision = decide(bundle, settings)
        log_decision(capture_id, decision)
        result.reason = decision.reason

        if decision.signal is not None:
            result.signal = await self.store.save_signal(user_id, capture_id, decision.signal)
        await self._set_status(capture_id, CaptureStatus.COMPLETED)
        return result


def build_store(cfg: Config) -> SignalStore:
    kind = (cfg.store.type or "memory").strip().lower()
    if kind == "memory":
        return InMemorySignalStore()
    if kind == "supabase":
        return SupabaseSignalStore(
            cfg.store.url,
            cfg.store.key,
            schema=cfg.store.schema,
            timeout_s=cfg.store.timeout_s,
            realtime=cfg.store.realtime,
            ws_heartbeat_s=cfg.store.ws_heartbeat_s,
        )
    raise ValueError(f"Unsupported store type: {cfg.store.type}")


class AlertRunner:
    def __init__(self, cfg: Config, *, user_id: Optional[str] = None, store: Optional[SignalStore] = None, analyzer=None):
        self.cfg = cfg
        self.user_id = user_id or cfg.capture.user_id
        self.store = store or build_store(cfg)
        self.analyzer = analyzer or OpenAIVisionAnalyzer(
            cfg.vision.api_key,
            base_url=cfg.vision.base_url,
            model=cfg.vision.model,
            max_tokens=cfg.vision.max_tokens,
            timeout_s=cfg.vision.timeout_s,
            max_retries=cfg.vision.max_retries,
            backoff_s=cfg.vision.backoff_s,
        )
        self.capture = DirectoryCaptureSource(cfg.capture.directory)

        self.tg = TelegramNotifier(
            token=cfg.telegram.token if cfg.telegram.enabled else "",
            chat_ids=cfg.telegram.chat_ids,
            alerts_cfg=cfg.alerts,
            app_name=cfg.app.name,
            disable_web_page_preview=cfg.telegram.disable_web_page_preview,
        )
        self.webhook = WebhookNotifier(
            enabled=cfg.webhook.enabled,
            url=cfg.webhook.url,
            secret=cfg.webhook.secret,
            timeout_s=cfg.webhook.timeout_s,
            headers=cfg.webhook.headers or {},
        )
        self.gate = AlertGate(self.store)
        self.dispatcher = AlertDispatcher(self.gate, [self.webhook, self.tg])
        self.store.subscribe(self.dispatcher)
        self.poller = SignalPoller(
            self.store,
            self.dispatcher,
            self.user_id,
            interval_s=cfg.store.poll_interval_s,
            lookback_s=cfg.store.poll_lookback_s,
        )
        self.cycles = CaptureCycleRunner(
            self.analyzer,
            self.store,
            cfg.signal,
            instructions=cfg.vision.rules or [],
            concurrency=cfg.vision.concurrency,
        )
        self._inflight: set = set()

    async def run_once(self) -> Optional[CycleResult]:
        frames = self.capture.read()
        if not frames:
            log.warning("capture_empty dir=%s", self.cfg.capture.directory)
            return None
        images = {tf: fr.image_b64 for tf, fr in frames.items()}
        res = await self.cycles.run_cycle(self.user_id, images, capture_url=self.capture.url())
        if res.signal is not None:
            # realtime stores publish out of band; sweep so --once still announces
            await self.poller.poll_once()
        return res

    async def _safe_cycle(self) -> None:
        try:
            await self.run_once()
        except Exception as e:
            log.warning("cycle_failed user=%s err=%s", self.user_id, e)

    async def run_forever(self) -> None:
        bg = [asyncio.create_task(self.poller.run_forever())]
        if isinstance(self.store, SupabaseSignalStore) and self.cfg.store.realtime:
            bg.append(asyncio.create_task(self.store.run_realtime(self.user_id)))
        try:
            while True:
                # cycles are independent and may overlap
                task = asyncio.create_task(self._safe_cycle())
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
                settings = await self.cycles.settings_for(self.user_id)
                await asyncio.sleep(settings.capture_interval_seconds)
        finally:
            for t in bg + list(self._inflight):
                t.cancel()

    async def close(self) -> None:
        for closer in (getattr(self.analyzer, "close", None), self.store.close):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:
                log.warning("close_failed err=%s", e)
