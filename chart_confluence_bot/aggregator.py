from __future__ import annotations

from collections import OrderedDict
import logging
from typing import Dict, List, Optional

from .errors import BundleSealed, IncompleteBundle
from .models import REQUIRED_TIMEFRAMES, Timeframe, TimeframeAnalysis, TimeframeBundle

log = logging.getLogger("aggregator")


class TimeframeAggregator:
    """Collects one analysis per timeframe for a single capture cycle."""

    def __init__(self, capture_id: str):
        self.capture_id = capture_id
        self._analyses: Dict[Timeframe, TimeframeAnalysis] = {}
        self._sealed = False

    @property
    def sealed(self) -> bool:
        return self._sealed

    def add(self, analysis: TimeframeAnalysis) -> None:
        if self._sealed:
            raise BundleSealed(f"capture {self.capture_id} already delivered; start a new capture")
        if analysis.timeframe in self._analyses:
            log.info("analysis_replaced capture=%s tf=%s", self.capture_id, analysis.timeframe.value)
        self._analyses[analysis.timeframe] = analysis

    def missing(self) -> List[Timeframe]:
        return [tf for tf in REQUIRED_TIMEFRAMES if tf not in self._analyses]

    def is_complete(self) -> bool:
        return not self.missing()

    def to_bundle(self) -> TimeframeBundle:
        missing = self.missing()
        if missing:
            raise IncompleteBundle(self.capture_id, missing)
        self._sealed = True
        return TimeframeBundle(
            capture_id=self.capture_id,
            analyses={tf: self._analyses[tf] for tf in REQUIRED_TIMEFRAMES},
        )


class AggregatorPool:
    """Aggregators keyed by capture id. Abandoned cycles are evicted oldest first."""

    def __init__(self, max_open: int = 500):
        self.max_open = max(1, int(max_open))
        self._open: "OrderedDict[str, TimeframeAggregator]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._open)

    def __contains__(self, capture_id: str) -> bool:
        return capture_id in self._open

    def get(self, capture_id: str) -> TimeframeAggregator:
        agg = self._open.get(capture_id)
        if agg is None:
            agg = TimeframeAggregator(capture_id)
            self._open[capture_id] = agg
            # cap to avoid unbounded growth
            while len(self._open) > self.max_open:
                old_id, old = self._open.popitem(last=False)
                log.info("capture_evicted capture=%s missing=%s", old_id, [tf.value for tf in old.missing()])
        return agg

    def discard(self, capture_id: str) -> Optional[TimeframeAggregator]:
        return self._open.pop(capture_id, None)
