from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable, List, Optional

from .config import SignalSettings
from .errors import IncompleteBundle
from .models import (
    Direction,
    MarketStructure,
    SignalRationale,
    SignalType,
    StructureKind,
    Timeframe,
    TimeframeBundle,
    TradingSignal,
)

log = logging.getLogger("decision")

STOP_KINDS = (StructureKind.ORDER_BLOCK, StructureKind.LIQUIDITY_POOL)


@dataclass(frozen=True)
class Decision:
    signal: Optional[TradingSignal]
    reason: str


def _best(items: Iterable[MarketStructure]) -> Optional[MarketStructure]:
    items = list(items)
    if not items:
        return None
    return max(items, key=lambda s: s.confidence)


def _describe(s: MarketStructure) -> str:
    return f"{s.kind.value} {s.direction.value} @ {s.price_level:g} (conf {s.confidence:.2f})"


def stop_level(
    side: SignalType,
    entry: float,
    bias: Direction,
    candidates: Iterable[MarketStructure],
    fallback_stop_pct: float,
) -> float:
    """Nearest aligned order block / liquidity pool on the risk side of entry."""
    levels = [
        s.price_level for s in candidates
        if s.kind in STOP_KINDS and s.direction == bias
    ]
    if side == SignalType.BUY:
        below = [p for p in levels if p < entry]
        if below:
            return max(below)
        return entry * (1.0 - fallback_stop_pct)
    above = [p for p in levels if p > entry]
    if above:
        return min(above)
    return entry * (1.0 + fallback_stop_pct)


def take_profit_level(side: SignalType, entry: float, stop: float, ratio: float) -> float:
    if side == SignalType.BUY:
        return entry + ratio * (entry - stop)
    return entry - ratio * (stop - entry)


def decide(bundle: TimeframeBundle, settings: SignalSettings) -> Decision:
    """Top-down confluence check: 4h bias, 15m action, 3m order block, 1m trigger.

    Pure function of its inputs. Raises IncompleteBundle when a timeframe is
    missing; every other "no trade" outcome is a Decision without a signal.
    """
    if not bundle.is_complete():
        raise IncompleteBundle(bundle.capture_id, bundle.missing())

    h4 = bundle.get(Timeframe.H4)
    bias = h4.trend_direction
    if bias == Direction.NEUTRAL:
        return Decision(None, "neutral_bias")
    side = SignalType.BUY if bias == Direction.BULLISH else SignalType.SELL

    h4_pick = _best(h4.aligned(bias))
    m15_pick = _best(bundle.get(Timeframe.M15).aligned(bias))
    if m15_pick is None:
        return Decision(None, "no_15m_confirmation")
    m3 = bundle.get(Timeframe.M3)
    m3_pick = _best(m3.aligned(bias, StructureKind.ORDER_BLOCK))
    if m3_pick is None:
        return Decision(None, "no_3m_order_block")
    m1 = bundle.get(Timeframe.M1)
    m1_pick = _best(m1.aligned(bias))
    if m1_pick is None:
        return Decision(None, "no_1m_trigger")

    # weakest link; a 4h trend read without an aligned structure adds no bound
    stages: List[MarketStructure] = [p for p in (h4_pick, m15_pick, m3_pick, m1_pick) if p is not None]
    confidence = min(s.confidence for s in stages)
    if confidence < settings.min_confidence_threshold:
        return Decision(None, f"confidence_below_threshold conf={confidence:.2f} min={settings.min_confidence_threshold:.2f}")

    entry = m1_pick.price_level
    if entry <= 0:
        return Decision(None, "non_positive_entry")

    stop = stop_level(side, entry, bias, list(m3.structures) + list(m1.structures), settings.fallback_stop_pct)
    ratio = float(settings.risk_reward_ratio)
    take_profit = take_profit_level(side, entry, stop, ratio)
    if take_profit <= 0:
        return Decision(None, "non_positive_take_profit")

    h4_text = f"4h trend {bias.value}"
    if h4_pick is not None:
        h4_text += f" via {_describe(h4_pick)}"

    signal = TradingSignal(
        signal_type=side,
        entry_price=entry,
        stop_loss=stop,
        take_profit=take_profit,
        risk_reward_ratio=ratio,
        confidence_score=confidence,
        rationale=SignalRationale(
            tf_4h_structure=h4_text,
            tf_15m_action=f"15m {_describe(m15_pick)}",
            tf_3m_orderblock=f"3m {_describe(m3_pick)}",
            tf_1m_entry=f"1m {_describe(m1_pick)}",
        ),
    )
    return Decision(signal, "confluence")


def log_decision(capture_id: str, decision: Decision) -> None:
    if decision.signal is None:
        log.info("no_signal capture=%s reason=%s", capture_id, decision.reason)
        return
    sig = decision.signal
    log.info(
        "signal capture=%s side=%s entry=%g sl=%g tp=%g rr=%g conf=%.2f",
        capture_id,
        sig.signal_type.value,
        sig.entry_price,
        sig.stop_loss,
        sig.take_profit,
        sig.risk_reward_ratio,
        sig.confidence_score,
    )


def evaluate(bundle: TimeframeBundle, settings: SignalSettings) -> Optional[TradingSignal]:
    decision = decide(bundle, settings)
    log_decision(bundle.capture_id, decision)
    return decision.signal
