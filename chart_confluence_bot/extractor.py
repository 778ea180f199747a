from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple

from .models import (
    Direction,
    MarketStructure,
    StructureKind,
    Timeframe,
    TimeframeAnalysis,
)

log = logging.getLogger("extractor")


@dataclass(frozen=True)
class StructureRule:
    kind: StructureKind
    keywords: Pattern[str]
    confidence: float
    # every pattern here must also be present on the line
    requires: Tuple[Pattern[str], ...] = ()

    def matches(self, line: str) -> bool:
        if not self.keywords.search(line):
            return False
        return all(p.search(line) for p in self.requires)


def _rx(pattern: str) -> Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


# Evaluated in order; one structure per rule per line at most.
STRUCTURE_RULES: Tuple[StructureRule, ...] = (
    StructureRule(StructureKind.CHANGE_OF_CHARACTER, _rx(r"\bchoch\b|change of character"), 0.80),
    StructureRule(StructureKind.BREAK_OF_STRUCTURE, _rx(r"\bbos\b|break of structure"), 0.85),
    StructureRule(StructureKind.ORDER_BLOCK, _rx(r"order block"), 0.75),
    StructureRule(StructureKind.LIQUIDITY_POOL, _rx(r"liquidity|\bpools?\b"), 0.70),
    StructureRule(StructureKind.POINT_OF_INTEREST, _rx(r"\bpoi\b|point of interest"), 0.80),
    StructureRule(StructureKind.FIB_50, _rx(r"\bfib"), 0.75, requires=(_rx(r"50|0\.5"),)),
)

# Strongest wording first; a tier decides only when exactly one side is present.
DIRECTION_TIERS: Tuple[Tuple[Pattern[str], Pattern[str]], ...] = (
    (_rx(r"bullish"), _rx(r"bearish")),
    (_rx(r"demand"), _rx(r"supply")),
    (_rx(r"above"), _rx(r"below")),
)

_TREND_UP = _rx(r"\b(?:uptrend|up-trend|higher highs|higher lows|bullish)\b")
_TREND_DOWN = _rx(r"\b(?:downtrend|down-trend|lower highs|lower lows|bearish)\b")

# Optional currency symbol, optional thousands separators. Tokens glued to
# letters or % ("15m", "4h", "50%", "0.5%") are not prices; the trailing guard
# stops backtracking into a shorter prefix of such a token.
_PRICE_RE = re.compile(
    r"(?<![\w.,])([$€£¥])?\s?(\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)(?![\w%]|[.,]\d)"
)


def extract_price(line: str) -> Optional[float]:
    m = _PRICE_RE.search(line)
    if not m:
        return None
    raw = m.group(2).replace(",", "")
    try:
        return float(raw)
    except ValueError:
        return None


def infer_direction(line: str) -> Direction:
    for bull, bear in DIRECTION_TIERS:
        is_bull = bool(bull.search(line))
        is_bear = bool(bear.search(line))
        if is_bull and not is_bear:
            return Direction.BULLISH
        if is_bear and not is_bull:
            return Direction.BEARISH
    return Direction.NEUTRAL


def extract_structures(
    text: str,
    timeframe: Timeframe,
    rules: Sequence[StructureRule] = STRUCTURE_RULES,
) -> List[MarketStructure]:
    """Scan analysis text line by line and emit one structure per matching rule.

    Best effort: lines without a parseable price are skipped, and text with no
    recognised keyword yields an empty list.
    """
    out: List[MarketStructure] = []
    if not text:
        return out

    for lineno, line in enumerate(str(text).splitlines(), start=1):
        matched = [r for r in rules if r.matches(line)]
        if not matched:
            continue
        price = extract_price(line)
        if price is None:
            log.debug(
                "line_skipped tf=%s line=%d kinds=%s reason=no_price",
                timeframe.value,
                lineno,
                ",".join(r.kind.value for r in matched),
            )
            continue
        direction = infer_direction(line)
        for rule in matched:
            out.append(MarketStructure(
                kind=rule.kind,
                direction=direction,
                price_level=price,
                confidence=rule.confidence,
                timeframe=timeframe,
            ))
    return out


def infer_trend(text: str, structures: Iterable[MarketStructure]) -> Direction:
    """Confidence-weighted vote of directional structures, trend wording as tiebreak."""
    bull = 0.0
    bear = 0.0
    for s in structures:
        if s.direction == Direction.BULLISH:
            bull += s.confidence
        elif s.direction == Direction.BEARISH:
            bear += s.confidence
    if bull > bear:
        return Direction.BULLISH
    if bear > bull:
        return Direction.BEARISH

    ups = len(_TREND_UP.findall(text or ""))
    downs = len(_TREND_DOWN.findall(text or ""))
    if ups > downs:
        return Direction.BULLISH
    if downs > ups:
        return Direction.BEARISH
    return Direction.NEUTRAL


def key_levels(structures: Iterable[MarketStructure]) -> List[float]:
    return sorted({s.price_level for s in structures})


def build_analysis(text: str, timeframe: Timeframe) -> TimeframeAnalysis:
    structures = extract_structures(text, timeframe)
    trend = infer_trend(text, structures)
    log.info(
        "analysis_parsed tf=%s structures=%d trend=%s",
        timeframe.value,
        len(structures),
        trend.value,
    )
    return TimeframeAnalysis(
        timeframe=timeframe,
        analysis=text or "",
        structures=tuple(structures),
        trend_direction=trend,
        key_levels=tuple(key_levels(structures)),
    )
