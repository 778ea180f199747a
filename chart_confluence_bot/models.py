from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple


class StructureKind(str, Enum):
    CHANGE_OF_CHARACTER = "change_of_character"
    BREAK_OF_STRUCTURE = "break_of_structure"
    ORDER_BLOCK = "order_block"
    LIQUIDITY_POOL = "liquidity_pool"
    POINT_OF_INTEREST = "point_of_interest"
    FIB_50 = "fib_50"


# Storage names used by the market_structures table.
KIND_WIRE_NAMES: Dict[StructureKind, str] = {
    StructureKind.CHANGE_OF_CHARACTER: "choch",
    StructureKind.BREAK_OF_STRUCTURE: "bos",
    StructureKind.ORDER_BLOCK: "order_block",
    StructureKind.LIQUIDITY_POOL: "liquidity",
    StructureKind.POINT_OF_INTEREST: "poi",
    StructureKind.FIB_50: "fib_50",
}
KIND_FROM_WIRE: Dict[str, StructureKind] = {v: k for k, v in KIND_WIRE_NAMES.items()}


class Direction(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class Timeframe(str, Enum):
    H4 = "4h"
    M15 = "15m"
    M3 = "3m"
    M1 = "1m"


# Top-down order: bias, market action, entry zone, trigger.
REQUIRED_TIMEFRAMES: Tuple[Timeframe, ...] = (Timeframe.H4, Timeframe.M15, Timeframe.M3, Timeframe.M1)


class SignalType(str, Enum):
    BUY = "buy"
    SELL = "sell"


class SignalStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    TRIGGERED = "triggered"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class CaptureStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Coordinates:
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0


@dataclass(frozen=True)
class MarketStructure:
    kind: StructureKind
    direction: Direction
    price_level: float
    confidence: float
    timeframe: Timeframe
    coordinates: Coordinates = field(default_factory=Coordinates)


@dataclass(frozen=True)
class TimeframeAnalysis:
    timeframe: Timeframe
    analysis: str
    structures: Tuple[MarketStructure, ...] = ()
    trend_direction: Direction = Direction.NEUTRAL
    key_levels: Tuple[float, ...] = ()

    def aligned(self, direction: Direction, kind: Optional[StructureKind] = None) -> List[MarketStructure]:
        return [
            s for s in self.structures
            if s.direction == direction and (kind is None or s.kind == kind)
        ]


@dataclass(frozen=True)
class TimeframeBundle:
    capture_id: str
    analyses: Mapping[Timeframe, TimeframeAnalysis]

    def __post_init__(self):
        # read-only view over a private copy
        object.__setattr__(self, "analyses", MappingProxyType(dict(self.analyses)))

    def missing(self) -> List[Timeframe]:
        return [tf for tf in REQUIRED_TIMEFRAMES if tf not in self.analyses]

    def is_complete(self) -> bool:
        return not self.missing()

    def get(self, tf: Timeframe) -> TimeframeAnalysis:
        return self.analyses[tf]


@dataclass(frozen=True)
class SignalRationale:
    tf_4h_structure: str = ""
    tf_15m_action: str = ""
    tf_3m_orderblock: str = ""
    tf_1m_entry: str = ""


@dataclass(frozen=True)
class TradingSignal:
    signal_type: SignalType
    entry_price: float
    stop_loss: float
    take_profit: float
    risk_reward_ratio: float
    confidence_score: float
    rationale: SignalRationale
    status: SignalStatus = SignalStatus.PENDING
    alert_sent: bool = False
    # set once persisted
    signal_id: Optional[str] = None
    user_id: Optional[str] = None
    capture_id: Optional[str] = None
    created_at_ms: Optional[int] = None

    def risk(self) -> float:
        return abs(self.entry_price - self.stop_loss)

    def reward(self) -> float:
        return abs(self.take_profit - self.entry_price)

    def with_record(self, *, signal_id: str, user_id: str, capture_id: Optional[str], created_at_ms: int) -> "TradingSignal":
        return replace(self, signal_id=signal_id, user_id=user_id, capture_id=capture_id, created_at_ms=created_at_ms)


@dataclass(frozen=True)
class StoredStructure:
    structure_id: str
    user_id: str
    capture_id: str
    structure: MarketStructure
    detected_at_ms: int
