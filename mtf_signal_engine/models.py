from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


STRONG_BUY = "STRONG BUY"
BUY = "BUY"
HOLD = "HOLD"
SELL = "SELL"
STRONG_SELL = "STRONG SELL"

SIGNAL_LABELS = (STRONG_BUY, BUY, HOLD, SELL, STRONG_SELL)

UP = "UP"
DOWN = "DOWN"

PIVOT_HIGH = "HIGH"
PIVOT_LOW = "LOW"

DEMAND = "DEMAND"
SUPPLY = "SUPPLY"


@dataclass(frozen=True)
class Candle:
    open_time_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: Optional[float] = None


@dataclass(frozen=True)
class Pivot:
    index: int
    kind: str  # HIGH or LOW
    price: float
    time_ms: int


@dataclass(frozen=True)
class ValidatedSwing:
    pivot: Pivot
    confirmed_at_index: int

    @property
    def kind(self) -> str:
        return self.pivot.kind

    @property
    def price(self) -> float:
        return self.pivot.price

    @property
    def index(self) -> int:
        return self.pivot.index


@dataclass(frozen=True)
class Zone:
    low: float
    high: float
    impulse_index: int
    kind: str  # DEMAND or SUPPLY
    valid: bool = True
    source: str = "base"  # base | fvg | order_block

    @property
    def width(self) -> float:
        return self.high - self.low

    @property
    def mid(self) -> float:
        return (self.low + self.high) / 2.0


@dataclass(frozen=True)
class ImpulseLeg:
    direction: str  # UP or DOWN
    low: float
    high: float
    start_index: int
    end_index: int

    @property
    def size(self) -> float:
        return abs(self.high - self.low)


@dataclass(frozen=True)
class FibLevels:
    direction: str
    low: float
    high: float
    retr_50: float
    retr_618: float
    ext_1272: float
    ext_1618: float

    def golden_pocket(self) -> Tuple[float, float]:
        return min(self.retr_50, self.retr_618), max(self.retr_50, self.retr_618)


@dataclass(frozen=True)
class BreakOfStructure:
    direction: str
    broken_level: float
    break_index: int
    bars_held: int
    volume_ratio: float
    impulse: Optional[ImpulseLeg] = None
    liquidity_swept: bool = False


@dataclass(frozen=True)
class IndicatorSnapshot:
    ema_fast: Optional[float] = None
    ema_slow: Optional[float] = None
    ema20: Optional[float] = None
    ema21: Optional[float] = None
    ema50: Optional[float] = None
    ema200: Optional[float] = None
    rsi14: Optional[float] = None
    macd: Optional[float] = None
    macd_signal: Optional[float] = None
    macd_hist: Optional[float] = None
    atr14: Optional[float] = None
    supertrend: Optional[float] = None
    volume: Optional[float] = None
    vol_sma20: Optional[float] = None


@dataclass(frozen=True)
class StructureState:
    trend: str  # up | down | neutral
    valid_high: Optional[ValidatedSwing] = None
    valid_low: Optional[ValidatedSwing] = None
    swings: Tuple[ValidatedSwing, ...] = ()
    pivots: Tuple[Pivot, ...] = ()
    bos: Optional[BreakOfStructure] = None


NEUTRAL_STRUCTURE = StructureState(trend="neutral")


@dataclass(frozen=True)
class TimeframeSnapshot:
    timeframe: str
    ready: bool
    last: Optional[Candle] = None
    indicators: IndicatorSnapshot = field(default_factory=IndicatorSnapshot)
    structure: StructureState = NEUTRAL_STRUCTURE
    zones: Tuple[Zone, ...] = ()
    gaps: Tuple[Zone, ...] = ()
    order_blocks: Tuple[Zone, ...] = ()
    signal: str = HOLD
    score: int = 0
    reasons: Tuple[str, ...] = ()
    atr_values: Tuple[Optional[float], ...] = ()

    @property
    def last_close(self) -> Optional[float]:
        return self.last.close if self.last is not None else None


@dataclass(frozen=True)
class Confluence:
    tally: Dict[str, float]
    buy_weight: float
    sell_weight: float
    label: str
    vote_dominance: float
    dominant_trend: str
    agreement: int


@dataclass(frozen=True)
class TradePlan:
    direction: str
    entry_price: float
    entry_band_low: float
    entry_band_high: float
    stop_loss: float
    take_profit_1: float
    take_profit_2: float
    r_distance: float
    reward_risk: float
    atr_used: float
    tp1_source: str
    tp2_source: str
    tick_size: Optional[float] = None
    confidence: float = 0.0
    confidence_label: str = "low"


@dataclass(frozen=True)
class Decision:
    symbol: Optional[str]
    preset: str
    last_price: Optional[float]
    signal: str
    direction: Optional[str]
    confidence: float
    confidence_label: str
    plan: Optional[TradePlan]
    reason: Optional[str]
    timestamp_ms: Optional[int] = None
    confluence: Optional[Confluence] = None
    details: Dict[str, object] = field(default_factory=dict)

    @property
    def actionable(self) -> bool:
        return self.signal != HOLD and self.plan is not None


@dataclass(frozen=True)
class CooldownEntry:
    key: str
    last_fired_ms: int

