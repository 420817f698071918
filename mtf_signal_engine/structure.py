from __future__ import annotations

import logging
import math
from typing import Iterable, List, Optional, Sequence

from .indicators import is_finite_number
from .models import (
    DOWN,
    PIVOT_HIGH,
    PIVOT_LOW,
    UP,
    BreakOfStructure,
    Candle,
    FibLevels,
    ImpulseLeg,
    Pivot,
    StructureState,
    ValidatedSwing,
)

log = logging.getLogger("structure")


def find_pivots(candles: Sequence[Candle], lookback: int = 2) -> List[Pivot]:
    """Fractal pivots: the bar's high (low) must beat every bar within `lookback` on both sides."""
    out: List[Pivot] = []
    n = len(candles)
    if lookback <= 0:
        return out
    for i in range(lookback, n - lookback):
        c = candles[i]
        neighbours = [candles[j] for j in range(i - lookback, i + lookback + 1) if j != i]
        if all(c.high > o.high for o in neighbours):
            out.append(Pivot(index=i, kind=PIVOT_HIGH, price=c.high, time_ms=c.open_time_ms))
        if all(c.low < o.low for o in neighbours):
            out.append(Pivot(index=i, kind=PIVOT_LOW, price=c.low, time_ms=c.open_time_ms))
    return out


def consolidate_pivots(pivots: Iterable[Pivot]) -> List[Pivot]:
    """Merge runs of same-kind pivots, keeping the most extreme one, so kinds alternate."""
    out: List[Pivot] = []
    for p in pivots:
        if not out or out[-1].kind != p.kind:
            out.append(p)
            continue
        prev = out[-1]
        if p.kind == PIVOT_HIGH and p.price > prev.price:
            out[-1] = p
        elif p.kind == PIVOT_LOW and p.price < prev.price:
            out[-1] = p
    return out


def validate_swings(candles: Sequence[Candle], pivots: Sequence[Pivot]) -> List[ValidatedSwing]:
    """Confirm each pivot at the first later close beyond the preceding opposite pivot.

    A LOW is confirmed by a close above the HIGH before it; a HIGH by a close
    below the LOW before it. Unconfirmed pivots are left out.
    """
    out: List[ValidatedSwing] = []
    for k in range(1, len(pivots)):
        cur, prev = pivots[k], pivots[k - 1]
        for j in range(cur.index + 1, len(candles)):
            close = candles[j].close
            if cur.kind == PIVOT_LOW and close > prev.price:
                out.append(ValidatedSwing(pivot=cur, confirmed_at_index=j))
                break
            if cur.kind == PIVOT_HIGH and close < prev.price:
                out.append(ValidatedSwing(pivot=cur, confirmed_at_index=j))
                break
    return out


def _last_of_kind(swings: Sequence[ValidatedSwing], kind: str) -> Optional[ValidatedSwing]:
    for s in reversed(swings):
        if s.kind == kind:
            return s
    return None


def classify_trend(candles: Sequence[Candle], swings: Sequence[ValidatedSwing]) -> StructureState:
    valid_high = _last_of_kind(swings, PIVOT_HIGH)
    valid_low = _last_of_kind(swings, PIVOT_LOW)

    trend = "neutral"
    if swings:
        # sorted() is stable, so pivot order breaks ties in confirmation index
        latest = sorted(swings, key=lambda s: s.confirmed_at_index)[-1]
        trend = "up" if latest.kind == PIVOT_LOW else "down"

    if candles:
        last_close = candles[-1].close
        if trend == "up" and valid_low is not None and last_close < valid_low.price:
            trend = "down"
        elif trend == "down" and valid_high is not None and last_close > valid_high.price:
            trend = "up"

    return StructureState(
        trend=trend,
        valid_high=valid_high,
        valid_low=valid_low,
        swings=tuple(swings),
    )


def detect_bos(
    candles: Sequence[Candle],
    swings: Sequence[ValidatedSwing],
    pivots: Sequence[Pivot] = (),
    *,
    min_hold_bars: int = 2,
    volume_ratio_min: float = 0.9,
    volume_lookback: int = 20,
    sweep_lookback: int = 10,
) -> Optional[BreakOfStructure]:
    """Break of structure against the latest validated high (up) or low (down).

    The break candle is the first bar of the current run of closes beyond the
    level. The run must cover at least `min_hold_bars` closes and the break
    candle's volume must reach `volume_ratio_min` times the mean volume of the
    bars before it. Without volume there is no BOS.

    `liquidity_swept` flags a wick more than 0.1% through the opposite validated
    swing within `sweep_lookback` bars before the break.
    """
    if len(candles) < min_hold_bars + 1 or not swings:
        return None

    last = len(candles) - 1
    last_close = candles[last].close
    valid_high = _last_of_kind(swings, PIVOT_HIGH)
    valid_low = _last_of_kind(swings, PIVOT_LOW)

    direction = None
    level_swing: Optional[ValidatedSwing] = None
    if valid_high is not None and last_close > valid_high.price:
        direction, level_swing = UP, valid_high
    elif valid_low is not None and last_close < valid_low.price:
        direction, level_swing = DOWN, valid_low
    if direction is None or level_swing is None:
        return None
    level = level_swing.price

    def beyond(close: float) -> bool:
        return close > level if direction == UP else close < level

    break_index = last
    while break_index - 1 > level_swing.index and beyond(candles[break_index - 1].close):
        break_index -= 1
    bars_held = last - break_index + 1
    if bars_held < min_hold_bars:
        return None

    break_vol = candles[break_index].volume
    prior = [
        c.volume
        for c in candles[max(0, break_index - volume_lookback): break_index]
        if is_finite_number(c.volume)
    ]
    if not is_finite_number(break_vol) or not prior:
        return None
    avg_vol = sum(prior) / len(prior)
    if avg_vol <= 0:
        return None
    ratio = float(break_vol) / avg_vol
    if ratio < volume_ratio_min:
        log.debug("bos_rejected dir=%s level=%.6f vol_ratio=%.3f", direction, level, ratio)
        return None

    impulse = _bos_impulse(candles, pivots, direction, break_index)
    opposite = valid_low if direction == UP else valid_high
    swept = False
    if opposite is not None:
        window = candles[max(0, break_index - sweep_lookback): break_index]
        if direction == UP:
            swept = any(c.low < opposite.price * 0.999 for c in window)
        else:
            swept = any(c.high > opposite.price * 1.001 for c in window)
    return BreakOfStructure(
        direction=direction,
        broken_level=level,
        break_index=break_index,
        bars_held=bars_held,
        volume_ratio=ratio,
        impulse=impulse,
        liquidity_swept=swept,
    )


def _bos_impulse(candles: Sequence[Candle], pivots: Sequence[Pivot], direction: str, break_index: int) -> Optional[ImpulseLeg]:
    """Leg from the last opposite pivot before the break to the extreme reached since."""
    want = PIVOT_LOW if direction == UP else PIVOT_HIGH
    origin = None
    for p in reversed(pivots):
        if p.kind == want and p.index < break_index:
            origin = p
            break
    if origin is None:
        return None
    tail = candles[origin.index:]
    if direction == UP:
        top = max(range(len(tail)), key=lambda k: tail[k].high)
        return ImpulseLeg(UP, low=origin.price, high=tail[top].high, start_index=origin.index, end_index=origin.index + top)
    bottom = min(range(len(tail)), key=lambda k: tail[k].low)
    return ImpulseLeg(DOWN, low=tail[bottom].low, high=origin.price, start_index=origin.index, end_index=origin.index + bottom)


def impulse_legs(pivots: Sequence[Pivot]) -> List[ImpulseLeg]:
    legs: List[ImpulseLeg] = []
    for a, b in zip(pivots, pivots[1:]):
        if a.kind == b.kind:
            continue
        if a.kind == PIVOT_LOW:
            legs.append(ImpulseLeg(UP, low=a.price, high=b.price, start_index=a.index, end_index=b.index))
        else:
            legs.append(ImpulseLeg(DOWN, low=b.price, high=a.price, start_index=a.index, end_index=b.index))
    return legs


def dominant_impulse(
    pivots: Sequence[Pivot],
    atr: Optional[float],
    ref_price: Optional[float],
    max_legs: int = 12,
) -> Optional[ImpulseLeg]:
    """Most recent leg of at least max(2.5*ATR, 0.3% of price); else the largest recent leg."""
    legs = impulse_legs(sorted(pivots, key=lambda p: p.index))[-max_legs:]
    legs = [leg for leg in legs if math.isfinite(leg.size) and leg.size > 0]
    if not legs:
        return None
    price = ref_price
    if not is_finite_number(price):
        price = (legs[-1].high + legs[-1].low) / 2.0
    a = atr if is_finite_number(atr) else price * 0.003
    threshold = max(a * 2.5, price * 0.003)
    for leg in reversed(legs):
        if leg.size >= threshold:
            return leg
    return max(legs, key=lambda leg: leg.size)


def fib_levels(leg: Optional[ImpulseLeg]) -> Optional[FibLevels]:
    if leg is None:
        return None
    span = leg.high - leg.low
    if not math.isfinite(span) or span == 0:
        return None
    if leg.direction == UP:
        # retracements measured down from the high, extensions projected from the low
        return FibLevels(
            direction=UP,
            low=leg.low,
            high=leg.high,
            retr_50=leg.high - 0.5 * span,
            retr_618=leg.high - 0.618 * span,
            ext_1272=leg.low + 1.272 * span,
            ext_1618=leg.low + 1.618 * span,
        )
    return FibLevels(
        direction=DOWN,
        low=leg.low,
        high=leg.high,
        retr_50=leg.low + 0.5 * span,
        retr_618=leg.low + 0.618 * span,
        ext_1272=leg.high - 1.272 * span,
        ext_1618=leg.high - 1.618 * span,
    )


def analyze_structure(
    candles: Sequence[Candle],
    lookback: int,
    *,
    use_bos: bool = False,
    min_hold_bars: int = 2,
    volume_ratio_min: float = 0.9,
    volume_lookback: int = 20,
) -> StructureState:
    pivots = consolidate_pivots(find_pivots(candles, lookback))
    swings = validate_swings(candles, pivots)
    state = classify_trend(candles, swings)
    bos = None
    if use_bos:
        bos = detect_bos(
            candles,
            swings,
            pivots,
            min_hold_bars=min_hold_bars,
            volume_ratio_min=volume_ratio_min,
            volume_lookback=volume_lookback,
        )
    return StructureState(
        trend=state.trend,
        valid_high=state.valid_high,
        valid_low=state.valid_low,
        swings=state.swings,
        pivots=tuple(pivots),
        bos=bos,
    )
