from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
import math


Series = List[Optional[float]]


def is_finite_number(x: object) -> bool:
    if x is None or isinstance(x, bool):
        return False
    try:
        return math.isfinite(float(x))
    except (TypeError, ValueError):
        return False


def _clean(values: Sequence[Optional[float]]) -> Series:
    return [float(v) if is_finite_number(v) else None for v in values]


def ema_step(prev: Optional[float], x: float, k: float) -> float:
    """One EMA update with smoothing factor `k`; the first sample seeds the filter."""
    if prev is None:
        return x
    return prev + k * (x - prev)


def rma_next(prev: Optional[float], x: float, length: int) -> float:
    """Wilder smoothing step: (prev*(n-1) + x) / n."""
    if length <= 1 or prev is None:
        return x
    return (prev * (length - 1) + x) / float(length)


def ema(values: Sequence[Optional[float]], period: int) -> Series:
    """EMA seeded with the first value; warm-up indices (< period-1) and holes are None.

    The running value survives a hole, so the filter resumes where it left off
    once data returns.
    """
    vals = _clean(values)
    out: Series = [None] * len(vals)
    if period <= 0:
        return out
    k = 2.0 / (period + 1.0)
    prev: Optional[float] = None
    for i, v in enumerate(vals):
        if v is None:
            continue
        prev = ema_step(prev, v, k)
        if i >= period - 1:
            out[i] = prev
    return out


def sma(values: Sequence[Optional[float]], period: int) -> Series:
    vals = _clean(values)
    out: Series = [None] * len(vals)
    if period <= 0:
        return out
    for i in range(period - 1, len(vals)):
        window = vals[i - period + 1: i + 1]
        if any(v is None for v in window):
            continue
        out[i] = sum(window) / float(period)
    return out


def true_range(high: float, low: float, prev_close: Optional[float]) -> float:
    if prev_close is None:
        return high - low
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def true_range_series(highs: Sequence[Optional[float]], lows: Sequence[Optional[float]], closes: Sequence[Optional[float]]) -> Series:
    hs, ls, cs = _clean(highs), _clean(lows), _clean(closes)
    out: Series = []
    for i in range(len(cs)):
        if hs[i] is None or ls[i] is None:
            out.append(None)
            continue
        prev_close = cs[i - 1] if i > 0 else None
        out.append(true_range(hs[i], ls[i], prev_close))
    return out


def atr(highs: Sequence[Optional[float]], lows: Sequence[Optional[float]], closes: Sequence[Optional[float]], period: int = 14) -> Series:
    """Wilder ATR with an SMA seed over the first full window of true ranges.

    A missing true range yields None and restarts the seed window.
    """
    trs = true_range_series(highs, lows, closes)
    out: Series = [None] * len(trs)
    if period <= 0:
        return out
    prev: Optional[float] = None
    seed: List[float] = []
    for i, tr in enumerate(trs):
        if tr is None:
            prev = None
            seed = []
            continue
        if prev is None:
            seed.append(tr)
            if len(seed) == period:
                prev = sum(seed) / float(period)
                out[i] = prev
            continue
        prev = rma_next(prev, tr, period)
        out[i] = prev
    return out


def average_true_range(highs: Sequence[Optional[float]], lows: Sequence[Optional[float]], closes: Sequence[Optional[float]], n: int = 20) -> Optional[float]:
    """Plain mean of the last n true ranges (current bar included)."""
    trs = [tr for tr in true_range_series(highs, lows, closes)[-n:] if tr is not None]
    if not trs:
        return None
    return sum(trs) / len(trs)


def rsi_wilder(values: Sequence[Optional[float]], period: int = 14) -> Series:
    vals = _clean(values)
    out: Series = [None] * len(vals)
    if period <= 0:
        return out
    avg_gain: Optional[float] = None
    avg_loss: Optional[float] = None
    gains: List[float] = []
    losses: List[float] = []
    for i in range(1, len(vals)):
        a, b = vals[i - 1], vals[i]
        if a is None or b is None:
            avg_gain = avg_loss = None
            gains, losses = [], []
            continue
        ch = b - a
        gain = ch if ch > 0 else 0.0
        loss = -ch if ch < 0 else 0.0
        if avg_gain is None or avg_loss is None:
            gains.append(gain)
            losses.append(loss)
            if len(gains) < period:
                continue
            avg_gain = sum(gains) / period
            avg_loss = sum(losses) / period
        else:
            avg_gain = rma_next(avg_gain, gain, period)
            avg_loss = rma_next(avg_loss, loss, period)
        if avg_loss == 0:
            out[i] = 100.0
        else:
            rs = avg_gain / avg_loss
            out[i] = 100.0 - (100.0 / (1.0 + rs))
    return out


@dataclass(frozen=True)
class MacdSeries:
    line: Series
    signal: Series
    hist: Series


def macd(values: Sequence[Optional[float]], fast: int = 12, slow: int = 26, signal: int = 9) -> MacdSeries:
    fast_ema = ema(values, fast)
    slow_ema = ema(values, slow)
    line: Series = [
        (f - s) if (f is not None and s is not None) else None
        for f, s in zip(fast_ema, slow_ema)
    ]
    # Zero-fill only the warm-up prefix so the signal EMA has a seed.
    first = next((i for i, v in enumerate(line) if v is not None), len(line))
    seeded = [0.0] * first + line[first:]
    sig = ema(seeded, signal)
    hist: Series = [
        (m - s) if (m is not None and s is not None) else None
        for m, s in zip(line, sig)
    ]
    return MacdSeries(line=line, signal=sig, hist=hist)


@dataclass(frozen=True)
class SuperTrendSeries:
    line: Series
    direction: List[Optional[int]]
    upper: Series
    lower: Series


def supertrend(highs: Sequence[Optional[float]], lows: Sequence[Optional[float]], closes: Sequence[Optional[float]], period: int = 10, multiplier: float = 3.0) -> SuperTrendSeries:
    """Flip-state SuperTrend.

    Final bands carry forward: the upper band only tightens unless the previous
    close broke above it; the lower band only rises unless the previous close
    broke below it. The trend flips when the close crosses the active band.
    The first bar with an ATR seeds the bands and has no line yet.
    """
    hs, ls, cs = _clean(highs), _clean(lows), _clean(closes)
    atr_vals = atr(hs, ls, cs, period)
    n = len(cs)
    line: Series = [None] * n
    direction: List[Optional[int]] = [None] * n
    upper: Series = [None] * n
    lower: Series = [None] * n

    prev_upper: Optional[float] = None
    prev_lower: Optional[float] = None
    prev_close: Optional[float] = None
    prev_dir: Optional[int] = None
    for i in range(n):
        a, h, l, c = atr_vals[i], hs[i], ls[i], cs[i]
        if a is None or h is None or l is None or c is None:
            prev_upper = prev_lower = prev_close = None
            prev_dir = None
            continue
        hl2 = (h + l) / 2.0
        basic_upper = hl2 + multiplier * a
        basic_lower = hl2 - multiplier * a
        if prev_upper is None or prev_lower is None or prev_close is None:
            upper[i], lower[i] = basic_upper, basic_lower
            prev_upper, prev_lower, prev_close = basic_upper, basic_lower, c
            continue

        fu = basic_upper if (basic_upper < prev_upper or prev_close > prev_upper) else prev_upper
        fl = basic_lower if (basic_lower > prev_lower or prev_close < prev_lower) else prev_lower

        if prev_dir is None:
            d = 1 if c >= fl else -1
        elif prev_dir == -1:
            d = -1 if c <= fu else 1
        else:
            d = 1 if c >= fl else -1

        upper[i], lower[i] = fu, fl
        direction[i] = d
        line[i] = fl if d == 1 else fu
        prev_upper, prev_lower, prev_close, prev_dir = fu, fl, c, d
    return SuperTrendSeries(line=line, direction=direction, upper=upper, lower=lower)


def percentile_rank(values: Sequence[Optional[float]], lookback: int, min_samples: int = 20) -> Optional[float]:
    """Where the latest finite value sits among the last `lookback` finite values (0..1)."""
    sample = [v for v in _clean(values)[-lookback:] if v is not None]
    if len(sample) < max(2, min_samples):
        return None
    last = sample[-1]
    ordered = sorted(sample)
    idx = next((i for i, v in enumerate(ordered) if v >= last), len(ordered) - 1)
    return max(0.0, min(1.0, idx / float(len(ordered) - 1)))


def ohlc_columns(candles) -> Tuple[Series, Series, Series, Series, Series]:
    opens = [c.open for c in candles]
    highs = [c.high for c in candles]
    lows = [c.low for c in candles]
    closes = [c.close for c in candles]
    volumes = [c.volume for c in candles]
    return opens, highs, lows, closes, volumes
