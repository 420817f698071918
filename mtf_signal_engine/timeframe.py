from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from .config import StrategyConfig
from .indicators import (
    atr,
    ema,
    is_finite_number,
    macd,
    ohlc_columns,
    rsi_wilder,
    sma,
    supertrend,
)
from .models import (
    BUY,
    HOLD,
    SELL,
    STRONG_BUY,
    STRONG_SELL,
    Candle,
    IndicatorSnapshot,
    TimeframeSnapshot,
)
from .structure import analyze_structure
from .zones import find_fair_value_gaps, find_order_blocks, find_zones

log = logging.getLogger("timeframe")


def _last(series: Sequence[Optional[float]]) -> Optional[float]:
    if not series:
        return None
    v = series[-1]
    return float(v) if is_finite_number(v) else None


def compute_indicators(candles: Sequence[Candle], cfg: StrategyConfig) -> Tuple[IndicatorSnapshot, List[Optional[float]]]:
    _, highs, lows, closes, volumes = ohlc_columns(candles)
    atr_vals = atr(highs, lows, closes, cfg.atr_len)
    m = macd(closes)
    st = supertrend(highs, lows, closes, cfg.supertrend_period, cfg.supertrend_mult)

    snap = IndicatorSnapshot(
        ema_fast=_last(ema(closes, cfg.ema_fast)),
        ema_slow=_last(ema(closes, cfg.ema_slow)),
        ema20=_last(ema(closes, 20)),
        ema21=_last(ema(closes, 21)),
        ema50=_last(ema(closes, 50)),
        ema200=_last(ema(closes, 200)),
        rsi14=_last(rsi_wilder(closes, cfg.rsi_len)),
        macd=_last(m.line),
        macd_signal=_last(m.signal),
        macd_hist=_last(m.hist),
        atr14=_last(atr_vals),
        supertrend=_last(st.line),
        volume=_last(volumes),
        vol_sma20=_last(sma(volumes, 20)),
    )
    return snap, atr_vals


def score_timeframe(close: float, ind: IndicatorSnapshot, cfg: StrategyConfig) -> Tuple[int, List[str]]:
    """Signed directional score plus the list of terms that moved it."""
    w = cfg.score
    score = 0
    reasons: List[str] = []

    def add(points: int, why: str) -> None:
        nonlocal score
        score += points
        reasons.append(f"{points:+d} {why}")

    if ind.ema_fast is not None:
        if close > ind.ema_fast:
            add(w.price_vs_ema, "close>ema_fast")
        elif close < ind.ema_fast:
            add(-w.price_vs_ema, "close<ema_fast")
    if ind.ema_fast is not None and ind.ema_slow is not None:
        if ind.ema_fast > ind.ema_slow:
            add(w.ema_cross, "ema_fast>ema_slow")
        elif ind.ema_fast < ind.ema_slow:
            add(-w.ema_cross, "ema_fast<ema_slow")
    if ind.macd is not None and ind.macd_signal is not None and ind.macd_hist is not None:
        if ind.macd > ind.macd_signal and ind.macd_hist > 0:
            add(w.macd, "macd bullish")
        elif ind.macd < ind.macd_signal and ind.macd_hist < 0:
            add(-w.macd, "macd bearish")
    if ind.supertrend is not None:
        if close > ind.supertrend:
            add(w.supertrend, "close>supertrend")
        elif close < ind.supertrend:
            add(-w.supertrend, "close<supertrend")
    if ind.rsi14 is not None:
        if ind.rsi14 < 30:
            add(w.rsi_extreme, "rsi oversold")
        elif ind.rsi14 > 70:
            add(-w.rsi_extreme, "rsi overbought")
    if ind.volume is not None and ind.vol_sma20 is not None and ind.vol_sma20 > 0:
        if ind.volume >= w.volume_spike_mult * ind.vol_sma20:
            add(w.volume_spike, "volume spike")
        elif ind.volume <= w.volume_drought_mult * ind.vol_sma20:
            add(-w.volume_drought, "volume drought")

    score = int(round(max(-100, min(100, score))))
    return score, reasons


def bucket(score: int, strong: int, weak: int) -> str:
    if score >= strong:
        return STRONG_BUY
    if score >= weak:
        return BUY
    if score <= -strong:
        return STRONG_SELL
    if score <= -weak:
        return SELL
    return HOLD


def analyze_timeframe(timeframe: str, candles: Sequence[Candle], cfg: StrategyConfig) -> TimeframeSnapshot:
    last = candles[-1] if candles else None
    if len(candles) < cfg.min_bars:
        log.debug("tf_not_ready tf=%s bars=%d min=%d", timeframe, len(candles), cfg.min_bars)
        return TimeframeSnapshot(timeframe=timeframe, ready=False, last=last)

    ind, atr_vals = compute_indicators(candles, cfg)
    structure = analyze_structure(
        candles,
        cfg.pivot_lookback.get(timeframe, 2),
        use_bos=cfg.use_bos,
        min_hold_bars=cfg.bos_min_hold_bars,
        volume_ratio_min=cfg.bos_volume_ratio_min,
        volume_lookback=cfg.bos_volume_lookback,
    )
    zones = find_zones(
        candles,
        atr_vals,
        consolidation_bars=cfg.zone_consolidation_bars,
        impulse_mult=cfg.zone_impulse_mult,
        consolidation_mult=cfg.zone_consolidation_mult,
    )
    gaps = find_fair_value_gaps(candles)
    blocks = find_order_blocks(candles, atr_vals, move_mult=cfg.order_block_move_mult)
    score, reasons = score_timeframe(last.close, ind, cfg)
    signal = bucket(score, cfg.score.strong_threshold, cfg.score.weak_threshold)

    log.debug(
        "tf_analyzed tf=%s bars=%d trend=%s zones=%d gaps=%d order_blocks=%d score=%d signal=%s",
        timeframe, len(candles), structure.trend, len(zones), len(gaps), len(blocks), score, signal,
    )
    return TimeframeSnapshot(
        timeframe=timeframe,
        ready=True,
        last=last,
        indicators=ind,
        structure=structure,
        zones=tuple(zones),
        gaps=tuple(gaps),
        order_blocks=tuple(blocks),
        signal=signal,
        score=score,
        reasons=tuple(reasons),
        atr_values=tuple(atr_vals),
    )
