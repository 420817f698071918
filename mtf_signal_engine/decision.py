from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Dict, Mapping, Optional, Sequence, Tuple

from .config import STRUCTURE, StrategyConfig
from .confluence import score_confluence
from .indicators import average_true_range, ema, is_finite_number, ohlc_columns, percentile_rank
from .models import (
    BUY,
    DEMAND,
    DOWN,
    HOLD,
    SELL,
    STRONG_BUY,
    STRONG_SELL,
    SUPPLY,
    UP,
    Candle,
    Confluence,
    Decision,
    FibLevels,
    TimeframeSnapshot,
    TradePlan,
    Zone,
)
from .risk import RiskPlanBuilder, StructuralLevels, confluence_band
from .structure import dominant_impulse, fib_levels
from .zones import active_zones, nearest_first, nearest_zone, zones_containing

log = logging.getLogger("decision")

BULLISH = "BULLISH"
BEARISH = "BEARISH"
RANGE = "RANGE"

PRICE_FALLBACK = ("15m", "1h", "4h", "1d")
TREND_REQUIRED = ("4h", "1h", "15m")

REGIME_MIN_SAMPLES = 20

INSUFFICIENT_DATA = "insufficient_data"


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


def confidence_label(x: float) -> str:
    if x >= 0.7:
        return "high"
    if x >= 0.4:
        return "medium"
    return "low"


def final_label(direction: Optional[str], confidence: float, cfg: StrategyConfig) -> str:
    if direction not in (UP, DOWN) or not is_finite_number(confidence):
        return HOLD
    if confidence >= cfg.strong_confidence:
        return STRONG_BUY if direction == UP else STRONG_SELL
    if confidence >= cfg.min_confidence:
        return BUY if direction == UP else SELL
    return HOLD


def volatility_regime(snapshot: Optional[TimeframeSnapshot], lookback: int = 120) -> str:
    """ATR percentile bucket of the snapshot; too little history counts as medium."""
    if snapshot is None or not snapshot.ready:
        return "medium"
    pct = percentile_rank(snapshot.atr_values, lookback, min_samples=REGIME_MIN_SAMPLES)
    if pct is None:
        return "medium"
    if pct <= 0.33:
        return "low"
    if pct <= 0.66:
        return "medium"
    return "high"


def ema_trend(snapshot: TimeframeSnapshot) -> str:
    close, ind = snapshot.last_close, snapshot.indicators
    if close is None or ind.ema20 is None or ind.ema50 is None:
        return RANGE
    if close > ind.ema50 and ind.ema20 > ind.ema50:
        return BULLISH
    if close < ind.ema50 and ind.ema20 < ind.ema50:
        return BEARISH
    return RANGE


def daily_bias(snapshot: Optional[TimeframeSnapshot]) -> str:
    if snapshot is None or not snapshot.ready:
        return RANGE
    close, ind = snapshot.last_close, snapshot.indicators
    if close is None or ind.ema50 is None or ind.ema200 is None:
        return RANGE
    if close > ind.ema50 > ind.ema200:
        return BULLISH
    if close < ind.ema50 < ind.ema200:
        return BEARISH
    return RANGE


def htf_aligned(snapshot: Optional[TimeframeSnapshot], direction: str) -> bool:
    """Close on the trade side of EMA21 and RSI on the trade side of 50; no data passes."""
    if snapshot is None or not snapshot.ready:
        return True
    close, ind = snapshot.last_close, snapshot.indicators
    if close is None or ind.ema21 is None:
        return True
    if direction == UP:
        return close >= ind.ema21 and (ind.rsi14 is None or ind.rsi14 >= 50)
    return close <= ind.ema21 and (ind.rsi14 is None or ind.rsi14 <= 50)


@dataclass(frozen=True)
class Breakout:
    passed: bool
    level: Optional[float]
    ratio: Optional[float]


class SignalDecisionEngine:
    def __init__(self, cfg: StrategyConfig, risk: Optional[RiskPlanBuilder] = None):
        self.cfg = cfg
        self.risk = risk or RiskPlanBuilder(cfg)

    # ---- shared helpers -------------------------------------------------

    def _last_price(self, snapshots: Mapping[str, TimeframeSnapshot]) -> Tuple[Optional[float], Optional[int]]:
        for tf in PRICE_FALLBACK:
            s = snapshots.get(tf)
            if s is not None and s.last is not None:
                return s.last.close, s.last.open_time_ms
        return None, None

    def _atr(self, snapshots: Mapping[str, TimeframeSnapshot], fallback: Optional[TimeframeSnapshot] = None) -> Optional[float]:
        s = snapshots.get(self.cfg.atr_timeframe)
        if s is not None and s.ready and s.indicators.atr14 is not None:
            return s.indicators.atr14
        if fallback is not None and fallback.ready:
            return fallback.indicators.atr14
        return None

    def _hold(
        self,
        symbol: Optional[str],
        reason: str,
        snapshots: Mapping[str, TimeframeSnapshot],
        confluence: Optional[Confluence] = None,
        confidence: float = 0.0,
        direction: Optional[str] = None,
        details: Optional[Dict[str, object]] = None,
    ) -> Decision:
        price, ts = self._last_price(snapshots)
        conf = clamp01(confidence)
        if reason == INSUFFICIENT_DATA:
            price = None
        return Decision(
            symbol=symbol,
            preset=self.cfg.name,
            last_price=price,
            signal=HOLD,
            direction=direction,
            confidence=conf,
            confidence_label=confidence_label(conf),
            plan=None,
            reason=reason,
            timestamp_ms=ts,
            confluence=confluence,
            details=dict(details or {}),
        )

    def _emit(
        self,
        symbol: Optional[str],
        snapshots: Mapping[str, TimeframeSnapshot],
        direction: str,
        confidence: float,
        plan: TradePlan,
        reason: str,
        confluence: Confluence,
        details: Dict[str, object],
        strong: Optional[bool] = None,
    ) -> Decision:
        conf = clamp01(confidence)
        label = final_label(direction, conf, self.cfg)
        if label == HOLD:
            return self._hold(symbol, "low_confidence", snapshots, confluence, conf, direction, details)
        if strong is not None:
            if direction == UP:
                label = STRONG_BUY if strong else BUY
            else:
                label = STRONG_SELL if strong else SELL
        price, ts = self._last_price(snapshots)
        return Decision(
            symbol=symbol,
            preset=self.cfg.name,
            last_price=price,
            signal=label,
            direction=direction,
            confidence=conf,
            confidence_label=confidence_label(conf),
            plan=replace(plan, confidence=conf, confidence_label=confidence_label(conf)),
            reason=reason,
            timestamp_ms=ts,
            confluence=confluence,
            details=details,
        )

    # ---- entry point ----------------------------------------------------

    def decide(
        self,
        symbol: Optional[str],
        snapshots: Mapping[str, TimeframeSnapshot],
        series: Mapping[str, Sequence[Candle]],
        tick_size: Optional[float] = None,
    ) -> Decision:
        if not any(s.ready for s in snapshots.values()):
            return self._hold(symbol, INSUFFICIENT_DATA, snapshots)
        if self.cfg.strategy == STRUCTURE:
            return self._decide_structure(symbol, snapshots, tick_size)
        return self._decide_trend(symbol, snapshots, series, tick_size)

    def _confluence(self, snapshots: Mapping[str, TimeframeSnapshot], reference_trend: Optional[str] = None, reference_tf: Optional[str] = None) -> Confluence:
        cfg = self.cfg
        return score_confluence(
            snapshots.values(),
            cfg.weight,
            strong_multiplier=cfg.strong_multiplier,
            min_weight=cfg.confluence_min_weight,
            strong_min=cfg.confluence_strong_min,
            reference_trend=reference_trend,
            reference_timeframe=reference_tf,
            agreement_timeframes=cfg.agreement_timeframes,
        )

    # ---- trend / bias-gated ---------------------------------------------

    def _pullback(self, candles: Sequence[Candle], direction: str) -> bool:
        """A recent bar tagged EMA20 and the last close is back on the trend side of EMA20 and EMA50."""
        if len(candles) < 2:
            return False
        _, highs, lows, closes, _ = ohlc_columns(candles)
        e20 = ema(closes, 20)
        e50 = ema(closes, 50)
        last_close, last_e20, last_e50 = closes[-1], e20[-1], e50[-1]
        if last_e20 is None:
            return False
        n = max(1, self.cfg.pullback_lookback)
        start = max(0, len(candles) - n)
        touched = False
        for k in range(start, len(candles)):
            if e20[k] is None:
                continue
            if direction == UP and lows[k] <= e20[k]:
                touched = True
            if direction == DOWN and highs[k] >= e20[k]:
                touched = True
        if not touched:
            return False
        if direction == UP:
            return last_close >= last_e20 and (last_e50 is None or last_close >= last_e50)
        return last_close <= last_e20 and (last_e50 is None or last_close <= last_e50)

    @staticmethod
    def _trigger(snapshot: TimeframeSnapshot, direction: str) -> bool:
        last, e20 = snapshot.last, snapshot.indicators.ema20
        if last is None or e20 is None:
            return False
        if direction == UP:
            return last.close > e20 and last.close > last.open
        return last.close < e20 and last.close < last.open

    def _breakout(self, candles: Sequence[Candle], direction: str) -> Breakout:
        cfg = self.cfg
        n = cfg.breakout_lookback
        if len(candles) < n + 2:
            return Breakout(False, None, None)
        prior = candles[-(n + 1):-1]
        last = candles[-1]
        _, highs, lows, closes, _ = ohlc_columns(candles)
        avg_tr = average_true_range(highs, lows, closes, cfg.breakout_avg_tr_bars)
        ratio = (last.high - last.low) / avg_tr if avg_tr else None

        if direction == UP:
            level = max(c.high for c in prior)
            beyond = last.close > level and last.close > last.open
        else:
            level = min(c.low for c in prior)
            beyond = last.close < level and last.close < last.open
        passed = beyond and ratio is not None and ratio >= cfg.breakout_range_mult
        return Breakout(passed, level, ratio)

    def _decide_trend(
        self,
        symbol: Optional[str],
        snapshots: Mapping[str, TimeframeSnapshot],
        series: Mapping[str, Sequence[Candle]],
        tick_size: Optional[float],
    ) -> Decision:
        cfg = self.cfg
        missing = [tf for tf in TREND_REQUIRED if tf not in snapshots or not snapshots[tf].ready]
        if missing:
            return self._hold(symbol, INSUFFICIENT_DATA, snapshots, details={"missing": missing})

        tf4, tf1, tf15 = snapshots["4h"], snapshots["1h"], snapshots["15m"]
        trend4, trend1 = ema_trend(tf4), ema_trend(tf1)
        d1 = daily_bias(snapshots.get("1d"))

        direction = None
        if trend4 == BULLISH and trend1 != BEARISH and d1 != BEARISH:
            direction = UP
        elif trend4 == BEARISH and trend1 != BULLISH and d1 != BULLISH:
            direction = DOWN

        confluence = self._confluence(snapshots)
        details: Dict[str, object] = {"trend_4h": trend4, "trend_1h": trend1, "bias_1d": d1}

        if direction is None:
            return self._hold(symbol, "no_bias", snapshots, confluence, 0.3 * cfg.hold_confidence_factor, details=details)
        d1_agrees = (d1 == BULLISH) if direction == UP else (d1 == BEARISH)
        bias_conf = 0.9 if d1_agrees else 0.7
        details["bias_confidence"] = bias_conf
        hold_conf = bias_conf * cfg.hold_confidence_factor

        rsi1h = tf1.indicators.rsi14
        details["rsi_1h"] = rsi1h
        if rsi1h is not None:
            if direction == UP and rsi1h > cfg.rsi_long_block:
                return self._hold(symbol, "rsi_veto", snapshots, confluence, hold_conf, direction, details)
            if direction == DOWN and rsi1h < cfg.rsi_short_block:
                return self._hold(symbol, "rsi_veto", snapshots, confluence, hold_conf, direction, details)

        pullback = self._pullback(series.get("1h", ()), direction)
        trigger = self._trigger(tf15, direction)
        breakout = self._breakout(series.get("15m", ()), direction)
        details.update(pullback=pullback, trigger=trigger, breakout=breakout.passed, breakout_ratio=breakout.ratio)

        setup_ok = trigger
        if cfg.require_pullback:
            setup_ok = setup_ok and pullback
        if cfg.require_breakout:
            setup_ok = setup_ok and breakout.passed
        if not setup_ok:
            return self._hold(symbol, "no_setup", snapshots, confluence, hold_conf, direction, details)

        conf = bias_conf
        if pullback:
            conf += 0.1
        if trigger:
            conf += 0.1
        if breakout.passed and breakout.ratio is not None:
            conf += 0.15 if breakout.ratio >= cfg.breakout_strong_mult else 0.1
        conf = max(conf, cfg.min_confidence)

        if confluence.label in ((BUY, STRONG_BUY) if direction == UP else (SELL, STRONG_SELL)):
            conf += cfg.mtf_bonus
        opposing = "down" if direction == UP else "up"
        if tf4.structure.trend == opposing:
            conf -= cfg.structure_penalty
        regime = volatility_regime(snapshots.get(cfg.regime_timeframe), cfg.regime_lookback)
        details["volatility_regime"] = regime
        if regime in ("low", "high"):
            conf -= cfg.volatility_penalty

        atr = self._atr(snapshots, tf4)
        price, _ = self._last_price(snapshots)
        levels = StructuralLevels(band_anchor=breakout.level if breakout.passed else None)
        plan = self.risk.build(direction, price, atr, levels, tick_size)
        if plan is None:
            return self._hold(symbol, "risk_unavailable", snapshots, confluence, hold_conf, direction, details)
        details["reward_risk"] = plan.reward_risk
        if plan.reward_risk < cfg.min_reward_risk:
            return self._hold(symbol, "reward_risk_below_min", snapshots, confluence, hold_conf, direction, details)

        reason = "breakout" if breakout.passed and cfg.require_breakout else "pullback_trigger"
        return self._emit(symbol, snapshots, direction, conf, plan, reason, confluence, details)

    # ---- structure / zone-gated -----------------------------------------

    @staticmethod
    def _first_ready(snapshots: Mapping[str, TimeframeSnapshot], order: Sequence[str]) -> Optional[TimeframeSnapshot]:
        for tf in order:
            s = snapshots.get(tf)
            if s is not None and s.ready:
                return s
        return None

    def _entry_band(
        self,
        snapshots: Mapping[str, TimeframeSnapshot],
        trend_tf: TimeframeSnapshot,
        direction: str,
        price: float,
        fib: Optional[FibLevels],
    ) -> Optional[Tuple[Tuple[float, float], str]]:
        """Order block, fair-value gap, fib pocket and EMA21/50 bands fed to `confluence_band`.

        Blocks and gaps come from `band_timeframes`, must sit on the entry side
        of price and the one whose midpoint is nearest wins.
        """
        kind = DEMAND if direction == UP else SUPPLY

        def entry_side(z: Zone) -> bool:
            return z.mid <= price if direction == UP else z.mid >= price

        pools = [snapshots[tf] for tf in self.cfg.band_timeframes if tf in snapshots and snapshots[tf].ready]
        block = nearest_zone([z for s in pools for z in active_zones(s.order_blocks, kind) if entry_side(z)], price)
        gap = nearest_zone([z for s in pools for z in active_zones(s.gaps, kind) if entry_side(z)], price)
        ind = trend_tf.indicators
        return confluence_band({
            "order_block": None if block is None else (block.low, block.high),
            "fvg": None if gap is None else (gap.low, gap.high),
            "fib": fib.golden_pocket() if fib is not None and fib.direction == direction else None,
            "ema": (ind.ema21, ind.ema50) if ind.ema21 is not None and ind.ema50 is not None else None,
        })

    def _decide_structure(
        self,
        symbol: Optional[str],
        snapshots: Mapping[str, TimeframeSnapshot],
        tick_size: Optional[float],
    ) -> Decision:
        cfg = self.cfg
        trend_tf = self._first_ready(snapshots, cfg.trend_timeframes)
        entry_tf = self._first_ready(snapshots, cfg.entry_timeframes)
        if trend_tf is None or entry_tf is None:
            return self._hold(symbol, INSUFFICIENT_DATA, snapshots)

        trend = trend_tf.structure.trend
        confluence = self._confluence(snapshots, trend, trend_tf.timeframe)
        details: Dict[str, object] = {
            "trend_tf": trend_tf.timeframe,
            "entry_tf": entry_tf.timeframe,
            "trend": trend.upper(),
            "agreement": confluence.agreement,
        }
        if trend == "neutral":
            return self._hold(symbol, "no_trend", snapshots, confluence, details=details)

        direction = UP if trend == "up" else DOWN
        kind = DEMAND if direction == UP else SUPPLY
        price = entry_tf.last_close
        tol = cfg.zone_tolerance
        candidates = zones_containing(nearest_first(active_zones(entry_tf.zones, kind), kind), price, tol)
        details["active_zones"] = len(active_zones(entry_tf.zones, kind))
        if not candidates:
            return self._hold(symbol, "no_zone", snapshots, confluence, direction=direction, details=details)

        atr = self._atr(snapshots, entry_tf)
        bos = trend_tf.structure.bos
        if bos is not None and cfg.bos_htf_gate and not htf_aligned(snapshots.get(cfg.htf_timeframe), bos.direction):
            details["bos_rejected"] = "htf_misaligned"
            bos = None
        fib = None
        if cfg.use_impulse:
            if bos is not None and bos.direction == direction and bos.impulse is not None:
                impulse = bos.impulse
            else:
                impulse = dominant_impulse(trend_tf.structure.pivots, trend_tf.indicators.atr14, price)
            fib = fib_levels(impulse)
            details["impulse"] = None if impulse is None else {
                "direction": impulse.direction, "low": impulse.low, "high": impulse.high,
            }

        if direction == UP:
            targets = tuple(
                s.valid_high.price for s in (entry_tf.structure, trend_tf.structure) if s.valid_high is not None
            )
        else:
            targets = tuple(
                s.valid_low.price for s in (entry_tf.structure, trend_tf.structure) if s.valid_low is not None
            )

        band = None
        if cfg.use_confluence_bands:
            picked = self._entry_band(snapshots, trend_tf, direction, price, fib)
            if picked is not None:
                band, details["entry_band_source"] = picked

        chosen = None
        best_rr: Optional[float] = None
        for z in candidates:
            anchor = z.low * (1.0 - tol) if direction == UP else z.high * (1.0 + tol)
            plan = self.risk.build(direction, price, atr, StructuralLevels(anchor, targets, fib, None, band), tick_size)
            if plan is None:
                continue
            best_rr = plan.reward_risk if best_rr is None else max(best_rr, plan.reward_risk)
            if plan.reward_risk >= cfg.min_reward_risk:
                chosen = (z, plan)
                break
        if chosen is None:
            reason = "risk_unavailable" if best_rr is None else "reward_risk_below_min"
            details["reward_risk"] = best_rr
            return self._hold(symbol, reason, snapshots, confluence, direction=direction, details=details)

        zone, plan = chosen
        conf = cfg.base_confidence + cfg.agreement_bonus * confluence.agreement
        if price and zone.width / price <= cfg.tight_zone_pct:
            conf += cfg.tight_zone_bonus
        if plan.reward_risk >= cfg.high_rr:
            conf += cfg.high_rr_bonus
        bias_opposes = confluence.dominant_trend not in ("neutral", trend)
        bos_opposes = bos is not None and bos.direction != direction
        if bos is not None and bos.direction == direction:
            conf += cfg.bos_bonus
        if bias_opposes or bos_opposes:
            conf -= cfg.structure_penalty
        regime = volatility_regime(snapshots.get(cfg.regime_timeframe) or trend_tf, cfg.regime_lookback)
        if regime in ("low", "high"):
            conf -= cfg.volatility_penalty

        details.update(
            zone={"low": zone.low, "high": zone.high, "kind": zone.kind, "impulse_index": zone.impulse_index},
            reward_risk=plan.reward_risk,
            volatility_regime=regime,
            bos=None if bos is None else bos.direction,
            bos_liquidity_swept=None if bos is None else bos.liquidity_swept,
        )
        strong = confluence.agreement >= cfg.strong_agreement
        return self._emit(symbol, snapshots, direction, conf, plan, "zone_retest", confluence, details, strong=strong)
