from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import List, Mapping, Optional, Sequence, Tuple

from .config import StrategyConfig
from .indicators import is_finite_number
from .models import UP, DOWN, Candle, FibLevels, TradePlan

log = logging.getLogger("risk")

MIN_TICK = 0.01
MAX_TICK = 1.0

# overlapping pairs tried in order, then single bands by priority
BAND_PAIRS = (
    ("order_block", "fib"),
    ("order_block", "fvg"),
    ("fvg", "fib"),
    ("order_block", "ema"),
    ("fib", "ema"),
)
BAND_PRIORITY = ("order_block", "fvg", "fib", "ema")


@dataclass(frozen=True)
class StructuralLevels:
    stop_anchor: Optional[float] = None
    targets: Tuple[float, ...] = ()
    fib: Optional[FibLevels] = None
    band_anchor: Optional[float] = None
    band: Optional[Tuple[float, float]] = None


def _overlap(a: Optional[Tuple[float, float]], b: Optional[Tuple[float, float]]) -> Optional[Tuple[float, float]]:
    if a is None or b is None:
        return None
    lo, hi = max(a[0], b[0]), min(a[1], b[1])
    return (lo, hi) if lo <= hi else None


def confluence_band(candidates: Mapping[str, Optional[Tuple[float, float]]]) -> Optional[Tuple[Tuple[float, float], str]]:
    """Pick the entry band from named candidate bands; returns (band, source)."""
    bands = {name: (min(b), max(b)) for name, b in candidates.items() if b is not None}
    for a, b in BAND_PAIRS:
        both = _overlap(bands.get(a), bands.get(b))
        if both is not None:
            return both, f"{a}+{b}"
    for name in BAND_PRIORITY:
        if name in bands:
            return bands[name], name
    return None


def infer_tick_size(candles: Sequence[Candle], bars: int = 200) -> float:
    """Smallest nonzero step among recent OHLC prices, snapped to a power of ten in [0.01, 1]."""
    vals: List[float] = []
    for c in candles[-bars:]:
        for v in (c.open, c.high, c.low, c.close):
            if is_finite_number(v):
                vals.append(float(v))
    if len(vals) < 2:
        return MIN_TICK
    vals.sort()
    step = min((b - a for a, b in zip(vals, vals[1:]) if b - a > 0), default=0.0)
    if step <= 0 or not math.isfinite(step):
        return MIN_TICK
    exp = max(0, min(8, math.ceil(-math.log10(step))))
    return max(MIN_TICK, min(MAX_TICK, 10.0 ** -exp))


def _clean(x: float) -> float:
    return round(x, 10)


def round_to_tick(p: float, tick: float) -> float:
    return _clean(round(p / tick) * tick)


def floor_to_tick(p: float, tick: float) -> float:
    return _clean(math.floor(p / tick + 1e-9) * tick)


def ceil_to_tick(p: float, tick: float) -> float:
    return _clean(math.ceil(p / tick - 1e-9) * tick)


def cap_distance(value: float, base: float, max_pct: float) -> float:
    """Pull `value` back to at most `max_pct` of `base` away from it (0 disables)."""
    if max_pct <= 0:
        return value
    cap = abs(base) * max_pct
    if abs(value - base) > cap:
        return base + math.copysign(cap, value - base)
    return value


class RiskPlanBuilder:
    def __init__(self, cfg: StrategyConfig):
        self.cfg = cfg

    def _band(self, direction: str, last_price: float, atr: float, levels: StructuralLevels) -> Tuple[float, float]:
        cfg = self.cfg
        pad = cfg.band_pad_atr * atr
        fib = levels.fib
        if levels.band is not None:
            lo, hi = min(levels.band) - pad, max(levels.band) + pad
        elif cfg.use_fib_entry and fib is not None and fib.direction == direction:
            lo, hi = fib.golden_pocket()
            lo, hi = lo - pad, hi + pad
        else:
            anchor = levels.band_anchor if is_finite_number(levels.band_anchor) else last_price
            lo = min(anchor, last_price) - pad
            hi = max(anchor, last_price) + pad

        min_w = cfg.band_min_atr * atr
        max_w = cfg.band_max_atr * atr
        width = hi - lo
        if not math.isfinite(width) or width <= 0:
            return last_price - min_w / 2.0, last_price + min_w / 2.0
        mid = (lo + hi) / 2.0
        if width < min_w:
            return mid - min_w / 2.0, mid + min_w / 2.0
        if max_w > 0 and width > max_w:
            return mid - max_w / 2.0, mid + max_w / 2.0
        return lo, hi

    def _stop(self, direction: str, entry: float, atr: float, levels: StructuralLevels) -> Optional[float]:
        cfg = self.cfg
        sign = 1.0 if direction == UP else -1.0
        candidates: List[float] = []
        if cfg.sl_atr_multiple > 0:
            candidates.append(entry - sign * cfg.sl_atr_multiple * atr)
        if is_finite_number(levels.stop_anchor):
            s = levels.stop_anchor - sign * cfg.stop_buffer_atr * atr
            if (s < entry) if direction == UP else (s > entry):
                candidates.append(s)
        if not candidates:
            return None
        return min(candidates) if direction == UP else max(candidates)

    def _targets(self, direction: str, entry: float, risk: float, levels: StructuralLevels) -> Tuple[float, str, float, str]:
        cfg = self.cfg
        sign = 1.0 if direction == UP else -1.0

        def beyond(x: float, ref: float) -> bool:
            return x > ref if direction == UP else x < ref

        ordered = sorted(
            (t for t in levels.targets if is_finite_number(t) and beyond(t, entry)),
            key=lambda t: sign * t,
        )
        fib = levels.fib if levels.fib is not None and levels.fib.direction == direction else None

        if ordered:
            tp1, tp1_src = ordered[0], "structure"
        elif fib is not None and beyond(fib.ext_1272, entry):
            tp1, tp1_src = fib.ext_1272, "fib_1272"
        else:
            tp1, tp1_src = entry + sign * cfg.tp1_r * risk, "r_multiple"

        further = [t for t in ordered if beyond(t, tp1)]
        if further:
            tp2, tp2_src = further[0], "structure"
        elif fib is not None and beyond(fib.ext_1618, tp1):
            tp2, tp2_src = fib.ext_1618, "fib_1618"
        elif tp1_src != "r_multiple" or cfg.tp2_r <= cfg.tp1_r:
            tp2, tp2_src = tp1 + cfg.tp2_extension * (tp1 - entry), "extension"
        else:
            tp2, tp2_src = entry + sign * cfg.tp2_r * risk, "r_multiple"
        return tp1, tp1_src, tp2, tp2_src

    def build(
        self,
        direction: Optional[str],
        last_price: Optional[float],
        atr: Optional[float],
        levels: Optional[StructuralLevels] = None,
        tick_size: Optional[float] = None,
    ) -> Optional[TradePlan]:
        if direction not in (UP, DOWN):
            return None
        if not is_finite_number(last_price) or last_price <= 0:
            return None
        if not is_finite_number(atr) or atr <= 0:
            return None
        cfg = self.cfg
        levels = levels or StructuralLevels()

        band_lo, band_hi = self._band(direction, last_price, atr, levels)
        entry = last_price if cfg.entry_mode == "last" else (band_lo + band_hi) / 2.0

        sl = self._stop(direction, entry, atr, levels)
        if sl is None:
            return None
        sl = cap_distance(sl, entry, cfg.max_sl_pct)
        risk = abs(entry - sl)
        if not math.isfinite(risk) or risk <= 0:
            return None

        tp1, tp1_src, tp2, tp2_src = self._targets(direction, entry, risk, levels)
        tp1 = cap_distance(tp1, entry, cfg.max_tp_pct)
        tp2 = cap_distance(tp2, entry, cfg.max_tp_pct)
        rr = abs(tp1 - entry) / risk

        plan = TradePlan(
            direction=direction,
            entry_price=entry,
            entry_band_low=band_lo,
            entry_band_high=band_hi,
            stop_loss=sl,
            take_profit_1=tp1,
            take_profit_2=tp2,
            r_distance=risk,
            reward_risk=rr,
            atr_used=atr,
            tp1_source=tp1_src,
            tp2_source=tp2_src,
        )
        if tick_size is not None and is_finite_number(tick_size) and tick_size > 0:
            plan = quantize_plan(plan, float(tick_size))
            if plan is None:
                log.debug("plan_collapsed dir=%s entry=%.8f sl=%.8f tick=%s", direction, entry, sl, tick_size)
                return None
            rr = plan.reward_risk
        log.debug(
            "plan dir=%s entry=%.6f sl=%.6f tp1=%.6f(%s) tp2=%.6f(%s) rr=%.3f",
            direction, plan.entry_price, plan.stop_loss, plan.take_profit_1, tp1_src,
            plan.take_profit_2, tp2_src, rr,
        )
        return plan


def quantize_plan(plan: TradePlan, tick: float) -> Optional[TradePlan]:
    """Snap a plan to `tick` and recompute R and reward:risk from the snapped prices.

    Entry goes to the nearest tick, long SL/TPs are floored and short ones
    ceiled, the band is widened outward. Returns None when the stop or TP1 no
    longer sits strictly on its side of the entry.
    """
    snap = floor_to_tick if plan.direction == UP else ceil_to_tick
    q = replace(
        plan,
        entry_price=round_to_tick(plan.entry_price, tick),
        entry_band_low=floor_to_tick(plan.entry_band_low, tick),
        entry_band_high=ceil_to_tick(plan.entry_band_high, tick),
        stop_loss=snap(plan.stop_loss, tick),
        take_profit_1=snap(plan.take_profit_1, tick),
        take_profit_2=snap(plan.take_profit_2, tick),
        tick_size=tick,
    )
    sign = 1.0 if q.direction == UP else -1.0
    risk = sign * (q.entry_price - q.stop_loss)
    reward = sign * (q.take_profit_1 - q.entry_price)
    if risk <= 0 or reward <= 0:
        return None
    return replace(q, r_distance=_clean(risk), reward_risk=reward / risk)
