from __future__ import annotations

from dataclasses import replace
from typing import Iterable, List, Optional, Sequence

from .indicators import is_finite_number
from .models import DEMAND, SUPPLY, Candle, Zone


def find_zones(
    candles: Sequence[Candle],
    atr_values: Sequence[Optional[float]],
    *,
    consolidation_bars: int = 3,
    impulse_mult: float = 1.5,
    consolidation_mult: float = 0.8,
) -> List[Zone]:
    """Consolidation-then-impulse zones, oldest first.

    The impulse body must exceed `impulse_mult` x ATR of the bar before it and
    each of the `consolidation_bars` bars before the impulse must have a range
    within `consolidation_mult` x that ATR. The zone spans the bar right before
    the impulse. The last bar is never an impulse candidate.
    """
    zones: List[Zone] = []
    for i in range(max(consolidation_bars, 1), len(candles) - 1):
        prior_atr = atr_values[i - 1] if i - 1 < len(atr_values) else None
        if not is_finite_number(prior_atr) or prior_atr <= 0:
            continue
        imp = candles[i]
        body = abs(imp.close - imp.open)
        if body <= impulse_mult * prior_atr:
            continue
        if imp.close > imp.open:
            kind = DEMAND
        elif imp.close < imp.open:
            kind = SUPPLY
        else:
            continue

        base = candles[i - consolidation_bars: i]
        if any((c.high - c.low) > consolidation_mult * prior_atr for c in base):
            continue
        anchor = candles[i - 1]
        zones.append(Zone(low=anchor.low, high=anchor.high, impulse_index=i, kind=kind))
    return refresh_validity(zones, candles)


def _invalidated(zone: Zone, candles: Sequence[Candle]) -> bool:
    for c in candles[zone.impulse_index + 1:]:
        if zone.kind == DEMAND and c.close < zone.low:
            return True
        if zone.kind == SUPPLY and c.close > zone.high:
            return True
    return False


def refresh_validity(zones: Iterable[Zone], candles: Sequence[Candle]) -> List[Zone]:
    """Recompute `valid` against the full series; a zone once crossed stays invalid."""
    return [replace(z, valid=z.valid and not _invalidated(z, candles)) for z in zones]


def active_zones(zones: Iterable[Zone], kind: str) -> List[Zone]:
    return [z for z in zones if z.valid and z.kind == kind]


def zones_containing(zones: Iterable[Zone], price: float, tolerance: float) -> List[Zone]:
    """Zones whose band, widened by `tolerance` (fraction of the edge), holds `price`."""
    out = []
    for z in zones:
        if z.low * (1.0 - tolerance) <= price <= z.high * (1.0 + tolerance):
            out.append(z)
    return out


def nearest_first(zones: Iterable[Zone], kind: str) -> List[Zone]:
    """Demand zones highest first, supply zones lowest first (closest to price from the trend side)."""
    if kind == DEMAND:
        return sorted(zones, key=lambda z: z.low, reverse=True)
    return sorted(zones, key=lambda z: z.high)


def nearest_zone(zones: Iterable[Zone], price: float) -> Optional[Zone]:
    """Zone whose midpoint is closest to `price`."""
    best: Optional[Zone] = None
    for z in zones:
        if best is None or abs(price - z.mid) < abs(price - best.mid):
            best = z
    return best


def find_fair_value_gaps(candles: Sequence[Candle]) -> List[Zone]:
    """Three-bar imbalances, oldest first.

    A bullish gap sits between the high of bar i-1 and the low of bar i+1 when
    the latter is higher; bearish mirrored. `impulse_index` is the middle bar.
    A gap is mitigated once a later bar (from i+2 on) trades through all of it.
    """
    gaps: List[Zone] = []
    for i in range(1, len(candles) - 1):
        prev, nxt = candles[i - 1], candles[i + 1]
        if nxt.low > prev.high:
            gaps.append(Zone(low=prev.high, high=nxt.low, impulse_index=i, kind=DEMAND, source="fvg"))
        if nxt.high < prev.low:
            gaps.append(Zone(low=nxt.high, high=prev.low, impulse_index=i, kind=SUPPLY, source="fvg"))
    return [replace(g, valid=not _gap_filled(g, candles)) for g in gaps]


def _gap_filled(gap: Zone, candles: Sequence[Candle]) -> bool:
    for c in candles[gap.impulse_index + 2:]:
        if c.low <= gap.low and c.high >= gap.high:
            return True
    return False


def find_order_blocks(
    candles: Sequence[Candle],
    atr_values: Sequence[Optional[float]],
    *,
    move_mult: float = 1.5,
    volume_factor: float = 0.8,
    volume_lookback: int = 20,
    keep: int = 10,
) -> List[Zone]:
    """Last same-colour bar before a strong move, still unmitigated, newest `keep`.

    A bullish block is an up bar whose next close gains more than `move_mult` x
    ATR and is followed within two bars by a close above its high, on volume
    above `volume_factor` x the recent mean. A block dies once the last close
    is beyond its far edge. Bars without volume never form a block.
    """
    n = len(candles)
    recent = [float(c.volume) for c in candles[-volume_lookback:] if is_finite_number(c.volume)]
    if n < 5 or not recent:
        return []
    avg_vol = sum(recent) / len(recent)

    blocks: List[Zone] = []
    for i in range(1, n - 2):
        cur, nxt = candles[i], candles[i + 1]
        if not is_finite_number(cur.volume) or cur.volume <= volume_factor * avg_vol:
            continue
        a = atr_values[i] if i < len(atr_values) and is_finite_number(atr_values[i]) else cur.close * 0.003
        follow = candles[i + 1: min(i + 3, n)]
        if cur.close > cur.open and nxt.close - cur.close > move_mult * a:
            if any(c.close > cur.high for c in follow):
                blocks.append(Zone(low=cur.low, high=cur.high, impulse_index=i, kind=DEMAND, source="order_block"))
        elif cur.close < cur.open and cur.close - nxt.close > move_mult * a:
            if any(c.close < cur.low for c in follow):
                blocks.append(Zone(low=cur.low, high=cur.high, impulse_index=i, kind=SUPPLY, source="order_block"))

    last_close = candles[-1].close
    live = [
        b for b in blocks
        if not (b.kind == DEMAND and last_close < b.low) and not (b.kind == SUPPLY and last_close > b.high)
    ]
    return live[-keep:]
