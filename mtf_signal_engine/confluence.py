from __future__ import annotations

from typing import Callable, Dict, Iterable, Optional, Sequence

from .models import BUY, HOLD, SELL, SIGNAL_LABELS, STRONG_BUY, STRONG_SELL, Confluence, TimeframeSnapshot


def score_confluence(
    snapshots: Iterable[TimeframeSnapshot],
    weight: Callable[[str], float],
    *,
    strong_multiplier: float = 1.5,
    min_weight: float = 1.0,
    strong_min: float = 2.0,
    reference_trend: Optional[str] = None,
    reference_timeframe: Optional[str] = None,
    agreement_timeframes: Sequence[str] = ("1d", "1h"),
) -> Confluence:
    """Weighted vote of the ready timeframes.

    Equal buy and sell weight is always HOLD. `agreement` counts the ready
    `agreement_timeframes` other than `reference_timeframe` whose structure
    trend equals `reference_trend`, capped at 3.
    """
    ready = [s for s in snapshots if s.ready]
    tally: Dict[str, float] = {label: 0.0 for label in SIGNAL_LABELS}
    for s in ready:
        tally[s.signal] += weight(s.timeframe)

    buy = tally[BUY] + strong_multiplier * tally[STRONG_BUY]
    sell = tally[SELL] + strong_multiplier * tally[STRONG_SELL]
    total = sum(tally.values())

    label = HOLD
    if buy > sell:
        if tally[STRONG_BUY] >= strong_min:
            label = STRONG_BUY
        elif buy >= min_weight:
            label = BUY
    elif sell > buy:
        if tally[STRONG_SELL] >= strong_min:
            label = STRONG_SELL
        elif sell >= min_weight:
            label = SELL

    dominance = abs(buy - sell) / total if total > 0 else 0.0
    dominance = max(0.0, min(1.0, dominance))

    dominant = "neutral"
    if buy > sell:
        dominant = "up"
    elif sell > buy:
        dominant = "down"

    agreement = 0
    if reference_trend is not None and reference_trend != "neutral":
        for s in ready:
            if s.timeframe == reference_timeframe or s.timeframe not in agreement_timeframes:
                continue
            if s.structure.trend == reference_trend:
                agreement += 1
        agreement = min(agreement, 3)

    return Confluence(
        tally=tally,
        buy_weight=buy,
        sell_weight=sell,
        label=label,
        vote_dominance=dominance,
        dominant_trend=dominant,
        agreement=agreement,
    )
