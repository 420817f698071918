from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Sequence

from .models import Candle, Confluence, Decision, TimeframeSnapshot, TradePlan


def _fmt_ms(ts_ms: Optional[int]) -> Optional[str]:
    if ts_ms is None:
        return None
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def _fmt_price(val: Optional[float]) -> str:
    if val is None:
        return "-"
    return f"{val:g}"


def _round(val: Optional[float], ndigits: int) -> Optional[float]:
    return None if val is None else round(float(val), ndigits)


def plan_to_dict(plan: TradePlan, side: str) -> Dict[str, Any]:
    return {
        "side": side,
        "entry": plan.entry_price,
        "entry_range": {"low": plan.entry_band_low, "high": plan.entry_band_high},
        "stop_loss": plan.stop_loss,
        "take_profit_1": plan.take_profit_1,
        "take_profit_2": plan.take_profit_2,
        "r_distance": plan.r_distance,
        "reward_risk": _round(plan.reward_risk, 3),
        "atr_used": plan.atr_used,
        "sl_distance_atr": _round(plan.r_distance / plan.atr_used, 2) if plan.atr_used else None,
        "tp1_source": plan.tp1_source,
        "tp2_source": plan.tp2_source,
        "tick_size": plan.tick_size,
        "confidence": _round(plan.confidence, 3),
        "confidence_label": plan.confidence_label,
        "profit_taking": {
            "tp1_close_percent": 50,
            "tp2_close_percent": 50,
            "breakeven_after_tp1": True,
        },
    }


def timeframe_to_dict(snap: TimeframeSnapshot, bars: int) -> Dict[str, Any]:
    st = snap.structure
    ind = snap.indicators
    return {
        "ready": snap.ready,
        "bars": bars,
        "last_close": snap.last_close,
        "signal": snap.signal,
        "score": snap.score,
        "trend": st.trend,
        "valid_high": st.valid_high.price if st.valid_high is not None else None,
        "valid_low": st.valid_low.price if st.valid_low is not None else None,
        "bos": st.bos.direction if st.bos is not None else None,
        "active_zones": sum(1 for z in snap.zones if z.valid),
        "open_gaps": sum(1 for g in snap.gaps if g.valid),
        "order_blocks": len(snap.order_blocks),
        "rsi14": _round(ind.rsi14, 2),
        "atr14": ind.atr14,
        "reasons": list(snap.reasons),
    }


def confluence_to_dict(c: Optional[Confluence]) -> Optional[Dict[str, Any]]:
    if c is None:
        return None
    return {
        "label": c.label,
        "buy_weight": _round(c.buy_weight, 4),
        "sell_weight": _round(c.sell_weight, 4),
        "vote_dominance": _round(c.vote_dominance, 4),
        "dominant_trend": c.dominant_trend,
        "agreement": c.agreement,
        "tally": {k: _round(v, 4) for k, v in c.tally.items()},
    }


def format_decision(
    decision: Decision,
    snapshots: Mapping[str, TimeframeSnapshot],
    series: Mapping[str, Sequence[Candle]],
) -> Dict[str, Any]:
    plan = decision.plan
    out: Dict[str, Any] = {
        "symbol": decision.symbol,
        "preset": decision.preset,
        "timestamp": _fmt_ms(decision.timestamp_ms),
        "last_price": decision.last_price,
        "final_signal": decision.signal,
        "direction": decision.direction,
        "confidence": _round(decision.confidence, 3),
        "confidence_label": decision.confidence_label,
        "execute_order": decision.actionable,
        "entry_price": None,
        "entry_range": None,
        "stop_loss": None,
        "take_profit_1": None,
        "take_profit_2": None,
        "r_distance": None,
        "reward_risk": None,
        "order_plan": None,
        "reason": decision.reason,
        "timeframes": {
            tf: timeframe_to_dict(snap, len(series.get(tf, ()))) for tf, snap in snapshots.items()
        },
        "confluence": confluence_to_dict(decision.confluence),
        "details": dict(decision.details),
    }
    if plan is not None:
        out.update(
            entry_price=plan.entry_price,
            entry_range={"low": plan.entry_band_low, "high": plan.entry_band_high},
            stop_loss=plan.stop_loss,
            take_profit_1=plan.take_profit_1,
            take_profit_2=plan.take_profit_2,
            r_distance=plan.r_distance,
            reward_risk=_round(plan.reward_risk, 3),
            order_plan=plan_to_dict(plan, decision.signal),
        )
    return out


def format_summary(decision: Decision) -> str:
    """One line for logs and the CLI."""
    parts = [
        f"{decision.symbol or '-'}",
        f"preset={decision.preset}",
        f"signal={decision.signal}",
        f"conf={decision.confidence:.3f}({decision.confidence_label})",
        f"price={_fmt_price(decision.last_price)}",
    ]
    plan = decision.plan
    if plan is not None:
        parts.append(
            f"entry={_fmt_price(plan.entry_price)} sl={_fmt_price(plan.stop_loss)} "
            f"tp1={_fmt_price(plan.take_profit_1)} tp2={_fmt_price(plan.take_profit_2)} rr={plan.reward_risk:.2f}"
        )
    if decision.reason:
        parts.append(f"reason={decision.reason}")
    return " | ".join(parts)
