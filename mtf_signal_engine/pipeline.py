from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from .config import TIMEFRAMES, StrategyConfig
from .cooldown import CooldownGate
from .decision import SignalDecisionEngine
from .formatters import format_decision, format_summary
from .indicators import is_finite_number
from .ingestion import normalize_candles
from .models import Candle, TimeframeSnapshot
from .risk import infer_tick_size
from .timeframe import analyze_timeframe

log = logging.getLogger("pipeline")

TICK_KEYS = ("tickSize", "priceTickSize")


def _stable_strategy_signature(cfg: StrategyConfig) -> str:
    sig = cfg.signature()
    payload = json.dumps(sig, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def provided_tick_size(payload: Mapping[str, Any]) -> Optional[float]:
    for key in TICK_KEYS:
        v = payload.get(key)
        if isinstance(v, str):
            v = v.strip() or None
        if is_finite_number(v) and float(v) > 0:
            return float(v)
    return None


class SignalPipeline:
    """Payload in, response dict out. One instance may serve many requests."""

    def __init__(self, cfg: StrategyConfig, cooldown_gate: Optional[CooldownGate] = None):
        self.cfg = cfg
        self.engine = SignalDecisionEngine(cfg)
        self.cooldown = cooldown_gate
        self.strategy_sig = _stable_strategy_signature(cfg)

    def ingest(self, payload: Mapping[str, Any]) -> Dict[str, Tuple[Candle, ...]]:
        return {
            tf: normalize_candles(payload.get(f"kline_{tf}"), self.cfg.max_bars.get(tf))
            for tf in TIMEFRAMES
        }

    def snapshots(self, series: Mapping[str, Tuple[Candle, ...]]) -> Dict[str, TimeframeSnapshot]:
        return {tf: analyze_timeframe(tf, series[tf], self.cfg) for tf in TIMEFRAMES}

    def tick_size(self, payload: Mapping[str, Any], series: Mapping[str, Tuple[Candle, ...]]) -> float:
        """Payload tick when given, else inferred from the ATR timeframe, then the first non-empty one."""
        tick = provided_tick_size(payload)
        if tick is not None:
            return tick
        for tf in (self.cfg.atr_timeframe,) + TIMEFRAMES:
            if series.get(tf):
                return infer_tick_size(series[tf], self.cfg.tick_inference_bars)
        return infer_tick_size(())

    def analyze(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        symbol = payload.get("symbol")
        symbol = str(symbol) if symbol is not None else None

        series = self.ingest(payload)
        snaps = self.snapshots(series)
        tick = self.tick_size(payload, series)
        decision = self.engine.decide(symbol, snaps, series, tick)
        if self.cooldown is not None:
            decision = self.cooldown.apply(decision)

        log.info(
            "analyzed %s bars=%s",
            format_summary(decision),
            ",".join(f"{tf}:{len(series[tf])}" for tf in TIMEFRAMES),
        )
        out = format_decision(decision, snaps, series)
        out["strategy_sig"] = self.strategy_sig
        return out
