from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, Optional, Tuple
import logging
import os
import yaml

log = logging.getLogger("config")

TIMEFRAMES: Tuple[str, ...] = ("15m", "1h", "4h", "1d")

TREND = "trend"
STRUCTURE = "structure"


_TRUTHY = frozenset(("1", "true", "yes", "y", "on"))


def _env_override(value: Any, env_key: str) -> Any:
    """$env_key coerced to the type of `value`; unset or unparsable keeps `value`."""
    raw = os.getenv(env_key)
    if raw is None:
        return value
    if isinstance(value, bool):
        return raw.strip().lower() in _TRUTHY
    if isinstance(value, (int, float)):
        try:
            return type(value)(raw.strip())
        except ValueError:
            log.warning("env_override_ignored key=%s raw=%r", env_key, raw)
            return value
    return raw


def _per_tf(v15: Any, v1h: Any, v4h: Any, v1d: Any) -> Dict[str, Any]:
    return {"15m": v15, "1h": v1h, "4h": v4h, "1d": v1d}


@dataclass
class ScoreWeights:
    price_vs_ema: int = 8
    ema_cross: int = 6
    macd: int = 8
    supertrend: int = 7
    rsi_extreme: int = 2
    volume_spike: int = 5
    volume_drought: int = 2
    volume_spike_mult: float = 1.5
    volume_drought_mult: float = 0.5
    strong_threshold: int = 26
    weak_threshold: int = 10


@dataclass
class StrategyConfig:
    name: str = TREND
    strategy: str = TREND  # trend | structure

    # Ingestion / per-timeframe analysis
    max_bars: Dict[str, int] = field(default_factory=lambda: _per_tf(400, 300, 250, 200))
    min_bars: int = 20
    pivot_lookback: Dict[str, int] = field(default_factory=lambda: _per_tf(2, 2, 2, 2))
    ema_fast: int = 20
    ema_slow: int = 50
    rsi_len: int = 14
    atr_len: int = 14
    supertrend_period: int = 10
    supertrend_mult: float = 3.0
    score: ScoreWeights = field(default_factory=ScoreWeights)

    # Zones
    zone_consolidation_bars: int = 3
    zone_impulse_mult: float = 1.5
    zone_consolidation_mult: float = 0.8

    # Break of structure
    use_bos: bool = False
    bos_min_hold_bars: int = 2
    bos_volume_ratio_min: float = 0.9
    bos_volume_lookback: int = 20
    bos_htf_gate: bool = False
    htf_timeframe: str = "1d"

    # Confluence
    tf_weights: Dict[str, float] = field(default_factory=lambda: _per_tf(1.0, 1.0, 1.0, 1.0))
    strong_multiplier: float = 1.5
    confluence_min_weight: float = 1.0
    confluence_strong_min: float = 2.0

    # Decision (common)
    min_confidence: float = 0.70
    strong_confidence: float = 0.85
    min_reward_risk: float = 1.2
    regime_timeframe: str = "4h"
    regime_lookback: int = 120
    mtf_bonus: float = 0.05
    structure_penalty: float = 0.10
    volatility_penalty: float = 0.05

    # Decision (trend/bias-gated)
    rsi_long_block: float = 75.0
    rsi_short_block: float = 25.0
    require_pullback: bool = True
    pullback_lookback: int = 3
    require_breakout: bool = False
    breakout_lookback: int = 8
    breakout_range_mult: float = 1.1
    breakout_strong_mult: float = 1.4
    breakout_avg_tr_bars: int = 20
    hold_confidence_factor: float = 0.5

    # Decision (structure/zone-gated)
    trend_timeframes: Tuple[str, ...] = ("4h", "1h", "15m")
    entry_timeframes: Tuple[str, ...] = ("15m", "1h")
    zone_tolerance: float = 0.001
    base_confidence: float = 0.55
    agreement_bonus: float = 0.10
    tight_zone_pct: float = 0.005
    tight_zone_bonus: float = 0.05
    high_rr: float = 3.5
    high_rr_bonus: float = 0.05
    bos_bonus: float = 0.10
    strong_agreement: int = 1
    agreement_timeframes: Tuple[str, ...] = ("1d", "1h")
    use_impulse: bool = False
    use_confluence_bands: bool = False
    band_timeframes: Tuple[str, ...] = ("4h", "1h")
    order_block_move_mult: float = 1.5

    # Risk plan
    atr_timeframe: str = "4h"
    use_fib_entry: bool = False
    entry_mode: str = "last"  # last | band_mid
    band_pad_atr: float = 0.2
    band_min_atr: float = 0.15
    band_max_atr: float = 0.6
    sl_atr_multiple: float = 1.5
    stop_buffer_atr: float = 0.0
    tp1_r: float = 1.3
    tp2_r: float = 2.0
    tp2_extension: float = 0.5
    max_sl_pct: float = 0.03
    max_tp_pct: float = 0.05
    tick_inference_bars: int = 200

    def weight(self, timeframe: str) -> float:
        return float(self.tf_weights.get(timeframe, 0.0))

    def signature(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "strategy": self.strategy,
            "min_bars": self.min_bars,
            "pivot_lookback": dict(self.pivot_lookback),
            "tf_weights": dict(self.tf_weights),
            "use_bos": self.use_bos,
            "bos_htf_gate": self.bos_htf_gate,
            "agreement_timeframes": list(self.agreement_timeframes),
            "use_confluence_bands": self.use_confluence_bands,
            "min_confidence": self.min_confidence,
            "strong_confidence": self.strong_confidence,
            "min_reward_risk": self.min_reward_risk,
            "rsi_long_block": self.rsi_long_block,
            "rsi_short_block": self.rsi_short_block,
            "require_pullback": self.require_pullback,
            "require_breakout": self.require_breakout,
            "zone_tolerance": self.zone_tolerance,
            "entry_mode": self.entry_mode,
            "sl_atr_multiple": self.sl_atr_multiple,
            "tp1_r": self.tp1_r,
            "tp2_r": self.tp2_r,
            "max_sl_pct": self.max_sl_pct,
            "max_tp_pct": self.max_tp_pct,
        }


# Overrides applied on top of StrategyConfig defaults.
PRESETS: Dict[str, Dict[str, object]] = {
    "trend": {
        "name": "trend",
        "strategy": TREND,
    },
    "scalp": {
        "name": "scalp",
        "strategy": TREND,
        "tf_weights": _per_tf(3.0, 1.5, 0.5, 0.2),
        "rsi_long_block": 80.0,
        "rsi_short_block": 20.0,
        "require_pullback": False,
        "require_breakout": True,
        "hold_confidence_factor": 0.6,
        "min_reward_risk": 0.9,
        "sl_atr_multiple": 1.0,
        "tp1_r": 1.0,
        "tp2_r": 1.6,
        "regime_timeframe": "15m",
    },
    "structure": {
        "name": "structure",
        "strategy": STRUCTURE,
        "min_confidence": 0.5,
        "max_bars": _per_tf(500, 500, 500, 500),
        "min_reward_risk": 2.5,
        "sl_atr_multiple": 0.0,
        "stop_buffer_atr": 0.0,
        "tp1_r": 3.0,
        "tp2_r": 4.5,
        "max_sl_pct": 0.05,
        "max_tp_pct": 0.15,
        "atr_timeframe": "15m",
    },
    "swing": {
        "name": "swing",
        "strategy": STRUCTURE,
        "min_confidence": 0.5,
        "max_bars": _per_tf(500, 500, 500, 300),
        "pivot_lookback": _per_tf(3, 5, 6, 3),
        "use_bos": True,
        "bos_htf_gate": True,
        "use_impulse": True,
        "use_confluence_bands": True,
        "use_fib_entry": True,
        "entry_mode": "band_mid",
        "min_reward_risk": 2.0,
        "band_pad_atr": 0.1,
        "band_min_atr": 0.2,
        "band_max_atr": 1.5,
        "sl_atr_multiple": 1.0,
        "stop_buffer_atr": 0.25,
        "tp1_r": 2.5,
        "tp2_r": 4.0,
        "max_sl_pct": 0.10,
        "max_tp_pct": 0.20,
        "atr_timeframe": "4h",
    },
}


def build_strategy(preset: str, overrides: Optional[Dict[str, Any]] = None) -> StrategyConfig:
    if preset not in PRESETS:
        raise ValueError(f"unknown preset {preset!r}; expected one of {sorted(PRESETS)}")
    values: Dict[str, Any] = dict(PRESETS[preset])
    values.update(overrides or {})

    known = {f.name for f in fields(StrategyConfig)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValueError(f"unknown strategy keys: {unknown}")
    if isinstance(values.get("score"), dict):
        values["score"] = ScoreWeights(**values["score"])
    for key in ("trend_timeframes", "entry_timeframes", "agreement_timeframes", "band_timeframes"):
        if key in values:
            values[key] = tuple(values[key])

    cfg = replace(StrategyConfig(), **values)
    _validate(cfg)
    return cfg


def _validate(cfg: StrategyConfig) -> None:
    if cfg.strategy not in (TREND, STRUCTURE):
        raise ValueError(f"unknown decision strategy {cfg.strategy!r}")
    if cfg.entry_mode not in ("last", "band_mid"):
        raise ValueError(f"unknown entry_mode {cfg.entry_mode!r}")
    for tf in list(cfg.tf_weights) + list(cfg.pivot_lookback) + list(cfg.max_bars):
        if tf not in TIMEFRAMES:
            raise ValueError(f"invalid timeframe {tf!r}")
    singles = (cfg.regime_timeframe, cfg.atr_timeframe, cfg.htf_timeframe)
    for tf in singles + cfg.trend_timeframes + cfg.entry_timeframes + cfg.agreement_timeframes + cfg.band_timeframes:
        if tf not in TIMEFRAMES:
            raise ValueError(f"invalid timeframe {tf!r}")
    if cfg.min_bars < 1:
        raise ValueError("min_bars must be >= 1")


@dataclass
class AppConfig:
    name: str = "MTF Signal Engine"
    log_level: str = "INFO"


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    default_preset: str = "trend"


@dataclass
class CooldownConfig:
    enabled: bool = True
    window_s: int = 6 * 3600


@dataclass
class Config:
    app: AppConfig
    server: ServerConfig
    cooldown: CooldownConfig
    strategy_overrides: Dict[str, Dict[str, Any]]

    def strategy(self, preset: Optional[str] = None) -> StrategyConfig:
        name = preset or self.server.default_preset
        return build_strategy(name, self.strategy_overrides.get(name))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "app": asdict(self.app),
            "server": asdict(self.server),
            "cooldown": asdict(self.cooldown),
            "strategy_overrides": dict(self.strategy_overrides),
        }


def default_config() -> Config:
    return _apply_env(
        Config(
            app=AppConfig(),
            server=ServerConfig(),
            cooldown=CooldownConfig(),
            strategy_overrides={},
        )
    )


def load_config(path: Optional[str]) -> Config:
    if not path:
        return default_config()
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    app = raw.get("app", {})
    server = raw.get("server", {})
    cooldown = raw.get("cooldown", {})
    overrides = raw.get("strategies", {}) or {}

    cfg = Config(
        app=AppConfig(**app),
        server=ServerConfig(**server),
        cooldown=CooldownConfig(**cooldown),
        strategy_overrides={str(k): dict(v or {}) for k, v in overrides.items()},
    )
    return _apply_env(cfg)


def _apply_env(cfg: Config) -> Config:
    # env overrides (useful on servers)
    cfg.server.default_preset = _env_override(cfg.server.default_preset, "SIGNAL_PRESET")
    cfg.server.port = _env_override(cfg.server.port, "SIGNAL_PORT")
    cfg.app.log_level = _env_override(cfg.app.log_level, "SIGNAL_LOG_LEVEL")
    cfg.cooldown.enabled = _env_override(cfg.cooldown.enabled, "COOLDOWN_ENABLED")

    # fail at startup rather than on the first request
    for name in set(PRESETS) | set(cfg.strategy_overrides):
        build_strategy(name, cfg.strategy_overrides.get(name))
    if cfg.server.default_preset not in PRESETS:
        raise ValueError(f"unknown default preset {cfg.server.default_preset!r}")
    return cfg


def log_strategy_signature(cfg: StrategyConfig) -> None:
    log.info("strategy preset=%s signature=%s", cfg.name, cfg.signature())
