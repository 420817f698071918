import json

from mtf_signal_engine.config import build_strategy
from mtf_signal_engine.cooldown import CooldownGate, InMemoryCooldownStore
from mtf_signal_engine.models import DOWN, HOLD, SIGNAL_LABELS, STRONG_BUY, STRONG_SELL, UP, Candle
from mtf_signal_engine.pipeline import SignalPipeline, provided_tick_size

T0 = 1_700_000_000_000
M15 = 15 * 60 * 1000
H1 = 60 * 60 * 1000
H4 = 4 * H1


def _bars_from_closes(closes, wick, volume=100.0):
    out = []
    prev = closes[0]
    for c in closes:
        out.append((prev, max(prev, c) + wick, min(prev, c) - wick, c, volume))
        prev = c
    return out


def _rows(bars, step):
    return [[T0 + i * step, o, h, l, c, v] for i, (o, h, l, c, v) in enumerate(bars)]


def _mirror(bars, axis=300.0):
    return [(axis - o, axis - l, axis - h, axis - c, v) for (o, h, l, c, v) in bars]


def uptrend_4h():
    # steady climb of 0.4/bar with a shallow dip every sixth bar; ATR ~1.07
    closes = [90.0 + 0.4 * i - (0.6 if i % 6 == 5 else 0.0) for i in range(121)]
    return _bars_from_closes(closes, 0.3)


def pullback_1h():
    # choppy drift up, one bar dips through EMA20, the last bar reclaims it
    closes = [130.0 + 0.1 * i + (0.2 if i % 2 else -0.2) for i in range(70)]
    bars = _bars_from_closes(closes, 0.2)
    bars.append((closes[-1], closes[-1] + 0.1, 135.5, 135.8, 100.0))
    bars.append((135.8, 137.4, 135.7, 137.2, 100.0))
    return bars


def breakout_15m():
    # tight range around 137, then a wide bullish bar closing above the range
    closes = [137.0 + (0.1 if i % 2 else -0.1) for i in range(59)]
    bars = _bars_from_closes(closes, 0.1)
    bars.append((136.95, 137.9, 136.9, 137.8, 300.0))
    return bars


def bullish_payload(**extra):
    payload = {
        "symbol": "BTCUSDT",
        "tickSize": 0.01,
        "kline_4h": _rows(uptrend_4h(), H4),
        "kline_1h": _rows(pullback_1h(), H1),
        "kline_15m": _rows(breakout_15m(), M15),
    }
    payload.update(extra)
    return payload


def bearish_payload():
    return {
        "symbol": "BTCUSDT",
        "tickSize": 0.01,
        "kline_4h": _rows(_mirror(uptrend_4h()), H4),
        "kline_1h": _rows(_mirror(pullback_1h()), H1),
        "kline_15m": _rows(_mirror(breakout_15m()), M15),
    }


def test_bullish_alignment_produces_long_plan():
    out = SignalPipeline(build_strategy("trend")).analyze(bullish_payload())
    assert out["direction"] == UP
    assert out["final_signal"] == STRONG_BUY
    assert out["confidence"] >= 0.7
    assert out["execute_order"] is True
    assert out["reason"] == "pullback_trigger"
    assert out["stop_loss"] < out["entry_price"] < out["take_profit_1"] < out["take_profit_2"]
    assert out["entry_price"] == 137.8
    assert out["reward_risk"] >= 1.2
    plan = out["order_plan"]
    assert plan["side"] == STRONG_BUY
    assert plan["tick_size"] == 0.01
    assert plan["profit_taking"]["breakeven_after_tp1"] is True
    assert out["details"]["pullback"] is True
    assert out["details"]["breakout"] is True
    assert out["timeframes"]["1d"]["ready"] is False
    assert isinstance(out["timeframes"]["4h"]["open_gaps"], int)
    assert isinstance(out["timeframes"]["4h"]["order_blocks"], int)
    assert len(out["strategy_sig"]) == 64


def test_bearish_mirror_produces_short_plan():
    out = SignalPipeline(build_strategy("trend")).analyze(bearish_payload())
    assert out["direction"] == DOWN
    assert out["final_signal"] == STRONG_SELL
    assert out["confidence"] >= 0.7
    assert out["stop_loss"] > out["entry_price"] > out["take_profit_1"] > out["take_profit_2"]


def test_empty_payload_is_insufficient_data():
    out = SignalPipeline(build_strategy("trend")).analyze({"symbol": "BTCUSDT"})
    assert out["final_signal"] == HOLD
    assert out["confidence"] == 0.0
    assert out["order_plan"] is None
    assert out["reason"] == "insufficient_data"
    assert out["last_price"] is None
    assert out["execute_order"] is False
    for key in ("entry_price", "stop_loss", "take_profit_1", "take_profit_2"):
        assert out[key] is None


def test_fewer_than_min_bars_holds_with_null_plan():
    payload = {
        "kline_4h": _rows(uptrend_4h()[:10], H4),
        "kline_1h": _rows(pullback_1h()[:10], H1),
        "kline_15m": _rows(breakout_15m()[:10], M15),
    }
    out = SignalPipeline(build_strategy("trend")).analyze(payload)
    assert out["final_signal"] == HOLD
    assert out["order_plan"] is None
    assert out["reason"] == "insufficient_data"


def test_missing_required_timeframe():
    payload = bullish_payload()
    del payload["kline_15m"]
    out = SignalPipeline(build_strategy("trend")).analyze(payload)
    assert out["final_signal"] == HOLD
    assert out["reason"] == "insufficient_data"
    assert out["details"]["missing"] == ["15m"]


def test_identical_input_identical_output():
    pipeline = SignalPipeline(build_strategy("trend"))
    first = pipeline.analyze(bullish_payload())
    second = pipeline.analyze(bullish_payload())
    assert first == second


def test_string_encoded_fields_match_native():
    pipeline = SignalPipeline(build_strategy("trend"))
    native = bullish_payload()
    encoded = {k: (json.dumps(v) if k.startswith("kline_") else v) for k, v in native.items()}
    assert pipeline.analyze(encoded) == pipeline.analyze(native)


def test_confidence_always_within_unit_interval():
    for preset in ("trend", "scalp", "structure", "swing"):
        pipeline = SignalPipeline(build_strategy(preset))
        for payload in (bullish_payload(), bearish_payload(), {}):
            out = pipeline.analyze(payload)
            assert 0.0 <= out["confidence"] <= 1.0
            assert out["final_signal"] in SIGNAL_LABELS
            if out["final_signal"] == HOLD:
                assert out["order_plan"] is None


def test_cooldown_suppresses_repeat_signal():
    clock = [T0]
    gate = CooldownGate(InMemoryCooldownStore(), window_s=6 * 3600, clock=lambda: clock[0])
    pipeline = SignalPipeline(build_strategy("trend"), gate)

    assert pipeline.analyze(bullish_payload())["execute_order"] is True
    clock[0] += H1
    repeat = pipeline.analyze(bullish_payload())
    assert repeat["final_signal"] == HOLD
    assert repeat["reason"] == "cooldown"
    assert repeat["order_plan"] is None

    clock[0] += 6 * H1
    assert pipeline.analyze(bullish_payload())["execute_order"] is True


def test_tick_size_from_payload_or_inferred():
    assert provided_tick_size({"tickSize": "0.5"}) == 0.5
    assert provided_tick_size({"priceTickSize": 0.001}) == 0.001
    assert provided_tick_size({"tickSize": ""}) is None
    assert provided_tick_size({"tickSize": -1}) is None

    payload = bullish_payload()
    del payload["tickSize"]
    out = SignalPipeline(build_strategy("trend")).analyze(payload)
    assert out["order_plan"]["tick_size"] in (0.01, 0.1, 1.0)


def test_inferred_tick_prefers_atr_timeframe():
    series = {
        "15m": (Candle(open_time_ms=T0, open=100.0, high=100.01, low=99.99, close=100.0),),
        "1h": (),
        "4h": (Candle(open_time_ms=T0, open=100.0, high=101.0, low=99.0, close=100.0),),
        "1d": (),
    }
    assert SignalPipeline(build_strategy("trend")).tick_size({}, series) == 1.0
    assert SignalPipeline(build_strategy("structure")).tick_size({}, series) == 0.01
    assert SignalPipeline(build_strategy("trend")).tick_size({"tickSize": 0.5}, series) == 0.5
    assert SignalPipeline(build_strategy("trend")).tick_size({}, {tf: () for tf in series}) == 0.01


def _scaled(bars, k):
    return [(o * k, h * k, l * k, c * k, v) for (o, h, l, c, v) in bars]


def test_sub_cent_prices_without_tick_hold_instead_of_collapsing():
    k = 1.0 / 1500.0
    payload = {
        "symbol": "PEPEUSDT",
        "kline_4h": _rows(_scaled(uptrend_4h(), k), H4),
        "kline_1h": _rows(_scaled(pullback_1h(), k), H1),
        "kline_15m": _rows(_scaled(breakout_15m(), k), M15),
    }
    out = SignalPipeline(build_strategy("trend")).analyze(payload)
    assert out["final_signal"] == HOLD
    assert out["reason"] == "risk_unavailable"
    assert out["execute_order"] is False
    assert out["order_plan"] is None
    assert out["entry_price"] is None
    assert out["direction"] == UP
