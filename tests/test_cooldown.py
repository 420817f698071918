from concurrent.futures import ThreadPoolExecutor

from mtf_signal_engine.config import build_strategy
from mtf_signal_engine.cooldown import CooldownGate, InMemoryCooldownStore, cooldown_key
from mtf_signal_engine.models import BUY, DOWN, HOLD, SELL, UP, Decision
from mtf_signal_engine.risk import RiskPlanBuilder

HOUR_MS = 3600 * 1000


class FakeClock:
    def __init__(self, now=1_700_000_000_000):
        self.now = now

    def __call__(self):
        return self.now


def _decision(symbol="BTCUSDT", direction=UP, signal=BUY):
    plan = RiskPlanBuilder(build_strategy("trend")).build(direction, 100.0, 1.0)
    return Decision(
        symbol=symbol,
        preset="trend",
        last_price=100.0,
        signal=signal,
        direction=direction,
        confidence=0.8,
        confidence_label="medium",
        plan=plan,
        reason="pullback_trigger",
    )


def test_repeat_within_window_is_suppressed():
    clock = FakeClock()
    gate = CooldownGate(InMemoryCooldownStore(), window_s=6 * 3600, clock=clock)
    assert gate.apply(_decision()).signal == BUY

    clock.now += HOUR_MS
    out = gate.apply(_decision())
    assert out.signal == HOLD
    assert out.plan is None
    assert out.reason == "cooldown"
    assert out.details["suppressed_signal"] == BUY
    assert out.details["cooldown_remaining_s"] == 5 * 3600


def test_after_window_fires_again():
    clock = FakeClock()
    gate = CooldownGate(window_s=6 * 3600, clock=clock)
    assert gate.apply(_decision()).actionable
    clock.now += 6 * HOUR_MS + 1000
    out = gate.apply(_decision())
    assert out.signal == BUY
    assert out.plan is not None


def test_other_direction_and_symbol_are_independent():
    clock = FakeClock()
    gate = CooldownGate(window_s=6 * 3600, clock=clock)
    assert gate.apply(_decision()).actionable
    assert gate.apply(_decision(direction=DOWN, signal=SELL)).actionable
    assert gate.apply(_decision(symbol="ETHUSDT")).actionable
    assert not gate.apply(_decision(symbol="btcusdt")).actionable


def test_hold_passes_through_without_recording():
    store = InMemoryCooldownStore()
    gate = CooldownGate(store, clock=FakeClock())
    hold = Decision(
        symbol="BTCUSDT", preset="trend", last_price=100.0, signal=HOLD, direction=None,
        confidence=0.2, confidence_label="low", plan=None, reason="no_setup",
    )
    assert gate.apply(hold) is hold
    assert store.get(cooldown_key("BTCUSDT", UP)) is None
    assert store.get(cooldown_key("BTCUSDT", DOWN)) is None


def test_store_check_and_set_is_atomic():
    store = InMemoryCooldownStore()
    key = cooldown_key("BTCUSDT", UP)
    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(lambda _: store.check_and_set(key, 1000, HOUR_MS), range(64)))
    assert results.count(True) == 1
    assert store.get(key) == 1000


def test_cooldown_key_format():
    assert cooldown_key("btcusdt", UP) == "BTCUSDT|UP"
    assert cooldown_key(None, DOWN) == "|DOWN"
