from mtf_signal_engine.config import build_strategy
from mtf_signal_engine.confluence import score_confluence
from mtf_signal_engine.models import BUY, HOLD, SELL, STRONG_BUY, StructureState, TimeframeSnapshot


def _snap(tf, signal, ready=True, trend="neutral"):
    return TimeframeSnapshot(timeframe=tf, ready=ready, signal=signal, structure=StructureState(trend=trend))


def _flat(_tf):
    return 1.0


def test_equal_weights_hold():
    conf = score_confluence([_snap("15m", BUY), _snap("1h", SELL)], _flat)
    assert conf.label == HOLD
    assert conf.dominant_trend == "neutral"
    assert conf.vote_dominance == 0.0


def test_weighted_vote_uses_timeframe_weights():
    cfg = build_strategy("scalp")
    snaps = [_snap("15m", BUY), _snap("1h", SELL), _snap("4h", SELL)]
    conf = score_confluence(snaps, cfg.weight)
    assert conf.buy_weight == 3.0
    assert conf.sell_weight == 2.0
    assert conf.label == BUY
    assert 0.0 <= conf.vote_dominance <= 1.0


def test_strong_label_needs_strong_weight():
    cfg = build_strategy("scalp")
    assert score_confluence([_snap("15m", STRONG_BUY)], cfg.weight).label == STRONG_BUY
    assert score_confluence([_snap("1h", STRONG_BUY)], cfg.weight).label == BUY


def test_not_ready_timeframes_do_not_vote():
    snaps = [_snap("15m", BUY), _snap("1h", SELL, ready=False), _snap("4h", SELL, ready=False)]
    conf = score_confluence(snaps, _flat)
    assert conf.label == BUY
    assert conf.tally[SELL] == 0.0


def test_below_min_weight_is_hold():
    conf = score_confluence([_snap("1d", BUY)], lambda tf: 0.5)
    assert conf.label == HOLD
    assert conf.dominant_trend == "up"


def test_agreement_counts_other_timeframes():
    snaps = [
        _snap("4h", HOLD, trend="up"),
        _snap("1h", HOLD, trend="up"),
        _snap("15m", HOLD, trend="down"),
        _snap("1d", HOLD, trend="up"),
    ]
    conf = score_confluence(snaps, _flat, reference_trend="up", reference_timeframe="4h")
    assert conf.agreement == 2
    assert score_confluence(snaps, _flat, reference_trend="neutral").agreement == 0


def test_agreement_ignores_entry_timeframe():
    snaps = [
        _snap("4h", HOLD, trend="up"),
        _snap("1h", HOLD, trend="down"),
        _snap("15m", HOLD, trend="up"),
        _snap("1d", HOLD, trend="down"),
    ]
    conf = score_confluence(snaps, _flat, reference_trend="up", reference_timeframe="4h")
    assert conf.agreement == 0
    widened = score_confluence(
        snaps, _flat, reference_trend="up", reference_timeframe="4h", agreement_timeframes=("1d", "1h", "15m")
    )
    assert widened.agreement == 1


def test_reference_timeframe_never_agrees_with_itself():
    snaps = [_snap("1h", HOLD, trend="up"), _snap("1d", HOLD, trend="up")]
    conf = score_confluence(snaps, _flat, reference_trend="up", reference_timeframe="1h")
    assert conf.agreement == 1
