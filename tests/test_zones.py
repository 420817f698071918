from mtf_signal_engine.models import DEMAND, SUPPLY, Candle, Zone
from mtf_signal_engine.zones import (
    active_zones,
    find_fair_value_gaps,
    find_order_blocks,
    find_zones,
    nearest_first,
    nearest_zone,
    refresh_validity,
    zones_containing,
)


def _c(idx, o, h, l, c, v=None):
    return Candle(open_time_ms=idx * 60_000, open=o, high=h, low=l, close=c, volume=v)


def _base():
    # six quiet bars, then a bullish impulse with body 2.0 and a follow-through bar
    bars = [_c(i, 100.0, 100.2, 99.8, 100.0) for i in range(6)]
    bars.append(_c(6, 100.0, 102.2, 99.9, 102.0))
    bars.append(_c(7, 102.0, 102.5, 101.5, 102.2))
    return bars


def _atr(candles, value=1.0):
    return [value] * len(candles)


def test_demand_zone_from_consolidation_then_impulse():
    candles = _base()
    zones = find_zones(candles, _atr(candles))
    assert zones == [Zone(low=99.8, high=100.2, impulse_index=6, kind=DEMAND, valid=True)]


def test_supply_zone_mirror():
    bars = [_c(i, 100.0, 100.2, 99.8, 100.0) for i in range(6)]
    bars.append(_c(6, 100.0, 100.1, 97.8, 98.0))
    bars.append(_c(7, 98.0, 98.5, 97.5, 97.9))
    zones = find_zones(bars, _atr(bars))
    assert len(zones) == 1
    assert zones[0].kind == SUPPLY
    assert zones[0].valid


def test_impulse_body_must_exceed_threshold():
    candles = _base()
    assert find_zones(candles, _atr(candles, 2.0)) == []  # needs body > 3.0


def test_loose_consolidation_rejected():
    candles = _base()
    candles[4] = _c(4, 100.0, 101.0, 99.0, 100.0)
    assert find_zones(candles, _atr(candles)) == []


def test_missing_atr_yields_no_zone():
    candles = _base()
    assert find_zones(candles, [None] * len(candles)) == []
    assert find_zones(candles, []) == []


def test_last_bar_is_never_an_impulse():
    candles = _base()[:7]
    assert find_zones(candles, _atr(candles)) == []


def test_invalidation_is_permanent():
    candles = _base() + [_c(8, 102.2, 102.3, 99.0, 99.5)]
    zones = find_zones(candles, _atr(candles))
    assert len(zones) == 1 and not zones[0].valid

    recovered = candles + [_c(9, 99.5, 101.2, 99.4, 101.0), _c(10, 101.0, 103.0, 100.9, 102.8)]
    assert not find_zones(recovered, _atr(recovered))[0].valid

    # a zone already marked invalid never comes back, even against a clean series
    assert not refresh_validity(zones, _base())[0].valid
    assert active_zones(zones, DEMAND) == []


def test_zones_containing_uses_tolerance():
    z = Zone(low=100.0, high=101.0, impulse_index=3, kind=DEMAND)
    assert zones_containing([z], 101.05, 0.001) == [z]
    assert zones_containing([z], 101.2, 0.001) == []
    assert zones_containing([z], 99.95, 0.001) == [z]


def test_nearest_first_ordering():
    a = Zone(low=95.0, high=96.0, impulse_index=1, kind=DEMAND)
    b = Zone(low=98.0, high=99.0, impulse_index=2, kind=DEMAND)
    assert nearest_first([a, b], DEMAND) == [b, a]
    s1 = Zone(low=104.0, high=105.0, impulse_index=1, kind=SUPPLY)
    s2 = Zone(low=102.0, high=103.0, impulse_index=2, kind=SUPPLY)
    assert nearest_first([s1, s2], SUPPLY) == [s2, s1]


def _gap_up():
    return [
        _c(0, 100.0, 101.0, 99.0, 100.5),
        _c(1, 100.5, 104.0, 100.4, 103.8),
        _c(2, 103.8, 105.0, 102.0, 104.5),
        _c(3, 104.5, 105.5, 103.9, 105.0),
    ]


def test_bullish_fair_value_gap():
    gaps = find_fair_value_gaps(_gap_up())
    assert gaps == [Zone(low=101.0, high=102.0, impulse_index=1, kind=DEMAND, source="fvg")]


def test_fair_value_gap_mitigated_by_full_fill():
    bars = _gap_up() + [_c(4, 105.0, 105.2, 100.8, 101.5)]
    gaps = find_fair_value_gaps(bars)
    assert len(gaps) == 1
    assert gaps[0].valid is False
    assert active_zones(gaps, DEMAND) == []


def test_bearish_fair_value_gap():
    bars = [
        _c(0, 100.0, 101.0, 99.0, 99.5),
        _c(1, 99.5, 99.6, 96.0, 96.2),
        _c(2, 96.2, 97.5, 95.0, 95.5),
    ]
    assert find_fair_value_gaps(bars) == [Zone(low=97.5, high=99.0, impulse_index=1, kind=SUPPLY, source="fvg")]


def _block_bars(v1=150.0):
    return [
        _c(0, 100.0, 100.5, 99.5, 100.0, 100.0),
        _c(1, 100.0, 100.6, 99.8, 100.4, v1),
        _c(2, 100.4, 102.6, 100.3, 102.5, 200.0),
        _c(3, 102.5, 103.0, 102.0, 102.8, 100.0),
        _c(4, 102.8, 103.2, 102.4, 103.0, 100.0),
    ]


def test_bullish_order_block_before_displacement():
    bars = _block_bars()
    blocks = find_order_blocks(bars, _atr(bars))
    assert blocks == [Zone(low=99.8, high=100.6, impulse_index=1, kind=DEMAND, source="order_block")]


def test_order_block_needs_volume_and_survival():
    bars = _block_bars(v1=50.0)
    assert find_order_blocks(bars, _atr(bars)) == []

    bars = [_c(i, c.open, c.high, c.low, c.close) for i, c in enumerate(_block_bars())]
    assert find_order_blocks(bars, _atr(bars)) == []

    # close back below the block kills it
    bars = _block_bars() + [_c(5, 103.0, 103.0, 99.0, 99.5, 100.0)]
    assert find_order_blocks(bars, _atr(bars)) == []


def test_nearest_zone_by_midpoint():
    a = Zone(low=95.0, high=96.0, impulse_index=1, kind=DEMAND)
    b = Zone(low=98.0, high=99.0, impulse_index=2, kind=DEMAND)
    assert nearest_zone([a, b], 100.0) is b
    assert nearest_zone([a, b], 94.0) is a
    assert nearest_zone([], 100.0) is None
