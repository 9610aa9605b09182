"""
Unit tests for the chandelier exit trail.

The key property: an open long's effective stop never goes down, an open
short's never goes up, whatever the bars do.
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import numpy as np
import pandas as pd
import pytest

from patternforge.exchange.price_series import Bar, PriceSeries
from patternforge.strategy.chandelier import ChandelierTrail
from patternforge.strategy.patterns import Direction


def make_series(closes, spread: float = 0.0020) -> PriceSeries:
    df = pd.DataFrame({
        "open":  closes,
        "high":  [c + spread / 2 for c in closes],
        "low":   [c - spread / 2 for c in closes],
        "close": closes,
    })
    df.index = pd.date_range("2024-01-01", periods=len(closes), freq="1h")
    return PriceSeries(df)


def push_close(series: PriceSeries, close: float, spread: float = 0.0020) -> None:
    ts = series.timestamp(0) + pd.Timedelta(hours=1)
    series.append(Bar(close, close + spread / 2, close - spread / 2, close, 0.0, ts))


class TestLevels:
    def test_constant_bars(self):
        s = make_series([1.2000] * 30)
        trail = ChandelierTrail(atr_period=22, lookback_period=22, atr_multiplier=3.0)
        trail.update(s)
        assert trail.levels.atr == pytest.approx(0.0020)
        assert trail.calculate_stop_loss(Direction.BULLISH) == pytest.approx(1.2010 - 0.0060)
        assert trail.calculate_stop_loss(Direction.BEARISH) == pytest.approx(1.1990 + 0.0060)

    def test_insufficient_data(self):
        s = make_series([1.2000] * 10)
        trail = ChandelierTrail()
        trail.update(s)
        assert trail.levels is None
        assert trail.calculate_stop_loss(Direction.BULLISH) is None
        assert trail.trail(Direction.BULLISH, 1.1900) == 1.1900

    def test_never_signals(self):
        s = make_series([1.2000] * 30)
        trail = ChandelierTrail()
        trail.update(s)
        assert not trail.check_for_signal(s).is_trade

    def test_first_trail_without_stop(self):
        s = make_series([1.2000] * 30)
        trail = ChandelierTrail()
        trail.update(s)
        assert trail.trail(Direction.BULLISH, None) == trail.levels.long_exit


class TestRatchet:
    @pytest.mark.parametrize("seed", [1, 2, 3])
    def test_long_stop_non_decreasing(self, seed):
        rng = np.random.default_rng(seed)
        s = make_series(list(1.20 + np.cumsum(rng.normal(0, 0.001, 30))))
        trail = ChandelierTrail()
        stop = None
        stops = []
        for c in 1.20 + np.cumsum(rng.normal(0, 0.002, 80)):
            push_close(s, float(c), spread=float(0.001 + abs(rng.normal(0, 0.002))))
            trail.update(s)
            stop = trail.trail(Direction.BULLISH, stop)
            stops.append(stop)
        assert all(b >= a for a, b in zip(stops, stops[1:]))

    @pytest.mark.parametrize("seed", [1, 2, 3])
    def test_short_stop_non_increasing(self, seed):
        rng = np.random.default_rng(seed)
        s = make_series(list(1.20 + np.cumsum(rng.normal(0, 0.001, 30))))
        trail = ChandelierTrail()
        stop = None
        stops = []
        for c in 1.20 + np.cumsum(rng.normal(0, 0.002, 80)):
            push_close(s, float(c), spread=float(0.001 + abs(rng.normal(0, 0.002))))
            trail.update(s)
            stop = trail.trail(Direction.BEARISH, stop)
            stops.append(stop)
        assert all(b <= a for a, b in zip(stops, stops[1:]))

    def test_long_stop_held_when_level_drops(self):
        s = make_series([1.2000] * 30)
        trail = ChandelierTrail()
        trail.update(s)
        tight = trail.levels.long_exit + 0.0050
        assert trail.trail(Direction.BULLISH, tight) == tight
