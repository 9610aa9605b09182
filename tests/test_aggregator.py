"""
Unit tests for SignalAggregator.

Covers:
  - strongest signal wins, stop comes from the winning detector
  - equal strength → first registered wins
  - a raising detector is logged and skipped, the others still run
  - disabled detectors are never called
  - signal without a stop is not traded
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from typing import Optional

import pandas as pd
import pytest

from patternforge.exchange.price_series import PriceSeries
from patternforge.strategy.aggregator import SignalAggregator
from patternforge.strategy.patterns import Direction, PatternDetector, Signal


class FixedDetector(PatternDetector):
    """Reports the same signal every bar."""

    def __init__(self, detector_id, direction=Direction.NONE, strength=0.0, stop=None, enabled=True):
        super().__init__(enabled)
        self.detector_id = detector_id
        self.direction = direction
        self.strength = strength
        self.stop = stop
        self.updates = 0

    def update(self, series):
        self.updates += 1

    def check_for_signal(self, series) -> Signal:
        if self.direction == Direction.NONE:
            return Signal.none(self.detector_id)
        return Signal(self.direction, self.strength, self.detector_id)

    def calculate_stop_loss(self, direction) -> Optional[float]:
        return self.stop if direction == self.direction else None


class BrokenDetector(FixedDetector):
    def check_for_signal(self, series) -> Signal:
        raise RuntimeError("boom")


@pytest.fixture
def series():
    df = pd.DataFrame({"open": [1.0] * 5, "high": [1.1] * 5, "low": [0.9] * 5, "close": [1.0] * 5},
                      index=pd.date_range("2024-01-01", periods=5, freq="1h"))
    return PriceSeries(df)


class TestSelection:
    def test_strongest_wins(self, series):
        agg = SignalAggregator([
            FixedDetector("a", Direction.BULLISH, 40.0, stop=0.95),
            FixedDetector("b", Direction.BEARISH, 70.0, stop=1.05),
        ])
        result = agg.evaluate(series)
        assert result.has_trade
        assert result.signal.detector_id == "b"
        assert result.signal.direction == Direction.BEARISH
        assert result.signal.stop_loss == 1.05
        assert len(result.candidates) == 2

    def test_tie_goes_to_first_registered(self, series):
        agg = SignalAggregator([
            FixedDetector("first", Direction.BULLISH, 60.0, stop=0.95),
            FixedDetector("second", Direction.BEARISH, 60.0, stop=1.05),
        ])
        assert agg.evaluate(series).signal.detector_id == "first"

    def test_no_signal(self, series):
        agg = SignalAggregator([FixedDetector("quiet")])
        result = agg.evaluate(series)
        assert not result.has_trade
        assert result.candidates == []

    def test_signal_without_stop_not_traded(self, series):
        agg = SignalAggregator([FixedDetector("nostop", Direction.BULLISH, 80.0, stop=None)])
        assert not agg.evaluate(series).has_trade


class TestFaults:
    def test_broken_detector_is_skipped(self, series):
        good = FixedDetector("good", Direction.BULLISH, 30.0, stop=0.95)
        agg = SignalAggregator([BrokenDetector("broken", Direction.BEARISH, 90.0), good])
        result = agg.evaluate(series)
        assert result.signal.detector_id == "good"
        assert "broken" in result.errors
        assert good.updates == 1

    def test_disabled_detector_not_called(self, series):
        off = FixedDetector("off", Direction.BULLISH, 99.0, stop=0.95, enabled=False)
        agg = SignalAggregator([off])
        assert not agg.evaluate(series).has_trade
        assert off.updates == 0


class TestRegistry:
    def test_duplicate_id_rejected(self):
        agg = SignalAggregator([FixedDetector("x")])
        with pytest.raises(ValueError):
            agg.register(FixedDetector("x"))

    def test_get_and_order(self):
        a, b = FixedDetector("a"), FixedDetector("b")
        agg = SignalAggregator([a, b])
        assert agg.get("b") is b
        assert agg.get("missing") is None
        assert [d.detector_id for d in agg.detectors] == ["a", "b"]
