"""
Unit tests for pattern primitives: status machine, PatternBook ageing and
pruning, BarCursor catch-up.
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pandas as pd

from patternforge.exchange.price_series import Bar, PriceSeries
from patternforge.strategy.aggregator import SignalAggregator
from patternforge.strategy.patterns import (
    BarCursor, Direction, PatternBook, PatternInstance, PatternStatus, Signal,
    StatefulDetector,
)

TS = pd.Timestamp("2024-01-01", tz="UTC")


def inst(**kw) -> PatternInstance:
    base = dict(kind="fvg", direction=Direction.BULLISH, high=1.21, low=1.20,
                strength=50.0, formation_time=TS)
    base.update(kw)
    return PatternInstance(**base)


def make_series(n: int) -> PriceSeries:
    df = pd.DataFrame({"open": [1.0] * n, "high": [1.1] * n, "low": [0.9] * n, "close": [1.0] * n},
                      index=pd.date_range("2024-01-01", periods=n, freq="1h"))
    return PriceSeries(df, max_bars=n)


class TestDirection:
    def test_opposite_and_sign(self):
        assert Direction.BULLISH.opposite() == Direction.BEARISH
        assert Direction.NONE.opposite() == Direction.NONE
        assert Direction.from_sign(-0.3) == Direction.BEARISH
        assert Direction.BEARISH.sign == -1


class TestStatus:
    def test_single_transition(self):
        p = inst()
        assert p.transition(PatternStatus.FILLED)
        assert not p.transition(PatternStatus.TESTED)
        assert not p.transition(PatternStatus.ACTIVE)
        assert p.status == PatternStatus.FILLED

    def test_terminal_can_expire(self):
        p = inst()
        p.transition(PatternStatus.SWEPT)
        assert p.transition(PatternStatus.EXPIRED)
        assert not p.transition(PatternStatus.EXPIRED)

    def test_transition_resets_status_age(self):
        p = inst(status_age=5)
        p.transition(PatternStatus.TESTED)
        assert p.status_age == 0

    def test_geometry(self):
        p = inst(high=1.30, low=1.20)
        assert abs(p.size - 0.10) < 1e-12
        assert abs(p.mid - 1.25) < 1e-12


class TestBook:
    def test_advance_ages_every_instance(self):
        book = PatternBook(max_age=10)
        a, b = inst(), inst(age_in_bars=4)
        book.add(a)
        book.add(b)
        book.advance()
        assert (a.age_in_bars, b.age_in_bars) == (1, 5)

    def test_prune_rebuilds_and_expires(self):
        book = PatternBook(max_age=2)
        old, young = inst(age_in_bars=3), inst(age_in_bars=1)
        book.add(old)
        book.add(young)
        expired = book.prune()
        assert expired == [old]
        assert old.status == PatternStatus.EXPIRED
        assert list(book) == [young]

    def test_iteration_is_a_copy(self):
        book = PatternBook(max_age=1)
        book.add(inst(age_in_bars=5))
        for _ in book:
            book.prune()
        assert len(book) == 0

    def test_active_filters_direction(self):
        book = PatternBook(max_age=10)
        up, down, done = inst(), inst(direction=Direction.BEARISH), inst()
        done.transition(PatternStatus.FILLED)
        for p in (up, down, done):
            book.add(p)
        assert book.active(Direction.BULLISH) == [up]
        assert book.with_status(PatternStatus.FILLED) == [done]


class TestBarCursor:
    def test_first_call_seeds_warmup(self):
        s = make_series(80)
        cur = BarCursor(warmup_bars=50)
        assert cur.pending(s) == 50
        assert cur.reseeded

    def test_counts_new_bars(self):
        s = make_series(80)
        cur = BarCursor(warmup_bars=50)
        cur.pending(s)
        cur.mark(s)
        assert cur.pending(s) == 0
        for _ in range(3):
            s.append(Bar(1.0, 1.1, 0.9, 1.0, 0.0, s.timestamp(0) + pd.Timedelta(hours=1)))
        assert cur.pending(s) == 3
        assert not cur.reseeded

    def test_reseed_when_bar_rolled_out(self):
        s = make_series(5)
        cur = BarCursor(warmup_bars=50)
        cur.pending(s)
        cur.mark(s)
        for _ in range(6):
            s.append(Bar(1.0, 1.1, 0.9, 1.0, 0.0, s.timestamp(0) + pd.Timedelta(hours=1)))
        assert cur.pending(s) == 5
        assert cur.reseeded


class MarkerDetector(StatefulDetector):
    """Books one instance per bar; on_bar raises once at `fail_at`."""

    detector_id = "marker"

    def __init__(self):
        super().__init__(max_age=500)
        self.fail_at = None

    def on_bar(self, series, k):
        if series.timestamp(k) == self.fail_at:
            self.fail_at = None
            raise RuntimeError("bad bar")

    def detect_at(self, series, k):
        self.book.add(inst(formation_time=series.timestamp(k)))

    def check_for_signal(self, series):
        return Signal.none(self.detector_id)

    def calculate_stop_loss(self, direction):
        return None


class TestFailedReplay:
    def _ages_match_offsets(self, det, series):
        for p in det.book:
            assert p.age_in_bars == series.offset_of(p.formation_time)

    def test_partial_replay_does_not_double_age(self):
        df = pd.DataFrame({"open": [1.0] * 20, "high": [1.1] * 20, "low": [0.9] * 20, "close": [1.0] * 20},
                          index=pd.date_range("2024-01-01", periods=20, freq="1h"))
        s = PriceSeries(df, max_bars=100)
        det = MarkerDetector()
        agg = SignalAggregator([det])
        agg.evaluate(s)
        self._ages_match_offsets(det, s)

        for _ in range(3):
            s.append(Bar(1.0, 1.1, 0.9, 1.0, 0.0, s.timestamp(0) + pd.Timedelta(hours=1)))
        det.fail_at = s.timestamp(1)          # the oldest new bar replays, the next one raises
        assert "marker" in agg.evaluate(s).errors
        assert len(det.book) == 0

        result = agg.evaluate(s)
        assert result.errors == {}
        assert len(det.book) == len(s)
        self._ages_match_offsets(det, s)
