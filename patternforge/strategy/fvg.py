"""
Fair Value Gap Detector

A fair value gap is the hole left when price moves so fast that the bars on
either side of an impulse candle do not overlap. Three-bar window with the
newest bar at offset i:

  Bullish: low[i]  > high[i+2]   gap = [high[i+2], low[i]]
  Bearish: high[i] < low[i+2]    gap = [high[i],   low[i+2]]

Gaps smaller than ATR × min_gap_size_factor are noise and are rejected.

Significance (0–100):
  simple       min(100, 100 × (gap/ATR) / 2)
  statistical  50 + z × 10, z of this gap/ATR ratio against the recent gap
               history, clamped to 0–100 (falls back to simple when the
               history is too thin or flat)
  volume       ×1.2 when the gap bars traded above average volume, ×0.8 if not

Lifecycle: ACTIVE → FILLED the first time price trades back to the far
boundary (low ≤ gap low for bullish, high ≥ gap high for bearish). Filled
gaps stay in the book until max_gap_age, but never produce signals.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from ..exchange.price_series import PriceSeries
from . import strategy_config as _cfg
from .patterns import (
    Direction, PatternInstance, PatternStatus, Signal, StatefulDetector, clamp,
)
from .volatility import VolatilityEstimator

logger = logging.getLogger(__name__)


@dataclass
class GapCandidate:
    direction: Direction
    high: float
    low: float
    offset: int          # newest bar of the 3-bar window

    @property
    def size(self) -> float:
        return self.high - self.low


def find_gap(series: PriceSeries, i: int) -> Optional[GapCandidate]:
    """Raw gap test on the window (i, i+1, i+2). No size filter."""
    if not series.has(3, i):
        return None
    newest = series.bar(i)
    oldest = series.bar(i + 2)
    if newest.low > oldest.high:
        return GapCandidate(Direction.BULLISH, high=newest.low, low=oldest.high, offset=i)
    if newest.high < oldest.low:
        return GapCandidate(Direction.BEARISH, high=oldest.low, low=newest.high, offset=i)
    return None


def simple_significance(gap_size: float, atr: float) -> float:
    if atr <= 0:
        return 0.0
    return min(100.0, 100.0 * (gap_size / atr) / 2)


def is_filled(inst: PatternInstance, bar_high: float, bar_low: float) -> bool:
    if inst.direction == Direction.BULLISH:
        return bar_low <= inst.low
    return bar_high >= inst.high


class FairValueGapDetector(StatefulDetector):
    """
    Parameters
    ----------
    min_gap_size_factor : float
        Gap must be ≥ ATR × this factor (default 0.5).
    max_gap_age : int
        Bars before a gap is pruned.
    use_statistical_test : bool
        z-score significance against the last `stat_lookback` windows.
    use_volume_confirm : bool
        Scale significance by the gap bars' relative volume.
    """

    detector_id = "fvg"

    def __init__(
        self,
        min_gap_size_factor: float = None,
        max_gap_age: int = None,
        use_statistical_test: bool = None,
        use_volume_confirm: bool = None,
        atr_period: int = None,
        stat_lookback: int = None,
        enabled: bool = True,
    ):
        super().__init__(_cfg.FVG_MAX_GAP_AGE if max_gap_age is None else max_gap_age, enabled)
        self.min_gap_factor = (_cfg.FVG_MIN_GAP_SIZE_FACTOR
                               if min_gap_size_factor is None else min_gap_size_factor)
        self.use_statistical_test = (_cfg.FVG_USE_STATISTICAL_TEST
                                     if use_statistical_test is None else use_statistical_test)
        self.use_volume_confirm = (_cfg.FVG_USE_VOLUME_CONFIRM
                                   if use_volume_confirm is None else use_volume_confirm)
        self.atr_period = _cfg.ATR_PERIOD if atr_period is None else atr_period
        self.stat_lookback = _cfg.FVG_STAT_LOOKBACK if stat_lookback is None else stat_lookback
        self.warmup_bars = _cfg.FVG_WARMUP_BARS
        self._selected: Optional[PatternInstance] = None

    # ------------------------------------------------------------------ #
    # Bar stepping
    # ------------------------------------------------------------------ #

    def on_bar(self, series: PriceSeries, k: int) -> None:
        bar = series.bar(k)
        for inst in self.book.active():
            if is_filled(inst, bar.high, bar.low) and inst.transition(PatternStatus.FILLED):
                logger.debug(f"fvg filled at {bar.timestamp}: {inst}")

    def detect_at(self, series: PriceSeries, k: int) -> None:
        inst = self.evaluate_gap(series, k)
        if inst is not None:
            self.book.add(inst)
            logger.debug(f"fvg formed: {inst}")

    def evaluate_gap(self, series: PriceSeries, k: int) -> Optional[PatternInstance]:
        """Gap test + size filter + significance for the window ending at k."""
        cand = find_gap(series, k)
        if cand is None:
            return None
        atr = VolatilityEstimator(series, self.atr_period).atr(offset=k + 2)
        if atr <= 0 or cand.size < atr * self.min_gap_factor:
            return None

        significance = self.significance(series, cand, atr)
        return PatternInstance(
            kind="fvg",
            direction=cand.direction,
            high=cand.high,
            low=cand.low,
            strength=round(significance, 2),
            formation_time=series.timestamp(k),
        )

    # ------------------------------------------------------------------ #
    # Scoring
    # ------------------------------------------------------------------ #

    def significance(self, series: PriceSeries, cand: GapCandidate, atr: float) -> float:
        score = simple_significance(cand.size, atr)
        if self.use_statistical_test:
            z_score = self._z_score(series, cand, atr)
            if z_score is not None:
                score = clamp(50.0 + z_score * 10.0, 0.0, 100.0)
        if self.use_volume_confirm:
            score = min(100.0, score * self._volume_factor(series, cand.offset))
        return score

    def _gap_history(self, series: PriceSeries, start: int) -> List[float]:
        """gap/ATR ratios of every gap in the `stat_lookback` windows before `start`."""
        estimator = VolatilityEstimator(series, self.atr_period)
        ratios = []
        for j in range(start, start + self.stat_lookback):
            cand = find_gap(series, j)
            if cand is None:
                if not series.has(3, j):
                    break
                continue
            atr = estimator.atr(offset=j + 2)
            if atr > 0:
                ratios.append(cand.size / atr)
        return ratios

    def _z_score(self, series: PriceSeries, cand: GapCandidate, atr: float) -> Optional[float]:
        history = self._gap_history(series, cand.offset + 1)
        if len(history) < _cfg.FVG_STAT_MIN_SAMPLES:
            return None
        std = float(np.std(history))
        if std <= 0:
            return None
        return (cand.size / atr - float(np.mean(history))) / std

    @staticmethod
    def _volume_factor(series: PriceSeries, offset: int, lookback: int = 20) -> float:
        if not series.has(3 + lookback, offset):
            return 1.0
        gap_vol = float(np.mean(series.values("volume", offset, 3)))
        base_vol = float(np.mean(series.values("volume", offset + 3, lookback)))
        if base_vol <= 0:
            return 1.0
        return _cfg.CONFIRM_BOOST if gap_vol > base_vol else _cfg.CONFIRM_PENALTY

    # ------------------------------------------------------------------ #
    # Signal
    # ------------------------------------------------------------------ #

    def best_gap(self, direction: Optional[Direction] = None) -> Optional[PatternInstance]:
        """Highest-significance unfilled gap; ties go to the most recent."""
        candidates = self.book.active(direction)
        if not candidates:
            return None
        return max(candidates, key=lambda g: (g.strength, -g.age_in_bars))

    def check_for_signal(self, series: PriceSeries) -> Signal:
        self._selected = self.best_gap()
        if self._selected is None:
            return Signal.none(self.detector_id)
        gap = self._selected
        return Signal(
            direction=gap.direction,
            strength=gap.strength,
            detector_id=self.detector_id,
            stop_loss=self.calculate_stop_loss(gap.direction),
            notes=f"unfilled {gap.direction.name.lower()} FVG [{gap.low:.5f}-{gap.high:.5f}] "
                  f"age={gap.age_in_bars}",
        )

    def calculate_stop_loss(self, direction: Direction) -> Optional[float]:
        gap = self._selected
        if gap is None or gap.direction != direction:
            gap = self.best_gap(direction)
        if gap is None:
            return None
        return gap.low if direction == Direction.BULLISH else gap.high
