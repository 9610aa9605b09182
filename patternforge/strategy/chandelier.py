"""
Chandelier Exit — ATR trailing stop hung from the recent extreme

  long_exit  = highest_high(lookback) − ATR(atr_period) × multiplier
  short_exit = lowest_low(lookback)   + ATR(atr_period) × multiplier

This detector never opens trades. It only supplies exit levels for positions
that are already open.

The ratchet is unconditional: a long stop only moves up, a short stop only
moves down, on every bar, whether or not anything else fired.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..exchange.price_series import PriceSeries
from . import strategy_config as _cfg
from .patterns import Direction, PatternDetector, Signal
from .volatility import VolatilityEstimator

logger = logging.getLogger(__name__)


@dataclass
class ChandelierLevels:
    long_exit: float
    short_exit: float
    atr: float


class ChandelierTrail(PatternDetector):

    detector_id = "chandelier"

    def __init__(
        self,
        atr_period: int = None,
        lookback_period: int = None,
        atr_multiplier: float = None,
        enabled: bool = True,
    ):
        super().__init__(enabled)
        self.atr_period = _cfg.CHANDELIER_ATR_PERIOD if atr_period is None else atr_period
        self.lookback = _cfg.CHANDELIER_LOOKBACK_PERIOD if lookback_period is None else lookback_period
        self.multiplier = _cfg.CHANDELIER_ATR_MULTIPLIER if atr_multiplier is None else atr_multiplier
        self.levels: Optional[ChandelierLevels] = None

    def compute(self, series: PriceSeries) -> Optional[ChandelierLevels]:
        if self.lookback <= 0 or not series.has(max(self.lookback, self.atr_period)):
            return None
        atr = VolatilityEstimator(series, self.atr_period).atr()
        highest = float(np.max(series.values("high", 0, self.lookback)))
        lowest = float(np.min(series.values("low", 0, self.lookback)))
        return ChandelierLevels(
            long_exit=highest - atr * self.multiplier,
            short_exit=lowest + atr * self.multiplier,
            atr=atr,
        )

    def update(self, series: PriceSeries) -> None:
        self.levels = self.compute(series)

    def check_for_signal(self, series: PriceSeries) -> Signal:
        return Signal.none(self.detector_id, "exit levels only")

    def calculate_stop_loss(self, direction: Direction) -> Optional[float]:
        if self.levels is None:
            return None
        if direction == Direction.BULLISH:
            return self.levels.long_exit
        if direction == Direction.BEARISH:
            return self.levels.short_exit
        return None

    def trail(self, direction: Direction, current_stop: Optional[float]) -> Optional[float]:
        """
        Ratchet an open position's stop. Returns the new effective stop;
        never looser than current_stop.
        """
        level = self.calculate_stop_loss(direction)
        if level is None:
            return current_stop
        if current_stop is None:
            return level
        if direction == Direction.BULLISH:
            return max(current_stop, level)
        if direction == Direction.BEARISH:
            return min(current_stop, level)
        return current_stop
