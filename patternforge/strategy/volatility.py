"""
Volatility Estimator — Average True Range

Every detector normalises its thresholds by ATR: gap size, candle size,
zone buffers, trailing distance. A stale ATR would bias all of them at once,
so nothing here is cached; each call recomputes from the series it is given.

True range for a bar:
    max(high − low, |high − prev_close|, |low − prev_close|)

The oldest bar in the window uses the close of the bar before it when the
series has one, otherwise plain high − low.
"""
import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np

from ..exchange.price_series import PriceSeries
from . import strategy_config as _cfg

logger = logging.getLogger(__name__)


class DataStatus(Enum):
    OK                = "ok"
    INSUFFICIENT_DATA = "insufficient_data"
    INVALID_PARAMETER = "invalid_parameter"


@dataclass
class ATRReading:
    value: float
    status: DataStatus

    @property
    def ok(self) -> bool:
        return self.status == DataStatus.OK


def true_ranges(series: PriceSeries, offset: int, count: int) -> np.ndarray:
    """True range for `count` bars starting at `offset`, newest first."""
    highs = series.values("high", offset, count)
    lows = series.values("low", offset, count)
    has_prev = series.has(count + 1, offset)
    closes = series.values("close", offset, count + 1 if has_prev else count)

    tr = highs - lows
    # prev close for bar k is closes[k + 1]
    n_prev = count if has_prev else count - 1
    if n_prev > 0:
        prev = closes[1:n_prev + 1]
        tr[:n_prev] = np.maximum.reduce([
            tr[:n_prev],
            np.abs(highs[:n_prev] - prev),
            np.abs(lows[:n_prev] - prev),
        ])
    return tr


class VolatilityEstimator:
    """Rolling ATR over a PriceSeries."""

    def __init__(self, series: PriceSeries, period: int = None):
        self.series = series
        self.period = period if period is not None else _cfg.ATR_PERIOD

    def reading(self, period: int = None, offset: int = 0) -> ATRReading:
        period = self.period if period is None else period
        if period <= 0 or offset < 0:
            return ATRReading(0.0, DataStatus.INVALID_PARAMETER)
        if not self.series.has(period, offset):
            return ATRReading(0.0, DataStatus.INSUFFICIENT_DATA)
        value = float(np.mean(true_ranges(self.series, offset, period)))
        return ATRReading(max(0.0, value), DataStatus.OK)

    def atr(self, period: int = None, offset: int = 0) -> float:
        """ATR value, 0.0 when the window cannot be filled."""
        return self.reading(period, offset).value


def atr(series: PriceSeries, period: int = None, offset: int = 0) -> float:
    return VolatilityEstimator(series, period).atr(offset=offset)
