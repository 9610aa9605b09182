"""
Pin Bar Detector — single-candle rejection

A pin bar has a long nose (rejection wick) and a small body. The nose shows
price was pushed to an extreme and rejected within the same bar.

Shape rules for the bar at offset i:
  body   = |close − open|
  range  = high − low
  Bullish: lower_wick > body × nose_factor
           AND lower_wick > upper_wick × 2
           AND body < range × 0.4
  Bearish: the mirror, with the upper wick as the nose.

Quality (0–100), only scored when the shape passes:
  50 pts  min(50, nose/body × 10)          long nose vs body
  30 pts  min(30, range/ATR × 15)          a meaningful candle, not noise
  20 pts  close position from the extreme  close near the far end of the nose

No instance list: pin bars are evaluated fresh on the latest closed bar(s).
Stop loss: the pin bar's low (bullish) or high (bearish).
"""
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..exchange.price_series import Bar, PriceSeries
from . import strategy_config as _cfg
from .patterns import Direction, PatternDetector, Signal
from .volatility import VolatilityEstimator

logger = logging.getLogger(__name__)

MAX_BODY_RANGE_PCT = 0.4
OPPOSITE_WICK_FACTOR = 2.0


@dataclass
class PinBarResult:
    direction: Direction
    quality: float
    offset: int
    nose: float
    body: float
    stop_loss: float
    notes: str = ""


def classify_pin_bar(bar: Bar, nose_factor: float) -> Direction:
    """Shape test only. Returns Direction.NONE if the bar is not a pin."""
    body = bar.body
    rng = bar.range
    upper_wick = bar.high - max(bar.open, bar.close)
    lower_wick = min(bar.open, bar.close) - bar.low
    if not body < rng * MAX_BODY_RANGE_PCT:
        return Direction.NONE
    if lower_wick > body * nose_factor and lower_wick > upper_wick * OPPOSITE_WICK_FACTOR:
        return Direction.BULLISH
    if upper_wick > body * nose_factor and upper_wick > lower_wick * OPPOSITE_WICK_FACTOR:
        return Direction.BEARISH
    return Direction.NONE


def pin_bar_quality(bar: Bar, direction: Direction, atr: float) -> float:
    """
    Quality score for a bar that already passed the shape test.
    body == 0 scores the full 50 nose points; atr <= 0 scores 0 size points.
    """
    rng = bar.range
    if rng <= 0:
        return 0.0
    if direction == Direction.BULLISH:
        nose = min(bar.open, bar.close) - bar.low
        close_pos = (bar.close - bar.low) / rng
    else:
        nose = bar.high - max(bar.open, bar.close)
        close_pos = (bar.high - bar.close) / rng

    nose_pts = 50.0 if bar.body <= 0 else min(50.0, nose / bar.body * 10)
    size_pts = 0.0 if atr <= 0 else min(30.0, rng / atr * 15)
    close_pts = 20.0 * close_pos
    return nose_pts + size_pts + close_pts


class PinBarDetector(PatternDetector):
    """
    Parameters
    ----------
    nose_factor : float
        Nose must exceed body × nose_factor (default 2.0).
    min_quality_score : float
        Minimum quality to report a signal (0–100).
    use_volume_confirm : bool
        Signal bar volume must exceed the previous bar's.
    use_market_context : bool
        Bullish pins need the prior bars' mean close above the pin's close
        (a preceding decline), bearish the mirror.
    """

    detector_id = "pin_bar"

    def __init__(
        self,
        nose_factor: float = None,
        min_quality_score: float = None,
        use_volume_confirm: bool = None,
        use_market_context: bool = None,
        context_bars: int = None,
        lookback_bars: int = None,
        atr_period: int = None,
        enabled: bool = True,
    ):
        super().__init__(enabled)
        self.nose_factor = _cfg.PIN_NOSE_FACTOR if nose_factor is None else nose_factor
        self.min_quality = _cfg.PIN_MIN_QUALITY_SCORE if min_quality_score is None else min_quality_score
        self.use_volume_confirm = (_cfg.PIN_USE_VOLUME_CONFIRM
                                   if use_volume_confirm is None else use_volume_confirm)
        self.use_market_context = (_cfg.PIN_USE_MARKET_CONTEXT
                                   if use_market_context is None else use_market_context)
        self.context_bars = _cfg.PIN_CONTEXT_BARS if context_bars is None else context_bars
        self.lookback = _cfg.PIN_LOOKBACK_BARS if lookback_bars is None else lookback_bars
        self.atr_period = _cfg.ATR_PERIOD if atr_period is None else atr_period
        self.last_result: Optional[PinBarResult] = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def detect(self, series: PriceSeries, offset: int = 0) -> Optional[PinBarResult]:
        """Evaluate the bar at `offset`. Returns None if it is not a tradable pin."""
        if not series.has(offset + 2):
            return None
        bar = series.bar(offset)
        direction = classify_pin_bar(bar, self.nose_factor)
        if direction == Direction.NONE:
            return None

        atr = VolatilityEstimator(series, self.atr_period).atr(offset=offset)
        quality = pin_bar_quality(bar, direction, atr)
        if quality < self.min_quality:
            logger.debug(
                f"pin bar {direction.name} at {bar.timestamp} quality {quality:.1f} "
                f"< {self.min_quality:.1f}"
            )
            return None

        if self.use_volume_confirm and not self._volume_confirms(series, offset):
            return None
        if self.use_market_context and not self._context_confirms(series, offset, direction):
            return None

        if direction == Direction.BULLISH:
            nose = min(bar.open, bar.close) - bar.low
            stop = bar.low
        else:
            nose = bar.high - max(bar.open, bar.close)
            stop = bar.high
        return PinBarResult(
            direction=direction,
            quality=round(quality, 2),
            offset=offset,
            nose=nose,
            body=bar.body,
            stop_loss=stop,
            notes=f"{direction.name.lower()} pin at {bar.close:.5f} nose={nose:.5f} q={quality:.1f}",
        )

    def check_for_signal(self, series: PriceSeries) -> Signal:
        self.last_result = None
        results = [
            r for r in (self.detect(series, i) for i in range(self.lookback)) if r
        ]
        if not results:
            return Signal.none(self.detector_id)
        results.sort(key=lambda r: r.quality, reverse=True)
        best = results[0]
        self.last_result = best
        return Signal(best.direction, best.quality, self.detector_id, best.stop_loss, best.notes)

    def calculate_stop_loss(self, direction: Direction) -> Optional[float]:
        if self.last_result is None or self.last_result.direction != direction:
            return None
        return self.last_result.stop_loss

    # ------------------------------------------------------------------ #
    # Confirmations
    # ------------------------------------------------------------------ #

    @staticmethod
    def _volume_confirms(series: PriceSeries, offset: int) -> bool:
        return series.bar(offset).volume > series.bar(offset + 1).volume

    def _context_confirms(self, series: PriceSeries, offset: int, direction: Direction) -> bool:
        if not series.has(self.context_bars, offset + 1):
            return False
        avg_close = float(np.mean(series.values("close", offset + 1, self.context_bars)))
        close = series.bar(offset).close
        if direction == Direction.BULLISH:
            return avg_close > close
        return avg_close < close
