"""
VWAP Band Detector — deviation from volume-weighted fair price

Running VWAP of the typical price (high + low + close) / 3, either continuous
or reset at a session start hour (UTC). Bands sit at

    vwap ± std × band_multiplier

where std is the population deviation of (typical − vwap) over the last
`band_period` bars of the session.

Signals on the latest closed bar:
  - close beyond a band        → mean reversion back toward VWAP,
                                 strength min(100, |z| × 25)
  - close crosses through VWAP → weaker continuation in the cross direction,
                                 strength min(100, 50 + volume_ratio × 10)
Volume adjustment scales either by ±20% from the bar's relative volume.
"""
import logging
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import numpy as np
import pandas as pd

from ..exchange.price_series import PriceSeries
from . import strategy_config as _cfg
from .patterns import BarCursor, Direction, PatternDetector, Signal
from .volatility import VolatilityEstimator

logger = logging.getLogger(__name__)


@dataclass
class VwapReading:
    timestamp: pd.Timestamp
    vwap: float
    std: float
    upper: float
    lower: float
    close: float
    session: object = None

    def z_score(self, price: float) -> float:
        return 0.0 if self.std <= 0 else (price - self.vwap) / self.std


class VWAPBandDetector(PatternDetector):

    detector_id = "vwap_bands"

    def __init__(
        self,
        band_multiplier: float = None,
        band_period: int = None,
        use_session_reset: bool = None,
        session_start_hour: int = None,
        use_volume_adjust: bool = None,
        volume_lookback: int = None,
        atr_period: int = None,
        enabled: bool = True,
    ):
        super().__init__(enabled)
        self.band_multiplier = _cfg.VWAP_BAND_MULTIPLIER if band_multiplier is None else band_multiplier
        self.band_period = _cfg.VWAP_BAND_PERIOD if band_period is None else band_period
        self.use_session_reset = (_cfg.VWAP_USE_SESSION_RESET
                                  if use_session_reset is None else use_session_reset)
        self.session_start_hour = (_cfg.VWAP_SESSION_START_HOUR
                                   if session_start_hour is None else session_start_hour)
        self.use_volume_adjust = (_cfg.VWAP_USE_VOLUME_ADJUST
                                  if use_volume_adjust is None else use_volume_adjust)
        self.volume_lookback = _cfg.VWAP_VOLUME_LOOKBACK if volume_lookback is None else volume_lookback
        self.atr_period = _cfg.ATR_PERIOD if atr_period is None else atr_period
        self._cursor = BarCursor(_cfg.VWAP_WARMUP_BARS)
        self._stop: Optional[float] = None
        self._stop_direction = Direction.NONE
        self._reset_state()

    def _reset_state(self) -> None:
        self._cum_pv = 0.0
        self._cum_v = 0.0
        self._session = None
        self._deviations: deque = deque(maxlen=max(1, self.band_period))
        self.readings: deque = deque(maxlen=2)

    def reset(self) -> None:
        self._reset_state()
        self._cursor.reset()

    # ------------------------------------------------------------------ #
    # Running VWAP
    # ------------------------------------------------------------------ #

    def _session_key(self, ts: pd.Timestamp):
        if not self.use_session_reset:
            return None
        return (ts - timedelta(hours=self.session_start_hour)).date()

    def update(self, series: PriceSeries) -> None:
        new_bars = self._cursor.pending(series)
        if self._cursor.reseeded:
            self._reset_state()
        if new_bars == 0:
            return
        try:
            for k in range(new_bars - 1, -1, -1):
                self._ingest(series, k)
        except Exception:
            logger.warning(f"{self.detector_id}: replay failed, dropping session state")
            self.reset()
            raise
        self._cursor.mark(series)

    def _ingest(self, series: PriceSeries, k: int) -> None:
        bar = series.bar(k)
        key = self._session_key(bar.timestamp)
        if key != self._session:
            if self._session is not None:
                logger.debug(f"vwap session reset at {bar.timestamp}")
            self._cum_pv = 0.0
            self._cum_v = 0.0
            self._deviations.clear()
            self._session = key

        typical = (bar.high + bar.low + bar.close) / 3
        self._cum_pv += typical * bar.volume
        self._cum_v += bar.volume
        vwap = self._cum_pv / self._cum_v if self._cum_v > 0 else typical

        self._deviations.append(typical - vwap)
        std = float(np.std(self._deviations)) if len(self._deviations) >= 2 else 0.0
        width = std * self.band_multiplier
        self.readings.append(VwapReading(
            timestamp=bar.timestamp,
            vwap=vwap,
            std=std,
            upper=vwap + width,
            lower=vwap - width,
            close=bar.close,
            session=key,
        ))

    @property
    def current(self) -> Optional[VwapReading]:
        return self.readings[-1] if self.readings else None

    # ------------------------------------------------------------------ #
    # Signal
    # ------------------------------------------------------------------ #

    def volume_ratio(self, series: PriceSeries) -> Optional[float]:
        if not series.has(self.volume_lookback + 1):
            return None
        base = float(np.mean(series.values("volume", 1, self.volume_lookback)))
        if base <= 0:
            return None
        return series.bar(0).volume / base

    def check_for_signal(self, series: PriceSeries) -> Signal:
        self._stop = None
        self._stop_direction = Direction.NONE
        now = self.current
        if now is None or len(series) == 0 or now.timestamp != series.timestamp(0):
            return Signal.none(self.detector_id, "no vwap reading for latest bar")

        bar = series.bar(0)
        vol_ratio = self.volume_ratio(series)
        atr = VolatilityEstimator(series, self.atr_period).atr()
        prev = self.readings[0] if len(self.readings) == 2 else None
        # a cross needs a prior reading from the same session and a band for the stop
        can_cross = prev is not None and prev.session == now.session and now.std > 0

        direction, strength, stop, notes = Direction.NONE, 0.0, None, ""
        if now.std > 0 and bar.close > now.upper:
            z = now.z_score(bar.close)
            direction, strength = Direction.BEARISH, min(100.0, abs(z) * 25)
            stop = bar.high + atr * _cfg.VWAP_STOP_ATR_BUFFER
            notes = f"close above upper band z={z:.2f}"
        elif now.std > 0 and bar.close < now.lower:
            z = now.z_score(bar.close)
            direction, strength = Direction.BULLISH, min(100.0, abs(z) * 25)
            stop = bar.low - atr * _cfg.VWAP_STOP_ATR_BUFFER
            notes = f"close below lower band z={z:.2f}"
        elif can_cross and prev.close < prev.vwap and bar.close > now.vwap:
            direction = Direction.BULLISH
            strength = min(100.0, 50 + (vol_ratio or 0.0) * 10)
            stop = now.lower
            notes = "crossed up through vwap"
        elif can_cross and prev.close > prev.vwap and bar.close < now.vwap:
            direction = Direction.BEARISH
            strength = min(100.0, 50 + (vol_ratio or 0.0) * 10)
            stop = now.upper
            notes = "crossed down through vwap"

        if direction == Direction.NONE:
            return Signal.none(self.detector_id)

        if self.use_volume_adjust and vol_ratio is not None:
            factor = _cfg.CONFIRM_BOOST if vol_ratio > 1.0 else _cfg.CONFIRM_PENALTY
            strength = min(100.0, strength * factor)

        self._stop, self._stop_direction = stop, direction
        return Signal(direction, round(strength, 2), self.detector_id, stop,
                      f"{notes} vwap={now.vwap:.5f}")

    def calculate_stop_loss(self, direction: Direction) -> Optional[float]:
        if direction != self._stop_direction:
            return None
        return self._stop
