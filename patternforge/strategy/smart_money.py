"""
Smart Money Structure Detector — order blocks, liquidity zones, gap approach

Institutional footprints on the chart:

  1. Order block: strong candle, small counter-candle, continuation candle.
     The counter-candle's body is where the big orders were resting; when
     price comes back to it for the first time it tends to react.
  2. Liquidity zone: a swing high/low (5-bar fractal). Retail stops cluster
     just beyond it. When price sweeps the zone and immediately reverses,
     the sweep IS the entry.
  3. Fair value gap approach: price drifting back toward an unfilled gap
     from the correct side.

Lifecycle:
  order block     ACTIVE → TESTED  first bar trading back into [low, high]
  liquidity zone  ACTIVE → SWEPT   first bar trading beyond the outer boundary

Tested blocks and swept zones produce no NEW patterns, but a block tested on
the latest bar and a zone swept within the last few bars are exactly the
events this detector signals on.
"""
import logging
from typing import List, Optional, Tuple

import numpy as np

from ..exchange.price_series import Bar, PriceSeries
from . import strategy_config as _cfg
from .fvg import FairValueGapDetector
from .patterns import (
    Direction, PatternInstance, PatternStatus, Signal, StatefulDetector,
)
from .volatility import VolatilityEstimator

logger = logging.getLogger(__name__)

STRONG_BODY_PCT = 0.5
OB_BASE_STRENGTH = 50.0
OB_MAX_SIZE_POINTS = 25.0
ZONE_BASE_STRENGTH = 50.0
ZONE_POINTS_PER_TOUCH = 10.0


def _direction_of(bar: Bar) -> Direction:
    if bar.is_bullish:
        return Direction.BULLISH
    if bar.is_bearish:
        return Direction.BEARISH
    return Direction.NONE


class SmartMoneyDetector(StatefulDetector):
    """
    Parameters
    ----------
    max_pattern_age : int
        Bars before order blocks, zones and gaps are pruned.
    zone_buffer_atr : float
        Liquidity zone half-width in ATRs.
    sweep_recency_bars : int
        A sweep stays tradable for this many bars.
    use_mtf_confirm : bool
        Scale strength ×1.2 / ×0.8 by higher-timeframe MA agreement.
    """

    detector_id = "smart_money"

    def __init__(
        self,
        max_pattern_age: int = None,
        zone_buffer_atr: float = None,
        sweep_recency_bars: int = None,
        fvg_approach_pct: float = None,
        use_mtf_confirm: bool = None,
        htf_rule: str = None,
        htf_ma_period: int = None,
        atr_period: int = None,
        enabled: bool = True,
    ):
        max_age = _cfg.SMC_MAX_PATTERN_AGE if max_pattern_age is None else max_pattern_age
        super().__init__(max_age, enabled)
        self.order_blocks = self.book
        self.zones = self.add_book(max_age)
        self.gaps = FairValueGapDetector(
            max_gap_age=max_age, use_statistical_test=False, use_volume_confirm=False,
        )
        self.zone_buffer_atr = _cfg.SMC_ZONE_BUFFER_ATR if zone_buffer_atr is None else zone_buffer_atr
        self.sweep_recency = _cfg.SMC_SWEEP_RECENCY_BARS if sweep_recency_bars is None else sweep_recency_bars
        self.fvg_approach_pct = _cfg.SMC_FVG_APPROACH_PCT if fvg_approach_pct is None else fvg_approach_pct
        self.use_mtf_confirm = _cfg.SMC_USE_MTF_CONFIRM if use_mtf_confirm is None else use_mtf_confirm
        self.htf_rule = _cfg.SMC_HTF_RULE if htf_rule is None else htf_rule
        self.htf_ma_period = _cfg.SMC_HTF_MA_PERIOD if htf_ma_period is None else htf_ma_period
        self.atr_period = _cfg.ATR_PERIOD if atr_period is None else atr_period
        self.warmup_bars = _cfg.SMC_WARMUP_BARS
        self._last: Optional[Signal] = None

    def update(self, series: PriceSeries) -> None:
        super().update(series)
        self.gaps.update(series)

    def reset(self) -> None:
        super().reset()
        self.gaps.reset()

    # ------------------------------------------------------------------ #
    # Bar stepping
    # ------------------------------------------------------------------ #

    def on_bar(self, series: PriceSeries, k: int) -> None:
        bar = series.bar(k)
        for ob in self.order_blocks.active():
            if bar.low <= ob.high and bar.high >= ob.low:
                ob.transition(PatternStatus.TESTED)
                logger.debug(f"order block tested at {bar.timestamp}: {ob}")

        for zone in self.zones:
            if zone.status == PatternStatus.SWEPT:
                # keep tracking the sweep extreme while it is still tradable
                if zone.status_age <= self.sweep_recency:
                    zone.extreme = (max(zone.extreme, bar.high)
                                    if zone.direction == Direction.BEARISH
                                    else min(zone.extreme, bar.low))
                continue
            if not zone.is_active:
                continue
            if zone.direction == Direction.BEARISH:
                swept = bar.high > zone.high
                touched = bar.high >= zone.low
                sweep_extreme = bar.high
            else:
                swept = bar.low < zone.low
                touched = bar.low <= zone.high
                sweep_extreme = bar.low
            if swept:
                zone.transition(PatternStatus.SWEPT)
                zone.extreme = sweep_extreme
                logger.debug(f"liquidity swept at {bar.timestamp}: {zone}")
            elif touched:
                zone.touches += 1
                zone.strength = min(
                    100.0,
                    (ZONE_BASE_STRENGTH + zone.touches * ZONE_POINTS_PER_TOUCH) * zone.boost,
                )

    def detect_at(self, series: PriceSeries, k: int) -> None:
        ob = self.detect_order_block(series, k)
        if ob is not None:
            self.order_blocks.add(ob)
        zone = self.detect_liquidity_zone(series, k)
        if zone is not None:
            self.zones.add(zone)

    # ------------------------------------------------------------------ #
    # Pattern detection
    # ------------------------------------------------------------------ #

    def _volume_boost(self, series: PriceSeries, offset: int, count: int) -> float:
        lookback = _cfg.SMC_VOLUME_LOOKBACK
        if not series.has(count + lookback, offset):
            return 1.0
        recent = float(np.mean(series.values("volume", offset, count)))
        base = float(np.mean(series.values("volume", offset + count, lookback)))
        if base > 0 and recent > base * _cfg.SMC_HIGH_VOLUME_RATIO:
            return _cfg.CONFIRM_BOOST
        return 1.0

    def detect_order_block(self, series: PriceSeries, k: int) -> Optional[PatternInstance]:
        """Three-bar order block with the continuation candle at offset k."""
        if not series.has(3, k):
            return None
        first, middle, third = series.bar(k + 2), series.bar(k + 1), series.bar(k)

        if first.range <= 0 or first.body <= first.range * STRONG_BODY_PCT:
            return None
        direction = _direction_of(first)
        if direction == Direction.NONE:
            return None
        if _direction_of(middle) != direction.opposite() or middle.body >= first.body:
            return None
        if _direction_of(third) != direction:
            return None
        if direction == Direction.BULLISH and third.close <= middle.high:
            return None
        if direction == Direction.BEARISH and third.close >= middle.low:
            return None

        atr = VolatilityEstimator(series, self.atr_period).atr(offset=k + 2)
        size_pts = 0.0 if atr <= 0 else min(OB_MAX_SIZE_POINTS, first.body / atr * 10)
        boost = self._volume_boost(series, k, 3)
        return PatternInstance(
            kind="order_block",
            direction=direction,
            high=max(middle.open, middle.close),
            low=min(middle.open, middle.close),
            strength=round(min(100.0, (OB_BASE_STRENGTH + size_pts) * boost), 2),
            formation_time=third.timestamp,
            boost=boost,
        )

    def detect_liquidity_zone(self, series: PriceSeries, k: int) -> Optional[PatternInstance]:
        """5-bar fractal whose centre bar is at offset k + 2."""
        if not series.has(5, k):
            return None
        c = k + 2
        highs = series.values("high", k, 5)
        lows = series.values("low", k, 5)
        centre_high, centre_low = highs[2], lows[2]
        neighbours = [0, 1, 3, 4]

        if all(centre_high > highs[j] for j in neighbours):
            direction, price = Direction.BEARISH, float(centre_high)
        elif all(centre_low < lows[j] for j in neighbours):
            direction, price = Direction.BULLISH, float(centre_low)
        else:
            return None

        atr = VolatilityEstimator(series, self.atr_period).atr(offset=c)
        buffer = atr * self.zone_buffer_atr
        boost = self._volume_boost(series, c, 1)
        return PatternInstance(
            kind="liquidity_zone",
            direction=direction,
            high=price + buffer,
            low=price - buffer,
            strength=round(min(100.0, ZONE_BASE_STRENGTH * boost), 2),
            formation_time=series.timestamp(c),
            extreme=price,
            boost=boost,
        )

    # ------------------------------------------------------------------ #
    # Signal
    # ------------------------------------------------------------------ #

    def _order_block_signal(self, series: PriceSeries) -> Optional[Signal]:
        bar = series.bar(0)
        buffer = VolatilityEstimator(series, self.atr_period).atr() * self.zone_buffer_atr
        fresh = [
            ob for ob in self.order_blocks.with_status(PatternStatus.TESTED)
            if ob.status_age == 0
            and ((ob.direction == Direction.BULLISH and bar.close >= ob.low)
                 or (ob.direction == Direction.BEARISH and bar.close <= ob.high))
        ]
        if not fresh:
            return None
        ob = max(fresh, key=lambda o: o.strength)
        stop = ob.low - buffer if ob.direction == Direction.BULLISH else ob.high + buffer
        return Signal(ob.direction, ob.strength, self.detector_id, stop,
                      f"order block retest [{ob.low:.5f}-{ob.high:.5f}]")

    def _sweep_signal(self, series: PriceSeries) -> Optional[Signal]:
        bar = series.bar(0)
        candidates = []
        for zone in self.zones.with_status(PatternStatus.SWEPT):
            if zone.status_age > self.sweep_recency:
                continue
            swing = zone.mid
            if zone.direction == Direction.BEARISH and bar.is_bearish and bar.close < swing:
                candidates.append(zone)
            elif zone.direction == Direction.BULLISH and bar.is_bullish and bar.close > swing:
                candidates.append(zone)
        if not candidates:
            return None
        zone = max(candidates, key=lambda z: (z.strength, -z.status_age))
        return Signal(zone.direction, zone.strength, self.detector_id, zone.extreme,
                      f"liquidity sweep of {zone.mid:.5f} reversed, extreme {zone.extreme:.5f}")

    def _gap_approach_signal(self, series: PriceSeries) -> Optional[Signal]:
        close = series.bar(0).close
        candidates = []
        for gap in self.gaps.book.active():
            reach = gap.size * self.fvg_approach_pct
            if gap.direction == Direction.BULLISH and gap.high < close <= gap.high + reach:
                candidates.append(gap)
            elif gap.direction == Direction.BEARISH and gap.low - reach <= close < gap.low:
                candidates.append(gap)
        if not candidates:
            return None
        gap = max(candidates, key=lambda g: (g.strength, -g.age_in_bars))
        stop = gap.low if gap.direction == Direction.BULLISH else gap.high
        return Signal(gap.direction, gap.strength, self.detector_id, stop,
                      f"approaching FVG [{gap.low:.5f}-{gap.high:.5f}]")

    def higher_timeframe_trend(self, series: PriceSeries) -> Direction:
        """Close vs SMA of closes on the resampled higher timeframe."""
        df = series.frame()
        if df.empty:
            return Direction.NONE
        htf = df.resample(self.htf_rule).agg({
            "open":   "first",
            "high":   "max",
            "low":    "min",
            "close":  "last",
            "volume": "sum",
        }).dropna()
        if len(htf) < self.htf_ma_period:
            return Direction.NONE
        closes = htf["close"].values
        sma = float(np.mean(closes[-self.htf_ma_period:]))
        return Direction.from_sign(float(closes[-1]) - sma)

    def check_for_signal(self, series: PriceSeries) -> Signal:
        self._last = None
        if len(series) == 0:
            return Signal.none(self.detector_id)

        signal = (self._order_block_signal(series)
                  or self._sweep_signal(series)
                  or self._gap_approach_signal(series))
        if signal is None:
            return Signal.none(self.detector_id)

        if self.use_mtf_confirm:
            trend = self.higher_timeframe_trend(series)
            if trend == signal.direction:
                signal.strength = min(100.0, signal.strength * _cfg.CONFIRM_BOOST)
            elif trend == signal.direction.opposite():
                signal.strength = signal.strength * _cfg.CONFIRM_PENALTY
            signal.notes += f" | htf {trend.name.lower()}"

        signal.strength = round(signal.strength, 2)
        self._last = signal
        return signal

    def calculate_stop_loss(self, direction: Direction) -> Optional[float]:
        if self._last is None or self._last.direction != direction:
            return None
        return self._last.stop_loss

    def live_patterns(self) -> List[Tuple[str, PatternInstance]]:
        """Everything still in the books, for inspection."""
        return ([("order_block", p) for p in self.order_blocks]
                + [("liquidity_zone", p) for p in self.zones]
                + [("fvg", p) for p in self.gaps.book])
