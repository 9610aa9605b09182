"""
Price Series — rolling OHLCV buffer for one symbol/timeframe.

Bars are stored chronologically in a pandas DataFrame (oldest first, latest
last: the same layout every detector in the forex strategy used). Access is
by *offset*, counted back from the most recently closed bar:

    offset 0  → latest closed bar
    offset 1  → the bar before it
    ...

The forming bar is never stored here. The host feeds closed bars through
append(); the series keeps at most `max_bars` of them.

Usage:
    series = PriceSeries(df, symbol="EUR/USD", timeframe="1h")
    bar = series.bar(0)
    recent = series.get(0, 3)     # [bar0, bar1, bar2]
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

OHLCV_COLUMNS = ["open", "high", "low", "close", "volume"]


class InsufficientHistory(Exception):
    """Raised when a request reaches further back than the series holds."""


@dataclass(frozen=True)
class Bar:
    open: float
    high: float
    low: float
    close: float
    volume: float
    timestamp: pd.Timestamp

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open


class PriceSeries:
    """
    Rolling OHLCV series with offset-based access.

    Parameters
    ----------
    df : pd.DataFrame
        open/high/low/close[/volume] columns, datetime index, oldest first.
        A missing volume column is filled with zeros.
    max_bars : int
        Oldest bars beyond this count are dropped on append().
    """

    def __init__(
        self,
        df: Optional[pd.DataFrame] = None,
        symbol: str = "",
        timeframe: str = "",
        max_bars: int = 1000,
    ):
        self.symbol = symbol
        self.timeframe = timeframe
        self.max_bars = max_bars
        if df is None:
            df = pd.DataFrame(columns=OHLCV_COLUMNS, index=pd.DatetimeIndex([], tz="UTC"))
        self._df = self._normalise(df)

    @staticmethod
    def _normalise(df: pd.DataFrame) -> pd.DataFrame:
        df = df.copy()
        if "volume" not in df.columns:
            df["volume"] = 0.0
        missing = [c for c in OHLCV_COLUMNS if c not in df.columns]
        if missing:
            raise ValueError(f"PriceSeries frame missing columns: {missing}")
        df = df[OHLCV_COLUMNS].astype(float)
        if not isinstance(df.index, pd.DatetimeIndex):
            df.index = pd.to_datetime(df.index, utc=True)
        elif df.index.tz is None:
            df.index = df.index.tz_localize("UTC")
        return df.sort_index()

    # ------------------------------------------------------------------ #
    # Feed
    # ------------------------------------------------------------------ #

    def append(self, bar: Bar) -> bool:
        """Add a newly closed bar. Bars at or before the latest timestamp are ignored (returns False)."""
        ts = pd.Timestamp(bar.timestamp)
        if ts.tzinfo is None:
            ts = ts.tz_localize("UTC")
        if len(self._df) and ts <= self._df.index[-1]:
            logger.warning(
                f"{self.symbol} {self.timeframe}: ignoring stale bar {ts} "
                f"(latest {self._df.index[-1]})"
            )
            return False
        row = pd.DataFrame(
            [[bar.open, bar.high, bar.low, bar.close, bar.volume]],
            columns=OHLCV_COLUMNS,
            index=pd.DatetimeIndex([ts]),
        )
        self._df = pd.concat([self._df, row]) if len(self._df) else row
        if len(self._df) > self.max_bars:
            self._df = self._df.iloc[-self.max_bars:]
        return True

    # ------------------------------------------------------------------ #
    # Access
    # ------------------------------------------------------------------ #

    def __len__(self) -> int:
        return len(self._df)

    def _pos(self, offset: int) -> int:
        if offset < 0 or offset >= len(self._df):
            raise InsufficientHistory(
                f"offset {offset} outside series of {len(self._df)} bars"
            )
        return len(self._df) - 1 - offset

    def bar(self, offset: int = 0) -> Bar:
        row = self._df.iloc[self._pos(offset)]
        return Bar(
            open=float(row["open"]),
            high=float(row["high"]),
            low=float(row["low"]),
            close=float(row["close"]),
            volume=float(row["volume"]),
            timestamp=self._df.index[self._pos(offset)],
        )

    def get(self, offset: int, count: int) -> List[Bar]:
        """
        Return `count` bars starting `offset` bars back, newest first
        (element k is the bar at offset + k).
        """
        if count <= 0:
            return []
        if offset < 0 or offset + count > len(self._df):
            raise InsufficientHistory(
                f"need {offset + count} bars, series has {len(self._df)}"
            )
        return [self.bar(offset + k) for k in range(count)]

    def has(self, count: int, offset: int = 0) -> bool:
        return offset >= 0 and count >= 0 and offset + count <= len(self._df)

    def timestamp(self, offset: int = 0) -> pd.Timestamp:
        return self._df.index[self._pos(offset)]

    def offset_of(self, timestamp: pd.Timestamp) -> Optional[int]:
        """Offset of the bar stamped `timestamp`, or None if not in the buffer."""
        pos = self._df.index.searchsorted(timestamp)
        if pos < len(self._df) and self._df.index[pos] == timestamp:
            return len(self._df) - 1 - int(pos)
        return None

    def values(self, column: str, offset: int, count: int) -> np.ndarray:
        """Column values for offsets offset .. offset+count-1, newest first."""
        if not self.has(count, offset):
            raise InsufficientHistory(
                f"need {offset + count} bars of {column}, series has {len(self._df)}"
            )
        end = len(self._df) - offset
        return self._df[column].values[end - count:end][::-1]

    def frame(self, count: Optional[int] = None, offset: int = 0) -> pd.DataFrame:
        """Chronological DataFrame view ending at `offset` (copy)."""
        end = len(self._df) - offset
        start = 0 if count is None else max(0, end - count)
        return self._df.iloc[start:end].copy()

    @property
    def latest_close(self) -> float:
        return self.bar(0).close
