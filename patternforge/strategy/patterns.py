"""
Pattern primitives shared by every detector.

  Direction        — +1 bullish / -1 bearish / 0 none
  PatternStatus    — ACTIVE → {TESTED | FILLED | SWEPT} → EXPIRED
  PatternInstance  — one live pattern (gap, order block, liquidity zone)
  PatternBook      — the instance list a detector owns privately
  Signal           — what a detector reports for the current bar
  PatternDetector  — the interface the aggregator dispatches through
  StatefulDetector — bar-stepping base for detectors that keep a PatternBook

Lifecycle rules:
  - ageInBars goes up by exactly 1 for every processed bar.
  - Exactly one of TESTED / FILLED / SWEPT can fire per instance; once
    terminal, further transitions are ignored (no flapping back to ACTIVE).
  - Instances older than the book's max_age are marked EXPIRED and dropped.
    Dropping rebuilds the survivor list; nothing is spliced mid-iteration.
"""
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional

import pandas as pd

from ..exchange.price_series import PriceSeries

logger = logging.getLogger(__name__)


class Direction(Enum):
    BULLISH = 1
    NONE    = 0
    BEARISH = -1

    @property
    def sign(self) -> int:
        return self.value

    def opposite(self) -> "Direction":
        return Direction(-self.value)

    @classmethod
    def from_sign(cls, value: float) -> "Direction":
        if value > 0:
            return cls.BULLISH
        if value < 0:
            return cls.BEARISH
        return cls.NONE


class PatternStatus(Enum):
    ACTIVE  = "active"
    TESTED  = "tested"
    FILLED  = "filled"
    SWEPT   = "swept"
    EXPIRED = "expired"


TERMINAL_STATUSES = (PatternStatus.TESTED, PatternStatus.FILLED, PatternStatus.SWEPT)

_ids = itertools.count(1)


@dataclass
class PatternInstance:
    kind: str                      # 'fvg', 'order_block', 'liquidity_zone'
    direction: Direction
    high: float                    # upper price level (gap high / zone top)
    low: float                     # lower price level (gap low / zone bottom)
    strength: float                # 0–100
    formation_time: pd.Timestamp
    age_in_bars: int = 0
    status: PatternStatus = PatternStatus.ACTIVE
    status_age: int = 0            # bars since the last status transition
    touches: int = 0
    extreme: float = 0.0           # sweep extreme / swing price, detector-specific
    boost: float = 1.0             # multiplier already applied to strength
    id: int = field(default_factory=lambda: next(_ids))

    @property
    def size(self) -> float:
        return self.high - self.low

    @property
    def mid(self) -> float:
        return self.low + self.size / 2

    @property
    def is_active(self) -> bool:
        return self.status == PatternStatus.ACTIVE

    def transition(self, status: PatternStatus) -> bool:
        """
        Move out of ACTIVE. Returns True only when the transition fired.
        A terminal instance may still move to EXPIRED.
        """
        if status == PatternStatus.EXPIRED:
            if self.status == PatternStatus.EXPIRED:
                return False
        elif self.status != PatternStatus.ACTIVE:
            return False
        self.status = status
        self.status_age = 0
        return True

    def __repr__(self):
        return (f"PatternInstance({self.kind} {self.direction.name} "
                f"[{self.low:.5f}-{self.high:.5f}] str={self.strength:.1f} "
                f"age={self.age_in_bars} {self.status.value})")


class PatternBook:
    """Instance list owned by a single detector."""

    def __init__(self, max_age: int):
        self.max_age = max_age
        self._items: List[PatternInstance] = []

    def __iter__(self) -> Iterator[PatternInstance]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def add(self, inst: PatternInstance) -> None:
        self._items.append(inst)

    def advance(self) -> None:
        """One bar passed."""
        for inst in self._items:
            inst.age_in_bars += 1
            inst.status_age += 1

    def prune(self) -> List[PatternInstance]:
        """Drop instances older than max_age. Returns the expired ones."""
        survivors, expired = [], []
        for inst in self._items:
            if inst.age_in_bars > self.max_age:
                inst.transition(PatternStatus.EXPIRED)
                expired.append(inst)
            else:
                survivors.append(inst)
        self._items = survivors
        return expired

    def active(self, direction: Optional[Direction] = None) -> List[PatternInstance]:
        return [
            i for i in self._items
            if i.is_active and (direction is None or i.direction == direction)
        ]

    def with_status(self, status: PatternStatus) -> List[PatternInstance]:
        return [i for i in self._items if i.status == status]

    def clear(self) -> None:
        self._items = []


@dataclass
class Signal:
    direction: Direction
    strength: float                # 0–100
    detector_id: str
    stop_loss: Optional[float] = None
    notes: str = ""

    @property
    def is_trade(self) -> bool:
        return self.direction != Direction.NONE and self.strength > 0

    @classmethod
    def none(cls, detector_id: str, notes: str = "") -> "Signal":
        return cls(Direction.NONE, 0.0, detector_id, None, notes)


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


class PatternDetector(ABC):
    """
    Interface the SignalAggregator dispatches through.

    update()              : ingest any new closed bars
    check_for_signal()    : directional signal for the latest bar
    calculate_stop_loss() : stop for the signal just reported
    """

    detector_id: str = "detector"

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def update(self, series: PriceSeries) -> None:
        """Stateless detectors have nothing to ingest."""

    @abstractmethod
    def check_for_signal(self, series: PriceSeries) -> Signal:
        ...

    @abstractmethod
    def calculate_stop_loss(self, direction: Direction) -> Optional[float]:
        ...

    def reset(self) -> None:
        """Forget all state."""


class BarCursor:
    """
    Remembers the last bar a detector processed, by timestamp.

    pending(series) → how many bars closed since then. On the first call, or
    when the remembered bar has rolled out of the buffer, it returns the
    warm-up count and `reseeded` is set so the owner can drop stale state.
    """

    def __init__(self, warmup_bars: int):
        self.warmup_bars = warmup_bars
        self.last_ts: Optional[pd.Timestamp] = None
        self.reseeded = False

    def pending(self, series: PriceSeries) -> int:
        self.reseeded = False
        if len(series) == 0:
            return 0
        if self.last_ts is not None:
            seen = series.offset_of(self.last_ts)
            if seen is not None:
                return seen
            logger.info(f"last processed bar {self.last_ts} no longer in series, reseeding")
        self.reseeded = True
        return min(len(series), self.warmup_bars)

    def mark(self, series: PriceSeries) -> None:
        self.last_ts = series.timestamp(0)

    def reset(self) -> None:
        self.last_ts = None


class StatefulDetector(PatternDetector):
    """
    Base for detectors that step through bars and keep a PatternBook.

    update() works out how many bars closed since the last call (by
    timestamp) and replays them oldest first. For each bar at offset k:

        1. book.advance()        every existing instance ages by 1
        2. on_bar(series, k)     status checks against bar k
        3. detect_at(series, k)  new instances whose newest bar is k
        4. book.prune()

    After the replay an instance formed at offset i has age_in_bars == i.
    Calling update() again with no new bar does nothing.
    """

    warmup_bars: int = 50

    def __init__(self, max_age: int, enabled: bool = True):
        super().__init__(enabled)
        self.book = PatternBook(max_age)
        self._books: List[PatternBook] = [self.book]
        self._cursor: Optional[BarCursor] = None

    def add_book(self, max_age: int) -> PatternBook:
        book = PatternBook(max_age)
        self._books.append(book)
        return book

    def update(self, series: PriceSeries) -> None:
        if self._cursor is None:
            self._cursor = BarCursor(self.warmup_bars)
        new_bars = self._cursor.pending(series)
        if self._cursor.reseeded:
            for book in self._books:
                book.clear()
        if new_bars == 0:
            return
        try:
            for k in range(new_bars - 1, -1, -1):
                self._step(series, k)
        except Exception:
            # books were aged for part of the replay; start over on the next call
            logger.warning(f"{self.detector_id}: replay failed, dropping state")
            self.reset()
            raise
        self._cursor.mark(series)

    def _step(self, series: PriceSeries, k: int) -> None:
        for book in self._books:
            book.advance()
        self.on_bar(series, k)
        self.detect_at(series, k)
        for book in self._books:
            for inst in book.prune():
                logger.debug(f"{self.detector_id}: expired {inst}")

    def reset(self) -> None:
        for book in self._books:
            book.clear()
        self._cursor = None

    @abstractmethod
    def on_bar(self, series: PriceSeries, k: int) -> None:
        ...

    @abstractmethod
    def detect_at(self, series: PriceSeries, k: int) -> None:
        ...
