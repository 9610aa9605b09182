"""
Trade Journal — closed-trade history and the performance feedback loop.

Format: JSON Lines (.jsonl), one closed TradeRecord per line.
File: $PATTERNFORGE_HOME/logs/trade_journal.jsonl (or memory only, path=None)

TradeRecord lifecycle:
  opened at fill time   → ticket, open price, stop, volume, initial risk
  closed exactly once   → close price/time, profit, exit reason, R multiple
A second close raises ValueError; the record is history after that.

PerformanceTracker.snapshot() is what the position sizer refreshes from:
  win_rate        wins / trades                     (0–1)
  expectancy      mean R multiple
  avg_win         mean profit of winners            (account currency)
  avg_loss        mean |profit| of losers
  win_loss_ratio  avg_win / avg_loss                (0 when no losers)
  max_drawdown    worst peak-to-trough fall of starting_balance + cumulative
                  profit, in % of the peak
"""
import json
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd
from dotenv import load_dotenv

from ..strategy.patterns import Direction

logger = logging.getLogger(__name__)

_DEFAULT_PATH = object()


def journal_path() -> Path:
    """$PATTERNFORGE_HOME/logs/trade_journal.jsonl, read when called so .env is honoured."""
    load_dotenv()
    home = Path(os.environ.get("PATTERNFORGE_HOME", Path.home() / "patternforge"))
    return home / "logs" / "trade_journal.jsonl"


def compute_r_multiple(profit: float, initial_risk: float) -> float:
    """profit / initial_risk; no risk on record → 0."""
    if initial_risk > 0:
        return profit / initial_risk
    return 0.0


@dataclass
class TradeRecord:
    ticket: str
    direction: Direction
    volume: float
    open_price: float
    stop_loss: float
    open_time: pd.Timestamp
    take_profit: Optional[float] = None
    initial_risk: float = 0.0            # account currency at risk at fill
    strategy_id: str = ""
    strategy_confidence: float = 0.0
    close_time: Optional[pd.Timestamp] = None
    close_price: Optional[float] = None
    profit: float = 0.0
    r_multiple: float = 0.0
    exit_reason: str = ""

    @property
    def is_closed(self) -> bool:
        return self.close_time is not None

    def close(
        self,
        close_price: float,
        close_time: pd.Timestamp,
        exit_reason: str,
        contract_size: float = 1.0,
        profit: Optional[float] = None,
    ) -> "TradeRecord":
        if self.is_closed:
            raise ValueError(f"trade {self.ticket} already closed at {self.close_time}")
        if profit is None:
            profit = (close_price - self.open_price) * self.direction.sign * self.volume * contract_size
        self.close_price = close_price
        self.close_time = close_time
        self.exit_reason = exit_reason
        self.profit = profit
        self.r_multiple = compute_r_multiple(profit, self.initial_risk)
        return self

    def to_dict(self) -> dict:
        d = asdict(self)
        d["direction"] = self.direction.name
        for key in ("open_time", "close_time"):
            if d[key] is not None:
                d[key] = pd.Timestamp(d[key]).isoformat()
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "TradeRecord":
        d = dict(d)
        d["direction"] = Direction[d["direction"]]
        for key in ("open_time", "close_time"):
            if d.get(key):
                d[key] = pd.Timestamp(d[key])
        return cls(**d)


@dataclass
class PerformanceSnapshot:
    win_rate: float = 0.0
    expectancy: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    win_loss_ratio: float = 0.0
    max_drawdown: float = 0.0
    trade_count: int = 0


class PerformanceTracker:
    """
    Append-only closed-trade history.

    path=None keeps everything in memory. With a path, existing records are
    loaded on start and every record() appends one line.
    """

    def __init__(self, path: Union[Path, str, None] = _DEFAULT_PATH, starting_balance: float = 10_000.0):
        if path is _DEFAULT_PATH:
            path = journal_path()
        self.path = Path(path) if path is not None else None
        self.starting_balance = starting_balance
        self._trades: List[TradeRecord] = []
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._trades = self._load_all()

    # ── Write ─────────────────────────────────────────────────────────

    def record(self, trade: TradeRecord) -> None:
        if not trade.is_closed:
            raise ValueError(f"trade {trade.ticket} is still open")
        self._trades.append(trade)
        if self.path is not None:
            entry = trade.to_dict()
            entry["logged_at"] = datetime.now(timezone.utc).isoformat()
            with open(self.path, "a") as f:
                f.write(json.dumps(entry) + "\n")
        logger.info(
            f"[JOURNAL] {trade.ticket} {trade.direction.name} {trade.exit_reason} "
            f"P&L={trade.profit:+.2f} R={trade.r_multiple:+.2f}"
        )

    # ── Read / Stats ──────────────────────────────────────────────────

    def _load_all(self) -> List[TradeRecord]:
        if not self.path.exists():
            return []
        trades = []
        with open(self.path) as f:
            for n, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(f"{self.path}:{n} is not valid JSON, skipped")
                    continue
                entry.pop("logged_at", None)
                trades.append(TradeRecord.from_dict(entry))
        logger.info(f"loaded {len(trades)} closed trades from {self.path}")
        return trades

    @property
    def trades(self) -> List[TradeRecord]:
        return list(self._trades)

    def __len__(self) -> int:
        return len(self._trades)

    def r_multiples(self) -> List[float]:
        return [t.r_multiple for t in self._trades]

    def snapshot(self) -> PerformanceSnapshot:
        if not self._trades:
            return PerformanceSnapshot()

        profits = [t.profit for t in self._trades]
        wins = [p for p in profits if p > 0]
        losses = [abs(p) for p in profits if p < 0]
        avg_win = sum(wins) / len(wins) if wins else 0.0
        avg_loss = sum(losses) / len(losses) if losses else 0.0

        return PerformanceSnapshot(
            win_rate=len(wins) / len(profits),
            expectancy=sum(self.r_multiples()) / len(profits),
            avg_win=avg_win,
            avg_loss=avg_loss,
            win_loss_ratio=avg_win / avg_loss if avg_loss > 0 else 0.0,
            max_drawdown=self._max_drawdown(profits),
            trade_count=len(profits),
        )

    def _max_drawdown(self, profits: List[float]) -> float:
        equity = peak = self.starting_balance
        worst = 0.0
        for p in profits:
            equity += p
            peak = max(peak, equity)
            if peak > 0:
                worst = max(worst, (peak - equity) / peak * 100)
        return worst

    def get_stats(self) -> Dict[str, float]:
        """Snapshot as a plain dict, rounded for display."""
        snap = self.snapshot()
        return {
            "total_trades":   snap.trade_count,
            "win_rate":       round(snap.win_rate * 100, 1),
            "expectancy_r":   round(snap.expectancy, 3),
            "avg_win":        round(snap.avg_win, 2),
            "avg_loss":       round(snap.avg_loss, 2),
            "win_loss_ratio": round(snap.win_loss_ratio, 2),
            "max_drawdown":   round(snap.max_drawdown, 2),
            "total_pnl":      round(sum(t.profit for t in self._trades), 2),
        }
