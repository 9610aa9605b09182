"""
Bar Orchestrator — one pass per closed bar.

Every bar:
  1. Append the bar to the PriceSeries
  2. Trail open positions: chandelier exit, ratchet only, push via modify_stop
  3. Position cap reached?        → no new entry this bar
  4. SignalAggregator.evaluate()  → strongest signal + its detector's stop
  5. Size from the stop distance  → volume 0 means no trade
  6. Submit with take profit at entry ± risk × TAKE_PROFIT_RR

On close:
  close_position() seals the TradeRecord, journals it, and refreshes the
  sizer. Once MC_MIN_TRADES trades exist the throttle uses the Monte Carlo
  p95 drawdown instead of the realized one.

A rejected order is logged and reported as status="rejected". It is never
retried; the next bar starts fresh.

Environment (.env is loaded on import):
  PATTERNFORGE_HOME       base dir for logs/trade_journal.jsonl (default ~/patternforge)
  PATTERNFORGE_LOG_LEVEL  root log level (default INFO)
"""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
from dotenv import load_dotenv

from ..exchange.order_sink import ExecutionFailure, OrderSink, PaperOrderSink
from ..exchange.price_series import Bar, PriceSeries
from ..risk.monte_carlo import simulate_max_drawdown
from ..risk.position_sizer import PositionSizer
from ..strategy import strategy_config as _cfg
from ..strategy.aggregator import AggregateResult, SignalAggregator
from ..strategy.chandelier import ChandelierTrail
from ..strategy.fvg import FairValueGapDetector
from ..strategy.patterns import Direction
from ..strategy.pin_bar import PinBarDetector
from ..strategy.smart_money import SmartMoneyDetector
from ..strategy.volatility import VolatilityEstimator
from ..strategy.vwap_bands import VWAPBandDetector
from .trade_journal import PerformanceTracker, TradeRecord

load_dotenv()

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> None:
    """Root logging for a running bot. Library modules only ever call getLogger."""
    level = level or os.environ.get("PATTERNFORGE_LOG_LEVEL", "INFO")
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def build_default_aggregator() -> SignalAggregator:
    """Detectors in priority order: ties go to the earlier one."""
    return SignalAggregator([
        SmartMoneyDetector(),
        FairValueGapDetector(),
        PinBarDetector(),
        VWAPBandDetector(),
    ])


@dataclass
class OpenPosition:
    record: TradeRecord
    stop_loss: float                 # current (trailed) stop

    @property
    def ticket(self) -> str:
        return self.record.ticket

    @property
    def direction(self) -> Direction:
        return self.record.direction


@dataclass
class CycleResult:
    status: str                      # submitted / no_signal / max_positions / skipped / rejected / stale
    timestamp: Optional[pd.Timestamp] = None
    reason: str = ""
    ticket: Optional[str] = None
    direction: Direction = Direction.NONE
    volume: float = 0.0
    entry: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    stops_moved: Dict[str, float] = field(default_factory=dict)
    aggregate: Optional[AggregateResult] = None


class BarOrchestrator:
    """
    Wires PriceSeries → detectors → sizer → order sink for one instrument.

    Usage:
        orch = BarOrchestrator(PriceSeries(history, "EUR/USD", "1h"), account_balance=10_000)
        for bar in feed:
            result = orch.on_bar(bar)
    """

    def __init__(
        self,
        series: PriceSeries,
        aggregator: Optional[SignalAggregator] = None,
        sizer: Optional[PositionSizer] = None,
        sink: Optional[OrderSink] = None,
        tracker: Optional[PerformanceTracker] = None,
        trail: Optional[ChandelierTrail] = None,
        account_balance: float = 10_000.0,
        max_open_positions: int = None,
        take_profit_rr: float = None,
    ):
        self.series = series
        self.aggregator = aggregator if aggregator is not None else build_default_aggregator()
        self.sizer = sizer if sizer is not None else PositionSizer(account_balance=account_balance)
        self.sink = sink if sink is not None else PaperOrderSink()
        self.tracker = (tracker if tracker is not None
                        else PerformanceTracker(starting_balance=account_balance))
        self.trail = trail if trail is not None else ChandelierTrail()
        self.max_open_positions = (_cfg.MAX_OPEN_POSITIONS
                                   if max_open_positions is None else max_open_positions)
        self.take_profit_rr = _cfg.TAKE_PROFIT_RR if take_profit_rr is None else take_profit_rr
        self.account_balance = account_balance
        self.positions: Dict[str, OpenPosition] = {}

        self.sizer.update_account(account_balance)
        if len(self.tracker):
            self._refresh_sizer()

        logger.info(
            f"BarOrchestrator {series.symbol} {series.timeframe}: "
            f"{len(self.aggregator.detectors)} detectors, balance ${account_balance:,.2f}, "
            f"levers {_cfg.get_model_tags()}"
        )

    # ── Main entry point ─────────────────────────────────────────────

    def on_bar(self, bar: Bar) -> CycleResult:
        if not self.series.append(bar):
            return CycleResult("stale", bar.timestamp, reason="bar not newer than series")

        ts = self.series.timestamp(0)
        moved = self._trail_stops()

        if len(self.positions) >= self.max_open_positions:
            logger.debug(f"{ts}: {len(self.positions)} open position(s), no new entries")
            return CycleResult("max_positions", ts, stops_moved=moved)

        agg = self.aggregator.evaluate(self.series)
        if not agg.has_trade:
            return CycleResult("no_signal", ts, stops_moved=moved, aggregate=agg)

        result = self._enter(agg)
        result.timestamp = ts
        result.stops_moved = moved
        result.aggregate = agg
        return result

    # ── Entry ────────────────────────────────────────────────────────

    def _enter(self, agg: AggregateResult) -> CycleResult:
        signal = agg.signal
        direction = signal.direction
        entry = self.series.latest_close
        stop = signal.stop_loss
        risk_per_unit = (entry - stop) * direction.sign

        if risk_per_unit <= 0:
            reason = f"{signal.detector_id} stop {stop:.5f} not beyond entry {entry:.5f}"
            logger.warning(f"{direction.name}: {reason}")
            return CycleResult("skipped", reason=reason, direction=direction, entry=entry, stop_loss=stop)

        vol = VolatilityEstimator(self.series)
        baseline = vol.atr(_cfg.VOL_BASELINE_PERIOD)
        if baseline > 0:
            self.sizer.set_baseline_atr(baseline)
        volume = self.sizer.size(risk_per_unit, current_atr=vol.atr(),
                                 account_balance=self.account_balance)
        if volume <= 0:
            reason = "sizer returned 0"
            logger.info(f"{direction.name} {signal.detector_id}: {reason}")
            return CycleResult("skipped", reason=reason, direction=direction, entry=entry, stop_loss=stop)

        take_profit = entry + direction.sign * risk_per_unit * self.take_profit_rr

        try:
            order = self.sink.submit(direction, volume, entry, stop, take_profit)
        except ExecutionFailure as e:
            logger.error(f"order rejected: {direction.name} {volume} @ {entry:.5f}: {e}")
            return CycleResult("rejected", reason=str(e), direction=direction, volume=volume,
                               entry=entry, stop_loss=stop, take_profit=take_profit)

        record = TradeRecord(
            ticket=order.ticket,
            direction=direction,
            volume=order.volume,
            open_price=order.price,
            stop_loss=order.stop_loss,
            open_time=self.series.timestamp(0),
            take_profit=order.take_profit,
            initial_risk=risk_per_unit * order.volume * self.sizer.params.contract_size,
            strategy_id=signal.detector_id,
            strategy_confidence=signal.strength,
        )
        self.positions[order.ticket] = OpenPosition(record, order.stop_loss)
        logger.info(
            f"✅ {direction.name} {order.volume} @ {order.price:.5f} SL={order.stop_loss:.5f} "
            f"TP={take_profit:.5f} via {signal.detector_id} (str={signal.strength:.1f}) "
            f"ticket={order.ticket}"
        )
        return CycleResult("submitted", ticket=order.ticket, direction=direction, volume=order.volume,
                           entry=order.price, stop_loss=order.stop_loss, take_profit=take_profit)

    # ── Trailing ─────────────────────────────────────────────────────

    def _trail_stops(self) -> Dict[str, float]:
        if not self.positions:
            return {}
        self.trail.update(self.series)
        close = self.series.latest_close
        moved = {}
        for pos in list(self.positions.values()):
            new_stop = self.trail.trail(pos.direction, pos.stop_loss)
            if new_stop is None or new_stop == pos.stop_loss:
                continue
            # a stop through the current close would be refused by the broker
            if (new_stop - close) * pos.direction.sign >= 0:
                continue
            try:
                self.sink.modify_stop(pos.ticket, new_stop)
            except ExecutionFailure as e:
                logger.error(f"{pos.ticket}: stop move to {new_stop:.5f} rejected: {e}")
                continue
            logger.info(f"{pos.ticket}: trailed SL {pos.stop_loss:.5f} → {new_stop:.5f}")
            pos.stop_loss = new_stop
            moved[pos.ticket] = new_stop
        return moved

    # ── Exit / feedback ──────────────────────────────────────────────

    def close_position(
        self,
        ticket: str,
        close_price: float,
        exit_reason: str,
        close_time: Optional[pd.Timestamp] = None,
    ) -> TradeRecord:
        pos = self.positions.pop(ticket, None)
        if pos is None:
            raise KeyError(f"no open position {ticket}")
        if close_time is None:
            close_time = self.series.timestamp(0)

        record = pos.record.close(close_price, close_time, exit_reason,
                                  contract_size=self.sizer.params.contract_size)
        self.tracker.record(record)
        self.account_balance += record.profit
        self.sizer.update_account(self.account_balance)
        self._refresh_sizer()
        return record

    def _refresh_sizer(self) -> None:
        snap = self.tracker.snapshot()
        expected_dd = None
        if snap.trade_count >= _cfg.MC_MIN_TRADES:
            mc = simulate_max_drawdown(
                self.tracker.r_multiples(),
                self.sizer.params.risk_percent_per_trade,
                n_trades=_cfg.MC_TRADES_PER_RUN,
                n_simulations=_cfg.MC_SIMULATIONS,
                method=_cfg.MC_RESAMPLE,
            )
            expected_dd = mc.p95
        self.sizer.refresh(snap, expected_max_drawdown=expected_dd)
