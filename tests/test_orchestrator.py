"""
Unit tests for BarOrchestrator.

The aggregator is mocked so each test controls the signal; sizing, the
paper sink, trailing and the performance feedback loop are real.
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from unittest.mock import MagicMock

import pandas as pd
import pytest

from patternforge.exchange.order_sink import ExecutionFailure, PaperOrderSink
from patternforge.exchange.price_series import Bar, PriceSeries
from patternforge.execution.orchestrator import BarOrchestrator, build_default_aggregator
from patternforge.execution.trade_journal import PerformanceTracker
from patternforge.risk.position_sizer import PositionSizer, RiskParameters
from patternforge.strategy.aggregator import AggregateResult, SignalAggregator
from patternforge.strategy.patterns import Direction, Signal

FLAT = (1.2025, 1.2050, 1.2010, 1.2035)


def make_series(n: int = 30) -> PriceSeries:
    df = pd.DataFrame([FLAT] * n, columns=["open", "high", "low", "close"])
    df.index = pd.date_range("2024-01-01", periods=n, freq="1h")
    return PriceSeries(df, symbol="EUR/USD", timeframe="1h")


def next_bar(series: PriceSeries, row=FLAT) -> Bar:
    return Bar(*row, 0.0, series.timestamp(0) + pd.Timedelta(hours=1))


def signal(direction=Direction.BULLISH, stop=1.1990, strength=70.0) -> AggregateResult:
    return AggregateResult(signal=Signal(direction, strength, "stub", stop))


def quiet() -> AggregateResult:
    return AggregateResult(signal=None)


def make_orch(results, sink=None, max_open_positions=1, balance=10_000.0):
    series = make_series()
    agg = MagicMock(spec=SignalAggregator)
    agg.detectors = []
    agg.evaluate.side_effect = list(results)
    params = RiskParameters(max_position_size=1e9, lot_step=0.01, min_position_size=0.01)
    orch = BarOrchestrator(
        series,
        aggregator=agg,
        sizer=PositionSizer(params),
        sink=sink or PaperOrderSink(),
        tracker=PerformanceTracker(path=None, starting_balance=balance),
        account_balance=balance,
        max_open_positions=max_open_positions,
        take_profit_rr=2.0,
    )
    return orch, series, agg


class TestEntry:
    def test_submit_with_take_profit(self):
        orch, series, _ = make_orch([signal()])
        result = orch.on_bar(next_bar(series))
        assert result.status == "submitted"
        assert result.entry == pytest.approx(1.2035)
        assert result.stop_loss == pytest.approx(1.1990)
        assert result.take_profit == pytest.approx(1.2035 + 0.0045 * 2)
        # 1% of 10k over a 0.0045 stop
        assert result.volume == pytest.approx(22222.22)
        assert result.ticket in orch.positions

    def test_short_take_profit_below(self):
        orch, series, _ = make_orch([signal(Direction.BEARISH, stop=1.2080)])
        result = orch.on_bar(next_bar(series))
        assert result.status == "submitted"
        assert result.take_profit == pytest.approx(1.2035 - 0.0045 * 2)

    def test_no_signal(self):
        orch, series, _ = make_orch([quiet()])
        assert orch.on_bar(next_bar(series)).status == "no_signal"
        assert orch.positions == {}

    def test_stop_on_wrong_side_skipped(self):
        orch, series, _ = make_orch([signal(Direction.BULLISH, stop=1.2100)])
        result = orch.on_bar(next_bar(series))
        assert result.status == "skipped"
        assert orch.positions == {}

    def test_rejection_not_retried(self):
        sink = MagicMock()
        sink.submit.side_effect = ExecutionFailure("market closed")
        orch, series, _ = make_orch([signal(), quiet()], sink=sink)
        result = orch.on_bar(next_bar(series))
        assert result.status == "rejected"
        assert "market closed" in result.reason
        assert sink.submit.call_count == 1
        orch.on_bar(next_bar(series))
        assert sink.submit.call_count == 1

    def test_position_cap(self):
        orch, series, agg = make_orch([signal(), signal()])
        orch.on_bar(next_bar(series))
        result = orch.on_bar(next_bar(series))
        assert result.status == "max_positions"
        assert agg.evaluate.call_count == 1

    def test_stale_bar(self):
        orch, series, agg = make_orch([signal()])
        stale = Bar(*FLAT, 0.0, series.timestamp(0))
        assert orch.on_bar(stale).status == "stale"
        agg.evaluate.assert_not_called()


class TestTrailing:
    def test_long_stop_ratchets_up(self):
        sink = PaperOrderSink()
        orch, series, _ = make_orch([signal(stop=1.1900)], sink=sink)
        entry = orch.on_bar(next_bar(series))
        ticket = entry.ticket

        stops = []
        price = 1.2035
        for _ in range(15):
            price += 0.0010
            row = (price - 0.0005, price + 0.0010, price - 0.0010, price)
            result = orch.on_bar(next_bar(series, row))
            assert result.status == "max_positions"
            stops.append(orch.positions[ticket].stop_loss)

        assert stops[0] > 1.1900
        assert all(b >= a for a, b in zip(stops, stops[1:]))
        assert stops[-1] > stops[0]
        assert sink.orders[ticket].stop_loss == stops[-1]
        assert [s for _, s in sink.stop_changes] == sorted(s for _, s in sink.stop_changes)


class TestFeedback:
    def test_close_records_and_refreshes(self):
        orch, series, _ = make_orch([signal(stop=1.1985)])
        entry = orch.on_bar(next_bar(series))
        record = orch.close_position(entry.ticket, 1.2135, "take_profit")

        assert entry.ticket not in orch.positions
        assert record.r_multiple == pytest.approx(2.0, rel=1e-3)
        assert len(orch.tracker) == 1
        assert orch.account_balance == pytest.approx(10_000 + record.profit)
        assert orch.sizer.params.win_rate == 1.0
        assert orch.sizer.params.system_expectancy == pytest.approx(record.r_multiple)

    def test_close_unknown_ticket(self):
        orch, _, _ = make_orch([])
        with pytest.raises(KeyError):
            orch.close_position("nope", 1.0, "manual")

    def test_monte_carlo_after_enough_trades(self, monkeypatch):
        from patternforge.strategy import strategy_config as cfg
        monkeypatch.setattr(cfg, "MC_MIN_TRADES", 2)
        monkeypatch.setattr(cfg, "MC_SIMULATIONS", 50)
        orch, series, _ = make_orch([signal(stop=1.1985), signal(stop=1.1985)])

        first = orch.on_bar(next_bar(series))
        orch.close_position(first.ticket, 1.1985, "stop")
        realized = orch.tracker.snapshot().max_drawdown
        assert orch.sizer.params.max_drawdown_percent == pytest.approx(realized)

        second = orch.on_bar(next_bar(series))
        orch.close_position(second.ticket, 1.2135, "take_profit")
        # bootstrapped −1R / +2R over 100 trades goes deeper than one loss
        assert orch.sizer.params.max_drawdown_percent > orch.tracker.snapshot().max_drawdown

    def test_shuffle_resample_lever(self, monkeypatch):
        from patternforge.strategy import strategy_config as cfg
        monkeypatch.setattr(cfg, "MC_MIN_TRADES", 2)
        monkeypatch.setattr(cfg, "MC_SIMULATIONS", 50)
        monkeypatch.setattr(cfg, "MC_RESAMPLE", "shuffle")
        orch, series, _ = make_orch([signal(stop=1.1985), signal(stop=1.1985)])

        first = orch.on_bar(next_bar(series))
        orch.close_position(first.ticket, 1.1985, "stop")
        second = orch.on_bar(next_bar(series))
        orch.close_position(second.ticket, 1.2135, "take_profit")
        # either order of −1R / +2R at 1% risk draws down exactly one 1% loss
        assert orch.sizer.params.max_drawdown_percent == pytest.approx(1.0, rel=1e-3)


class TestDefaults:
    def test_default_aggregator_priority(self):
        agg = build_default_aggregator()
        assert [d.detector_id for d in agg.detectors] == ["smart_money", "fvg", "pin_bar", "vwap_bands"]

    def test_default_stack_runs_on_flat_market(self):
        series = make_series(60)
        orch = BarOrchestrator(
            series,
            tracker=PerformanceTracker(path=None),
            account_balance=10_000,
        )
        result = orch.on_bar(next_bar(series))
        assert result.status in ("no_signal", "submitted", "skipped")
        assert result.aggregate is not None
        assert result.aggregate.errors == {}
