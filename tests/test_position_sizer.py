"""
Unit tests for PositionSizer.

Scenario 3: balance 10,000, risk 1%, stop distance 0.0050, no adjustments
            → risk money 100, raw 20,000 units, then clamp + lot-step floor.
Scenario 4: expectancy −0.3R with the drawdown throttle on → 0, always.
"""
import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import threading

import pytest

from patternforge.execution.trade_journal import PerformanceSnapshot
from patternforge.risk.position_sizer import (
    PositionSizer, RiskParameters, floor_to_step, kelly_fraction, throttle_factor, volatility_factor,
)


def plain(**overrides) -> RiskParameters:
    base = dict(
        risk_percent_per_trade=1.0,
        min_position_size=0.01,
        max_position_size=100.0,
        lot_step=0.01,
        contract_size=1.0,
        use_kelly_criterion=False,
        use_volatility_adjust=False,
        use_drawdown_throttle=False,
    )
    base.update(overrides)
    return RiskParameters(**base)


class TestScenarios:
    def test_scenario_3_clamped_to_max(self):
        sizer = PositionSizer(plain(), account_balance=10_000)
        b = sizer.size_breakdown(0.0050)
        assert b.risk_money == pytest.approx(100.0)
        assert b.volume == 100.0
        assert sizer.size(0.0050) == sizer.size(0.0050)

    def test_scenario_3_raw_units(self):
        sizer = PositionSizer(plain(max_position_size=1_000_000), account_balance=10_000)
        assert sizer.size(0.0050) == pytest.approx(20_000.0)

    def test_scenario_4_negative_expectancy(self):
        params = plain(use_drawdown_throttle=True, system_expectancy=-0.3,
                       use_kelly_criterion=True, win_rate=0.9, win_loss_ratio=3.0)
        sizer = PositionSizer(params, account_balance=1_000_000)
        assert sizer.size(0.0050) == 0.0
        assert sizer.size(10.0, current_atr=0.001) == 0.0


class TestBounds:
    @pytest.mark.parametrize("risk_per_unit", [0.0001, 0.001, 0.01, 1.0, 50.0, 1e6])
    def test_volume_within_bounds(self, risk_per_unit):
        sizer = PositionSizer(plain(), account_balance=10_000)
        v = sizer.size(risk_per_unit)
        assert 0.01 <= v <= 100.0

    @pytest.mark.parametrize("risk_per_unit", [0.0, -0.01])
    def test_no_stop_distance(self, risk_per_unit):
        assert PositionSizer(plain(), account_balance=10_000).size(risk_per_unit) == 0.0

    def test_no_balance(self):
        assert PositionSizer(plain(), account_balance=0.0).size(0.005) == 0.0

    def test_lot_step_floor(self):
        # 100 / 81 = 1.2345… → 1.23
        sizer = PositionSizer(plain(), account_balance=10_000)
        assert sizer.size(81.0) == pytest.approx(1.23)

    def test_raised_back_to_minimum(self):
        params = plain(min_position_size=0.015, lot_step=0.01)
        sizer = PositionSizer(params, account_balance=10_000)
        assert sizer.size(1e6) == pytest.approx(0.015)

    def test_contract_size(self):
        sizer = PositionSizer(plain(contract_size=100_000, max_position_size=50.0), account_balance=10_000)
        # 100 / 0.0050 / 100,000 = 0.2 lots
        assert sizer.size(0.0050) == pytest.approx(0.2)

    def test_floor_to_step_float_noise(self):
        assert floor_to_step(0.3, 0.01) == pytest.approx(0.3)
        assert floor_to_step(7.9, 1.0) == 7.0


class TestAdjustments:
    def test_kelly_fraction(self):
        assert kelly_fraction(0.6, 2.0, 0.25) == 0.25          # 0.4 capped
        assert kelly_fraction(0.5, 1.5, 0.25) == pytest.approx(0.5 - 0.5 / 1.5)
        assert kelly_fraction(0.3, 1.0, 0.25) == 0.0           # negative → 0
        assert kelly_fraction(0.9, 0.0, 0.25) == 0.0

    def test_kelly_scales_risk(self):
        params = plain(use_kelly_criterion=True, win_rate=0.5, win_loss_ratio=1.5,
                       max_position_size=1e9)
        sizer = PositionSizer(params, account_balance=10_000)
        b = sizer.size_breakdown(1.0)
        assert b.risk_money == pytest.approx(100.0 * (0.5 - 0.5 / 1.5))

    def test_volatility_factor(self):
        assert volatility_factor(0.002, 0.004) == pytest.approx(0.5)
        assert volatility_factor(0.004, 0.001) == pytest.approx(2.0)   # 4.0 capped
        assert volatility_factor(0.002, 0.0) == 1.0
        assert volatility_factor(0.0, 0.002) == 1.0

    def test_throttle_factor(self):
        assert throttle_factor(-0.1, 0.0) == 0.0
        assert throttle_factor(0.0, 10.0) == 1.0
        assert throttle_factor(0.0, 40.0) == pytest.approx(0.5)
        assert throttle_factor(0.0, 100.0) == pytest.approx(0.5)       # floor
        assert throttle_factor(1.0, 0.0) == pytest.approx(1.25)
        assert throttle_factor(5.0, 0.0) == pytest.approx(1.5)         # cap

    def test_full_chain(self):
        params = plain(use_volatility_adjust=True, baseline_atr=0.002,
                       use_drawdown_throttle=True, system_expectancy=1.0, max_drawdown_percent=25.0,
                       max_position_size=1e9)
        sizer = PositionSizer(params, account_balance=10_000)
        b = sizer.size_breakdown(1.0, current_atr=0.004)
        assert b.risk_money == pytest.approx(100.0 * 0.5 * 0.8 * 1.25)


class TestRefresh:
    def test_refresh_is_copy_on_write(self):
        sizer = PositionSizer(plain(), account_balance=10_000)
        before = sizer.params
        snap = PerformanceSnapshot(win_rate=0.55, expectancy=0.4, avg_win=200, avg_loss=100,
                                   win_loss_ratio=2.0, max_drawdown=12.0, trade_count=30)
        after = sizer.refresh(snap)
        assert sizer.params is after
        assert before.win_rate == 0.0
        assert after.win_rate == 0.55
        assert after.system_expectancy == 0.4
        assert after.max_drawdown_percent == 12.0

    def test_expected_drawdown_overrides_realized(self):
        sizer = PositionSizer(plain(), account_balance=10_000)
        after = sizer.refresh(PerformanceSnapshot(max_drawdown=5.0), expected_max_drawdown=30.0)
        assert after.max_drawdown_percent == 30.0

    def test_concurrent_refresh_and_size(self):
        params = plain(use_drawdown_throttle=True, max_position_size=1e9)
        sizer = PositionSizer(params, account_balance=10_000)
        errors = []

        def refresher():
            for i in range(200):
                sizer.refresh(PerformanceSnapshot(expectancy=0.1 * (i % 3), max_drawdown=float(i % 50)))

        def sizer_loop():
            for _ in range(200):
                v = sizer.size(1.0)
                if v <= 0:
                    errors.append(v)

        threads = [threading.Thread(target=refresher), threading.Thread(target=sizer_loop)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []

    def test_from_config_reads_levers(self):
        params = RiskParameters.from_config(kelly_cap=0.1)
        assert params.kelly_cap == 0.1
        assert params.lot_step > 0
