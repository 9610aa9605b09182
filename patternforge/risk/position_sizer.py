"""
Position Sizer — risk money → volume

Base risk money = account_balance × risk_percent / 100, then a chain of
multiplicative adjustments, each behind its own switch:

  1. Kelly        × clamp(p − (1 − p) / b, 0, kelly_cap)
                    fractional Kelly only, never full Kelly
  2. Volatility   × clamp(baseline_atr / current_atr, 0.5, 2.0)
                    hotter market → smaller size
  3. Throttle     expectancy < 0            → size 0, refuse to trade
                  expected max DD > 20%     × clamp(20 / DD, 0.5, 1.0)
                  expectancy > 0            × min(1.5, 1 + E × 0.25)

volume = risk_money / risk_per_unit / contract_size
       → clamp [min_position_size, max_position_size]
       → floor to lot_step (back up to the minimum if flooring undershot it)

risk_per_unit ≤ 0 returns 0 immediately: no stop distance, no trade.

RiskParameters is immutable. refresh() builds a new one from performance
statistics and swaps it in under a lock, so a size() call always sees one
consistent parameter set.
"""
import logging
import math
import threading
from dataclasses import dataclass, replace
from typing import Optional

from ..strategy import strategy_config as _cfg

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskParameters:
    risk_percent_per_trade: float = 1.0
    max_position_size: float = 100.0
    min_position_size: float = 0.01
    lot_step: float = 0.01
    contract_size: float = 1.0
    use_volatility_adjust: bool = False
    baseline_atr: float = 0.0
    use_kelly_criterion: bool = False
    win_rate: float = 0.0
    win_loss_ratio: float = 0.0
    kelly_cap: float = 0.25
    use_drawdown_throttle: bool = False
    system_expectancy: float = 0.0
    max_drawdown_percent: float = 0.0

    @classmethod
    def from_config(cls, **overrides) -> "RiskParameters":
        params = cls(
            risk_percent_per_trade=_cfg.RISK_PERCENT,
            max_position_size=_cfg.MAX_POSITION_SIZE,
            min_position_size=_cfg.MIN_POSITION_SIZE,
            lot_step=_cfg.LOT_STEP,
            contract_size=_cfg.CONTRACT_SIZE,
            use_volatility_adjust=_cfg.USE_VOLATILITY_ADJUST,
            use_kelly_criterion=_cfg.USE_KELLY_CRITERION,
            kelly_cap=_cfg.KELLY_CAP,
            use_drawdown_throttle=_cfg.USE_DRAWDOWN_THROTTLE,
        )
        return replace(params, **overrides)


@dataclass
class SizingBreakdown:
    volume: float
    risk_money: float
    base_risk_money: float
    kelly_factor: float = 1.0
    volatility_factor: float = 1.0
    throttle_factor: float = 1.0
    reason: str = ""


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def kelly_fraction(win_rate: float, win_loss_ratio: float, cap: float) -> float:
    """Fractional Kelly: p − (1 − p) / b, clamped to [0, cap]."""
    if win_loss_ratio <= 0:
        return 0.0
    f = win_rate - (1 - win_rate) / win_loss_ratio
    return _clamp(f, 0.0, cap)


def volatility_factor(baseline_atr: float, current_atr: Optional[float]) -> float:
    if not current_atr or current_atr <= 0 or baseline_atr <= 0:
        return 1.0
    return _clamp(baseline_atr / current_atr, _cfg.VOL_ADJUST_MIN, _cfg.VOL_ADJUST_MAX)


def throttle_factor(expectancy: float, max_drawdown_percent: float) -> float:
    """0.0 means do not trade."""
    if expectancy < 0:
        return 0.0
    factor = 1.0
    threshold = _cfg.DRAWDOWN_THROTTLE_THRESHOLD_PCT
    if max_drawdown_percent > threshold:
        factor *= _clamp(threshold / max_drawdown_percent, _cfg.DRAWDOWN_THROTTLE_MIN, 1.0)
    if expectancy > 0:
        factor *= min(_cfg.EXPECTANCY_BOOST_CAP, 1 + expectancy * _cfg.EXPECTANCY_BOOST_PER_R)
    return factor


def floor_to_step(volume: float, step: float) -> float:
    if step <= 0:
        return volume
    decimals = max(0, -int(math.floor(math.log10(step)))) if step < 1 else 0
    # 1e-9 absorbs float noise such as 0.29999999 / 0.01
    return round(math.floor(volume / step + 1e-9) * step, decimals + 2)


class PositionSizer:
    """
    Turns a stop distance into a trade volume.

    Usage:
        sizer = PositionSizer(account_balance=10_000)
        volume = sizer.size(abs(entry - stop), current_atr=atr)
    """

    def __init__(self, params: Optional[RiskParameters] = None, account_balance: float = 0.0):
        self._params = params if params is not None else RiskParameters.from_config()
        self.account_balance = account_balance
        self._lock = threading.Lock()

    @property
    def params(self) -> RiskParameters:
        return self._params

    def update_account(self, balance: float) -> None:
        self.account_balance = balance

    def set_baseline_atr(self, baseline_atr: float) -> None:
        with self._lock:
            self._params = replace(self._params, baseline_atr=baseline_atr)

    # ------------------------------------------------------------------ #
    # Sizing
    # ------------------------------------------------------------------ #

    def size(
        self,
        risk_per_unit: float,
        current_atr: Optional[float] = None,
        account_balance: Optional[float] = None,
    ) -> float:
        return self.size_breakdown(risk_per_unit, current_atr, account_balance).volume

    def size_breakdown(
        self,
        risk_per_unit: float,
        current_atr: Optional[float] = None,
        account_balance: Optional[float] = None,
    ) -> SizingBreakdown:
        with self._lock:
            p = self._params
        balance = self.account_balance if account_balance is None else account_balance

        if risk_per_unit is None or risk_per_unit <= 0:
            return SizingBreakdown(0.0, 0.0, 0.0, reason="no stop distance")
        if balance <= 0:
            return SizingBreakdown(0.0, 0.0, 0.0, reason="no account balance")

        base = balance * p.risk_percent_per_trade / 100
        out = SizingBreakdown(volume=0.0, risk_money=base, base_risk_money=base)

        if p.use_kelly_criterion:
            out.kelly_factor = kelly_fraction(p.win_rate, p.win_loss_ratio, p.kelly_cap)
        if p.use_volatility_adjust:
            out.volatility_factor = volatility_factor(p.baseline_atr, current_atr)
        if p.use_drawdown_throttle:
            out.throttle_factor = throttle_factor(p.system_expectancy, p.max_drawdown_percent)
            if out.throttle_factor == 0.0:
                out.reason = f"negative expectancy {p.system_expectancy:.3f}R, not trading"
                out.risk_money = 0.0
                logger.warning(out.reason)
                return out

        out.risk_money = base * out.kelly_factor * out.volatility_factor * out.throttle_factor
        contract = p.contract_size if p.contract_size > 0 else 1.0
        raw = out.risk_money / risk_per_unit / contract

        volume = _clamp(raw, p.min_position_size, p.max_position_size)
        volume = floor_to_step(volume, p.lot_step)
        if volume < p.min_position_size:
            volume = p.min_position_size
        out.volume = volume
        out.reason = (f"raw={raw:.4f} kelly={out.kelly_factor:.3f} "
                      f"vol={out.volatility_factor:.3f} throttle={out.throttle_factor:.3f}")
        logger.debug(f"size: risk ${out.risk_money:.2f} / {risk_per_unit:.5f} → {volume} ({out.reason})")
        return out

    # ------------------------------------------------------------------ #
    # Feedback
    # ------------------------------------------------------------------ #

    def refresh(self, snapshot, expected_max_drawdown: Optional[float] = None,
                baseline_atr: Optional[float] = None) -> RiskParameters:
        """
        Copy-on-write update from PerformanceTracker.snapshot().
        `expected_max_drawdown` (e.g. Monte Carlo p95) overrides the realized one.
        """
        with self._lock:
            p = self._params
            dd = snapshot.max_drawdown if expected_max_drawdown is None else expected_max_drawdown
            new = replace(
                p,
                win_rate=snapshot.win_rate,
                win_loss_ratio=snapshot.win_loss_ratio,
                system_expectancy=snapshot.expectancy,
                max_drawdown_percent=dd,
                baseline_atr=p.baseline_atr if baseline_atr is None else baseline_atr,
            )
            self._params = new
        logger.info(
            f"risk params refreshed: WR={new.win_rate:.1%} W/L={new.win_loss_ratio:.2f} "
            f"E={new.system_expectancy:.3f}R DD={new.max_drawdown_percent:.1f}%"
        )
        return new
