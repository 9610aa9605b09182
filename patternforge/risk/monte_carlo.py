"""
Monte Carlo drawdown estimate from a closed-trade R history.

Two ways to build the simulated trade sequences:

  bootstrap  draw `n_trades` R multiples with replacement, `n_simulations`
             times. Lets a short history project a longer horizon.
  shuffle    permute the realized R sequence, `n_simulations` times. Same
             trades, different order; `n_trades` is ignored.

Each sequence compounds at `risk_percent` per trade and the peak-to-trough
drawdown of every equity path is collected.

The p95 is what the sizer's throttle uses once there is enough history:
a realized drawdown from 20 trades says little about the next 100, so the
live loop bootstraps by default.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

RESAMPLE_METHODS = ("bootstrap", "shuffle")


@dataclass
class MonteCarloResult:
    median: float      # % drawdown
    p95: float
    worst: float
    simulations: int = 0


def max_drawdown_percent(equity: np.ndarray) -> float:
    """Largest peak-to-trough fall of an equity curve, in percent of the peak."""
    if len(equity) == 0:
        return 0.0
    peaks = np.maximum.accumulate(equity)
    dd = (peaks - equity) / peaks
    return float(dd.max() * 100)


def _resample(samples: np.ndarray, method: str, n_trades: int, n_simulations: int,
              rng: np.random.Generator) -> np.ndarray:
    if method == "bootstrap":
        return rng.choice(samples, size=(n_simulations, n_trades), replace=True)
    if method == "shuffle":
        return rng.permuted(np.tile(samples, (n_simulations, 1)), axis=1)
    raise ValueError(f"unknown resample method '{method}', expected one of {RESAMPLE_METHODS}")


def simulate_max_drawdown(
    r_multiples: Sequence[float],
    risk_percent: float,
    n_trades: int = 100,
    n_simulations: int = 1000,
    seed: Optional[int] = None,
    method: str = "bootstrap",
) -> MonteCarloResult:
    samples = np.asarray(list(r_multiples), dtype=float)
    if len(samples) < 2 or n_trades <= 0 or n_simulations <= 0:
        return MonteCarloResult(0.0, 0.0, 0.0, 0)

    rng = np.random.default_rng(seed)
    draws = _resample(samples, method, n_trades, n_simulations, rng)
    # each trade moves equity by R × risk%; floor at zero so a ruinous run ends the path
    growth = np.clip(1 + draws * risk_percent / 100, 0.0, None)
    equity = np.cumprod(growth, axis=1)
    equity = np.hstack([np.ones((n_simulations, 1)), equity])

    peaks = np.maximum.accumulate(equity, axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        dd = np.where(peaks > 0, (peaks - equity) / peaks, 1.0)
    worst_per_path = dd.max(axis=1) * 100

    result = MonteCarloResult(
        median=float(np.median(worst_per_path)),
        p95=float(np.percentile(worst_per_path, 95)),
        worst=float(worst_per_path.max()),
        simulations=n_simulations,
    )
    logger.debug(
        f"monte carlo ({method}) DD over {n_simulations}×{draws.shape[1]} trades: "
        f"median={result.median:.1f}% p95={result.p95:.1f}% worst={result.worst:.1f}%"
    )
    return result
