"""
strategy_config.py — Single Source of Truth for Detector and Sizing Levers
===========================================================================

THIS IS THE ONLY PLACE THESE DEFAULTS ARE DEFINED.

Every detector, the aggregator, the position sizer and the orchestrator read
their defaults from here through a module reference:

    from . import strategy_config as _cfg
    self.nose_factor = _cfg.PIN_NOSE_FACTOR

Constructor arguments still override per instance (tests, side-by-side
comparisons), but when nothing is passed the value comes from this module.

LEVER SYSTEM
============
Every constant is a named lever. apply_levers(overrides) patches module
globals at runtime so that anything constructed afterwards sees the change.
Named profiles live in <repo>/profiles/<name>.json and are applied with
load_profile(name).

The Kelly cap and the throttle constants below are tuning defaults, not
invariants. Change them here, never inline.
"""
import json
import pathlib
import sys as _sys

# ── Volatility ─────────────────────────────────────────────────────────────
# Default ATR period used by every detector that normalises thresholds.
ATR_PERIOD: int = 14

# ── Pin bar ────────────────────────────────────────────────────────────────
# Nose (rejection wick) must exceed body × PIN_NOSE_FACTOR.
PIN_NOSE_FACTOR: float = 2.0
# Quality score gate (0–100). Below this the pin bar is logged, not signalled.
PIN_MIN_QUALITY_SCORE: float = 65.0
# Require signal bar volume above the previous bar's volume.
PIN_USE_VOLUME_CONFIRM: bool = False
# Require a preceding move against the pin (downtrend before a bullish pin).
PIN_USE_MARKET_CONTEXT: bool = True
# Bars averaged for the market-context check.
PIN_CONTEXT_BARS: int = 5
# How many of the most recent closed bars are scanned for a pin.
PIN_LOOKBACK_BARS: int = 1

# ── Fair value gap ─────────────────────────────────────────────────────────
# Gap must be at least ATR × FVG_MIN_GAP_SIZE_FACTOR.
FVG_MIN_GAP_SIZE_FACTOR: float = 0.5
# Bars after which a gap is pruned, filled or not.
FVG_MAX_GAP_AGE: int = 50
# z-score significance against recent gap history instead of the ATR ratio.
FVG_USE_STATISTICAL_TEST: bool = False
# Windows sampled for the gap distribution.
FVG_STAT_LOOKBACK: int = 100
# Minimum historical gaps before the z-score is trusted.
FVG_STAT_MIN_SAMPLES: int = 5
# ×1.2 / ×0.8 significance from the gap bars' relative volume.
FVG_USE_VOLUME_CONFIRM: bool = False
# Bars scanned on the first update (warm-up seeding).
FVG_WARMUP_BARS: int = 50

# ── Chandelier exit ────────────────────────────────────────────────────────
CHANDELIER_ATR_PERIOD: int = 22
CHANDELIER_LOOKBACK_PERIOD: int = 22
CHANDELIER_ATR_MULTIPLIER: float = 3.0

# ── VWAP bands ─────────────────────────────────────────────────────────────
VWAP_BAND_MULTIPLIER: float = 2.0
# Bars in the rolling deviation window.
VWAP_BAND_PERIOD: int = 20
# Reset the running VWAP at VWAP_SESSION_START_HOUR (UTC) each day.
VWAP_USE_SESSION_RESET: bool = True
VWAP_SESSION_START_HOUR: int = 0
# ×1.2 / ×0.8 strength from the signal bar's relative volume.
VWAP_USE_VOLUME_ADJUST: bool = True
# Bars averaged for the volume ratio.
VWAP_VOLUME_LOOKBACK: int = 20
# Reversal stops sit this many ATRs beyond the signal bar's extreme.
VWAP_STOP_ATR_BUFFER: float = 0.5
# Bars scanned on the first update (warm-up seeding).
VWAP_WARMUP_BARS: int = 200

# ── Smart money structure ──────────────────────────────────────────────────
SMC_MAX_PATTERN_AGE: int = 50
# Liquidity zone half-width in ATRs.
SMC_ZONE_BUFFER_ATR: float = 0.1
# A sweep is tradable for this many bars after it happens.
SMC_SWEEP_RECENCY_BARS: int = 3
# Price within this fraction of gap size outside an FVG counts as approaching.
SMC_FVG_APPROACH_PCT: float = 0.30
# Relative volume that earns the 20% strength boost.
SMC_HIGH_VOLUME_RATIO: float = 1.5
SMC_VOLUME_LOOKBACK: int = 20
# Higher-timeframe moving-average confirmation.
SMC_USE_MTF_CONFIRM: bool = False
SMC_HTF_RULE: str = "4h"
SMC_HTF_MA_PERIOD: int = 20
SMC_WARMUP_BARS: int = 50

# ── Multiplicative boosts shared by detectors ─────────────────────────────
CONFIRM_BOOST: float = 1.2
CONFIRM_PENALTY: float = 0.8

# ── Position sizing ────────────────────────────────────────────────────────
RISK_PERCENT: float = 1.0
MIN_POSITION_SIZE: float = 0.01
MAX_POSITION_SIZE: float = 100.0
LOT_STEP: float = 0.01
# Units per lot. 1.0 sizes in raw units; 100_000 sizes standard FX lots.
CONTRACT_SIZE: float = 1.0

USE_VOLATILITY_ADJUST: bool = False
VOL_ADJUST_MIN: float = 0.5
VOL_ADJUST_MAX: float = 2.0
# Baseline ATR for the volatility adjustment: ATR over this many bars.
VOL_BASELINE_PERIOD: int = 100

USE_KELLY_CRITERION: bool = False
# Fractional Kelly ceiling. 0.5 is the aggressive setting;
# quarter-Kelly is the conservative default.
KELLY_CAP: float = 0.25

USE_DRAWDOWN_THROTTLE: bool = False
DRAWDOWN_THROTTLE_THRESHOLD_PCT: float = 20.0
DRAWDOWN_THROTTLE_MIN: float = 0.5
# Boost per R of positive expectancy, capped at EXPECTANCY_BOOST_CAP.
EXPECTANCY_BOOST_PER_R: float = 0.25
EXPECTANCY_BOOST_CAP: float = 1.5

# ── Orders and feedback ────────────────────────────────────────────────────
# Take profit placed at entry ± risk × TAKE_PROFIT_RR.
TAKE_PROFIT_RR: float = 2.0
MAX_OPEN_POSITIONS: int = 1
# Closed trades needed before the Monte Carlo drawdown replaces realized DD.
MC_MIN_TRADES: int = 20
MC_SIMULATIONS: int = 1000
MC_TRADES_PER_RUN: int = 100
# "bootstrap" resamples with replacement; "shuffle" permutes the realized sequence.
MC_RESAMPLE: str = "bootstrap"


# ══════════════════════════════════════════════════════════════════════════════
# LEVER RUNTIME SYSTEM
# ══════════════════════════════════════════════════════════════════════════════

_FALSY = ("false", "0", "no", "off", "")

# <repo>/profiles, two levels above patternforge/strategy/
PROFILES_DIR = pathlib.Path(__file__).resolve().parents[2] / "profiles"


def _coerce(name: str, current, raw):
    """Cast `raw` to the type of the lever's current value."""
    if isinstance(current, bool):
        if isinstance(raw, str):
            return raw.strip().lower() not in _FALSY
        return bool(raw)
    for kind in (float, int, str):
        if isinstance(current, kind):
            try:
                return kind(raw)
            except (TypeError, ValueError) as e:
                raise ValueError(f"lever {name}: cannot read {raw!r} as {kind.__name__}") from e
    return raw


def snapshot_levers() -> dict:
    """Current value of every lever (upper-case module constant)."""
    m = _sys.modules[__name__]
    return {
        k: v for k, v in vars(m).items()
        if k.isupper() and not k.startswith("_") and isinstance(v, (bool, int, float, str))
    }


def apply_levers(overrides: dict) -> dict:
    """
    Patch lever values in place. Anything that reads `_cfg.X` afterwards,
    including detectors built after the call, sees the new value.

    Every key is checked before any lever changes, so a bad override leaves
    the module untouched. Values are cast to the lever's current type;
    booleans read "false", "0", "no", "off" and "" as False.

    Returns {lever: applied value}. Raises ValueError for names that are not
    levers (unknown, lower-case, or functions) and for uncastable values.

        apply_levers({"PIN_NOSE_FACTOR": "2.5", "USE_KELLY_CRITERION": "on"})
    """
    levers = snapshot_levers()
    m = _sys.modules[__name__]
    staged = {}
    for name, raw in overrides.items():
        if name not in levers:
            what = "a function" if callable(getattr(m, name, None)) else "not a known lever"
            raise ValueError(f"apply_levers: '{name}' is {what}")
        staged[name] = _coerce(name, levers[name], raw)

    for name, value in staged.items():
        setattr(m, name, value)
    return staged


def load_profile(profile_name: str, profiles_dir: pathlib.Path = None) -> dict:
    """
    Apply profiles/<profile_name>.json. Keys starting with "_" are notes,
    not levers, and are dropped. Returns what apply_levers applied.
    """
    base = PROFILES_DIR if profiles_dir is None else pathlib.Path(profiles_dir)
    path = base / f"{profile_name}.json"
    if not path.is_file():
        known = sorted(p.stem for p in base.glob("*.json"))
        raise FileNotFoundError(f"no lever profile '{profile_name}' in {base} (have: {known})")
    overrides = json.loads(path.read_text())
    return apply_levers({k: v for k, v in overrides.items() if not k.startswith("_")})


# ── Model tags ─────────────────────────────────────────────────────────────
def get_model_tags() -> list:
    """
    Short tags capturing the levers that change behaviour.
    Sort + join them to get a run fingerprint.
    """
    m = _sys.modules[__name__]
    tags = [
        f"nose_{m.PIN_NOSE_FACTOR:.1f}",
        f"pinq_{int(m.PIN_MIN_QUALITY_SCORE)}",
        f"gap_{m.FVG_MIN_GAP_SIZE_FACTOR:.2f}",
        f"risk_{m.RISK_PERCENT:.2f}",
        f"rr_{m.TAKE_PROFIT_RR:.1f}",
    ]
    if m.FVG_USE_STATISTICAL_TEST:
        tags.append("fvg_zscore")
    if m.SMC_USE_MTF_CONFIRM:
        tags.append(f"mtf_{m.SMC_HTF_RULE}")
    if not m.VWAP_USE_SESSION_RESET:
        tags.append("vwap_continuous")
    if m.USE_KELLY_CRITERION:
        tags.append(f"kelly_{m.KELLY_CAP:.2f}")
    if m.USE_VOLATILITY_ADJUST:
        tags.append("vol_adjust")
    if m.USE_DRAWDOWN_THROTTLE:
        tags.append("dd_throttle")
    return tags
