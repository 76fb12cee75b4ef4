"""Replay a historical price series through the estimator and predictor.

At each tick (once an estimate exists and the horizon is still inside
the data) a prediction is made for a symmetric range around the price,
then compared with what actually happened at the horizon:

- ``expected_il`` against the realized IL of the move to the horizon price
- an exit call (``exit_probability >= 50%``) against whether the horizon
  price finished outside the range

CSV input has a header row with ``timestamp`` (Unix seconds) and
``price`` (decimal) columns.
"""

from __future__ import annotations

import bisect
import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

from deltaguard.config import EngineSettings
from deltaguard.errors import OutlierRejected
from deltaguard.fixed_point import apply_basis_points, to_scaled
from deltaguard.prediction_cache import PredictionCache, PredictionCacheConfig
from deltaguard.predictor import ILPredictor, calculate_realized_il
from deltaguard.price_feed import PriceTick
from deltaguard.volatility import EstimatorState, VolatilityEstimator

LOGGER = logging.getLogger(__name__)

# Exit probability at or above this counts as calling an exit.
EXIT_CALL_BP = 5000


def load_price_csv(path: str | Path) -> List[PriceTick]:
    ticks: List[PriceTick] = []
    with open(path, newline="") as f:
        reader = csv.DictReader(f)
        for row in reader:
            ticks.append(
                PriceTick(
                    price=to_scaled(row["price"].strip()),
                    timestamp=int(row["timestamp"]),
                )
            )
    return ticks


@dataclass(frozen=True)
class BacktestSample:
    timestamp: int
    price: int
    expected_il_bp: int
    exit_probability_bp: int
    realized_il_bp: int
    exited: bool


@dataclass(frozen=True)
class BacktestReport:
    predictions: int
    outliers_rejected: int
    duplicates_skipped: int
    mean_abs_error_bp: float
    exit_hit_rate: float
    mean_expected_il_bp: float
    mean_realized_il_bp: float
    samples: List[BacktestSample]


def run_backtest(
    ticks: Sequence[PriceTick],
    horizon_seconds: int,
    half_width_bp: int = 2000,
    settings: EngineSettings | None = None,
    every: int = 1,
) -> BacktestReport:
    """Walk *ticks* in order and score every prediction against the horizon.

    Parameters
    ----------
    ticks:
        Chronological price ticks. A tick whose timestamp does not move
        past the previous kept one is skipped.
    horizon_seconds:
        Prediction horizon.
    half_width_bp:
        Range is ``price * (1 -/+ half_width)``. Default 2000 (20%).
    settings:
        Estimator and predictor settings. Caching is always off here.
    every:
        Predict on every n-th tick. Default 1.
    """
    cfg = settings or EngineSettings()
    estimator = VolatilityEstimator(cfg.volatility_config(), series="backtest")
    predictor = ILPredictor(
        estimator,
        cfg.predictor_config(),
        PredictionCache(PredictionCacheConfig(ttl_seconds=0)),
    )
    ordered = _increasing(ticks)
    duplicates = len(ticks) - len(ordered)
    if duplicates:
        LOGGER.warning(
            "Backtest: skipped %d rows with repeated or out-of-order timestamps", duplicates
        )
    timestamps = [t.timestamp for t in ordered]
    samples: List[BacktestSample] = []
    outliers = 0

    for i, tick in enumerate(ordered):
        try:
            estimator.record_observation(tick.price, tick.timestamp)
        except OutlierRejected:
            outliers += 1
            continue
        if estimator.can_recompute(tick.timestamp):
            estimator.recompute_volatility(tick.timestamp)

        if i % every != 0:
            continue
        if estimator.state(tick.timestamp) == EstimatorState.INSUFFICIENT_DATA:
            continue
        j = bisect.bisect_left(timestamps, tick.timestamp + horizon_seconds)
        if j >= len(ordered):
            break

        lower = tick.price - apply_basis_points(tick.price, half_width_bp)
        upper = tick.price + apply_basis_points(tick.price, half_width_bp)
        result = predictor.predict(tick.price, lower, upper, horizon_seconds, now=tick.timestamp)

        terminal = ordered[j].price
        samples.append(
            BacktestSample(
                timestamp=tick.timestamp,
                price=tick.price,
                expected_il_bp=result.expected_il,
                exit_probability_bp=result.exit_probability,
                realized_il_bp=calculate_realized_il(tick.price, terminal),
                exited=terminal < lower or terminal > upper,
            )
        )

    report = _summarize(samples, outliers, duplicates)
    LOGGER.info(
        "Backtest: %d predictions, MAE=%.1fbp, exit hit rate=%.1f%%, %d outliers",
        report.predictions,
        report.mean_abs_error_bp,
        report.exit_hit_rate * 100,
        report.outliers_rejected,
    )
    return report


def _increasing(ticks: Sequence[PriceTick]) -> List[PriceTick]:
    """Drop ticks whose timestamp does not move past the last kept one."""
    kept: List[PriceTick] = []
    for tick in ticks:
        if kept and tick.timestamp <= kept[-1].timestamp:
            continue
        kept.append(tick)
    return kept


def _summarize(samples: List[BacktestSample], outliers: int, duplicates: int) -> BacktestReport:
    if not samples:
        return BacktestReport(
            predictions=0,
            outliers_rejected=outliers,
            duplicates_skipped=duplicates,
            mean_abs_error_bp=0.0,
            exit_hit_rate=0.0,
            mean_expected_il_bp=0.0,
            mean_realized_il_bp=0.0,
            samples=[],
        )
    n = len(samples)
    hits = sum(1 for s in samples if (s.exit_probability_bp >= EXIT_CALL_BP) == s.exited)
    return BacktestReport(
        predictions=n,
        outliers_rejected=outliers,
        duplicates_skipped=duplicates,
        mean_abs_error_bp=sum(abs(s.expected_il_bp - s.realized_il_bp) for s in samples) / n,
        exit_hit_rate=hits / n,
        mean_expected_il_bp=sum(s.expected_il_bp for s in samples) / n,
        mean_realized_il_bp=sum(s.realized_il_bp for s in samples) / n,
        samples=samples,
    )
