"""Prediction engine: estimator, predictor and operator controls in one place.

``PredictionEngine`` is what the rebalancing layer and administrative
tooling hold. It owns one volatility estimator and one predictor, and
adds a pause switch on top: while paused, every probabilistic output is
refused with ``EnginePaused``. Price ingestion keeps running so the
history is current when the engine is resumed, and realized IL, being
exact arithmetic on two prices, stays available.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

from deltaguard.circuit_breaker import BreakerState
from deltaguard.config import EngineSettings
from deltaguard.errors import EnginePaused, InsufficientData
from deltaguard.prediction_cache import PredictionCache
from deltaguard.predictor import (
    ILPredictor,
    PerturbationResult,
    PredictionResult,
    calculate_realized_il,
)
from deltaguard.price_feed import FeedIngestor, IngestResult, IngestStatus, PriceSource
from deltaguard.volatility import (
    EstimatorState,
    PriceObservation,
    VolatilityBook,
    VolatilityEstimate,
    VolatilityEstimator,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineStatus:
    """Read-only snapshot for operators and health checks."""

    paused: bool
    pause_reason: str
    estimator_state: EstimatorState
    data_points: int
    override_enabled: bool
    breaker_state: BreakerState
    cache_entries: int
    cache_ttl_seconds: int
    estimate: Optional[VolatilityEstimate]


class PredictionEngine:
    def __init__(
        self,
        settings: EngineSettings | None = None,
        series: str = "default",
    ) -> None:
        self._settings = settings or EngineSettings()
        self._book = VolatilityBook(
            self._settings.volatility_config(), breaker_config=self._settings.breaker_config
        )
        self._estimator = self._book.get(series)
        self._cache = PredictionCache(self._settings.cache_config())
        self._predictor = ILPredictor(
            self._estimator, self._settings.predictor_config(), self._cache
        )
        self._lock = threading.Lock()
        self._paused = False
        self._pause_reason = ""
        self._ingestors: Dict[PriceSource, FeedIngestor] = {}

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def estimator(self) -> VolatilityEstimator:
        return self._estimator

    @property
    def book(self) -> VolatilityBook:
        """Estimators per series; ``estimator`` is ``book.get(series)``."""
        return self._book

    @property
    def predictor(self) -> ILPredictor:
        return self._predictor

    @property
    def is_paused(self) -> bool:
        return self._paused

    # -------------------------------------------------------------------
    # Prediction interface
    # -------------------------------------------------------------------

    def predict(
        self,
        current_price: int,
        lower_bound: int,
        upper_bound: int,
        horizon_seconds: int,
        now: int | None = None,
    ) -> PredictionResult:
        self._ensure_running()
        return self._predictor.predict(
            current_price, lower_bound, upper_bound, horizon_seconds, now=now
        )

    def predict_for_indices(
        self,
        current_price: int,
        lower_index: int,
        upper_index: int,
        horizon_seconds: int,
        now: int | None = None,
    ) -> PredictionResult:
        self._ensure_running()
        return self._predictor.predict_for_indices(
            current_price, lower_index, upper_index, horizon_seconds, now=now
        )

    def get_volatility(self, now: int | None = None) -> VolatilityEstimate:
        self._ensure_running()
        return self._estimator.get_volatility(now)

    def predict_from_perturbation(
        self,
        current_price: int,
        lower_bound: int,
        upper_bound: int,
        price_delta: int,
        liquidity_depth: int,
    ) -> PerturbationResult:
        self._ensure_running()
        return self._predictor.predict_from_perturbation(
            current_price, lower_bound, upper_bound, price_delta, liquidity_depth
        )

    def calculate_realized_il(self, initial_price: int, current_price: int) -> int:
        return calculate_realized_il(initial_price, current_price)

    # -------------------------------------------------------------------
    # Data
    # -------------------------------------------------------------------

    def record_observation(self, price: int, timestamp: int | None = None) -> PriceObservation:
        return self._estimator.record_observation(price, timestamp)

    def recompute_volatility(self, now: int | None = None) -> VolatilityEstimate:
        return self._estimator.recompute_volatility(now)

    def ingest_from(self, source: PriceSource, now: int, recompute: bool = True) -> IngestResult:
        """Pull one tick from *source*; recompute when the interval allows."""
        with self._lock:
            ingestor = self._ingestors.get(source)
            if ingestor is None:
                ingestor = FeedIngestor(
                    source, self._estimator, self._settings.feed_max_age_seconds
                )
                self._ingestors[source] = ingestor
        result = ingestor.poll(now)
        if (
            recompute
            and result.status == IngestStatus.ACCEPTED
            and self._estimator.can_recompute(now)
        ):
            self._estimator.recompute_volatility(now)
        return result

    # -------------------------------------------------------------------
    # Operator interface
    # -------------------------------------------------------------------

    def set_manual_volatility(self, value: int, now: int | None = None) -> None:
        self._estimator.set_manual_override(value, now)
        self._cache.clear()

    def set_override_enabled(self, enabled: bool) -> None:
        self._estimator.set_override_enabled(enabled)
        self._cache.clear()

    def set_outlier_threshold(self, threshold_bp: int) -> None:
        self._estimator.set_outlier_threshold(threshold_bp)

    def set_cache_ttl(self, ttl_seconds: int) -> None:
        self._cache.set_ttl(ttl_seconds)

    def set_update_interval(self, seconds: int) -> None:
        self._estimator.set_update_interval(seconds)

    def pause(self, reason: str = "") -> None:
        with self._lock:
            self._paused = True
            self._pause_reason = reason
        LOGGER.warning("PredictionEngine: PAUSED (%s)", reason or "no reason given")

    def unpause(self) -> None:
        with self._lock:
            was_paused = self._paused
            self._paused = False
            self._pause_reason = ""
        if was_paused:
            LOGGER.info("PredictionEngine: resumed")

    def reset_history(self) -> None:
        self._estimator.reset_history()
        self._cache.clear()

    def status(self, now: int | None = None) -> EngineStatus:
        ts = now if now is not None else int(time.time())
        try:
            estimate: Optional[VolatilityEstimate] = self._estimator.get_volatility(ts)
        except InsufficientData:
            estimate = None
        with self._lock:
            paused, reason = self._paused, self._pause_reason
        return EngineStatus(
            paused=paused,
            pause_reason=reason,
            estimator_state=self._estimator.state(ts),
            data_points=self._estimator.data_points,
            override_enabled=self._estimator.override_enabled,
            breaker_state=self._estimator.breaker.state,
            cache_entries=len(self._cache),
            cache_ttl_seconds=self._cache.ttl_seconds,
            estimate=estimate,
        )

    def _ensure_running(self) -> None:
        if self._paused:
            raise EnginePaused(self._pause_reason)
