"""Price feed consumer side.

The engine never fetches prices. Whatever integration talks to the
liquidity venue implements ``PriceSource`` and the ``FeedIngestor``
pulls from it, enforces the staleness bound, and forwards fresh ticks
to a volatility estimator.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Protocol, Tuple

from deltaguard.errors import OutlierRejected, StalePriceError
from deltaguard.fixed_point import format_scaled
from deltaguard.volatility import VolatilityEstimator

LOGGER = logging.getLogger(__name__)


class PriceSource(Protocol):
    def get_latest_price(self) -> Tuple[int, int]:
        """Return ``(scaled_price, unix_timestamp)``."""
        ...


@dataclass(frozen=True)
class PriceTick:
    """A single observed price."""

    price: int       # Scaled
    timestamp: int   # Unix seconds


class StaticPriceSource:
    """Always returns the same tick. Settable for tests and manual runs."""

    def __init__(self, price: int, timestamp: int) -> None:
        self._tick = PriceTick(price, timestamp)

    def set(self, price: int, timestamp: int) -> None:
        self._tick = PriceTick(price, timestamp)

    def get_latest_price(self) -> Tuple[int, int]:
        return self._tick.price, self._tick.timestamp


class SequencePriceSource:
    """Replays ticks in order; repeats the last one once exhausted."""

    def __init__(self, ticks: Iterable[PriceTick]) -> None:
        self._ticks: List[PriceTick] = list(ticks)
        if not self._ticks:
            raise ValueError("SequencePriceSource needs at least one tick")
        self._position = 0
        self._lock = threading.Lock()

    @property
    def exhausted(self) -> bool:
        return self._position >= len(self._ticks)

    def get_latest_price(self) -> Tuple[int, int]:
        with self._lock:
            index = min(self._position, len(self._ticks) - 1)
            self._position += 1
            tick = self._ticks[index]
        return tick.price, tick.timestamp


class IngestStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    OUTLIER = "outlier"


@dataclass(frozen=True)
class IngestResult:
    status: IngestStatus
    tick: PriceTick
    deviation_bp: int = 0


class FeedIngestor:
    """Moves ticks from a ``PriceSource`` into a ``VolatilityEstimator``.

    Parameters
    ----------
    source:
        Where ticks come from.
    estimator:
        Receives every fresh, non-duplicate tick.
    max_age_seconds:
        A tick older than this raises ``StalePriceError``. Default 3600.
    """

    def __init__(
        self,
        source: PriceSource,
        estimator: VolatilityEstimator,
        max_age_seconds: int = 3600,
    ) -> None:
        self._source = source
        self._estimator = estimator
        self._max_age_seconds = max_age_seconds
        self._last_timestamp: Optional[int] = None
        self._lock = threading.Lock()
        self._accepted = 0
        self._duplicates = 0
        self._outliers = 0

    @property
    def counts(self) -> Tuple[int, int, int]:
        """``(accepted, duplicates, outliers)`` so far."""
        return self._accepted, self._duplicates, self._outliers

    def poll(self, now: int) -> IngestResult:
        price, timestamp = self._source.get_latest_price()
        tick = PriceTick(price=price, timestamp=timestamp)

        age = now - timestamp
        if age > self._max_age_seconds:
            LOGGER.warning(
                "FeedIngestor: tick at %d is %ds old (max %ds)",
                timestamp,
                age,
                self._max_age_seconds,
            )
            raise StalePriceError(age, self._max_age_seconds)

        with self._lock:
            if self._last_timestamp is not None and timestamp <= self._last_timestamp:
                self._duplicates += 1
                LOGGER.debug("FeedIngestor: duplicate tick at %d skipped", timestamp)
                return IngestResult(IngestStatus.DUPLICATE, tick)

            try:
                self._estimator.record_observation(price, timestamp)
            except OutlierRejected as exc:
                # The estimator has already logged and counted the rejection.
                self._last_timestamp = timestamp
                self._outliers += 1
                return IngestResult(IngestStatus.OUTLIER, tick, exc.deviation_bp)

            self._last_timestamp = timestamp
            self._accepted += 1

        LOGGER.debug("FeedIngestor: accepted %s at %d", format_scaled(price), timestamp)
        return IngestResult(IngestStatus.ACCEPTED, tick)
