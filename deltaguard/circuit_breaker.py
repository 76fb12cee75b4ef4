"""Circuit breaker on the volatility ceiling.

Caps an annualized volatility figure at a hard ceiling instead of
letting an unbounded number reach the predictor. Each capped value is a
"trip". The breaker moves CLOSED -> OPEN after ``trip_threshold``
consecutive trips and back to CLOSED on the first value under the
ceiling. OPEN means the price series has been producing implausible
volatility for several recomputes in a row and an operator should look
at it (or switch on the manual override).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List

from deltaguard.fixed_point import SCALE, format_scaled

LOGGER = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"  # Values under the ceiling
    OPEN = "open"      # Repeated ceiling hits


@dataclass(frozen=True)
class BreakerConfig:
    """Configuration for the volatility circuit breaker.

    Parameters
    ----------
    name:
        Label used in logs and events.
    ceiling:
        Largest volatility passed through, scaled. Default 10.0 (1000%).
    trip_threshold:
        Consecutive trips before the breaker opens. Default 3.
    """

    name: str = "volatility"
    ceiling: int = 10 * SCALE
    trip_threshold: int = 3


@dataclass(frozen=True)
class BreakerEvent:
    """Emitted every time a value is capped."""

    name: str
    raw_value: int
    capped_value: int
    timestamp: int
    consecutive_trips: int
    state: BreakerState


@dataclass(frozen=True)
class BreakerSnapshot:
    """Read-only snapshot of breaker state."""

    name: str
    state: BreakerState
    consecutive_trips: int
    total_trips: int
    last_trip_at: int
    last_state_change_at: int


class VolatilityCircuitBreaker:
    """Caps annualized volatility at a ceiling and counts the caps.

    State flow::

        CLOSED --[trip_threshold consecutive caps]--> OPEN
        OPEN   --[a value at or under the ceiling]--> CLOSED

    Every cap returns the ceiling and notifies listeners, whatever the
    state. ``reset`` forces CLOSED and clears the consecutive count.
    """

    def __init__(self, config: BreakerConfig | None = None) -> None:
        self._config = config or BreakerConfig()
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._consecutive_trips = 0
        self._total_trips = 0
        self._last_trip_at = 0
        self._last_state_change_at = 0
        self._listeners: List[Callable[[BreakerEvent], None]] = []

    @property
    def config(self) -> BreakerConfig:
        return self._config

    @property
    def state(self) -> BreakerState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == BreakerState.OPEN

    def add_listener(self, listener: Callable[[BreakerEvent], None]) -> None:
        self._listeners.append(listener)

    def check(self, value: int, now: int) -> tuple[int, bool]:
        """Return ``(value_or_ceiling, tripped)``."""
        ceiling = self._config.ceiling
        with self._lock:
            if value <= ceiling:
                if self._state == BreakerState.OPEN:
                    self._transition_to(BreakerState.CLOSED, now)
                    LOGGER.info(
                        "Breaker '%s' CLOSED: volatility %s back under ceiling",
                        self._config.name,
                        format_scaled(value),
                    )
                self._consecutive_trips = 0
                return value, False

            self._consecutive_trips += 1
            self._total_trips += 1
            self._last_trip_at = now
            if (
                self._state == BreakerState.CLOSED
                and self._consecutive_trips >= self._config.trip_threshold
            ):
                self._transition_to(BreakerState.OPEN, now)
            event = BreakerEvent(
                name=self._config.name,
                raw_value=value,
                capped_value=ceiling,
                timestamp=now,
                consecutive_trips=self._consecutive_trips,
                state=self._state,
            )

        LOGGER.warning(
            "Breaker '%s' tripped: volatility %s capped at %s (%d consecutive, state=%s)",
            event.name,
            format_scaled(value),
            format_scaled(ceiling),
            event.consecutive_trips,
            event.state.value,
        )
        for listener in list(self._listeners):
            listener(event)
        return ceiling, True

    def reset(self, now: int = 0) -> None:
        """Force back to CLOSED (operator override)."""
        with self._lock:
            self._consecutive_trips = 0
            self._transition_to(BreakerState.CLOSED, now)
        LOGGER.info("Breaker '%s' force-reset to CLOSED", self._config.name)

    def snapshot(self) -> BreakerSnapshot:
        with self._lock:
            return BreakerSnapshot(
                name=self._config.name,
                state=self._state,
                consecutive_trips=self._consecutive_trips,
                total_trips=self._total_trips,
                last_trip_at=self._last_trip_at,
                last_state_change_at=self._last_state_change_at,
            )

    def _transition_to(self, new_state: BreakerState, now: int) -> None:
        if self._state != new_state:
            self._state = new_state
            self._last_state_change_at = now
