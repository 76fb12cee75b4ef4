"""Tests for the IL predictor."""

from __future__ import annotations

import math
import threading
from typing import List

import pytest

from deltaguard.errors import InvalidInput, InvalidInputReason, InvalidVolatility, MathDomainError
from deltaguard.fixed_point import SCALE, from_basis_points, mul, to_basis_points, to_scaled
from deltaguard.prediction_cache import PredictionCache, PredictionCacheConfig
from deltaguard.predictor import (
    ILPredictor,
    PredictionEvent,
    PredictionRequest,
    PredictorConfig,
    calculate_realized_il,
    exit_probability,
    impermanent_loss,
)
from deltaguard.price_encoding import MAX_INDEX, index_to_price
from deltaguard.volatility import VolatilityEstimate

S = SCALE
DAY = 86_400
NOW = 1_700_000_000


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _StubVolatility:
    def __init__(self, value: int, confidence: int = 10_000, is_stale: bool = False) -> None:
        self.estimate = VolatilityEstimate(
            value=value,
            confidence=confidence,
            data_points=30,
            is_stale=is_stale,
            computed_at=NOW,
        )
        self.calls = 0

    def get_volatility(self, now: int | None = None) -> VolatilityEstimate:
        self.calls += 1
        return self.estimate


def _predictor(vol_bp: int = 5000, **kw) -> tuple[ILPredictor, _StubVolatility]:
    source = _StubVolatility(from_basis_points(vol_bp), **kw)
    return ILPredictor(source), source


def _reference_exit(price: float, lower: float, upper: float, sigma: float, days: float) -> float:
    t = days / 365.0

    def cdf(x: float) -> float:
        return 0.5 * (1.0 + math.erf(x / math.sqrt(2.0)))

    def d2(k: float) -> float:
        return (math.log(price / k) - 0.5 * sigma * sigma * t) / (sigma * math.sqrt(t))

    return min(1.0, cdf(-d2(lower)) + cdf(d2(upper)))


# ---------------------------------------------------------------------------
# Closed-form IL
# ---------------------------------------------------------------------------


class TestRealizedIL:
    def test_no_move_is_zero(self) -> None:
        for price in ("0.0001", "1", "2000", "123456.789"):
            p = to_scaled(price)
            assert calculate_realized_il(p, p) == 0
        assert impermanent_loss(S) == 0

    def test_double_and_half(self) -> None:
        assert calculate_realized_il(2000 * S, 4000 * S) == 572
        assert calculate_realized_il(2000 * S, 1000 * S) == 572

    def test_symmetric_under_inversion(self) -> None:
        p = to_scaled("1234.5")
        assert calculate_realized_il(p, 2 * p) == calculate_realized_il(p, p // 2)

    @pytest.mark.parametrize("ratio", [0.25, 0.8, 1.5, 3.0, 10.0])
    def test_matches_reference(self, ratio: float) -> None:
        expected = abs(2 * math.sqrt(ratio) / (1 + ratio) - 1) * 10_000
        got = calculate_realized_il(S, to_scaled(repr(ratio)))
        assert abs(got - expected) <= 1

    def test_rejects_zero_price(self) -> None:
        with pytest.raises(InvalidInput) as exc:
            calculate_realized_il(0, S)
        assert exc.value.reason == InvalidInputReason.ZERO_PRICE
        with pytest.raises(InvalidInput):
            calculate_realized_il(S, -S)


# ---------------------------------------------------------------------------
# Exit probability
# ---------------------------------------------------------------------------


class TestExitProbability:
    @pytest.mark.parametrize(
        "lower, upper, vol, days",
        [
            (1800, 2200, 0.5, 7),
            (1800, 2200, 0.5, 90),
            (1000, 4000, 0.5, 30),
            (1500, 2600, 1.2, 180),
            (1950, 2050, 0.3, 1),
        ],
    )
    def test_matches_reference(self, lower: int, upper: int, vol: float, days: int) -> None:
        got = exit_probability(
            2000 * S, lower * S, upper * S, to_scaled(repr(vol)), days * DAY
        )
        assert abs(got / S - _reference_exit(2000, lower, upper, vol, days)) < 1e-6

    def test_zero_volatility(self) -> None:
        with pytest.raises(InvalidVolatility):
            exit_probability(2000 * S, 1800 * S, 2200 * S, 0, DAY)

    def test_price_outside_range(self) -> None:
        got = exit_probability(2500 * S, 1800 * S, 2200 * S, S // 2, 7 * DAY)
        assert got > S // 2


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    def _reason(self, predictor: ILPredictor, *args: int) -> InvalidInputReason:
        with pytest.raises(InvalidInput) as exc:
            predictor.predict(*args, now=NOW)
        return exc.value.reason

    def test_inverted_bounds_is_construction_error(self) -> None:
        with pytest.raises(InvalidInput) as exc:
            PredictionRequest(2000 * S, 4000 * S, 1000 * S, 30 * DAY)
        assert exc.value.reason == InvalidInputReason.INVERTED_BOUNDS
        with pytest.raises(InvalidInput):
            PredictionRequest(2000 * S, 1000 * S, 1000 * S, 30 * DAY)

    def test_zero_price(self) -> None:
        p, _ = _predictor()
        assert self._reason(p, 0, 1000 * S, 4000 * S, 30 * DAY) == InvalidInputReason.ZERO_PRICE

    def test_price_too_large(self) -> None:
        p = ILPredictor(_StubVolatility(S // 2), PredictorConfig(max_price=10**6 * S))
        assert (
            self._reason(p, 10**7 * S, 10**6 * S, 2 * 10**7 * S, 30 * DAY)
            == InvalidInputReason.PRICE_OUT_OF_RANGE
        )

    def test_zero_bound(self) -> None:
        p, _ = _predictor()
        assert self._reason(p, 2000 * S, 0, 4000 * S, 30 * DAY) == InvalidInputReason.ZERO_BOUND

    def test_bound_ratio(self) -> None:
        p, _ = _predictor()
        assert (
            self._reason(p, 2000 * S, 10 * S, 4000 * S, 30 * DAY)
            == InvalidInputReason.BOUND_RATIO_OUT_OF_RANGE
        )
        assert (
            self._reason(p, 2000 * S, 1000 * S, 300_000 * S, 30 * DAY)
            == InvalidInputReason.BOUND_RATIO_OUT_OF_RANGE
        )

    def test_horizon_limits(self) -> None:
        p, _ = _predictor()
        assert (
            self._reason(p, 2000 * S, 1000 * S, 4000 * S, 1800)
            == InvalidInputReason.HORIZON_TOO_SHORT
        )
        assert (
            self._reason(p, 2000 * S, 1000 * S, 4000 * S, 366 * DAY)
            == InvalidInputReason.HORIZON_TOO_LONG
        )

    def test_horizon_edges_accepted(self) -> None:
        p, _ = _predictor()
        p.predict(2000 * S, 1000 * S, 4000 * S, 3600, now=NOW)
        p.predict(2000 * S, 1000 * S, 4000 * S, 365 * DAY, now=NOW)

    def test_zero_volatility(self) -> None:
        p = ILPredictor(_StubVolatility(0))
        with pytest.raises(InvalidVolatility):
            p.predict(2000 * S, 1000 * S, 4000 * S, 30 * DAY, now=NOW)

    def test_validation_before_volatility_lookup(self) -> None:
        p, source = _predictor()
        with pytest.raises(InvalidInput):
            p.predict(2000 * S, 1000 * S, 4000 * S, 60, now=NOW)
        assert source.calls == 0


# ---------------------------------------------------------------------------
# Prediction
# ---------------------------------------------------------------------------


class TestPredict:
    def test_reference_scenario(self) -> None:
        p, _ = _predictor(vol_bp=5000)
        result = p.predict(2000 * S, 1000 * S, 4000 * S, 30 * DAY, now=NOW)
        assert 0 <= result.exit_probability <= 10_000
        assert result.expected_il >= 0
        assert result.confidence > 5000
        assert result.confidence == 10_000
        assert result.volatility == S // 2
        assert result.computed_at == NOW

    def test_exit_probability_increases_with_horizon(self) -> None:
        p, _ = _predictor(vol_bp=5000)
        probs = [
            p.predict(2000 * S, 1800 * S, 2200 * S, days * DAY, now=NOW).exit_probability
            for days in (7, 30, 90)
        ]
        assert probs[0] < probs[1] < probs[2]

    def test_exit_probability_increases_as_range_narrows(self) -> None:
        p, _ = _predictor(vol_bp=5000)
        probs = [
            p.predict(2000 * S, lower * S, upper * S, 30 * DAY, now=NOW).exit_probability
            for lower, upper in ((1500, 2600), (1700, 2350), (1800, 2200))
        ]
        assert probs[0] < probs[1] < probs[2]

    def test_expected_il_increases_with_volatility(self) -> None:
        low, _ = _predictor(vol_bp=1000)
        high, _ = _predictor(vol_bp=8000)
        args = (2000 * S, 1600 * S, 2500 * S, 90 * DAY)
        assert low.predict(*args, now=NOW).expected_il < high.predict(*args, now=NOW).expected_il

    def test_expected_il_is_probability_times_average_barrier_il(self) -> None:
        p, _ = _predictor(vol_bp=8000)
        result = p.predict(2000 * S, 1600 * S, 2500 * S, 90 * DAY, now=NOW)
        probability = exit_probability(2000 * S, 1600 * S, 2500 * S, 8 * S // 10, 90 * DAY)
        average = (impermanent_loss(8 * S // 10) + impermanent_loss(5 * S // 4)) // 2
        assert result.expected_il == to_basis_points(mul(probability, average))
        assert result.exit_probability == to_basis_points(probability)

    def test_predict_request(self) -> None:
        p, _ = _predictor()
        request = PredictionRequest(2000 * S, 1000 * S, 4000 * S, 30 * DAY)
        assert p.predict_request(request, now=NOW) == p.predict(
            2000 * S, 1000 * S, 4000 * S, 30 * DAY, now=NOW
        )


class TestConfidencePenalties:
    def _confidence(self, horizon_days: int, lower: int = 1000, **kw) -> int:
        p, _ = _predictor(**kw)
        return p.predict(2000 * S, lower * S, 4000 * S, horizon_days * DAY, now=NOW).confidence

    def test_no_penalty(self) -> None:
        assert self._confidence(30) == 10_000

    def test_stale(self) -> None:
        assert self._confidence(30, is_stale=True) == 7000

    def test_long_horizon(self) -> None:
        assert self._confidence(31) == 9000

    def test_very_long_horizon_applies_sequentially(self) -> None:
        assert self._confidence(91) == 8100

    def test_near_barrier(self) -> None:
        assert self._confidence(30, lower=1850) == 8500

    def test_combined(self) -> None:
        assert self._confidence(91, lower=1850, is_stale=True) == 4819

    def test_starts_from_estimate_confidence(self) -> None:
        assert self._confidence(30, confidence=6000) == 6000


class TestCaching:
    def test_second_call_is_cache_hit(self) -> None:
        p, source = _predictor()
        first = p.predict(2000 * S, 1000 * S, 4000 * S, 30 * DAY, now=NOW)
        second = p.predict(2000 * S, 1000 * S, 4000 * S, 30 * DAY, now=NOW + 60)
        assert second == first
        assert source.calls == 1

    def test_expired_entry_recomputed(self) -> None:
        p, source = _predictor()
        p.predict(2000 * S, 1000 * S, 4000 * S, 30 * DAY, now=NOW)
        result = p.predict(2000 * S, 1000 * S, 4000 * S, 30 * DAY, now=NOW + 600)
        assert source.calls == 2
        assert result.computed_at == NOW + 600

    def test_different_inputs_miss(self) -> None:
        p, source = _predictor()
        p.predict(2000 * S, 1000 * S, 4000 * S, 30 * DAY, now=NOW)
        p.predict(2000 * S, 1000 * S, 4000 * S, 31 * DAY, now=NOW)
        assert source.calls == 2

    def test_custom_cache(self) -> None:
        source = _StubVolatility(S // 2)
        p = ILPredictor(source, cache=PredictionCache(PredictionCacheConfig(ttl_seconds=0)))
        p.predict(2000 * S, 1000 * S, 4000 * S, 30 * DAY, now=NOW)
        p.predict(2000 * S, 1000 * S, 4000 * S, 30 * DAY, now=NOW)
        assert source.calls == 2

    def test_empty_cache_is_kept(self) -> None:
        cache = PredictionCache()
        p = ILPredictor(_StubVolatility(S // 2), cache=cache)
        assert p.cache is cache
        p.predict(2000 * S, 1000 * S, 4000 * S, 30 * DAY, now=NOW)
        assert len(cache) == 1

    def test_concurrent_readers_agree(self) -> None:
        p, _ = _predictor()
        results: List[object] = []

        def worker() -> None:
            results.append(p.predict(2000 * S, 1800 * S, 2200 * S, 30 * DAY, now=NOW))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(results) == 8
        assert all(r == results[0] for r in results)


class TestEvents:
    def test_listener_notified_on_compute_only(self) -> None:
        p, _ = _predictor()
        events: List[PredictionEvent] = []
        p.add_listener(events.append)
        result = p.predict(2000 * S, 1000 * S, 4000 * S, 30 * DAY, now=NOW)
        p.predict(2000 * S, 1000 * S, 4000 * S, 30 * DAY, now=NOW + 1)
        assert len(events) == 1
        assert events[0].result == result
        assert events[0].request == PredictionRequest(2000 * S, 1000 * S, 4000 * S, 30 * DAY)


# ---------------------------------------------------------------------------
# Perturbation
# ---------------------------------------------------------------------------


class TestPerturbation:
    def test_small_trade_stays_in_range(self) -> None:
        p, _ = _predictor()
        r = p.predict_from_perturbation(2000 * S, 1800 * S, 2200 * S, S, 1000 * S)
        assert r.price_impact_bp == 10
        assert r.new_price == 2002 * S
        assert r.exits_range is False
        assert r.il_bp == 0

    def test_large_trade_capped_and_exits(self) -> None:
        p, _ = _predictor()
        r = p.predict_from_perturbation(2000 * S, 1800 * S, 2200 * S, 600 * S, 1000 * S)
        assert r.price_impact_bp == 5000
        assert r.new_price == 3000 * S
        assert r.exits_range is True
        assert r.il_bp == 202

    def test_downward_move(self) -> None:
        p, _ = _predictor()
        r = p.predict_from_perturbation(2000 * S, 1800 * S, 2200 * S, -600 * S, 1000 * S)
        assert r.new_price == 1000 * S
        assert r.il_bp == 572

    def test_zero_liquidity(self) -> None:
        p, _ = _predictor()
        with pytest.raises(InvalidInput) as exc:
            p.predict_from_perturbation(2000 * S, 1800 * S, 2200 * S, S, 0)
        assert exc.value.reason == InvalidInputReason.ZERO_LIQUIDITY

    def test_does_not_touch_volatility(self) -> None:
        p, source = _predictor()
        p.predict_from_perturbation(2000 * S, 1800 * S, 2200 * S, S, 1000 * S)
        assert source.calls == 0


class TestPredictForIndices:
    def test_matches_predict_on_converted_prices(self) -> None:
        by_index, _ = _predictor()
        by_price, _ = _predictor()
        lower, upper = index_to_price(75_000), index_to_price(77_000)
        expected = by_price.predict(2000 * S, lower, upper, 30 * DAY, now=NOW)
        assert by_index.predict_for_indices(2000 * S, 75_000, 77_000, 30 * DAY, now=NOW) == expected

    def test_shares_cache_with_price_queries(self) -> None:
        p, source = _predictor()
        p.predict(2000 * S, index_to_price(75_000), index_to_price(77_000), 30 * DAY, now=NOW)
        p.predict_for_indices(2000 * S, 75_000, 77_000, 30 * DAY, now=NOW + 1)
        assert source.calls == 1

    def test_inverted_indices(self) -> None:
        p, _ = _predictor()
        with pytest.raises(InvalidInput) as exc:
            p.predict_for_indices(2000 * S, 77_000, 75_000, 30 * DAY, now=NOW)
        assert exc.value.reason == InvalidInputReason.INVERTED_BOUNDS

    def test_index_outside_domain(self) -> None:
        p, _ = _predictor()
        with pytest.raises(MathDomainError):
            p.predict_for_indices(2000 * S, 75_000, MAX_INDEX + 1, 30 * DAY, now=NOW)
