# tests/property/test_batch_properties.py
"""Property-based tests for adaptive batch sizing.

compute_batch_size() must stay inside [min_size, max_size] for every
latency, error rate and pulse multiplier, and more latency must never
earn a larger tier.
"""

from __future__ import annotations

from hypothesis import assume, given
from hypothesis import strategies as st

from telerelay.core.config import BatchSettings
from telerelay.core.store import DeliveryStats
from telerelay.engine.batch_controller import compute_batch_size, select_tier

latency_st = st.floats(min_value=0, max_value=1e7, allow_nan=False)


@st.composite
def stats_st(draw: st.DrawFn) -> DeliveryStats:
    attempts = draw(st.integers(min_value=0, max_value=10_000))
    failures = draw(st.integers(min_value=0, max_value=attempts))
    latency = draw(st.none() | latency_st) if attempts else None
    return DeliveryStats(attempts=attempts, failures=failures, avg_latency_ms=latency)


class TestBatchSizeBounds:
    @given(
        stats=stats_st(),
        multiplier=st.floats(min_value=0, max_value=100, allow_nan=False),
        min_size=st.integers(min_value=1, max_value=1000),
        spread=st.integers(min_value=0, max_value=1000),
    )
    def test_always_within_bounds(self, stats: DeliveryStats, multiplier: float, min_size: int, spread: int) -> None:
        settings = BatchSettings(min_size=min_size, max_size=min_size + spread, default_size=min_size)

        size = compute_batch_size(settings, stats, multiplier)

        assert settings.min_size <= size <= settings.max_size


class TestTierMonotonicity:
    @given(low=latency_st, high=latency_st)
    def test_higher_latency_never_bigger_tier(self, low: float, high: float) -> None:
        assume(low <= high)
        tiers = BatchSettings().tiers
        assert select_tier(tiers, high).batch_size <= select_tier(tiers, low).batch_size

    @given(
        attempts=st.integers(min_value=1, max_value=1000),
        latency=latency_st,
        data=st.data(),
    )
    def test_more_errors_never_bigger_batch(self, attempts: int, latency: float, data: st.DataObject) -> None:
        fewer = data.draw(st.integers(min_value=0, max_value=attempts))
        more = data.draw(st.integers(min_value=fewer, max_value=attempts))
        settings = BatchSettings()

        calm = compute_batch_size(settings, DeliveryStats(attempts, fewer, latency))
        noisy = compute_batch_size(settings, DeliveryStats(attempts, more, latency))

        assert noisy <= calm
