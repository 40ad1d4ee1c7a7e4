# src/telerelay/engine/batch_controller.py
"""Adaptive batch sizing (admission control for the delivery worker).

The batch size follows recent collector behaviour:

1. Average latency over the lookback window picks a rate tier: the tier
   with the lowest priority number whose latency threshold still covers
   the observed latency, or the last tier when none does.
2. The tier's batch size is penalised by recent errors: x0.5 above 10%
   errors, x0.75 above 5%.
3. The active pulse level's batch multiplier is applied.
4. The result is clamped to [min_size, max_size].

With no deliveries in the window the configured default size is used
(still scaled by pulse and clamped).
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta

import structlog

from telerelay.core.config import BatchSettings, ConfigProvider, RateTier
from telerelay.core.store.delivery_log import DeliveryLog, DeliveryStats
from telerelay.engine.clock import DEFAULT_CLOCK, Clock
from telerelay.engine.pulse import PulseController

logger = structlog.get_logger(__name__)

HIGH_ERROR_RATE = 0.10
ELEVATED_ERROR_RATE = 0.05


def select_tier(tiers: Sequence[RateTier], avg_latency_ms: float) -> RateTier:
    """Most generous tier whose threshold covers the latency (tiers sorted by priority)."""
    for tier in tiers:
        if tier.latency_threshold_ms >= avg_latency_ms:
            return tier
    return tiers[-1]


def error_penalty(error_rate: float) -> float:
    if error_rate > HIGH_ERROR_RATE:
        return 0.5
    if error_rate > ELEVATED_ERROR_RATE:
        return 0.75
    return 1.0


def compute_batch_size(
    settings: BatchSettings,
    stats: DeliveryStats,
    pulse_multiplier: float = 1.0,
) -> int:
    """Pure batch-size computation, always within [min_size, max_size]."""
    if stats.attempts == 0 or stats.avg_latency_ms is None:
        base = float(settings.default_size)
    else:
        tier = select_tier(settings.tiers, stats.avg_latency_ms)
        base = tier.batch_size * error_penalty(stats.error_rate)
    size = int(base * pulse_multiplier)
    return max(settings.min_size, min(settings.max_size, size))


@dataclass(frozen=True, slots=True)
class BatchDecision:
    """A batch size and the inputs it came from."""

    size: int
    stats: DeliveryStats
    pulse_multiplier: float


class BatchController:
    """Computes the worker's per-cycle drain size."""

    def __init__(
        self,
        delivery_log: DeliveryLog,
        config: ConfigProvider,
        pulse: PulseController,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._log = delivery_log
        self._config = config
        self._pulse = pulse
        self._clock = clock if clock is not None else DEFAULT_CLOCK

    def decide(self) -> BatchDecision:
        settings = self._config.current().batch
        since = self._clock.now() - timedelta(minutes=settings.window_minutes)
        stats = self._log.stats_since(since)
        multiplier = self._pulse.mode().batch_multiplier
        size = compute_batch_size(settings, stats, multiplier)
        logger.debug(
            "batch_size_computed",
            size=size,
            attempts=stats.attempts,
            avg_latency_ms=stats.avg_latency_ms,
            error_rate=round(stats.error_rate, 4),
            pulse_multiplier=multiplier,
        )
        return BatchDecision(size=size, stats=stats, pulse_multiplier=multiplier)

    def optimal_batch_size(self) -> int:
        return self.decide().size
