# src/telerelay/engine/pulse.py
"""Pulse throttle controller.

A five-step degradation ladder (pulse1 full capacity down to pulse4
minimal, plus hibernate). Each level scales capacity, batch size and job
intervals, sets a sampling rate and switches metrics, logs and queue
processing on or off.

This controller is a lookup only. Deciding *when* to change level is left
to an operator or an external policy calling set_level(); every consumer
applies the active level to its own parameters.
"""

from __future__ import annotations

import math
import random

import structlog

from telerelay.contracts.enums import EnvelopeKind, PulseLevel
from telerelay.core.config import ConfigProvider, PulseModeSettings
from telerelay.core.store.state import PipelineStateStore
from telerelay.engine.clock import DEFAULT_CLOCK, Clock

logger = structlog.get_logger(__name__)

STATE_KEY_LEVEL = "pulse.level"


class PulseController:
    """Reads and sets the active pulse level and applies its table row."""

    def __init__(
        self,
        state: PipelineStateStore,
        config: ConfigProvider,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._state = state
        self._config = config
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._rng = rng if rng is not None else random.Random()

    def current(self) -> PulseLevel:
        stored = self._state.get(STATE_KEY_LEVEL)
        if stored is not None:
            try:
                return PulseLevel(stored)
            except ValueError:
                logger.warning("pulse_level_invalid", stored=stored)
        return self._config.current().pulse.level

    def mode(self) -> PulseModeSettings:
        level = self.current()
        return self._config.current().pulse.modes[level]

    def set_level(self, level: PulseLevel) -> PulseLevel:
        """Persist a new level and return the previous one."""
        previous = self.current()
        self._state.set(STATE_KEY_LEVEL, level.value, now=self._clock.now())
        if previous is not level:
            logger.info("pulse_level_changed", previous=previous.value, level=level.value)
        return previous

    def allows(self, kind: EnvelopeKind) -> bool:
        """Whether the active level lets this category through at all."""
        mode = self.mode()
        if kind is EnvelopeKind.METRIC:
            return mode.metrics_enabled
        if kind is EnvelopeKind.LOG:
            return mode.logs_enabled
        return True

    def queue_processing_enabled(self) -> bool:
        return self.mode().queue_processing_enabled

    def sample(self) -> bool:
        """Random keep/drop decision at the active sampling rate."""
        rate = self.mode().sampling_rate
        if rate >= 1.0:
            return True
        if rate <= 0.0:
            return False
        return self._rng.random() < rate

    def scale_interval(self, seconds: float) -> float:
        return seconds * self.mode().interval_multiplier

    def scale_batch(self, size: int) -> int:
        return int(size * self.mode().batch_multiplier)

    def scale_capacity(self, capacity: int) -> int:
        """Scaled capacity, never below one slot."""
        return max(1, math.floor(capacity * self.mode().capacity_multiplier))
