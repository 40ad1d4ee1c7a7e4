# src/telerelay/core/config.py
"""
Configuration schema and loading for telerelay.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction; hot-reloadable
overrides stored as key/value rows are applied by ConfigProvider, which
produces a fresh validated RelaySettings rather than mutating one.
"""

import os
import re
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from telerelay.contracts.enums import MetricType, PulseLevel, QueueOrdering

logger = structlog.get_logger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


class CollectorSettings(BaseModel):
    """OTLP/HTTP collector endpoint."""

    model_config = {"frozen": True}

    base_url: str | None = Field(
        default="http://otel-collector:4318",
        description="Collector base URL; /v1/traces, /v1/metrics and /v1/logs are appended",
    )
    timeout_seconds: float = Field(default=30.0, gt=0, description="HTTP timeout per request")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra request headers (e.g. auth)")


class ServiceSettings(BaseModel):
    """Identity of the producing service, reported as OTLP resource attributes."""

    model_config = {"frozen": True}

    name: str = Field(default="telerelay-service", min_length=1)
    version: str = Field(default="1.0.0")
    environment: str = Field(default="production")


class TenantSettings(BaseModel):
    """Optional tenant context stamped onto resources and metric points."""

    model_config = {"frozen": True}

    id: str | None = None
    name: str | None = None


class StoreSettings(BaseModel):
    """Durable store connection."""

    model_config = {"frozen": True}

    # NOTE: str rather than Path - Path mangles PostgreSQL DSNs
    url: str = Field(default="sqlite:///./telerelay.db", description="Full SQLAlchemy database URL")


class QueueSettings(BaseModel):
    """Durable queue behaviour."""

    model_config = {"frozen": True}

    max_attempts: int = Field(default=5, gt=0, description="Attempts before an item is excluded from drains")
    max_pending: int = Field(default=100_000, gt=0, description="Pending depth at which enqueue is rejected")
    ordering: QueueOrdering = Field(default=QueueOrdering.PRIORITY, description="Drain ordering policy")
    lease_seconds: int = Field(default=300, gt=0, description="How long a claim hides an item from other drains")
    retention_days: int = Field(default=7, gt=0, description="Age after which processed items may be purged")


class CircuitBreakerSettings(BaseModel):
    """Circuit breaker thresholds and windows."""

    model_config = {"frozen": True}

    enabled: bool = True
    error_threshold: float = Field(default=0.5, gt=0, le=1, description="Error rate that opens the circuit")
    recovery_minutes: float = Field(default=5.0, gt=0, description="Time OPEN before probing")
    min_attempts: int = Field(default=50, gt=0, description="Minimum sample before CLOSED may open")
    window_seconds: int = Field(default=120, gt=0, description="Sliding window for the error rate")
    half_open_samples: int = Field(default=10, gt=0, description="Samples needed to settle HALF_OPEN")


class RateTier(BaseModel):
    """One row of the latency-to-batch-size table."""

    model_config = {"frozen": True}

    priority: int
    latency_threshold_ms: float = Field(ge=0)
    batch_size: int = Field(gt=0)


DEFAULT_RATE_TIERS: tuple[RateTier, ...] = (
    RateTier(priority=1, latency_threshold_ms=0, batch_size=500),
    RateTier(priority=2, latency_threshold_ms=100, batch_size=300),
    RateTier(priority=3, latency_threshold_ms=500, batch_size=150),
    RateTier(priority=4, latency_threshold_ms=1000, batch_size=75),
    RateTier(priority=5, latency_threshold_ms=2000, batch_size=25),
    RateTier(priority=6, latency_threshold_ms=9_999_999, batch_size=10),
)


class BatchSettings(BaseModel):
    """Adaptive batch sizing."""

    model_config = {"frozen": True}

    default_size: int = Field(default=100, gt=0, description="Batch size when no recent deliveries exist")
    min_size: int = Field(default=10, gt=0)
    max_size: int = Field(default=500, gt=0)
    window_minutes: float = Field(default=5.0, gt=0, description="Lookback for latency and error ratio")
    tiers: tuple[RateTier, ...] = Field(default=DEFAULT_RATE_TIERS, min_length=1)

    @field_validator("tiers")
    @classmethod
    def sort_tiers(cls, v: tuple[RateTier, ...]) -> tuple[RateTier, ...]:
        priorities = [t.priority for t in v]
        if len(set(priorities)) != len(priorities):
            raise ValueError(f"Rate tier priorities must be unique, got {priorities}")
        return tuple(sorted(v, key=lambda t: t.priority))

    @model_validator(mode="after")
    def check_bounds(self) -> "BatchSettings":
        if self.min_size > self.max_size:
            raise ValueError(f"min_size ({self.min_size}) must not exceed max_size ({self.max_size})")
        return self


class PulseModeSettings(BaseModel):
    """Multipliers and toggles for one pulse level."""

    model_config = {"frozen": True}

    capacity_multiplier: float = Field(ge=0)
    batch_multiplier: float = Field(ge=0)
    interval_multiplier: float = Field(gt=0)
    sampling_rate: float = Field(ge=0, le=1)
    metrics_enabled: bool = True
    logs_enabled: bool = True
    queue_processing_enabled: bool = True


DEFAULT_PULSE_MODES: dict[PulseLevel, PulseModeSettings] = {
    PulseLevel.PULSE1: PulseModeSettings(capacity_multiplier=1.0, batch_multiplier=1.0, interval_multiplier=1, sampling_rate=1.0),
    PulseLevel.PULSE2: PulseModeSettings(capacity_multiplier=0.5, batch_multiplier=0.5, interval_multiplier=2, sampling_rate=0.75),
    PulseLevel.PULSE3: PulseModeSettings(capacity_multiplier=0.25, batch_multiplier=0.25, interval_multiplier=4, sampling_rate=0.5),
    PulseLevel.PULSE4: PulseModeSettings(capacity_multiplier=0.1, batch_multiplier=0.1, interval_multiplier=10, sampling_rate=0.25),
    PulseLevel.HIBERNATE: PulseModeSettings(
        capacity_multiplier=0.0,
        batch_multiplier=0.01,
        interval_multiplier=60,
        sampling_rate=0.05,
        metrics_enabled=False,
        logs_enabled=False,
        queue_processing_enabled=False,
    ),
}


class PulseSettings(BaseModel):
    """Pulse ladder table and the level used until one is set at runtime."""

    model_config = {"frozen": True}

    level: PulseLevel = PulseLevel.PULSE1
    modes: dict[PulseLevel, PulseModeSettings] = Field(default_factory=lambda: dict(DEFAULT_PULSE_MODES))

    @field_validator("modes")
    @classmethod
    def fill_missing_levels(cls, v: dict[PulseLevel, PulseModeSettings]) -> dict[PulseLevel, PulseModeSettings]:
        return {**DEFAULT_PULSE_MODES, **v}


class FailoverSettings(BaseModel):
    """Primary agent monitoring and local fallback."""

    model_config = {"frozen": True}

    enabled: bool = True
    agent_name: str = Field(default="primary-agent", description="Heartbeat row monitored by the orchestrator")
    max_missed_runs: int = Field(default=3, gt=0)
    check_interval_seconds: int = Field(default=60, gt=0, description="Expected heartbeat interval when the agent reports none")
    queue_threshold: int = Field(default=1000, ge=0, description="Pending depth that justifies fallback for a degraded agent")
    degraded_ratio: float = Field(default=0.7, gt=0, le=1)
    fallback_backend: str = Field(default="otlp", description="Backend used by the local delivery worker")
    status_interval_minutes: float = Field(default=10.0, gt=0)
    monitor_interval_seconds: int = Field(default=60, gt=0)
    local_delivery_interval_seconds: int = Field(default=60, gt=0)


class MetricsSettings(BaseModel):
    """Metric type classification overrides."""

    model_config = {"frozen": True}

    type_overrides: dict[str, MetricType] = Field(
        default_factory=dict,
        description="Glob pattern -> metric type, checked before name heuristics",
    )


class PipelineSettings(BaseModel):
    """Send path behaviour."""

    model_config = {"frozen": True}

    async_mode: bool = Field(default=True, description="Queue envelopes instead of delivering inline")


class LoggingSettings(BaseModel):
    """Process log output."""

    model_config = {"frozen": True}

    level: str = "INFO"
    json_output: bool = False


class RelaySettings(BaseModel):
    """Top-level telerelay configuration."""

    model_config = {"frozen": True, "extra": "forbid"}

    collector: CollectorSettings = Field(default_factory=CollectorSettings)
    service: ServiceSettings = Field(default_factory=ServiceSettings)
    tenant: TenantSettings = Field(default_factory=TenantSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    pulse: PulseSettings = Field(default_factory=PulseSettings)
    failover: FailoverSettings = Field(default_factory=FailoverSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values."""

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            env_value = os.environ.get(match.group(1))
            if env_value is not None:
                return env_value
            if match.group(2) is not None:
                return match.group(2)
            # No env var and no default - keep original so validation reports it
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lower_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lower_keys(item) for item in value]
    return value


def load_settings(config_path: Path | None = None) -> RelaySettings:
    """Load settings from YAML file with environment variable overrides.

    Precedence:
    1. Environment variables (TELERELAY_*) - highest priority
    2. Config file
    3. Defaults from the Pydantic schema - lowest priority

    Environment variable format: TELERELAY_COLLECTOR__BASE_URL for nested keys.

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    settings_files: list[str] = []
    if config_path is not None:
        # Dynaconf silently accepts missing files
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        settings_files.append(str(config_path))

    dynaconf_settings = Dynaconf(
        envvar_prefix="TELERELAY",
        settings_files=settings_files,
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k.lower(): _lower_keys(v) for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _expand_env_vars(raw_config)

    return RelaySettings(**raw_config)


def parse_override_value(raw: str) -> Any:
    """Interpret a stored override value as a YAML scalar or collection.

    "0.4" becomes 0.4, "true" becomes True, "[1, 2]" becomes a list and
    anything unparseable stays a string.
    """
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def apply_override(config: dict[str, Any], dotted_key: str, value: Any) -> dict[str, Any]:
    """Return a copy of a settings dump with one dotted key replaced.

    Raises:
        KeyError: If any segment does not name an existing section or setting.
    """
    parts = dotted_key.split(".")
    result = dict(config)
    node = result
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            raise KeyError(dotted_key)
        child = dict(child)
        node[part] = child
        node = child
    if parts[-1] not in node:
        raise KeyError(dotted_key)
    node[parts[-1]] = value
    return result


class ConfigProvider:
    """Current effective settings: the loaded base plus stored overrides.

    Components call current() at the start of every evaluation, so a changed
    override takes effect on the next tick without a restart. Overrides that
    do not name a real setting, or that fail validation, are logged and
    ignored; the rest still apply.

    Args:
        base: Settings loaded at startup
        entries: Callable returning the current override rows (dotted key -> raw text)
    """

    def __init__(
        self,
        base: RelaySettings,
        entries: Callable[[], Mapping[str, str]] | None = None,
    ) -> None:
        self._base = base
        self._entries = entries
        self._cache_key: tuple[tuple[str, str], ...] = ()
        self._cached = base

    @property
    def base(self) -> RelaySettings:
        return self._base

    def current(self) -> RelaySettings:
        if self._entries is None:
            return self._base
        snapshot = tuple(sorted(self._entries().items()))
        if snapshot == self._cache_key:
            return self._cached
        self._cached = self._resolve(snapshot)
        self._cache_key = snapshot
        return self._cached

    def _resolve(self, overrides: tuple[tuple[str, str], ...]) -> RelaySettings:
        config = self._base.model_dump(mode="python")
        settings = self._base
        for key, raw in overrides:
            try:
                candidate = apply_override(config, key, parse_override_value(raw))
                settings = RelaySettings.model_validate(candidate)
            except KeyError:
                logger.warning("config_override_unknown_key", key=key)
                continue
            except ValidationError as e:
                logger.warning("config_override_invalid", key=key, value=raw, errors=e.error_count())
                continue
            config = candidate
        return settings
