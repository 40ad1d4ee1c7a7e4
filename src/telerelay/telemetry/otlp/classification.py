# src/telerelay/telemetry/otlp/classification.py
"""Metric type classification by name.

Configured glob overrides win; otherwise naming conventions decide:
trailing total/count/requests/errors/... marks a counter, bucket or
percentile markers mark a histogram, and everything else is a gauge.
"""

import fnmatch
import re
from collections.abc import Mapping

from telerelay.contracts.enums import MetricType

_COUNTER_PATTERN = re.compile(
    r"(?:^|[._-])(?:total|count|requests|errors|failures|calls|hits|sent|received)$",
    re.IGNORECASE,
)
_HISTOGRAM_PATTERN = re.compile(
    r"(?:^|[._-])(?:bucket|buckets|histogram|percentile|quantile|p\d{2,3}|duration_seconds)(?:$|[._-])",
    re.IGNORECASE,
)


class MetricClassifier:
    """Maps metric names to OTLP metric shapes.

    Args:
        overrides: Glob pattern -> type, tried in insertion order
    """

    def __init__(self, overrides: Mapping[str, MetricType] | None = None) -> None:
        self._overrides = dict(overrides or {})

    def classify(self, name: str) -> MetricType:
        for pattern, metric_type in self._overrides.items():
            if fnmatch.fnmatchcase(name, pattern):
                return metric_type
        if _COUNTER_PATTERN.search(name):
            return MetricType.COUNTER
        if _HISTOGRAM_PATTERN.search(name):
            return MetricType.HISTOGRAM
        return MetricType.GAUGE
