"""OTLP/JSON encoding.

Pure transformation from envelopes to OTLP documents; no I/O.
"""

from telerelay.telemetry.otlp.buffer import DocumentBuffer, escape_json_string
from telerelay.telemetry.otlp.classification import MetricClassifier
from telerelay.telemetry.otlp.encoder import (
    SEVERITY_NUMBERS,
    SIGNAL_PATHS,
    EncodedDocument,
    OtlpEncoder,
    ResourceInfo,
    compute_instance_id,
)
from telerelay.telemetry.otlp.timestamps import datetime_to_unix_nanos, iso_to_unix_nanos, parse_timestamp

__all__ = [
    "SEVERITY_NUMBERS",
    "SIGNAL_PATHS",
    "DocumentBuffer",
    "EncodedDocument",
    "MetricClassifier",
    "OtlpEncoder",
    "ResourceInfo",
    "compute_instance_id",
    "datetime_to_unix_nanos",
    "escape_json_string",
    "iso_to_unix_nanos",
    "parse_timestamp",
]
