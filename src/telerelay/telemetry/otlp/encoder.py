# src/telerelay/telemetry/otlp/encoder.py
"""Envelope to OTLP/JSON encoder.

encode() turns one envelope into one OTLP document holding exactly one
resource, one scope and one item, written straight into a DocumentBuffer.
The encoder performs no I/O; problems it works around (an unparseable
timestamp, an attribute set that is not a mapping) are reported through
an injected diagnostic sink and never raised, so one bad field cannot
cost the whole item.

Metric data points are tagged metric.category=business when the envelope
carries no trace id, and metric.category=traced plus trace.id/span.id when
it does. Downstream dashboards split on that tag.
"""

from __future__ import annotations

import base64
import math
import socket
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from telerelay import __version__
from telerelay.contracts.enums import EnvelopeKind, MetricType
from telerelay.contracts.envelope import Envelope, LogEnvelope, MetricEnvelope, SpanEnvelope
from telerelay.core.diagnostics import DiagnosticSink, NullDiagnostics
from telerelay.telemetry.otlp.buffer import DocumentBuffer, escape_json_string
from telerelay.telemetry.otlp.classification import MetricClassifier
from telerelay.telemetry.otlp.timestamps import datetime_to_unix_nanos, iso_to_unix_nanos

logger = structlog.get_logger(__name__)

SCOPE_NAME = "telerelay"

SPAN_KIND_INTERNAL = 1
STATUS_CODE_UNSET = 0
STATUS_CODE_OK = 1
STATUS_CODE_ERROR = 2
AGGREGATION_TEMPORALITY_CUMULATIVE = 2

SEVERITY_NUMBERS: dict[str, int] = {
    "TRACE": 1,
    "DEBUG": 5,
    "INFO": 9,
    "WARN": 13,
    "WARNING": 13,
    "ERROR": 17,
    "FATAL": 21,
    "CRITICAL": 21,
}
DEFAULT_SEVERITY = "INFO"

# Nested attribute values deeper than this are stringified
_MAX_VALUE_DEPTH = 8

SIGNAL_PATHS: dict[EnvelopeKind, str] = {
    EnvelopeKind.SPAN: "v1/traces",
    EnvelopeKind.METRIC: "v1/metrics",
    EnvelopeKind.LOG: "v1/logs",
}


def compute_instance_id(service_name: str, hostname: str | None = None) -> str:
    """Stable per-host, per-service instance id."""
    host = hostname if hostname is not None else socket.gethostname()
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, f"{host}/{service_name}"))


@dataclass(frozen=True, slots=True)
class ResourceInfo:
    """Identity of the producing service, shared by every document."""

    service_name: str
    service_version: str
    environment: str
    instance_id: str
    tenant_id: str | None = None
    tenant_name: str | None = None

    def attributes(self) -> dict[str, str]:
        attrs = {
            "service.name": self.service_name,
            "service.version": self.service_version,
            "deployment.environment": self.environment,
            "service.instance.id": self.instance_id,
            "telemetry.sdk.name": SCOPE_NAME,
            "telemetry.sdk.version": __version__,
            "telemetry.sdk.language": "python",
        }
        if self.tenant_id is not None:
            attrs["tenant.id"] = self.tenant_id
        if self.tenant_name is not None:
            attrs["tenant.name"] = self.tenant_name
        return attrs


@dataclass(frozen=True, slots=True)
class EncodedDocument:
    """A finished OTLP document and the collector path it belongs to."""

    kind: EnvelopeKind
    path: str
    body: DocumentBuffer


def _format_double(value: float) -> str:
    if math.isnan(value):
        return '"NaN"'
    if math.isinf(value):
        return '"Infinity"' if value > 0 else '"-Infinity"'
    return repr(float(value))


def _render_any_value(value: Any, depth: int = 0) -> str | None:
    """Render an OTLP AnyValue, or None for a value that should be omitted."""
    if value is None:
        return None
    if isinstance(value, bool):
        return '{"boolValue":true}' if value else '{"boolValue":false}'
    if isinstance(value, int):
        return f'{{"intValue":"{int(value)}"}}'
    if isinstance(value, float):
        return f'{{"doubleValue":{_format_double(value)}}}'
    if isinstance(value, str):
        return f'{{"stringValue":"{escape_json_string(value)}"}}'
    if isinstance(value, bytes | bytearray):
        return f'{{"bytesValue":"{base64.b64encode(bytes(value)).decode("ascii")}"}}'
    if depth < _MAX_VALUE_DEPTH:
        if isinstance(value, Mapping):
            return f'{{"kvlistValue":{{"values":{_render_key_values(value, depth + 1)}}}}}'
        if isinstance(value, list | tuple | set | frozenset):
            items = [rendered for item in value if (rendered := _render_any_value(item, depth + 1)) is not None]
            return f'{{"arrayValue":{{"values":[{",".join(items)}]}}}}'
    return f'{{"stringValue":"{escape_json_string(str(value))}"}}'


def _render_key_values(attributes: Mapping[Any, Any], depth: int = 0) -> str:
    parts: list[str] = []
    for key, value in attributes.items():
        rendered = _render_any_value(value, depth)
        if rendered is None:
            continue
        parts.append(f'{{"key":"{escape_json_string(str(key))}","value":{rendered}}}')
    return "[" + ",".join(parts) + "]"


class OtlpEncoder:
    """Encodes envelopes into OTLP/JSON documents.

    Args:
        resource: Service identity rendered into every document
        classifier: Metric name classifier
        diagnostics: Sink for recoverable encode problems
        now: Fallback time source for unparseable timestamps
    """

    def __init__(
        self,
        resource: ResourceInfo,
        classifier: MetricClassifier | None = None,
        *,
        diagnostics: DiagnosticSink | None = None,
        now: Callable[[], datetime] | None = None,
        spill_threshold: int | None = None,
    ) -> None:
        self._resource = resource
        self._classifier = classifier if classifier is not None else MetricClassifier()
        self._diagnostics: DiagnosticSink = diagnostics if diagnostics is not None else NullDiagnostics()
        self._now = now if now is not None else (lambda: datetime.now(UTC))
        self._spill_threshold = spill_threshold
        self._resource_json = _render_key_values(resource.attributes())
        self._scope_json = f'{{"name":"{SCOPE_NAME}","version":"{escape_json_string(__version__)}"}}'

    @property
    def resource(self) -> ResourceInfo:
        return self._resource

    def encode(self, envelope: Envelope) -> EncodedDocument:
        buf = DocumentBuffer() if self._spill_threshold is None else DocumentBuffer(self._spill_threshold)
        if isinstance(envelope, SpanEnvelope):
            self._encode_span(buf, envelope)
        elif isinstance(envelope, MetricEnvelope):
            self._encode_metric(buf, envelope)
        else:
            self._encode_log(buf, envelope)
        return EncodedDocument(kind=envelope.kind, path=SIGNAL_PATHS[envelope.kind], body=buf)

    # === shared pieces ===

    def _open(self, buf: DocumentBuffer, resource_key: str, scope_key: str, items_key: str) -> None:
        buf.write(f'{{"{resource_key}":[{{"resource":{{"attributes":')
        buf.write(self._resource_json)
        buf.write(f'}},"{scope_key}":[{{"scope":')
        buf.write(self._scope_json)
        buf.write(f',"{items_key}":[')

    @staticmethod
    def _close(buf: DocumentBuffer) -> None:
        buf.write("]}]}]}")

    def _nanos(self, value: str, *, field: str, context: Envelope, fallback: int | None = None) -> int:
        if isinstance(value, str) and value.strip():
            try:
                return iso_to_unix_nanos(value)
            except ValueError:
                self._diagnose(context, f"Unparseable {field} {value!r}; using current time", "bad_timestamp")
        elif fallback is None:
            logger.debug("timestamp_missing", field=field, kind=context.kind.value)
        if fallback is not None:
            return fallback
        return datetime_to_unix_nanos(self._now())

    def _attributes(self, attributes: Any, context: Envelope, *, exclude: frozenset[str] = frozenset()) -> dict[Any, Any]:
        if isinstance(attributes, Mapping):
            if exclude:
                return {k: v for k, v in attributes.items() if k not in exclude}
            return dict(attributes)
        self._diagnose(
            context,
            f"Attributes must be a mapping, got {type(attributes).__name__}; encoded with no attributes",
            "bad_attributes",
        )
        return {}

    def _render_attributes(self, attributes: Mapping[Any, Any], context: Envelope) -> str:
        try:
            return _render_key_values(attributes)
        except Exception as e:
            # Arbitrary user objects may fail in __str__; keep the item
            self._diagnose(context, f"Attribute encoding failed ({e}); encoded with no attributes", "bad_attributes")
            return "[]"

    def _diagnose(self, context: Envelope, message: str, code: str) -> None:
        trace_id = getattr(context, "trace_id", None)
        span_id = getattr(context, "span_id", None)
        logger.warning("otlp_encode_degraded", kind=context.kind.value, reason=code, detail=message)
        self._diagnostics.record("otlp.encoder", message, error_code=code, trace_id=trace_id, span_id=span_id)

    # === spans ===

    def _encode_span(self, buf: DocumentBuffer, span: SpanEnvelope) -> None:
        self._open(buf, "resourceSpans", "scopeSpans", "spans")
        attributes = self._attributes(span.attributes, span)
        start = self._nanos(span.start_time, field="start_time", context=span)
        end_fallback = None
        if span.duration_ms is not None and not (isinstance(span.end_time, str) and span.end_time.strip()):
            end_fallback = start + int(span.duration_ms * 1_000_000)
        end = self._nanos(span.end_time, field="end_time", context=span, fallback=end_fallback)

        buf.write('{"traceId":')
        buf.write_string(span.trace_id.lower())
        buf.write(',"spanId":')
        buf.write_string(span.span_id.lower())
        if span.parent_span_id:
            buf.write(',"parentSpanId":')
            buf.write_string(span.parent_span_id.lower())
        buf.write(',"name":')
        buf.write_string(span.operation_name)
        buf.write(f',"kind":{SPAN_KIND_INTERNAL},"startTimeUnixNano":"{start}","endTimeUnixNano":"{end}","attributes":')
        buf.write(self._render_attributes(attributes, span))
        buf.write(',"events":[')
        for index, event in enumerate(span.events):
            if index:
                buf.write(",")
            event_time = self._nanos(event.time, field="event.time", context=span)
            buf.write(f'{{"timeUnixNano":"{event_time}","name":')
            buf.write_string(event.name)
            buf.write(',"attributes":')
            buf.write(self._render_attributes(self._attributes(event.attributes, span), span))
            buf.write("}")
        buf.write('],"status":')
        self._write_status(buf, span.status, attributes)
        buf.write("}")
        self._close(buf)

    @staticmethod
    def _write_status(buf: DocumentBuffer, status: str, attributes: Mapping[Any, Any]) -> None:
        normalized = status.strip().upper()
        if normalized == "OK":
            buf.write(f'{{"code":{STATUS_CODE_OK}}}')
        elif normalized == "ERROR":
            message = attributes.get("error.message") or attributes.get("exception.message") or "ERROR"
            buf.write(f'{{"code":{STATUS_CODE_ERROR},"message":')
            buf.write_string(str(message))
            buf.write("}")
        else:
            buf.write(f'{{"code":{STATUS_CODE_UNSET}}}')

    # === metrics ===

    def _point_attributes(self, metric: MetricEnvelope) -> dict[Any, Any]:
        reserved = frozenset({"trace.id", "span.id", "tenant.id", "metric.category"})
        point = self._attributes(metric.attributes, metric, exclude=reserved)
        if self._resource.tenant_id is not None:
            point["tenant.id"] = self._resource.tenant_id
        if metric.trace_id is None:
            point["metric.category"] = "business"
        else:
            point["metric.category"] = "traced"
            point["trace.id"] = metric.trace_id
            if metric.span_id is not None:
                point["span.id"] = metric.span_id
        return point

    def _encode_metric(self, buf: DocumentBuffer, metric: MetricEnvelope) -> None:
        self._open(buf, "resourceMetrics", "scopeMetrics", "metrics")
        metric_type = self._classifier.classify(metric.name)
        time_nanos = self._nanos(metric.timestamp, field="timestamp", context=metric)
        point_attrs = self._render_attributes(self._point_attributes(metric), metric)
        value = float(metric.value)

        buf.write('{"name":')
        buf.write_string(metric.name)
        buf.write(',"unit":')
        buf.write_string(metric.unit)
        if metric_type is MetricType.COUNTER:
            if math.isfinite(value):
                as_int = round(value)
            else:
                self._diagnose(metric, f"Counter value {value!r} is not finite; reported as 0", "bad_value")
                as_int = 0
            buf.write(',"sum":{"dataPoints":[{"attributes":')
            buf.write(point_attrs)
            buf.write(
                f',"timeUnixNano":"{time_nanos}","asInt":"{as_int}"}}],'
                f'"aggregationTemporality":{AGGREGATION_TEMPORALITY_CUMULATIVE},"isMonotonic":true}}'
            )
        elif metric_type is MetricType.HISTOGRAM:
            double = _format_double(value)
            buf.write(',"histogram":{"dataPoints":[{"attributes":')
            buf.write(point_attrs)
            buf.write(
                f',"startTimeUnixNano":"{time_nanos}","timeUnixNano":"{time_nanos}","count":"1",'
                f'"sum":{double},"min":{double},"max":{double},"bucketCounts":["1"],"explicitBounds":[]}}],'
                f'"aggregationTemporality":{AGGREGATION_TEMPORALITY_CUMULATIVE}}}'
            )
        else:
            buf.write(',"gauge":{"dataPoints":[{"attributes":')
            buf.write(point_attrs)
            buf.write(f',"timeUnixNano":"{time_nanos}","asDouble":{_format_double(value)}}}]}}')
        buf.write("}")
        self._close(buf)

    # === logs ===

    def _encode_log(self, buf: DocumentBuffer, record: LogEnvelope) -> None:
        self._open(buf, "resourceLogs", "scopeLogs", "logRecords")
        severity_text = record.severity.strip().upper() if record.severity else DEFAULT_SEVERITY
        severity_number = SEVERITY_NUMBERS.get(severity_text)
        if severity_number is None:
            severity_text = DEFAULT_SEVERITY
            severity_number = SEVERITY_NUMBERS[DEFAULT_SEVERITY]
        time_nanos = self._nanos(record.timestamp, field="timestamp", context=record)
        observed = datetime_to_unix_nanos(self._now())

        buf.write(
            f'{{"timeUnixNano":"{time_nanos}","observedTimeUnixNano":"{observed}",'
            f'"severityNumber":{severity_number},"severityText":"{severity_text}","body":{{"stringValue":'
        )
        buf.write_string(record.message)
        buf.write('},"attributes":')
        buf.write(self._render_attributes(self._attributes(record.attributes, record), record))
        if record.trace_id is not None:
            buf.write(',"traceId":')
            buf.write_string(record.trace_id.lower())
        if record.span_id is not None:
            buf.write(',"spanId":')
            buf.write_string(record.span_id.lower())
        buf.write("}")
        self._close(buf)
