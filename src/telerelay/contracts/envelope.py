# src/telerelay/contracts/envelope.py
"""Backend-agnostic envelopes for spans, metrics and logs.

An envelope is one pending telemetry unit. It is immutable once built and
travels unchanged from the producer, through the durable queue (as flat
JSON), to whichever backend delivers it.

Correlation ids are explicit optionals. The instrumentation layer this
format was designed around used empty strings or the literal "null" as
"no trace"; parsing normalizes all of those to None so the encoder can
decide business vs traced metrics from a single ``is None`` check.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from telerelay.contracts.enums import EnvelopeKind
from telerelay.contracts.errors import EnvelopeFormatError

_ABSENT_ID_MARKERS = frozenset({"", "null", "none"})


def normalize_id(value: object) -> str | None:
    """Return a correlation id, or None when the value means "absent"."""
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in _ABSENT_ID_MARKERS:
        return None
    return text


@dataclass(frozen=True, slots=True)
class SpanEvent:
    """Timestamped event recorded inside a span."""

    name: str
    time: str
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SpanEnvelope:
    """One finished span."""

    trace_id: str
    span_id: str
    operation_name: str
    start_time: str
    end_time: str
    duration_ms: float | None = None
    status: str = "UNSET"
    attributes: Mapping[str, Any] = field(default_factory=dict)
    events: tuple[SpanEvent, ...] = ()
    parent_span_id: str | None = None

    @property
    def kind(self) -> EnvelopeKind:
        return EnvelopeKind.SPAN


@dataclass(frozen=True, slots=True)
class MetricEnvelope:
    """One metric observation, optionally correlated with a trace."""

    name: str
    value: float
    unit: str = ""
    timestamp: str = ""
    attributes: Mapping[str, Any] = field(default_factory=dict)
    trace_id: str | None = None
    span_id: str | None = None

    @property
    def kind(self) -> EnvelopeKind:
        return EnvelopeKind.METRIC


@dataclass(frozen=True, slots=True)
class LogEnvelope:
    """One log record, optionally correlated with a trace."""

    severity: str
    message: str
    timestamp: str = ""
    attributes: Mapping[str, Any] = field(default_factory=dict)
    trace_id: str | None = None
    span_id: str | None = None

    @property
    def kind(self) -> EnvelopeKind:
        return EnvelopeKind.LOG


Envelope = SpanEnvelope | MetricEnvelope | LogEnvelope


def envelope_to_dict(envelope: Envelope) -> dict[str, Any]:
    """Flatten an envelope into the JSON document stored in the queue."""
    if isinstance(envelope, SpanEnvelope):
        return {
            "kind": EnvelopeKind.SPAN.value,
            "trace_id": envelope.trace_id,
            "span_id": envelope.span_id,
            "parent_span_id": envelope.parent_span_id,
            "operation_name": envelope.operation_name,
            "start_time": envelope.start_time,
            "end_time": envelope.end_time,
            "duration_ms": envelope.duration_ms,
            "status": envelope.status,
            "attributes": _plain(envelope.attributes),
            "events": [{"name": e.name, "time": e.time, "attributes": _plain(e.attributes)} for e in envelope.events],
        }
    if isinstance(envelope, MetricEnvelope):
        return {
            "kind": EnvelopeKind.METRIC.value,
            "name": envelope.name,
            "value": envelope.value,
            "unit": envelope.unit,
            "timestamp": envelope.timestamp,
            "trace_id": envelope.trace_id,
            "span_id": envelope.span_id,
            "attributes": _plain(envelope.attributes),
        }
    return {
        "kind": EnvelopeKind.LOG.value,
        "severity": envelope.severity,
        "message": envelope.message,
        "timestamp": envelope.timestamp,
        "trace_id": envelope.trace_id,
        "span_id": envelope.span_id,
        "attributes": _plain(envelope.attributes),
    }


def envelope_to_json(envelope: Envelope) -> str:
    """Serialize an envelope to its flat JSON form."""
    return json.dumps(envelope_to_dict(envelope), default=str, separators=(",", ":"))


def envelope_from_dict(data: Mapping[str, Any]) -> Envelope:
    """Build an envelope from its flat document form.

    Attribute values are carried through untouched, even if they are not a
    JSON object; the encoder is responsible for coping with malformed
    attribute sets so that one bad attribute never loses the whole item.

    Raises:
        EnvelopeFormatError: If the kind is unknown or a required field is missing.
    """
    raw_kind = data.get("kind")
    try:
        kind = EnvelopeKind(raw_kind)
    except ValueError:
        raise EnvelopeFormatError(f"unknown kind {raw_kind!r}") from None

    try:
        if kind is EnvelopeKind.SPAN:
            raw_events = data.get("events") or []
            if not isinstance(raw_events, list):
                raise EnvelopeFormatError("span events must be a list")
            events = tuple(
                SpanEvent(
                    name=str(event["name"]),
                    time=str(event.get("time") or ""),
                    attributes=event.get("attributes") or {},
                )
                for event in raw_events
            )
            return SpanEnvelope(
                trace_id=str(data["trace_id"]),
                span_id=str(data["span_id"]),
                parent_span_id=normalize_id(data.get("parent_span_id")),
                operation_name=str(data["operation_name"]),
                start_time=str(data.get("start_time") or ""),
                end_time=str(data.get("end_time") or ""),
                duration_ms=_optional_float(data.get("duration_ms")),
                status=str(data.get("status") or "UNSET"),
                attributes=data.get("attributes") or {},
                events=events,
            )
        if kind is EnvelopeKind.METRIC:
            return MetricEnvelope(
                name=str(data["name"]),
                value=float(data["value"]),
                unit=str(data.get("unit") or ""),
                timestamp=str(data.get("timestamp") or ""),
                trace_id=normalize_id(data.get("trace_id")),
                span_id=normalize_id(data.get("span_id")),
                attributes=data.get("attributes") or {},
            )
        return LogEnvelope(
            severity=str(data.get("severity") or "INFO"),
            message=str(data.get("message") or ""),
            timestamp=str(data.get("timestamp") or ""),
            trace_id=normalize_id(data.get("trace_id")),
            span_id=normalize_id(data.get("span_id")),
            attributes=data.get("attributes") or {},
        )
    except KeyError as e:
        raise EnvelopeFormatError(f"{kind.value} envelope missing field {e.args[0]!r}") from e
    except (TypeError, ValueError, AttributeError) as e:
        raise EnvelopeFormatError(f"{kind.value} envelope has invalid field: {e}") from e


def envelope_from_json(payload: str) -> Envelope:
    """Parse the flat JSON form produced by envelope_to_json().

    Raises:
        EnvelopeFormatError: If the payload is not valid JSON or not an envelope.
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise EnvelopeFormatError(f"invalid JSON: {e.msg}") from e
    if not isinstance(data, dict):
        raise EnvelopeFormatError(f"expected a JSON object, got {type(data).__name__}")
    return envelope_from_dict(data)


def _plain(attributes: Mapping[str, Any]) -> Any:
    if isinstance(attributes, Mapping):
        return dict(attributes)
    return attributes


def _optional_float(value: object) -> float | None:
    if value is None or value == "":
        return None
    return float(value)  # type: ignore[arg-type]
