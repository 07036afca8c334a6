from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import structlog

TelemetryValue = bool | int | float | str | None

_SENSITIVE_ATTRIBUTE_TOKENS: frozenset[str] = frozenset(
    {
        "api_key",
        "authorization",
        "password",
        "secret",
        "token",
    }
)
# Pagination cursors are opaque and carry no credentials.
_ALLOWED_ATTRIBUTES: frozenset[str] = frozenset({"page_token", "next_page_token"})
# YouTube request params that must never leave the process.
_SECRET_PARAM_NAMES: frozenset[str] = frozenset({"key", "access_token"})
_API_KEY_IN_URL = re.compile(r"([?&](?:key|access_token)=)[^&\s]+", re.IGNORECASE)

_MAX_STRING_LENGTH = 160
# Same bound as the error stored on a failed job.
_MAX_ERROR_MESSAGE_LENGTH = 500


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        ...


class NoOpTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        _ = (event_name, attributes)


class StructuredLogTelemetrySink:
    def __init__(self) -> None:
        self._logger = structlog.get_logger("channel_insights.telemetry")

    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **dict(attributes))


@dataclass(frozen=True)
class TelemetryClient:
    """Named events for HTTP requests, YouTube API calls and job execution.

    Attributes are flattened to scalars before they reach the sink:

    * credential-like names (`api_key`, `authorization`, ...) are redacted,
    * `key=` query values inside URLs are masked,
    * request param mappings become their sorted param names, secrets dropped,
    * id sequences (e.g. `video_ids`) become a `<name>_count` integer,
    * strings are whitespace-collapsed and truncated; `error_message` keeps
      the same length a failed job stores.
    """

    enabled: bool
    sink: TelemetrySink

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NoOpTelemetrySink())

    def emit(self, event_name: str, **attributes: Any) -> None:
        if not self.enabled:
            return
        self.sink.emit(event_name=event_name, attributes=sanitize_attributes(attributes))


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if enabled and sink == "log":
        return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())
    return TelemetryClient.disabled()


def sanitize_attributes(attributes: Mapping[str, Any]) -> dict[str, TelemetryValue]:
    sanitized: dict[str, TelemetryValue] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        if key not in _ALLOWED_ATTRIBUTES and _is_sensitive_attribute(key):
            sanitized[key] = "[redacted]"
        elif isinstance(raw_value, Mapping):
            sanitized[key] = _summarize_params(raw_value)
        elif isinstance(raw_value, list | tuple | set | frozenset):
            sanitized[f"{key}_count"] = len(raw_value)
        else:
            sanitized[key] = _sanitize_scalar(key, raw_value)
    return sanitized


def _is_sensitive_attribute(key: str) -> bool:
    return any(token in key for token in _SENSITIVE_ATTRIBUTE_TOKENS)


def _summarize_params(params: Mapping[Any, Any]) -> str:
    names = sorted(
        str(name)
        for name, value in params.items()
        if value is not None and str(name).lower() not in _SECRET_PARAM_NAMES
    )
    return ",".join(names)


def _sanitize_scalar(key: str, value: object) -> TelemetryValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if not isinstance(value, str):
        return type(value).__name__

    compact = _API_KEY_IN_URL.sub(r"\1[redacted]", " ".join(value.split()))
    limit = _MAX_ERROR_MESSAGE_LENGTH if key == "error_message" else _MAX_STRING_LENGTH
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."
