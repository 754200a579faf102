from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import structlog

TelemetryValue = bool | int | float | str | None

# Description text and OAuth material never leave the process through telemetry.
_REDACTED_KEY_FRAGMENTS: tuple[str, ...] = (
    "authorization",
    "content",
    "description",
    "encrypted",
    "oauth_code",
    "secret",
    "token",
)
_MAX_TEXT_LENGTH = 160


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        ...


class LogTelemetrySink:
    """Writes events to the `tubedesc.telemetry` logger, which has its own file."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger("tubedesc.telemetry")

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self._logger.info(event_name, telemetry_event=event_name, **dict(attributes))


@dataclass(frozen=True)
class TelemetryClient:
    enabled: bool
    sink: TelemetrySink | None = None

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False)

    def emit(self, event_name: str, **attributes: Any) -> None:
        if not self.enabled or self.sink is None:
            return
        self.sink.emit(event_name=event_name, attributes=scrub_attributes(attributes))


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if enabled and sink == "log":
        return TelemetryClient(enabled=True, sink=LogTelemetrySink())
    return TelemetryClient.disabled()


def scrub_attributes(attributes: Mapping[str, Any]) -> dict[str, TelemetryValue]:
    scrubbed: dict[str, TelemetryValue] = {}
    for raw_key, raw_value in attributes.items():
        key = str(raw_key).strip().lower()
        if key:
            scrubbed[key] = "[redacted]" if _is_redacted(key) else _flatten(raw_value)
    return scrubbed


def _is_redacted(key: str) -> bool:
    return any(fragment in key for fragment in _REDACTED_KEY_FRAGMENTS)


def _flatten(value: Any) -> TelemetryValue:
    # Id lists can hold thousands of entries; only their size is reported.
    if isinstance(value, list | tuple | set | frozenset):
        return f"<{len(value)} items>"
    if value is None or isinstance(value, bool | int | float):
        return value
    if not isinstance(value, str):
        return type(value).__name__
    text = " ".join(value.split())
    return text if len(text) <= _MAX_TEXT_LENGTH else f"{text[:_MAX_TEXT_LENGTH]}..."
