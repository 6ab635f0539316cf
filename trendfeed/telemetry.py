from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import structlog

TELEMETRY_LOGGER_NAME = "trendfeed.telemetry"

# First dotted segment of every event name emitted by the service.
EVENT_FAMILIES: frozenset[str] = frozenset(
    {"channels", "credentials", "discovery", "http", "quota", "scheduler", "youtube"}
)
# Outcomes a reader of the telemetry file should not have to grep for.
_WARNING_SUFFIXES: tuple[str, ...] = (".error", ".unavailable")

_API_KEY_ATTRIBUTES: frozenset[str] = frozenset({"api_key", "apikey", "developer_key"})
_SECRET_ATTRIBUTE_TOKENS: tuple[str, ...] = ("admin_token", "authorization", "password", "secret")
_MAX_TEXT_LENGTH = 160

TelemetryValue = bool | int | float | str | None


def key_hint(api_key: str) -> str:
    """Last four characters only; what clients and telemetry ever see of a key."""
    return f"...{api_key[-4:]}" if len(api_key) > 4 else "..."


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        ...


class NoOpTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        del event_name, attributes


class StructuredLogTelemetrySink:
    """Writes each event as one structlog entry on the telemetry logger."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger(TELEMETRY_LOGGER_NAME)

    def emit(self, *, event_name: str, attributes: Mapping[str, TelemetryValue]) -> None:
        if event_name.endswith(_WARNING_SUFFIXES):
            self._logger.warning("telemetry", telemetry_event=event_name, **attributes)
        else:
            self._logger.info("telemetry", telemetry_event=event_name, **attributes)


@dataclass(frozen=True)
class TelemetryClient:
    enabled: bool
    sink: TelemetrySink

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NoOpTelemetrySink())

    def emit(self, event_name: str, **attributes: Any) -> None:
        if not self.enabled:
            return
        family, _, _ = event_name.partition(".")
        if family not in EVENT_FAMILIES:
            raise ValueError(f"unknown telemetry event family: {event_name}")

        cleaned: dict[str, TelemetryValue] = {"event_family": family}
        for raw_name, raw_value in attributes.items():
            name = str(raw_name).strip().lower()
            if name:
                cleaned[name] = _clean_attribute(name, raw_value)
        self.sink.emit(event_name=event_name, attributes=cleaned)


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    # `AppSettings` rejects any other sink name.
    if enabled and sink == "log":
        return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())
    return TelemetryClient.disabled()


def _clean_attribute(name: str, value: Any) -> TelemetryValue:
    if name in _API_KEY_ATTRIBUTES:
        return key_hint(value) if isinstance(value, str) else "[redacted]"
    if any(token in name for token in _SECRET_ATTRIBUTE_TOKENS):
        return "[redacted]"
    if value is None or isinstance(value, bool | int | float):
        return value
    if not isinstance(value, str):
        # Payloads and models stay out of telemetry; only their type is recorded.
        return type(value).__name__
    text = " ".join(value.split())
    return text if len(text) <= _MAX_TEXT_LENGTH else f"{text[:_MAX_TEXT_LENGTH]}..."
