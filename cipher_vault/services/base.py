"""Base class for vault services."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..config import CipherVaultConfig
from ..telemetry import TelemetryCollector


@dataclass
class BaseService:
    """Carries the shared config and telemetry sink.

    Metric names are dotted (``upload.completed``). Labels and event
    attributes carry ids and counts, never key material or file names.
    """

    config: CipherVaultConfig
    telemetry: TelemetryCollector

    def emit_metric(self, name: str, value: float, **labels: str) -> None:
        self.telemetry.emit_metric(name, value, labels)

    def emit_event(self, message: str, **attrs: Any) -> None:
        self.telemetry.emit_event(message, attrs)
