"""Metrics, events and logging setup."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .config import ObservabilityConfig

LOGGER_NAME = "cipher_vault"


def configure_logging(level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if logger.handlers:
        return logger
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(handler)
    return logger


@dataclass
class TelemetryEvent:
    message: str
    attributes: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class TelemetryCollector:
    config: ObservabilityConfig
    metrics: List[Dict[str, Any]] = field(default_factory=list)
    events: List[TelemetryEvent] = field(default_factory=list)

    def emit_metric(self, name: str, value: float, labels: Dict[str, str] | None = None) -> None:
        self.metrics.append({
            "name": name,
            "value": value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **(labels or {}),
        })

    def emit_event(self, message: str, attributes: Dict[str, Any] | None = None) -> None:
        self.events.append(TelemetryEvent(message=message, attributes=attributes))

    def metric_values(self, name: str) -> List[float]:
        return [float(metric["value"]) for metric in self.metrics if metric.get("name") == name]

    def flush(self) -> None:
        self.metrics.clear()
        self.events.clear()
