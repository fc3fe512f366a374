from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricEvent:
    name: str
    duration_ms: float
    attributes: Dict[str, Any] = field(default_factory=dict)


class MetricsObserver(Protocol):
    def record(self, event: MetricEvent) -> None:
        ...


class LoggingObserver:
    """Default sink: one log line per metric event."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    def record(self, event: MetricEvent) -> None:
        attributes = " ".join(f"{key}={value}" for key, value in sorted(event.attributes.items()))
        logger.log(self.level, f"metric {event.name} duration_ms={event.duration_ms:.1f} {attributes}".rstrip())
