from __future__ import annotations

"""Session telemetry for generations.

Each event is logged on ``chronicle.telemetry`` and kept in a bounded
in-memory buffer so a host can show what happened in the current session.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

_logger = logging.getLogger("chronicle.telemetry")

MAX_EVENTS = 200


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    properties: Dict[str, Any] = field(default_factory=dict)
    generation: Optional[int] = None
    at: float = field(default_factory=time.time)


_events: Deque[TelemetryEvent] = deque(maxlen=MAX_EVENTS)


def record_event(event: TelemetryEvent) -> None:
    _events.append(event)
    _logger.info(event.name, extra={"generation": event.generation, "properties": event.properties})


def recent_events(limit: int = 50) -> List[TelemetryEvent]:
    if limit <= 0:
        return []
    return list(_events)[-limit:]


def events_for_generation(generation: int) -> List[TelemetryEvent]:
    """Everything recorded for one generation, oldest first."""
    return [event for event in _events if event.generation == generation]


def clear_events() -> None:
    _events.clear()
