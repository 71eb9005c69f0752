"""In-process notifications.

Fire-and-forget observer events for dashboards and logs. They are not how a
caller learns its own job's result; that comes back from the job itself.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class Event(str, Enum):
    PRESET_SELECTED = "preset_selected"
    PRESET_GENERATED = "preset_generated"
    GENERATION_PROGRESS = "generation_progress"
    GENERATION_FAILED = "generation_failed"
    GENERATION_COMPLETED = "generation_completed"


class Notifier:
    """Best-effort event fan-out to subscribed handlers."""

    def __init__(self):
        self._handlers: dict[Event, list[Handler]] = defaultdict(list)

    def subscribe(self, event: Event, handler: Handler) -> None:
        self._handlers[Event(event)].append(handler)

    def unsubscribe(self, event: Event, handler: Handler) -> None:
        handlers = self._handlers.get(Event(event), [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: Event, **payload: Any) -> None:
        for handler in list(self._handlers.get(Event(event), [])):
            try:
                handler(**payload)
            except Exception:
                logger.exception("Handler for %s raised; ignoring", event.value)
