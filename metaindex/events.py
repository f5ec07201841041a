"""
Event Channel
=============
In-process publish/subscribe used by the indexer to report progress.

Event names are the stable contract for collaborators:

    parsingStarted, parsingCompleted, parsingError, hierarchyBuilt,
    snapshotGenerated, snapshotSaved, snapshotSaveError,
    snapshotRestored, entityMetadataUpdated, cacheCleared,
    predictiveLoadScheduled, exportReady

Handlers run synchronously on the emitting thread. A handler that raises
is logged and skipped; it never breaks the emitter or other handlers.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

PARSING_STARTED = "parsingStarted"
PARSING_COMPLETED = "parsingCompleted"
PARSING_ERROR = "parsingError"
HIERARCHY_BUILT = "hierarchyBuilt"
SNAPSHOT_GENERATED = "snapshotGenerated"
SNAPSHOT_SAVED = "snapshotSaved"
SNAPSHOT_SAVE_ERROR = "snapshotSaveError"
SNAPSHOT_RESTORED = "snapshotRestored"
ENTITY_METADATA_UPDATED = "entityMetadataUpdated"
CACHE_CLEARED = "cacheCleared"
PREDICTIVE_LOAD_SCHEDULED = "predictiveLoadScheduled"
EXPORT_READY = "exportReady"

_HISTORY_LIMIT = 1000

Handler = Callable[["Event"], None]


@dataclass
class Event:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class EventBus:
    """Thread-safe pub/sub with a bounded history of emitted events."""

    def __init__(self, history_limit: int = _HISTORY_LIMIT):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._history: deque = deque(maxlen=history_limit)
        self._lock = threading.Lock()

    def on(self, name: str, handler: Handler) -> Callable[[], None]:
        """Subscribe; returns a callable that unsubscribes."""
        with self._lock:
            self._handlers[name].append(handler)
        return lambda: self.off(name, handler)

    def off(self, name: str, handler: Handler) -> bool:
        with self._lock:
            handlers = self._handlers.get(name, [])
            if handler in handlers:
                handlers.remove(handler)
                return True
            return False

    def emit(self, name: str, **payload) -> Event:
        event = Event(name=name, payload=payload)
        with self._lock:
            self._history.append(event)
            handlers = list(self._handlers.get(name, []))

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"[EVENTS] Handler for '{name}' failed: {e}")
        return event

    def history(self, name: Optional[str] = None) -> List[Event]:
        with self._lock:
            events = list(self._history)
        if name is None:
            return events
        return [e for e in events if e.name == name]

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()
