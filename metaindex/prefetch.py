"""
Predictive Prefetch
Warms the entity cache around whatever the user is heading towards.

Navigation intents are debounced: each new intent cancels the pending one
and restarts the delay. When the delay settles, the related entities
(siblings and descendants down to ``depth``) are warmed. Purely advisory;
failures are logged at debug level and never leave this module.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


class PrefetchScheduler:
    """Debounced cache warm-up driven by navigation intent."""

    def __init__(
        self,
        related: Callable[[str, int], List[str]],
        warm: Callable[[str], Any],
        delay: float = 0.5,
        depth: int = 2,
        enabled: bool = True,
        on_scheduled: Callable[[str, List[str]], None] = None,
    ):
        """
        Args:
            related:      ``related(entity_id, depth)`` -> ids worth warming
            warm:         Loads one entity into the cache
            delay:        Debounce window in seconds
            depth:        How many levels of descendants to include
            enabled:      When False every intent is ignored
            on_scheduled: Called with ``(entity_id, ids)`` once a prefetch runs
        """
        self._related = related
        self._warm = warm
        self.delay = delay
        self.depth = depth
        self.enabled = enabled
        self._on_scheduled = on_scheduled
        self._timer: Optional[threading.Timer] = None
        self._pending: Optional[str] = None
        self._lock = threading.Lock()
        self.preloaded = 0
        self.last_target: Optional[str] = None

    def on_navigation_intent(self, entity_id: str) -> None:
        """Register intent to navigate to ``entity_id``. Returns immediately."""
        if not self.enabled or not entity_id:
            return
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._pending = entity_id
            self._timer = threading.Timer(self.delay, self._settle)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> None:
        """Run the pending prefetch now instead of waiting for the timer."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        self._settle()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending = None

    @property
    def pending(self) -> Optional[str]:
        return self._pending

    def _settle(self) -> None:
        with self._lock:
            entity_id = self._pending
            self._pending = None
            self._timer = None
        if entity_id is None:
            return

        try:
            ids = self._related(entity_id, self.depth)
        except Exception as e:
            logger.debug(f"[PREFETCH] Could not resolve neighbours of {entity_id}: {e}")
            return

        self.last_target = entity_id
        warmed = 0
        for related_id in ids:
            try:
                self._warm(related_id)
                warmed += 1
            except Exception as e:
                logger.debug(f"[PREFETCH] Warm-up of {related_id} failed: {e}")
        self.preloaded += warmed
        logger.debug(f"[PREFETCH] {entity_id}: warmed {warmed}/{len(ids)} related entities")

        if self._on_scheduled:
            try:
                self._on_scheduled(entity_id, ids)
            except Exception as e:
                logger.debug(f"[PREFETCH] Notification failed: {e}")
