"""
Tests for the debounced prefetch scheduler.
"""

import threading

from metaindex.prefetch import PrefetchScheduler


def _scheduler(related=None, warm=None, delay=60.0, **kwargs):
    warmed = []
    scheduler = PrefetchScheduler(
        related=related or (lambda entity_id, depth: [f"{entity_id}-a", f"{entity_id}-b"]),
        warm=warm or warmed.append,
        delay=delay,
        **kwargs
    )
    return scheduler, warmed


class TestPrefetchScheduler:
    """Debounce, warm-up and failure containment."""

    def test_flush_warms_related(self):
        """Settling warms every related id."""
        scheduler, warmed = _scheduler()
        scheduler.on_navigation_intent("guide")
        assert scheduler.pending == "guide"
        scheduler.flush()
        assert warmed == ["guide-a", "guide-b"]
        assert scheduler.preloaded == 2
        assert scheduler.last_target == "guide"
        assert scheduler.pending is None

    def test_latest_intent_wins(self):
        """Rapid intents collapse into one prefetch for the last target."""
        scheduler, warmed = _scheduler()
        scheduler.on_navigation_intent("one")
        scheduler.on_navigation_intent("two")
        scheduler.on_navigation_intent("three")
        scheduler.flush()
        assert warmed == ["three-a", "three-b"]

    def test_cancel(self):
        """A cancelled intent never runs."""
        scheduler, warmed = _scheduler()
        scheduler.on_navigation_intent("guide")
        scheduler.cancel()
        scheduler.flush()
        assert warmed == []

    def test_disabled(self):
        """A disabled scheduler ignores intents."""
        scheduler, warmed = _scheduler(enabled=False)
        scheduler.on_navigation_intent("guide")
        assert scheduler.pending is None
        scheduler.flush()
        assert warmed == []

    def test_timer_fires_after_delay(self):
        """Without flush the timer runs the prefetch on its own."""
        done = threading.Event()
        scheduler, _ = _scheduler(delay=0.01, on_scheduled=lambda entity_id, ids: done.set())
        scheduler.on_navigation_intent("guide")
        assert done.wait(5)
        assert scheduler.last_target == "guide"

    def test_warm_failures_are_swallowed(self):
        """One failing warm-up does not stop the rest."""
        warmed = []

        def warm(entity_id):
            if entity_id.endswith("-a"):
                raise RuntimeError("cache down")
            warmed.append(entity_id)

        scheduler, _ = _scheduler(warm=warm)
        scheduler.on_navigation_intent("x")
        scheduler.flush()
        assert warmed == ["x-b"]
        assert scheduler.preloaded == 1

    def test_related_failure_is_swallowed(self):
        """A broken neighbour lookup is contained."""
        def related(entity_id, depth):
            raise KeyError(entity_id)

        scheduler, warmed = _scheduler(related=related)
        scheduler.on_navigation_intent("x")
        scheduler.flush()
        assert warmed == []
        assert scheduler.last_target is None

    def test_on_scheduled_receives_ids(self):
        """The notification carries target and related ids."""
        calls = []
        scheduler, _ = _scheduler(on_scheduled=lambda entity_id, ids: calls.append((entity_id, list(ids))))
        scheduler.on_navigation_intent("g")
        scheduler.flush()
        assert calls == [("g", ["g-a", "g-b"])]
