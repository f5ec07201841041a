"""
Tests for the resilient fetcher: retry/backoff, caching, breaker gating
and batch isolation.
"""

import requests

from metaindex.cache import TTLCache
from metaindex.circuit_breaker import CircuitBreaker
from metaindex.errors import FetchError
from metaindex.fetcher import ResilientFetcher
from metaindex.utils import RetryHandler

from fakes import FakeTransport

URL = "https://example.com/pages/a.html"


def _fetcher(transport, delays=None, **kwargs):
    sleep = delays.append if delays is not None else (lambda _delay: None)
    return ResilientFetcher(transport=transport, sleep=sleep, **kwargs)


class TestRetryHandler:
    """Backoff arithmetic."""

    def test_exponential_delays(self):
        """Delay after attempt n is base ** n."""
        handler = RetryHandler(max_retries=3, exponential_base=2.0)
        assert handler.calculate_delay(1) == 2.0
        assert handler.calculate_delay(2) == 4.0

    def test_delay_is_capped(self):
        """No single delay exceeds max_delay."""
        handler = RetryHandler(max_delay=5.0)
        assert handler.calculate_delay(10) == 5.0

    def test_attempts_left(self):
        """max_retries is the total attempt budget."""
        handler = RetryHandler(max_retries=3)
        assert handler.has_attempts_left(2)
        assert not handler.has_attempts_left(3)


class TestFetch:
    """Single-URL behaviour."""

    def test_success_first_try(self):
        """A 200 returns content after one attempt."""
        transport = FakeTransport({URL: "<html>ok</html>"})
        result = _fetcher(transport).fetch(URL)
        assert result.ok
        assert result.content == "<html>ok</html>"
        assert result.attempts == 1

    def test_always_timeout_makes_exactly_max_attempts(self):
        """Three timeouts give three attempts, two waits and a FetchError."""
        transport = FakeTransport({URL: requests.Timeout("slow")})
        delays = []
        result = _fetcher(transport, delays=delays, max_retries=3).fetch(URL)
        assert transport.count(URL) == 3
        assert delays == [2.0, 4.0]
        assert not result.ok
        assert isinstance(result.error, FetchError)
        assert result.error.timed_out
        assert result.error.attempts == 3

    def test_non_2xx_is_retried_and_reported(self):
        """The last HTTP status is kept on the error."""
        transport = FakeTransport({URL: (503, "busy")})
        result = _fetcher(transport, max_retries=2).fetch(URL)
        assert transport.count(URL) == 2
        assert result.error.last_status == 503
        assert not result.error.timed_out
        assert "HTTP 503" in str(result.error)

    def test_recovers_after_transient_failure(self):
        """A success on a later attempt wins."""
        transport = FakeTransport({URL: [(500, "oops"), requests.ConnectionError("reset"), "<p>fine</p>"]})
        result = _fetcher(transport, max_retries=3).fetch(URL)
        assert result.ok
        assert result.attempts == 3

    def test_single_attempt_override(self):
        """retries=1 disables retry and waiting."""
        transport = FakeTransport({URL: (500, "oops")})
        delays = []
        result = _fetcher(transport, delays=delays).fetch(URL, retries=1)
        assert transport.count(URL) == 1
        assert delays == []
        assert result.error.attempts == 1

    def test_cache_hit_skips_network(self, clock):
        """Cached raw content is served without a request."""
        transport = FakeTransport({URL: "body"})
        fetcher = _fetcher(transport, cache=TTLCache(10, 60, clock=clock))
        fetcher.fetch(URL)
        second = fetcher.fetch(URL)
        assert second.from_cache
        assert transport.count(URL) == 1

    def test_use_cache_false_always_fetches(self, clock):
        """Probes bypass the cache."""
        transport = FakeTransport({URL: "body"})
        fetcher = _fetcher(transport, cache=TTLCache(10, 60, clock=clock))
        fetcher.fetch(URL, use_cache=False)
        fetcher.fetch(URL, use_cache=False)
        assert transport.count(URL) == 2

    def test_open_breaker_blocks_requests(self, clock):
        """No request is issued while the circuit is open."""
        transport = FakeTransport({URL: "body"})
        breaker = CircuitBreaker(failure_threshold=1, clock=clock, use_timer=False)
        breaker.record_failure()
        result = _fetcher(transport, breaker=breaker).fetch(URL)
        assert transport.calls == []
        assert not result.ok
        assert "circuit" in result.error.reason.lower()

    def test_stop_prevents_further_attempts(self):
        """A stopped fetcher issues no new attempts."""
        transport = FakeTransport({URL: "body"})
        fetcher = _fetcher(transport)
        fetcher.stop()
        result = fetcher.fetch(URL)
        assert transport.calls == []
        assert result.error.reason == "cancelled"
        fetcher.reset()
        assert fetcher.fetch(URL).ok


class TestExists:
    """Existence checks."""

    def test_head_ok(self):
        """HEAD success is enough."""
        transport = FakeTransport({URL: "body"})
        assert _fetcher(transport).exists(URL)
        assert transport.calls == []

    def test_missing(self):
        """404 on both HEAD and GET means absent."""
        transport = FakeTransport()
        assert not _fetcher(transport).exists(URL)

    def test_transport_error_is_false(self):
        """Network errors never escape."""
        transport = FakeTransport({URL: requests.ConnectionError("down")})
        assert not _fetcher(transport).exists(URL)


class TestFetchMany:
    """Batches isolate per-URL failures."""

    def test_partial_failure(self):
        """One always-timing-out URL fails, the others succeed."""
        bad = "https://example.com/pages/bad.html"
        urls = [f"https://example.com/pages/p{i}.html" for i in range(4)]
        routes = {u: f"<p>{u}</p>" for u in urls}
        routes[bad] = requests.Timeout("slow")
        transport = FakeTransport(routes)

        batch = _fetcher(transport, max_retries=3, max_workers=3).fetch_many(urls + [bad])

        assert set(batch.successes) == set(urls)
        assert set(batch.failures) == {bad}
        assert isinstance(batch.failures[bad], FetchError)
        assert transport.count(bad) == 3
        assert batch.total == 5
        assert not batch.cancelled

    def test_duplicates_fetched_once(self):
        """Repeated URLs collapse to one task."""
        transport = FakeTransport({URL: "body"})
        batch = _fetcher(transport).fetch_many([URL, URL, URL])
        assert transport.count(URL) == 1
        assert list(batch.successes) == [URL]

    def test_process_result_and_exception(self):
        """process() output is stored; its exceptions become failures."""
        other = "https://example.com/pages/b.html"
        transport = FakeTransport({URL: "alpha", other: "beta"})

        def process(fetched):
            if fetched.content == "beta":
                raise ValueError("unparseable")
            return fetched.content.upper()

        batch = _fetcher(transport).fetch_many([URL, other], process=process)
        assert batch.successes == {URL: "ALPHA"}
        assert isinstance(batch.failures[other], ValueError)
        records = batch.failure_records()
        assert records == [{'url': other, 'error': 'unparseable'}]

    def test_on_result_callback(self):
        """The callback fires once per URL."""
        transport = FakeTransport({URL: "body"})
        seen = []
        _fetcher(transport).fetch_many([URL, "https://example.com/none.html"],
                                       on_result=lambda url, value, err: seen.append((url, err is None)))
        assert sorted(seen) == [("https://example.com/none.html", False), (URL, True)]

    def test_empty_batch(self):
        """No URLs, no work."""
        batch = _fetcher(FakeTransport()).fetch_many([])
        assert batch.total == 0
