"""
Resilient Fetcher
GET with per-attempt timeout, exponential backoff retry, raw-response
caching and a bounded worker pool for batches.

The HTTP transport is pluggable: ``RequestsTransport`` wraps a configured
``requests.Session``; tests pass an in-memory fake with the same two
methods.
"""

from __future__ import annotations

import logging
import platform
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

import requests

from .cache import TTLCache
from .circuit_breaker import CircuitBreaker
from .errors import CircuitOpen, FetchError
from .utils import RetryHandler

logger = logging.getLogger(__name__)


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)


def _detect_platform() -> str:
    """Return the sec-ch-ua-platform value for the current OS."""
    system = platform.system()
    if system == "Darwin":
        return "macOS"
    elif system == "Windows":
        return "Windows"
    else:
        return "Linux"


@dataclass
class TransportResponse:
    status_code: int
    text: str = ""
    content_type: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class Transport(Protocol):
    """HTTP GET/HEAD with timeout.

    Implementations raise ``requests.Timeout`` on timeout and
    ``requests.RequestException`` for other transport failures.
    """

    def get(self, url: str, timeout: float) -> TransportResponse: ...

    def head(self, url: str, timeout: float) -> TransportResponse: ...


class RequestsTransport:
    """Default transport backed by a ``requests.Session``."""

    def __init__(self, user_agent: str = DEFAULT_USER_AGENT, session: requests.Session = None):
        self.session = session or self._create_session(user_agent)

    @staticmethod
    def _create_session(user_agent: str) -> requests.Session:
        """Create configured requests session with realistic browser headers."""
        session = requests.Session()
        session.headers.update({
            'User-Agent': user_agent,
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,application/json;q=0.8,*/*;q=0.7',
            'Accept-Language': 'en-US,en;q=0.9',
            'Accept-Encoding': 'gzip, deflate',
            'Connection': 'keep-alive',
            'sec-ch-ua-platform': f'"{_detect_platform()}"',
        })
        return session

    def get(self, url: str, timeout: float) -> TransportResponse:
        response = self.session.get(url, timeout=timeout, allow_redirects=True)
        return TransportResponse(
            status_code=response.status_code,
            text=response.text,
            content_type=response.headers.get('Content-Type', ''),
        )

    def head(self, url: str, timeout: float) -> TransportResponse:
        response = self.session.head(url, timeout=timeout, allow_redirects=True)
        return TransportResponse(
            status_code=response.status_code,
            content_type=response.headers.get('Content-Type', ''),
        )

    def close(self) -> None:
        self.session.close()


@dataclass
class FetchResult:
    url: str
    content: Optional[str] = None
    status_code: int = 0
    content_type: str = ""
    attempts: int = 0
    from_cache: bool = False
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.content is not None


@dataclass
class BatchResult:
    """Outcome of ``fetch_many``: successes and failures side by side."""
    successes: Dict[str, Any] = field(default_factory=dict)
    failures: Dict[str, Exception] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def total(self) -> int:
        return len(self.successes) + len(self.failures)

    def failure_records(self) -> List[dict]:
        records = []
        for url, exc in self.failures.items():
            if isinstance(exc, FetchError):
                records.append(exc.to_dict())
            else:
                records.append({'url': url, 'error': str(exc)})
        return records


class ResilientFetcher:
    """
    Fetches pages with retry/backoff and runs batches on a bounded pool.
    """

    def __init__(
        self,
        transport: Transport = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_base: float = 2.0,
        max_workers: int = 8,
        cache: Optional[TTLCache] = None,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Any] = None,
    ):
        """
        Args:
            transport:    HTTP transport (defaults to ``RequestsTransport``)
            timeout:      Per-attempt timeout in seconds
            max_retries:  Total attempts per URL
            backoff_base: Base of the exponential backoff
            max_workers:  Worker pool size for ``fetch_many``
            cache:        Raw-response cache keyed by URL
            breaker:      When OPEN, no new request is issued
            sleep:        Backoff wait; defaults to a wait on the stop event
                          so ``stop()`` interrupts it
        """
        self.transport = transport or RequestsTransport()
        self.timeout = timeout
        self.retry_handler = RetryHandler(
            max_retries=max_retries,
            base_delay=1.0,
            exponential_base=backoff_base,
        )
        self.max_workers = max(1, max_workers)
        self.cache = cache
        self.breaker = breaker
        self._stop_event = threading.Event()
        self._sleep = sleep or self._stop_event.wait

    @property
    def max_retries(self) -> int:
        return self.retry_handler.max_retries

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Abort backoff waits and keep queued fetches from starting."""
        self._stop_event.set()
        logger.info("[FETCH] Stop requested")

    def reset(self) -> None:
        self._stop_event.clear()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    # ------------------------------------------------------------------
    # Single URL
    # ------------------------------------------------------------------

    def fetch(
        self,
        url: str,
        timeout: float = None,
        retries: int = None,
        use_cache: bool = True,
    ) -> FetchResult:
        """
        Fetch a URL, retrying non-2xx responses and timeouts.

        Args:
            url:       URL to fetch
            timeout:   Per-attempt timeout override
            retries:   Total attempts override (``1`` disables retry)
            use_cache: Consult and fill the raw-response cache

        Returns:
            FetchResult; ``error`` is set when every attempt failed
        """
        if use_cache and self.cache is not None:
            cached = self.cache.get(url)
            if cached is not None:
                return FetchResult(url=url, content=cached, status_code=200, from_cache=True)

        timeout = timeout if timeout is not None else self.timeout
        max_attempts = retries if retries is not None else self.retry_handler.max_retries
        max_attempts = max(1, max_attempts)

        last_status: Optional[int] = None
        timed_out = False
        reason = ""
        attempt = 0

        while attempt < max_attempts:
            if self._stop_event.is_set():
                reason = "cancelled"
                break
            if self.breaker is not None and not self.breaker.allow_request():
                reason = str(CircuitOpen("circuit open"))
                break

            attempt += 1
            try:
                response = self.transport.get(url, timeout)
            except requests.Timeout:
                timed_out = True
                last_status = None
                reason = "timeout"
                logger.debug(f"[FETCH] Attempt {attempt}/{max_attempts} timed out: {url}")
            except requests.RequestException as e:
                timed_out = False
                last_status = None
                reason = str(e)
                logger.debug(f"[FETCH] Attempt {attempt}/{max_attempts} failed: {url} ({e})")
            else:
                if response.ok:
                    if use_cache and self.cache is not None:
                        self.cache.set(url, response.text)
                    return FetchResult(
                        url=url,
                        content=response.text,
                        status_code=response.status_code,
                        content_type=response.content_type,
                        attempts=attempt,
                    )
                timed_out = False
                last_status = response.status_code
                reason = f"HTTP {response.status_code}"
                logger.debug(f"[FETCH] Attempt {attempt}/{max_attempts} got {reason}: {url}")

            if attempt < max_attempts:
                delay = self.retry_handler.calculate_delay(attempt)
                logger.warning(
                    f"[FETCH] Attempt {attempt} failed for {url}: {reason}. "
                    f"Retrying in {delay:.2f}s..."
                )
                self._sleep(delay)

        error = FetchError(
            url,
            last_status=last_status,
            timed_out=timed_out,
            attempts=attempt,
            reason=reason,
        )
        if attempt >= max_attempts:
            logger.error(f"[FETCH] All {attempt} attempts failed: {error}")
        return FetchResult(url=url, status_code=last_status or 0, attempts=attempt, error=error)

    def exists(self, url: str, timeout: float = 2.0) -> bool:
        """
        Lightweight existence check: HEAD, then a short GET if HEAD fails.
        Never raises.
        """
        if self._stop_event.is_set():
            return False
        try:
            if self.transport.head(url, timeout).ok:
                return True
        except requests.RequestException:
            pass
        try:
            return self.transport.get(url, timeout * 1.5).ok
        except requests.RequestException:
            return False

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def fetch_many(
        self,
        urls: Iterable[str],
        process: Callable[[FetchResult], Any] = None,
        on_result: Callable[[str, Any, Optional[Exception]], None] = None,
    ) -> BatchResult:
        """
        Fetch URLs concurrently on a bounded pool.

        Args:
            urls:      URLs to fetch (duplicates are dropped)
            process:   Optional per-page step run inside the worker right
                       after a successful fetch; its return value is stored
                       as the success and any exception it raises is
                       recorded as that URL's failure
            on_result: Optional ``callback(url, value, error)`` invoked on
                       the coordinating thread as each task completes

        Returns:
            BatchResult with every URL in exactly one of successes/failures,
            unless cancelled
        """
        unique: List[str] = list(dict.fromkeys(urls))
        result = BatchResult()
        if not unique:
            return result

        def work(url: str) -> Any:
            fetched = self.fetch(url)
            if fetched.error is not None:
                raise fetched.error
            return process(fetched) if process else fetched

        workers = min(self.max_workers, len(unique))
        logger.info(f"[FETCH] Fetching {len(unique)} URL(s) with {workers} worker(s)")

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(work, url): url for url in unique}
            for future in as_completed(futures):
                url = futures[future]
                if future.cancelled():
                    continue
                try:
                    value = future.result()
                except Exception as e:
                    result.failures[url] = e
                    logger.warning(f"[FETCH] {url} failed: {e}")
                    if on_result:
                        on_result(url, None, e)
                else:
                    result.successes[url] = value
                    if on_result:
                        on_result(url, value, None)

                if self._stop_event.is_set() and not result.cancelled:
                    result.cancelled = True
                    for pending in futures:
                        pending.cancel()

        if self._stop_event.is_set():
            result.cancelled = True

        logger.info(
            f"[FETCH] Batch done: {len(result.successes)} ok, "
            f"{len(result.failures)} failed{' (cancelled)' if result.cancelled else ''}"
        )
        return result

    def close(self) -> None:
        close = getattr(self.transport, 'close', None)
        if callable(close):
            close()
