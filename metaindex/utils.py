"""
Utility Functions
URL normalization, retry backoff policy, stable hashing and text helpers.
"""

import hashlib
import json
import logging
import random
import re
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urljoin, urlparse, urlunparse

logger = logging.getLogger(__name__)


class URLNormalizer:
    """
    Normalizes page URLs so the same page is never indexed twice.
    Removes fragments, collapses slashes and maps directory paths onto
    concrete page files.
    """

    # Non-page resources never worth fetching as content
    SKIP_EXTENSIONS = {
        '.jpg', '.jpeg', '.png', '.gif', '.bmp', '.svg', '.webp', '.ico',
        '.pdf', '.zip', '.gz', '.mp3', '.mp4', '.css', '.js',
        '.woff', '.woff2', '.ttf', '.eot',
    }

    # Extensions that already name a page file
    PAGE_EXTENSIONS = {'.html', '.htm', '.php', '.xhtml', '.shtml'}

    def __init__(self, index_name: str = 'index.html', default_extension: str = '.html'):
        """
        Args:
            index_name: File appended to directory-style paths ("/" becomes "/index.html")
            default_extension: Extension appended to extensionless page paths
        """
        self.index_name = index_name
        self.default_extension = default_extension

    def normalize(self, url: str, base_url: str = None) -> Optional[str]:
        """
        Normalize a URL for consistent comparison.

        Args:
            url: The URL to normalize
            base_url: Optional base URL for resolving relative URLs

        Returns:
            Normalized URL string or None if it is not a fetchable page
        """
        if not url:
            return None

        url = url.strip()
        if url.lower().startswith(('javascript:', 'mailto:', 'tel:', 'data:', '#')):
            return None

        if base_url:
            url = urljoin(base_url, url)

        try:
            parsed = urlparse(url)
        except ValueError:
            return None

        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            return None

        path = re.sub(r'/+', '/', parsed.path or '/')
        lower_path = path.lower()
        for ext in self.SKIP_EXTENSIONS:
            if lower_path.endswith(ext):
                return None

        return urlunparse((
            parsed.scheme.lower(),
            parsed.netloc.lower(),
            path,
            '',
            parsed.query,
            '',
        ))

    def to_page_url(self, url: str, base_url: str = None) -> Optional[str]:
        """
        Normalize and map onto a concrete page file.

        ``/`` becomes ``/index.html``, ``/docs/`` becomes ``/docs/index.html``
        and ``/about`` becomes ``/about.html``.
        """
        normalized = self.normalize(url, base_url)
        if not normalized:
            return None

        parsed = urlparse(normalized)
        path = parsed.path
        if path.endswith('/'):
            path = path + self.index_name
        else:
            last_segment = path.rsplit('/', 1)[-1]
            if '.' not in last_segment:
                path = path + self.default_extension
            elif not any(last_segment.lower().endswith(ext) for ext in self.PAGE_EXTENSIONS):
                return None

        return urlunparse((parsed.scheme, parsed.netloc, path, '', parsed.query, ''))

    def is_same_domain(self, url: str, base_url: str) -> bool:
        """
        Check if URL belongs to the same origin host as base URL.
        The ``www.`` prefix is ignored on both sides.
        """
        try:
            url_domain = urlparse(url).netloc.lower()
            base_domain = urlparse(base_url).netloc.lower()
        except ValueError:
            return False

        if url_domain.startswith('www.'):
            url_domain = url_domain[4:]
        if base_domain.startswith('www.'):
            base_domain = base_domain[4:]

        return url_domain == base_domain


class RetryHandler:
    """
    Exponential backoff policy for the fetcher.

    ``max_retries`` is the total number of attempts. The delay after failed
    attempt ``n`` (1-indexed) is ``base_delay * exponential_base ** n``;
    no delay follows the last attempt.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = False
    ):
        """
        Args:
            max_retries: Total attempts per URL
            base_delay: Multiplier applied to the exponential term
            max_delay: Upper bound for any single delay
            exponential_base: Base for exponential backoff
            jitter: Add ±25% random jitter to each delay
        """
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay after a failed attempt.

        Args:
            attempt: Number of the attempt that just failed (1-indexed)

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter:
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def has_attempts_left(self, attempt: int) -> bool:
        return attempt < self.max_retries


def stable_hash(text: str) -> int:
    """
    Signed 32-bit string hash (``h = h * 31 + ord(c)`` with wraparound).

    Pure and process-independent, unlike the builtin ``hash``.
    """
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 0x100000000
    return h


def canonical_json(data) -> str:
    """Serialize with sorted keys and no whitespace, for hashing."""
    return json.dumps(data, sort_keys=True, separators=(',', ':'), ensure_ascii=False)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def now_iso() -> str:
    """Current UTC time as ISO-8601."""
    return datetime.now(timezone.utc).isoformat()


def clean_text(text: str) -> str:
    """Collapse whitespace runs and strip."""
    if not text:
        return ""
    return re.sub(r'\s+', ' ', text).strip()


def extract_domain(url: str) -> str:
    """Get the host part of a URL, lowercased."""
    try:
        return urlparse(url).netloc.lower()
    except ValueError:
        return ""
