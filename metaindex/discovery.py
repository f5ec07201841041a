"""
Page Discovery
==============
Produces the candidate page URLs for a site through an ordered fallback
chain. The first strategy that yields anything wins:

    1. manifest    - a known manifest resource listing page paths
    2. api         - well-known endpoints returning JSON, XML sitemaps or text
    3. scan        - common page names under common directories, by existence check
    4. links       - same-origin anchors on the root page
    5. bootstrap   - a minimal synthesized page set (always non-empty)

``discover()`` never raises.
"""

from __future__ import annotations

import json
import logging
import re
import xml.etree.ElementTree as ET
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from .errors import DiscoveryExhausted
from .fetcher import ResilientFetcher
from .utils import URLNormalizer

logger = logging.getLogger(__name__)


DEFAULT_MANIFEST_PATH = "/sitemap.json"

DEFAULT_API_ENDPOINTS = (
    "/api/pages",
    "/api/sitemap",
    "/data/pages.json",
    "/manifest.json",
    "/sitemap.xml",
    "/meta/pages",
    "/pages.json",
)

DEFAULT_SCAN_DIRECTORIES = ("pages", "content", "docs", "articles", "posts")

DEFAULT_SCAN_PAGE_NAMES = (
    "index", "home", "main", "start", "welcome",
    "about", "contact", "help", "docs", "navigation",
)

SCAN_PATTERNS = (
    "/{directory}/{name}.html",
    "/{directory}/{name}/index.html",
    "/{directory}/{name}.php",
    "/{directory}/{name}.htm",
)

DEFAULT_ROOT_FILES = (
    "index.html", "index.php", "index.htm",
    "home.html", "main.html", "default.html", "start.html",
)

DEFAULT_BOOTSTRAP_PATHS = ("/pages/index.html", "/pages/welcome.html")

_QUOTED_PAGE_RE = re.compile(r'["\']((?:https?://[^"\']+|/[^"\']*)\.html?)["\']')


def extract_urls_from_payload(payload: Any) -> List[str]:
    """
    Pull page references out of a decoded API/manifest payload.

    Accepted shapes, tried in order:
      - a list of strings
      - ``{"urls": [...]}`` (strings or ``{"loc": ...}``)
      - ``{"urlset": {"url": [{"loc": ...}]}}``
      - ``{"pages": [...]}`` (strings or ``{"url"|"path": ...}``)
      - a mapping whose keys are absolute paths
      - free text containing quoted ``.html`` paths
    """
    if not payload:
        return []

    if isinstance(payload, str):
        return [m.group(1) for m in _QUOTED_PAGE_RE.finditer(payload)]

    if isinstance(payload, list):
        found = []
        for item in payload:
            if isinstance(item, str):
                found.append(item)
            elif isinstance(item, dict):
                ref = item.get('url') or item.get('path') or item.get('loc')
                if isinstance(ref, str):
                    found.append(ref)
        return found

    if not isinstance(payload, dict):
        return []

    urls = payload.get('urls')
    if isinstance(urls, list):
        found = [u if isinstance(u, str) else (u or {}).get('loc') for u in urls]
        found = [u for u in found if isinstance(u, str)]
        if found:
            return found

    urlset = payload.get('urlset')
    if isinstance(urlset, dict) and isinstance(urlset.get('url'), list):
        found = [u.get('loc') for u in urlset['url'] if isinstance(u, dict)]
        found = [u for u in found if isinstance(u, str)]
        if found:
            return found

    pages = payload.get('pages')
    if isinstance(pages, list):
        found = extract_urls_from_payload(pages)
        if found:
            return found

    return [key for key in payload if isinstance(key, str) and key.startswith('/')]


def parse_sitemap_xml(text: str) -> List[str]:
    """``<loc>`` values from an XML sitemap (namespace-agnostic)."""
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        logger.debug(f"[DISCOVERY] Sitemap XML parse error: {e}")
        return []
    locs = []
    for elem in root.iter():
        if elem.tag.split('}')[-1] == 'loc' and elem.text:
            locs.append(elem.text.strip())
    return locs


def decode_payload(text: str, content_type: str = "", source: str = "") -> Any:
    """Decode a response body as JSON, XML sitemap, or leave it as text."""
    ct = (content_type or "").lower()
    stripped = (text or "").lstrip()
    if 'json' in ct or stripped.startswith(('{', '[')):
        try:
            return json.loads(text)
        except ValueError:
            pass
    if 'xml' in ct or source.endswith('.xml') or stripped.startswith('<?xml') or stripped.startswith('<urlset'):
        return {'urls': parse_sitemap_xml(text)}
    return text


class PageDiscovery:
    """
    Ordered-fallback page discovery for one site.
    """

    def __init__(
        self,
        base_url: str,
        fetcher: ResilientFetcher,
        manifest_path: str = DEFAULT_MANIFEST_PATH,
        api_endpoints: Sequence[str] = DEFAULT_API_ENDPOINTS,
        scan_directories: Sequence[str] = DEFAULT_SCAN_DIRECTORIES,
        scan_page_names: Sequence[str] = DEFAULT_SCAN_PAGE_NAMES,
        root_files: Sequence[str] = DEFAULT_ROOT_FILES,
        bootstrap_paths: Sequence[str] = DEFAULT_BOOTSTRAP_PATHS,
        probe_timeout: float = 2.0,
        max_workers: int = 8,
    ):
        """
        Args:
            base_url:         Site root, e.g. ``https://example.com``
            fetcher:          Shared fetcher (its transport and stop flag are reused)
            manifest_path:    Path of the manifest resource
            api_endpoints:    Endpoints probed in order by the API strategy
            scan_directories: Directories tried by the scan strategy
            scan_page_names:  Page names tried in each directory
            root_files:       Files tried at the site root by the scan strategy
            bootstrap_paths:  Pages synthesized when everything else fails
            probe_timeout:    Timeout for probes and existence checks
            max_workers:      Concurrency of existence checks
        """
        self.base_url = base_url.rstrip('/') + '/'
        self.fetcher = fetcher
        self.manifest_path = manifest_path
        self.api_endpoints = list(api_endpoints)
        self.scan_directories = list(scan_directories)
        self.scan_page_names = list(scan_page_names)
        self.root_files = list(root_files)
        self.bootstrap_paths = list(bootstrap_paths)
        self.probe_timeout = probe_timeout
        self.max_workers = max(1, max_workers)
        self.normalizer = URLNormalizer()
        self.last_strategy: Optional[str] = None

    @property
    def strategies(self) -> List[Tuple[str, Callable[[], List[str]]]]:
        return [
            ("manifest", self.discover_from_manifest),
            ("api", self.discover_from_api),
            ("scan", self.discover_by_scan),
            ("links", self.discover_from_links),
            ("bootstrap", self.bootstrap),
        ]

    def discover(self) -> List[str]:
        """
        Run the strategy chain and return the first non-empty result.
        Never raises.
        """
        for name, strategy in self.strategies:
            if self.fetcher.stopped and name != "bootstrap":
                continue
            try:
                urls = strategy()
            except Exception as e:
                logger.warning(f"[DISCOVERY] Strategy '{name}' failed: {e}")
                continue
            if urls:
                self.last_strategy = name
                logger.info(f"[DISCOVERY] {len(urls)} page(s) via '{name}'")
                return urls
            logger.debug(f"[DISCOVERY] Strategy '{name}' found nothing")

        # bootstrap only comes back empty when it has been configured away
        self.last_strategy = None
        logger.error(f"[DISCOVERY] {DiscoveryExhausted('no strategy produced pages')}")
        return []

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def discover_from_manifest(self) -> List[str]:
        if not self.manifest_path:
            return []
        return self._probe_endpoint(self.manifest_path)

    def discover_from_api(self) -> List[str]:
        for endpoint in dict.fromkeys(self.api_endpoints):
            if endpoint == self.manifest_path:
                continue
            urls = self._probe_endpoint(endpoint)
            if urls:
                logger.info(f"[DISCOVERY] Endpoint {endpoint} listed {len(urls)} page(s)")
                return urls
        return []

    def discover_by_scan(self) -> List[str]:
        """Existence checks over directory x name x pattern, plus root files."""
        groups: List[List[str]] = []
        for directory in self.scan_directories:
            for name in self.scan_page_names:
                groups.append([
                    self.absolute_url(p.format(directory=directory, name=name))
                    for p in SCAN_PATTERNS
                ])
        for file_name in self.root_files:
            groups.append([self.absolute_url('/' + file_name)])

        def first_existing(candidates: List[str]) -> Optional[str]:
            for url in candidates:
                if self.fetcher.exists(url, timeout=self.probe_timeout):
                    return url
            return None

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            found = list(executor.map(first_existing, groups))

        return self._unique(url for url in found if url)

    def discover_from_links(self) -> List[str]:
        result = self.fetcher.fetch(self.base_url, timeout=self.probe_timeout, retries=1, use_cache=False)
        if not result.ok:
            return []

        soup = BeautifulSoup(result.content, 'html.parser')
        candidates = []
        for a in soup.find_all('a', href=True):
            href = a['href'].strip()
            if not href or href.startswith(('#', 'mailto:', 'tel:', 'javascript:')):
                continue
            absolute = urljoin(self.base_url, href)
            if not self.normalizer.is_same_domain(absolute, self.base_url):
                continue
            candidates.append(absolute)
        return self._to_pages(candidates)

    def bootstrap(self) -> List[str]:
        """Known bootstrap pages that exist, or all of them if none do."""
        urls = [self.absolute_url(p) for p in self.bootstrap_paths]
        existing = [u for u in urls if self.fetcher.exists(u, timeout=self.probe_timeout)]
        if not existing:
            logger.info(f"[DISCOVERY] Bootstrapping with {len(urls)} synthesized page(s)")
        return existing or urls

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def absolute_url(self, path: str) -> str:
        return urljoin(self.base_url, path.lstrip('/'))

    def _probe_endpoint(self, endpoint: str) -> List[str]:
        url = self.absolute_url(endpoint)
        result = self.fetcher.fetch(url, timeout=self.probe_timeout, retries=1, use_cache=False)
        if not result.ok:
            return []
        payload = decode_payload(result.content, result.content_type, source=endpoint)
        return self._to_pages(extract_urls_from_payload(payload))

    def _to_pages(self, refs: Iterable[str]) -> List[str]:
        pages = []
        for ref in refs:
            page = self.normalizer.to_page_url(ref, self.base_url)
            if page and self.normalizer.is_same_domain(page, self.base_url):
                pages.append(page)
        return self._unique(pages)

    @staticmethod
    def _unique(urls: Iterable[str]) -> List[str]:
        return list(dict.fromkeys(urls))
