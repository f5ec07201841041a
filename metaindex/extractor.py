"""
Metadata Extractor & Validator
Reads the namespaced ``<meta name="<ns>:<key>">`` attributes a page
declares about itself, then checks them before enrichment.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from .errors import ValidationError
from .models import EntityType, IMPORTANCE_RANK
from .utils import clean_text

logger = logging.getLogger(__name__)

# Prefer lxml for speed, fall back to the stdlib html.parser.
try:
    import lxml  # noqa: F401
    _BS_PARSER = "lxml"
except ImportError:
    _BS_PARSER = "html.parser"
    logger.info("lxml not installed, using html.parser")


REQUIRED_FIELDS = ('id', 'type', 'title')

# Meta key -> attribute name. ``level`` is the legacy spelling of ``id``.
KEY_ALIASES = {
    'level': 'id',
    'size': 'size_modifier',
    'size-modifier': 'size_modifier',
    'content-priority': 'content_priority',
    'analytics-category': 'analytics_category',
}

ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')

_NUM = r'\s*\d{1,3}(?:\.\d+)?\s*'
COLOR_PATTERNS = (
    re.compile(r'^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$'),
    re.compile(rf'^rgb\({_NUM},{_NUM},{_NUM}\)$'),
    re.compile(rf'^rgba\({_NUM},{_NUM},{_NUM},\s*(?:0|1|0?\.\d+|1\.0+)\s*\)$'),
    re.compile(rf'^hsl\({_NUM},{_NUM}%\s*,{_NUM}%\s*\)$'),
)

NUMERIC_FIELDS = ('radius', 'angle', 'size_modifier')

MAX_REASONABLE_RADIUS = 1000


def is_valid_color(value: str) -> bool:
    value = value.strip()
    return any(p.match(value) for p in COLOR_PATTERNS)


def _parse_number(value) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


@dataclass
class PageStructure:
    """Lightweight structural summary of a page, for logs and stats."""
    headings: Dict[str, int] = field(default_factory=dict)
    internal_links: int = 0
    external_links: int = 0

    def to_dict(self) -> dict:
        return {
            'headings': dict(self.headings),
            'internal_links': self.internal_links,
            'external_links': self.external_links,
        }


@dataclass
class ExtractedPage:
    attributes: Dict[str, str]
    structure: PageStructure


class MetaExtractor:
    """
    Extracts and validates page metadata.
    """

    def __init__(
        self,
        namespace: str = "page",
        supported_types: Iterable[str] = None,
    ):
        """
        Args:
            namespace:       Prefix of the meta names to read (``page`` reads ``page:*``)
            supported_types: Accepted entity types; defaults to ``EntityType``
        """
        self.namespace = namespace
        self.prefix = f"{namespace}:"
        self.supported_types = set(supported_types or (t.value for t in EntityType))

    def register_type(self, type_name: str) -> None:
        self.supported_types.add(type_name)

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def _soup(self, html: str) -> BeautifulSoup:
        try:
            return BeautifulSoup(html, _BS_PARSER)
        except Exception as e:
            logger.debug(f"{_BS_PARSER} failed ({e}), retrying with html.parser")
            return BeautifulSoup(html, 'html.parser')

    def extract(self, html: str) -> Dict[str, str]:
        """Raw attribute map from the page's namespaced meta tags."""
        return self._extract_attributes(self._soup(html or ""))

    def extract_page(self, html: str, page_url: str = None) -> ExtractedPage:
        """Attributes plus a structural summary of the page."""
        soup = self._soup(html or "")
        return ExtractedPage(
            attributes=self._extract_attributes(soup),
            structure=self._extract_structure(soup, page_url),
        )

    def _extract_attributes(self, soup: BeautifulSoup) -> Dict[str, str]:
        raw: Dict[str, str] = {}
        id_from_level = False
        for tag in soup.find_all('meta'):
            name = (tag.get('name') or '').strip()
            if not name.lower().startswith(self.prefix):
                continue
            content = tag.get('content')
            if content is None:
                continue
            meta_key = name[len(self.prefix):].strip().lower()
            key = KEY_ALIASES.get(meta_key, meta_key.replace('-', '_'))
            # First declaration wins, except an explicit id beats ``level``
            if key in raw and not (meta_key == 'id' and id_from_level):
                continue
            raw[key] = content.strip()
            if key == 'id':
                id_from_level = meta_key != 'id'

        if not raw.get('title'):
            title = self._extract_title(soup)
            if title:
                raw['title'] = title

        if not raw.get('description'):
            desc_tag = soup.find('meta', attrs={'name': 'description'})
            if desc_tag and desc_tag.get('content'):
                raw['description'] = clean_text(desc_tag['content'])

        return raw

    def _extract_title(self, soup: BeautifulSoup) -> str:
        if soup.title and soup.title.string:
            return clean_text(soup.title.string)
        h1 = soup.find('h1')
        if h1:
            return clean_text(h1.get_text())
        return ""

    def _extract_structure(self, soup: BeautifulSoup, page_url: str = None) -> PageStructure:
        structure = PageStructure()
        for level in range(1, 7):
            count = len(soup.find_all(f'h{level}'))
            if count:
                structure.headings[f'h{level}'] = count

        host = urlparse(page_url).netloc.lower() if page_url else ''
        for a in soup.find_all('a', href=True):
            href = a['href'].strip()
            parsed = urlparse(href)
            if parsed.scheme in ('http', 'https') and parsed.netloc and parsed.netloc.lower() != host:
                structure.external_links += 1
            elif not href.startswith(('#', 'mailto:', 'javascript:', 'tel:')):
                structure.internal_links += 1
        return structure

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, raw: Dict[str, str]) -> List[str]:
        """
        Check a raw attribute map.

        Returns:
            Non-fatal warnings (suspicious but accepted values)

        Raises:
            ValidationError: listing every fatal problem found
        """
        errors: List[str] = []
        warnings: List[str] = []

        for name in REQUIRED_FIELDS:
            if not str(raw.get(name) or '').strip():
                errors.append(f"missing required field '{name}'")

        entity_id = raw.get('id')
        if entity_id and not ID_PATTERN.match(entity_id):
            errors.append(f"invalid id '{entity_id}' (allowed: letters, digits, '_' and '-')")

        entity_type = raw.get('type')
        if entity_type and entity_type not in self.supported_types:
            errors.append(f"unsupported type '{entity_type}'")

        parent = raw.get('parent')
        if parent and not ID_PATTERN.match(parent):
            errors.append(f"invalid parent reference '{parent}'")

        for name in NUMERIC_FIELDS:
            if raw.get(name) in (None, ''):
                continue
            number = _parse_number(raw[name])
            if number is None:
                errors.append(f"{name} must be numeric, got '{raw[name]}'")
            elif name == 'radius':
                if number < 0:
                    errors.append(f"radius must be >= 0, got {number:g}")
                elif number > MAX_REASONABLE_RADIUS:
                    warnings.append(f"radius {number:g} is unusually large")
            elif name == 'angle' and not 0 <= number < 360:
                warnings.append(f"angle {number:g} outside [0, 360), will be normalized")
            elif name == 'size_modifier' and number <= 0:
                errors.append(f"size_modifier must be > 0, got {number:g}")

        color = raw.get('color')
        if color and not is_valid_color(color):
            errors.append(f"invalid color '{color}'")

        importance = raw.get('importance')
        if importance and importance not in IMPORTANCE_RANK:
            warnings.append(f"unknown importance '{importance}', default applies")

        if errors:
            raise ValidationError(errors, page_id=entity_id)

        for warning in warnings:
            logger.warning(f"[EXTRACT] {entity_id}: {warning}")
        return warnings
