"""
Defaulting / Enrichment
=======================
Turns a validated raw attribute map into a full ``Entity``.

Every optional field resolves through exactly one rule: the page's own
value, then the type profile, then a computed default. Nothing here is
random, so the same page always enriches to the same entity (apart from
``parsed_at``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .models import (
    Analytics, CacheMetadata, Entity, EntityType, Importance,
    IMPORTANCE_RANK, Positioning, Timestamps,
)
from .utils import now_iso, sha256_hex, stable_hash

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TypeProfile:
    """Per-type defaults."""
    radius: float
    icon: str
    color: str
    analytics_category: str
    importance: str = Importance.LOW.value


DEFAULT_TYPE_PROFILES: Dict[str, TypeProfile] = {
    EntityType.ROOT.value: TypeProfile(0, "star", "#FFD700", "core", Importance.HIGH.value),
    EntityType.CATEGORY.value: TypeProfile(150, "planet", "#4ECDC4", "primary", Importance.MEDIUM.value),
    EntityType.SECTION.value: TypeProfile(60, "moon", "#C7F464", "secondary", Importance.MEDIUM.value),
    EntityType.SUBSECTION.value: TypeProfile(40, "comet", "#FF6B6B", "supplementary"),
    EntityType.SUPPLEMENTARY.value: TypeProfile(20, "satellite", "#A8E6CF", "supplementary"),
    EntityType.SPECIAL.value: TypeProfile(200, "vortex", "#2C3E50", "special", Importance.HIGH.value),
    EntityType.GROUP.value: TypeProfile(250, "cluster", "#D4A5FF", "special", Importance.MEDIUM.value),
    EntityType.NAVIGATION.value: TypeProfile(120, "gateway", "#9B5DE5", "navigation", Importance.MEDIUM.value),
}

FALLBACK_RADIUS = 100.0
FALLBACK_ICON = "orb"
FALLBACK_ANALYTICS_CATEGORY = "general"


def default_angle(entity_id: str) -> float:
    """Stable angle in [0, 360) derived from the id alone."""
    return float(abs(stable_hash(entity_id)) % 360)


def normalize_angle(angle: float) -> float:
    normalized = angle % 360.0
    # -0.0 and float rounding at the upper edge
    if normalized >= 360.0 or normalized == 0:
        normalized = 0.0
    return normalized


def default_color(entity_id: str) -> str:
    return f"hsl({abs(stable_hash(entity_id)) % 360}, 70%, 60%)"


def parse_tags(value) -> set:
    """``"a, b,,c"`` -> ``{"a", "b", "c"}``."""
    if not value:
        return set()
    if isinstance(value, (list, tuple, set, frozenset)):
        return {str(t).strip() for t in value if str(t).strip()}
    return {tag.strip() for tag in str(value).split(',') if tag.strip()}


def parse_flag(value) -> bool:
    """Only an explicit "false" (any case) turns a flag off."""
    return str(value).strip().lower() != "false"


def _number(value, fallback: float) -> float:
    if value in (None, ''):
        return float(fallback)
    return float(value)


class EntityEnricher:
    """Resolves every optional entity field."""

    def __init__(
        self,
        type_profiles: Dict[str, TypeProfile] = None,
        timestamp: Callable[[], str] = now_iso,
    ):
        self.type_profiles = dict(DEFAULT_TYPE_PROFILES)
        if type_profiles:
            self.type_profiles.update(type_profiles)
        self._timestamp = timestamp

    def register_type(self, type_name: str, profile: TypeProfile) -> None:
        self.type_profiles[type_name] = profile

    def importance_for(self, entity_type: str) -> str:
        profile = self.type_profiles.get(entity_type)
        return profile.importance if profile else Importance.LOW.value

    @staticmethod
    def content_priority_for(entity_type: str, importance: str) -> str:
        if entity_type == EntityType.ROOT.value:
            return "critical"
        return importance

    def fill_defaults(self, raw: Dict[str, str], source_url: Optional[str] = None) -> Entity:
        """
        Build an ``Entity`` from validated raw attributes.

        Args:
            raw:        Attribute map with at least ``id`` and ``type``, normally one
                        that passed ``MetaExtractor.validate``; a missing title
                        falls back to the id
            source_url: Page the attributes came from

        Returns:
            Fully populated Entity
        """
        entity_id = raw['id']
        entity_type = raw['type']
        title = (raw.get('title') or entity_id).strip()
        profile = self.type_profiles.get(entity_type)

        importance = raw.get('importance')
        if importance not in IMPORTANCE_RANK:
            importance = self.importance_for(entity_type)

        if raw.get('angle') not in (None, ''):
            angle = normalize_angle(float(raw['angle']))
        else:
            angle = default_angle(entity_id)

        positioning = Positioning(
            radius=_number(raw.get('radius'), profile.radius if profile else FALLBACK_RADIUS),
            angle=angle,
            size_modifier=_number(raw.get('size_modifier'), 1.0),
        )

        parsed_at = self._timestamp()
        key_source = source_url or entity_id
        return Entity(
            id=entity_id,
            type=entity_type,
            title=title,
            parent=(raw.get('parent') or '').strip() or None,
            description=raw.get('description') or f'Section "{title}"',
            color=raw.get('color') or (profile.color if profile else default_color(entity_id)),
            icon=raw.get('icon') or (profile.icon if profile else FALLBACK_ICON),
            positioning=positioning,
            importance=importance,
            tags=parse_tags(raw.get('tags')),
            unlocked=parse_flag(raw.get('unlocked', '')),
            content_priority=raw.get('content_priority') or self.content_priority_for(entity_type, importance),
            analytics_category=raw.get('analytics_category') or (
                profile.analytics_category if profile else FALLBACK_ANALYTICS_CATEGORY
            ),
            timestamps=Timestamps(
                created=raw.get('created') or None,
                updated=raw.get('updated') or None,
                parsed_at=parsed_at,
            ),
            analytics=Analytics(parse_count=1),
            cache_metadata=CacheMetadata(
                source_url=source_url,
                cache_key=f"meta_{entity_id}_{sha256_hex(key_source)[:10]}",
            ),
        )


_default_enricher = EntityEnricher()


def fill_defaults(raw: Dict[str, str], source_url: Optional[str] = None) -> Entity:
    """Module-level shortcut using the built-in type profiles."""
    return _default_enricher.fill_defaults(raw, source_url=source_url)
