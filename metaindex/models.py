"""
Data Model
==========
Dataclasses shared by every stage of the index pipeline.

``Entity`` is the validated, enriched record for one content page.
``to_dict`` / ``from_dict`` give a lossless JSON-safe form that snapshots,
exporters and the local store all use.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set


class EntityType(str, Enum):
    """Built-in entity types. Extra types may be registered via config."""
    ROOT = "root"
    CATEGORY = "category"
    SECTION = "section"
    SUBSECTION = "subsection"
    GROUP = "group"
    NAVIGATION = "navigation"
    SUPPLEMENTARY = "supplementary"
    SPECIAL = "special"


class Importance(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Sibling ordering: lower rank sorts first
IMPORTANCE_RANK = {
    Importance.HIGH.value: 0,
    Importance.MEDIUM.value: 1,
    Importance.LOW.value: 2,
}


@dataclass
class Positioning:
    radius: float = 0.0
    angle: float = 0.0
    size_modifier: float = 1.0

    def to_dict(self) -> dict:
        return {
            'radius': self.radius,
            'angle': self.angle,
            'size_modifier': self.size_modifier,
        }


@dataclass
class Timestamps:
    created: Optional[str] = None
    updated: Optional[str] = None
    parsed_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'created': self.created,
            'updated': self.updated,
            'parsed_at': self.parsed_at,
        }


@dataclass
class Analytics:
    """Usage counters. Only the owning engine mutates these, and only upward."""
    parse_count: int = 0
    access_count: int = 0
    predictive_score: float = 0.0
    last_access: Optional[float] = None

    def record_parse(self) -> None:
        self.parse_count += 1

    def record_access(self, when: float) -> None:
        self.access_count += 1
        if self.last_access is None or when > self.last_access:
            self.last_access = when

    def to_dict(self) -> dict:
        return {
            'parse_count': self.parse_count,
            'access_count': self.access_count,
            'predictive_score': self.predictive_score,
            'last_access': self.last_access,
        }


@dataclass
class CacheMetadata:
    source_url: Optional[str] = None
    cache_key: Optional[str] = None

    def to_dict(self) -> dict:
        return {'source_url': self.source_url, 'cache_key': self.cache_key}


@dataclass
class Entity:
    """
    Structural record for one content page.

    Required: ``id``, ``type``, ``title``. Everything else is filled by
    ``enrichment.fill_defaults`` when the page does not declare it.
    """
    id: str
    type: str
    title: str
    parent: Optional[str] = None
    description: str = ""
    color: str = ""
    icon: str = ""
    positioning: Positioning = field(default_factory=Positioning)
    importance: str = Importance.LOW.value
    tags: Set[str] = field(default_factory=set)
    unlocked: bool = True
    content_priority: str = "low"
    analytics_category: str = ""
    timestamps: Timestamps = field(default_factory=Timestamps)
    analytics: Analytics = field(default_factory=Analytics)
    cache_metadata: CacheMetadata = field(default_factory=CacheMetadata)

    @property
    def importance_rank(self) -> int:
        return IMPORTANCE_RANK.get(self.importance, len(IMPORTANCE_RANK))

    def to_dict(self, include_volatile: bool = True) -> dict:
        """Convert to a JSON-safe dictionary.

        Args:
            include_volatile: When False the ``analytics`` block is left out.
                Used for checksums and equality checks across exports.
        """
        data: Dict[str, Any] = {
            'id': self.id,
            'type': self.type,
            'title': self.title,
            'parent': self.parent,
            'description': self.description,
            'color': self.color,
            'icon': self.icon,
            'positioning': self.positioning.to_dict(),
            'importance': self.importance,
            'tags': sorted(self.tags),
            'unlocked': self.unlocked,
            'content_priority': self.content_priority,
            'analytics_category': self.analytics_category,
            'timestamps': self.timestamps.to_dict(),
            'cache_metadata': self.cache_metadata.to_dict(),
        }
        if include_volatile:
            data['analytics'] = self.analytics.to_dict()
        return data

    def to_flat_dict(self) -> dict:
        """Flat form for tabular output."""
        return {
            'id': self.id,
            'type': self.type,
            'title': self.title,
            'parent': self.parent or '',
            'importance': self.importance,
            'radius': self.positioning.radius,
            'angle': self.positioning.angle,
            'size_modifier': self.positioning.size_modifier,
            'tags': ','.join(sorted(self.tags)),
            'unlocked': self.unlocked,
            'source_url': self.cache_metadata.source_url or '',
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Entity":
        pos = data.get('positioning') or {}
        ts = data.get('timestamps') or {}
        an = data.get('analytics') or {}
        cm = data.get('cache_metadata') or {}
        return cls(
            id=data['id'],
            type=data['type'],
            title=data['title'],
            parent=data.get('parent'),
            description=data.get('description', ''),
            color=data.get('color', ''),
            icon=data.get('icon', ''),
            positioning=Positioning(
                radius=pos.get('radius', 0.0),
                angle=pos.get('angle', 0.0),
                size_modifier=pos.get('size_modifier', 1.0),
            ),
            importance=data.get('importance', Importance.LOW.value),
            tags=set(data.get('tags') or []),
            unlocked=data.get('unlocked', True),
            content_priority=data.get('content_priority', 'low'),
            analytics_category=data.get('analytics_category', ''),
            timestamps=Timestamps(
                created=ts.get('created'),
                updated=ts.get('updated'),
                parsed_at=ts.get('parsed_at'),
            ),
            analytics=Analytics(
                parse_count=an.get('parse_count', 0),
                access_count=an.get('access_count', 0),
                predictive_score=an.get('predictive_score', 0.0),
                last_access=an.get('last_access'),
            ),
            cache_metadata=CacheMetadata(
                source_url=cm.get('source_url'),
                cache_key=cm.get('cache_key'),
            ),
        )


@dataclass
class HierarchyNode:
    """An entity plus the fields the hierarchy builder derives for it."""
    entity: Entity
    children: List["HierarchyNode"] = field(default_factory=list)
    depth: int = 0
    total_descendants: int = 0
    sibling_index: int = 0
    is_root: bool = False
    is_orphan: bool = False
    relationship_chain: List[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.entity.id

    @property
    def child_count(self) -> int:
        return len(self.children)

    def iter_subtree(self):
        """Yield this node and every descendant, depth first."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def to_dict(self) -> dict:
        """Flat form; children are listed by id so the output never nests."""
        return {
            'id': self.entity.id,
            'type': self.entity.type,
            'title': self.entity.title,
            'importance': self.entity.importance,
            'depth': self.depth,
            'child_count': self.child_count,
            'total_descendants': self.total_descendants,
            'sibling_index': self.sibling_index,
            'is_root': self.is_root,
            'is_orphan': self.is_orphan,
            'children': [c.id for c in self.children],
        }


@dataclass
class HierarchyStats:
    total: int = 0
    roots: int = 0
    orphans: int = 0
    cycles: int = 0
    max_depth: int = 0
    total_descendants: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'total': self.total,
            'roots': self.roots,
            'orphans': self.orphans,
            'cycles': self.cycles,
            'max_depth': self.max_depth,
            'total_descendants': self.total_descendants,
            'by_type': dict(self.by_type),
        }


@dataclass
class Hierarchy:
    """Output of ``HierarchyBuilder.build``."""
    roots: List[HierarchyNode] = field(default_factory=list)
    stats: HierarchyStats = field(default_factory=HierarchyStats)
    warnings: List[str] = field(default_factory=list)
    relationship_chains: Dict[str, List[str]] = field(default_factory=dict)

    def iter_nodes(self):
        """Every node, roots in order, each subtree depth first."""
        for root in self.roots:
            yield from root.iter_subtree()

    def find(self, entity_id: str) -> Optional[HierarchyNode]:
        for node in self.iter_nodes():
            if node.id == entity_id:
                return node
        return None

    def depth_of(self, entity_id: str) -> Optional[int]:
        node = self.find(entity_id)
        return node.depth if node else None

    def related_ids(self, entity_id: str, depth: int = 2) -> List[str]:
        """Siblings of ``entity_id`` plus its descendants down to ``depth`` levels."""
        node = self.find(entity_id)
        if node is None:
            return []

        chain = self.relationship_chains.get(entity_id) or node.relationship_chain
        parent = self.find(chain[-2]) if len(chain) > 1 else None
        siblings = parent.children if parent else self.roots

        related = [s.id for s in siblings if s.id != entity_id]
        frontier = [node]
        for _ in range(max(0, depth)):
            frontier = [child for n in frontier for child in n.children]
            related.extend(child.id for child in frontier)
        return list(dict.fromkeys(related))

    def to_dict(self) -> dict:
        return {
            'roots': [r.id for r in self.roots],
            'nodes': {node.id: node.to_dict() for node in self.iter_nodes()},
            'stats': self.stats.to_dict(),
            'warnings': list(self.warnings),
            'relationship_chains': {k: list(v) for k, v in self.relationship_chains.items()},
        }
