"""
Snapshot Serializer & Versioner
===============================
A ``Snapshot`` is the immutable, checksummed unit the engine hands out:
entities, hierarchy and stats at one point in time.

``SnapshotManager`` creates them, validates them against their checksum,
commits the valid ones onto a bounded history, persists them (remote
first, local fallback), restores them and exports them.
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

from .errors import ChecksumMismatch, SnapshotStoreError, ValidationError
from .exporters import export_snapshot
from .models import Entity, Hierarchy
from .storage import LocalSnapshotStore, SnapshotBackend
from .utils import canonical_json, now_iso, sha256_hex

logger = logging.getLogger(__name__)


SNAPSHOT_FIELDS = ('version', 'generated_at', 'namespace', 'checksum', 'entities', 'hierarchy')
ENTITY_FIELDS = ('id', 'type', 'title')
ENTITY_BLOCKS = ('positioning', 'timestamps', 'analytics', 'cache_metadata')
DEFAULT_MAX_VERSIONS = 10

# What a malformed but parseable payload raises while being converted
CONVERSION_ERRORS = (KeyError, TypeError, ValueError, AttributeError)


def compute_checksum(entities: Mapping[str, Entity]) -> str:
    """SHA-256 over the canonical JSON of the entity map, analytics excluded."""
    canonical = {
        entity_id: entity.to_dict(include_volatile=False)
        for entity_id, entity in entities.items()
    }
    return sha256_hex(canonical_json(canonical))


def snapshot_stats(entities: Mapping[str, Entity], hierarchy: Optional[Mapping] = None) -> dict:
    stats = dict((hierarchy or {}).get('stats') or {})
    stats['total_entities'] = len(entities)
    stats['by_type'] = dict(Counter(e.type for e in entities.values()))
    stats['by_importance'] = dict(Counter(e.importance for e in entities.values()))
    return stats


def _freeze(value):
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value):
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


class EntityMap(Mapping):
    """
    Read-only ``{id: Entity}`` view over serialized entities.

    Each lookup builds a fresh ``Entity``, so callers can never change what
    the snapshot holds or invalidate its checksum.
    """

    __slots__ = ('_data',)

    def __init__(self, entities: Mapping[str, Entity]):
        self._data = {k: entities[k].to_dict() for k in sorted(entities)}

    def __getitem__(self, entity_id: str) -> Entity:
        return Entity.from_dict(self._data[entity_id])

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"EntityMap({list(self._data)})"


@dataclass(frozen=True)
class Snapshot:
    version: int
    generated_at: str
    namespace: str
    checksum: str
    entities: Mapping[str, Entity]
    hierarchy: Mapping
    stats: Mapping

    def __post_init__(self):
        if not isinstance(self.entities, EntityMap):
            object.__setattr__(self, 'entities', EntityMap(self.entities))
        object.__setattr__(self, 'hierarchy', _freeze(self.hierarchy or {}))
        object.__setattr__(self, 'stats', _freeze(self.stats or {}))

    def entity_list(self) -> List[Entity]:
        return [self.entities[k] for k in sorted(self.entities)]

    def depth_of(self, entity_id: str) -> Optional[int]:
        chain = (self.hierarchy.get('relationship_chains') or {}).get(entity_id)
        return len(chain) - 1 if chain else None

    def search_entities(self, query: str, field: str = 'title') -> List[Entity]:
        """Case-insensitive substring match on a string field."""
        needle = query.lower()
        matches = []
        for entity in self.entity_list():
            value = getattr(entity, field, None)
            if isinstance(value, str) and needle in value.lower():
                matches.append(entity)
        return matches

    def entities_by_type(self, entity_type: str) -> List[Entity]:
        return [e for e in self.entity_list() if e.type == entity_type]

    def age_hours(self, now: datetime = None) -> float:
        now = now or datetime.now(timezone.utc)
        generated = datetime.fromisoformat(self.generated_at)
        if generated.tzinfo is None:
            generated = generated.replace(tzinfo=timezone.utc)
        return (now - generated).total_seconds() / 3600

    def is_stale(self, max_age_hours: float = 24, now: datetime = None) -> bool:
        return self.age_hours(now) > max_age_hours

    def to_dict(self) -> dict:
        return {
            'version': self.version,
            'generated_at': self.generated_at,
            'namespace': self.namespace,
            'checksum': self.checksum,
            'entities': {k: self.entities[k].to_dict() for k in sorted(self.entities)},
            'hierarchy': _thaw(self.hierarchy),
            'stats': _thaw(self.stats),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Snapshot":
        """
        Raises:
            KeyError, TypeError, ValueError, AttributeError: malformed data;
            run ``validate_snapshot_data`` first to get a readable report
        """
        entities = {k: Entity.from_dict(v) for k, v in data['entities'].items()}
        return cls(
            version=int(data['version']),
            generated_at=data['generated_at'],
            namespace=data['namespace'],
            checksum=data['checksum'],
            entities=entities,
            hierarchy=data.get('hierarchy') or {},
            stats=data.get('stats') or {},
        )


def validate_snapshot_data(data) -> List[str]:
    """
    Structural and checksum validation of a serialized snapshot.

    Never raises on malformed input; every problem is reported instead.

    Returns:
        Every problem found; an empty list means the data is acceptable
    """
    if not isinstance(data, dict):
        return ["snapshot is not an object"]

    errors = [f"missing field '{name}'" for name in SNAPSHOT_FIELDS if name not in data]
    version = data.get('version')
    if 'version' in data and (isinstance(version, bool) or not isinstance(version, int)):
        errors.append(f"'version' is not an integer: {version!r}")
    for name in ('generated_at', 'namespace', 'checksum'):
        if name in data and not isinstance(data[name], str):
            errors.append(f"'{name}' is not a string")
    for name in ('hierarchy', 'stats'):
        if data.get(name) is not None and not isinstance(data[name], dict):
            errors.append(f"'{name}' is not an object")

    entities = data.get('entities')
    if entities is None:
        return errors
    if not isinstance(entities, dict):
        return errors + ["'entities' is not an object"]

    broken = False
    for key, entity in entities.items():
        if not isinstance(entity, dict):
            errors.append(f"entity '{key}' is not an object")
            broken = True
            continue
        for name in ENTITY_FIELDS:
            if not entity.get(name):
                errors.append(f"entity '{key}' missing '{name}'")
                broken = True
        for name in ENTITY_BLOCKS:
            if entity.get(name) is not None and not isinstance(entity[name], dict):
                errors.append(f"entity '{key}' field '{name}' is not an object")
                broken = True
        if entity.get('tags') is not None and not isinstance(entity['tags'], list):
            errors.append(f"entity '{key}' field 'tags' is not a list")
            broken = True
        if entity.get('id') and entity['id'] != key:
            errors.append(f"entity key '{key}' does not match id '{entity['id']}'")

    if not broken and 'checksum' in data:
        try:
            actual = compute_checksum({k: Entity.from_dict(v) for k, v in entities.items()})
        except CONVERSION_ERRORS as exc:
            errors.append(f"entities cannot be read: {exc!r}")
        else:
            if actual != data['checksum']:
                errors.append(str(ChecksumMismatch(str(data['checksum']), actual)))
    return errors


def merge_snapshots(snapshots: Iterable[Snapshot]) -> Dict[str, Entity]:
    """Union of entity maps; later snapshots win on id collisions."""
    merged: Dict[str, Entity] = {}
    for snapshot in snapshots:
        merged.update(snapshot.entities)
    return merged


class VersionHistory:
    """Bounded newest-first history of snapshots."""

    def __init__(self, max_versions: int = DEFAULT_MAX_VERSIONS):
        self._items: deque = deque(maxlen=max(1, max_versions))

    @property
    def max_versions(self) -> int:
        return self._items.maxlen

    def push(self, snapshot: Snapshot) -> None:
        self._items.appendleft(snapshot)

    @property
    def latest(self) -> Optional[Snapshot]:
        return self._items[0] if self._items else None

    def get(self, index: int) -> Optional[Snapshot]:
        if 0 <= index < len(self._items):
            return self._items[index]
        return None

    def versions(self) -> List[int]:
        return [s.version for s in self._items]

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items))


class SnapshotManager:
    """
    Generates, validates, persists, restores and exports snapshots for one
    namespace.
    """

    def __init__(
        self,
        namespace: str,
        local_store: LocalSnapshotStore = None,
        remote_store: Optional[SnapshotBackend] = None,
        max_versions: int = DEFAULT_MAX_VERSIONS,
    ):
        self.namespace = namespace
        self.local_store = local_store or LocalSnapshotStore()
        self.remote_store = remote_store
        self.history = VersionHistory(max_versions)
        self._last_version = 0

    @property
    def current(self) -> Optional[Snapshot]:
        return self.history.latest

    def create(self, entities: Mapping[str, Entity], hierarchy) -> Snapshot:
        """
        Freeze entities + hierarchy into the next version without committing
        it. History and the version counter are untouched until ``commit``.
        """
        hierarchy_data = hierarchy.to_dict() if isinstance(hierarchy, Hierarchy) else dict(hierarchy or {})
        frozen = EntityMap(entities)
        return Snapshot(
            version=self._last_version + 1,
            generated_at=now_iso(),
            namespace=self.namespace,
            checksum=compute_checksum(frozen),
            entities=frozen,
            hierarchy=hierarchy_data,
            stats=snapshot_stats(frozen, hierarchy_data),
        )

    def commit(self, snapshot: Snapshot) -> Snapshot:
        """Make a validated snapshot the current version."""
        self._last_version = max(self._last_version, snapshot.version)
        self.history.push(snapshot)
        logger.info(
            f"[SNAPSHOT] v{snapshot.version} generated: {len(snapshot.entities)} entities, "
            f"checksum {snapshot.checksum[:12]}"
        )
        return snapshot

    def generate(self, entities: Mapping[str, Entity], hierarchy) -> Snapshot:
        """
        Create, validate and commit in one step.

        Raises:
            ValidationError: the new snapshot does not validate; the previous
            version stays current
        """
        snapshot = self.create(entities, hierarchy)
        errors = self.validate(snapshot)
        if errors:
            raise ValidationError(errors, page_id=f"snapshot v{snapshot.version}")
        return self.commit(snapshot)

    def validate(self, snapshot: Snapshot) -> List[str]:
        return validate_snapshot_data(snapshot.to_dict())

    def verify(self, snapshot: Snapshot) -> None:
        """Raise ``ChecksumMismatch`` on corruption, ``ValidationError`` on bad structure."""
        actual = compute_checksum(snapshot.entities)
        if actual != snapshot.checksum:
            raise ChecksumMismatch(snapshot.checksum, actual)
        errors = self.validate(snapshot)
        if errors:
            raise ValidationError(errors)

    def persist(self, snapshot: Snapshot) -> str:
        """
        Save remotely, falling back to the local store.

        Returns:
            ``"remote"`` or ``"local"``

        Raises:
            SnapshotStoreError: when the local fallback also fails
        """
        data = snapshot.to_dict()
        if self.remote_store is not None:
            try:
                self.remote_store.save(self.namespace, data)
                return "remote"
            except SnapshotStoreError as exc:
                logger.warning(f"[SNAPSHOT] {exc}; falling back to local store")
        self.local_store.save(self.namespace, data)
        return "local"

    def restore(self) -> Optional[Snapshot]:
        """
        Load the locally stored snapshot, accepting it only if it validates.
        Invalid data is discarded and reported; returns None in that case.
        """
        try:
            data = self.local_store.load(self.namespace)
        except SnapshotStoreError as exc:
            logger.error(f"[SNAPSHOT] Restore failed: {exc}")
            return None
        if data is None:
            return None

        errors = validate_snapshot_data(data)
        snapshot = None
        if not errors:
            try:
                snapshot = Snapshot.from_dict(data)
            except CONVERSION_ERRORS as exc:
                errors = [f"unreadable snapshot: {exc!r}"]
        if errors:
            logger.error(f"[SNAPSHOT] Stored snapshot rejected: {'; '.join(errors)}")
            self.local_store.delete(self.namespace)
            return None

        self._last_version = max(self._last_version, snapshot.version)
        if self.history.latest is None or self.history.latest.version < snapshot.version:
            self.history.push(snapshot)
        logger.info(f"[SNAPSHOT] Restored v{snapshot.version} ({len(snapshot.entities)} entities)")
        return snapshot

    def rollback(self, index: int = 1) -> Optional[Snapshot]:
        """Return the snapshot ``index`` steps back in history."""
        snapshot = self.history.get(index)
        if snapshot is None:
            logger.warning(f"[SNAPSHOT] No version at history index {index}")
        return snapshot

    def export(self, snapshot: Snapshot, fmt: str, **options) -> bytes:
        return export_snapshot(snapshot, fmt, **options)
