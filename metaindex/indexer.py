"""
Meta Indexer
Coordinates one site's index: discovery, fetch, extract/validate, enrich,
cache, hierarchy, snapshot. Also the object collaborators query.

Runs are all-or-nothing: a run that is cancelled or fails to produce a
valid snapshot leaves the previous snapshot in place. Per-page problems
never fail a run; they are reported through ``parsingError`` events.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from . import events as ev
from .cache import TTLCache
from .circuit_breaker import CircuitBreaker
from .discovery import PageDiscovery
from .enrichment import EntityEnricher, parse_flag
from .errors import CircuitOpen, DiscoveryExhausted, SnapshotStoreError, ValidationError
from .events import EventBus
from .extractor import MetaExtractor
from .fetcher import FetchResult, RequestsTransport, ResilientFetcher, Transport
from .hierarchy import HierarchyBuilder
from .models import Entity, EntityType, Hierarchy
from .prefetch import PrefetchScheduler
from .run_config import IndexerRunConfig
from .snapshot import Snapshot, SnapshotManager
from .storage import LocalSnapshotStore, RemoteSnapshotStore, SnapshotBackend
from .utils import now_iso

logger = logging.getLogger(__name__)


FALLBACK_ENTITY = {'id': 'index', 'type': EntityType.ROOT.value, 'title': 'Index'}

# Fields ``update_entity_metadata`` may change
UPDATABLE_FIELDS = {
    'title', 'type', 'parent', 'description', 'color', 'icon', 'importance',
    'tags', 'unlocked', 'radius', 'angle', 'size_modifier',
    'content_priority', 'analytics_category',
}


class MetaIndexer:
    """
    Builds and serves the structural index of one site.
    """

    def __init__(
        self,
        config: IndexerRunConfig,
        transport: Transport = None,
        events: EventBus = None,
        local_store: LocalSnapshotStore = None,
        remote_store: Optional[SnapshotBackend] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = None,
        breaker_timer: bool = True,
    ):
        """
        Args:
            config:        Run configuration
            transport:     HTTP transport (default: ``RequestsTransport``)
            events:        Event bus to publish on (default: a private one)
            local_store:   Local snapshot store (default: ``config.store_dir``)
            remote_store:  Remote snapshot backend (default: ``config.remote_url`` if set)
            clock:         Monotonic time source for caches and breaker
            sleep:         Backoff wait override, mostly for tests
            breaker_timer: Let the breaker reopen itself via a background timer
        """
        self.config = config
        self.events = events or EventBus()

        self.raw_cache: TTLCache[str] = TTLCache(config.cache_size, config.cache_ttl, "raw", clock)
        self.entity_cache: TTLCache[Entity] = TTLCache(config.cache_size, config.cache_ttl, "entity", clock)

        self.breaker = CircuitBreaker(
            failure_threshold=config.failure_threshold,
            reset_timeout=config.reset_timeout,
            clock=clock,
            use_timer=breaker_timer,
        )

        self.fetcher = ResilientFetcher(
            transport=transport or RequestsTransport(config.user_agent),
            timeout=config.request_timeout,
            max_retries=config.max_retries,
            backoff_base=config.backoff_base,
            max_workers=config.max_workers,
            cache=self.raw_cache,
            breaker=self.breaker,
            sleep=sleep,
        )

        self.discovery = PageDiscovery(
            config.base_url,
            self.fetcher,
            manifest_path=config.manifest_path,
            api_endpoints=config.api_endpoints,
            scan_directories=config.scan_directories,
            scan_page_names=config.scan_page_names,
            bootstrap_paths=config.bootstrap_paths,
            probe_timeout=config.probe_timeout,
            max_workers=config.max_workers,
        )

        self.extractor = MetaExtractor(namespace=config.meta_namespace)
        for type_name in config.extra_entity_types:
            self.extractor.register_type(type_name)
        self.enricher = EntityEnricher()
        self.builder = HierarchyBuilder(max_depth=config.max_hierarchy_depth)

        if remote_store is None and config.remote_url:
            remote_store = RemoteSnapshotStore(config.remote_url, timeout=config.request_timeout)
        self.snapshots = SnapshotManager(
            namespace=config.effective_namespace,
            local_store=local_store or LocalSnapshotStore(config.store_dir),
            remote_store=remote_store,
            max_versions=config.max_versions,
        )

        self.prefetch = PrefetchScheduler(
            related=self._related_ids,
            warm=self._warm_entity,
            delay=config.prefetch_delay,
            depth=config.prefetch_depth,
            enabled=config.prefetch_enabled,
            on_scheduled=lambda entity_id, ids: self.events.emit(
                ev.PREDICTIVE_LOAD_SCHEDULED, entity_id=entity_id, related=list(ids)
            ),
        )

        self._lock = threading.RLock()
        self._entities: Dict[str, Entity] = {}
        self._hierarchy: Optional[Hierarchy] = None
        self._hierarchy_dirty = False
        self._is_fallback = False

        # Counters for get_stats
        self._total_parsed = 0
        self._errors = 0
        self._runs = 0
        self.last_errors: List[dict] = []
        self.last_strategy: Optional[str] = None

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def run(self, urls: List[str] = None, persist: bool = False) -> Snapshot:
        """
        Index the site and return the resulting snapshot.

        Args:
            urls:    Explicit page URLs; discovery runs when omitted
            persist: Save the new snapshot (remote, then local) on success

        Returns:
            The new snapshot, or the previous/fallback one when the run could
            not produce a valid index. Never raises for network or page errors.
        """
        self._runs += 1
        self.fetcher.reset()
        self.last_errors = []
        self.events.emit(ev.PARSING_STARTED, base_url=self.config.base_url, namespace=self.snapshots.namespace)

        if not self.breaker.allow_request():
            error = CircuitOpen("circuit breaker is open, serving last good index")
            logger.warning(f"[INDEX] {error}")
            self.events.emit(ev.PARSING_ERROR, url=None, error=str(error), critical=False)
            return self._fallback_snapshot()

        self.raw_cache.purge_expired()

        if urls is None:
            urls = self.discovery.discover()
            self.last_strategy = self.discovery.last_strategy
        else:
            self.last_strategy = "explicit"

        if not urls:
            error = DiscoveryExhausted("no pages to index")
            return self._fail_run(None, error)

        batch = self.fetcher.fetch_many(urls, process=self._process_page)

        if batch.cancelled or self.fetcher.stopped:
            logger.warning("[INDEX] Run cancelled, partial results discarded")
            return self._fallback_snapshot()

        for url, exc in batch.failures.items():
            self._errors += 1
            self.last_errors.append({'url': url, 'error': str(exc)})
            self.events.emit(ev.PARSING_ERROR, url=url, error=str(exc), critical=False)

        # URL order, not completion order, decides which duplicate wins
        entities: Dict[str, Entity] = {}
        for url in urls:
            entity = batch.successes.get(url)
            if entity is None:
                continue
            if entity.id in entities:
                logger.warning(
                    f"[INDEX] Duplicate id '{entity.id}' at {url}; keeping "
                    f"{entities[entity.id].cache_metadata.source_url}"
                )
                continue
            entities[entity.id] = entity

        if not entities:
            return self._fail_run(None, DiscoveryExhausted(f"none of {len(set(urls))} page(s) produced an entity"))

        hierarchy = self.builder.build(entities)
        self.events.emit(ev.HIERARCHY_BUILT, hierarchy=hierarchy, stats=hierarchy.stats.to_dict())

        snapshot = self.snapshots.create(entities, hierarchy)
        problems = self.snapshots.validate(snapshot)
        if problems:
            return self._fail_run(None, ValidationError(problems, page_id=f"snapshot v{snapshot.version}"))
        self.snapshots.commit(snapshot)
        self.breaker.record_success()
        self.events.emit(ev.SNAPSHOT_GENERATED, snapshot=snapshot, version=snapshot.version)

        with self._lock:
            self._entities = entities
            self._hierarchy = hierarchy
            self._hierarchy_dirty = False
            self._is_fallback = False
            self._total_parsed += len(entities)
        for entity in entities.values():
            self.entity_cache.set(entity.id, entity)

        self.events.emit(
            ev.PARSING_COMPLETED,
            entities=self.get_all_entities(),
            hierarchy=hierarchy,
            stats=hierarchy.stats.to_dict(),
        )
        logger.info(
            f"[INDEX] Indexed {len(entities)} entities "
            f"({len(batch.failures)} page error(s)) into snapshot v{snapshot.version}"
        )

        if persist:
            self.save_snapshot(snapshot)
        return snapshot

    def _process_page(self, fetched: FetchResult) -> Entity:
        """Extract, validate and enrich one page. Runs inside a fetch worker."""
        page = self.extractor.extract_page(fetched.content, fetched.url)
        raw = page.attributes
        self.extractor.validate(raw)

        entity = self.enricher.fill_defaults(raw, source_url=fetched.url)
        previous = self.entity_cache.peek(entity.id) or self._entities.get(entity.id)
        if previous is not None:
            entity.analytics.parse_count = previous.analytics.parse_count + 1
            entity.analytics.access_count = previous.analytics.access_count
            entity.analytics.last_access = previous.analytics.last_access
            entity.analytics.predictive_score = previous.analytics.predictive_score

        logger.debug(
            f"[INDEX] {fetched.url} -> {entity.id} ({entity.type}), "
            f"structure {page.structure.to_dict()}"
        )
        return entity

    def _fail_run(self, url: Optional[str], error: Exception) -> Snapshot:
        self._errors += 1
        self.breaker.record_failure()
        self.last_errors.append({'url': url, 'error': str(error)})
        logger.error(f"[INDEX] Run failed: {error}")
        self.events.emit(ev.PARSING_ERROR, url=url, error=str(error), critical=True)
        return self._fallback_snapshot()

    def _fallback_snapshot(self) -> Snapshot:
        """Last good snapshot, or a single-entity index when there is none."""
        current = self.snapshots.current
        if current is not None:
            return current

        entity = self.enricher.fill_defaults(
            dict(FALLBACK_ENTITY),
            source_url=self.discovery.absolute_url('/pages/index.html'),
        )
        entities = {entity.id: entity}
        hierarchy = self.builder.build(entities)
        snapshot = self.snapshots.generate(entities, hierarchy)
        with self._lock:
            self._entities = entities
            self._hierarchy = hierarchy
            self._hierarchy_dirty = False
            self._is_fallback = True
        logger.warning("[INDEX] Serving fallback index")
        return snapshot

    def stop(self) -> None:
        """Cancel an in-flight run; the previous snapshot stays authoritative."""
        self.fetcher.stop()
        self.prefetch.cancel()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        entity = self.entity_cache.get(entity_id)
        if entity is None:
            with self._lock:
                entity = self._entities.get(entity_id)
            if entity is None:
                return None
            self.entity_cache.set(entity_id, entity)
        entity.analytics.record_access(time.time())
        return entity

    def get_all_entities(self) -> List[Entity]:
        with self._lock:
            return [self._entities[k] for k in sorted(self._entities)]

    def get_current_hierarchy(self) -> Hierarchy:
        """Current hierarchy, rebuilt first if entities changed since the last build."""
        with self._lock:
            if self._hierarchy is None or self._hierarchy_dirty:
                return self.rebuild_hierarchy()
            return self._hierarchy

    def get_stats(self) -> dict:
        snapshot = self.snapshots.current
        with self._lock:
            entity_count = len(self._entities)
        return {
            'cache_size': self.raw_cache.size,
            'entity_cache_size': self.entity_cache.size,
            'hit_rate': self.entity_cache.hit_rate,
            'raw_hit_rate': self.raw_cache.hit_rate,
            'circuit_state': self.breaker.state.value,
            'total_parsed': self._total_parsed,
            'errors': self._errors,
            'runs': self._runs,
            'entities': entity_count,
            'snapshot_version': snapshot.version if snapshot else None,
            'discovery_strategy': self.last_strategy,
            'is_fallback': self._is_fallback,
        }

    @property
    def current_snapshot(self) -> Optional[Snapshot]:
        return self.snapshots.current

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update_entity_metadata(self, entity_id: str, updates: Dict[str, Any]) -> Entity:
        """
        Patch one entity in place. Values are validated like page metadata.

        Raises:
            KeyError:        unknown entity id
            ValueError:      an update names a field that cannot change
            ValidationError: the patched values do not validate
        """
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        with self._lock:
            entity = self._entities.get(entity_id)
            if entity is None:
                raise KeyError(entity_id)

            raw = {
                'id': entity.id,
                'type': entity.type,
                'title': entity.title,
                'parent': entity.parent or '',
                'color': entity.color,
                'radius': entity.positioning.radius,
                'angle': entity.positioning.angle,
                'size_modifier': entity.positioning.size_modifier,
            }
            raw.update({k: v for k, v in updates.items() if k != 'tags'})
            self.extractor.validate({k: ('' if v is None else str(v)) for k, v in raw.items()})

            for key, value in updates.items():
                if key in ('radius', 'size_modifier'):
                    setattr(entity.positioning, key, float(value))
                elif key == 'angle':
                    entity.positioning.angle = float(value) % 360.0
                elif key == 'tags':
                    entity.tags = set(value or [])
                elif key == 'unlocked':
                    entity.unlocked = parse_flag(value)
                elif key == 'parent':
                    entity.parent = value or None
                else:
                    setattr(entity, key, value)
            entity.timestamps.updated = now_iso()
            self._hierarchy_dirty = True

        self.entity_cache.set(entity_id, entity)
        self.events.emit(ev.ENTITY_METADATA_UPDATED, entity_id=entity_id, updates=dict(updates))
        return entity

    def rebuild_hierarchy(self, entities: Dict[str, Entity] = None) -> Hierarchy:
        with self._lock:
            source = entities if entities is not None else self._entities
            hierarchy = self.builder.build(source)
            if entities is None:
                self._hierarchy = hierarchy
                self._hierarchy_dirty = False
        self.events.emit(ev.HIERARCHY_BUILT, hierarchy=hierarchy, stats=hierarchy.stats.to_dict())
        return hierarchy

    def clear_cache(self) -> None:
        self.raw_cache.clear()
        self.entity_cache.clear()
        logger.info("[CACHE] Raw and entity caches cleared")
        self.events.emit(ev.CACHE_CLEARED)

    def recover(self) -> None:
        """Drop caches and let the breaker probe again immediately."""
        self.clear_cache()
        self.breaker.force_half_open()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def save_snapshot(self, snapshot: Snapshot = None) -> Optional[str]:
        """Persist a snapshot (the current one by default). Returns where it went."""
        snapshot = snapshot or self.snapshots.current
        if snapshot is None:
            return None
        try:
            location = self.snapshots.persist(snapshot)
        except SnapshotStoreError as exc:
            logger.error(f"[SNAPSHOT] Save failed: {exc}")
            self.events.emit(ev.SNAPSHOT_SAVE_ERROR, error=str(exc), version=snapshot.version)
            return None
        self.events.emit(ev.SNAPSHOT_SAVED, location=location, version=snapshot.version)
        return location

    def restore_snapshot(self) -> Optional[Snapshot]:
        """Adopt the locally stored snapshot if it validates."""
        snapshot = self.snapshots.restore()
        if snapshot is None:
            return None
        entities = dict(snapshot.entities)
        with self._lock:
            self._entities = entities
            self._hierarchy = self.builder.build(entities)
            self._hierarchy_dirty = False
            self._is_fallback = False
        self.events.emit(ev.SNAPSHOT_RESTORED, version=snapshot.version)
        return snapshot

    def export(self, fmt: str, **options) -> bytes:
        snapshot = self.snapshots.current or self._fallback_snapshot()
        if fmt.lower() == 'xml' and 'base_url' not in options:
            options['base_url'] = self.config.base_url or None
        data = self.snapshots.export(snapshot, fmt, **options)
        self.events.emit(ev.EXPORT_READY, format=fmt.lower(), version=snapshot.version, size=len(data))
        return data

    def export_to_file(self, fmt: str, filepath: str, **options) -> str:
        """
        Export the current snapshot to a file.

        Returns:
            Absolute path to the created file
        """
        output_path = Path(filepath)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(self.export(fmt, **options))
        logger.info(f"Exported {fmt.upper()} to {output_path.absolute()}")
        return str(output_path.absolute())

    # ------------------------------------------------------------------
    # Prefetch
    # ------------------------------------------------------------------

    def on_navigation_intent(self, entity_id: str) -> None:
        self.prefetch.on_navigation_intent(entity_id)

    def _related_ids(self, entity_id: str, depth: int) -> List[str]:
        return self.get_current_hierarchy().related_ids(entity_id, depth)

    def _warm_entity(self, entity_id: str) -> None:
        if self.entity_cache.peek(entity_id) is not None:
            return
        with self._lock:
            entity = self._entities.get(entity_id)
        if entity is None:
            return
        entity.analytics.predictive_score += 1
        self.entity_cache.set(entity_id, entity)
        url = entity.cache_metadata.source_url
        if url and self.raw_cache.peek(url) is None and self.breaker.allow_request():
            self.fetcher.fetch(url)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self.prefetch.cancel()
        self.breaker.close()
        self.fetcher.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()


def index_site(
    base_url: str,
    output_json: str = None,
    output_csv: str = None,
    persist: bool = False,
    **kwargs
) -> Snapshot:
    """
    Convenience function to index a site in one call.

    Args:
        base_url:    Site root
        output_json: JSON output file path
        output_csv:  CSV output file path
        persist:     Save the snapshot to the configured stores
        **kwargs:    Additional ``IndexerRunConfig`` fields

    Returns:
        The resulting snapshot
    """
    config = IndexerRunConfig(base_url=base_url, **kwargs)
    with MetaIndexer(config) as indexer:
        snapshot = indexer.run(persist=persist)
        if output_json:
            indexer.export_to_file("json", output_json)
        if output_csv:
            indexer.export_to_file("csv", output_csv)
        return snapshot
