"""
Meta Index Package
Builds a validated, hierarchical, versioned index of a site's pages from
the metadata each page declares about itself.

CLI Usage:
    python -m metaindex <base_url> [options]

    Options:
        --timeout       Per-attempt fetch timeout in seconds (default: 10)
        --retries       Total fetch attempts per page (default: 3)
        --workers       Concurrent fetch workers (default: 8)
        --namespace     Snapshot namespace (default: host of base_url)
        --output-json   Export to JSON file
        --output-csv    Export to CSV file
        --output-yaml   Export to YAML file
        --output-xml    Export to sitemap XML file
"""

from .cache import TTLCache, CacheEntry
from .circuit_breaker import CircuitBreaker, BreakerState
from .discovery import PageDiscovery
from .enrichment import EntityEnricher, TypeProfile, fill_defaults
from .errors import (
    MetaIndexError, DiscoveryExhausted, FetchError, ValidationError,
    CycleDetected, ChecksumMismatch, CircuitOpen, SnapshotStoreError,
)
from .events import EventBus, Event
from .extractor import MetaExtractor
from .fetcher import ResilientFetcher, RequestsTransport, FetchResult, BatchResult
from .hierarchy import HierarchyBuilder, build_hierarchy
from .indexer import MetaIndexer, index_site
from .models import Entity, EntityType, Importance, Hierarchy, HierarchyNode, HierarchyStats
from .prefetch import PrefetchScheduler
from .run_config import IndexerRunConfig
from .snapshot import Snapshot, SnapshotManager, VersionHistory
from .storage import LocalSnapshotStore, RemoteSnapshotStore

__all__ = [
    'MetaIndexer',
    'index_site',
    'IndexerRunConfig',
    # Pipeline stages
    'PageDiscovery',
    'ResilientFetcher',
    'RequestsTransport',
    'FetchResult',
    'BatchResult',
    'MetaExtractor',
    'EntityEnricher',
    'TypeProfile',
    'fill_defaults',
    'HierarchyBuilder',
    'build_hierarchy',
    'SnapshotManager',
    'Snapshot',
    'VersionHistory',
    'PrefetchScheduler',
    # Infrastructure
    'TTLCache',
    'CacheEntry',
    'CircuitBreaker',
    'BreakerState',
    'EventBus',
    'Event',
    'LocalSnapshotStore',
    'RemoteSnapshotStore',
    # Model
    'Entity',
    'EntityType',
    'Importance',
    'Hierarchy',
    'HierarchyNode',
    'HierarchyStats',
    # Errors
    'MetaIndexError',
    'DiscoveryExhausted',
    'FetchError',
    'ValidationError',
    'CycleDetected',
    'ChecksumMismatch',
    'CircuitOpen',
    'SnapshotStoreError',
]

__version__ = '1.0.0'
