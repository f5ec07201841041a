#!/usr/bin/env python3
"""
Command-line entry point for the Meta Indexer
=============================================
Indexes a site, optionally persists the snapshot, and writes the
requested export files.

All configuration flows through ``IndexerRunConfig``: environment
variables (``METAINDEX_*``, also read from a ``.env`` file) provide the
base, and command-line flags override them.

Run with: python -m metaindex <base_url>
"""

import argparse
import logging
import sys
import time
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

from .indexer import MetaIndexer
from .run_config import IndexerRunConfig, _DEFAULTS

# Project-level .env first, then the working directory
_env_path = Path(__file__).resolve().parent.parent / '.env'
if _env_path.exists():
    load_dotenv(_env_path)
else:
    load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)s | %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger(__name__)


def _base_name_from_url(url: str) -> str:
    """Derive a filesystem-safe base name from a URL."""
    parsed = urlparse(url)
    return parsed.netloc.replace('.', '_').replace(':', '_') or 'index'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Meta Indexer - build a hierarchical index from page metadata',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m metaindex https://example.com
  python -m metaindex https://example.com --output-json index.json --output-xml sitemap.xml
  python -m metaindex https://example.com --restore
        """
    )
    parser.add_argument('url', nargs='?', help='Site root to index (or set METAINDEX_BASE_URL)')
    parser.add_argument('--timeout', type=float, default=None,
                        help=f"Timeout per fetch attempt in seconds (default: {_DEFAULTS['request_timeout']})")
    parser.add_argument('--retries', type=int, default=None,
                        help=f"Total fetch attempts per page (default: {_DEFAULTS['max_retries']})")
    parser.add_argument('--workers', type=int, default=None,
                        help=f"Concurrent fetch workers (default: {_DEFAULTS['max_workers']})")
    parser.add_argument('--cache-size', type=int, default=None,
                        help=f"Entries per cache (default: {_DEFAULTS['cache_size']})")
    parser.add_argument('--cache-ttl', type=float, default=None,
                        help=f"Cache TTL in seconds (default: {_DEFAULTS['cache_ttl']:.0f})")
    parser.add_argument('--max-depth', type=int, default=None,
                        help=f"Hierarchy depth before warnings (default: {_DEFAULTS['max_hierarchy_depth']})")
    parser.add_argument('--namespace', type=str, help='Snapshot namespace (default: host of the URL)')
    parser.add_argument('--meta-namespace', type=str,
                        help=f"Meta tag prefix to read (default: {_DEFAULTS['meta_namespace']})")
    parser.add_argument('--entity-type', type=str, action='append', default=[],
                        help='Accept an extra entity type (repeatable)')
    parser.add_argument('--store-dir', type=str, help=f"Local snapshot directory (default: {_DEFAULTS['store_dir']})")
    parser.add_argument('--remote-url', type=str, help='Remote snapshot endpoint (optional)')
    parser.add_argument('--no-persist', action='store_true', help='Do not save the snapshot')
    parser.add_argument('--restore', action='store_true',
                        help='Load and report the stored snapshot instead of indexing')
    parser.add_argument('--output-json', type=str, help='JSON output file path')
    parser.add_argument('--output-csv', type=str, help='CSV output file path')
    parser.add_argument('--output-yaml', type=str, help='YAML output file path')
    parser.add_argument('--output-xml', type=str, help='Sitemap XML output file path')
    return parser


# argparse dest -> IndexerRunConfig field, for flags that default to None
_ENV_BACKED_FLAGS = {
    'timeout': 'request_timeout',
    'retries': 'max_retries',
    'workers': 'max_workers',
    'cache_size': 'cache_size',
    'cache_ttl': 'cache_ttl',
    'max_depth': 'max_hierarchy_depth',
}


def _merge_env(cfg: IndexerRunConfig, env_cfg: IndexerRunConfig, args) -> IndexerRunConfig:
    """Environment values fill whatever the command line left at its default."""
    if not cfg.base_url:
        cfg.base_url = env_cfg.base_url
    if not cfg.namespace:
        cfg.namespace = env_cfg.namespace
    if not args.remote_url:
        cfg.remote_url = env_cfg.remote_url
    if not args.store_dir:
        cfg.store_dir = env_cfg.store_dir
    if not args.meta_namespace:
        cfg.meta_namespace = env_cfg.meta_namespace
    for flag, attr in _ENV_BACKED_FLAGS.items():
        if getattr(args, flag) is None:
            setattr(cfg, attr, getattr(env_cfg, attr))
    for attr in ('failure_threshold', 'reset_timeout', 'probe_timeout', 'backoff_base',
                 'max_versions', 'prefetch_enabled', 'prefetch_depth', 'prefetch_delay',
                 'user_agent'):
        setattr(cfg, attr, getattr(env_cfg, attr))
    if not cfg.extra_entity_types:
        cfg.extra_entity_types = list(env_cfg.extra_entity_types)
    return cfg


def print_summary(stats: dict, snapshot, elapsed: float) -> None:
    """Print run summary."""
    print("\n" + "=" * 65)
    print("INDEX COMPLETE")
    print("=" * 65)
    print(f"  Snapshot version:    v{snapshot.version} ({snapshot.namespace})")
    print(f"  Checksum:            {snapshot.checksum[:16]}")
    print(f"  Entities:            {len(snapshot.entities)}")
    hierarchy_stats = snapshot.stats
    print(f"  Roots / orphans:     {hierarchy_stats.get('roots', 0)} / {hierarchy_stats.get('orphans', 0)}")
    print(f"  Max depth:           {hierarchy_stats.get('max_depth', 0)}")
    if stats.get('discovery_strategy'):
        print(f"  Discovery:           {stats['discovery_strategy']}")
    print(f"  Page errors:         {stats.get('errors', 0)}")
    print(f"  Circuit:             {stats.get('circuit_state')}")
    if stats.get('is_fallback'):
        print("  NOTE: fallback index served (nothing could be indexed)")
    print(f"  Total time:          {elapsed:.1f}s")
    print("=" * 65)


def run_cli_with_args(argv=None) -> int:
    """Parse argv, build IndexerRunConfig, run."""
    parser = build_parser()
    args = parser.parse_args(argv)

    cfg = _merge_env(IndexerRunConfig.from_cli_args(args), IndexerRunConfig.from_env(), args)
    if cfg.base_url and not cfg.base_url.startswith(('http://', 'https://')):
        cfg.base_url = 'https://' + cfg.base_url

    errors, warnings = cfg.validate()
    for warning in warnings:
        logger.warning(f"Config: {warning}")
    if errors:
        for error in errors:
            logger.error(f"Config: {error}")
        parser.print_usage()
        return 2

    with MetaIndexer(cfg) as indexer:
        if args.restore:
            snapshot = indexer.restore_snapshot()
            if snapshot is None:
                print(f"No valid stored snapshot for '{cfg.effective_namespace}'")
                return 1
            print_summary(indexer.get_stats(), snapshot, 0.0)
            return 0

        cfg.log_summary()
        start = time.time()
        snapshot = indexer.run(persist=not args.no_persist)
        elapsed = time.time() - start

        outputs = {
            'json': cfg.output_json,
            'csv': cfg.output_csv,
            'yaml': cfg.output_yaml,
            'xml': cfg.output_xml,
        }
        if not any(outputs.values()):
            outputs['json'] = f"{_base_name_from_url(cfg.base_url)}.json"

        exported = []
        for fmt, path in outputs.items():
            if path:
                exported.append(indexer.export_to_file(fmt, path))
        if exported:
            print("\n" + "-" * 40)
            for path in exported:
                print(f"  Exported: {path}")
            print("-" * 40)

        print_summary(indexer.get_stats(), snapshot, elapsed)
    return 0


if __name__ == '__main__':
    sys.exit(run_cli_with_args())
