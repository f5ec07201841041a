"""
Unified Run Configuration
=========================
Single source of truth for every indexer default and runtime limit.

The CLI, the environment and library callers all populate one
``IndexerRunConfig``; the indexer builds its fetcher, caches, breaker,
discovery chain and snapshot manager from it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

from .discovery import (
    DEFAULT_API_ENDPOINTS, DEFAULT_BOOTSTRAP_PATHS, DEFAULT_MANIFEST_PATH,
    DEFAULT_SCAN_DIRECTORIES, DEFAULT_SCAN_PAGE_NAMES,
)
from .fetcher import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Canonical defaults: the ONLY place these numbers live
# ---------------------------------------------------------------------------
_DEFAULTS = {
    "meta_namespace": "page",
    "request_timeout": 10.0,        # seconds per fetch attempt
    "probe_timeout": 2.0,           # seconds per discovery probe / existence check
    "max_retries": 3,               # total attempts per URL
    "backoff_base": 2.0,            # delay after attempt n is backoff_base ** n
    "max_workers": 8,
    "cache_size": 100,
    "cache_ttl": 300.0,             # 5 minutes
    "failure_threshold": 5,
    "reset_timeout": 30.0,
    "max_hierarchy_depth": 10,
    "max_versions": 10,
    "prefetch_enabled": True,
    "prefetch_depth": 2,
    "prefetch_delay": 0.5,
    "store_dir": ".metaindex",
    "remote_url": None,
    "user_agent": DEFAULT_USER_AGENT,
    "output_json": None,
    "output_csv": None,
    "output_yaml": None,
    "output_xml": None,
}

_ENV_PREFIX = "METAINDEX_"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _arg_or_default(args, name: str, key: str):
    """CLI value, or the canonical default when the flag was not given."""
    value = getattr(args, name, None)
    return _DEFAULTS[key] if value is None else value


@dataclass
class IndexerRunConfig:
    """
    Configuration consumed by every indexer subsystem.

    Populate via:
      - ``IndexerRunConfig(base_url=...)``            → all defaults
      - ``IndexerRunConfig.from_cli_args(ns)``        → from argparse Namespace
      - ``IndexerRunConfig.from_env()``               → from ``METAINDEX_*`` variables
    """

    base_url: str = ""
    namespace: str = ""              # empty = host of base_url

    # ---- Extraction ----
    meta_namespace: str = _DEFAULTS["meta_namespace"]
    extra_entity_types: List[str] = field(default_factory=list)

    # ---- Fetching ----
    request_timeout: float = _DEFAULTS["request_timeout"]
    probe_timeout: float = _DEFAULTS["probe_timeout"]
    max_retries: int = _DEFAULTS["max_retries"]
    backoff_base: float = _DEFAULTS["backoff_base"]
    max_workers: int = _DEFAULTS["max_workers"]
    user_agent: str = _DEFAULTS["user_agent"]

    # ---- Caches ----
    cache_size: int = _DEFAULTS["cache_size"]
    cache_ttl: float = _DEFAULTS["cache_ttl"]

    # ---- Circuit breaker ----
    failure_threshold: int = _DEFAULTS["failure_threshold"]
    reset_timeout: float = _DEFAULTS["reset_timeout"]

    # ---- Hierarchy / snapshots ----
    max_hierarchy_depth: int = _DEFAULTS["max_hierarchy_depth"]
    max_versions: int = _DEFAULTS["max_versions"]
    store_dir: str = _DEFAULTS["store_dir"]
    remote_url: Optional[str] = _DEFAULTS["remote_url"]

    # ---- Prefetch ----
    prefetch_enabled: bool = _DEFAULTS["prefetch_enabled"]
    prefetch_depth: int = _DEFAULTS["prefetch_depth"]
    prefetch_delay: float = _DEFAULTS["prefetch_delay"]

    # ---- Discovery ----
    manifest_path: str = DEFAULT_MANIFEST_PATH
    api_endpoints: List[str] = field(default_factory=lambda: list(DEFAULT_API_ENDPOINTS))
    scan_directories: List[str] = field(default_factory=lambda: list(DEFAULT_SCAN_DIRECTORIES))
    scan_page_names: List[str] = field(default_factory=lambda: list(DEFAULT_SCAN_PAGE_NAMES))
    bootstrap_paths: List[str] = field(default_factory=lambda: list(DEFAULT_BOOTSTRAP_PATHS))

    # ---- Output paths (None = skip) ----
    output_json: Optional[str] = _DEFAULTS["output_json"]
    output_csv: Optional[str] = _DEFAULTS["output_csv"]
    output_yaml: Optional[str] = _DEFAULTS["output_yaml"]
    output_xml: Optional[str] = _DEFAULTS["output_xml"]

    @property
    def effective_namespace(self) -> str:
        if self.namespace:
            return self.namespace
        host = urlparse(self.base_url).netloc.lower()
        return host or "default"

    # -----------------------------------------------------------------------
    # Factory helpers
    # -----------------------------------------------------------------------
    @classmethod
    def from_cli_args(cls, args) -> "IndexerRunConfig":
        """Build config from an argparse Namespace (``__main__.py``)."""
        return cls(
            base_url=getattr(args, "url", "") or "",
            namespace=getattr(args, "namespace", None) or "",
            meta_namespace=getattr(args, "meta_namespace", None) or _DEFAULTS["meta_namespace"],
            extra_entity_types=getattr(args, "entity_type", None) or [],
            request_timeout=_arg_or_default(args, "timeout", "request_timeout"),
            max_retries=_arg_or_default(args, "retries", "max_retries"),
            max_workers=_arg_or_default(args, "workers", "max_workers"),
            cache_size=_arg_or_default(args, "cache_size", "cache_size"),
            cache_ttl=_arg_or_default(args, "cache_ttl", "cache_ttl"),
            max_hierarchy_depth=_arg_or_default(args, "max_depth", "max_hierarchy_depth"),
            store_dir=getattr(args, "store_dir", None) or _DEFAULTS["store_dir"],
            remote_url=getattr(args, "remote_url", None),
            output_json=getattr(args, "output_json", None),
            output_csv=getattr(args, "output_csv", None),
            output_yaml=getattr(args, "output_yaml", None),
            output_xml=getattr(args, "output_xml", None),
        )

    @classmethod
    def from_env(cls, environ: Dict[str, str] = None) -> "IndexerRunConfig":
        """Build config from ``METAINDEX_*`` environment variables."""
        env = os.environ if environ is None else environ

        def get(name: str, default=None):
            return env.get(_ENV_PREFIX + name, default)

        cfg = cls(base_url=get("BASE_URL", ""), namespace=get("NAMESPACE", ""))
        converters = {
            "request_timeout": float, "probe_timeout": float, "max_retries": int,
            "backoff_base": float, "max_workers": int, "cache_size": int,
            "cache_ttl": float, "failure_threshold": int, "reset_timeout": float,
            "max_hierarchy_depth": int, "max_versions": int,
            "prefetch_depth": int, "prefetch_delay": float,
            "prefetch_enabled": _env_bool, "store_dir": str, "remote_url": str,
            "meta_namespace": str, "user_agent": str,
        }
        for attr, convert in converters.items():
            raw = get(attr.upper())
            if raw in (None, ""):
                continue
            try:
                setattr(cfg, attr, convert(raw))
            except ValueError:
                logger.warning(f"Ignoring invalid {_ENV_PREFIX}{attr.upper()}={raw!r}")

        types = get("ENTITY_TYPES")
        if types:
            cfg.extra_entity_types = [t.strip() for t in types.split(',') if t.strip()]
        return cfg

    # -----------------------------------------------------------------------
    # Validation
    # -----------------------------------------------------------------------
    def validate(self) -> Tuple[List[str], List[str]]:
        """Return ``(errors, warnings)``; errors make the config unusable."""
        errors: List[str] = []
        warnings: List[str] = []

        if not self.base_url:
            errors.append("base_url is required")
        elif urlparse(self.base_url).scheme not in ('http', 'https'):
            errors.append(f"base_url must be http(s): {self.base_url}")
        if self.max_retries < 1:
            errors.append("max_retries must be at least 1")
        if self.max_workers < 1:
            errors.append("max_workers must be at least 1")
        if self.cache_size < 1:
            errors.append("cache_size must be at least 1")
        if self.failure_threshold < 1:
            errors.append("failure_threshold must be at least 1")
        if self.request_timeout <= 0:
            errors.append("request_timeout must be positive")

        if self.request_timeout > 30:
            warnings.append(f"request_timeout of {self.request_timeout}s is unusually long")
        if self.max_hierarchy_depth > 50:
            warnings.append(f"max_hierarchy_depth of {self.max_hierarchy_depth} is unusually deep")
        if self.max_workers > 16:
            warnings.append(f"{self.max_workers} workers may overload the target site")
        return errors, warnings

    # -----------------------------------------------------------------------
    # Logging helper
    # -----------------------------------------------------------------------
    def log_summary(self) -> None:
        """Emit a structured summary to the logger."""
        logger.info("=" * 60)
        logger.info("INDEX RUN CONFIG")
        logger.info("=" * 60)
        logger.info(f"  Base URL:         {self.base_url}")
        logger.info(f"  Namespace:        {self.effective_namespace}")
        logger.info(f"  Meta Prefix:      {self.meta_namespace}:*")
        logger.info(f"  Timeout:          {self.request_timeout}s per attempt")
        logger.info(f"  Attempts:         {self.max_retries} (backoff base {self.backoff_base})")
        logger.info(f"  Workers:          {self.max_workers}")
        logger.info(f"  Cache:            {self.cache_size} entries, TTL {self.cache_ttl}s")
        logger.info(f"  Breaker:          {self.failure_threshold} failures, reset {self.reset_timeout}s")
        logger.info(f"  Max Depth:        {self.max_hierarchy_depth}")
        logger.info(f"  Store:            {self.store_dir}")
        if self.remote_url:
            logger.info(f"  Remote Store:     {self.remote_url}")
        if self.extra_entity_types:
            logger.info(f"  Extra Types:      {', '.join(self.extra_entity_types)}")
        logger.info("=" * 60)
