"""
Tests for IndexerRunConfig construction and validation.
"""

import argparse

from metaindex.__main__ import _base_name_from_url, _merge_env, build_parser, run_cli_with_args
from metaindex.run_config import IndexerRunConfig, _DEFAULTS


class TestDefaults:
    """Single source of defaults."""

    def test_dataclass_defaults_match_table(self):
        """Field defaults come from _DEFAULTS."""
        cfg = IndexerRunConfig(base_url="https://example.com")
        assert cfg.max_retries == _DEFAULTS["max_retries"] == 3
        assert cfg.cache_size == _DEFAULTS["cache_size"] == 100
        assert cfg.cache_ttl == 300.0
        assert cfg.failure_threshold == 5
        assert cfg.max_hierarchy_depth == 10
        assert cfg.max_versions == 10

    def test_effective_namespace(self):
        """Namespace defaults to the host of the base URL."""
        assert IndexerRunConfig(base_url="https://Docs.Example.com/x").effective_namespace == "docs.example.com"
        assert IndexerRunConfig(base_url="https://a.com", namespace="custom").effective_namespace == "custom"
        assert IndexerRunConfig().effective_namespace == "default"


class TestFactories:
    """CLI and environment population."""

    def test_from_cli_args(self):
        """argparse values land on the matching fields."""
        args = build_parser().parse_args([
            "https://example.com", "--timeout", "5", "--retries", "2", "--workers", "3",
            "--entity-type", "nebula", "--entity-type", "comet", "--output-csv", "out.csv",
        ])
        cfg = IndexerRunConfig.from_cli_args(args)
        assert cfg.base_url == "https://example.com"
        assert cfg.request_timeout == 5.0
        assert cfg.max_retries == 2
        assert cfg.max_workers == 3
        assert cfg.extra_entity_types == ["nebula", "comet"]
        assert cfg.output_csv == "out.csv"
        assert cfg.output_json is None

    def test_from_cli_args_tolerates_partial_namespace(self):
        """Missing attributes fall back to defaults."""
        cfg = IndexerRunConfig.from_cli_args(argparse.Namespace(url="https://example.com"))
        assert cfg.max_retries == 3
        assert cfg.store_dir == ".metaindex"

    def test_from_env(self):
        """METAINDEX_* variables are converted and applied."""
        cfg = IndexerRunConfig.from_env({
            "METAINDEX_BASE_URL": "https://example.com",
            "METAINDEX_MAX_RETRIES": "4",
            "METAINDEX_CACHE_TTL": "12.5",
            "METAINDEX_PREFETCH_ENABLED": "no",
            "METAINDEX_ENTITY_TYPES": "nebula, comet,",
        })
        assert cfg.base_url == "https://example.com"
        assert cfg.max_retries == 4
        assert cfg.cache_ttl == 12.5
        assert cfg.prefetch_enabled is False
        assert cfg.extra_entity_types == ["nebula", "comet"]

    def test_from_env_ignores_bad_numbers(self):
        """Unparseable values keep the default."""
        cfg = IndexerRunConfig.from_env({"METAINDEX_MAX_WORKERS": "many"})
        assert cfg.max_workers == 8


class TestValidate:
    """Errors block a run; warnings do not."""

    def test_valid(self):
        """Defaults with a URL are clean."""
        errors, warnings = IndexerRunConfig(base_url="https://example.com").validate()
        assert errors == []
        assert warnings == []

    def test_missing_url(self):
        """A base URL is mandatory."""
        errors, _ = IndexerRunConfig().validate()
        assert "base_url is required" in errors

    def test_bad_scheme_and_limits(self):
        """Non-http URLs and non-positive limits are errors."""
        errors, _ = IndexerRunConfig(base_url="ftp://example.com", max_retries=0, cache_size=0).validate()
        assert len(errors) == 3

    def test_warnings(self):
        """Aggressive settings warn."""
        _, warnings = IndexerRunConfig(base_url="https://example.com", max_workers=32,
                                       request_timeout=60).validate()
        assert len(warnings) == 2


class TestCli:
    """Command-line helpers."""

    def test_base_name_from_url(self):
        """Output names are derived from the host."""
        assert _base_name_from_url("https://docs.example.com:8080/x") == "docs_example_com_8080"
        assert _base_name_from_url("not a url") == "index"

    def test_missing_url_exits_with_usage_error(self, monkeypatch):
        """Without a URL the CLI refuses to run."""
        monkeypatch.delenv("METAINDEX_BASE_URL", raising=False)
        assert run_cli_with_args([]) == 2

    def test_environment_fills_unset_flags(self):
        """METAINDEX_* values apply when the matching flag was not given."""
        env = IndexerRunConfig.from_env({
            "METAINDEX_REQUEST_TIMEOUT": "42",
            "METAINDEX_MAX_RETRIES": "7",
            "METAINDEX_MAX_HIERARCHY_DEPTH": "25",
            "METAINDEX_META_NAMESPACE": "doc",
        })
        args = build_parser().parse_args(["https://example.com", "--retries", "2"])
        cfg = _merge_env(IndexerRunConfig.from_cli_args(args), env, args)
        assert cfg.request_timeout == 42.0
        assert cfg.max_hierarchy_depth == 25
        assert cfg.meta_namespace == "doc"
        assert cfg.max_retries == 2

    def test_unset_flags_without_environment_use_defaults(self):
        """With no flag and no variable the canonical default applies."""
        args = build_parser().parse_args(["https://example.com"])
        cfg = _merge_env(IndexerRunConfig.from_cli_args(args), IndexerRunConfig.from_env({}), args)
        assert cfg.request_timeout == _DEFAULTS['request_timeout']
        assert cfg.max_workers == _DEFAULTS['max_workers']
        assert cfg.cache_ttl == _DEFAULTS['cache_ttl']
