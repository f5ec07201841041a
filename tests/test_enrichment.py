"""
Tests for defaulting and enrichment.
"""

from metaindex.enrichment import (
    DEFAULT_TYPE_PROFILES, EntityEnricher, TypeProfile, default_angle, fill_defaults,
    normalize_angle, parse_flag, parse_tags,
)
from metaindex.extractor import is_valid_color
from metaindex.utils import stable_hash


def _enricher():
    return EntityEnricher(timestamp=lambda: "2024-05-01T00:00:00+00:00")


class TestFillDefaults:
    """Each optional field resolves to the page value, then the type profile."""

    def test_type_profile_defaults(self):
        """A bare root page gets the root profile."""
        entity = _enricher().fill_defaults({'id': 'home', 'type': 'root', 'title': 'Home'})
        profile = DEFAULT_TYPE_PROFILES['root']
        assert entity.positioning.radius == profile.radius
        assert entity.icon == profile.icon
        assert entity.color == profile.color
        assert entity.importance == "high"
        assert entity.content_priority == "critical"
        assert entity.analytics_category == "core"
        assert entity.description == 'Section "Home"'
        assert entity.unlocked is True
        assert entity.parent is None
        assert entity.analytics.parse_count == 1
        assert entity.timestamps.parsed_at == "2024-05-01T00:00:00+00:00"

    def test_page_values_win(self):
        """Declared values override profile defaults."""
        raw = {
            'id': 'intro', 'type': 'section', 'title': 'Intro', 'parent': 'home',
            'radius': '75', 'color': '#123456', 'icon': 'book', 'importance': 'low',
            'unlocked': 'false', 'tags': 'x, y', 'description': 'Start here',
        }
        entity = _enricher().fill_defaults(raw, source_url="https://example.com/pages/intro.html")
        assert entity.positioning.radius == 75.0
        assert entity.color == '#123456'
        assert entity.icon == 'book'
        assert entity.importance == 'low'
        assert entity.content_priority == 'low'
        assert entity.unlocked is False
        assert entity.tags == {'x', 'y'}
        assert entity.description == 'Start here'
        assert entity.parent == 'home'
        assert entity.cache_metadata.source_url == "https://example.com/pages/intro.html"

    def test_default_angle_is_deterministic(self):
        """The same id always lands on the same angle."""
        first = _enricher().fill_defaults({'id': 'intro', 'type': 'section', 'title': 'A'})
        second = _enricher().fill_defaults({'id': 'intro', 'type': 'category', 'title': 'B'})
        assert first.positioning.angle == second.positioning.angle
        assert 0 <= first.positioning.angle < 360
        assert first.positioning.angle == float(abs(stable_hash('intro')) % 360)

    def test_declared_angle_is_normalized(self):
        """Angles wrap into [0, 360)."""
        entity = _enricher().fill_defaults({'id': 'x', 'type': 'section', 'title': 'X', 'angle': '-90'})
        assert entity.positioning.angle == 270.0

    def test_unknown_importance_falls_back_to_type(self):
        """An unrecognized importance is replaced by the profile's."""
        entity = _enricher().fill_defaults({'id': 'x', 'type': 'category', 'title': 'X', 'importance': 'urgent'})
        assert entity.importance == 'medium'

    def test_unregistered_type_uses_computed_color(self):
        """Types without a profile get a hash-derived hsl colour."""
        enricher = _enricher()
        entity = enricher.fill_defaults({'id': 'odd', 'type': 'nebula', 'title': 'Odd'})
        assert entity.color.startswith('hsl(')
        assert is_valid_color(entity.color)
        assert entity.importance == 'low'

    def test_registered_profile(self):
        """register_type makes a custom profile available."""
        enricher = _enricher()
        enricher.register_type('nebula', TypeProfile(300, 'cloud', '#000000', 'deep', 'high'))
        entity = enricher.fill_defaults({'id': 'n', 'type': 'nebula', 'title': 'N'})
        assert entity.positioning.radius == 300
        assert entity.icon == 'cloud'
        assert entity.importance == 'high'

    def test_cache_key_is_stable(self):
        """The cache key depends only on id and source."""
        raw = {'id': 'x', 'type': 'section', 'title': 'X'}
        a = fill_defaults(dict(raw), source_url="https://example.com/x.html")
        b = fill_defaults(dict(raw), source_url="https://example.com/x.html")
        assert a.cache_metadata.cache_key == b.cache_metadata.cache_key
        assert a.cache_metadata.cache_key.startswith("meta_x_")

    def test_bare_id_and_type(self):
        """An {id, type} map enriches; the title falls back to the id."""
        first = fill_defaults({'id': 'x', 'type': 't'})
        second = fill_defaults({'id': 'x', 'type': 't'})
        assert first.title == "x"
        assert first.description == 'Section "x"'
        assert first.positioning.angle == second.positioning.angle == default_angle('x')
        assert first.color == second.color


class TestHelpers:
    """Small pure helpers."""

    def test_stable_hash_known_values(self):
        """Matches the classic 31-multiplier string hash with 32-bit wraparound."""
        assert stable_hash("") == 0
        assert stable_hash("a") == 97
        assert stable_hash("ab") == 97 * 31 + 98

    def test_stable_hash_wraps_signed(self):
        """Long strings stay within the signed 32-bit range."""
        value = stable_hash("x" * 200)
        assert -2**31 <= value < 2**31

    def test_default_angle_range(self):
        """Always in [0, 360)."""
        for entity_id in ("a", "b", "long-identifier", "x" * 50):
            assert 0 <= default_angle(entity_id) < 360

    def test_normalize_angle(self):
        """Wraps both directions."""
        assert normalize_angle(360) == 0.0
        assert normalize_angle(725) == 5.0
        assert normalize_angle(-0.0) == 0.0

    def test_parse_tags(self):
        """Comma lists and iterables both work; blanks are dropped."""
        assert parse_tags("a, b,,c ") == {'a', 'b', 'c'}
        assert parse_tags(['x', ' y ', '']) == {'x', 'y'}
        assert parse_tags(None) == set()

    def test_parse_flag(self):
        """Only an explicit false turns a flag off."""
        assert parse_flag("false") is False
        assert parse_flag(" FALSE ") is False
        assert parse_flag(False) is False
        assert parse_flag("") is True
        assert parse_flag("no") is True
        assert parse_flag(True) is True
