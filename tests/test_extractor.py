"""
Tests for metadata extraction and validation.
"""

import pytest

from metaindex.errors import ValidationError
from metaindex.extractor import MetaExtractor, is_valid_color

from fakes import page_html


class TestExtract:
    """Reading page:* meta tags."""

    def test_reads_namespaced_meta(self):
        """Declared attributes come back keyed by field name."""
        html = page_html("intro", "section", "Intro", parent="home",
                         importance="high", size_modifier="1.5", tags="a, b")
        raw = MetaExtractor().extract(html)
        assert raw['id'] == "intro"
        assert raw['type'] == "section"
        assert raw['title'] == "Intro"
        assert raw['parent'] == "home"
        assert raw['size_modifier'] == "1.5"
        assert raw['tags'] == "a, b"

    def test_level_is_an_alias_for_id(self):
        """``page:level`` supplies the id when no ``page:id`` exists."""
        html = '<html><head><meta name="page:level" content="lvl-1"></head></html>'
        assert MetaExtractor().extract(html)['id'] == "lvl-1"

    def test_explicit_id_beats_level(self):
        """An explicit id wins regardless of order."""
        html = (
            '<html><head>'
            '<meta name="page:id" content="real">'
            '<meta name="page:level" content="legacy">'
            '</head></html>'
        )
        assert MetaExtractor().extract(html)['id'] == "real"

    def test_explicit_id_after_level_replaces_it(self):
        """A later page:id still overrides an earlier page:level."""
        html = (
            '<html><head>'
            '<meta name="page:level" content="legacy">'
            '<meta name="page:id" content="real">'
            '</head></html>'
        )
        assert MetaExtractor().extract(html)['id'] == "real"

    def test_repeated_id_keeps_first(self):
        """A second page:id does not overwrite the first."""
        html = (
            '<html><head>'
            '<meta name="page:id" content="first">'
            '<meta name="page:id" content="second">'
            '<meta name="page:level" content="legacy">'
            '</head></html>'
        )
        assert MetaExtractor().extract(html)['id'] == "first"

    def test_first_declaration_wins(self):
        """Repeated keys keep the first value."""
        html = (
            '<html><head>'
            '<meta name="page:type" content="section">'
            '<meta name="page:type" content="root">'
            '</head></html>'
        )
        assert MetaExtractor().extract(html)['type'] == "section"

    def test_title_falls_back_to_document(self):
        """Without page:title the <title> element is used."""
        html = '<html><head><meta name="page:id" content="x"><title> Hello  World </title></head></html>'
        assert MetaExtractor().extract(html)['title'] == "Hello World"

    def test_title_falls_back_to_h1(self):
        """Without any title the first heading is used."""
        html = '<html><body><h1>Heading</h1></body></html>'
        assert MetaExtractor().extract(html)['title'] == "Heading"

    def test_description_meta_fallback(self):
        """The standard description meta fills in a missing description."""
        html = '<html><head><meta name="description" content="About us"></head></html>'
        assert MetaExtractor().extract(html)['description'] == "About us"

    def test_other_namespace_ignored(self):
        """Only the configured prefix is read."""
        html = page_html("x", "root", "X", namespace="galaxy")
        assert 'id' not in MetaExtractor().extract(html)
        assert MetaExtractor(namespace="galaxy").extract(html)['id'] == "x"

    def test_structure_summary(self):
        """Headings and links are counted."""
        html = (
            '<html><body><h1>A</h1><h2>B</h2><h2>C</h2>'
            '<a href="/local">l</a><a href="https://other.org/">o</a><a href="#top">t</a>'
            '</body></html>'
        )
        page = MetaExtractor().extract_page(html, "https://example.com/pages/a.html")
        assert page.structure.headings == {'h1': 1, 'h2': 2}
        assert page.structure.internal_links == 1
        assert page.structure.external_links == 1


class TestValidate:
    """Fatal errors and warnings."""

    def _raw(self, **overrides):
        raw = {'id': 'intro', 'type': 'section', 'title': 'Intro'}
        raw.update(overrides)
        return raw

    def test_valid_returns_no_warnings(self):
        """A clean map validates silently."""
        assert MetaExtractor().validate(self._raw()) == []

    @pytest.mark.parametrize("missing", ["id", "type", "title"])
    def test_required_fields(self, missing):
        """Each required field is enforced."""
        raw = self._raw()
        del raw[missing]
        with pytest.raises(ValidationError) as exc:
            MetaExtractor().validate(raw)
        assert any(missing in e for e in exc.value.errors)

    def test_bad_id_pattern(self):
        """Ids are restricted to letters, digits, underscore and dash."""
        with pytest.raises(ValidationError):
            MetaExtractor().validate(self._raw(id="has space"))

    def test_unsupported_type(self):
        """Unknown types are rejected until registered."""
        extractor = MetaExtractor()
        with pytest.raises(ValidationError):
            extractor.validate(self._raw(type="nebula"))
        extractor.register_type("nebula")
        assert extractor.validate(self._raw(type="nebula")) == []

    def test_negative_radius(self):
        """Radius must be non-negative."""
        with pytest.raises(ValidationError):
            MetaExtractor().validate(self._raw(radius="-1"))

    def test_non_numeric_angle(self):
        """Numeric fields must parse."""
        with pytest.raises(ValidationError):
            MetaExtractor().validate(self._raw(angle="north"))

    def test_size_modifier_must_be_positive(self):
        """Zero size is meaningless."""
        with pytest.raises(ValidationError):
            MetaExtractor().validate(self._raw(size_modifier="0"))

    def test_large_radius_and_angle_only_warn(self):
        """Suspicious numbers are accepted with warnings."""
        warnings = MetaExtractor().validate(self._raw(radius="5000", angle="400"))
        assert len(warnings) == 2

    def test_all_errors_reported_together(self):
        """Every fatal problem is listed in one exception."""
        with pytest.raises(ValidationError) as exc:
            MetaExtractor().validate({'id': 'bad id', 'type': 'nebula', 'title': '', 'color': 'blue'})
        assert len(exc.value.errors) == 4


class TestColor:
    """Accepted colour notations."""

    @pytest.mark.parametrize("value", [
        "#fff", "#FFD700", "rgb(1, 2, 3)", "rgba(10,20,30,0.5)", "hsl(120, 70%, 60%)",
    ])
    def test_valid(self, value):
        """Hex, rgb, rgba and hsl forms pass."""
        assert is_valid_color(value)

    @pytest.mark.parametrize("value", ["blue", "#ggg", "#12345", "rgb(1,2)"])
    def test_invalid(self, value):
        """Names and malformed forms fail."""
        assert not is_valid_color(value)
