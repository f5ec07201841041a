"""
Snapshot Exporters
Pure transforms from a ``Snapshot`` to bytes in JSON, CSV, YAML or a
sitemap-style XML url-set. Same snapshot in, same bytes out.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import xml.etree.ElementTree as ET
from typing import TYPE_CHECKING, Callable, Dict

import yaml

if TYPE_CHECKING:
    from .snapshot import Snapshot

logger = logging.getLogger(__name__)


CSV_HEADER = ['level', 'type', 'title', 'importance', 'parent', 'depth', 'domain']

SITEMAP_NS = "http://www.sitemaps.org/schemas/sitemap/0.9"

TYPE_PRIORITY = {
    'root': 1.0,
    'category': 0.8,
    'section': 0.8,
    'subsection': 0.6,
    'group': 0.6,
    'navigation': 0.4,
    'supplementary': 0.2,
}
DEFAULT_PRIORITY = 0.5


def _payload(snapshot: "Snapshot", include_metadata: bool) -> dict:
    data = snapshot.to_dict()
    if include_metadata:
        return data
    return {'entities': data['entities']}


def to_json(snapshot: "Snapshot", pretty: bool = True, include_metadata: bool = True) -> bytes:
    """
    Args:
        pretty:           Indented output instead of compact separators
        include_metadata: Full snapshot; when False only the entity map
    """
    data = _payload(snapshot, include_metadata)
    if pretty:
        text = json.dumps(data, indent=2, ensure_ascii=False)
    else:
        text = json.dumps(data, separators=(',', ':'), ensure_ascii=False)
    return text.encode('utf-8')


def to_csv(snapshot: "Snapshot") -> bytes:
    """One row per entity, ordered by id."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator='\n')
    writer.writerow(CSV_HEADER)
    for entity in snapshot.entity_list():
        depth = snapshot.depth_of(entity.id)
        writer.writerow([
            entity.id,
            entity.type,
            entity.title,
            entity.importance,
            entity.parent or '',
            depth if depth is not None else 0,
            snapshot.namespace,
        ])
    return buffer.getvalue().encode('utf-8')


def to_yaml(snapshot: "Snapshot", include_metadata: bool = True) -> bytes:
    data = _payload(snapshot, include_metadata)
    text = yaml.safe_dump(data, default_flow_style=False, sort_keys=False, allow_unicode=True)
    return text.encode('utf-8')


def _lastmod(snapshot: "Snapshot", entity) -> str:
    stamp = entity.timestamps.updated or entity.timestamps.parsed_at or snapshot.generated_at
    return stamp[:10]


def to_xml(snapshot: "Snapshot", base_url: str = None) -> bytes:
    """
    Sitemap url-set: ``loc``, ``lastmod``, ``changefreq`` and ``priority``
    per entity.

    Args:
        base_url: Origin used in ``loc``; defaults to ``https://<namespace>``
    """
    origin = (base_url or f"https://{snapshot.namespace}").rstrip('/')
    urlset = ET.Element('urlset', xmlns=SITEMAP_NS)
    for entity in snapshot.entity_list():
        url = ET.SubElement(urlset, 'url')
        ET.SubElement(url, 'loc').text = f"{origin}/pages/{entity.id}.html"
        ET.SubElement(url, 'lastmod').text = _lastmod(snapshot, entity)
        ET.SubElement(url, 'changefreq').text = 'weekly'
        priority = TYPE_PRIORITY.get(entity.type, DEFAULT_PRIORITY)
        ET.SubElement(url, 'priority').text = f"{priority:.1f}"

    ET.indent(urlset, space='  ')
    buffer = io.BytesIO()
    ET.ElementTree(urlset).write(buffer, encoding='utf-8', xml_declaration=True)
    return buffer.getvalue()


EXPORTERS: Dict[str, Callable[..., bytes]] = {
    'json': to_json,
    'csv': to_csv,
    'yaml': to_yaml,
    'yml': to_yaml,
    'xml': to_xml,
}


def export_snapshot(snapshot: "Snapshot", fmt: str, **options) -> bytes:
    """Dispatch to the exporter for ``fmt``; raises ValueError if unknown."""
    exporter = EXPORTERS.get(fmt.lower())
    if exporter is None:
        raise ValueError(f"Unsupported export format '{fmt}' (expected one of {sorted(EXPORTERS)})")
    data = exporter(snapshot, **options)
    logger.debug(f"[EXPORT] {fmt}: {len(data)} bytes")
    return data
