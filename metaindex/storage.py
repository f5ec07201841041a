"""
Snapshot Stores
===============
Where snapshots live between runs.

``LocalSnapshotStore`` keeps one JSON file per namespace in a directory.
``RemoteSnapshotStore`` pushes and pulls the same JSON blob over HTTP.
Both satisfy ``SnapshotBackend``; the snapshot manager tries the remote
one first and falls back to the local one.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import List, Optional, Protocol

import requests

from .errors import SnapshotStoreError

logger = logging.getLogger(__name__)


_DEFAULT_STORE_DIR = ".metaindex"
_DEFAULT_KEY = "metaindex_snapshot"


def _safe_name(namespace: str) -> str:
    return re.sub(r'[^A-Za-z0-9_.-]+', '_', namespace) or "default"


class SnapshotBackend(Protocol):
    def save(self, namespace: str, data: dict) -> None: ...

    def load(self, namespace: str) -> Optional[dict]: ...


class LocalSnapshotStore:
    """JSON files under a directory, one per namespace."""

    def __init__(self, directory: str = _DEFAULT_STORE_DIR, key: str = _DEFAULT_KEY):
        """
        Args:
            directory: Folder holding the snapshot files (created on first save)
            key:       File name prefix; files are ``{key}_{namespace}.json``
        """
        self.directory = Path(directory)
        self.key = key

    def path_for(self, namespace: str) -> Path:
        return self.directory / f"{self.key}_{_safe_name(namespace)}.json"

    def save(self, namespace: str, data: dict) -> None:
        path = self.path_for(namespace)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write-then-rename so a crash never leaves half a file behind
            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, path)
        except OSError as exc:
            raise SnapshotStoreError(f"Cannot write {path}: {exc}") from exc
        logger.info(f"[STORE] Saved snapshot to {path.absolute()}")

    def load(self, namespace: str) -> Optional[dict]:
        path = self.path_for(namespace)
        if not path.exists():
            logger.info(f"[STORE] No saved snapshot for '{namespace}'")
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            raise SnapshotStoreError(f"Corrupt snapshot file {path}: {exc}") from exc

    def delete(self, namespace: str) -> bool:
        path = self.path_for(namespace)
        if path.exists():
            path.unlink()
            logger.info(f"[STORE] Removed {path}")
            return True
        return False

    def age_hours(self, namespace: str) -> Optional[float]:
        path = self.path_for(namespace)
        if not path.exists():
            return None
        return (time.time() - path.stat().st_mtime) / 3600

    def namespaces(self) -> List[str]:
        if not self.directory.exists():
            return []
        prefix = f"{self.key}_"
        return sorted(
            p.stem[len(prefix):]
            for p in self.directory.glob(f"{prefix}*.json")
        )


class RemoteSnapshotStore:
    """
    HTTP snapshot backend.

    ``save`` POSTs ``{"namespace": ..., "snapshot": {...}}`` to ``url``;
    ``load`` GETs ``url?namespace=...`` and expects either the snapshot
    itself or ``{"snapshot": {...}}`` back.
    """

    def __init__(self, url: str, session: requests.Session = None, timeout: float = 10.0):
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout

    def save(self, namespace: str, data: dict) -> None:
        try:
            response = self.session.post(
                self.url,
                json={'namespace': namespace, 'snapshot': data},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise SnapshotStoreError(f"Remote save failed: {exc}") from exc
        logger.info(f"[STORE] Pushed snapshot for '{namespace}' to {self.url}")

    def load(self, namespace: str) -> Optional[dict]:
        try:
            response = self.session.get(
                self.url,
                params={'namespace': namespace},
                timeout=self.timeout,
            )
            if response.status_code == 404:
                return None
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise SnapshotStoreError(f"Remote load failed: {exc}") from exc
        if isinstance(payload, dict) and isinstance(payload.get('snapshot'), dict):
            return payload['snapshot']
        return payload if isinstance(payload, dict) else None
