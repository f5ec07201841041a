"""
Error taxonomy for the index engine.

Per-page failures (``FetchError``, ``ValidationError``) are isolated and
recorded in batch results; structural failures (``ChecksumMismatch``,
``DiscoveryExhausted``) propagate to the caller while the previous good
snapshot stays authoritative.
"""

from __future__ import annotations

from typing import List, Optional


class MetaIndexError(Exception):
    """Base class for every error raised by ``metaindex``."""


class DiscoveryExhausted(MetaIndexError):
    """Every discovery strategy, bootstrap included, produced nothing."""


class FetchError(MetaIndexError):
    """A URL could not be fetched after all retry attempts.

    Doubles as the per-URL failure record inside a ``BatchResult``.
    """

    def __init__(
        self,
        url: str,
        last_status: Optional[int] = None,
        timed_out: bool = False,
        attempts: int = 0,
        reason: str = "",
    ):
        self.url = url
        self.last_status = last_status
        self.timed_out = timed_out
        self.attempts = attempts
        self.reason = reason
        if timed_out:
            detail = "timed out"
        elif last_status is not None:
            detail = f"HTTP {last_status}"
        else:
            detail = reason or "request failed"
        super().__init__(f"{url}: {detail} after {attempts} attempt(s)")

    def to_dict(self) -> dict:
        return {
            'url': self.url,
            'last_status': self.last_status,
            'timed_out': self.timed_out,
            'attempts': self.attempts,
            'error': str(self),
        }


class ValidationError(MetaIndexError):
    """Extracted page attributes failed validation."""

    def __init__(self, errors: List[str], page_id: Optional[str] = None):
        self.errors = list(errors)
        self.page_id = page_id
        label = page_id or "<unknown>"
        super().__init__(f"Invalid metadata for {label}: {'; '.join(self.errors)}")


class CycleDetected(MetaIndexError):
    """A parent chain loops back on itself.

    The builder records these as warnings rather than raising them.
    """

    def __init__(self, entity_id: str, chain: List[str]):
        self.entity_id = entity_id
        self.chain = list(chain)
        super().__init__(
            f"Cycle detected at '{entity_id}': {' -> '.join(self.chain)}"
        )


class ChecksumMismatch(MetaIndexError):
    """A snapshot's stored checksum does not match its content."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Checksum mismatch: stored {expected[:12]}, computed {actual[:12]}")


class CircuitOpen(MetaIndexError):
    """Network work was refused because the circuit breaker is open."""


class SnapshotStoreError(MetaIndexError):
    """A snapshot backend could not save or load data."""
