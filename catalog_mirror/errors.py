"""Exception hierarchy shared by the ingestion engine."""

from __future__ import annotations

from typing import Any


class CatalogMirrorError(Exception):
    """Base exception for all catalog-mirror errors."""


# Network / upstream
class TransientNetworkError(CatalogMirrorError):
    """Connection-level failure without an HTTP status (timeouts, resets, DNS)."""


class UpstreamError(CatalogMirrorError):
    """HTTP error response from the upstream service."""

    def __init__(self, message: str, status: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class RateLimitError(UpstreamError):
    """HTTP 429 from the upstream service."""


class UpstreamServerError(UpstreamError):
    """HTTP 5xx from the upstream service."""


class UpstreamClientError(UpstreamError):
    """Any other HTTP error status; never retried."""


# Archives / dumps
class ArchiveCorruptionError(CatalogMirrorError):
    """Raised when an archive cannot be read or extracted."""


class ParseError(CatalogMirrorError):
    """Raised when the dump schema cannot be found or a statement is unusable."""


# Storage
class StorageWriteError(CatalogMirrorError):
    """Raised on object store or relational store write failures."""


RETRYABLE_ERRORS = (TransientNetworkError, RateLimitError, UpstreamServerError)


def error_for_status(status: int, message: str, body: Any = None) -> UpstreamError:
    """Map an HTTP status code to the matching taxonomy class."""

    if status == 429:
        return RateLimitError(message, status=status, body=body)
    if status >= 500:
        return UpstreamServerError(message, status=status, body=body)
    return UpstreamClientError(message, status=status, body=body)


__all__ = [
    "ArchiveCorruptionError",
    "CatalogMirrorError",
    "ParseError",
    "RETRYABLE_ERRORS",
    "RateLimitError",
    "StorageWriteError",
    "TransientNetworkError",
    "UpstreamClientError",
    "UpstreamError",
    "UpstreamServerError",
    "error_for_status",
]
