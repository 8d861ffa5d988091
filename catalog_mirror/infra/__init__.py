"""Infra layer utilities (relational storage, catalog persistence, object storage)."""

from .catalog_store import CatalogRepository, DUMP_WATERMARK_KEY
from .object_store import ObjectStore, S3ObjectStore
from .storage import SQLiteManager

__all__ = [
    "CatalogRepository",
    "DUMP_WATERMARK_KEY",
    "ObjectStore",
    "S3ObjectStore",
    "SQLiteManager",
]
