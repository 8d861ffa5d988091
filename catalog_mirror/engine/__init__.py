"""Engine components: dump parsing, upstream access, archives, queries and packs.

``search`` and ``packs`` sit on top of the infra layer and are imported from
their modules directly.
"""

from .archive import MediaStripper, digest_file
from .downloader import ArchiveDownloader
from .dump_parser import DumpStreamParser, iter_dump_rows
from .governor import RateGovernor, RetryPolicy, retry
from .mapping import ItemRecord, SetRecord, VariantDescriptor, changed_fields, map_set
from .query import ParsedQuery, QueryCompiler, QueryParser
from .upstream import TokenProvider, UpstreamClient, build_upstream_client

__all__ = [
    "ArchiveDownloader",
    "DumpStreamParser",
    "ItemRecord",
    "MediaStripper",
    "ParsedQuery",
    "QueryCompiler",
    "QueryParser",
    "RateGovernor",
    "RetryPolicy",
    "SetRecord",
    "TokenProvider",
    "UpstreamClient",
    "VariantDescriptor",
    "build_upstream_client",
    "changed_fields",
    "digest_file",
    "iter_dump_rows",
    "map_set",
    "retry",
]
