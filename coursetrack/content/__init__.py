"""Read-only registry of authored content items.

Authoring itself happens elsewhere; this package only answers which content
items exist, which are active and how many sections a module has.
"""

from coursetrack.content.models import ContentItem, ContentType, SectionGranularity
from coursetrack.content.repository import (
    CassandraContentRepository,
    ContentRepository,
    InMemoryContentRepository,
)
from coursetrack.content.service import ContentRegistry, ModuleLayout


__all__ = [
    "CassandraContentRepository",
    "ContentItem",
    "ContentRegistry",
    "ContentRepository",
    "ContentType",
    "InMemoryContentRepository",
    "ModuleLayout",
    "SectionGranularity",
]
