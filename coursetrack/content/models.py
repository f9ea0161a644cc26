"""Database models for the content registry.

Cassandra table definitions for:
- Content items: One row per authored item, looked up by id
- Content by module: Module-ordered listing used to count sections

Architecture: Dual-write pattern so content can be fetched by id (progress
events) and enumerated per module (section counts) without secondary indexes.
"""

from enum import Enum
from typing import Any
from uuid import UUID


class ContentType(str, Enum):
    """Kind of content item."""

    VIDEO = "video"
    LAB = "lab"
    GAME = "game"
    DOCUMENT = "document"


class SectionGranularity(str, Enum):
    """What one unit of module progress counts."""

    CONTENT = "content"  # Every active content item
    SECTION = "section"  # Every distinct section holding active content


# ==============================================================================
# CQL Table Definitions
# ==============================================================================

CONTENT_ITEMS_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.content_items (
    id UUID PRIMARY KEY,
    module_id UUID,
    section TEXT,
    position INT,
    content_type TEXT,
    title TEXT,
    is_active BOOLEAN
)
"""

# Partition by module, ordered by authoring position
CONTENT_BY_MODULE_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.content_by_module (
    module_id UUID,
    position INT,
    content_id UUID,
    section TEXT,
    content_type TEXT,
    title TEXT,
    is_active BOOLEAN,
    PRIMARY KEY (module_id, position, content_id)
) WITH CLUSTERING ORDER BY (position ASC, content_id ASC)
"""

CONTENT_TABLES_CQL = [
    CONTENT_ITEMS_TABLE_CQL,
    CONTENT_BY_MODULE_TABLE_CQL,
]


# ==============================================================================
# Entity Classes
# ==============================================================================


class ContentItem:
    """Authored content item as seen by the progress engine.

    Attributes:
        id: Content UUID
        module_id: Owning module UUID
        section: Section label inside the module
        order: Position inside the module
        is_active: Inactive items are excluded from progress totals
        content_type: video, lab, game or document
        title: Display title
    """

    def __init__(
        self,
        id: UUID,
        module_id: UUID,
        section: str = "",
        order: int = 0,
        is_active: bool = True,
        content_type: str = ContentType.DOCUMENT.value,
        title: str = "",
    ):
        self.id = id
        self.module_id = module_id
        self.section = section
        self.order = order
        self.is_active = is_active
        self.content_type = content_type
        self.title = title

    @property
    def is_video(self) -> bool:
        return self.content_type == ContentType.VIDEO.value

    @classmethod
    def from_row(cls, row: Any) -> "ContentItem":
        """Create ContentItem from a content_items or content_by_module row."""
        return cls(
            id=getattr(row, "content_id", None) or row.id,
            module_id=row.module_id,
            section=row.section or "",
            order=row.position or 0,
            is_active=bool(row.is_active),
            content_type=row.content_type or ContentType.DOCUMENT.value,
            title=row.title or "",
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "module_id": self.module_id,
            "section": self.section,
            "order": self.order,
            "is_active": self.is_active,
            "content_type": self.content_type,
            "title": self.title,
        }

    def __repr__(self) -> str:
        state = "active" if self.is_active else "inactive"
        return f"<ContentItem {self.id} module={self.module_id} {state}>"
