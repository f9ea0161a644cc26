"""Content registry queries used by the progress engine."""

from collections import Counter
from dataclasses import dataclass, field
from uuid import UUID

import structlog

from coursetrack.content.models import ContentItem, SectionGranularity
from coursetrack.content.repository import ContentRepository


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ModuleLayout:
    """Active content of a module as the progress engine counts it.

    Attributes:
        total_sections: Denominator under the configured granularity
        section_sizes: Active item count per section
        placements: Section of every active content item, by content id
    """

    total_sections: int = 0
    section_sizes: dict[str, int] = field(default_factory=dict)
    placements: dict[UUID, str] = field(default_factory=dict)


class ContentRegistry:
    """Read-only view over authored content grouped by module and section.

    Supplies the denominator of every enrollment rollup. Nothing in the
    progress engine writes content; ``register`` exists for authoring sync
    and local seeding.
    """

    def __init__(
        self,
        repository: ContentRepository,
        granularity: SectionGranularity | str = SectionGranularity.CONTENT,
    ):
        self.repository = repository
        self.granularity = SectionGranularity(granularity)

    async def get_content(self, content_id: UUID) -> ContentItem | None:
        return await self.repository.get(content_id)

    async def get_active_content(self, content_id: UUID) -> ContentItem | None:
        """Get a content item only if it exists and is active."""
        item = await self.repository.get(content_id)
        if item is None or not item.is_active:
            return None
        return item

    async def list_module_content(
        self, module_id: UUID, *, active_only: bool = True
    ) -> list[ContentItem]:
        """List a module's content in authoring order."""
        items = await self.repository.list_module(module_id)
        if active_only:
            return [item for item in items if item.is_active]
        return items

    async def count_sections(self, module_id: UUID) -> int:
        """Count the module's progress units under the configured granularity.

        Args:
            module_id: Module UUID.

        Returns:
            Number of active content items, or of distinct sections holding
            at least one active item.
        """
        items = await self.list_module_content(module_id)
        if self.granularity is SectionGranularity.SECTION:
            return len({item.section for item in items})
        return len(items)

    async def list_module_ids(self) -> list[UUID]:
        return await self.repository.list_module_ids()

    async def register(self, item: ContentItem) -> ContentItem:
        await self.repository.save(item)
        logger.info(
            "content_registered",
            content_id=str(item.id),
            module_id=str(item.module_id),
            is_active=item.is_active,
        )
        return item

    async def describe_module(self, module_id: UUID) -> ModuleLayout:
        """Snapshot the module's active content for rollup computation."""
        total = await self.count_sections(module_id)
        items = await self.list_module_content(module_id)
        return ModuleLayout(
            total_sections=total,
            section_sizes=dict(Counter(item.section for item in items)),
            placements={item.id: item.section for item in items},
        )
