"""Storage access for content items."""

from typing import Any, Protocol
from uuid import UUID

import structlog

from coursetrack.content.models import ContentItem


logger = structlog.get_logger(__name__)


class ContentRepository(Protocol):
    async def get(self, content_id: UUID) -> ContentItem | None: ...
    async def list_module(self, module_id: UUID) -> list[ContentItem]: ...
    async def list_module_ids(self) -> list[UUID]: ...
    async def save(self, item: ContentItem) -> None: ...


class InMemoryContentRepository:
    def __init__(self, items: list[ContentItem] | None = None) -> None:
        self._items: dict[UUID, ContentItem] = {}
        for item in items or []:
            self._items[item.id] = item

    async def get(self, content_id: UUID) -> ContentItem | None:
        return self._items.get(content_id)

    async def list_module(self, module_id: UUID) -> list[ContentItem]:
        items = [i for i in self._items.values() if i.module_id == module_id]
        return sorted(items, key=lambda i: (i.order, str(i.id)))

    async def list_module_ids(self) -> list[UUID]:
        return list(dict.fromkeys(i.module_id for i in self._items.values()))

    async def save(self, item: ContentItem) -> None:
        self._items[item.id] = item


class CassandraContentRepository:
    """Content items stored in Cassandra (content_items + content_by_module)."""

    def __init__(self, session: Any, keyspace: str):
        self.session = session
        self.keyspace = keyspace
        self._prepare_statements()

    def _prepare_statements(self) -> None:
        """Prepare CQL statements for better performance."""
        self._get_item = self.session.prepare(
            f"SELECT * FROM {self.keyspace}.content_items WHERE id = ?"
        )
        self._list_module = self.session.prepare(
            f"SELECT * FROM {self.keyspace}.content_by_module WHERE module_id = ?"
        )
        self._list_module_ids = self.session.prepare(
            f"SELECT DISTINCT module_id FROM {self.keyspace}.content_by_module"
        )
        self._insert_item = self.session.prepare(
            f"""
            INSERT INTO {self.keyspace}.content_items
            (id, module_id, section, position, content_type, title, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """
        )
        self._insert_by_module = self.session.prepare(
            f"""
            INSERT INTO {self.keyspace}.content_by_module
            (module_id, position, content_id, section, content_type, title, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """
        )
        self._delete_by_module = self.session.prepare(
            f"""
            DELETE FROM {self.keyspace}.content_by_module
            WHERE module_id = ? AND position = ? AND content_id = ?
            """
        )

    async def get(self, content_id: UUID) -> ContentItem | None:
        result = await self.session.aexecute(self._get_item, [content_id])
        row = result.one()
        return ContentItem.from_row(row) if row else None

    async def list_module(self, module_id: UUID) -> list[ContentItem]:
        result = await self.session.aexecute(self._list_module, [module_id])
        return [ContentItem.from_row(row) for row in result]

    async def list_module_ids(self) -> list[UUID]:
        result = await self.session.aexecute(self._list_module_ids)
        return [row.module_id for row in result]

    async def save(self, item: ContentItem) -> None:
        """Upsert an item, moving its listing row if module or order changed."""
        existing = await self.get(item.id)
        if existing is not None and (
            existing.module_id != item.module_id or existing.order != item.order
        ):
            await self.session.aexecute(
                self._delete_by_module,
                [existing.module_id, existing.order, existing.id],
            )
            logger.info(
                "content_item_moved",
                content_id=str(item.id),
                from_module=str(existing.module_id),
                to_module=str(item.module_id),
            )

        await self.session.aexecute(
            self._insert_item,
            [
                item.id,
                item.module_id,
                item.section,
                item.order,
                item.content_type,
                item.title,
                item.is_active,
            ],
        )
        await self.session.aexecute(
            self._insert_by_module,
            [
                item.module_id,
                item.order,
                item.id,
                item.section,
                item.content_type,
                item.title,
                item.is_active,
            ],
        )
