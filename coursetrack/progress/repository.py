"""Storage access for progress records and enrollment rollups.

Two implementations share the ``ProgressRepository`` protocol:

- ``CassandraProgressRepository``: lightweight transactions (``IF NOT EXISTS``
  and ``IF status = ?``) make record creation and status changes atomic.
- ``InMemoryProgressRepository``: the same semantics behind an asyncio lock,
  for development and tests.
"""

import asyncio
from collections.abc import AsyncIterator
from datetime import datetime
from typing import TYPE_CHECKING, Protocol
from uuid import UUID

import structlog
from cassandra.query import SimpleStatement

from .models import EnrollmentRollup, ProgressRecord


if TYPE_CHECKING:
    from cassandra.cluster import Session

logger = structlog.get_logger(__name__)

EnrollmentKey = tuple[UUID, UUID]


class ProgressRepository(Protocol):
    # Progress records
    async def get_record(
        self, user_id: UUID, content_id: UUID
    ) -> ProgressRecord | None: ...
    async def create_record(
        self, record: ProgressRecord
    ) -> tuple[ProgressRecord, bool]: ...
    async def update_record(
        self, record: ProgressRecord, expected_status: str
    ) -> bool: ...
    async def list_records(
        self, user_id: UUID, module_id: UUID | None = None
    ) -> list[ProgressRecord]: ...
    async def update_record_placement(
        self,
        user_id: UUID,
        content_id: UUID,
        module_id: UUID,
        section: str,
        is_active: bool,
    ) -> None: ...
    async def count_records(self) -> int: ...

    # Enrollment rollups
    async def get_enrollment(
        self, user_id: UUID, module_id: UUID
    ) -> EnrollmentRollup | None: ...
    async def create_enrollment(self, rollup: EnrollmentRollup) -> bool: ...
    async def save_rollup(
        self, rollup: EnrollmentRollup, expected_status: str
    ) -> bool: ...
    async def update_section_snapshot(
        self,
        user_id: UUID,
        module_id: UUID,
        total_sections: int,
        section_sizes: dict[str, int],
    ) -> None: ...
    async def update_status(
        self,
        user_id: UUID,
        module_id: UUID,
        status: str,
        expected_status: str,
        last_accessed_at: datetime,
    ) -> bool: ...
    async def list_user_enrollments(self, user_id: UUID) -> list[EnrollmentRollup]: ...
    async def list_module_enrollments(
        self, module_id: UUID
    ) -> list[EnrollmentRollup]: ...
    def iter_enrollment_keys(
        self, page_size: int
    ) -> AsyncIterator[list[EnrollmentKey]]: ...
    async def count_enrollments(self) -> int: ...


# ==============================================================================
# In-memory implementation
# ==============================================================================


class InMemoryProgressRepository:
    """Dict-backed repository. Entities are copied in and out."""

    def __init__(self) -> None:
        self._records: dict[tuple[UUID, UUID], ProgressRecord] = {}
        self._enrollments: dict[EnrollmentKey, EnrollmentRollup] = {}
        self._lock = asyncio.Lock()
        # Number of rollup writes, lets callers observe write-on-change
        self.rollup_writes = 0

    async def get_record(
        self, user_id: UUID, content_id: UUID
    ) -> ProgressRecord | None:
        record = self._records.get((user_id, content_id))
        return record.copy() if record else None

    async def create_record(self, record: ProgressRecord) -> tuple[ProgressRecord, bool]:
        key = (record.user_id, record.content_id)
        async with self._lock:
            existing = self._records.get(key)
            if existing is not None:
                return existing.copy(), False
            self._records[key] = record.copy()
            return record.copy(), True

    async def update_record(self, record: ProgressRecord, expected_status: str) -> bool:
        key = (record.user_id, record.content_id)
        async with self._lock:
            existing = self._records.get(key)
            if existing is None or existing.status != expected_status:
                return False
            self._records[key] = record.copy()
            return True

    async def list_records(
        self, user_id: UUID, module_id: UUID | None = None
    ) -> list[ProgressRecord]:
        return [
            record.copy()
            for (uid, _), record in self._records.items()
            if uid == user_id and (module_id is None or record.module_id == module_id)
        ]

    async def update_record_placement(
        self,
        user_id: UUID,
        content_id: UUID,
        module_id: UUID,
        section: str,
        is_active: bool,
    ) -> None:
        record = self._records.get((user_id, content_id))
        if record is not None:
            record.module_id = module_id
            record.section = section
            record.is_active = is_active

    async def count_records(self) -> int:
        return len(self._records)

    async def get_enrollment(
        self, user_id: UUID, module_id: UUID
    ) -> EnrollmentRollup | None:
        rollup = self._enrollments.get((user_id, module_id))
        return rollup.copy() if rollup else None

    async def create_enrollment(self, rollup: EnrollmentRollup) -> bool:
        async with self._lock:
            if rollup.key in self._enrollments:
                return False
            self._enrollments[rollup.key] = rollup.copy()
            return True

    async def save_rollup(self, rollup: EnrollmentRollup, expected_status: str) -> bool:
        async with self._lock:
            existing = self._enrollments.get(rollup.key)
            if existing is None or existing.status != expected_status:
                return False
            existing.status = rollup.status
            existing.progress_percentage = rollup.progress_percentage
            existing.completed_sections = rollup.completed_sections
            existing.is_completed = rollup.is_completed
            existing.completed_at = rollup.completed_at
            existing.last_accessed_at = rollup.last_accessed_at
            self.rollup_writes += 1
            return True

    async def update_section_snapshot(
        self,
        user_id: UUID,
        module_id: UUID,
        total_sections: int,
        section_sizes: dict[str, int],
    ) -> None:
        existing = self._enrollments.get((user_id, module_id))
        if existing is not None:
            existing.total_sections = total_sections
            existing.section_sizes = dict(section_sizes)

    async def update_status(
        self,
        user_id: UUID,
        module_id: UUID,
        status: str,
        expected_status: str,
        last_accessed_at: datetime,
    ) -> bool:
        async with self._lock:
            existing = self._enrollments.get((user_id, module_id))
            if existing is None or existing.status != expected_status:
                return False
            existing.status = status
            existing.last_accessed_at = last_accessed_at
            return True

    async def list_user_enrollments(self, user_id: UUID) -> list[EnrollmentRollup]:
        return [r.copy() for (uid, _), r in self._enrollments.items() if uid == user_id]

    async def list_module_enrollments(self, module_id: UUID) -> list[EnrollmentRollup]:
        return [
            r.copy() for (_, mid), r in self._enrollments.items() if mid == module_id
        ]

    async def iter_enrollment_keys(
        self, page_size: int
    ) -> AsyncIterator[list[EnrollmentKey]]:
        keys = list(self._enrollments)
        for start in range(0, len(keys), page_size):
            yield keys[start : start + page_size]

    async def count_enrollments(self) -> int:
        return len(self._enrollments)


# ==============================================================================
# Cassandra implementation
# ==============================================================================


class CassandraProgressRepository:
    """Progress records and rollups stored in Cassandra."""

    def __init__(self, session: "Session", keyspace: str):
        self.session = session
        self.keyspace = keyspace
        self._prepare_statements()

    def _prepare_statements(self) -> None:
        """Prepare CQL statements for better performance."""
        ks = self.keyspace

        # Progress records
        self._get_record = self.session.prepare(f"""
            SELECT * FROM {ks}.progress_records
            WHERE user_id = ? AND content_id = ?
        """)
        self._list_records = self.session.prepare(f"""
            SELECT * FROM {ks}.progress_records WHERE user_id = ?
        """)
        self._insert_record = self.session.prepare(f"""
            INSERT INTO {ks}.progress_records
            (user_id, module_id, content_id, section, content_type, status,
             progress_percentage, time_spent, attempts, last_position, score,
             max_score, started_at, completed_at, last_accessed_at, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            IF NOT EXISTS
        """)
        self._update_record = self.session.prepare(f"""
            UPDATE {ks}.progress_records
            SET status = ?, progress_percentage = ?, time_spent = ?, attempts = ?,
                last_position = ?, score = ?, max_score = ?, started_at = ?,
                completed_at = ?, last_accessed_at = ?
            WHERE user_id = ? AND content_id = ?
            IF status = ?
        """)
        self._update_placement = self.session.prepare(f"""
            UPDATE {ks}.progress_records
            SET module_id = ?, section = ?, is_active = ?
            WHERE user_id = ? AND content_id = ?
        """)

        # Enrollment rollups (dual-write: by user and by module)
        self._get_enrollment = self.session.prepare(f"""
            SELECT * FROM {ks}.enrollment_rollups
            WHERE user_id = ? AND module_id = ?
        """)
        self._get_user_enrollments = self.session.prepare(f"""
            SELECT * FROM {ks}.enrollment_rollups WHERE user_id = ?
        """)
        self._get_module_enrollments = self.session.prepare(f"""
            SELECT * FROM {ks}.enrollment_rollups_by_module WHERE module_id = ?
        """)
        self._insert_enrollment = self.session.prepare(f"""
            INSERT INTO {ks}.enrollment_rollups
            (user_id, module_id, status, progress_percentage, completed_sections,
             total_sections, section_sizes, is_completed, enrolled_at,
             completed_at, last_accessed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            IF NOT EXISTS
        """)
        self._insert_enrollment_by_module = self.session.prepare(f"""
            INSERT INTO {ks}.enrollment_rollups_by_module
            (module_id, user_id, status, progress_percentage, completed_sections,
             total_sections, section_sizes, is_completed, enrolled_at,
             completed_at, last_accessed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """)
        self._update_rollup = self.session.prepare(f"""
            UPDATE {ks}.enrollment_rollups
            SET status = ?, progress_percentage = ?, completed_sections = ?,
                is_completed = ?, completed_at = ?, last_accessed_at = ?
            WHERE user_id = ? AND module_id = ?
            IF status = ?
        """)
        self._update_rollup_by_module = self.session.prepare(f"""
            UPDATE {ks}.enrollment_rollups_by_module
            SET status = ?, progress_percentage = ?, completed_sections = ?,
                is_completed = ?, completed_at = ?, last_accessed_at = ?
            WHERE module_id = ? AND user_id = ?
        """)
        self._update_snapshot = self.session.prepare(f"""
            UPDATE {ks}.enrollment_rollups
            SET total_sections = ?, section_sizes = ?
            WHERE user_id = ? AND module_id = ?
        """)
        self._update_snapshot_by_module = self.session.prepare(f"""
            UPDATE {ks}.enrollment_rollups_by_module
            SET total_sections = ?, section_sizes = ?
            WHERE module_id = ? AND user_id = ?
        """)
        self._update_status = self.session.prepare(f"""
            UPDATE {ks}.enrollment_rollups SET status = ?, last_accessed_at = ?
            WHERE user_id = ? AND module_id = ?
            IF status = ?
        """)
        self._update_status_by_module = self.session.prepare(f"""
            UPDATE {ks}.enrollment_rollups_by_module
            SET status = ?, last_accessed_at = ?
            WHERE module_id = ? AND user_id = ?
        """)
        self._count_enrollments = self.session.prepare(
            f"SELECT COUNT(*) AS total FROM {ks}.enrollment_rollups"
        )
        self._count_records = self.session.prepare(
            f"SELECT COUNT(*) AS total FROM {ks}.progress_records"
        )
        self._scan_enrollments_cql = (
            f"SELECT user_id, module_id FROM {ks}.enrollment_rollups"
        )

    # ==========================================================================
    # Progress records
    # ==========================================================================

    async def get_record(
        self, user_id: UUID, content_id: UUID
    ) -> ProgressRecord | None:
        result = await self.session.aexecute(self._get_record, [user_id, content_id])
        row = result.one()
        return ProgressRecord.from_row(row) if row else None

    async def create_record(self, record: ProgressRecord) -> tuple[ProgressRecord, bool]:
        """Insert a record unless one exists.

        Returns:
            The stored record and whether this call created it.
        """
        result = await self.session.aexecute(
            self._insert_record,
            [
                record.user_id,
                record.module_id,
                record.content_id,
                record.section,
                record.content_type,
                record.status,
                record.progress_percentage,
                record.time_spent,
                record.attempts,
                record.last_position,
                record.score,
                record.max_score,
                record.started_at,
                record.completed_at,
                record.last_accessed_at,
                record.is_active,
            ],
        )
        if result.was_applied:
            return record, True

        existing = await self.get_record(record.user_id, record.content_id)
        logger.debug(
            "progress_record_create_lost",
            user_id=str(record.user_id),
            content_id=str(record.content_id),
        )
        return existing or record, False

    async def update_record(self, record: ProgressRecord, expected_status: str) -> bool:
        result = await self.session.aexecute(
            self._update_record,
            [
                record.status,
                record.progress_percentage,
                record.time_spent,
                record.attempts,
                record.last_position,
                record.score,
                record.max_score,
                record.started_at,
                record.completed_at,
                record.last_accessed_at,
                record.user_id,
                record.content_id,
                expected_status,
            ],
        )
        return bool(result.was_applied)

    async def list_records(
        self, user_id: UUID, module_id: UUID | None = None
    ) -> list[ProgressRecord]:
        """List a user's records, optionally only those of one module."""
        rows = await self.session.aexecute(self._list_records, [user_id])
        records = [ProgressRecord.from_row(row) for row in rows]
        if module_id is None:
            return records
        return [record for record in records if record.module_id == module_id]

    async def update_record_placement(
        self,
        user_id: UUID,
        content_id: UUID,
        module_id: UUID,
        section: str,
        is_active: bool,
    ) -> None:
        await self.session.aexecute(
            self._update_placement,
            [module_id, section, is_active, user_id, content_id],
        )

    async def count_records(self) -> int:
        result = await self.session.aexecute(self._count_records)
        row = result.one()
        return row.total if row else 0

    # ==========================================================================
    # Enrollment rollups
    # ==========================================================================

    async def get_enrollment(
        self, user_id: UUID, module_id: UUID
    ) -> EnrollmentRollup | None:
        result = await self.session.aexecute(self._get_enrollment, [user_id, module_id])
        row = result.one()
        return EnrollmentRollup.from_row(row) if row else None

    async def create_enrollment(self, rollup: EnrollmentRollup) -> bool:
        values = [
            rollup.status,
            rollup.progress_percentage,
            rollup.completed_sections,
            rollup.total_sections,
            rollup.section_sizes,
            rollup.is_completed,
            rollup.enrolled_at,
            rollup.completed_at,
            rollup.last_accessed_at,
        ]
        result = await self.session.aexecute(
            self._insert_enrollment, [rollup.user_id, rollup.module_id, *values]
        )
        if not result.was_applied:
            return False

        await self.session.aexecute(
            self._insert_enrollment_by_module,
            [rollup.module_id, rollup.user_id, *values],
        )
        return True

    async def save_rollup(self, rollup: EnrollmentRollup, expected_status: str) -> bool:
        """Write derived fields if the stored status still matches."""
        values = [
            rollup.status,
            rollup.progress_percentage,
            rollup.completed_sections,
            rollup.is_completed,
            rollup.completed_at,
            rollup.last_accessed_at,
        ]
        result = await self.session.aexecute(
            self._update_rollup,
            [*values, rollup.user_id, rollup.module_id, expected_status],
        )
        if not result.was_applied:
            return False

        await self.session.aexecute(
            self._update_rollup_by_module,
            [*values, rollup.module_id, rollup.user_id],
        )
        return True

    async def update_section_snapshot(
        self,
        user_id: UUID,
        module_id: UUID,
        total_sections: int,
        section_sizes: dict[str, int],
    ) -> None:
        await self.session.aexecute(
            self._update_snapshot, [total_sections, section_sizes, user_id, module_id]
        )
        await self.session.aexecute(
            self._update_snapshot_by_module,
            [total_sections, section_sizes, module_id, user_id],
        )

    async def update_status(
        self,
        user_id: UUID,
        module_id: UUID,
        status: str,
        expected_status: str,
        last_accessed_at: datetime,
    ) -> bool:
        result = await self.session.aexecute(
            self._update_status,
            [status, last_accessed_at, user_id, module_id, expected_status],
        )
        if not result.was_applied:
            return False

        await self.session.aexecute(
            self._update_status_by_module,
            [status, last_accessed_at, module_id, user_id],
        )
        return True

    async def list_user_enrollments(self, user_id: UUID) -> list[EnrollmentRollup]:
        rows = await self.session.aexecute(self._get_user_enrollments, [user_id])
        return [EnrollmentRollup.from_row(row) for row in rows]

    async def list_module_enrollments(self, module_id: UUID) -> list[EnrollmentRollup]:
        rows = await self.session.aexecute(self._get_module_enrollments, [module_id])
        return [EnrollmentRollup.from_row(row) for row in rows]

    async def iter_enrollment_keys(
        self, page_size: int
    ) -> AsyncIterator[list[EnrollmentKey]]:
        """Yield (user_id, module_id) pages of a full table scan."""
        statement = SimpleStatement(self._scan_enrollments_cql, fetch_size=page_size)
        paging_state = None
        while True:
            result = await self.session.aexecute(
                statement, paging_state=paging_state
            )
            page = [(row.user_id, row.module_id) for row in result.current_rows]
            if page:
                yield page
            paging_state = result.paging_state
            if paging_state is None:
                break

    async def count_enrollments(self) -> int:
        result = await self.session.aexecute(self._count_enrollments)
        row = result.one()
        return row.total if row else 0
