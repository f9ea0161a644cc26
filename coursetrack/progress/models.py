"""Database models for progress tracking and enrollment rollups.

Cassandra table definitions for:
- Progress records: One row per user and content item
- Enrollment rollups: Derived per-module progress for a user
- Lookup table: Rollups partitioned by module for module-wide passes

Architecture: Dual-write pattern for rollups so they can be queried from
both the user_id and the module_id perspective.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from coursetrack.utils import ensure_utc_aware


class ProgressStatus(str, Enum):
    """Per-content progress status. Only moves forward."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return _PROGRESS_RANK[self]

    def can_transition_to(self, target: "ProgressStatus") -> bool:
        """Check whether moving to ``target`` keeps status monotonic."""
        return target.rank >= self.rank


_PROGRESS_RANK = {
    ProgressStatus.NOT_STARTED: 0,
    ProgressStatus.IN_PROGRESS: 1,
    ProgressStatus.COMPLETED: 2,
}


class EnrollmentStatus(str, Enum):
    """Module enrollment status."""

    ACTIVE = "active"  # Studying
    PAUSED = "paused"  # Temporarily stopped by the student
    COMPLETED = "completed"  # Finished every section at least once
    DROPPED = "dropped"  # Left the module

    @property
    def is_active(self) -> bool:
        """Active enrollments accept progress and are aggregated."""
        return self in (EnrollmentStatus.ACTIVE, EnrollmentStatus.COMPLETED)


# ==============================================================================
# CQL Table Definitions
# ==============================================================================

# Progress per user and content item
# Partition key: user_id, clustered by content_id, so a content item keeps
# exactly one record per user even when it moves to another module.
# module_id and section follow the item and are rewritten on a move.
PROGRESS_RECORDS_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.progress_records (
    user_id UUID,
    module_id UUID,
    content_id UUID,
    section TEXT,
    content_type TEXT,
    status TEXT,
    progress_percentage INT,
    time_spent INT,
    attempts INT,
    last_position INT,
    score INT,
    max_score INT,
    started_at TIMESTAMP,
    completed_at TIMESTAMP,
    last_accessed_at TIMESTAMP,
    is_active BOOLEAN,
    PRIMARY KEY (user_id, content_id)
)
"""

# Enrollment rollups by user
# For queries: "which modules is this user enrolled in?"
ENROLLMENT_ROLLUPS_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.enrollment_rollups (
    user_id UUID,
    module_id UUID,
    status TEXT,
    progress_percentage INT,
    completed_sections INT,
    total_sections INT,
    section_sizes MAP<TEXT, INT>,
    is_completed BOOLEAN,
    enrolled_at TIMESTAMP,
    completed_at TIMESTAMP,
    last_accessed_at TIMESTAMP,
    PRIMARY KEY (user_id, module_id)
)
"""

# Lookup: enrollment rollups by module
# For queries: "who is enrolled in this module?"
ENROLLMENT_ROLLUPS_BY_MODULE_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.enrollment_rollups_by_module (
    module_id UUID,
    user_id UUID,
    status TEXT,
    progress_percentage INT,
    completed_sections INT,
    total_sections INT,
    section_sizes MAP<TEXT, INT>,
    is_completed BOOLEAN,
    enrolled_at TIMESTAMP,
    completed_at TIMESTAMP,
    last_accessed_at TIMESTAMP,
    PRIMARY KEY (module_id, user_id)
)
"""

PROGRESS_TABLES_CQL = [
    PROGRESS_RECORDS_TABLE_CQL,
    ENROLLMENT_ROLLUPS_TABLE_CQL,
    ENROLLMENT_ROLLUPS_BY_MODULE_TABLE_CQL,
]


# ==============================================================================
# Entity Classes
# ==============================================================================


class ProgressRecord:
    """Progress of one user on one content item.

    Attributes:
        user_id: User UUID
        content_id: Content UUID
        module_id: Module currently holding the content item (denormalized,
            rewritten when the item moves)
        section: Section label (denormalized, used for section granularity)
        content_type: Content type (denormalized)
        status: not_started, in_progress or completed
        progress_percentage: Record-local progress (0-100)
        time_spent: Accumulated seconds spent on the item
        attempts: Number of times the item was started
        last_position: Resume position (seconds for video, page, step...)
        score: Score obtained (labs and games)
        max_score: Maximum obtainable score
        started_at: First transition out of not_started
        completed_at: First transition into completed
        last_accessed_at: Last interaction
        is_active: False once the content item is deactivated or removed
    """

    def __init__(
        self,
        user_id: UUID,
        content_id: UUID,
        module_id: UUID,
        section: str = "",
        content_type: str | None = None,
        status: str = ProgressStatus.NOT_STARTED.value,
        progress_percentage: int = 0,
        time_spent: int = 0,
        attempts: int = 0,
        last_position: int = 0,
        score: int | None = None,
        max_score: int | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        last_accessed_at: datetime | None = None,
        is_active: bool = True,
    ):
        self.user_id = user_id
        self.content_id = content_id
        self.module_id = module_id
        self.section = section
        self.content_type = content_type
        self.status = status
        self.progress_percentage = progress_percentage
        self.time_spent = time_spent
        self.attempts = attempts
        self.last_position = last_position
        self.score = score
        self.max_score = max_score
        self.started_at = ensure_utc_aware(started_at)
        self.completed_at = ensure_utc_aware(completed_at)
        self.last_accessed_at = ensure_utc_aware(last_accessed_at)
        self.is_active = is_active

    @property
    def progress_status(self) -> ProgressStatus:
        return ProgressStatus(self.status)

    @property
    def is_completed(self) -> bool:
        """Check if the content item is completed."""
        return self.status == ProgressStatus.COMPLETED.value

    @property
    def is_started(self) -> bool:
        return self.status != ProgressStatus.NOT_STARTED.value

    def copy(self) -> "ProgressRecord":
        return ProgressRecord(**self.to_dict())

    @classmethod
    def from_row(cls, row: Any) -> "ProgressRecord":
        """Create ProgressRecord instance from Cassandra row."""
        return cls(
            user_id=row.user_id,
            content_id=row.content_id,
            module_id=row.module_id,
            section=row.section or "",
            content_type=row.content_type,
            status=row.status or ProgressStatus.NOT_STARTED.value,
            progress_percentage=row.progress_percentage or 0,
            time_spent=row.time_spent or 0,
            attempts=row.attempts or 0,
            last_position=row.last_position or 0,
            score=row.score,
            max_score=row.max_score,
            started_at=row.started_at,
            completed_at=row.completed_at,
            last_accessed_at=row.last_accessed_at,
            is_active=row.is_active if row.is_active is not None else True,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "user_id": self.user_id,
            "content_id": self.content_id,
            "module_id": self.module_id,
            "section": self.section,
            "content_type": self.content_type,
            "status": self.status,
            "progress_percentage": self.progress_percentage,
            "time_spent": self.time_spent,
            "attempts": self.attempts,
            "last_position": self.last_position,
            "score": self.score,
            "max_score": self.max_score,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "last_accessed_at": self.last_accessed_at,
            "is_active": self.is_active,
        }

    def __repr__(self) -> str:
        return (
            f"<ProgressRecord user={self.user_id} content={self.content_id} "
            f"{self.status} {self.progress_percentage}%>"
        )


class EnrollmentRollup:
    """Enrollment of a user in a module, with derived progress.

    ``progress_percentage``, ``completed_sections``, ``is_completed`` and
    ``completed_at`` are written by the aggregator only. ``total_sections``
    is a snapshot refreshed by the section count maintainer.

    Attributes:
        user_id: User UUID
        module_id: Module UUID
        status: active, paused, completed or dropped
        progress_percentage: round(100 * completed / total), 0 when total is 0
        completed_sections: Completed active units, clamped to total
        total_sections: Active units of the module at last refresh
        section_sizes: Active items per section at last refresh
        is_completed: Whether the module has been completed
        enrolled_at: Enrollment timestamp
        completed_at: First completion timestamp, never cleared
        last_accessed_at: Last rollup change
    """

    def __init__(
        self,
        user_id: UUID,
        module_id: UUID,
        status: str = EnrollmentStatus.ACTIVE.value,
        progress_percentage: int = 0,
        completed_sections: int = 0,
        total_sections: int = 0,
        is_completed: bool = False,
        enrolled_at: datetime | None = None,
        completed_at: datetime | None = None,
        last_accessed_at: datetime | None = None,
        section_sizes: dict[str, int] | None = None,
    ):
        self.user_id = user_id
        self.module_id = module_id
        self.status = status
        self.progress_percentage = progress_percentage
        self.completed_sections = completed_sections
        self.total_sections = total_sections
        self.is_completed = is_completed
        self.enrolled_at = ensure_utc_aware(enrolled_at)
        self.completed_at = ensure_utc_aware(completed_at)
        self.last_accessed_at = ensure_utc_aware(last_accessed_at)
        self.section_sizes = dict(section_sizes or {})

    @property
    def enrollment_status(self) -> EnrollmentStatus:
        return EnrollmentStatus(self.status)

    @property
    def is_active(self) -> bool:
        """Check if the enrollment accepts progress."""
        return self.enrollment_status.is_active

    @property
    def key(self) -> tuple[UUID, UUID]:
        return (self.user_id, self.module_id)

    def copy(self) -> "EnrollmentRollup":
        return EnrollmentRollup(**self.to_dict())

    @classmethod
    def from_row(cls, row: Any) -> "EnrollmentRollup":
        """Create EnrollmentRollup instance from Cassandra row."""
        return cls(
            user_id=row.user_id,
            module_id=row.module_id,
            status=row.status or EnrollmentStatus.ACTIVE.value,
            progress_percentage=row.progress_percentage or 0,
            completed_sections=row.completed_sections or 0,
            total_sections=row.total_sections or 0,
            is_completed=bool(row.is_completed),
            enrolled_at=row.enrolled_at,
            completed_at=row.completed_at,
            last_accessed_at=row.last_accessed_at,
            section_sizes=row.section_sizes,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "user_id": self.user_id,
            "module_id": self.module_id,
            "status": self.status,
            "progress_percentage": self.progress_percentage,
            "completed_sections": self.completed_sections,
            "total_sections": self.total_sections,
            "is_completed": self.is_completed,
            "enrolled_at": self.enrolled_at,
            "completed_at": self.completed_at,
            "last_accessed_at": self.last_accessed_at,
            "section_sizes": dict(self.section_sizes),
        }

    def __repr__(self) -> str:
        return (
            f"<EnrollmentRollup user={self.user_id} module={self.module_id} "
            f"{self.completed_sections}/{self.total_sections} {self.status}>"
        )
