"""Enrollment lifecycle and progress breakdown.

Business logic for:
- Enrolling a user in a module (snapshots the module's section count)
- Pausing, resuming and dropping an enrollment
- Detailed per-content breakdown of a module's progress
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import UUID

import structlog

from coursetrack.content.models import ContentType
from coursetrack.content.service import ContentRegistry
from coursetrack.utils import utc_now

from .aggregator import EnrollmentAggregator, calculate_percentage
from .exceptions import (
    AlreadyEnrolledError,
    EnrollmentNotFoundError,
    InvalidEnrollmentTransitionError,
)
from .models import EnrollmentRollup, EnrollmentStatus, ProgressStatus
from .repository import ProgressRepository


logger = structlog.get_logger(__name__)


# Allowed status changes requested by a user or an admin. Completion itself
# is decided by the aggregator.
ALLOWED_STATUS_CHANGES: dict[EnrollmentStatus, set[EnrollmentStatus]] = {
    EnrollmentStatus.ACTIVE: {EnrollmentStatus.PAUSED, EnrollmentStatus.DROPPED},
    EnrollmentStatus.COMPLETED: {EnrollmentStatus.PAUSED, EnrollmentStatus.DROPPED},
    EnrollmentStatus.PAUSED: {EnrollmentStatus.ACTIVE, EnrollmentStatus.DROPPED},
    EnrollmentStatus.DROPPED: {EnrollmentStatus.ACTIVE},
}


@dataclass
class ContentTypeProgress:
    content_type: str
    completed: int = 0
    total: int = 0

    @property
    def percentage(self) -> int:
        return calculate_percentage(self.completed, self.total)


@dataclass
class ContentProgressDetail:
    content_id: UUID
    title: str
    section: str
    content_type: str
    status: str
    progress_percentage: int
    time_spent: int
    score: int | None
    max_score: int | None
    completed_at: datetime | None


@dataclass
class ModuleProgressBreakdown:
    """Enrollment rollup plus per content type and per item detail."""

    enrollment: EnrollmentRollup
    by_content_type: dict[str, ContentTypeProgress] = field(default_factory=dict)
    items: list[ContentProgressDetail] = field(default_factory=list)
    time_spent: int = 0


class EnrollmentService:
    def __init__(
        self,
        registry: ContentRegistry,
        repository: ProgressRepository,
        aggregator: EnrollmentAggregator,
    ):
        self.registry = registry
        self.repository = repository
        self.aggregator = aggregator

    async def enroll(self, user_id: UUID, module_id: UUID) -> EnrollmentRollup:
        """Enroll a user in a module.

        Args:
            user_id: User UUID.
            module_id: Module UUID.

        Returns:
            The new active enrollment.

        Raises:
            AlreadyEnrolledError: An enrollment already exists.
        """
        now = utc_now()
        layout = await self.registry.describe_module(module_id)
        rollup = EnrollmentRollup(
            user_id=user_id,
            module_id=module_id,
            status=EnrollmentStatus.ACTIVE.value,
            total_sections=layout.total_sections,
            section_sizes=layout.section_sizes,
            enrolled_at=now,
            last_accessed_at=now,
        )
        if not await self.repository.create_enrollment(rollup):
            raise AlreadyEnrolledError()

        logger.info(
            "user_enrolled",
            user_id=str(user_id),
            module_id=str(module_id),
            total_sections=rollup.total_sections,
        )
        return rollup

    async def get_enrollment(self, user_id: UUID, module_id: UUID) -> EnrollmentRollup:
        enrollment = await self.repository.get_enrollment(user_id, module_id)
        if enrollment is None:
            raise EnrollmentNotFoundError()
        return enrollment

    async def list_user_enrollments(self, user_id: UUID) -> list[EnrollmentRollup]:
        enrollments = await self.repository.list_user_enrollments(user_id)
        return sorted(
            enrollments,
            key=lambda e: e.enrolled_at or datetime.min.replace(tzinfo=UTC),
            reverse=True,
        )

    async def change_status(
        self, user_id: UUID, module_id: UUID, status: EnrollmentStatus
    ) -> EnrollmentRollup:
        """Pause, resume or drop an enrollment.

        Resuming an enrollment that was completed before returns it to
        ``completed``. Resuming triggers a recompute since progress may have
        been skipped while the enrollment was inactive.

        Raises:
            EnrollmentNotFoundError: No such enrollment.
            InvalidEnrollmentTransitionError: Change not allowed.
        """
        enrollment = await self.get_enrollment(user_id, module_id)
        current = enrollment.enrollment_status

        if status not in ALLOWED_STATUS_CHANGES[current]:
            raise InvalidEnrollmentTransitionError(
                f"Cannot change enrollment from {current.value} to {status.value}"
            )

        target = status
        if status is EnrollmentStatus.ACTIVE and enrollment.completed_at is not None:
            target = EnrollmentStatus.COMPLETED

        now = utc_now()
        if not await self.repository.update_status(
            user_id, module_id, target.value, current.value, now
        ):
            raise InvalidEnrollmentTransitionError(
                "Enrollment changed concurrently, please retry"
            )

        logger.info(
            "enrollment_status_changed",
            user_id=str(user_id),
            module_id=str(module_id),
            from_status=current.value,
            to_status=target.value,
        )

        if target.is_active:
            await self.aggregator.recompute(user_id, module_id)

        return await self.get_enrollment(user_id, module_id)

    async def describe_module_progress(
        self, user_id: UUID, module_id: UUID
    ) -> ModuleProgressBreakdown:
        """Build a detailed, read-only view of a user's module progress."""
        enrollment = await self.get_enrollment(user_id, module_id)
        content = await self.registry.list_module_content(module_id)
        # Keyed by content so a record not yet moved with its content still shows
        records = {r.content_id: r for r in await self.repository.list_records(user_id)}

        breakdown = ModuleProgressBreakdown(
            enrollment=enrollment,
            by_content_type={
                t.value: ContentTypeProgress(content_type=t.value) for t in ContentType
            },
        )
        for item in content:
            record = records.get(item.id)
            type_progress = breakdown.by_content_type.setdefault(
                item.content_type, ContentTypeProgress(content_type=item.content_type)
            )
            type_progress.total += 1
            if record is not None and record.is_completed:
                type_progress.completed += 1
            if record is not None:
                breakdown.time_spent += record.time_spent

            breakdown.items.append(
                ContentProgressDetail(
                    content_id=item.id,
                    title=item.title,
                    section=item.section,
                    content_type=item.content_type,
                    status=record.status if record else ProgressStatus.NOT_STARTED.value,
                    progress_percentage=record.progress_percentage if record else 0,
                    time_spent=record.time_spent if record else 0,
                    score=record.score if record else None,
                    max_score=record.max_score if record else None,
                    completed_at=record.completed_at if record else None,
                )
            )

        return breakdown
