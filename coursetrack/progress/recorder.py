"""Progress event recording.

Business logic for:
- Starting a content item (idempotent)
- Position updates with video auto-completion
- Completing a content item with an optional score
- Triggering the incremental rollup recompute after every change

Record status only moves forward: not_started -> in_progress -> completed.
Writes are conditional on the status that was read, so concurrent events on
the same record collapse instead of overwriting each other.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

import structlog

from coursetrack.content.models import ContentItem
from coursetrack.content.service import ContentRegistry
from coursetrack.utils import utc_now

from .aggregator import EnrollmentAggregator
from .exceptions import (
    ContentNotFoundError,
    InvalidTransitionError,
    NotEnrolledError,
    ProgressError,
    ProgressValidationError,
)
from .models import EnrollmentRollup, ProgressRecord, ProgressStatus
from .repository import ProgressRepository


logger = structlog.get_logger(__name__)

# Percentage a record gets when first started
STARTED_PERCENTAGE = 1
MAX_WRITE_ATTEMPTS = 3

RecordChange = Callable[[ProgressRecord, datetime], ProgressRecord | None]


@dataclass
class StartResult:
    record: ProgressRecord
    already_started: bool


@dataclass
class CompleteResult:
    record: ProgressRecord
    already_completed: bool


def _mark_started(record: ProgressRecord, now: datetime) -> None:
    record.status = ProgressStatus.IN_PROGRESS.value
    record.progress_percentage = max(record.progress_percentage, STARTED_PERCENTAGE)
    record.started_at = record.started_at or now
    record.attempts += 1


def _is_placed(record: ProgressRecord, content: ContentItem) -> bool:
    return (record.module_id, record.section, record.is_active) == (
        content.module_id,
        content.section,
        True,
    )


def _mark_completed(record: ProgressRecord, now: datetime) -> None:
    if not record.is_started:
        _mark_started(record, now)
    record.status = ProgressStatus.COMPLETED.value
    record.progress_percentage = 100
    record.completed_at = record.completed_at or now


class ProgressRecorder:
    """Records start, position and completion events for one user.

    Every change is followed by a synchronous recompute of the enrollment
    rollup. If that recompute fails the error propagates to the caller; a
    retry re-triggers it and batch reconciliation repairs anything left over.
    """

    def __init__(
        self,
        registry: ContentRegistry,
        repository: ProgressRepository,
        aggregator: EnrollmentAggregator,
        video_completion_threshold: int = 90,
    ):
        self.registry = registry
        self.repository = repository
        self.aggregator = aggregator
        self.video_completion_threshold = video_completion_threshold

    # ==========================================================================
    # Public operations
    # ==========================================================================

    async def start(self, user_id: UUID, content_id: UUID) -> StartResult:
        """Mark a content item as started.

        Starting an item that is already in progress or completed changes
        nothing and reports ``already_started``.

        Raises:
            ContentNotFoundError: Content missing or inactive.
            NotEnrolledError: No active enrollment for the content's module.
        """
        content = await self._resolve(user_id, content_id)

        def change(record: ProgressRecord, now: datetime) -> ProgressRecord | None:
            if record.is_started:
                return None
            _mark_started(record, now)
            record.last_accessed_at = now
            return record

        record, written = await self._apply(user_id, content, change)
        if not written:
            return StartResult(record=record, already_started=True)

        logger.info(
            "progress_started",
            user_id=str(user_id),
            content_id=str(content_id),
            module_id=str(content.module_id),
        )
        await self.aggregator.recompute(user_id, content.module_id)
        return StartResult(record=record, already_started=False)

    async def update_position(
        self,
        user_id: UUID,
        content_id: UUID,
        percentage: int,
        position: int,
        time_spent: int = 0,
    ) -> ProgressRecord:
        """Record playback/reading position for a content item.

        Items not started yet are started implicitly. Videos watched up to the
        completion threshold are completed. Completed items keep their status
        and 100%; only position and time are updated.

        Args:
            user_id: User UUID.
            content_id: Content UUID.
            percentage: Record-local progress (0-100).
            position: Resume position.
            time_spent: Seconds spent since the last update.

        Returns:
            The stored record.

        Raises:
            ProgressValidationError: Values out of range.
            ContentNotFoundError: Content missing or inactive.
            NotEnrolledError: No active enrollment for the content's module.
        """
        if not 0 <= percentage <= 100:
            raise ProgressValidationError("percentage must be between 0 and 100")
        if position < 0 or time_spent < 0:
            raise ProgressValidationError("position and time_spent must be >= 0")

        content = await self._resolve(user_id, content_id)
        auto_complete = (
            content.is_video and percentage >= self.video_completion_threshold
        )

        def change(record: ProgressRecord, now: datetime) -> ProgressRecord:
            if not record.is_started:
                _mark_started(record, now)
            if not record.is_completed:
                if auto_complete:
                    _mark_completed(record, now)
                else:
                    record.progress_percentage = max(percentage, STARTED_PERCENTAGE)
            record.last_position = position
            record.time_spent += time_spent
            record.last_accessed_at = now
            return record

        record, _ = await self._apply(user_id, content, change)
        logger.info(
            "progress_position_updated",
            user_id=str(user_id),
            content_id=str(content_id),
            percentage=record.progress_percentage,
            status=record.status,
        )
        await self.aggregator.recompute(user_id, content.module_id)
        return record

    async def complete(
        self,
        user_id: UUID,
        content_id: UUID,
        score: int | None = None,
        max_score: int | None = None,
    ) -> CompleteResult:
        """Mark a content item as completed.

        Completing an already completed item leaves the record untouched but
        still recomputes the rollup, so a retry heals a failed aggregation.

        Raises:
            ProgressValidationError: Negative score or non-positive max score.
            ContentNotFoundError: Content missing or inactive.
            NotEnrolledError: No active enrollment for the content's module.
        """
        if score is not None and score < 0:
            raise ProgressValidationError("score must be >= 0")
        if max_score is not None and max_score <= 0:
            raise ProgressValidationError("max_score must be > 0")
        if score is not None and max_score is not None:
            score = min(score, max_score)

        content = await self._resolve(user_id, content_id)

        def change(record: ProgressRecord, now: datetime) -> ProgressRecord | None:
            if record.is_completed:
                return None
            _mark_completed(record, now)
            record.last_accessed_at = now
            if score is not None:
                record.score = score
            if max_score is not None:
                record.max_score = max_score
            return record

        record, written = await self._apply(user_id, content, change)
        if written:
            logger.info(
                "progress_completed",
                user_id=str(user_id),
                content_id=str(content_id),
                module_id=str(content.module_id),
                score=record.score,
            )
        await self.aggregator.recompute(user_id, content.module_id)
        return CompleteResult(record=record, already_completed=not written)

    async def get_progress(
        self, user_id: UUID, content_id: UUID
    ) -> ProgressRecord | None:
        """Get the user's record for a content item, None if never touched."""
        content = await self.registry.get_content(content_id)
        if content is None:
            raise ContentNotFoundError()
        return await self.repository.get_record(user_id, content_id)

    # ==========================================================================
    # Internals
    # ==========================================================================

    async def _resolve(self, user_id: UUID, content_id: UUID) -> ContentItem:
        """Check preconditions before any write."""
        content = await self.registry.get_active_content(content_id)
        if content is None:
            raise ContentNotFoundError()

        enrollment = await self.repository.get_enrollment(user_id, content.module_id)
        if not self._can_record(enrollment):
            logger.warning(
                "progress_not_enrolled",
                user_id=str(user_id),
                module_id=str(content.module_id),
            )
            raise NotEnrolledError()
        return content

    @staticmethod
    def _can_record(enrollment: EnrollmentRollup | None) -> bool:
        return enrollment is not None and enrollment.is_active

    async def _follow_content(
        self, record: ProgressRecord, content: ContentItem
    ) -> None:
        """Move a record to the module and section its content now lives in."""
        previous_module = record.module_id
        await self.repository.update_record_placement(
            record.user_id, record.content_id, content.module_id, content.section, True
        )
        record.module_id = content.module_id
        record.section = content.section
        record.is_active = True
        logger.info(
            "progress_record_followed_content",
            user_id=str(record.user_id),
            content_id=str(record.content_id),
            from_module_id=str(previous_module),
            module_id=str(content.module_id),
        )

        if previous_module != content.module_id:
            await self.aggregator.recompute(record.user_id, previous_module)
        await self.aggregator.recompute(record.user_id, content.module_id)

    @staticmethod
    def _new_record(user_id: UUID, content: ContentItem) -> ProgressRecord:
        return ProgressRecord(
            user_id=user_id,
            content_id=content.id,
            module_id=content.module_id,
            section=content.section,
            content_type=content.content_type,
        )

    async def _apply(
        self, user_id: UUID, content: ContentItem, change: RecordChange
    ) -> tuple[ProgressRecord, bool]:
        """Read, change and conditionally write a record.

        Returns:
            The resulting record and whether this call wrote it. ``change``
            returning None means there is nothing to write.
        """
        for _ in range(MAX_WRITE_ATTEMPTS):
            existing = await self.repository.get_record(user_id, content.id)
            if existing is not None and not _is_placed(existing, content):
                await self._follow_content(existing, content)
            current = existing or self._new_record(user_id, content)
            updated = change(current.copy(), utc_now())
            if updated is None:
                return current, False

            if not current.progress_status.can_transition_to(updated.progress_status):
                raise InvalidTransitionError(
                    f"Cannot move from {current.status} to {updated.status}"
                )

            if existing is None:
                _, created = await self.repository.create_record(updated)
                if created:
                    return updated, True
            elif await self.repository.update_record(updated, existing.status):
                return updated, True

            logger.debug(
                "progress_write_conflict",
                user_id=str(user_id),
                content_id=str(content.id),
            )

        raise ProgressError(
            "Progress record is being updated concurrently, please retry",
            "write_conflict",
        )
