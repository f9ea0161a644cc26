"""Enrollment rollup aggregation.

The aggregator is the only writer of an enrollment's derived fields
(``progress_percentage``, ``completed_sections``, ``is_completed`` and
``completed_at``). Rollups are a pure function of the enrollment's cached
``total_sections`` and the user's active, completed progress records, so
recomputing with no intervening change never writes.
"""

from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from uuid import UUID

import structlog

from coursetrack.content.models import SectionGranularity
from coursetrack.content.service import ModuleLayout
from coursetrack.utils import utc_now

from .models import EnrollmentRollup, EnrollmentStatus, ProgressRecord
from .repository import ProgressRepository


logger = structlog.get_logger(__name__)

# Attempts at a conditional rollup write before giving up on a racing status
MAX_WRITE_ATTEMPTS = 3


def calculate_percentage(completed: int, total: int) -> int:
    """Percentage of completed units, rounded half up.

    Returns 0 when the module has no units.
    """
    if total <= 0:
        return 0
    ratio = Decimal(completed) * 100 / Decimal(total)
    return int(ratio.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def count_completed_units(
    records: list[ProgressRecord],
    granularity: SectionGranularity,
    section_sizes: dict[str, int] | None = None,
) -> int:
    """Count completed progress units among active records.

    Under section granularity a section counts once as many of its records
    are completed as it held active items at the last refresh. Sections
    missing from ``section_sizes`` never count.
    """
    completed = [r for r in records if r.is_active and r.is_completed]
    if granularity is not SectionGranularity.SECTION:
        return len(completed)

    done = Counter(r.section for r in completed)
    sizes = section_sizes or {}
    return sum(1 for section, size in sizes.items() if 0 < size <= done[section])


def project_records(
    records: list[ProgressRecord], module_id: UUID, layout: ModuleLayout
) -> list[ProgressRecord]:
    """Place a user's records as a section count refresh would leave them.

    Records of content active in the module are moved into it with their
    current section. Any other record of the module is treated as inactive.
    """
    projected = []
    for record in records:
        section = layout.placements.get(record.content_id)
        if section is None and record.module_id != module_id:
            continue
        record = record.copy()
        record.module_id = module_id
        record.is_active = section is not None
        record.section = record.section if section is None else section
        projected.append(record)
    return projected


@dataclass(frozen=True)
class RollupSnapshot:
    """Derived values of one enrollment at a point in time."""

    status: str
    progress_percentage: int
    completed_sections: int
    total_sections: int
    is_completed: bool
    completed_at: datetime | None

    @classmethod
    def from_rollup(cls, rollup: EnrollmentRollup) -> "RollupSnapshot":
        return cls(
            status=rollup.status,
            progress_percentage=rollup.progress_percentage,
            completed_sections=rollup.completed_sections,
            total_sections=rollup.total_sections,
            is_completed=rollup.is_completed,
            completed_at=rollup.completed_at,
        )


def compute_rollup(
    current: RollupSnapshot,
    completed_units: int,
    total_sections: int,
    now: datetime,
    sticky_completion: bool = True,
) -> RollupSnapshot:
    """Compute the rollup an enrollment should hold.

    Args:
        current: Stored values of the enrollment.
        completed_units: Completed active units, before clamping.
        total_sections: Denominator to use.
        now: Timestamp for a first completion.
        sticky_completion: Keep a completed enrollment completed when the
            module grows.

    Returns:
        The target snapshot. Equal to ``current`` when nothing changed.
    """
    completed = min(completed_units, total_sections)
    percentage = calculate_percentage(completed, total_sections)
    reached = total_sections > 0 and completed >= total_sections

    already_completed = current.completed_at is not None
    is_completed = reached or (sticky_completion and already_completed)
    completed_at = current.completed_at or (now if reached else None)

    status = current.status
    if is_completed and status == EnrollmentStatus.ACTIVE.value:
        status = EnrollmentStatus.COMPLETED.value
    elif not is_completed and status == EnrollmentStatus.COMPLETED.value:
        status = EnrollmentStatus.ACTIVE.value

    return RollupSnapshot(
        status=status,
        progress_percentage=percentage,
        completed_sections=completed,
        total_sections=total_sections,
        is_completed=is_completed,
        completed_at=completed_at,
    )


class RecomputeOutcome(str, Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RecomputeResult:
    """Outcome of one recompute.

    ``before`` is what was stored, ``after`` what the rollup should be. Both
    are None when the enrollment was skipped.
    """

    user_id: UUID
    module_id: UUID
    outcome: RecomputeOutcome
    before: RollupSnapshot | None = None
    after: RollupSnapshot | None = None
    dry_run: bool = False

    @property
    def changed(self) -> bool:
        return self.outcome is RecomputeOutcome.UPDATED

    @property
    def drifted(self) -> bool:
        """Stored percentage disagreed with the recomputed one."""
        if self.before is None or self.after is None:
            return False
        return self.before.progress_percentage != self.after.progress_percentage


class EnrollmentAggregator:
    """Recompute and persist enrollment rollups.

    Never queries the content registry: the denominator is the enrollment's
    cached ``total_sections`` unless a caller passes an override.
    """

    def __init__(
        self,
        repository: ProgressRepository,
        granularity: SectionGranularity | str = SectionGranularity.CONTENT,
        sticky_completion: bool = True,
    ):
        self.repository = repository
        self.granularity = SectionGranularity(granularity)
        self.sticky_completion = sticky_completion

    async def recompute(
        self,
        user_id: UUID,
        module_id: UUID,
        *,
        dry_run: bool = False,
        layout: ModuleLayout | None = None,
    ) -> RecomputeResult:
        """Recompute one enrollment's rollup and write it if it changed.

        Args:
            user_id: User UUID.
            module_id: Module UUID.
            dry_run: Compute and report without writing.
            layout: Fresh module layout to preview a section count refresh
                with. Defaults to the enrollment's cached snapshot and the
                records as stored.

        Returns:
            RecomputeResult with before/after snapshots. Absent or inactive
            enrollments are reported as SKIPPED.
        """
        for _ in range(MAX_WRITE_ATTEMPTS):
            enrollment = await self.repository.get_enrollment(user_id, module_id)
            if enrollment is None or not enrollment.is_active:
                return RecomputeResult(
                    user_id, module_id, RecomputeOutcome.SKIPPED, dry_run=dry_run
                )

            if layout is None:
                total = enrollment.total_sections
                section_sizes = enrollment.section_sizes
                records = await self.repository.list_records(user_id, module_id)
            else:
                total = layout.total_sections
                section_sizes = layout.section_sizes
                records = project_records(
                    await self.repository.list_records(user_id), module_id, layout
                )
            completed_units = count_completed_units(
                records, self.granularity, section_sizes
            )
            if completed_units > total:
                logger.warning(
                    "completed_sections_clamped",
                    user_id=str(user_id),
                    module_id=str(module_id),
                    completed=completed_units,
                    total=total,
                )

            before = RollupSnapshot.from_rollup(enrollment)
            now = utc_now()
            after = compute_rollup(
                before, completed_units, total, now, self.sticky_completion
            )

            # total_sections is owned by the section count maintainer
            if replace(after, total_sections=before.total_sections) == before:
                return RecomputeResult(
                    user_id,
                    module_id,
                    RecomputeOutcome.UNCHANGED,
                    before,
                    after,
                    dry_run,
                )

            if dry_run:
                return RecomputeResult(
                    user_id, module_id, RecomputeOutcome.UPDATED, before, after, True
                )

            updated = enrollment.copy()
            updated.status = after.status
            updated.progress_percentage = after.progress_percentage
            updated.completed_sections = after.completed_sections
            updated.is_completed = after.is_completed
            updated.completed_at = after.completed_at
            updated.last_accessed_at = now

            if await self.repository.save_rollup(updated, enrollment.status):
                logger.info(
                    "rollup_recomputed",
                    user_id=str(user_id),
                    module_id=str(module_id),
                    progress_percentage=after.progress_percentage,
                    completed_sections=after.completed_sections,
                    total_sections=after.total_sections,
                    is_completed=after.is_completed,
                )
                if after.completed_at is not None and before.completed_at is None:
                    logger.info(
                        "enrollment_completed",
                        user_id=str(user_id),
                        module_id=str(module_id),
                    )
                return RecomputeResult(
                    user_id, module_id, RecomputeOutcome.UPDATED, before, after
                )

            # Status changed underneath us (pause, drop); read again
            logger.debug(
                "rollup_write_conflict", user_id=str(user_id), module_id=str(module_id)
            )

        logger.warning(
            "rollup_write_abandoned", user_id=str(user_id), module_id=str(module_id)
        )
        return RecomputeResult(
            user_id, module_id, RecomputeOutcome.SKIPPED, dry_run=dry_run
        )
