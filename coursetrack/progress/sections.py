"""Section count maintenance.

When content is added, deactivated or moved, every enrollment of the module
carries a stale section snapshot (``total_sections`` and the item count of
each section). The maintainer refreshes the snapshot from the content
registry, places progress records where their content now lives and then
re-aggregates each enrollment, always in that order.
"""

from dataclasses import dataclass, field
from uuid import UUID

import structlog

from coursetrack.content.service import ContentRegistry, ModuleLayout

from .aggregator import EnrollmentAggregator
from .models import EnrollmentRollup
from .repository import EnrollmentKey, ProgressRepository


logger = structlog.get_logger(__name__)


def _snapshot_changed(enrollment: EnrollmentRollup, layout: ModuleLayout) -> bool:
    return (
        enrollment.total_sections != layout.total_sections
        or enrollment.section_sizes != layout.section_sizes
    )


@dataclass
class ModuleRefresh:
    """Result of refreshing one module's enrollments."""

    module_id: UUID
    enrollments: int = 0
    updated: int = 0
    failed_users: list[UUID] = field(default_factory=list)

    @property
    def errors(self) -> int:
        return len(self.failed_users)


@dataclass
class SectionCountSummary:
    """Result of a section count refresh over every module."""

    modules: int = 0
    updated: int = 0
    errors: int = 0
    dry_run: bool = False
    failed_modules: list[UUID] = field(default_factory=list)
    failed_enrollments: list[EnrollmentKey] = field(default_factory=list)


class SectionCountMaintainer:
    def __init__(
        self,
        registry: ContentRegistry,
        repository: ProgressRepository,
        aggregator: EnrollmentAggregator,
    ):
        self.registry = registry
        self.repository = repository
        self.aggregator = aggregator

    async def update_module_section_counts(
        self, module_id: UUID, *, dry_run: bool = False, recompute: bool = True
    ) -> ModuleRefresh:
        """Refresh the section snapshot of every enrollment of a module.

        Args:
            module_id: Module UUID.
            dry_run: Report what would change without writing.
            recompute: Re-aggregate each enrollment after its snapshot and
                records are refreshed. A caller that recomputes everything
                afterwards passes False.

        Returns:
            ModuleRefresh with the number of enrollments whose snapshot
            changed (or would change in a dry run) and the users whose
            refresh failed.
        """
        layout = await self.registry.describe_module(module_id)
        enrollments = await self.repository.list_module_enrollments(module_id)
        refresh = ModuleRefresh(module_id=module_id, enrollments=len(enrollments))

        for enrollment in enrollments:
            if _snapshot_changed(enrollment, layout):
                refresh.updated += 1
            if dry_run:
                continue

            try:
                await self._refresh_enrollment(enrollment, layout, recompute)
            except Exception as e:
                refresh.failed_users.append(enrollment.user_id)
                logger.exception(
                    "section_count_enrollment_failed",
                    user_id=str(enrollment.user_id),
                    module_id=str(module_id),
                    error=str(e),
                )

        logger.info(
            "section_counts_updated",
            module_id=str(module_id),
            total_sections=layout.total_sections,
            enrollments=refresh.enrollments,
            updated=refresh.updated,
            errors=refresh.errors,
            dry_run=dry_run,
        )
        return refresh

    async def update_all_section_counts(
        self, *, dry_run: bool = False, recompute: bool = True
    ) -> SectionCountSummary:
        """Refresh section counts of every module, isolating failures."""
        summary = SectionCountSummary(dry_run=dry_run)

        for module_id in await self.registry.list_module_ids():
            summary.modules += 1
            try:
                refresh = await self.update_module_section_counts(
                    module_id, dry_run=dry_run, recompute=recompute
                )
            except Exception:
                summary.errors += 1
                summary.failed_modules.append(module_id)
                logger.exception("section_count_failed", module_id=str(module_id))
                continue

            summary.updated += refresh.updated
            summary.errors += refresh.errors
            summary.failed_enrollments.extend(
                (user_id, module_id) for user_id in refresh.failed_users
            )

        return summary

    async def _refresh_enrollment(
        self, enrollment: EnrollmentRollup, layout: ModuleLayout, recompute: bool
    ) -> None:
        user_id = enrollment.user_id
        await self._write_snapshot(enrollment, layout)
        others = await self._place_records(enrollment, layout)
        if not recompute:
            return

        await self.aggregator.recompute(user_id, enrollment.module_id)
        for other_module in others:
            # The other module's denominator must be fresh before its rollup
            other = await self.repository.get_enrollment(user_id, other_module)
            if other is None:
                continue
            await self._write_snapshot(
                other, await self.registry.describe_module(other_module)
            )
            await self.aggregator.recompute(user_id, other_module)

    async def _write_snapshot(
        self, enrollment: EnrollmentRollup, layout: ModuleLayout
    ) -> None:
        if not _snapshot_changed(enrollment, layout):
            return
        await self.repository.update_section_snapshot(
            enrollment.user_id,
            enrollment.module_id,
            layout.total_sections,
            layout.section_sizes,
        )

    async def _place_records(
        self, enrollment: EnrollmentRollup, layout: ModuleLayout
    ) -> set[UUID]:
        """Align the user's records with the module's active content.

        Records of content now active in the module are pulled into it,
        records of content moved elsewhere follow their content, and records
        of removed or deactivated content are deactivated.

        Returns:
            Other modules that gained or lost a record.
        """
        module_id = enrollment.module_id
        others: set[UUID] = set()

        for record in await self.repository.list_records(enrollment.user_id):
            section = layout.placements.get(record.content_id)
            if section is not None:
                target = (module_id, section, True)
                if record.module_id != module_id:
                    others.add(record.module_id)
            elif record.module_id == module_id:
                content = await self.registry.get_content(record.content_id)
                if content is not None and content.module_id != module_id:
                    target = (content.module_id, content.section, content.is_active)
                    others.add(content.module_id)
                else:
                    target = (module_id, record.section, False)
            else:
                continue

            if (record.module_id, record.section, record.is_active) == target:
                continue

            target_module, target_section, is_active = target
            await self.repository.update_record_placement(
                record.user_id,
                record.content_id,
                target_module,
                target_section,
                is_active,
            )
            logger.debug(
                "progress_record_placed",
                user_id=str(record.user_id),
                content_id=str(record.content_id),
                module_id=str(target_module),
                is_active=is_active,
            )

        return others
