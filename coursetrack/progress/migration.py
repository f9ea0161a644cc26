"""Enrollment progress migration.

Validates stored data, then brings rollups in line with progress records:
one user's or one module's enrollments, or everything. A full run refreshes
the section snapshot of every module before recomputing all enrollments, so
the recompute sees fresh denominators. A dry run previews the same recompute
against the registry's current layout.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any

import structlog

from coursetrack.content.service import ContentRegistry

from .reconciliation import (
    BatchReconciler,
    ReconciliationOptions,
    ReconciliationReport,
    ReconcileScope,
)
from .repository import ProgressRepository
from .sections import SectionCountMaintainer, SectionCountSummary


logger = structlog.get_logger(__name__)


@dataclass
class DataValidation:
    """Database statistics gathered before a migration."""

    enrollments: int
    progress_records: int
    modules: int
    active_content: int
    empty_module_enrollments: int

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class MigrationReport:
    validation: DataValidation
    reconciliation: ReconciliationReport
    section_counts: SectionCountSummary | None = None


class ProgressMigrator:
    def __init__(
        self,
        registry: ContentRegistry,
        repository: ProgressRepository,
        reconciler: BatchReconciler,
        maintainer: SectionCountMaintainer,
    ):
        self.registry = registry
        self.repository = repository
        self.reconciler = reconciler
        self.maintainer = maintainer
        self._handlers: dict[
            ReconcileScope,
            Callable[
                [ReconciliationOptions, asyncio.Event | None],
                Awaitable[tuple[ReconciliationReport, SectionCountSummary | None]],
            ],
        ] = {
            ReconcileScope.ALL: self._migrate_all,
            ReconcileScope.USER: self._migrate_scoped,
            ReconcileScope.MODULE: self._migrate_scoped,
        }

    async def validate_enrollment_data(self) -> DataValidation:
        """Collect statistics about enrollments, records and content."""
        module_ids = await self.registry.list_module_ids()
        active_content = 0
        for module_id in module_ids:
            active_content += len(await self.registry.list_module_content(module_id))

        empty = 0
        async for page in self.repository.iter_enrollment_keys(500):
            for user_id, module_id in page:
                enrollment = await self.repository.get_enrollment(user_id, module_id)
                if enrollment is not None and enrollment.total_sections == 0:
                    empty += 1

        validation = DataValidation(
            enrollments=await self.repository.count_enrollments(),
            progress_records=await self.repository.count_records(),
            modules=len(module_ids),
            active_content=active_content,
            empty_module_enrollments=empty,
        )
        logger.info("migration_data_validated", **validation.to_dict())
        return validation

    async def run(
        self,
        options: ReconciliationOptions,
        cancel_event: asyncio.Event | None = None,
    ) -> MigrationReport:
        """Validate, then migrate the enrollments selected by ``options``.

        Args:
            options: Scope, batch size, concurrency, dry run and drift flags.
            cancel_event: Set it to stop between batches.

        Returns:
            MigrationReport with validation stats, the reconciliation report
            and, for full runs, the section count summary.
        """
        validation = await self.validate_enrollment_data()
        handler = self._handlers[options.scope]
        reconciliation, section_counts = await handler(options, cancel_event)

        logger.info(
            "migration_finished",
            scope=options.scope.value,
            success_rate=reconciliation.success_rate,
            dry_run=options.dry_run,
        )
        return MigrationReport(
            validation=validation,
            reconciliation=reconciliation,
            section_counts=section_counts,
        )

    async def _migrate_all(
        self, options: ReconciliationOptions, cancel_event: asyncio.Event | None
    ) -> tuple[ReconciliationReport, SectionCountSummary]:
        # Snapshots and record placement only; every recompute happens in the
        # bulk pass
        section_counts = await self.maintainer.update_all_section_counts(
            dry_run=options.dry_run, recompute=False
        )
        if options.dry_run:
            options = replace(options, preview_section_counts=True)
        report = await self.reconciler.bulk_recalculate(options, cancel_event)
        return report, section_counts

    async def _migrate_scoped(
        self, options: ReconciliationOptions, cancel_event: asyncio.Event | None
    ) -> tuple[ReconciliationReport, None]:
        return await self.reconciler.bulk_recalculate(options, cancel_event), None
