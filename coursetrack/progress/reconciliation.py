"""Batch reconciliation of enrollment rollups.

Drives the aggregator over many enrollments (all of them, one user's or one
module's) in fixed-size batches. Inside a batch at most ``concurrency``
recomputes run at once. A failing enrollment is logged and counted without
stopping the run, and a run can be cancelled between batches and re-run
safely since recompute only writes on change.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID

import structlog

from coursetrack.content.service import ContentRegistry, ModuleLayout
from coursetrack.core.context import RunContext

from .aggregator import EnrollmentAggregator, RecomputeOutcome, RecomputeResult
from .repository import EnrollmentKey, ProgressRepository


logger = structlog.get_logger(__name__)


class ReconcileScope(str, Enum):
    """Which enrollments a reconciliation run covers."""

    ALL = "all"
    USER = "user"
    MODULE = "module"


@dataclass
class ReconciliationOptions:
    batch_size: int = 100
    dry_run: bool = False
    user_id: UUID | None = None
    module_id: UUID | None = None
    concurrency: int = 10
    detect_drift: bool = False
    # Dry runs only: recompute against the registry's current module layout
    # instead of the cached snapshot, previewing a section count refresh
    preview_section_counts: bool = False

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")

    @property
    def scope(self) -> ReconcileScope:
        """User scope wins over module scope; both narrows to one enrollment."""
        if self.user_id is not None:
            return ReconcileScope.USER
        if self.module_id is not None:
            return ReconcileScope.MODULE
        return ReconcileScope.ALL


@dataclass(frozen=True)
class DriftEntry:
    user_id: UUID
    module_id: UUID
    stored_percentage: int
    recomputed_percentage: int


@dataclass(frozen=True)
class ReconcileFailure:
    user_id: UUID
    module_id: UUID
    error: str


@dataclass
class ReconciliationReport:
    """Summary of a reconciliation run.

    ``processed`` counts enrollments handled without error, ``updated`` the
    ones whose rollup changed (or would change in a dry run).
    """

    scope: ReconcileScope = ReconcileScope.ALL
    total_enrollments: int = 0
    processed: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    errors: int = 0
    batches: int = 0
    dry_run: bool = False
    interrupted: bool = False
    run_id: str | None = None
    drifted: list[DriftEntry] = field(default_factory=list)
    failures: list[ReconcileFailure] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if self.total_enrollments == 0:
            return 100.0
        return round(self.processed / self.total_enrollments * 100, 1)

    def record(self, result: RecomputeResult, detect_drift: bool) -> None:
        self.processed += 1
        if result.outcome is RecomputeOutcome.UPDATED:
            self.updated += 1
        elif result.outcome is RecomputeOutcome.UNCHANGED:
            self.unchanged += 1
        else:
            self.skipped += 1

        if detect_drift and result.drifted:
            self.drifted.append(
                DriftEntry(
                    user_id=result.user_id,
                    module_id=result.module_id,
                    stored_percentage=result.before.progress_percentage,
                    recomputed_percentage=result.after.progress_percentage,
                )
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope.value,
            "total_enrollments": self.total_enrollments,
            "processed": self.processed,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "errors": self.errors,
            "batches": self.batches,
            "dry_run": self.dry_run,
            "interrupted": self.interrupted,
            "success_rate": self.success_rate,
            "run_id": self.run_id,
            "drifted": [entry.__dict__ for entry in self.drifted],
            "failures": [failure.__dict__ for failure in self.failures],
        }


async def _chunked(
    keys: list[EnrollmentKey], size: int
) -> AsyncIterator[list[EnrollmentKey]]:
    for start in range(0, len(keys), size):
        yield keys[start : start + size]


Enumeration = tuple[int, AsyncIterator[list[EnrollmentKey]]]


class BatchReconciler:
    """Recompute enrollment rollups in bounded, interruptible batches."""

    def __init__(
        self,
        aggregator: EnrollmentAggregator,
        repository: ProgressRepository,
        registry: ContentRegistry | None = None,
    ):
        self.aggregator = aggregator
        self.repository = repository
        self.registry = registry
        self._enumerators: dict[
            ReconcileScope,
            Callable[[ReconciliationOptions], Awaitable[Enumeration]],
        ] = {
            ReconcileScope.ALL: self._enumerate_all,
            ReconcileScope.USER: self._enumerate_user,
            ReconcileScope.MODULE: self._enumerate_module,
        }

    async def bulk_recalculate(
        self,
        options: ReconciliationOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ReconciliationReport:
        """Recompute every enrollment in scope.

        Args:
            options: Batch size, concurrency, dry run, scope and drift
                detection. Defaults cover all enrollments.
            cancel_event: Set it to stop before the next batch.

        Returns:
            ReconciliationReport with counts, drift entries and failures.
        """
        options = options or ReconciliationOptions()
        report = ReconciliationReport(scope=options.scope, dry_run=options.dry_run)

        with RunContext() as run:
            report.run_id = run.run_id
            total, batches = await self._enumerators[options.scope](options)
            report.total_enrollments = total

            logger.info(
                "reconcile_started",
                scope=options.scope.value,
                total_enrollments=total,
                batch_size=options.batch_size,
                concurrency=options.concurrency,
                dry_run=options.dry_run,
            )

            semaphore = asyncio.Semaphore(options.concurrency)
            layouts: dict[UUID, ModuleLayout] = {}

            async with aclosing(batches):
                async for batch in batches:
                    if cancel_event is not None and cancel_event.is_set():
                        report.interrupted = True
                        logger.warning(
                            "reconcile_interrupted",
                            processed=report.processed,
                            total_enrollments=total,
                        )
                        break

                    report.batches += 1
                    logger.info(
                        "reconcile_batch_started",
                        batch=report.batches,
                        size=len(batch),
                    )
                    await self._run_batch(batch, options, semaphore, layouts, report)

            logger.info(
                "reconcile_finished",
                processed=report.processed,
                updated=report.updated,
                skipped=report.skipped,
                errors=report.errors,
                drifted=len(report.drifted),
                interrupted=report.interrupted,
                dry_run=report.dry_run,
            )

        return report

    async def sync_user_enrollments(
        self,
        user_id: UUID,
        dry_run: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> ReconciliationReport:
        """Recompute every enrollment of one user."""
        return await self.bulk_recalculate(
            ReconciliationOptions(user_id=user_id, dry_run=dry_run), cancel_event
        )

    async def sync_module_enrollments(
        self,
        module_id: UUID,
        dry_run: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> ReconciliationReport:
        """Recompute every enrollment of one module."""
        return await self.bulk_recalculate(
            ReconciliationOptions(module_id=module_id, dry_run=dry_run), cancel_event
        )

    # ==========================================================================
    # Enumeration per scope
    # ==========================================================================

    async def _enumerate_all(self, options: ReconciliationOptions) -> Enumeration:
        total = await self.repository.count_enrollments()
        return total, self.repository.iter_enrollment_keys(options.batch_size)

    async def _enumerate_user(self, options: ReconciliationOptions) -> Enumeration:
        enrollments = await self.repository.list_user_enrollments(options.user_id)
        keys = [
            e.key
            for e in enrollments
            if options.module_id is None or e.module_id == options.module_id
        ]
        return len(keys), _chunked(keys, options.batch_size)

    async def _enumerate_module(self, options: ReconciliationOptions) -> Enumeration:
        enrollments = await self.repository.list_module_enrollments(options.module_id)
        keys = [e.key for e in enrollments]
        return len(keys), _chunked(keys, options.batch_size)

    # ==========================================================================
    # Batch processing
    # ==========================================================================

    async def _run_batch(
        self,
        batch: list[EnrollmentKey],
        options: ReconciliationOptions,
        semaphore: asyncio.Semaphore,
        layouts: dict[UUID, ModuleLayout],
        report: ReconciliationReport,
    ) -> None:
        async def run(key: EnrollmentKey) -> RecomputeResult | BaseException:
            async with semaphore:
                try:
                    return await self._recompute(key, options, layouts)
                except Exception as e:
                    logger.exception(
                        "reconcile_item_failed",
                        user_id=str(key[0]),
                        module_id=str(key[1]),
                        error=str(e),
                    )
                    return e

        outcomes = await asyncio.gather(*(run(key) for key in batch))

        for key, outcome in zip(batch, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                report.errors += 1
                report.failures.append(
                    ReconcileFailure(
                        user_id=key[0], module_id=key[1], error=str(outcome)
                    )
                )
            else:
                report.record(outcome, options.detect_drift)

    async def _recompute(
        self,
        key: EnrollmentKey,
        options: ReconciliationOptions,
        layouts: dict[UUID, ModuleLayout],
    ) -> RecomputeResult:
        user_id, module_id = key
        layout = None
        if options.dry_run and options.preview_section_counts and self.registry:
            if module_id not in layouts:
                layouts[module_id] = await self.registry.describe_module(module_id)
            layout = layouts[module_id]

        return await self.aggregator.recompute(
            user_id, module_id, dry_run=options.dry_run, layout=layout
        )
