"""Tests for batch reconciliation."""

import asyncio
from uuid import UUID, uuid4

import pytest

from coursetrack.progress.aggregator import EnrollmentAggregator
from coursetrack.progress.models import (
    EnrollmentRollup,
    ProgressRecord,
    ProgressStatus,
)
from coursetrack.progress.reconciliation import (
    BatchReconciler,
    ReconciliationOptions,
    ReconciliationReport,
    ReconcileScope,
)


async def _stale_enrollment(
    repo, user_id: UUID, module_id: UUID, total: int = 2, completed: int = 1
) -> None:
    """Enrollment whose stored rollup ignores its completed records."""
    await repo.create_enrollment(
        EnrollmentRollup(user_id=user_id, module_id=module_id, total_sections=total)
    )
    for _ in range(completed):
        await repo.create_record(
            ProgressRecord(
                user_id=user_id,
                content_id=uuid4(),
                module_id=module_id,
                status=ProgressStatus.COMPLETED.value,
                progress_percentage=100,
            )
        )


class FlakyAggregator:
    """Fails recompute for one user, delegates otherwise."""

    def __init__(self, inner: EnrollmentAggregator, failing_user: UUID):
        self.inner = inner
        self.failing_user = failing_user

    async def recompute(self, user_id, module_id, **kwargs):
        if user_id == self.failing_user:
            raise RuntimeError("module was deleted")
        return await self.inner.recompute(user_id, module_id, **kwargs)


class TrackingAggregator:
    """Records the peak number of recomputes in flight."""

    def __init__(self, inner: EnrollmentAggregator, on_call=None):
        self.inner = inner
        self.on_call = on_call
        self.active = 0
        self.peak = 0
        self.calls = 0

    async def recompute(self, user_id, module_id, **kwargs):
        self.calls += 1
        if self.on_call is not None:
            self.on_call()
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0.01)
        self.active -= 1
        return await self.inner.recompute(user_id, module_id, **kwargs)


class TestReconciliationOptions:
    def test_scope_defaults_to_all(self) -> None:
        assert ReconciliationOptions().scope is ReconcileScope.ALL

    def test_user_scope_wins_over_module(self) -> None:
        options = ReconciliationOptions(user_id=uuid4(), module_id=uuid4())
        assert options.scope is ReconcileScope.USER

    def test_module_scope(self) -> None:
        assert ReconciliationOptions(module_id=uuid4()).scope is ReconcileScope.MODULE

    @pytest.mark.parametrize("field", ["batch_size", "concurrency"])
    def test_rejects_non_positive_sizes(self, field: str) -> None:
        with pytest.raises(ValueError):
            ReconciliationOptions(**{field: 0})


class TestReconciliationReport:
    def test_success_rate_of_empty_run(self) -> None:
        assert ReconciliationReport().success_rate == 100.0

    def test_success_rate(self) -> None:
        report = ReconciliationReport(total_enrollments=3, processed=2, errors=1)
        assert report.success_rate == 66.7


class TestBulkRecalculate:
    @pytest.mark.asyncio
    async def test_repairs_and_reports_drift(self, services, progress_repo) -> None:
        user_id, module_id = uuid4(), uuid4()
        await _stale_enrollment(progress_repo, user_id, module_id)

        report = await services.reconciler.bulk_recalculate(
            ReconciliationOptions(detect_drift=True)
        )
        stored = await progress_repo.get_enrollment(user_id, module_id)

        assert report.total_enrollments == 1
        assert report.processed == 1
        assert report.updated == 1
        assert report.errors == 0
        assert report.run_id is not None
        assert len(report.drifted) == 1
        assert report.drifted[0].stored_percentage == 0
        assert report.drifted[0].recomputed_percentage == 50
        assert stored.progress_percentage == 50

    @pytest.mark.asyncio
    async def test_second_run_changes_nothing(self, services, progress_repo) -> None:
        for _ in range(3):
            await _stale_enrollment(progress_repo, uuid4(), uuid4())

        await services.reconciler.bulk_recalculate()
        writes = progress_repo.rollup_writes
        report = await services.reconciler.bulk_recalculate()

        assert report.updated == 0
        assert report.unchanged == 3
        assert progress_repo.rollup_writes == writes

    @pytest.mark.asyncio
    async def test_dry_run_matches_live_run(self, services, progress_repo) -> None:
        for completed in (0, 1, 2):
            await _stale_enrollment(progress_repo, uuid4(), uuid4(), completed=completed)

        dry = await services.reconciler.bulk_recalculate(
            ReconciliationOptions(dry_run=True, detect_drift=True)
        )
        assert progress_repo.rollup_writes == 0

        live = await services.reconciler.bulk_recalculate(
            ReconciliationOptions(detect_drift=True)
        )

        assert dry.dry_run is True
        assert dry.updated == live.updated == 2
        assert dry.unchanged == live.unchanged == 1
        assert {(d.user_id, d.recomputed_percentage) for d in dry.drifted} == {
            (d.user_id, d.recomputed_percentage) for d in live.drifted
        }

    @pytest.mark.asyncio
    async def test_batches(self, services, progress_repo) -> None:
        for _ in range(5):
            await _stale_enrollment(progress_repo, uuid4(), uuid4())

        report = await services.reconciler.bulk_recalculate(
            ReconciliationOptions(batch_size=2)
        )

        assert report.batches == 3
        assert report.processed == 5

    @pytest.mark.asyncio
    async def test_error_is_isolated(self, services, progress_repo) -> None:
        failing_user = uuid4()
        await _stale_enrollment(progress_repo, failing_user, uuid4())
        for _ in range(3):
            await _stale_enrollment(progress_repo, uuid4(), uuid4())
        reconciler = BatchReconciler(
            FlakyAggregator(services.aggregator, failing_user), progress_repo
        )

        report = await reconciler.bulk_recalculate(ReconciliationOptions(batch_size=2))

        assert report.total_enrollments == 4
        assert report.processed == 3
        assert report.updated == 3
        assert report.errors == 1
        assert report.failures[0].user_id == failing_user
        assert "module was deleted" in report.failures[0].error
        assert report.success_rate == 75.0

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, services, progress_repo) -> None:
        for _ in range(8):
            await _stale_enrollment(progress_repo, uuid4(), uuid4())
        tracker = TrackingAggregator(services.aggregator)
        reconciler = BatchReconciler(tracker, progress_repo)

        report = await reconciler.bulk_recalculate(
            ReconciliationOptions(batch_size=8, concurrency=3)
        )

        assert report.processed == 8
        assert tracker.peak == 3

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, services, progress_repo) -> None:
        await _stale_enrollment(progress_repo, uuid4(), uuid4())
        cancel = asyncio.Event()
        cancel.set()

        report = await services.reconciler.bulk_recalculate(cancel_event=cancel)

        assert report.interrupted is True
        assert report.batches == 0
        assert report.processed == 0

    @pytest.mark.asyncio
    async def test_cancel_stops_between_batches(self, services, progress_repo) -> None:
        for _ in range(3):
            await _stale_enrollment(progress_repo, uuid4(), uuid4())
        cancel = asyncio.Event()
        reconciler = BatchReconciler(
            TrackingAggregator(services.aggregator, on_call=cancel.set), progress_repo
        )

        report = await reconciler.bulk_recalculate(
            ReconciliationOptions(batch_size=1), cancel_event=cancel
        )

        assert report.interrupted is True
        assert report.batches == 1
        assert report.processed == 1


class TestScopedRuns:
    @pytest.mark.asyncio
    async def test_user_scope(self, services, progress_repo) -> None:
        user_id, other = uuid4(), uuid4()
        await _stale_enrollment(progress_repo, user_id, uuid4())
        await _stale_enrollment(progress_repo, user_id, uuid4())
        await _stale_enrollment(progress_repo, other, uuid4())

        report = await services.reconciler.sync_user_enrollments(user_id)

        assert report.scope is ReconcileScope.USER
        assert report.total_enrollments == 2
        assert report.updated == 2
        other_rollup = (await progress_repo.list_user_enrollments(other))[0]
        assert other_rollup.progress_percentage == 0

    @pytest.mark.asyncio
    async def test_module_scope(self, services, progress_repo) -> None:
        module_id = uuid4()
        for _ in range(3):
            await _stale_enrollment(progress_repo, uuid4(), module_id)
        await _stale_enrollment(progress_repo, uuid4(), uuid4())

        report = await services.reconciler.sync_module_enrollments(module_id)

        assert report.scope is ReconcileScope.MODULE
        assert report.total_enrollments == 3
        assert report.updated == 3

    @pytest.mark.asyncio
    async def test_user_and_module_narrow_to_one(self, services, progress_repo) -> None:
        user_id, module_id = uuid4(), uuid4()
        await _stale_enrollment(progress_repo, user_id, module_id)
        await _stale_enrollment(progress_repo, user_id, uuid4())

        report = await services.reconciler.bulk_recalculate(
            ReconciliationOptions(user_id=user_id, module_id=module_id)
        )

        assert report.total_enrollments == 1

    @pytest.mark.asyncio
    async def test_scoped_dry_run(self, services, progress_repo) -> None:
        user_id = uuid4()
        await _stale_enrollment(progress_repo, user_id, uuid4())

        report = await services.reconciler.sync_user_enrollments(user_id, dry_run=True)

        assert report.updated == 1
        assert progress_repo.rollup_writes == 0
