"""Tests for section count maintenance."""

from uuid import uuid4

import pytest

from coursetrack.content.models import ContentItem
from coursetrack.progress.aggregator import RecomputeOutcome
from coursetrack.progress.factory import build_progress_services
from coursetrack.progress.models import EnrollmentStatus


class TestUpdateModuleSectionCounts:
    @pytest.mark.asyncio
    async def test_new_content_refreshes_totals(
        self, services, seed_module, user_id, module_id
    ) -> None:
        items = await seed_module(module_id, count=2)
        await services.enrollments.enroll(user_id, module_id)
        await services.recorder.complete(user_id, items[0].id)

        await services.registry.register(
            ContentItem(id=uuid4(), module_id=module_id, section="extra", order=9)
        )
        refresh = await services.sections.update_module_section_counts(module_id)
        enrollment = await services.enrollments.get_enrollment(user_id, module_id)

        assert refresh.updated == 1
        assert refresh.errors == 0
        assert enrollment.total_sections == 3
        assert enrollment.completed_sections == 1
        assert enrollment.progress_percentage == 33

    @pytest.mark.asyncio
    async def test_leaves_rollups_consistent(
        self, services, seed_module, module_id
    ) -> None:
        """Every enrollment is already at its fixpoint after a refresh."""
        items = await seed_module(module_id, count=3)
        users = [uuid4() for _ in range(3)]
        for index, uid in enumerate(users):
            await services.enrollments.enroll(uid, module_id)
            for item in items[:index]:
                await services.recorder.complete(uid, item.id)

        await services.registry.register(
            ContentItem(id=uuid4(), module_id=module_id, section="bonus", order=5)
        )
        await services.sections.update_module_section_counts(module_id)

        for uid in users:
            result = await services.aggregator.recompute(uid, module_id)
            assert result.outcome is RecomputeOutcome.UNCHANGED
            assert result.after.total_sections == 4

    @pytest.mark.asyncio
    async def test_deactivated_content_leaves_totals(
        self, services, seed_module, progress_repo, user_id, module_id
    ) -> None:
        items = await seed_module(module_id, count=3)
        await services.enrollments.enroll(user_id, module_id)
        await services.recorder.complete(user_id, items[0].id)
        await services.recorder.complete(user_id, items[1].id)

        items[1].is_active = False
        await services.registry.register(items[1])
        await services.sections.update_module_section_counts(module_id)

        enrollment = await services.enrollments.get_enrollment(user_id, module_id)
        records = {
            r.content_id: r for r in await progress_repo.list_records(user_id, module_id)
        }
        assert enrollment.total_sections == 2
        assert enrollment.completed_sections == 1
        assert enrollment.progress_percentage == 50
        assert records[items[1].id].is_active is False
        assert records[items[0].id].is_active is True

    @pytest.mark.asyncio
    async def test_reactivated_content_counts_again(
        self, services, seed_module, progress_repo, user_id, module_id
    ) -> None:
        items = await seed_module(module_id, count=2)
        await services.enrollments.enroll(user_id, module_id)
        await services.recorder.complete(user_id, items[1].id)

        items[1].is_active = False
        await services.registry.register(items[1])
        await services.sections.update_module_section_counts(module_id)
        items[1].is_active = True
        await services.registry.register(items[1])
        await services.sections.update_module_section_counts(module_id)

        enrollment = await services.enrollments.get_enrollment(user_id, module_id)
        assert enrollment.total_sections == 2
        assert enrollment.completed_sections == 1
        assert enrollment.progress_percentage == 50

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(
        self, services, seed_module, progress_repo, user_id, module_id
    ) -> None:
        await seed_module(module_id, count=2)
        await services.enrollments.enroll(user_id, module_id)
        await services.registry.register(
            ContentItem(id=uuid4(), module_id=module_id, section="extra", order=3)
        )

        refresh = await services.sections.update_module_section_counts(
            module_id, dry_run=True
        )
        enrollment = await services.enrollments.get_enrollment(user_id, module_id)

        assert refresh.updated == 1
        assert enrollment.total_sections == 2
        assert progress_repo.rollup_writes == 0

    @pytest.mark.asyncio
    async def test_unchanged_module_reports_zero(
        self, services, seed_module, user_id, module_id
    ) -> None:
        await seed_module(module_id, count=2)
        await services.enrollments.enroll(user_id, module_id)

        refresh = await services.sections.update_module_section_counts(module_id)

        assert refresh.updated == 0

    @pytest.mark.asyncio
    async def test_paused_enrollment_gets_total_only(
        self, services, seed_module, user_id, module_id
    ) -> None:
        await seed_module(module_id, count=2)
        await services.enrollments.enroll(user_id, module_id)
        await services.enrollments.change_status(
            user_id, module_id, EnrollmentStatus.PAUSED
        )
        await services.registry.register(
            ContentItem(id=uuid4(), module_id=module_id, section="extra", order=3)
        )

        await services.sections.update_module_section_counts(module_id)
        enrollment = await services.enrollments.get_enrollment(user_id, module_id)

        assert enrollment.total_sections == 3
        assert enrollment.status == EnrollmentStatus.PAUSED.value


    @pytest.mark.asyncio
    async def test_failed_enrollment_does_not_stop_the_module(
        self, services, seed_module, module_id, monkeypatch
    ) -> None:
        items = await seed_module(module_id, count=2)
        failing, healthy = uuid4(), uuid4()
        await services.enrollments.enroll(failing, module_id)
        await services.enrollments.enroll(healthy, module_id)
        await services.recorder.complete(healthy, items[0].id)
        await services.registry.register(
            ContentItem(id=uuid4(), module_id=module_id, section="extra", order=3)
        )

        recompute = services.aggregator.recompute

        async def flaky_recompute(user_id, module_id, **kwargs):
            if user_id == failing:
                raise RuntimeError("rollup store timeout")
            return await recompute(user_id, module_id, **kwargs)

        monkeypatch.setattr(services.aggregator, "recompute", flaky_recompute)

        refresh = await services.sections.update_module_section_counts(module_id)
        enrollment = await services.enrollments.get_enrollment(healthy, module_id)

        assert refresh.updated == 2
        assert refresh.failed_users == [failing]
        assert enrollment.total_sections == 3
        assert enrollment.progress_percentage == 33

    @pytest.mark.asyncio
    async def test_snapshot_only_leaves_rollups(
        self, services, seed_module, user_id, module_id
    ) -> None:
        items = await seed_module(module_id, count=2)
        await services.enrollments.enroll(user_id, module_id)
        await services.recorder.complete(user_id, items[0].id)
        await services.registry.register(
            ContentItem(id=uuid4(), module_id=module_id, section="extra", order=3)
        )

        refresh = await services.sections.update_module_section_counts(
            module_id, recompute=False
        )
        enrollment = await services.enrollments.get_enrollment(user_id, module_id)

        assert refresh.updated == 1
        assert enrollment.total_sections == 3
        assert enrollment.progress_percentage == 50


class TestContentMoves:
    @pytest.mark.asyncio
    async def test_record_follows_content_to_another_module(
        self, services, seed_module, progress_repo, user_id
    ) -> None:
        source, target = uuid4(), uuid4()
        items = await seed_module(source, count=2)
        await seed_module(target, count=1)
        await services.enrollments.enroll(user_id, source)
        await services.enrollments.enroll(user_id, target)
        await services.recorder.complete(user_id, items[0].id)

        items[0].module_id = target
        await services.registry.register(items[0])
        await services.sections.update_module_section_counts(source)
        await services.sections.update_module_section_counts(target)

        started = await services.recorder.start(user_id, items[0].id)
        records = [
            r
            for r in await progress_repo.list_records(user_id)
            if r.content_id == items[0].id
        ]
        left = await services.enrollments.get_enrollment(user_id, source)
        joined = await services.enrollments.get_enrollment(user_id, target)

        assert started.already_started is True
        assert len(records) == 1
        assert records[0].module_id == target
        assert records[0].is_completed
        assert (left.total_sections, left.completed_sections) == (1, 0)
        assert (joined.total_sections, joined.completed_sections) == (2, 1)
        assert joined.progress_percentage == 50
        assert joined.is_completed is False

    @pytest.mark.asyncio
    async def test_target_refresh_pulls_record_in(
        self, services, seed_module, progress_repo, user_id
    ) -> None:
        """Refreshing only the receiving module is enough."""
        source, target = uuid4(), uuid4()
        items = await seed_module(source, count=2)
        await seed_module(target, count=1)
        await services.enrollments.enroll(user_id, source)
        await services.enrollments.enroll(user_id, target)
        await services.recorder.complete(user_id, items[0].id)

        items[0].module_id = target
        await services.registry.register(items[0])
        await services.sections.update_module_section_counts(target)

        left = await services.enrollments.get_enrollment(user_id, source)
        joined = await services.enrollments.get_enrollment(user_id, target)

        assert await progress_repo.list_records(user_id, source) == []
        assert joined.completed_sections == 1
        assert left.completed_sections == 0

    @pytest.mark.asyncio
    async def test_section_change_within_module(
        self, settings, content_repo, progress_repo, user_id, module_id
    ) -> None:
        services = build_progress_services(
            content_repo,
            progress_repo,
            settings.model_copy(update={"progress_section_granularity": "section"}),
        )
        items = []
        for i, section in enumerate(["intro", "intro", "labs"]):
            items.append(
                await services.registry.register(
                    ContentItem(
                        id=uuid4(), module_id=module_id, section=section, order=i
                    )
                )
            )
        await services.enrollments.enroll(user_id, module_id)
        await services.recorder.complete(user_id, items[0].id)

        items[1].section = "labs"
        await services.registry.register(items[1])
        await services.sections.update_module_section_counts(module_id)
        enrollment = await services.enrollments.get_enrollment(user_id, module_id)

        assert enrollment.section_sizes == {"intro": 1, "labs": 2}
        assert enrollment.completed_sections == 1
        assert enrollment.progress_percentage == 50



class TestUpdateAllSectionCounts:
    @pytest.mark.asyncio
    async def test_failures_are_isolated_per_module(
        self, services, seed_module, monkeypatch
    ) -> None:
        good, bad = uuid4(), uuid4()
        await seed_module(good, count=2)
        await seed_module(bad, count=2)
        user = uuid4()
        await services.enrollments.enroll(user, good)
        await services.enrollments.enroll(user, bad)
        await services.registry.register(
            ContentItem(id=uuid4(), module_id=good, section="extra", order=3)
        )

        count_sections = services.registry.count_sections

        async def flaky_count(module_id):
            if module_id == bad:
                raise RuntimeError("content store unavailable")
            return await count_sections(module_id)

        monkeypatch.setattr(services.registry, "count_sections", flaky_count)

        summary = await services.sections.update_all_section_counts()

        assert summary.modules == 2
        assert summary.errors == 1
        assert summary.failed_modules == [bad]
        assert summary.updated == 1

    @pytest.mark.asyncio
    async def test_enrollment_failures_are_counted(
        self, services, seed_module, user_id, module_id, monkeypatch
    ) -> None:
        await seed_module(module_id, count=2)
        await services.enrollments.enroll(user_id, module_id)

        async def failing_recompute(*args, **kwargs):
            raise RuntimeError("rollup store timeout")

        monkeypatch.setattr(services.aggregator, "recompute", failing_recompute)

        summary = await services.sections.update_all_section_counts()

        assert summary.errors == 1
        assert summary.failed_modules == []
        assert summary.failed_enrollments == [(user_id, module_id)]
