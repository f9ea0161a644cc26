"""End-to-end progress scenarios over the in-memory engine."""

from uuid import uuid4

import pytest

from coursetrack.content.models import ContentItem
from coursetrack.progress.aggregator import RecomputeOutcome
from coursetrack.progress.factory import build_progress_services
from coursetrack.progress.models import EnrollmentStatus


class TestModuleCompletion:
    @pytest.mark.asyncio
    async def test_completing_four_sections(
        self, services, seed_module, user_id, module_id
    ) -> None:
        items = await seed_module(module_id, count=4)
        await services.enrollments.enroll(user_id, module_id)

        start = await services.recorder.start(user_id, items[0].id)
        await services.recorder.complete(user_id, items[0].id)
        enrollment = await services.enrollments.get_enrollment(user_id, module_id)

        assert start.already_started is False
        assert enrollment.completed_sections == 1
        assert enrollment.total_sections == 4
        assert enrollment.progress_percentage == 25
        assert enrollment.is_completed is False

        expected = [50, 75, 100]
        for item, percentage in zip(items[1:], expected, strict=True):
            await services.recorder.complete(user_id, item.id)
            enrollment = await services.enrollments.get_enrollment(user_id, module_id)
            assert enrollment.progress_percentage == percentage

        assert enrollment.completed_sections == 4
        assert enrollment.is_completed is True
        assert enrollment.status == EnrollmentStatus.COMPLETED.value
        completed_at = enrollment.completed_at
        assert completed_at is not None

        # Completion is recorded once and stays put
        result = await services.aggregator.recompute(user_id, module_id)
        again = await services.enrollments.get_enrollment(user_id, module_id)
        assert result.outcome is RecomputeOutcome.UNCHANGED
        assert again.completed_at == completed_at

    @pytest.mark.asyncio
    async def test_fifth_section_added_after_completion(
        self, services, seed_module, user_id, module_id
    ) -> None:
        items = await seed_module(module_id, count=4)
        await services.enrollments.enroll(user_id, module_id)
        for item in items:
            await services.recorder.complete(user_id, item.id)
        completed_at = (
            await services.enrollments.get_enrollment(user_id, module_id)
        ).completed_at

        await services.registry.register(
            ContentItem(id=uuid4(), module_id=module_id, section="section-5", order=4)
        )
        await services.sections.update_module_section_counts(module_id)
        result = await services.aggregator.recompute(user_id, module_id)
        enrollment = await services.enrollments.get_enrollment(user_id, module_id)

        assert result.outcome is RecomputeOutcome.UNCHANGED
        assert enrollment.total_sections == 5
        assert enrollment.completed_sections == 4
        assert enrollment.progress_percentage == 80
        assert enrollment.is_completed is True
        assert enrollment.completed_at == completed_at
        assert enrollment.status == EnrollmentStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_fifth_section_without_sticky_completion(
        self, settings, content_repo, progress_repo, user_id, module_id
    ) -> None:
        services = build_progress_services(
            content_repo,
            progress_repo,
            settings.model_copy(update={"progress_sticky_completion": False}),
        )
        for i in range(4):
            await services.registry.register(
                ContentItem(id=uuid4(), module_id=module_id, section=f"s{i}", order=i)
            )
        await services.enrollments.enroll(user_id, module_id)
        for item in await services.registry.list_module_content(module_id):
            await services.recorder.complete(user_id, item.id)
        completed_at = (
            await services.enrollments.get_enrollment(user_id, module_id)
        ).completed_at

        await services.registry.register(
            ContentItem(id=uuid4(), module_id=module_id, section="s4", order=4)
        )
        await services.sections.update_module_section_counts(module_id)
        enrollment = await services.enrollments.get_enrollment(user_id, module_id)

        assert enrollment.progress_percentage == 80
        assert enrollment.is_completed is False
        assert enrollment.status == EnrollmentStatus.ACTIVE.value
        assert enrollment.completed_at == completed_at

    @pytest.mark.asyncio
    async def test_section_granularity_counts_sections(
        self, settings, content_repo, progress_repo, user_id, module_id
    ) -> None:
        services = build_progress_services(
            content_repo,
            progress_repo,
            settings.model_copy(update={"progress_section_granularity": "section"}),
        )
        sections = ["intro", "intro", "labs", "labs"]
        items = []
        for i, section in enumerate(sections):
            items.append(
                await services.registry.register(
                    ContentItem(
                        id=uuid4(), module_id=module_id, section=section, order=i
                    )
                )
            )
        enrollment = await services.enrollments.enroll(user_id, module_id)
        assert enrollment.total_sections == 2

        await services.recorder.complete(user_id, items[0].id)
        await services.recorder.complete(user_id, items[1].id)
        enrollment = await services.enrollments.get_enrollment(user_id, module_id)

        assert enrollment.completed_sections == 1
        assert enrollment.progress_percentage == 50

    @pytest.mark.asyncio
    async def test_section_needs_every_item(
        self, settings, content_repo, progress_repo, user_id, module_id
    ) -> None:
        services = build_progress_services(
            content_repo,
            progress_repo,
            settings.model_copy(update={"progress_section_granularity": "section"}),
        )
        items = []
        for i, section in enumerate(["intro"] * 3 + ["labs"] * 3):
            items.append(
                await services.registry.register(
                    ContentItem(
                        id=uuid4(), module_id=module_id, section=section, order=i
                    )
                )
            )
        await services.enrollments.enroll(user_id, module_id)

        await services.recorder.complete(user_id, items[0].id)
        await services.recorder.complete(user_id, items[3].id)
        partial = await services.enrollments.get_enrollment(user_id, module_id)

        for item in items[1:3]:
            await services.recorder.complete(user_id, item.id)
        one_section = await services.enrollments.get_enrollment(user_id, module_id)

        assert partial.completed_sections == 0
        assert partial.progress_percentage == 0
        assert partial.is_completed is False
        assert one_section.completed_sections == 1
        assert one_section.progress_percentage == 50
        assert one_section.status == EnrollmentStatus.ACTIVE.value
