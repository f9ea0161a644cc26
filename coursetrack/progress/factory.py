"""Wiring of the progress engine components."""

from dataclasses import dataclass

from coursetrack.config.settings import Settings
from coursetrack.content.repository import ContentRepository
from coursetrack.content.service import ContentRegistry

from .aggregator import EnrollmentAggregator
from .enrollments import EnrollmentService
from .migration import ProgressMigrator
from .reconciliation import BatchReconciler
from .recorder import ProgressRecorder
from .repository import ProgressRepository
from .sections import SectionCountMaintainer


@dataclass
class ProgressServices:
    settings: Settings
    registry: ContentRegistry
    repository: ProgressRepository
    aggregator: EnrollmentAggregator
    recorder: ProgressRecorder
    enrollments: EnrollmentService
    reconciler: BatchReconciler
    sections: SectionCountMaintainer
    migrator: ProgressMigrator


def build_progress_services(
    content_repository: ContentRepository,
    progress_repository: ProgressRepository,
    settings: Settings,
) -> ProgressServices:
    """Build every progress service on top of the given repositories."""
    registry = ContentRegistry(
        content_repository, granularity=settings.progress_section_granularity
    )
    aggregator = EnrollmentAggregator(
        progress_repository,
        granularity=settings.progress_section_granularity,
        sticky_completion=settings.progress_sticky_completion,
    )
    reconciler = BatchReconciler(aggregator, progress_repository, registry)
    sections = SectionCountMaintainer(registry, progress_repository, aggregator)

    return ProgressServices(
        settings=settings,
        registry=registry,
        repository=progress_repository,
        aggregator=aggregator,
        recorder=ProgressRecorder(
            registry,
            progress_repository,
            aggregator,
            video_completion_threshold=settings.progress_video_completion_threshold,
        ),
        enrollments=EnrollmentService(registry, progress_repository, aggregator),
        reconciler=reconciler,
        sections=sections,
        migrator=ProgressMigrator(registry, progress_repository, reconciler, sections),
    )
