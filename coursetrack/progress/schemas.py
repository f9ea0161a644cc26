"""Pydantic schemas for progress tracking.

Request and response models for:
- Progress events (start, position, complete)
- Enrollments and module breakdowns
- Admin reconciliation and section count refreshes
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .aggregator import RecomputeResult
from .enrollments import ModuleProgressBreakdown
from .models import EnrollmentRollup, EnrollmentStatus, ProgressRecord, ProgressStatus
from .reconciliation import ReconciliationReport


# ==============================================================================
# Progress Event Schemas
# ==============================================================================


class StartContentRequest(BaseModel):
    content_id: UUID = Field(..., description="Content UUID")


class UpdatePositionRequest(BaseModel):
    """Position update (sent periodically by players and readers)."""

    content_id: UUID = Field(..., description="Content UUID")
    percentage: int = Field(..., ge=0, le=100, description="Item progress 0-100")
    position: int = Field(default=0, ge=0, description="Resume position")
    time_spent: int = Field(
        default=0, ge=0, description="Seconds spent since the last update"
    )


class CompleteContentRequest(BaseModel):
    """Completion, with an optional score for labs and games."""

    content_id: UUID = Field(..., description="Content UUID")
    score: int | None = Field(default=None, ge=0, description="Score obtained")
    max_score: int | None = Field(default=None, gt=0, description="Maximum score")

    @model_validator(mode="after")
    def score_needs_max(self) -> "CompleteContentRequest":
        if self.max_score is not None and self.score is None:
            raise ValueError("max_score requires score")
        return self


class ProgressRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    content_id: UUID
    module_id: UUID
    section: str
    content_type: str | None = None
    status: ProgressStatus
    progress_percentage: int = Field(description="0-100 percentage")
    time_spent: int = 0
    attempts: int = 0
    last_position: int = Field(default=0, description="Resume position")
    score: int | None = None
    max_score: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_accessed_at: datetime | None = None

    @classmethod
    def from_entity(cls, entity: ProgressRecord) -> "ProgressRecordResponse":
        """Create response from entity."""
        return cls(
            content_id=entity.content_id,
            module_id=entity.module_id,
            section=entity.section,
            content_type=entity.content_type,
            status=ProgressStatus(entity.status),
            progress_percentage=entity.progress_percentage,
            time_spent=entity.time_spent,
            attempts=entity.attempts,
            last_position=entity.last_position,
            score=entity.score,
            max_score=entity.max_score,
            started_at=entity.started_at,
            completed_at=entity.completed_at,
            last_accessed_at=entity.last_accessed_at,
        )


class StartContentResponse(BaseModel):
    progress: ProgressRecordResponse
    already_started: bool


class CompleteContentResponse(BaseModel):
    progress: ProgressRecordResponse
    already_completed: bool


class PositionResponse(BaseModel):
    progress: ProgressRecordResponse


# ==============================================================================
# Enrollment Schemas
# ==============================================================================


class EnrollRequest(BaseModel):
    module_id: UUID = Field(..., description="Module UUID")


class ChangeEnrollmentStatusRequest(BaseModel):
    status: EnrollmentStatus = Field(
        ..., description="paused, active (resume) or dropped"
    )


class EnrollmentResponse(BaseModel):
    """Enrollment with its derived progress."""

    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    module_id: UUID
    status: EnrollmentStatus
    progress_percentage: int
    completed_sections: int
    total_sections: int
    is_completed: bool
    enrolled_at: datetime | None = None
    completed_at: datetime | None = None
    last_accessed_at: datetime | None = None

    @classmethod
    def from_entity(cls, entity: EnrollmentRollup) -> "EnrollmentResponse":
        """Create response from entity."""
        return cls(
            user_id=entity.user_id,
            module_id=entity.module_id,
            status=EnrollmentStatus(entity.status),
            progress_percentage=entity.progress_percentage,
            completed_sections=entity.completed_sections,
            total_sections=entity.total_sections,
            is_completed=entity.is_completed,
            enrolled_at=entity.enrolled_at,
            completed_at=entity.completed_at,
            last_accessed_at=entity.last_accessed_at,
        )


class EnrollmentListResponse(BaseModel):
    items: list[EnrollmentResponse]
    total: int


class ContentTypeProgressResponse(BaseModel):
    completed: int
    total: int
    percentage: int


class ContentProgressDetailResponse(BaseModel):
    content_id: UUID
    title: str
    section: str
    content_type: str
    status: ProgressStatus
    progress_percentage: int
    time_spent: int
    score: int | None = None
    max_score: int | None = None
    completed_at: datetime | None = None


class ModuleProgressResponse(BaseModel):
    """Rollup plus per content type and per item breakdown."""

    enrollment: EnrollmentResponse
    content_type_progress: dict[str, ContentTypeProgressResponse]
    detailed_progress: list[ContentProgressDetailResponse]
    time_spent: int

    @classmethod
    def from_breakdown(cls, breakdown: ModuleProgressBreakdown) -> "ModuleProgressResponse":
        return cls(
            enrollment=EnrollmentResponse.from_entity(breakdown.enrollment),
            content_type_progress={
                name: ContentTypeProgressResponse(
                    completed=p.completed, total=p.total, percentage=p.percentage
                )
                for name, p in breakdown.by_content_type.items()
            },
            detailed_progress=[
                ContentProgressDetailResponse(
                    content_id=d.content_id,
                    title=d.title,
                    section=d.section,
                    content_type=d.content_type,
                    status=ProgressStatus(d.status),
                    progress_percentage=d.progress_percentage,
                    time_spent=d.time_spent,
                    score=d.score,
                    max_score=d.max_score,
                    completed_at=d.completed_at,
                )
                for d in breakdown.items
            ],
            time_spent=breakdown.time_spent,
        )


# ==============================================================================
# Admin Schemas
# ==============================================================================


class ReconcileRequest(BaseModel):
    """Reconciliation run parameters (defaults to every enrollment)."""

    batch_size: int | None = Field(default=None, ge=1, le=1000)
    concurrency: int | None = Field(default=None, ge=1, le=100)
    dry_run: bool = False
    user_id: UUID | None = None
    module_id: UUID | None = None
    detect_drift: bool = False


class DriftEntryResponse(BaseModel):
    user_id: UUID
    module_id: UUID
    stored_percentage: int
    recomputed_percentage: int


class ReconcileFailureResponse(BaseModel):
    user_id: UUID
    module_id: UUID
    error: str


class ReconciliationReportResponse(BaseModel):
    scope: str
    total_enrollments: int
    processed: int
    updated: int
    unchanged: int
    skipped: int
    errors: int
    batches: int
    dry_run: bool
    interrupted: bool
    success_rate: float
    run_id: str | None = None
    drifted: list[DriftEntryResponse] = []
    failures: list[ReconcileFailureResponse] = []

    @classmethod
    def from_report(cls, report: ReconciliationReport) -> "ReconciliationReportResponse":
        return cls.model_validate(report.to_dict())


class SectionCountResponse(BaseModel):
    module_id: UUID
    updated: int
    errors: int = 0
    dry_run: bool


class RecomputeResponse(BaseModel):
    user_id: UUID
    module_id: UUID
    outcome: str
    changed: bool
    drifted: bool
    progress_percentage: int | None = None
    completed_sections: int | None = None
    total_sections: int | None = None
    is_completed: bool | None = None

    @classmethod
    def from_result(cls, result: RecomputeResult) -> "RecomputeResponse":
        after = result.after
        return cls(
            user_id=result.user_id,
            module_id=result.module_id,
            outcome=result.outcome.value,
            changed=result.changed,
            drifted=result.drifted,
            progress_percentage=after.progress_percentage if after else None,
            completed_sections=after.completed_sections if after else None,
            total_sections=after.total_sections if after else None,
            is_completed=after.is_completed if after else None,
        )
