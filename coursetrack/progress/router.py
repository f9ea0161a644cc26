"""Progress tracking API endpoints.

Provides routes for:
- Progress events: start, position updates, completion (rate limited)
- Progress and module breakdown queries
- Enrollment lifecycle
- Admin reconciliation, section count refresh and single recompute
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from coursetrack.auth.dependencies import AdminUser, CurrentUser

from .dependencies import ProgressServicesDep, handle_progress_error, progress_rate_limit
from .exceptions import ProgressError
from .reconciliation import ReconciliationOptions
from .schemas import (
    ChangeEnrollmentStatusRequest,
    CompleteContentRequest,
    CompleteContentResponse,
    EnrollmentListResponse,
    EnrollmentResponse,
    EnrollRequest,
    ModuleProgressResponse,
    PositionResponse,
    ProgressRecordResponse,
    RecomputeResponse,
    ReconcileRequest,
    ReconciliationReportResponse,
    SectionCountResponse,
    StartContentRequest,
    StartContentResponse,
    UpdatePositionRequest,
)


router = APIRouter(prefix="/v1/progress", tags=["progress"])
enrollments_router = APIRouter(prefix="/v1/enrollments", tags=["enrollments"])
admin_router = APIRouter(prefix="/v1/admin/progress", tags=["admin"])


# ==============================================================================
# Progress Event Endpoints
# ==============================================================================


@router.post(
    "/content/start",
    response_model=StartContentResponse,
    summary="Start a content item",
    dependencies=[Depends(progress_rate_limit)],
    responses={
        403: {"description": "Not enrolled in the content's module"},
        404: {"description": "Content not found or inactive"},
        429: {"description": "Rate limit exceeded"},
    },
)
async def start_content(
    data: StartContentRequest,
    services: ProgressServicesDep,
    user: CurrentUser,
) -> StartContentResponse:
    """Mark a content item as started. Idempotent."""
    try:
        result = await services.recorder.start(user.id, data.content_id)
    except ProgressError as e:
        raise handle_progress_error(e) from e

    return StartContentResponse(
        progress=ProgressRecordResponse.from_entity(result.record),
        already_started=result.already_started,
    )


@router.put(
    "/content/position",
    response_model=PositionResponse,
    summary="Update position within a content item",
    dependencies=[Depends(progress_rate_limit)],
)
async def update_position(
    data: UpdatePositionRequest,
    services: ProgressServicesDep,
    user: CurrentUser,
) -> PositionResponse:
    """Record position and time spent. Videos auto-complete at the threshold."""
    try:
        record = await services.recorder.update_position(
            user.id,
            data.content_id,
            percentage=data.percentage,
            position=data.position,
            time_spent=data.time_spent,
        )
    except ProgressError as e:
        raise handle_progress_error(e) from e

    return PositionResponse(progress=ProgressRecordResponse.from_entity(record))


@router.post(
    "/content/complete",
    response_model=CompleteContentResponse,
    summary="Complete a content item",
    dependencies=[Depends(progress_rate_limit)],
)
async def complete_content(
    data: CompleteContentRequest,
    services: ProgressServicesDep,
    user: CurrentUser,
) -> CompleteContentResponse:
    """Mark a content item as completed, optionally with a score."""
    try:
        result = await services.recorder.complete(
            user.id, data.content_id, score=data.score, max_score=data.max_score
        )
    except ProgressError as e:
        raise handle_progress_error(e) from e

    return CompleteContentResponse(
        progress=ProgressRecordResponse.from_entity(result.record),
        already_completed=result.already_completed,
    )


@router.get(
    "/content/{content_id}",
    response_model=ProgressRecordResponse,
    summary="Get progress on a content item",
)
async def get_content_progress(
    content_id: UUID,
    services: ProgressServicesDep,
    user: CurrentUser,
) -> ProgressRecordResponse:
    try:
        record = await services.recorder.get_progress(user.id, content_id)
    except ProgressError as e:
        raise handle_progress_error(e) from e

    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No progress recorded for this content",
        )
    return ProgressRecordResponse.from_entity(record)


@router.get(
    "/modules/{module_id}",
    response_model=ModuleProgressResponse,
    summary="Get detailed module progress",
)
async def get_module_progress(
    module_id: UUID,
    services: ProgressServicesDep,
    user: CurrentUser,
) -> ModuleProgressResponse:
    """Enrollment rollup with per content type and per item breakdown."""
    try:
        breakdown = await services.enrollments.describe_module_progress(
            user.id, module_id
        )
    except ProgressError as e:
        raise handle_progress_error(e) from e

    return ModuleProgressResponse.from_breakdown(breakdown)


# ==============================================================================
# Enrollment Endpoints
# ==============================================================================


@enrollments_router.post(
    "",
    response_model=EnrollmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enroll in a module",
)
async def enroll(
    data: EnrollRequest,
    services: ProgressServicesDep,
    user: CurrentUser,
) -> EnrollmentResponse:
    try:
        enrollment = await services.enrollments.enroll(user.id, data.module_id)
    except ProgressError as e:
        raise handle_progress_error(e) from e

    return EnrollmentResponse.from_entity(enrollment)


@enrollments_router.get(
    "/my",
    response_model=EnrollmentListResponse,
    summary="List my enrollments",
)
async def list_my_enrollments(
    services: ProgressServicesDep,
    user: CurrentUser,
) -> EnrollmentListResponse:
    enrollments = await services.enrollments.list_user_enrollments(user.id)
    return EnrollmentListResponse(
        items=[EnrollmentResponse.from_entity(e) for e in enrollments],
        total=len(enrollments),
    )


@enrollments_router.get(
    "/{module_id}",
    response_model=EnrollmentResponse,
    summary="Get my enrollment in a module",
)
async def get_enrollment(
    module_id: UUID,
    services: ProgressServicesDep,
    user: CurrentUser,
) -> EnrollmentResponse:
    try:
        enrollment = await services.enrollments.get_enrollment(user.id, module_id)
    except ProgressError as e:
        raise handle_progress_error(e) from e

    return EnrollmentResponse.from_entity(enrollment)


@enrollments_router.patch(
    "/{module_id}/status",
    response_model=EnrollmentResponse,
    summary="Pause, resume or drop an enrollment",
)
async def change_enrollment_status(
    module_id: UUID,
    data: ChangeEnrollmentStatusRequest,
    services: ProgressServicesDep,
    user: CurrentUser,
) -> EnrollmentResponse:
    try:
        enrollment = await services.enrollments.change_status(
            user.id, module_id, data.status
        )
    except ProgressError as e:
        raise handle_progress_error(e) from e

    return EnrollmentResponse.from_entity(enrollment)


# ==============================================================================
# Admin Endpoints
# ==============================================================================


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationReportResponse,
    summary="Recompute enrollment rollups in batches",
)
async def reconcile(
    data: ReconcileRequest,
    services: ProgressServicesDep,
    admin: AdminUser,
) -> ReconciliationReportResponse:
    """Run a reconciliation pass, optionally scoped to one user or module.

    Long passes over every enrollment belong in the ``coursetrack-reconcile``
    command; this endpoint is meant for scoped repairs and dry runs.
    """
    settings = services.settings
    options = ReconciliationOptions(
        batch_size=(
            settings.progress_reconcile_batch_size
            if data.batch_size is None
            else data.batch_size
        ),
        concurrency=(
            settings.progress_reconcile_concurrency
            if data.concurrency is None
            else data.concurrency
        ),
        dry_run=data.dry_run,
        user_id=data.user_id,
        module_id=data.module_id,
        detect_drift=data.detect_drift,
    )
    report = await services.reconciler.bulk_recalculate(options)
    return ReconciliationReportResponse.from_report(report)


@admin_router.post(
    "/modules/{module_id}/section-counts",
    response_model=SectionCountResponse,
    summary="Refresh a module's section counts",
)
async def refresh_section_counts(
    module_id: UUID,
    services: ProgressServicesDep,
    admin: AdminUser,
    dry_run: bool = False,
) -> SectionCountResponse:
    """Call after content of a module is added, deactivated or moved."""
    refresh = await services.sections.update_module_section_counts(
        module_id, dry_run=dry_run
    )
    return SectionCountResponse(
        module_id=module_id,
        updated=refresh.updated,
        errors=refresh.errors,
        dry_run=dry_run,
    )


@admin_router.post(
    "/enrollments/{user_id}/{module_id}/recompute",
    response_model=RecomputeResponse,
    summary="Recompute one enrollment",
)
async def recompute_enrollment(
    user_id: UUID,
    module_id: UUID,
    services: ProgressServicesDep,
    admin: AdminUser,
    dry_run: bool = False,
) -> RecomputeResponse:
    result = await services.aggregator.recompute(user_id, module_id, dry_run=dry_run)
    return RecomputeResponse.from_result(result)
