"""Progress synchronization and enrollment aggregation.

Provides:
- Progress event recording (start, position, complete)
- Enrollment rollup aggregation
- Batch reconciliation and migration
- Section count maintenance
"""

from .aggregator import EnrollmentAggregator, RecomputeOutcome, RecomputeResult
from .enrollments import EnrollmentService
from .factory import ProgressServices, build_progress_services
from .models import (
    PROGRESS_TABLES_CQL,
    EnrollmentRollup,
    EnrollmentStatus,
    ProgressRecord,
    ProgressStatus,
)
from .reconciliation import (
    BatchReconciler,
    ReconciliationOptions,
    ReconciliationReport,
    ReconcileScope,
)
from .recorder import ProgressRecorder
from .sections import SectionCountMaintainer


__all__ = [
    "PROGRESS_TABLES_CQL",
    "BatchReconciler",
    "EnrollmentAggregator",
    "EnrollmentRollup",
    "EnrollmentService",
    "EnrollmentStatus",
    "ProgressRecord",
    "ProgressRecorder",
    "ProgressServices",
    "ProgressStatus",
    "RecomputeOutcome",
    "RecomputeResult",
    "ReconcileScope",
    "ReconciliationOptions",
    "ReconciliationReport",
    "SectionCountMaintainer",
    "build_progress_services",
]
