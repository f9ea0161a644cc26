"""FastAPI dependencies for progress tracking.

Provides dependency injection for:
- Progress services
- Error handlers
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from coursetrack.core.rate_limit import RateLimiter

from .exceptions import ProgressError
from .factory import ProgressServices


async def get_progress_services(request: Request) -> ProgressServices:
    """Get progress services from app state.

    Raises:
        HTTPException(503): If the engine was not initialized
    """
    services = getattr(request.app.state, "progress", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Progress service not available",
        )
    return services


# Type alias for dependency injection
ProgressServicesDep = Annotated[ProgressServices, Depends(get_progress_services)]

# Progress writes: 100 requests per 15 minutes per client by default
progress_rate_limit = RateLimiter("progress")


def handle_progress_error(error: ProgressError) -> HTTPException:
    """Convert progress errors to HTTP exceptions.

    Args:
        error: Progress error

    Returns:
        HTTPException with appropriate status code
    """
    status_map = {
        "validation_error": status.HTTP_400_BAD_REQUEST,
        "not_enrolled": status.HTTP_403_FORBIDDEN,
        "content_not_found": status.HTTP_404_NOT_FOUND,
        "enrollment_not_found": status.HTTP_404_NOT_FOUND,
        "invalid_transition": status.HTTP_409_CONFLICT,
        "invalid_enrollment_transition": status.HTTP_409_CONFLICT,
        "already_enrolled": status.HTTP_409_CONFLICT,
        "write_conflict": status.HTTP_409_CONFLICT,
    }

    status_code = status_map.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR)

    return HTTPException(
        status_code=status_code,
        detail=error.message,
    )
