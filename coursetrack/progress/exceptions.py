"""Progress engine errors.

Every error carries a machine readable ``code`` that the HTTP layer maps to a
status. All of them are raised before anything is written.
"""


class ProgressError(Exception):
    """Base progress error."""

    def __init__(self, message: str, code: str = "progress_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class ContentNotFoundError(ProgressError):
    """Content item missing or inactive."""

    def __init__(self, message: str = "Content not found"):
        super().__init__(message, "content_not_found")


class NotEnrolledError(ProgressError):
    """User holds no active enrollment for the content's module."""

    def __init__(self, message: str = "User is not enrolled in this module"):
        super().__init__(message, "not_enrolled")


class InvalidTransitionError(ProgressError):
    """Progress status would move backwards."""

    def __init__(self, message: str = "Progress status cannot move backwards"):
        super().__init__(message, "invalid_transition")


class ProgressValidationError(ProgressError):
    """Out-of-range progress values."""

    def __init__(self, message: str = "Invalid progress values"):
        super().__init__(message, "validation_error")


class AlreadyEnrolledError(ProgressError):
    """User already enrolled."""

    def __init__(self, message: str = "User is already enrolled in this module"):
        super().__init__(message, "already_enrolled")


class EnrollmentNotFoundError(ProgressError):
    def __init__(self, message: str = "Enrollment not found"):
        super().__init__(message, "enrollment_not_found")


class InvalidEnrollmentTransitionError(ProgressError):
    def __init__(self, message: str = "Enrollment status change not allowed"):
        super().__init__(message, "invalid_enrollment_transition")
