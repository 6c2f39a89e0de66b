"""
Typed errors raised by the enrollment and payment core.

Every error carries the HTTP status it maps to, so routes can let them
propagate and the application-level handler renders them.
"""
from typing import Optional


class CoursePayError(Exception):
    """Base exception for the enrollment/payment core"""
    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(CoursePayError):
    """
    Raised when a request is well-formed but not acceptable.

    Examples:
    - Student already enrolled in the course
    - Course not published / not purchasable
    - Phone number that is not a Kenyan mobile number
    """
    status_code = 400

    def __init__(self, message: str = "Invalid request"):
        super().__init__(message, self.status_code)


class NotFoundError(CoursePayError):
    """Raised when a course, enrollment, payment, video or quiz doesn't exist."""
    status_code = 404

    def __init__(self, resource: str, field: str, value):
        self.resource = resource
        super().__init__(f"{resource} not found with {field}: {value}", self.status_code)


class ConflictError(CoursePayError):
    """
    Raised when the current state forbids the operation.

    Examples:
    - Paying for an enrollment that already has a successful payment
    - Completing an enrollment whose completion flags are not both set
    - Refunding a payment that never succeeded
    """
    status_code = 409

    def __init__(self, message: str = "Operation conflicts with current state"):
        super().__init__(message, self.status_code)


class GatewayError(CoursePayError):
    """
    Raised when the payment gateway rejects a request or cannot be reached.

    `message` is safe to show to a student; `diagnostic` keeps the raw
    gateway/transport detail for the audit trail.
    """
    status_code = 502

    def __init__(self, message: str, diagnostic: Optional[str] = None):
        self.diagnostic = diagnostic or message
        super().__init__(message, self.status_code)


class ForbiddenError(CoursePayError):
    """Raised when a student touches content of a course they cannot access."""
    status_code = 403

    def __init__(self, message: str = "You do not have access to this course"):
        super().__init__(message, self.status_code)
