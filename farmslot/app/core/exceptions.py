"""
Unified base exception classes for all services.

Every error a caller can recover from is a ServiceError carrying an HTTP
status and a stable machine-readable code. Services extend the four kinds
below with their own specific errors so routers can catch by kind.
Anything that is not a ServiceError is treated as an internal error.
"""


class ServiceError(Exception):
    """Base exception for all service-layer errors."""

    code = "SERVICE_ERROR"

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class ValidationError(ServiceError):
    """Bad input: quantity out of range, malformed id, past date."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str):
        super().__init__(message, 400)


class NotFoundError(ServiceError):
    code = "NOT_FOUND"

    def __init__(self, message: str):
        super().__init__(message, 404)


class ForbiddenError(ServiceError):
    code = "FORBIDDEN"

    def __init__(self, message: str = "Access denied"):
        super().__init__(message, 403)


class ConflictError(ServiceError):
    """
    Request is well-formed but the current state refuses it
    (insufficient capacity or stock, duplicate reservation).
    Reported as 400 to match the booking API contract.
    """

    code = "CONFLICT"

    def __init__(self, message: str):
        super().__init__(message, 400)
