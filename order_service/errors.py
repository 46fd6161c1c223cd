from typing import Any, Optional


class ServiceError(Exception):
    """Base for failures reported to the caller with a specific message."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(ServiceError):
    status_code = 400


class AuthorizationError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class ExternalSystemError(ServiceError):
    status_code = 502

    def __init__(self, system: str, message: str, details: Optional[Any] = None):
        super().__init__(f"{system} integration failed: {message}", details)
        self.system = system
