"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries. The analysis errors double as
the retry taxonomy used by the background job orchestrator.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ValidationException(ApplicationException):
    """Exception for validation errors."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors. Never retried."""


class InvalidTaskStateException(DomainException):
    """Raised by administrative operations on a task in the wrong state."""

    def __init__(self, task_id: str, status: str, operation: str, reason: Optional[str] = None):
        self.task_id = task_id
        self.status = status
        self.operation = operation
        message = f"Cannot {operation} task {task_id} in status '{status}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            {"task_id": task_id, "status": status, "operation": operation, "reason": reason}
        )


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class LLMException(ExternalServiceException):
    """Exception for LLM API failures that fit no narrower kind."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("LLM Service", message, details)


class RateLimitedException(LLMException):
    """The remote service answered with HTTP 429."""

    def __init__(
        self,
        message: str,
        status_code: int = 429,
        details: Optional[dict] = None
    ):
        self.status_code = status_code
        super().__init__(message, details)


class RemoteAPIException(LLMException):
    """The remote service answered with a 4xx/5xx other than 429."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict] = None
    ):
        self.status_code = status_code
        super().__init__(message, details)


class UnknownAnalysisError(LLMException):
    """Any other failure of a remote call, wrapped."""


class PermanentAnalysisError(DomainException):
    """The analysis can never succeed for this input. Never retried."""
