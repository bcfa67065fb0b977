"""
Error Taxonomy
==============

Overview
--------
Exceptions shared by the RMA service. Each error carries the HTTP status and a
machine-readable code so the web layer can render a structured body
`{error, details?, code?}` without knowing where the failure came from.

Hierarchy
---------
- AppError                    generic application error (500)
  - ValidationError           malformed input (400, VALIDATION_ERROR)
  - NotFoundError             unknown resource (404, NOT_FOUND)
  - ExternalServiceError      upstream API failure (502, EXTERNAL_SERVICE_ERROR)
    - AuthenticationError     upstream rejected credentials (502, AUTHENTICATION_ERROR)
"""

# -----------------------------------------------------------------------------
# Libraries
# -----------------------------------------------------------------------------

# Standard libraries
from typing import Optional                              # Type hints for optional codes


class AppError(Exception):
    """Base class for errors that map onto an HTTP response."""

    def __init__(self, message: str, status_code: int = 500, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class ValidationError(AppError):
    def __init__(self, message: str):
        super().__init__(message, 400, "VALIDATION_ERROR")


class NotFoundError(AppError):
    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", 404, "NOT_FOUND")
        self.resource = resource


class ExternalServiceError(AppError):
    """
    An upstream API (Freshdesk, OpenAI, Graph, database) failed.

    Attributes
    ----------
    service : str
        Name of the upstream service, e.g. "Freshdesk".
    detail : str
        Upstream error text without the service prefix.
    """

    code_name = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, service: str, message: str):
        super().__init__(f"{service} error: {message}", 502, self.code_name)
        self.service = service
        self.detail = message


class AuthenticationError(ExternalServiceError):
    code_name = "AUTHENTICATION_ERROR"
