"""
API error taxonomy. Handlers raise these; the app turns them into the
response envelope.
"""

from __future__ import annotations

from typing import Any, Optional


class ApiError(Exception):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None, data: Any = None):
        self.message = message or self.default_message
        self.data = data
        super().__init__(self.message)


class ValidationFailed(ApiError):
    status_code = 400
    default_message = "Request validation failed"


class Unauthorized(ApiError):
    status_code = 401
    default_message = "Authentication required"


class Forbidden(ApiError):
    status_code = 403
    default_message = "Permission denied"


class NotFound(ApiError):
    status_code = 404
    default_message = "Resource not found"


class Conflict(ApiError):
    status_code = 409
    default_message = "Resource already exists"
