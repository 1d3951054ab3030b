"""
Error taxonomy shared by the stores, the services and the HTTP layer.

Every error carries an HTTP status, a short error name, a human-readable
message and a machine-readable code. Routers let these propagate; the
exception handler in ``main.py`` renders them as::

    {"success": false, "error": "...", "message": "...", "code": "..."}
"""
from typing import Any, Dict, Optional
from fastapi import status
from fastapi.responses import JSONResponse


class ErrorCode:
    """Machine-readable error codes."""

    AUTH_REQUIRED = "AUTH_REQUIRED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    COMPETITION_NOT_FOUND = "COMPETITION_NOT_FOUND"
    INVALID_INPUT = "INVALID_INPUT"
    ALREADY_STARTED = "ALREADY_STARTED"
    COMPETITION_FULL = "COMPETITION_FULL"
    STATE_TRANSITION_INVALID = "STATE_TRANSITION_INVALID"
    BACKEND_ERROR = "BACKEND_ERROR"
    QUESTION_SERVICE_ERROR = "QUESTION_SERVICE_ERROR"


class APIError(Exception):
    """Base error with a consistent response shape."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "Internal Error"
    default_code = ErrorCode.BACKEND_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code
        }
        if self.details:
            result["details"] = self.details
        return result

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


class AuthenticationError(APIError):
    """401 - not logged in or session expired."""
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "Unauthorized"
    default_code = ErrorCode.AUTH_REQUIRED


class ForbiddenError(APIError):
    """403 - authenticated but not allowed (e.g. not the creator)."""
    status_code = status.HTTP_403_FORBIDDEN
    error = "Forbidden"
    default_code = ErrorCode.FORBIDDEN


class NotFoundError(APIError):
    """404 - competition, result or ticket does not exist."""
    status_code = status.HTTP_404_NOT_FOUND
    error = "Not Found"
    default_code = ErrorCode.NOT_FOUND


class ValidationError(APIError):
    """400 - rejected input; no state transition happened."""
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Bad Request"
    default_code = ErrorCode.INVALID_INPUT


class InvalidTransitionError(ValidationError):
    """400 - a status change that would move a lifecycle backwards."""
    error = "Invalid State"
    default_code = ErrorCode.STATE_TRANSITION_INVALID


class BackendError(APIError):
    """502 - database or collaborator failure; the operation was abandoned."""
    status_code = status.HTTP_502_BAD_GATEWAY
    error = "Backend Error"
    default_code = ErrorCode.BACKEND_ERROR


class QuestionGenerationError(BackendError):
    """502 - the question service failed or returned garbage."""
    default_code = ErrorCode.QUESTION_SERVICE_ERROR
