"""
Mapping from financing errors to HTTP responses
"""

from fastapi import HTTPException, status

from ..errors import (
    AuthorizationError, FinancingError, NotFoundError, StateConflictError, ValidationError
)


STATUS_CODES = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_CONTENT,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    StateConflictError: status.HTTP_409_CONFLICT,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
}


def http_error(error: FinancingError) -> HTTPException:
    """Structured failure for a rejected operation"""
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, code in STATUS_CODES.items():
        if isinstance(error, error_type):
            status_code = code
            break
    return HTTPException(
        status_code=status_code,
        detail={"error": error.kind, "message": str(error)}
    )
