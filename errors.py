"""
Application exceptions.

Raised by the repository layer and the request parsing helpers, and turned
into JSON responses by the error handlers registered in ``app.create_app``.
"""

from typing import List, Optional


class AppError(Exception):
    """Base exception for all application errors."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"message": self.message}


class ValidationError(AppError):
    """Raised when a request payload, path or query parameter is invalid."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", errors: Optional[List[dict]] = None):
        self.errors = errors or []
        super().__init__(message)

    @classmethod
    def from_pydantic(cls, exc) -> "ValidationError":
        """Build from a ``pydantic.ValidationError``, keeping one entry per field error."""
        errors = [
            {
                "path": [str(part) for part in error["loc"]],
                "message": error["msg"],
                "code": error["type"],
            }
            for error in exc.errors()
        ]
        return cls(errors=errors)

    def to_dict(self) -> dict:
        if self.errors:
            return {"errors": self.errors}
        return {"message": self.message}


class NotFoundError(AppError):
    """Raised when a referenced record does not exist."""

    status_code = 404

    def __init__(self, entity: str):
        self.entity = entity
        super().__init__(f"{entity} not found")


class ConflictError(AppError):
    """Raised when a delete is blocked by dependent records."""

    status_code = 400
