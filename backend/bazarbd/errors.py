"""Error taxonomy shared by the domain helpers and the HTTP layer."""
from typing import Any, Dict, Optional


class ApiError(Exception):
    status_code = 500
    kind = "error"

    def __init__(self, message: str, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.payload = payload or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": self.kind,
            "message": self.message,
        }
        body.update(self.payload)
        return body


class ValidationError(ApiError):
    status_code = 400
    kind = "validation_error"


class NotFoundError(ApiError):
    status_code = 404
    kind = "not_found"


class ConflictError(ApiError):
    status_code = 409
    kind = "conflict"


class DependencyError(ApiError):
    status_code = 500
    kind = "dependency_error"
