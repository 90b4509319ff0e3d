from typing import Any, Dict, Optional
from fastapi import HTTPException, status


class ForbiddenException(HTTPException):
    def __init__(self, detail: Any = None, headers: Optional[Dict[str, str]] = None):
        self.headers = headers
        self.status_code = status.HTTP_403_FORBIDDEN
        self.detail = detail or "Forbidden"


class ServiceUnavailableException(HTTPException):
    def __init__(self, detail: Any = None, headers: Optional[Dict[str, str]] = None):
        self.headers = headers
        self.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        self.detail = detail or "Service unavailable error"


class AuthorizationDenied(ForbiddenException):
    """A write was rejected as a whole. Reads never raise this."""

    def __init__(self, entity: str, operation: str, reason: str = "denied",
                 columns: Optional[list] = None, headers: Optional[Dict[str, str]] = None):
        detail = {"entity": entity, "operation": operation, "reason": reason}
        if columns:
            detail["columns"] = sorted(columns)
        super().__init__(detail=detail, headers=headers)
        self.entity = entity
        self.operation = operation
        self.reason = reason

    def __str__(self) -> str:
        return f"{self.operation} on {self.entity} denied: {self.reason}"


class DependencyUnavailable(ServiceUnavailableException):
    """Relationship resolution failed; must never be read as a denial."""

    def __init__(self, detail: Any = None, headers: Optional[Dict[str, str]] = None):
        super().__init__(detail=detail or "Relationship store unavailable", headers=headers)

    def __str__(self) -> str:
        return str(self.detail)


class InvalidReference(Exception):
    """A row points at a related entity that does not exist."""

    def __init__(self, entity: str, reference_id: Any):
        super().__init__(f"{entity} {reference_id} does not exist")
        self.entity = entity
        self.reference_id = reference_id


class ActorUnresolved(Exception):
    """No valid identity could be built; callers fall back to the anonymous principal."""
