"""Domain exceptions raised by the service layer.

Route handlers never translate these by hand: ``prontivus.main`` registers a
handler that renders any :class:`ProntivusError` into the standard error
envelope using ``status_code``, ``code`` and ``details``.
"""

from __future__ import annotations

from typing import Any, Optional


class ProntivusError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict:
        payload: dict = {"code": self.code, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class NotFoundError(ProntivusError):
    status_code = 404
    code = "not_found"


class DomainValidationError(ProntivusError):
    status_code = 400
    code = "validation_error"


class ConflictError(ProntivusError):
    status_code = 409
    code = "conflict"


class ScheduleConflictError(ConflictError):
    code = "schedule_conflict"


class AuthenticationError(ProntivusError):
    status_code = 401
    code = "authentication_failed"


class PermissionDeniedError(ProntivusError):
    status_code = 403
    code = "forbidden"


class TenantAccessError(PermissionDeniedError):
    code = "tenant_access_denied"


class QuotaExceededError(ProntivusError):
    status_code = 402
    code = "quota_exceeded"


class ExternalServiceError(ProntivusError):
    status_code = 502
    code = "external_service_error"


__all__ = [
    "ProntivusError",
    "NotFoundError",
    "DomainValidationError",
    "ConflictError",
    "ScheduleConflictError",
    "AuthenticationError",
    "PermissionDeniedError",
    "TenantAccessError",
    "QuotaExceededError",
    "ExternalServiceError",
]
