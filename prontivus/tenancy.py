"""Tenant isolation helpers.

Clinic-owned rows are always read through these helpers so a request bound to
one clinic can never load or mutate another clinic's data.
"""

from __future__ import annotations

from typing import Any, Optional, Type, TypeVar

import structlog
from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from prontivus.errors import NotFoundError, TenantAccessError

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT")


def scoped_query(model: Type[ModelT], clinic_id: str) -> Select:
    """Return a ``select`` of ``model`` restricted to ``clinic_id``."""

    if not clinic_id:
        raise TenantAccessError("No active clinic for this request")
    return select(model).where(model.clinic_id == clinic_id)  # type: ignore[attr-defined]


def ensure_same_tenant(obj: Any, clinic_id: str) -> None:
    owner = getattr(obj, "clinic_id", None)
    if owner != clinic_id:
        logger.warning(
            "tenant_access_denied",
            model=type(obj).__name__,
            object_id=getattr(obj, "id", None),
            clinic_id=clinic_id,
        )
        raise TenantAccessError("Resource belongs to another clinic")


def get_scoped(
    session: Session,
    model: Type[ModelT],
    object_id: Optional[str],
    clinic_id: str,
    *,
    label: Optional[str] = None,
) -> ModelT:
    """Load ``model`` by primary key and verify it belongs to ``clinic_id``."""

    name = label or model.__name__
    if not object_id:
        raise NotFoundError(f"{name} not found")
    obj = session.get(model, object_id)
    if obj is None:
        raise NotFoundError(f"{name} not found", {"id": object_id})
    ensure_same_tenant(obj, clinic_id)
    return obj


def assert_payload_tenant(payload_clinic_id: Optional[str], clinic_id: str) -> None:
    """Reject writes whose payload names a clinic other than the active one."""

    if payload_clinic_id and payload_clinic_id != clinic_id:
        raise TenantAccessError("Cannot write data for another clinic")


__all__ = ["scoped_query", "get_scoped", "ensure_same_tenant", "assert_payload_tenant"]
