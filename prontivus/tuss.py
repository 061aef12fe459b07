"""TUSS procedure catalogue: validity, operator acceptance and pricing."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from prontivus.db.models import HealthPlan, Operator, TussCode, TussOperatorRule, TussValue
from prontivus.errors import ConflictError, DomainValidationError, NotFoundError
from prontivus.tenancy import get_scoped
from prontivus.time_utils import local_today

logger = structlog.get_logger(__name__)


def _br_date(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def create_tuss_code(
    session: Session,
    code: str,
    description: str,
    *,
    procedure_type: Optional[str] = "CONSULTA",
    valid_from: Optional[date] = None,
    valid_until: Optional[date] = None,
    active: bool = True,
) -> TussCode:
    code = code.strip()
    if not code:
        raise DomainValidationError("TUSS code is required")
    if valid_from and valid_until and valid_until < valid_from:
        raise DomainValidationError("valid_until must not precede valid_from")
    if session.execute(select(TussCode).where(TussCode.code == code)).scalar_one_or_none() is not None:
        raise ConflictError("TUSS code already exists", {"code": code})
    tuss = TussCode(
        code=code,
        description=description.strip(),
        procedure_type=procedure_type,
        valid_from=valid_from,
        valid_until=valid_until,
        active=active,
    )
    session.add(tuss)
    session.flush()
    return tuss


def list_tuss_codes(
    session: Session,
    *,
    search: Optional[str] = None,
    procedure_type: Optional[str] = None,
    valid_on: Optional[date] = None,
    active: Optional[bool] = None,
    limit: int = 100,
) -> List[TussCode]:
    stmt = select(TussCode)
    if search:
        term = f"%{search.strip()}%"
        stmt = stmt.where(or_(TussCode.code.like(term), TussCode.description.ilike(term)))
    if procedure_type:
        stmt = stmt.where(TussCode.procedure_type == procedure_type)
    if active is not None:
        stmt = stmt.where(TussCode.active.is_(active))
    if valid_on is not None:
        stmt = stmt.where(
            TussCode.active.is_(True),
            or_(TussCode.valid_from.is_(None), TussCode.valid_from <= valid_on),
            or_(TussCode.valid_until.is_(None), TussCode.valid_until >= valid_on),
        )
    return list(session.execute(stmt.order_by(TussCode.code).limit(limit)).scalars())


def get_tuss_code(session: Session, tuss_code_id: str) -> TussCode:
    tuss = session.get(TussCode, tuss_code_id)
    if tuss is None:
        raise NotFoundError("TUSS code not found", {"id": tuss_code_id})
    return tuss


def validate_tuss_code(session: Session, tuss_code_id: str, at: Optional[date] = None) -> Dict[str, Any]:
    """Return ``{"valid": bool, "reason": str | None}`` for the code on ``at``."""

    at = at or local_today()
    tuss = session.get(TussCode, tuss_code_id)
    if tuss is None:
        return {"valid": False, "reason": "TUSS code not found"}
    if not tuss.active:
        return {"valid": False, "reason": "TUSS code is inactive"}
    if tuss.valid_from and tuss.valid_from > at:
        return {"valid": False, "reason": f"TUSS code not valid yet. Starts on {_br_date(tuss.valid_from)}"}
    if tuss.valid_until and tuss.valid_until < at:
        return {"valid": False, "reason": f"TUSS code expired on {_br_date(tuss.valid_until)}"}
    return {"valid": True, "reason": None}


def is_accepted_by_operator(
    session: Session,
    tuss_code_id: str,
    operator_id: Optional[str],
    health_plan_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Decide whether an operator (and plan) accepts the code.

    Private consultations (no operator) are always accepted.  A plan-specific
    rule wins over the operator-wide rule; without any rule the code is
    accepted.
    """

    if not operator_id:
        return {"accepted": True, "reason": None}
    candidates = session.execute(
        select(TussOperatorRule).where(
            TussOperatorRule.tuss_code_id == tuss_code_id,
            TussOperatorRule.operator_id == operator_id,
            or_(
                TussOperatorRule.health_plan_id.is_(None),
                TussOperatorRule.health_plan_id == health_plan_id,
            ),
        )
    ).scalars().all()
    rule = None
    for candidate in candidates:
        if health_plan_id and candidate.health_plan_id == health_plan_id:
            rule = candidate
            break
        if candidate.health_plan_id is None:
            rule = candidate
    if rule is None or rule.accepted:
        return {"accepted": True, "reason": None}
    return {"accepted": False, "reason": "TUSS code not accepted by this operator/plan"}


def _value_levels(
    operator_id: Optional[str],
    health_plan_id: Optional[str],
    consultation_type_id: Optional[str],
) -> List[tuple[Optional[str], Optional[str], Optional[str]]]:
    """Return the (plan, operator, type) combinations from most to least specific."""

    levels: List[tuple[Optional[str], Optional[str], Optional[str]]] = []
    if health_plan_id and operator_id and consultation_type_id:
        levels.append((health_plan_id, operator_id, consultation_type_id))
    if health_plan_id and operator_id:
        levels.append((health_plan_id, operator_id, None))
    if operator_id and consultation_type_id:
        levels.append((None, operator_id, consultation_type_id))
    if operator_id:
        levels.append((None, operator_id, None))
    if consultation_type_id:
        levels.append((None, None, consultation_type_id))
    levels.append((None, None, None))
    return levels


def _match(column, value: Optional[str]):
    return column.is_(None) if value is None else column == value


def resolve_value(
    session: Session,
    clinic_id: str,
    tuss_code_id: str,
    *,
    operator_id: Optional[str] = None,
    health_plan_id: Optional[str] = None,
    consultation_type_id: Optional[str] = None,
    at: Optional[date] = None,
) -> Dict[str, Any]:
    """Find the price for a TUSS code walking the specificity hierarchy."""

    at = at or local_today()
    validity = validate_tuss_code(session, tuss_code_id, at)
    if not validity["valid"]:
        return {"amount": None, "value_id": None, "reason": validity["reason"]}

    for plan_id, op_id, type_id in _value_levels(operator_id, health_plan_id, consultation_type_id):
        stmt = select(TussValue).where(
            TussValue.clinic_id == clinic_id,
            TussValue.tuss_code_id == tuss_code_id,
            _match(TussValue.health_plan_id, plan_id),
            _match(TussValue.operator_id, op_id),
            _match(TussValue.consultation_type_id, type_id),
            TussValue.active.is_(True),
            or_(TussValue.valid_from.is_(None), TussValue.valid_from <= at),
            or_(TussValue.valid_until.is_(None), TussValue.valid_until >= at),
        )
        value = session.execute(stmt.limit(1)).scalar_one_or_none()
        if value is not None:
            return {"amount": value.amount, "value_id": value.id, "reason": None}
    return {"amount": None, "value_id": None, "reason": "No value found for this combination"}


def create_tuss_value(
    session: Session,
    clinic_id: str,
    tuss_code_id: str,
    amount: Decimal,
    *,
    operator_id: Optional[str] = None,
    health_plan_id: Optional[str] = None,
    consultation_type_id: Optional[str] = None,
    valid_from: Optional[date] = None,
    valid_until: Optional[date] = None,
) -> TussValue:
    get_tuss_code(session, tuss_code_id)
    if Decimal(str(amount)) < 0:
        raise DomainValidationError("Amount must not be negative")
    if operator_id:
        get_scoped(session, Operator, operator_id, clinic_id, label="Operator")
    if health_plan_id:
        plan = get_scoped(session, HealthPlan, health_plan_id, clinic_id, label="Health plan")
        if not operator_id:
            operator_id = plan.operator_id
        elif plan.operator_id != operator_id:
            raise DomainValidationError("Health plan does not belong to the operator")
    if valid_from and valid_until and valid_until < valid_from:
        raise DomainValidationError("valid_until must not precede valid_from")
    value = TussValue(
        clinic_id=clinic_id,
        tuss_code_id=tuss_code_id,
        operator_id=operator_id,
        health_plan_id=health_plan_id,
        consultation_type_id=consultation_type_id,
        amount=Decimal(str(amount)),
        valid_from=valid_from,
        valid_until=valid_until,
    )
    session.add(value)
    session.flush()
    return value


def list_tuss_values(session: Session, clinic_id: str, tuss_code_id: Optional[str] = None) -> List[TussValue]:
    stmt = select(TussValue).where(TussValue.clinic_id == clinic_id)
    if tuss_code_id:
        stmt = stmt.where(TussValue.tuss_code_id == tuss_code_id)
    return list(session.execute(stmt).scalars())


def create_operator_rule(
    session: Session,
    clinic_id: str,
    tuss_code_id: str,
    operator_id: str,
    *,
    health_plan_id: Optional[str] = None,
    accepted: bool = True,
    notes: Optional[str] = None,
) -> TussOperatorRule:
    get_tuss_code(session, tuss_code_id)
    get_scoped(session, Operator, operator_id, clinic_id, label="Operator")
    if health_plan_id:
        get_scoped(session, HealthPlan, health_plan_id, clinic_id, label="Health plan")
    existing = session.execute(
        select(TussOperatorRule).where(
            TussOperatorRule.tuss_code_id == tuss_code_id,
            TussOperatorRule.operator_id == operator_id,
            _match(TussOperatorRule.health_plan_id, health_plan_id),
        )
    ).scalar_one_or_none()
    if existing is not None:
        existing.accepted = accepted
        existing.notes = notes
        session.flush()
        return existing
    rule = TussOperatorRule(
        tuss_code_id=tuss_code_id,
        operator_id=operator_id,
        health_plan_id=health_plan_id,
        accepted=accepted,
        notes=notes,
    )
    session.add(rule)
    session.flush()
    return rule


def validate_for_appointment(
    session: Session,
    tuss_code_id: str,
    *,
    operator_id: Optional[str] = None,
    health_plan_id: Optional[str] = None,
    at: Optional[date] = None,
) -> TussCode:
    """Raise :class:`DomainValidationError` unless the code can be billed."""

    tuss = get_tuss_code(session, tuss_code_id)
    validity = validate_tuss_code(session, tuss_code_id, at)
    if not validity["valid"]:
        raise DomainValidationError(validity["reason"], {"tuss_code_id": tuss_code_id})
    acceptance = is_accepted_by_operator(session, tuss_code_id, operator_id, health_plan_id)
    if not acceptance["accepted"]:
        raise DomainValidationError(
            acceptance["reason"],
            {"tuss_code_id": tuss_code_id, "operator_id": operator_id, "health_plan_id": health_plan_id},
        )
    return tuss
