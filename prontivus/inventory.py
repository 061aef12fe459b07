"""Medication catalogue, stock control and billable procedures.

Stock quantities only change through :func:`record_movement` (or a procedure
execution, which records ``out`` movements itself), so every balance can be
traced back through the movement log.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from prontivus import finance
from prontivus.db.models import (
    AccountStatus,
    Medication,
    Patient,
    PaymentMethod,
    Procedure,
    ProcedureExecution,
    ProcedureMedication,
    StockItem,
    StockMovement,
    StockMovementKind,
)
from prontivus.errors import ConflictError, DomainValidationError, NotFoundError
from prontivus.patients import _clean_page, paginate
from prontivus.tenancy import get_scoped, scoped_query
from prontivus.time_utils import local_today

logger = structlog.get_logger(__name__)

EXECUTION_REASON = "Procedure execution"

_MEDICATION_FIELDS = ("name", "active_ingredient", "manufacturer", "presentation", "concentration", "unit", "active")


def _required(value: Optional[str], label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise DomainValidationError(f"{label} is required")
    return cleaned


def _non_negative(value: Any, label: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise DomainValidationError(f"{label} must be an integer", {label: value}) from exc
    if number < 0:
        raise DomainValidationError(f"{label} must not be negative", {label: value})
    return number


# ---------------------------------------------------------------------------
# Medications
# ---------------------------------------------------------------------------


def create_medication(session: Session, clinic_id: str, data: Mapping[str, Any]) -> Medication:
    medication = Medication(clinic_id=clinic_id, name=_required(data.get("name"), "Name"))
    for field in _MEDICATION_FIELDS[1:-1]:
        if data.get(field):
            setattr(medication, field, str(data[field]).strip())
    session.add(medication)
    session.flush()
    logger.info("medication_created", clinic_id=clinic_id, medication_id=medication.id)
    return medication


def get_medication(session: Session, clinic_id: str, medication_id: str) -> Medication:
    return get_scoped(session, Medication, medication_id, clinic_id, label="Medication")


def update_medication(
    session: Session, clinic_id: str, medication_id: str, changes: Mapping[str, Any]
) -> Medication:
    medication = get_medication(session, clinic_id, medication_id)
    for field in _MEDICATION_FIELDS:
        if field not in changes:
            continue
        value = changes[field]
        if field == "name":
            value = _required(value, "Name")
        setattr(medication, field, value)
    session.flush()
    return medication


def list_medications(
    session: Session,
    clinic_id: str,
    *,
    search: Optional[str] = None,
    active: Optional[bool] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    page, limit = _clean_page(page, limit)
    stmt = scoped_query(Medication, clinic_id)
    if search:
        term = f"%{search.strip()}%"
        stmt = stmt.where(
            or_(
                Medication.name.ilike(term),
                Medication.active_ingredient.ilike(term),
                Medication.manufacturer.ilike(term),
            )
        )
    if active is not None:
        stmt = stmt.where(Medication.active.is_(active))
    total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = session.execute(stmt.order_by(Medication.name).offset((page - 1) * limit).limit(limit)).scalars()
    return {"items": [row.to_dict() for row in rows], **paginate(total, page, limit)}


# ---------------------------------------------------------------------------
# Stock
# ---------------------------------------------------------------------------


def _check_bounds(minimum: int, maximum: Optional[int]) -> None:
    if maximum is not None and maximum < minimum:
        raise DomainValidationError(
            "Maximum quantity must not be below the minimum",
            {"minimum_quantity": minimum, "maximum_quantity": maximum},
        )


def create_stock_item(
    session: Session,
    clinic_id: str,
    medication_id: str,
    *,
    quantity: int = 0,
    minimum_quantity: int = 0,
    maximum_quantity: Optional[int] = None,
    unit: str = "UN",
    location: Optional[str] = None,
) -> StockItem:
    """Open the stock record of a medication, optionally with an opening balance."""

    medication = get_medication(session, clinic_id, medication_id)
    existing = session.execute(
        select(StockItem.id).where(StockItem.medication_id == medication.id)
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError("Medication already has a stock record", {"stock_item_id": existing})
    minimum = _non_negative(minimum_quantity, "minimum_quantity")
    maximum = _non_negative(maximum_quantity, "maximum_quantity") if maximum_quantity is not None else None
    _check_bounds(minimum, maximum)
    item = StockItem(
        clinic_id=clinic_id,
        medication_id=medication.id,
        quantity=0,
        minimum_quantity=minimum,
        maximum_quantity=maximum,
        unit=(unit or "UN").strip().upper(),
        location=location,
    )
    session.add(item)
    session.flush()
    opening = _non_negative(quantity, "quantity")
    if opening:
        _apply_movement(session, item, StockMovementKind.IN.value, opening, reason="Opening balance")
    logger.info("stock_item_created", clinic_id=clinic_id, stock_item_id=item.id, quantity=item.quantity)
    return item


def get_stock_item(session: Session, clinic_id: str, stock_item_id: str) -> StockItem:
    return get_scoped(session, StockItem, stock_item_id, clinic_id, label="Stock item")


def update_stock_item(
    session: Session, clinic_id: str, stock_item_id: str, changes: Mapping[str, Any]
) -> StockItem:
    item = get_stock_item(session, clinic_id, stock_item_id)
    if "quantity" in changes:
        raise DomainValidationError("Stock quantity changes must be recorded as movements")
    if "minimum_quantity" in changes:
        item.minimum_quantity = _non_negative(changes["minimum_quantity"], "minimum_quantity")
    if "maximum_quantity" in changes:
        value = changes["maximum_quantity"]
        item.maximum_quantity = _non_negative(value, "maximum_quantity") if value is not None else None
    _check_bounds(item.minimum_quantity, item.maximum_quantity)
    if changes.get("unit"):
        item.unit = changes["unit"].strip().upper()
    if "location" in changes:
        item.location = changes["location"]
    session.flush()
    return item


def delete_stock_item(session: Session, clinic_id: str, stock_item_id: str) -> None:
    item = get_stock_item(session, clinic_id, stock_item_id)
    moved = session.execute(
        select(func.count(StockMovement.id)).where(StockMovement.stock_item_id == item.id)
    ).scalar_one()
    if moved:
        raise DomainValidationError("Stock items with movements cannot be deleted", {"movements": moved})
    session.delete(item)
    session.flush()


def list_stock(
    session: Session,
    clinic_id: str,
    *,
    search: Optional[str] = None,
    low_only: bool = False,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    page, limit = _clean_page(page, limit)
    stmt = scoped_query(StockItem, clinic_id).join(Medication, StockItem.medication_id == Medication.id)
    if search:
        term = f"%{search.strip()}%"
        stmt = stmt.where(or_(Medication.name.ilike(term), Medication.active_ingredient.ilike(term)))
    if low_only:
        stmt = stmt.where(StockItem.quantity <= StockItem.minimum_quantity)
    total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = session.execute(
        stmt.order_by(Medication.name).offset((page - 1) * limit).limit(limit)
    ).scalars().unique()
    return {"items": [row.to_dict() for row in rows], **paginate(total, page, limit)}


def _apply_movement(
    session: Session,
    item: StockItem,
    kind: str,
    quantity: int,
    *,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
    execution_id: Optional[str] = None,
) -> StockMovement:
    if kind == StockMovementKind.IN.value:
        balance = item.quantity + quantity
    elif kind == StockMovementKind.OUT.value:
        if quantity > item.quantity:
            raise DomainValidationError(
                "Insufficient stock",
                {"stock_item_id": item.id, "available": item.quantity, "requested": quantity},
            )
        balance = item.quantity - quantity
    else:
        balance = quantity
    item.quantity = balance
    movement = StockMovement(
        clinic_id=item.clinic_id,
        stock_item_id=item.id,
        kind=kind,
        quantity=quantity,
        balance=balance,
        reason=reason,
        notes=notes,
        execution_id=execution_id,
    )
    session.add(movement)
    session.flush()
    return movement


def record_movement(
    session: Session,
    clinic_id: str,
    stock_item_id: str,
    kind: str,
    quantity: int,
    *,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
) -> StockMovement:
    """Move stock in or out, or set the counted quantity with an adjustment."""

    kind = (kind or "").strip().lower()
    if kind not in {k.value for k in StockMovementKind}:
        raise DomainValidationError("Kind must be in, out or adjustment", {"kind": kind})
    quantity = _non_negative(quantity, "quantity")
    if quantity == 0 and kind != StockMovementKind.ADJUSTMENT.value:
        raise DomainValidationError("Quantity must be greater than zero")
    item = get_stock_item(session, clinic_id, stock_item_id)
    movement = _apply_movement(session, item, kind, quantity, reason=reason, notes=notes)
    logger.info(
        "stock_movement_recorded",
        clinic_id=clinic_id,
        stock_item_id=item.id,
        kind=kind,
        quantity=quantity,
        balance=item.quantity,
    )
    if item.low:
        logger.warning("stock_below_minimum", clinic_id=clinic_id, stock_item_id=item.id, quantity=item.quantity)
    return movement


def list_movements(
    session: Session,
    clinic_id: str,
    *,
    stock_item_id: Optional[str] = None,
    kind: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    page, limit = _clean_page(page, limit)
    stmt = scoped_query(StockMovement, clinic_id)
    if stock_item_id:
        stmt = stmt.where(StockMovement.stock_item_id == stock_item_id)
    if kind:
        stmt = stmt.where(StockMovement.kind == kind.lower())
    total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = session.execute(
        stmt.order_by(StockMovement.occurred_at.desc()).offset((page - 1) * limit).limit(limit)
    ).scalars().unique()
    return {"items": [row.to_dict() for row in rows], **paginate(total, page, limit)}


# ---------------------------------------------------------------------------
# Procedures
# ---------------------------------------------------------------------------


def _procedure_items(
    session: Session, clinic_id: str, items: Optional[Iterable[Mapping[str, Any]]]
) -> List[ProcedureMedication]:
    rows = []
    seen = set()
    for item in items or []:
        medication = get_medication(session, clinic_id, item.get("medication_id"))
        if medication.id in seen:
            raise DomainValidationError("Medication listed twice", {"medication_id": medication.id})
        seen.add(medication.id)
        quantity = item.get("quantity")
        rows.append(
            ProcedureMedication(
                medication_id=medication.id,
                quantity=_non_negative(quantity if quantity is not None else 1, "quantity"),
                notes=item.get("notes"),
            )
        )
    return rows


def _check_code(session: Session, clinic_id: str, code: str, exclude_id: Optional[str] = None) -> None:
    stmt = select(Procedure.id).where(Procedure.clinic_id == clinic_id, Procedure.code == code)
    if exclude_id:
        stmt = stmt.where(Procedure.id != exclude_id)
    existing = session.execute(stmt).scalar_one_or_none()
    if existing is not None:
        raise ConflictError("Procedure code already registered", {"procedure_id": existing})


def create_procedure(
    session: Session,
    clinic_id: str,
    *,
    code: str,
    name: str,
    price: Any,
    description: Optional[str] = None,
    medications: Optional[Iterable[Mapping[str, Any]]] = None,
) -> Procedure:
    code = _required(code, "Code").upper()
    _check_code(session, clinic_id, code)
    procedure = Procedure(
        clinic_id=clinic_id,
        code=code,
        name=_required(name, "Name"),
        description=description,
        price=finance._amount(price),
    )
    procedure.medications = _procedure_items(session, clinic_id, medications)
    session.add(procedure)
    session.flush()
    logger.info("procedure_created", clinic_id=clinic_id, procedure_id=procedure.id, code=code)
    return procedure


def get_procedure(session: Session, clinic_id: str, procedure_id: str) -> Procedure:
    return get_scoped(session, Procedure, procedure_id, clinic_id, label="Procedure")


def update_procedure(
    session: Session, clinic_id: str, procedure_id: str, changes: Mapping[str, Any]
) -> Procedure:
    procedure = get_procedure(session, clinic_id, procedure_id)
    if "code" in changes:
        code = _required(changes["code"], "Code").upper()
        _check_code(session, clinic_id, code, exclude_id=procedure.id)
        procedure.code = code
    if "name" in changes:
        procedure.name = _required(changes["name"], "Name")
    if "price" in changes:
        procedure.price = finance._amount(changes["price"])
    for field in ("description", "active"):
        if field in changes:
            setattr(procedure, field, changes[field])
    if "medications" in changes:
        procedure.medications = _procedure_items(session, clinic_id, changes["medications"])
    session.flush()
    return procedure


def list_procedures(
    session: Session,
    clinic_id: str,
    *,
    search: Optional[str] = None,
    active: Optional[bool] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    page, limit = _clean_page(page, limit)
    stmt = scoped_query(Procedure, clinic_id)
    if search:
        term = f"%{search.strip()}%"
        stmt = stmt.where(or_(Procedure.code.ilike(term), Procedure.name.ilike(term)))
    if active is not None:
        stmt = stmt.where(Procedure.active.is_(active))
    total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = session.execute(stmt.order_by(Procedure.name).offset((page - 1) * limit).limit(limit)).scalars()
    return {"items": [row.to_dict() for row in rows], **paginate(total, page, limit)}


def _stock_for(session: Session, medication_id: str) -> Optional[StockItem]:
    return session.execute(
        select(StockItem).where(StockItem.medication_id == medication_id)
    ).scalars().unique().one_or_none()


def execute_procedure(
    session: Session,
    clinic_id: str,
    procedure_id: str,
    *,
    patient_id: str,
    payment_method_id: str,
    amount_paid: Any,
    notes: Optional[str] = None,
    executed_by: Optional[str] = None,
) -> ProcedureExecution:
    """Perform a paid procedure for a patient.

    Every medication the procedure consumes must be in stock; shortages are all
    reported together and nothing is written.  On success the stock goes out,
    a receivable is recorded as already received (with its cash inflow) and
    the execution is logged.
    """

    procedure = get_procedure(session, clinic_id, procedure_id)
    if not procedure.active:
        raise NotFoundError("Procedure not found or inactive", {"id": procedure_id})
    patient = get_scoped(session, Patient, patient_id, clinic_id, label="Patient")
    method = get_scoped(session, PaymentMethod, payment_method_id, clinic_id, label="Payment method")
    if not method.active:
        raise NotFoundError("Payment method not found or inactive", {"id": payment_method_id})
    amount = finance._amount(amount_paid)
    if amount <= Decimal("0"):
        raise DomainValidationError("Amount paid must be greater than zero")

    consumption = []
    shortages = []
    for item in procedure.medications:
        stock = _stock_for(session, item.medication_id)
        name = item.medication.name if item.medication is not None else item.medication_id
        if stock is None:
            shortages.append({"medication": name, "available": None, "required": item.quantity})
        elif stock.quantity < item.quantity:
            shortages.append({"medication": name, "available": stock.quantity, "required": item.quantity})
        else:
            consumption.append((stock, item.quantity))
    if shortages:
        raise DomainValidationError("Insufficient stock", {"items": shortages})

    today = local_today()
    receivable = finance.create_receivable(
        session,
        clinic_id,
        description=f"Procedimento: {procedure.name}",
        amount=amount,
        due_date=today,
        patient_id=patient.id,
        payment_method_id=method.id,
        notes=notes,
        status=AccountStatus.PENDING.value,
    )
    finance.receive(session, clinic_id, receivable.id, received_on=today)

    execution = ProcedureExecution(
        clinic_id=clinic_id,
        procedure_id=procedure.id,
        patient_id=patient.id,
        payment_method_id=method.id,
        receivable_id=receivable.id,
        amount=amount,
        executed_by=executed_by,
        notes=notes,
    )
    session.add(execution)
    session.flush()
    for stock, quantity in consumption:
        if quantity:
            _apply_movement(
                session,
                stock,
                StockMovementKind.OUT.value,
                quantity,
                reason=EXECUTION_REASON,
                notes=f"{procedure.name} - {patient.name}",
                execution_id=execution.id,
            )
    logger.info(
        "procedure_executed",
        clinic_id=clinic_id,
        procedure_id=procedure.id,
        execution_id=execution.id,
        amount=float(amount),
    )
    return execution


def list_executions(
    session: Session,
    clinic_id: str,
    *,
    patient_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> List[ProcedureExecution]:
    stmt = scoped_query(ProcedureExecution, clinic_id)
    if patient_id:
        stmt = stmt.where(ProcedureExecution.patient_id == patient_id)
    if date_from:
        stmt = stmt.where(ProcedureExecution.executed_at >= date_from)
    if date_to:
        stmt = stmt.where(ProcedureExecution.executed_at < date_to)
    return list(session.execute(stmt.order_by(ProcedureExecution.executed_at.desc())).scalars().unique())


__all__ = [
    "create_medication",
    "get_medication",
    "update_medication",
    "list_medications",
    "create_stock_item",
    "get_stock_item",
    "update_stock_item",
    "delete_stock_item",
    "list_stock",
    "record_movement",
    "list_movements",
    "create_procedure",
    "get_procedure",
    "update_procedure",
    "list_procedures",
    "execute_procedure",
    "list_executions",
]
