"""Clinic finance: payables, receivables, cash flow and cash closing."""

from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from prontivus.db.models import (
    AccountPayable,
    AccountReceivable,
    AccountStatus,
    Appointment,
    AppointmentStatus,
    CashClosing,
    CashClosingStatus,
    CashFlowEntry,
    CashFlowKind,
    Doctor,
    Patient,
    PaymentMethod,
)
from prontivus.errors import ConflictError, DomainValidationError
from prontivus.patients import _clean_page, paginate
from prontivus.tenancy import get_scoped, scoped_query
from prontivus.time_utils import add_months, day_bounds, local_today, month_start, utc_now

logger = structlog.get_logger(__name__)

OPEN_STATUSES = (AccountStatus.PENDING.value, AccountStatus.OVERDUE.value)
_ZERO = Decimal("0.00")


def _amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except Exception as exc:  # decimal raises several unrelated types
        raise DomainValidationError("Invalid amount", {"amount": value}) from exc
    if amount < 0:
        raise DomainValidationError("Amount must not be negative", {"amount": value})
    return amount.quantize(Decimal("0.01"))


def _status(value: Optional[str]) -> str:
    status = (value or AccountStatus.PENDING.value).strip().lower()
    if status not in {s.value for s in AccountStatus}:
        raise DomainValidationError(f"Unknown account status {value!r}")
    return status


def _check_method(session: Session, clinic_id: str, payment_method_id: Optional[str]) -> None:
    if payment_method_id:
        get_scoped(session, PaymentMethod, payment_method_id, clinic_id, label="Payment method")


def _to_float(value: Optional[Decimal]) -> float:
    return float(value or _ZERO)


# ---------------------------------------------------------------------------
# Accounts payable
# ---------------------------------------------------------------------------


def create_payable(
    session: Session,
    clinic_id: str,
    *,
    description: str,
    amount: Any,
    due_date: date,
    supplier: Optional[str] = None,
    payment_method_id: Optional[str] = None,
    notes: Optional[str] = None,
    status: Optional[str] = None,
) -> AccountPayable:
    if not (description or "").strip():
        raise DomainValidationError("Description is required")
    _check_method(session, clinic_id, payment_method_id)
    payable = AccountPayable(
        clinic_id=clinic_id,
        description=description.strip(),
        supplier=supplier,
        amount=_amount(amount),
        due_date=due_date,
        payment_method_id=payment_method_id,
        notes=notes,
        status=_status(status),
    )
    session.add(payable)
    session.flush()
    logger.info("payable_created", clinic_id=clinic_id, payable_id=payable.id)
    return payable


def list_payables(
    session: Session,
    clinic_id: str,
    *,
    search: Optional[str] = None,
    status: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    page, limit = _clean_page(page, limit)
    stmt = scoped_query(AccountPayable, clinic_id)
    if search:
        term = f"%{search.strip()}%"
        stmt = stmt.where(or_(AccountPayable.description.ilike(term), AccountPayable.supplier.ilike(term)))
    if status:
        stmt = stmt.where(AccountPayable.status == _status(status))
    if date_from:
        stmt = stmt.where(AccountPayable.due_date >= date_from)
    if date_to:
        stmt = stmt.where(AccountPayable.due_date <= date_to)
    total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = session.execute(
        stmt.order_by(AccountPayable.due_date).offset((page - 1) * limit).limit(limit)
    ).scalars()
    return {"items": [row.to_dict() for row in rows], **paginate(total, page, limit)}


_PAYABLE_FIELDS = ("description", "supplier", "amount", "due_date", "payment_method_id", "notes", "status")


def update_payable(session: Session, clinic_id: str, payable_id: str, changes: Mapping[str, Any]) -> AccountPayable:
    payable = get_scoped(session, AccountPayable, payable_id, clinic_id, label="Payable")
    for field in _PAYABLE_FIELDS:
        if field not in changes or changes[field] is None:
            continue
        value = changes[field]
        if field == "amount":
            value = _amount(value)
        elif field == "status":
            value = _status(value)
        elif field == "payment_method_id":
            _check_method(session, clinic_id, value)
        setattr(payable, field, value)
    session.flush()
    return payable


def delete_payable(session: Session, clinic_id: str, payable_id: str) -> None:
    payable = get_scoped(session, AccountPayable, payable_id, clinic_id, label="Payable")
    session.delete(payable)
    session.flush()
    logger.info("payable_deleted", clinic_id=clinic_id, payable_id=payable_id)


def pay_payable(
    session: Session,
    clinic_id: str,
    payable_id: str,
    *,
    paid_on: Optional[date] = None,
    payment_method_id: Optional[str] = None,
) -> AccountPayable:
    """Settle a payable and record the matching cash outflow."""

    payable = get_scoped(session, AccountPayable, payable_id, clinic_id, label="Payable")
    if payable.status not in OPEN_STATUSES:
        raise DomainValidationError(f"Payable is {payable.status}", {"status": payable.status})
    _check_method(session, clinic_id, payment_method_id)
    payable.status = AccountStatus.PAID.value
    payable.paid_on = paid_on or local_today()
    if payment_method_id:
        payable.payment_method_id = payment_method_id
    session.add(
        CashFlowEntry(
            clinic_id=clinic_id,
            kind=CashFlowKind.OUTFLOW.value,
            description=payable.description,
            amount=payable.amount,
            occurred_on=payable.paid_on,
            payment_method_id=payable.payment_method_id,
            payable_id=payable.id,
        )
    )
    session.flush()
    logger.info("payable_paid", clinic_id=clinic_id, payable_id=payable.id)
    return payable


# ---------------------------------------------------------------------------
# Accounts receivable
# ---------------------------------------------------------------------------


def create_receivable(
    session: Session,
    clinic_id: str,
    *,
    description: str,
    amount: Any,
    due_date: date,
    patient_id: Optional[str] = None,
    appointment_id: Optional[str] = None,
    payment_method_id: Optional[str] = None,
    notes: Optional[str] = None,
    status: Optional[str] = None,
) -> AccountReceivable:
    if not (description or "").strip():
        raise DomainValidationError("Description is required")
    if patient_id:
        get_scoped(session, Patient, patient_id, clinic_id, label="Patient")
    if appointment_id:
        appointment = get_scoped(session, Appointment, appointment_id, clinic_id, label="Appointment")
        patient_id = patient_id or appointment.patient_id
    _check_method(session, clinic_id, payment_method_id)
    receivable = AccountReceivable(
        clinic_id=clinic_id,
        patient_id=patient_id,
        appointment_id=appointment_id,
        description=description.strip(),
        amount=_amount(amount),
        due_date=due_date,
        payment_method_id=payment_method_id,
        notes=notes,
        status=_status(status),
    )
    session.add(receivable)
    session.flush()
    logger.info("receivable_created", clinic_id=clinic_id, receivable_id=receivable.id)
    return receivable


def list_receivables(
    session: Session,
    clinic_id: str,
    *,
    search: Optional[str] = None,
    status: Optional[str] = None,
    patient_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    page, limit = _clean_page(page, limit)
    stmt = scoped_query(AccountReceivable, clinic_id)
    if search:
        term = f"%{search.strip()}%"
        stmt = stmt.outerjoin(Patient, AccountReceivable.patient_id == Patient.id).where(
            or_(AccountReceivable.description.ilike(term), Patient.name.ilike(term))
        )
    if status:
        stmt = stmt.where(AccountReceivable.status == _status(status))
    if patient_id:
        stmt = stmt.where(AccountReceivable.patient_id == patient_id)
    if date_from:
        stmt = stmt.where(AccountReceivable.due_date >= date_from)
    if date_to:
        stmt = stmt.where(AccountReceivable.due_date <= date_to)
    total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = session.execute(
        stmt.order_by(AccountReceivable.due_date).offset((page - 1) * limit).limit(limit)
    ).scalars().unique()
    return {"items": [row.to_dict() for row in rows], **paginate(total, page, limit)}


_RECEIVABLE_FIELDS = ("description", "amount", "due_date", "payment_method_id", "notes", "status", "patient_id")


def update_receivable(
    session: Session, clinic_id: str, receivable_id: str, changes: Mapping[str, Any]
) -> AccountReceivable:
    receivable = get_scoped(session, AccountReceivable, receivable_id, clinic_id, label="Receivable")
    for field in _RECEIVABLE_FIELDS:
        if field not in changes or changes[field] is None:
            continue
        value = changes[field]
        if field == "amount":
            value = _amount(value)
        elif field == "status":
            value = _status(value)
        elif field == "payment_method_id":
            _check_method(session, clinic_id, value)
        elif field == "patient_id":
            get_scoped(session, Patient, value, clinic_id, label="Patient")
        setattr(receivable, field, value)
    session.flush()
    return receivable


def delete_receivable(session: Session, clinic_id: str, receivable_id: str) -> None:
    receivable = get_scoped(session, AccountReceivable, receivable_id, clinic_id, label="Receivable")
    session.delete(receivable)
    session.flush()


def receive(
    session: Session,
    clinic_id: str,
    receivable_id: str,
    *,
    received_on: Optional[date] = None,
    payment_method_id: Optional[str] = None,
) -> AccountReceivable:
    """Settle a receivable and record the matching cash inflow."""

    receivable = get_scoped(session, AccountReceivable, receivable_id, clinic_id, label="Receivable")
    if receivable.status not in OPEN_STATUSES:
        raise DomainValidationError(f"Receivable is {receivable.status}", {"status": receivable.status})
    _check_method(session, clinic_id, payment_method_id)
    receivable.status = AccountStatus.PAID.value
    receivable.received_on = received_on or local_today()
    if payment_method_id:
        receivable.payment_method_id = payment_method_id
    session.add(
        CashFlowEntry(
            clinic_id=clinic_id,
            kind=CashFlowKind.INFLOW.value,
            description=receivable.description,
            amount=receivable.amount,
            occurred_on=receivable.received_on,
            payment_method_id=receivable.payment_method_id,
            receivable_id=receivable.id,
        )
    )
    session.flush()
    logger.info("receivable_received", clinic_id=clinic_id, receivable_id=receivable.id)
    return receivable


def refresh_overdue(session: Session, clinic_id: str, today: Optional[date] = None) -> Dict[str, int]:
    """Flip pending payables and receivables past their due date to overdue."""

    today = today or local_today()
    counts = {}
    for key, model in (("payables", AccountPayable), ("receivables", AccountReceivable)):
        rows = session.execute(
            scoped_query(model, clinic_id).where(
                model.status == AccountStatus.PENDING.value, model.due_date < today
            )
        ).scalars().unique().all()
        for row in rows:
            row.status = AccountStatus.OVERDUE.value
        counts[key] = len(rows)
    session.flush()
    if counts["payables"] or counts["receivables"]:
        logger.info("accounts_marked_overdue", clinic_id=clinic_id, **counts)
    return counts


# ---------------------------------------------------------------------------
# Cash flow
# ---------------------------------------------------------------------------


def create_cash_entry(
    session: Session,
    clinic_id: str,
    *,
    kind: str,
    description: str,
    amount: Any,
    occurred_on: Optional[date] = None,
    payment_method_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> CashFlowEntry:
    kind = (kind or "").strip().lower()
    if kind not in {k.value for k in CashFlowKind}:
        raise DomainValidationError("Kind must be inflow or outflow", {"kind": kind})
    if not (description or "").strip():
        raise DomainValidationError("Description is required")
    _check_method(session, clinic_id, payment_method_id)
    entry = CashFlowEntry(
        clinic_id=clinic_id,
        kind=kind,
        description=description.strip(),
        amount=_amount(amount),
        occurred_on=occurred_on or local_today(),
        payment_method_id=payment_method_id,
        notes=notes,
    )
    session.add(entry)
    session.flush()
    return entry


def list_cash_entries(
    session: Session,
    clinic_id: str,
    *,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    kind: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Dict[str, Any]:
    page, limit = _clean_page(page, limit)
    stmt = scoped_query(CashFlowEntry, clinic_id)
    if date_from:
        stmt = stmt.where(CashFlowEntry.occurred_on >= date_from)
    if date_to:
        stmt = stmt.where(CashFlowEntry.occurred_on <= date_to)
    if kind:
        stmt = stmt.where(CashFlowEntry.kind == kind.lower())
    total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = session.execute(
        stmt.order_by(CashFlowEntry.occurred_on.desc(), CashFlowEntry.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().unique()
    return {"items": [row.to_dict() for row in rows], **paginate(total, page, limit)}


def delete_cash_entry(session: Session, clinic_id: str, entry_id: str) -> None:
    entry = get_scoped(session, CashFlowEntry, entry_id, clinic_id, label="Cash entry")
    if entry.payable_id or entry.receivable_id:
        raise DomainValidationError("Entries created by a settlement cannot be deleted")
    session.delete(entry)
    session.flush()


def cash_flow_summary(
    session: Session, clinic_id: str, date_from: date, date_to: date
) -> Dict[str, Any]:
    rows = session.execute(
        select(CashFlowEntry.occurred_on, CashFlowEntry.kind, func.sum(CashFlowEntry.amount))
        .where(
            CashFlowEntry.clinic_id == clinic_id,
            CashFlowEntry.occurred_on >= date_from,
            CashFlowEntry.occurred_on <= date_to,
        )
        .group_by(CashFlowEntry.occurred_on, CashFlowEntry.kind)
    ).all()
    per_day: Dict[date, Dict[str, Decimal]] = defaultdict(lambda: {"inflow": _ZERO, "outflow": _ZERO})
    for occurred_on, kind, total in rows:
        per_day[occurred_on][kind] += Decimal(str(total or 0))
    inflow = sum((day["inflow"] for day in per_day.values()), _ZERO)
    outflow = sum((day["outflow"] for day in per_day.values()), _ZERO)
    return {
        "date_from": date_from.isoformat(),
        "date_to": date_to.isoformat(),
        "inflow": float(inflow),
        "outflow": float(outflow),
        "balance": float(inflow - outflow),
        "days": [
            {
                "date": day.isoformat(),
                "inflow": float(values["inflow"]),
                "outflow": float(values["outflow"]),
                "balance": float(values["inflow"] - values["outflow"]),
            }
            for day, values in sorted(per_day.items())
        ],
    }


# ---------------------------------------------------------------------------
# Delinquency
# ---------------------------------------------------------------------------


def delinquency_report(
    session: Session,
    clinic_id: str,
    *,
    today: Optional[date] = None,
    doctor_id: Optional[str] = None,
    search: Optional[str] = None,
) -> Dict[str, Any]:
    """Open receivables already past due, oldest first.

    With ``doctor_id`` only patients the doctor has seen are considered.
    """

    today = today or local_today()
    stmt = scoped_query(AccountReceivable, clinic_id).where(
        AccountReceivable.status.in_(OPEN_STATUSES),
        AccountReceivable.due_date < today,
    )
    if doctor_id:
        seen = select(Appointment.patient_id).where(
            Appointment.clinic_id == clinic_id, Appointment.doctor_id == doctor_id
        )
        stmt = stmt.where(AccountReceivable.patient_id.in_(seen))
    if search:
        term = f"%{search.strip()}%"
        stmt = stmt.outerjoin(Patient, AccountReceivable.patient_id == Patient.id).where(
            or_(AccountReceivable.description.ilike(term), Patient.name.ilike(term))
        )
    rows = session.execute(stmt.order_by(AccountReceivable.due_date)).scalars().unique().all()

    items = []
    total = _ZERO
    days = []
    for row in rows:
        overdue = (today - row.due_date).days
        days.append(overdue)
        total += row.amount or _ZERO
        items.append({**row.to_dict(), "days_overdue": overdue})
    return {
        "items": items,
        "summary": {
            "total": float(total),
            "count": len(items),
            "average_days_overdue": round(sum(days) / len(days)) if days else 0,
        },
    }


# ---------------------------------------------------------------------------
# Cash closing
# ---------------------------------------------------------------------------


def authorize_cash_closing(
    session: Session,
    clinic_id: str,
    doctor_id: str,
    day: Optional[date] = None,
    notes: Optional[str] = None,
) -> CashClosing:
    day = day or local_today()
    get_scoped(session, Doctor, doctor_id, clinic_id, label="Doctor")
    existing = session.execute(
        scoped_query(CashClosing, clinic_id).where(CashClosing.doctor_id == doctor_id, CashClosing.day == day)
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError("Cash closing already authorized for this day", {"closing_id": existing.id})
    closing = CashClosing(
        clinic_id=clinic_id,
        doctor_id=doctor_id,
        day=day,
        notes=notes,
        status=CashClosingStatus.AUTHORIZED.value,
        authorized_at=utc_now(),
    )
    session.add(closing)
    session.flush()
    logger.info("cash_closing_authorized", clinic_id=clinic_id, closing_id=closing.id, day=day.isoformat())
    return closing


def list_cash_closings(
    session: Session, clinic_id: str, *, day: Optional[date] = None, status: Optional[str] = None
) -> List[CashClosing]:
    stmt = scoped_query(CashClosing, clinic_id)
    if day:
        stmt = stmt.where(CashClosing.day == day)
    if status:
        stmt = stmt.where(CashClosing.status == status)
    return list(session.execute(stmt.order_by(CashClosing.day.desc())).scalars())


def close_cash(
    session: Session,
    clinic_id: str,
    closing_id: str,
    closed_by: str,
    signature: Optional[str] = None,
) -> CashClosing:
    closing = get_scoped(session, CashClosing, closing_id, clinic_id, label="Cash closing")
    if closing.status != CashClosingStatus.AUTHORIZED.value:
        raise DomainValidationError("Cash closing is not awaiting closure", {"status": closing.status})
    closing.status = CashClosingStatus.CLOSED.value
    closing.closed_at = utc_now()
    closing.closed_by = closed_by
    closing.signature = signature
    session.flush()
    logger.info("cash_closed", clinic_id=clinic_id, closing_id=closing.id, closed_by=closed_by)
    return closing


def daily_cash_summary(session: Session, clinic_id: str, day: Optional[date] = None) -> Dict[str, Any]:
    day = day or local_today()
    rows = session.execute(
        select(PaymentMethod.name, CashFlowEntry.kind, func.sum(CashFlowEntry.amount), func.count(CashFlowEntry.id))
        .select_from(CashFlowEntry)
        .outerjoin(PaymentMethod, CashFlowEntry.payment_method_id == PaymentMethod.id)
        .where(CashFlowEntry.clinic_id == clinic_id, CashFlowEntry.occurred_on == day)
        .group_by(PaymentMethod.name, CashFlowEntry.kind)
    ).all()
    methods: Dict[str, Dict[str, Any]] = {}
    inflow = outflow = _ZERO
    for name, kind, total, count in rows:
        label = name or "Not informed"
        bucket = methods.setdefault(label, {"method": label, "inflow": 0.0, "outflow": 0.0, "entries": 0})
        amount = Decimal(str(total or 0))
        bucket[kind] += float(amount)
        bucket["entries"] += int(count)
        if kind == CashFlowKind.INFLOW.value:
            inflow += amount
        else:
            outflow += amount
    closings = list_cash_closings(session, clinic_id, day=day)
    return {
        "date": day.isoformat(),
        "inflow": float(inflow),
        "outflow": float(outflow),
        "balance": float(inflow - outflow),
        "by_method": sorted(methods.values(), key=lambda item: item["method"]),
        "closings": [closing.to_dict() for closing in closings],
    }


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


def _sum(session: Session, stmt) -> float:
    return _to_float(session.execute(stmt).scalar())


def dashboard(session: Session, clinic_id: str, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or local_today()
    first = month_start(today)
    next_first = add_months(first, 1)
    day_start, day_end = day_bounds(today)
    month_from = datetime.combine(first, datetime.min.time())
    month_to = datetime.combine(next_first, datetime.min.time())

    patients = session.execute(
        select(func.count(Patient.id)).where(Patient.clinic_id == clinic_id, Patient.active.is_(True))
    ).scalar_one()
    today_appointments = session.execute(
        select(func.count(Appointment.id)).where(
            Appointment.clinic_id == clinic_id,
            Appointment.starts_at >= day_start,
            Appointment.starts_at < day_end,
            Appointment.status != AppointmentStatus.CANCELLED.value,
        )
    ).scalar_one()
    by_status = dict(
        session.execute(
            select(Appointment.status, func.count(Appointment.id))
            .where(
                Appointment.clinic_id == clinic_id,
                Appointment.starts_at >= month_from,
                Appointment.starts_at < month_to,
            )
            .group_by(Appointment.status)
        ).all()
    )
    month_flow = select(func.sum(CashFlowEntry.amount)).where(
        CashFlowEntry.clinic_id == clinic_id,
        CashFlowEntry.occurred_on >= first,
        CashFlowEntry.occurred_on < next_first,
    )
    revenue = _sum(session, month_flow.where(CashFlowEntry.kind == CashFlowKind.INFLOW.value))
    expenses = _sum(session, month_flow.where(CashFlowEntry.kind == CashFlowKind.OUTFLOW.value))
    open_receivables = _sum(
        session,
        select(func.sum(AccountReceivable.amount)).where(
            AccountReceivable.clinic_id == clinic_id, AccountReceivable.status.in_(OPEN_STATUSES)
        ),
    )
    open_payables = _sum(
        session,
        select(func.sum(AccountPayable.amount)).where(
            AccountPayable.clinic_id == clinic_id, AccountPayable.status.in_(OPEN_STATUSES)
        ),
    )
    return {
        "date": today.isoformat(),
        "patients": int(patients),
        "appointments_today": int(today_appointments),
        "appointments_month": {status.value: int(by_status.get(status.value, 0)) for status in AppointmentStatus},
        "month_revenue": revenue,
        "month_expenses": expenses,
        "month_balance": revenue - expenses,
        "open_receivables": open_receivables,
        "open_payables": open_payables,
    }
