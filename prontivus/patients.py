"""Patient registry for a clinic."""

from __future__ import annotations

import math
from datetime import date
from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from prontivus import auth
from prontivus.db.models import (
    AccountReceivable,
    Appointment,
    ExamRequest,
    MedicalRecord,
    Patient,
    Prescription,
    UserRole,
)
from prontivus.errors import ConflictError, DomainValidationError
from prontivus.tenancy import get_scoped, scoped_query
from prontivus.validators import is_valid_cpf, only_digits

logger = structlog.get_logger(__name__)

_EDITABLE_FIELDS = (
    "name",
    "cpf",
    "birth_date",
    "sex",
    "email",
    "phone",
    "mobile",
    "zip_code",
    "address",
    "notes",
    "active",
)


def paginate(total: int, page: int, limit: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


def _clean_page(page: int, limit: int) -> tuple[int, int]:
    page = max(1, int(page or 1))
    limit = max(1, min(int(limit or 20), 200))
    return page, limit


def next_record_number(session: Session) -> int:
    """Return the next medical record number (global sequence)."""

    current = session.execute(select(func.max(Patient.record_number))).scalar()
    if current is not None:
        return int(current) + 1
    count = session.execute(select(func.count(Patient.id))).scalar_one()
    return int(count) + 1


def _normalise_fields(data: Mapping[str, Any]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key in _EDITABLE_FIELDS:
        if key not in data:
            continue
        value = data[key]
        if key == "active" and value is None:
            continue
        if isinstance(value, str):
            value = value.strip() or None
        cleaned[key] = value
    if "name" in cleaned and not cleaned["name"]:
        raise DomainValidationError("Patient name is required")
    if cleaned.get("cpf"):
        cpf = only_digits(cleaned["cpf"])
        if not is_valid_cpf(cpf):
            raise DomainValidationError("Invalid CPF", {"cpf": cleaned["cpf"]})
        cleaned["cpf"] = cpf
    for key in ("phone", "mobile", "zip_code"):
        if cleaned.get(key):
            cleaned[key] = only_digits(cleaned[key]) or None
    if cleaned.get("email"):
        cleaned["email"] = cleaned["email"].lower()
    birth_date = cleaned.get("birth_date")
    if isinstance(birth_date, date) and birth_date > date.today():
        raise DomainValidationError("Birth date cannot be in the future")
    return cleaned


def _ensure_unique_cpf(session: Session, clinic_id: str, cpf: Optional[str], exclude_id: Optional[str] = None) -> None:
    if not cpf:
        return
    stmt = scoped_query(Patient, clinic_id).where(Patient.cpf == cpf)
    if exclude_id:
        stmt = stmt.where(Patient.id != exclude_id)
    existing = session.execute(stmt).scalar_one_or_none()
    if existing is not None:
        raise ConflictError("A patient with this CPF already exists", {"patient_id": existing.id})


def create_patient(session: Session, clinic_id: str, data: Mapping[str, Any]) -> Patient:
    fields = _normalise_fields(data)
    if not fields.get("name"):
        raise DomainValidationError("Patient name is required")
    _ensure_unique_cpf(session, clinic_id, fields.get("cpf"))
    patient = Patient(clinic_id=clinic_id, record_number=next_record_number(session), **fields)
    session.add(patient)
    session.flush()
    logger.info("patient_created", clinic_id=clinic_id, patient_id=patient.id)
    return patient


def get_patient(session: Session, clinic_id: str, patient_id: str) -> Patient:
    return get_scoped(session, Patient, patient_id, clinic_id, label="Patient")


def update_patient(session: Session, clinic_id: str, patient_id: str, data: Mapping[str, Any]) -> Patient:
    patient = get_patient(session, clinic_id, patient_id)
    fields = _normalise_fields(data)
    if "cpf" in fields:
        _ensure_unique_cpf(session, clinic_id, fields["cpf"], exclude_id=patient.id)
    for key, value in fields.items():
        setattr(patient, key, value)
    session.flush()
    return patient


def delete_patient(session: Session, clinic_id: str, patient_id: str) -> Dict[str, Any]:
    """Delete a patient, or deactivate one that already has appointments."""

    patient = get_patient(session, clinic_id, patient_id)
    has_history = session.execute(
        select(func.count(Appointment.id)).where(Appointment.patient_id == patient.id)
    ).scalar_one()
    if has_history:
        patient.active = False
        session.flush()
        logger.info("patient_deactivated", clinic_id=clinic_id, patient_id=patient.id)
        return {"id": patient.id, "deleted": False, "active": False}
    session.delete(patient)
    session.flush()
    logger.info("patient_deleted", clinic_id=clinic_id, patient_id=patient_id)
    return {"id": patient_id, "deleted": True}


def list_patients(
    session: Session,
    clinic_id: str,
    *,
    search: Optional[str] = None,
    active: Optional[bool] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    page, limit = _clean_page(page, limit)
    stmt = scoped_query(Patient, clinic_id)
    if search:
        term = search.strip()
        conditions = [Patient.name.ilike(f"%{term}%"), Patient.email.ilike(f"%{term}%")]
        digits = only_digits(term)
        if digits:
            conditions.append(Patient.cpf.like(f"%{digits}%"))
            if digits == term:
                conditions.append(Patient.record_number == int(digits))
        stmt = stmt.where(or_(*conditions))
    if active is not None:
        stmt = stmt.where(Patient.active.is_(active))
    total = session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = session.execute(
        stmt.order_by(Patient.name).offset((page - 1) * limit).limit(limit)
    ).scalars()
    return {"items": [p.to_dict() for p in rows], **paginate(total, page, limit)}


def complete_record(session: Session, clinic_id: str, patient_id: str) -> Dict[str, Any]:
    """Return the patient with every clinical and financial entry attached."""

    patient = get_patient(session, clinic_id, patient_id)
    appointments = session.execute(
        scoped_query(Appointment, clinic_id)
        .where(Appointment.patient_id == patient.id)
        .order_by(Appointment.starts_at.desc())
    ).scalars().unique()
    records = session.execute(
        scoped_query(MedicalRecord, clinic_id)
        .where(MedicalRecord.patient_id == patient.id)
        .order_by(MedicalRecord.created_at.desc())
    ).scalars()
    prescriptions = session.execute(
        scoped_query(Prescription, clinic_id)
        .where(Prescription.patient_id == patient.id)
        .order_by(Prescription.created_at.desc())
    ).scalars().unique()
    exams = session.execute(
        scoped_query(ExamRequest, clinic_id)
        .where(ExamRequest.patient_id == patient.id)
        .order_by(ExamRequest.created_at.desc())
    ).scalars().unique()
    receivables = session.execute(
        scoped_query(AccountReceivable, clinic_id)
        .where(AccountReceivable.patient_id == patient.id)
        .order_by(AccountReceivable.due_date.desc())
    ).scalars().unique()
    return {
        "patient": patient.to_dict(),
        "appointments": [a.to_dict() for a in appointments],
        "medical_records": [r.to_dict() for r in records],
        "prescriptions": [p.to_dict() for p in prescriptions],
        "exam_requests": [e.to_dict() for e in exams],
        "receivables": [r.to_dict() for r in receivables],
    }


def patients_for_user(session: Session, user_id: str) -> List[Patient]:
    return list(session.execute(select(Patient).where(Patient.user_id == user_id)).scalars())


def grant_portal_access(
    session: Session, clinic_id: str, patient_id: str, email: str, password: str
) -> Dict[str, Any]:
    """Create the patient's portal login and link it to the record."""

    patient = get_patient(session, clinic_id, patient_id)
    if patient.user_id:
        raise ConflictError("Patient already has portal access", {"user_id": patient.user_id})
    auth.validate_password_strength(password)
    user = auth.register_user(
        session,
        email,
        password,
        patient.name,
        UserRole.PATIENT.value,
        clinic_id=clinic_id,
        cpf=patient.cpf,
    )
    patient.user_id = user.id
    session.flush()
    logger.info("patient_portal_access_granted", clinic_id=clinic_id, patient_id=patient.id)
    return {"patient_id": patient.id, "user_id": user.id, "email": user.email}
