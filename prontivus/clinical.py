"""Medical records, prescriptions and exam requests."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog
from sqlalchemy.orm import Session

from prontivus.db.models import (
    Appointment,
    AppointmentStatus,
    Doctor,
    ExamRequest,
    ExamRequestStatus,
    MedicalRecord,
    Patient,
    Prescription,
)
from prontivus.errors import DomainValidationError, NotFoundError, PermissionDeniedError
from prontivus.tenancy import get_scoped, scoped_query
from prontivus.time_utils import utc_now

logger = structlog.get_logger(__name__)

DEFAULT_EXAM_TYPE = "Laboratorial"
_RECORD_FIELDS = ("anamnesis", "physical_exam", "diagnosis", "conduct", "evolution")
_PRESCRIPTION_ITEM_FIELDS = ("medication", "dosage", "frequency", "duration", "instructions")


def _doctor_appointment(session: Session, clinic_id: str, appointment_id: str, doctor_id: str) -> Appointment:
    appointment = get_scoped(session, Appointment, appointment_id, clinic_id, label="Appointment")
    if appointment.doctor_id != doctor_id:
        raise PermissionDeniedError("Appointment belongs to another doctor")
    return appointment


def upsert_medical_record(
    session: Session,
    clinic_id: str,
    appointment_id: str,
    doctor_id: str,
    fields: Mapping[str, Any],
) -> MedicalRecord:
    """Create or update the record attached to ``appointment_id``."""

    appointment = _doctor_appointment(session, clinic_id, appointment_id, doctor_id)
    if appointment.status == AppointmentStatus.CANCELLED.value:
        raise DomainValidationError("Cannot write a record for a cancelled appointment")
    record = session.execute(
        scoped_query(MedicalRecord, clinic_id).where(MedicalRecord.appointment_id == appointment.id)
    ).scalar_one_or_none()
    created = record is None
    if created:
        record = MedicalRecord(
            clinic_id=clinic_id,
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            doctor_id=doctor_id,
        )
        session.add(record)
    for key in _RECORD_FIELDS:
        if key in fields and fields[key] is not None:
            setattr(record, key, fields[key])
    session.flush()
    logger.info(
        "medical_record_saved",
        clinic_id=clinic_id,
        record_id=record.id,
        appointment_id=appointment.id,
        created=created,
    )
    return record


def get_medical_record(session: Session, clinic_id: str, appointment_id: str) -> MedicalRecord:
    get_scoped(session, Appointment, appointment_id, clinic_id, label="Appointment")
    record = session.execute(
        scoped_query(MedicalRecord, clinic_id).where(MedicalRecord.appointment_id == appointment_id)
    ).scalar_one_or_none()
    if record is None:
        raise NotFoundError("Medical record not found", {"appointment_id": appointment_id})
    return record


def _clean_items(items: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    cleaned: List[Dict[str, Any]] = []
    for index, item in enumerate(items or []):
        medication = str(item.get("medication") or "").strip()
        if not medication:
            raise DomainValidationError("Every prescription item needs a medication", {"index": index})
        entry = {"medication": medication}
        for key in _PRESCRIPTION_ITEM_FIELDS[1:]:
            value = item.get(key)
            if value not in (None, ""):
                entry[key] = str(value).strip()
        cleaned.append(entry)
    if not cleaned:
        raise DomainValidationError("Prescription must have at least one item")
    return cleaned


def _subject(
    session: Session, clinic_id: str, patient_id: str, doctor_id: str, appointment_id: Optional[str]
) -> None:
    get_scoped(session, Patient, patient_id, clinic_id, label="Patient")
    get_scoped(session, Doctor, doctor_id, clinic_id, label="Doctor")
    if appointment_id:
        appointment = _doctor_appointment(session, clinic_id, appointment_id, doctor_id)
        if appointment.patient_id != patient_id:
            raise DomainValidationError("Appointment belongs to another patient")


def create_prescription(
    session: Session,
    clinic_id: str,
    *,
    patient_id: str,
    doctor_id: str,
    items: Iterable[Mapping[str, Any]],
    appointment_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> Prescription:
    _subject(session, clinic_id, patient_id, doctor_id, appointment_id)
    prescription = Prescription(
        clinic_id=clinic_id,
        patient_id=patient_id,
        doctor_id=doctor_id,
        appointment_id=appointment_id,
        items=_clean_items(items),
        notes=notes,
    )
    session.add(prescription)
    session.flush()
    logger.info("prescription_created", clinic_id=clinic_id, prescription_id=prescription.id)
    return prescription


def get_prescription(session: Session, clinic_id: str, prescription_id: str) -> Prescription:
    return get_scoped(session, Prescription, prescription_id, clinic_id, label="Prescription")


def list_prescriptions(
    session: Session, clinic_id: str, *, patient_id: Optional[str] = None, doctor_id: Optional[str] = None
) -> List[Prescription]:
    stmt = scoped_query(Prescription, clinic_id)
    if patient_id:
        stmt = stmt.where(Prescription.patient_id == patient_id)
    if doctor_id:
        stmt = stmt.where(Prescription.doctor_id == doctor_id)
    return list(session.execute(stmt.order_by(Prescription.created_at.desc())).scalars().unique())


def create_exam_request(
    session: Session,
    clinic_id: str,
    *,
    patient_id: str,
    doctor_id: str,
    exam_name: str,
    exam_type: Optional[str] = None,
    justification: Optional[str] = None,
    appointment_id: Optional[str] = None,
) -> ExamRequest:
    if not (exam_name or "").strip():
        raise DomainValidationError("Exam name is required")
    _subject(session, clinic_id, patient_id, doctor_id, appointment_id)
    request = ExamRequest(
        clinic_id=clinic_id,
        patient_id=patient_id,
        doctor_id=doctor_id,
        appointment_id=appointment_id,
        exam_name=exam_name.strip(),
        exam_type=(exam_type or "").strip() or DEFAULT_EXAM_TYPE,
        justification=justification,
        status=ExamRequestStatus.REQUESTED.value,
    )
    session.add(request)
    session.flush()
    logger.info("exam_requested", clinic_id=clinic_id, exam_request_id=request.id)
    return request


def get_exam_request(session: Session, clinic_id: str, exam_request_id: str) -> ExamRequest:
    return get_scoped(session, ExamRequest, exam_request_id, clinic_id, label="Exam request")


def complete_exam_request(
    session: Session, clinic_id: str, exam_request_id: str, result_notes: Optional[str] = None
) -> ExamRequest:
    request = get_exam_request(session, clinic_id, exam_request_id)
    if request.status == ExamRequestStatus.COMPLETED.value:
        raise DomainValidationError("Exam request already completed")
    request.status = ExamRequestStatus.COMPLETED.value
    request.result_notes = result_notes
    request.completed_at = utc_now()
    session.flush()
    return request


def list_exam_requests(
    session: Session,
    clinic_id: str,
    *,
    patient_id: Optional[str] = None,
    appointment_id: Optional[str] = None,
    status: Optional[str] = None,
) -> List[ExamRequest]:
    stmt = scoped_query(ExamRequest, clinic_id)
    if patient_id:
        stmt = stmt.where(ExamRequest.patient_id == patient_id)
    if appointment_id:
        stmt = stmt.where(ExamRequest.appointment_id == appointment_id)
    if status:
        stmt = stmt.where(ExamRequest.status == status)
    return list(session.execute(stmt.order_by(ExamRequest.created_at.desc())).scalars().unique())


def patient_history(session: Session, clinic_id: str, patient_id: str) -> List[Dict[str, Any]]:
    """Completed appointments of a patient, newest first, with their records."""

    get_scoped(session, Patient, patient_id, clinic_id, label="Patient")
    appointments = session.execute(
        scoped_query(Appointment, clinic_id)
        .where(
            Appointment.patient_id == patient_id,
            Appointment.status == AppointmentStatus.COMPLETED.value,
        )
        .order_by(Appointment.starts_at.desc())
    ).scalars().unique().all()
    records = {
        record.appointment_id: record
        for record in session.execute(
            scoped_query(MedicalRecord, clinic_id).where(MedicalRecord.patient_id == patient_id)
        ).scalars()
    }
    history = []
    for appointment in appointments:
        record = records.get(appointment.id)
        history.append(
            {
                "appointment": appointment.to_dict(),
                "medical_record": record.to_dict() if record is not None else None,
            }
        )
    return history
