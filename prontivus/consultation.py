"""AI-assisted consultation workflow.

A session walks an appointment through ``transcription -> anamnesis ->
ai_context -> suggestions -> documents -> finished``.  The analysis step calls
the language model, charges the clinic's token quota and keeps the validated
suggestions; :func:`finalize` turns the clinician's selection into a medical
record, a prescription and exam requests.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog
from sqlalchemy.orm import Session

from prontivus import clinical, openai_client, prompts, scheduling
from prontivus.db.models import (
    CONSULTATION_STEP_ORDER,
    Appointment,
    AppointmentStatus,
    Clinic,
    ConsultationSession,
    ConsultationStep,
)
from prontivus.errors import (
    DomainValidationError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
)
from prontivus.observability import AI_ANALYSES, AI_TOKENS_CONSUMED
from prontivus.tenancy import get_scoped, scoped_query

logger = structlog.get_logger(__name__)

DEFAULT_ANAMNESIS = "Anamnese não gerada pela IA"
DEFAULT_CID_SCORE = 0.7
DEFAULT_EXAM_TYPE = "Laboratorial"

_STARTABLE = {
    AppointmentStatus.SCHEDULED.value,
    AppointmentStatus.CONFIRMED.value,
    AppointmentStatus.IN_PROGRESS.value,
}


def _step_index(step: str) -> int:
    try:
        return CONSULTATION_STEP_ORDER.index(step)
    except ValueError:
        raise DomainValidationError(f"Unknown consultation step {step!r}") from None


def _require_step(consultation: ConsultationSession, *allowed: ConsultationStep) -> None:
    if consultation.step not in {step.value for step in allowed}:
        raise DomainValidationError(
            f"Not allowed during step {consultation.step}",
            {"step": consultation.step, "allowed": [step.value for step in allowed]},
        )


def get_session(session: Session, clinic_id: str, session_id: str, doctor_id: Optional[str] = None) -> ConsultationSession:
    consultation = get_scoped(session, ConsultationSession, session_id, clinic_id, label="Consultation")
    if doctor_id and consultation.doctor_id != doctor_id:
        raise PermissionDeniedError("Consultation belongs to another doctor")
    return consultation


def start_session(session: Session, clinic_id: str, appointment_id: str, doctor_id: str) -> ConsultationSession:
    """Open (or return) the consultation of an appointment and mark it in progress."""

    appointment = get_scoped(session, Appointment, appointment_id, clinic_id, label="Appointment")
    if appointment.doctor_id != doctor_id:
        raise PermissionDeniedError("Appointment belongs to another doctor")
    existing = session.execute(
        scoped_query(ConsultationSession, clinic_id).where(ConsultationSession.appointment_id == appointment.id)
    ).scalars().unique().one_or_none()
    if existing is not None:
        return existing
    if appointment.status not in _STARTABLE:
        raise DomainValidationError(
            "Appointment cannot be attended", {"status": appointment.status}
        )
    if appointment.status != AppointmentStatus.IN_PROGRESS.value:
        scheduling.change_status(session, clinic_id, appointment.id, AppointmentStatus.IN_PROGRESS.value)
    consultation = ConsultationSession(
        clinic_id=clinic_id,
        appointment_id=appointment.id,
        doctor_id=doctor_id,
        step=ConsultationStep.TRANSCRIPTION.value,
        transcript=[],
    )
    session.add(consultation)
    session.flush()
    logger.info("consultation_started", clinic_id=clinic_id, session_id=consultation.id, appointment_id=appointment.id)
    return consultation


def append_transcript(
    session: Session,
    clinic_id: str,
    session_id: str,
    text: str,
    speaker: Optional[str] = None,
    *,
    doctor_id: Optional[str] = None,
) -> ConsultationSession:
    consultation = get_session(session, clinic_id, session_id, doctor_id)
    _require_step(consultation, ConsultationStep.TRANSCRIPTION)
    text = (text or "").strip()
    if not text:
        raise DomainValidationError("Transcript text is required")
    segment = {"text": text}
    if speaker:
        segment["speaker"] = speaker
    # JSON columns only notice reassignment.
    consultation.transcript = list(consultation.transcript or []) + [segment]
    session.flush()
    return consultation


def _clamp_score(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_CID_SCORE
    return max(0.0, min(1.0, float(value)))


def _text(item: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = item.get(key)
        if value:
            return str(value).strip()
    return ""


def _items(payload: Mapping[str, Any], *keys: str) -> List[Mapping[str, Any]]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, Mapping)]
    return []


def validate_analysis(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Normalise a model reply into anamnesis, CID codes, exams and prescriptions."""

    cid_codes = []
    for item in _items(payload, "cid_codes", "cidCodes"):
        code = _text(item, "code")
        description = _text(item, "description")
        if code and description:
            cid_codes.append({"code": code, "description": description, "score": _clamp_score(item.get("score"))})

    exams = []
    for item in _items(payload, "exams", "exames"):
        name = _text(item, "name", "nome")
        if name:
            exams.append(
                {
                    "name": name,
                    "type": _text(item, "type", "tipo") or DEFAULT_EXAM_TYPE,
                    "justification": _text(item, "justification", "justificativa"),
                }
            )

    prescriptions = []
    for item in _items(payload, "prescriptions", "prescricoes"):
        medication = _text(item, "medication", "medicamento")
        if medication:
            prescriptions.append(
                {
                    "medication": medication,
                    "dosage": _text(item, "dosage", "dosagem"),
                    "frequency": _text(item, "frequency", "posologia"),
                    "duration": _text(item, "duration", "duracao"),
                    "justification": _text(item, "justification", "justificativa"),
                }
            )

    anamnesis = payload.get("anamnesis") or payload.get("anamnese")
    return {
        "anamnesis": str(anamnesis).strip() if anamnesis else DEFAULT_ANAMNESIS,
        "cid_codes": cid_codes[: prompts.MAX_CID_CODES],
        "exams": exams[: prompts.MAX_EXAMS],
        "prescriptions": prescriptions[: prompts.MAX_PRESCRIPTIONS],
    }


def _ai_error_message(status_code: Optional[int]) -> str:
    if status_code == 401:
        return "invalid API key"
    if status_code == 429:
        return "rate limit exceeded"
    if status_code is not None and status_code >= 500:
        return "AI service unavailable"
    return "AI analysis failed"


def check_quota(clinic: Clinic) -> None:
    available = clinic.monthly_tokens_available or 0
    consumed = clinic.tokens_consumed or 0
    if consumed >= available:
        raise QuotaExceededError(
            "Monthly AI token quota exhausted",
            {"available": available, "consumed": consumed},
        )


def analyze(
    session: Session,
    clinic_id: str,
    session_id: str,
    extra_context: Optional[str] = None,
    *,
    doctor_id: Optional[str] = None,
) -> ConsultationSession:
    consultation = get_session(session, clinic_id, session_id, doctor_id)
    _require_step(consultation, ConsultationStep.TRANSCRIPTION, ConsultationStep.AI_CONTEXT)
    transcript = prompts.format_transcript(list(consultation.transcript or []))
    if not transcript:
        raise DomainValidationError("Transcript is empty")
    clinic = session.get(Clinic, clinic_id)
    if clinic is None:
        raise NotFoundError("Clinic not found", {"id": clinic_id})
    check_quota(clinic)

    messages = prompts.build_analysis_prompt(transcript, extra_context or consultation.extra_context)
    try:
        payload, tokens = openai_client.call_openai_json(
            messages,
            temperature=prompts.ANALYSIS_TEMPERATURE,
            max_tokens=prompts.ANALYSIS_MAX_TOKENS,
        )
    except openai_client.AIServiceError as exc:
        AI_ANALYSES.labels(status="error").inc()
        logger.warning(
            "consultation_analysis_failed",
            clinic_id=clinic_id,
            session_id=consultation.id,
            status_code=exc.status_code,
            error=str(exc),
        )
        raise ExternalServiceError(
            _ai_error_message(exc.status_code), {"status_code": exc.status_code}
        ) from exc

    analysis = validate_analysis(payload)
    clinic.tokens_consumed = (clinic.tokens_consumed or 0) + tokens
    consultation.tokens_used = (consultation.tokens_used or 0) + tokens
    consultation.analysis = analysis
    consultation.anamnesis = analysis["anamnesis"]
    if extra_context:
        consultation.extra_context = extra_context
    consultation.step = ConsultationStep.ANAMNESIS.value
    session.flush()
    AI_ANALYSES.labels(status="success").inc()
    AI_TOKENS_CONSUMED.inc(tokens)
    logger.info(
        "consultation_analyzed",
        clinic_id=clinic_id,
        session_id=consultation.id,
        tokens=tokens,
        cid_codes=len(analysis["cid_codes"]),
        exams=len(analysis["exams"]),
        prescriptions=len(analysis["prescriptions"]),
    )
    return consultation


def update_anamnesis(
    session: Session, clinic_id: str, session_id: str, text: str, *, doctor_id: Optional[str] = None
) -> ConsultationSession:
    consultation = get_session(session, clinic_id, session_id, doctor_id)
    _require_step(consultation, ConsultationStep.ANAMNESIS, ConsultationStep.AI_CONTEXT)
    if not (text or "").strip():
        raise DomainValidationError("Anamnesis text is required")
    consultation.anamnesis = text.strip()
    session.flush()
    return consultation


def advance(
    session: Session, clinic_id: str, session_id: str, step: str, *, doctor_id: Optional[str] = None
) -> ConsultationSession:
    """Move one step forward, or back to any earlier step."""

    consultation = get_session(session, clinic_id, session_id, doctor_id)
    current = _step_index(consultation.step)
    target = _step_index(step)
    if consultation.step == ConsultationStep.FINISHED.value:
        raise DomainValidationError("Consultation is already finished")
    if step == ConsultationStep.FINISHED.value:
        raise DomainValidationError("Use finalize to finish the consultation")
    if target > current + 1:
        raise DomainValidationError(
            "Steps cannot be skipped", {"from": consultation.step, "to": step}
        )
    if target > current and consultation.step == ConsultationStep.TRANSCRIPTION.value and not consultation.analysis:
        raise DomainValidationError("Run the analysis before leaving transcription")
    consultation.step = step
    session.flush()
    return consultation


def _pick(items: List[Dict[str, Any]], indexes: Iterable[int], label: str) -> List[Dict[str, Any]]:
    chosen = []
    for index in indexes or []:
        if not isinstance(index, int) or index < 0 or index >= len(items):
            raise DomainValidationError(f"Invalid {label} index", {"index": index})
        chosen.append(items[index])
    return chosen


def select_suggestions(
    session: Session,
    clinic_id: str,
    session_id: str,
    *,
    cid_codes: Iterable[str] = (),
    exam_indexes: Iterable[int] = (),
    prescription_indexes: Iterable[int] = (),
    doctor_id: Optional[str] = None,
) -> ConsultationSession:
    consultation = get_session(session, clinic_id, session_id, doctor_id)
    _require_step(
        consultation,
        ConsultationStep.ANAMNESIS,
        ConsultationStep.AI_CONTEXT,
        ConsultationStep.SUGGESTIONS,
    )
    analysis = consultation.analysis or {}
    known = {item["code"]: item for item in analysis.get("cid_codes", [])}
    codes = list(cid_codes or [])
    unknown = [code for code in codes if code not in known]
    if unknown:
        raise DomainValidationError("Unknown CID codes", {"codes": unknown})
    consultation.selection = {
        "cid_codes": [known[code] for code in codes],
        "exams": _pick(analysis.get("exams", []), exam_indexes, "exam"),
        "prescriptions": _pick(analysis.get("prescriptions", []), prescription_indexes, "prescription"),
    }
    consultation.step = ConsultationStep.DOCUMENTS.value
    session.flush()
    return consultation


def finalize(
    session: Session, clinic_id: str, session_id: str, *, doctor_id: Optional[str] = None
) -> Dict[str, Any]:
    """Persist the selected suggestions and complete the appointment."""

    consultation = get_session(session, clinic_id, session_id, doctor_id)
    _require_step(consultation, ConsultationStep.DOCUMENTS)
    appointment = consultation.appointment
    selection = consultation.selection or {}
    diagnosis = "\n".join(f"{c['code']} - {c['description']}" for c in selection.get("cid_codes", []))

    record = clinical.upsert_medical_record(
        session,
        clinic_id,
        appointment.id,
        consultation.doctor_id,
        {"anamnesis": consultation.anamnesis, "diagnosis": diagnosis or None},
    )

    prescription_id = None
    items = [
        {
            "medication": p["medication"],
            "dosage": p.get("dosage"),
            "frequency": p.get("frequency"),
            "duration": p.get("duration"),
            "instructions": p.get("justification"),
        }
        for p in selection.get("prescriptions", [])
    ]
    if items:
        prescription = clinical.create_prescription(
            session,
            clinic_id,
            patient_id=appointment.patient_id,
            doctor_id=consultation.doctor_id,
            appointment_id=appointment.id,
            items=items,
        )
        prescription_id = prescription.id

    exam_ids = []
    for exam in selection.get("exams", []):
        request = clinical.create_exam_request(
            session,
            clinic_id,
            patient_id=appointment.patient_id,
            doctor_id=consultation.doctor_id,
            appointment_id=appointment.id,
            exam_name=exam["name"],
            exam_type=exam.get("type"),
            justification=exam.get("justification"),
        )
        exam_ids.append(request.id)

    if appointment.status != AppointmentStatus.COMPLETED.value:
        scheduling.change_status(session, clinic_id, appointment.id, AppointmentStatus.COMPLETED.value)
    result = {
        "medical_record_id": record.id,
        "prescription_id": prescription_id,
        "exam_request_ids": exam_ids,
        "appointment_id": appointment.id,
    }
    consultation.result = result
    consultation.step = ConsultationStep.FINISHED.value
    session.flush()
    logger.info("consultation_finalized", clinic_id=clinic_id, session_id=consultation.id, **result)
    return result
