"""Appointment booking, schedule blocks and related calendar helpers.

Booking rules enforced here:

* a doctor never holds two non-cancelled appointments whose intervals overlap;
* appointments never overlap one of the doctor's schedule blocks;
* a block cannot be created over existing non-cancelled appointments;
* RETURN consultations respect the doctor's daily limit.

All datetimes are naive clinic wall-clock values (see ``prontivus.time_utils``).
"""
from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from prontivus import tuss
from prontivus.config import get_settings
from prontivus.db.models import (
    Appointment,
    AppointmentStatus,
    ConsultationType,
    Doctor,
    HealthPlan,
    Operator,
    Patient,
    ScheduleBlock,
    WaitlistEntry,
)
from prontivus.errors import (
    ConflictError,
    DomainValidationError,
    NotFoundError,
    ScheduleConflictError,
)
from prontivus.observability import APPOINTMENTS_CREATED, SCHEDULE_CONFLICTS
from prontivus.tenancy import get_scoped, scoped_query
from prontivus.time_utils import day_bounds, local_now, serialize_datetime, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_APPOINTMENT_DURATION = timedelta(minutes=30)
RETURN_TYPE_CODE = "RETURN"
RETURN_LOOKBACK_DAYS = 30
RETURN_INTERVAL_DAYS = 30
DEFAULT_EVENT_SUMMARY = "Consulta"

MAX_APPOINTMENT_MINUTES = 24 * 60

# Overlap scans reach back this far for appointments that started earlier.
_MAX_LOOKBEHIND = timedelta(minutes=MAX_APPOINTMENT_MINUTES)

_STATUS_REMAP = {
    "agendada": "scheduled",
    "confirmada": "confirmed",
    "check-in": "confirmed",
    "checkin": "confirmed",
    "checked-in": "confirmed",
    "checked_in": "confirmed",
    "em_atendimento": "in_progress",
    "in-progress": "in_progress",
    "started": "in_progress",
    "start": "in_progress",
    "realizada": "completed",
    "complete": "completed",
    "finished": "completed",
    "cancelada": "cancelled",
    "cancel": "cancelled",
    "canceled": "cancelled",
    "faltou": "no_show",
    "no-show": "no_show",
}

_TRANSITIONS: Dict[str, set[str]] = {
    AppointmentStatus.SCHEDULED.value: {
        AppointmentStatus.CONFIRMED.value,
        AppointmentStatus.IN_PROGRESS.value,
        AppointmentStatus.CANCELLED.value,
        AppointmentStatus.NO_SHOW.value,
    },
    AppointmentStatus.CONFIRMED.value: {
        AppointmentStatus.IN_PROGRESS.value,
        AppointmentStatus.CANCELLED.value,
        AppointmentStatus.NO_SHOW.value,
    },
    AppointmentStatus.IN_PROGRESS.value: {
        AppointmentStatus.COMPLETED.value,
        AppointmentStatus.CANCELLED.value,
    },
    AppointmentStatus.COMPLETED.value: set(),
    AppointmentStatus.CANCELLED.value: set(),
    AppointmentStatus.NO_SHOW.value: set(),
}

TERMINAL_STATUSES = {status for status, targets in _TRANSITIONS.items() if not targets}


def normalise_status(value: Optional[str]) -> str:
    if not value:
        return AppointmentStatus.SCHEDULED.value
    normalised = value.strip().lower().replace(" ", "_")
    normalised = _STATUS_REMAP.get(normalised, _STATUS_REMAP.get(normalised.replace("_", "-"), normalised))
    if normalised not in _TRANSITIONS:
        raise DomainValidationError(f"Unknown appointment status {value!r}")
    return normalised


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval overlap: touching intervals do not clash."""

    return start_a < end_b and start_b < end_a


def _duration(minutes: Optional[int]) -> timedelta:
    if minutes is None:
        return DEFAULT_APPOINTMENT_DURATION
    if minutes <= 0:
        raise DomainValidationError("Duration must be positive")
    if minutes > MAX_APPOINTMENT_MINUTES:
        raise DomainValidationError(
            f"Duration cannot exceed {MAX_APPOINTMENT_MINUTES} minutes", {"duration_minutes": minutes}
        )
    return timedelta(minutes=minutes)


def _active_appointments(
    session: Session,
    clinic_id: str,
    doctor_id: str,
    window_start: datetime,
    window_end: datetime,
    exclude_id: Optional[str] = None,
) -> List[Appointment]:
    stmt = scoped_query(Appointment, clinic_id).where(
        Appointment.doctor_id == doctor_id,
        Appointment.status != AppointmentStatus.CANCELLED.value,
        Appointment.starts_at < window_end,
        Appointment.starts_at >= window_start - _MAX_LOOKBEHIND,
    )
    if exclude_id:
        stmt = stmt.where(Appointment.id != exclude_id)
    rows = session.execute(stmt.order_by(Appointment.starts_at)).scalars().unique()
    return [appt for appt in rows if intervals_overlap(appt.starts_at, appt.ends_at, window_start, window_end)]


def _blocks_in_window(
    session: Session, clinic_id: str, doctor_id: str, window_start: datetime, window_end: datetime
) -> List[ScheduleBlock]:
    stmt = scoped_query(ScheduleBlock, clinic_id).where(
        ScheduleBlock.doctor_id == doctor_id,
        ScheduleBlock.starts_at < window_end,
        ScheduleBlock.ends_at > window_start,
    )
    return list(session.execute(stmt.order_by(ScheduleBlock.starts_at)).scalars())


def check_conflicts(
    session: Session,
    clinic_id: str,
    doctor_id: str,
    starts_at: datetime,
    duration_minutes: Optional[int] = None,
    *,
    exclude_id: Optional[str] = None,
) -> None:
    """Raise :class:`ScheduleConflictError` when the interval is not bookable."""

    ends_at = starts_at + _duration(duration_minutes)
    requested = {"starts_at": serialize_datetime(starts_at), "ends_at": serialize_datetime(ends_at)}

    clashes = _active_appointments(session, clinic_id, doctor_id, starts_at, ends_at, exclude_id)
    if clashes:
        existing = clashes[0]
        SCHEDULE_CONFLICTS.labels(kind="appointment").inc()
        logger.info("schedule_conflict", clinic_id=clinic_id, doctor_id=doctor_id, appointment_id=existing.id)
        raise ScheduleConflictError(
            "Doctor already has an appointment in this interval",
            {
                "conflict": {
                    "appointment_id": existing.id,
                    "patient": existing.patient.name if existing.patient is not None else None,
                    "starts_at": serialize_datetime(existing.starts_at),
                    "ends_at": serialize_datetime(existing.ends_at),
                },
                "requested": requested,
            },
        )

    blocks = _blocks_in_window(session, clinic_id, doctor_id, starts_at, ends_at)
    if blocks:
        block = blocks[0]
        SCHEDULE_CONFLICTS.labels(kind="block").inc()
        logger.info("schedule_blocked", clinic_id=clinic_id, doctor_id=doctor_id, block_id=block.id)
        raise ScheduleConflictError(
            "Doctor's schedule is blocked in this interval",
            {
                "block": {
                    "block_id": block.id,
                    "starts_at": serialize_datetime(block.starts_at),
                    "ends_at": serialize_datetime(block.ends_at),
                    "reason": block.reason,
                },
                "requested": requested,
            },
        )


def _active_doctor(session: Session, clinic_id: str, doctor_id: str) -> Doctor:
    doctor = get_scoped(session, Doctor, doctor_id, clinic_id, label="Doctor")
    if not doctor.active:
        raise NotFoundError("Doctor not found or inactive", {"id": doctor_id})
    return doctor


def _is_return(session: Session, consultation_type_id: Optional[str]) -> bool:
    if not consultation_type_id:
        return False
    ct = session.get(ConsultationType, consultation_type_id)
    return ct is not None and ct.code == RETURN_TYPE_CODE


def _validate_payer(
    session: Session, clinic_id: str, operator_id: Optional[str], health_plan_id: Optional[str]
) -> Optional[str]:
    if health_plan_id:
        plan = get_scoped(session, HealthPlan, health_plan_id, clinic_id, label="Health plan")
        if operator_id and plan.operator_id != operator_id:
            raise DomainValidationError("Health plan does not belong to the operator")
        operator_id = plan.operator_id
    if operator_id:
        get_scoped(session, Operator, operator_id, clinic_id, label="Operator")
    return operator_id


def return_limit_status(
    session: Session, clinic_id: str, doctor_id: str, day: date, *, exclude_id: Optional[str] = None
) -> Dict[str, Any]:
    """Report how many RETURN consultations the doctor holds on ``day``."""

    doctor = get_scoped(session, Doctor, doctor_id, clinic_id, label="Doctor")
    start, end = day_bounds(day)
    stmt = (
        select(func.count(Appointment.id))
        .join(ConsultationType, Appointment.consultation_type_id == ConsultationType.id)
        .where(
            Appointment.clinic_id == clinic_id,
            Appointment.doctor_id == doctor.id,
            ConsultationType.code == RETURN_TYPE_CODE,
            Appointment.status != AppointmentStatus.CANCELLED.value,
            Appointment.starts_at >= start,
            Appointment.starts_at < end,
        )
    )
    if exclude_id:
        stmt = stmt.where(Appointment.id != exclude_id)
    count = session.execute(stmt).scalar_one()
    limit = doctor.max_returns_per_day
    return {
        "doctor_id": doctor.id,
        "date": day.isoformat(),
        "limit": limit,
        "count": int(count),
        "reached": limit is not None and count >= limit,
    }


def _validate_consultation_type(session: Session, consultation_type_id: Optional[str]) -> None:
    if consultation_type_id and session.get(ConsultationType, consultation_type_id) is None:
        raise NotFoundError("Consultation type not found", {"id": consultation_type_id})


def _check_return_limit(
    session: Session,
    clinic_id: str,
    doctor_id: str,
    consultation_type_id: Optional[str],
    starts_at: datetime,
    exclude_id: Optional[str] = None,
) -> None:
    if not _is_return(session, consultation_type_id):
        return
    status = return_limit_status(session, clinic_id, doctor_id, starts_at.date(), exclude_id=exclude_id)
    if status["reached"]:
        raise DomainValidationError("Daily return limit reached for this doctor", status)


def create_appointment(
    session: Session,
    clinic_id: str,
    *,
    patient_id: str,
    doctor_id: str,
    starts_at: datetime,
    duration_minutes: Optional[int] = None,
    tuss_code_id: Optional[str] = None,
    consultation_type_id: Optional[str] = None,
    operator_id: Optional[str] = None,
    health_plan_id: Optional[str] = None,
    insurance_card_number: Optional[str] = None,
    amount: Optional[Decimal] = None,
    notes: Optional[str] = None,
) -> Appointment:
    """Book an appointment after tenant, TUSS, limit and conflict checks."""

    patient = get_scoped(session, Patient, patient_id, clinic_id, label="Patient")
    if not patient.active:
        raise DomainValidationError("Patient is inactive", {"patient_id": patient_id})
    doctor = _active_doctor(session, clinic_id, doctor_id)
    operator_id = _validate_payer(session, clinic_id, operator_id, health_plan_id)
    _validate_consultation_type(session, consultation_type_id)
    if tuss_code_id:
        tuss.validate_for_appointment(
            session,
            tuss_code_id,
            operator_id=operator_id,
            health_plan_id=health_plan_id,
            at=starts_at.date(),
        )
    _check_return_limit(session, clinic_id, doctor.id, consultation_type_id, starts_at)
    check_conflicts(session, clinic_id, doctor.id, starts_at, duration_minutes)

    if amount is None and tuss_code_id:
        resolved = tuss.resolve_value(
            session,
            clinic_id,
            tuss_code_id,
            operator_id=operator_id,
            health_plan_id=health_plan_id,
            consultation_type_id=consultation_type_id,
            at=starts_at.date(),
        )
        amount = resolved["amount"]

    appointment = Appointment(
        clinic_id=clinic_id,
        patient_id=patient.id,
        doctor_id=doctor.id,
        starts_at=starts_at.replace(second=0, microsecond=0),
        duration_minutes=int(_duration(duration_minutes).total_seconds() // 60),
        status=AppointmentStatus.SCHEDULED.value,
        tuss_code_id=tuss_code_id,
        consultation_type_id=consultation_type_id,
        operator_id=operator_id,
        health_plan_id=health_plan_id,
        insurance_card_number=insurance_card_number,
        amount=Decimal(str(amount)) if amount is not None else None,
        notes=notes,
    )
    session.add(appointment)
    session.flush()
    APPOINTMENTS_CREATED.inc()
    logger.info(
        "appointment_created",
        clinic_id=clinic_id,
        appointment_id=appointment.id,
        doctor_id=doctor.id,
        starts_at=serialize_datetime(appointment.starts_at),
    )
    return appointment


def get_appointment(session: Session, clinic_id: str, appointment_id: str) -> Appointment:
    return get_scoped(session, Appointment, appointment_id, clinic_id, label="Appointment")


_RESCHEDULE_FIELDS = {"starts_at", "duration_minutes", "doctor_id"}
_PLAIN_FIELDS = ("insurance_card_number", "notes", "amount")


def update_appointment(
    session: Session, clinic_id: str, appointment_id: str, changes: Mapping[str, Any]
) -> Appointment:
    appointment = get_appointment(session, clinic_id, appointment_id)
    if appointment.status in TERMINAL_STATUSES:
        raise DomainValidationError(
            "Appointment can no longer be changed", {"status": appointment.status}
        )

    starts_at = changes.get("starts_at") or appointment.starts_at
    duration = appointment.duration_minutes
    if changes.get("duration_minutes") is not None:
        duration = int(_duration(changes["duration_minutes"]).total_seconds() // 60)
    doctor_id = changes.get("doctor_id") or appointment.doctor_id
    consultation_type_id = changes.get("consultation_type_id", appointment.consultation_type_id)

    if "patient_id" in changes and changes["patient_id"] and changes["patient_id"] != appointment.patient_id:
        patient = get_scoped(session, Patient, changes["patient_id"], clinic_id, label="Patient")
        appointment.patient_id = patient.id
    if doctor_id != appointment.doctor_id:
        _active_doctor(session, clinic_id, doctor_id)

    operator_id = changes.get("operator_id", appointment.operator_id)
    health_plan_id = changes.get("health_plan_id", appointment.health_plan_id)
    if "operator_id" in changes or "health_plan_id" in changes:
        operator_id = _validate_payer(session, clinic_id, operator_id, health_plan_id)
    tuss_code_id = changes.get("tuss_code_id", appointment.tuss_code_id)
    if tuss_code_id and (
        tuss_code_id != appointment.tuss_code_id
        or "operator_id" in changes
        or "health_plan_id" in changes
        or "starts_at" in changes
    ):
        tuss.validate_for_appointment(
            session, tuss_code_id, operator_id=operator_id, health_plan_id=health_plan_id, at=starts_at.date()
        )

    if consultation_type_id != appointment.consultation_type_id:
        _validate_consultation_type(session, consultation_type_id)
    if "consultation_type_id" in changes or "starts_at" in changes or "doctor_id" in changes:
        _check_return_limit(
            session, clinic_id, doctor_id, consultation_type_id, starts_at, exclude_id=appointment.id
        )

    if any(key in changes for key in _RESCHEDULE_FIELDS):
        check_conflicts(session, clinic_id, doctor_id, starts_at, duration, exclude_id=appointment.id)

    appointment.starts_at = starts_at.replace(second=0, microsecond=0)
    appointment.duration_minutes = duration
    appointment.doctor_id = doctor_id
    appointment.operator_id = operator_id
    appointment.health_plan_id = health_plan_id
    appointment.tuss_code_id = tuss_code_id
    appointment.consultation_type_id = consultation_type_id
    for field in _PLAIN_FIELDS:
        if field in changes:
            value = changes[field]
            if field == "amount" and value is not None:
                value = Decimal(str(value))
            setattr(appointment, field, value)
    if changes.get("status"):
        _apply_status(appointment, normalise_status(changes["status"]))
    session.flush()
    logger.info("appointment_updated", clinic_id=clinic_id, appointment_id=appointment.id)
    return appointment


def _apply_status(appointment: Appointment, target: str) -> None:
    current = appointment.status
    if target == current:
        return
    if target not in _TRANSITIONS.get(current, set()):
        raise DomainValidationError(
            f"Cannot change appointment from {current} to {target}",
            {"from": current, "to": target},
        )
    appointment.status = target
    if target == AppointmentStatus.CONFIRMED.value and appointment.checked_in_at is None:
        appointment.checked_in_at = utc_now()


def change_status(session: Session, clinic_id: str, appointment_id: str, status: str) -> Appointment:
    appointment = get_appointment(session, clinic_id, appointment_id)
    target = normalise_status(status)
    previous = appointment.status
    _apply_status(appointment, target)
    session.flush()
    logger.info(
        "appointment_status_changed",
        clinic_id=clinic_id,
        appointment_id=appointment.id,
        previous=previous,
        status=target,
    )
    return appointment


def list_appointments(
    session: Session,
    clinic_id: str,
    *,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    doctor_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    status: Optional[str] = None,
) -> List[Appointment]:
    stmt = scoped_query(Appointment, clinic_id)
    if date_from:
        stmt = stmt.where(Appointment.starts_at >= date_from)
    if date_to:
        stmt = stmt.where(Appointment.starts_at < date_to)
    if doctor_id:
        stmt = stmt.where(Appointment.doctor_id == doctor_id)
    if patient_id:
        stmt = stmt.where(Appointment.patient_id == patient_id)
    if status:
        stmt = stmt.where(Appointment.status == normalise_status(status))
    return list(session.execute(stmt.order_by(Appointment.starts_at)).scalars().unique())


# ---------------------------------------------------------------------------
# Schedule blocks
# ---------------------------------------------------------------------------


def create_block(
    session: Session,
    clinic_id: str,
    doctor_id: str,
    starts_at: datetime,
    ends_at: datetime,
    reason: Optional[str] = None,
) -> ScheduleBlock:
    """Block ``[starts_at, ends_at)`` unless appointments already occupy it."""

    if ends_at <= starts_at:
        raise DomainValidationError("Block end must be after its start")
    doctor = get_scoped(session, Doctor, doctor_id, clinic_id, label="Doctor")
    booked = _active_appointments(session, clinic_id, doctor.id, starts_at, ends_at)
    if booked:
        raise ScheduleConflictError(
            "There are appointments inside the requested block",
            {
                "appointments": [
                    {
                        "appointment_id": appt.id,
                        "patient": appt.patient.name if appt.patient is not None else None,
                        "starts_at": serialize_datetime(appt.starts_at),
                    }
                    for appt in booked
                ]
            },
        )
    block = ScheduleBlock(
        clinic_id=clinic_id,
        doctor_id=doctor.id,
        starts_at=starts_at,
        ends_at=ends_at,
        reason=reason,
    )
    session.add(block)
    session.flush()
    logger.info("schedule_block_created", clinic_id=clinic_id, block_id=block.id, doctor_id=doctor.id)
    return block


def list_blocks(
    session: Session,
    clinic_id: str,
    *,
    doctor_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    on_date: Optional[date] = None,
) -> List[ScheduleBlock]:
    stmt = scoped_query(ScheduleBlock, clinic_id)
    if doctor_id:
        stmt = stmt.where(ScheduleBlock.doctor_id == doctor_id)
    if on_date is not None:
        date_from, date_to = day_bounds(on_date)
    if date_from is not None:
        stmt = stmt.where(ScheduleBlock.ends_at > date_from)
    if date_to is not None:
        stmt = stmt.where(ScheduleBlock.starts_at < date_to)
    return list(session.execute(stmt.order_by(ScheduleBlock.starts_at)).scalars())


def get_block(session: Session, clinic_id: str, block_id: str) -> ScheduleBlock:
    return get_scoped(session, ScheduleBlock, block_id, clinic_id, label="Schedule block")


def delete_block(session: Session, clinic_id: str, block_id: str) -> None:
    block = get_block(session, clinic_id, block_id)
    session.delete(block)
    session.flush()
    logger.info("schedule_block_deleted", clinic_id=clinic_id, block_id=block_id)


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------


def available_slots(
    session: Session,
    clinic_id: str,
    doctor_id: str,
    day: date,
    *,
    now: Optional[datetime] = None,
) -> List[str]:
    """Return free ``HH:MM`` slot starts for the doctor on ``day``."""

    settings = get_settings()
    _active_doctor(session, clinic_id, doctor_id)
    now = now or local_now()
    if day < now.date():
        return []

    step = timedelta(minutes=settings.slot_minutes)
    opening = datetime.combine(day, datetime.min.time()) + timedelta(hours=settings.business_day_start)
    closing = datetime.combine(day, datetime.min.time()) + timedelta(hours=settings.business_day_end)
    earliest = now + timedelta(minutes=settings.booking_margin_minutes) if day == now.date() else None

    booked = _active_appointments(session, clinic_id, doctor_id, opening, closing)
    blocks = _blocks_in_window(session, clinic_id, doctor_id, opening, closing)
    busy = [(appt.starts_at, appt.ends_at) for appt in booked]
    busy.extend((max(b.starts_at, opening), min(b.ends_at, closing)) for b in blocks)

    slots: List[str] = []
    cursor = opening
    while cursor + step <= closing:
        slot_end = cursor + step
        if earliest is not None and cursor <= earliest:
            cursor = slot_end
            continue
        if not any(intervals_overlap(cursor, slot_end, start, end) for start, end in busy):
            slots.append(cursor.strftime("%H:%M"))
        cursor = slot_end
    return slots


# ---------------------------------------------------------------------------
# Check-in
# ---------------------------------------------------------------------------


def checkin_queue(session: Session, clinic_id: str, day: Optional[date] = None) -> List[Appointment]:
    start, end = day_bounds(day or local_now().date())
    stmt = scoped_query(Appointment, clinic_id).where(
        Appointment.starts_at >= start,
        Appointment.starts_at < end,
        Appointment.status.in_([AppointmentStatus.SCHEDULED.value, AppointmentStatus.CONFIRMED.value]),
    )
    return list(session.execute(stmt.order_by(Appointment.starts_at)).scalars().unique())


def check_in(session: Session, clinic_id: str, appointment_id: str) -> Appointment:
    appointment = get_appointment(session, clinic_id, appointment_id)
    if appointment.status == AppointmentStatus.CONFIRMED.value:
        return appointment
    return change_status(session, clinic_id, appointment_id, AppointmentStatus.CONFIRMED.value)


# ---------------------------------------------------------------------------
# Returns
# ---------------------------------------------------------------------------


def suggest_return_date(
    session: Session,
    clinic_id: str,
    patient_id: str,
    doctor_id: str,
    *,
    today: Optional[date] = None,
) -> Optional[Dict[str, Any]]:
    """Suggest the next return 30 days after the latest recent RETURN visit."""

    today = today or local_now().date()
    get_scoped(session, Patient, patient_id, clinic_id, label="Patient")
    since = datetime.combine(today - timedelta(days=RETURN_LOOKBACK_DAYS), datetime.min.time())
    until = datetime.combine(today + timedelta(days=1), datetime.min.time())
    last = session.execute(
        scoped_query(Appointment, clinic_id)
        .join(ConsultationType, Appointment.consultation_type_id == ConsultationType.id)
        .where(
            Appointment.patient_id == patient_id,
            Appointment.doctor_id == doctor_id,
            ConsultationType.code == RETURN_TYPE_CODE,
            Appointment.status != AppointmentStatus.CANCELLED.value,
            Appointment.starts_at >= since,
            Appointment.starts_at < until,
        )
        .order_by(Appointment.starts_at.desc())
        .limit(1)
    ).scalars().unique().first()
    if last is None:
        return None
    suggested = last.starts_at.date() + timedelta(days=RETURN_INTERVAL_DAYS)
    if suggested < today:
        suggested = today + timedelta(days=RETURN_INTERVAL_DAYS)
    return {
        "suggested_date": suggested.isoformat(),
        "last_return_at": serialize_datetime(last.starts_at),
        "last_appointment_id": last.id,
        "interval_days": RETURN_INTERVAL_DAYS,
    }


# ---------------------------------------------------------------------------
# Waitlist
# ---------------------------------------------------------------------------


def add_to_waitlist(
    session: Session,
    clinic_id: str,
    doctor_id: str,
    patient_id: str,
    *,
    priority: int = 0,
    notes: Optional[str] = None,
) -> WaitlistEntry:
    get_scoped(session, Doctor, doctor_id, clinic_id, label="Doctor")
    get_scoped(session, Patient, patient_id, clinic_id, label="Patient")
    existing = session.execute(
        scoped_query(WaitlistEntry, clinic_id).where(
            WaitlistEntry.doctor_id == doctor_id, WaitlistEntry.patient_id == patient_id
        )
    ).scalars().unique().one_or_none()
    if existing is not None:
        raise ConflictError("Patient is already on this doctor's waitlist", {"entry_id": existing.id})
    entry = WaitlistEntry(
        clinic_id=clinic_id,
        doctor_id=doctor_id,
        patient_id=patient_id,
        priority=priority,
        notes=notes,
    )
    session.add(entry)
    session.flush()
    logger.info("waitlist_entry_added", clinic_id=clinic_id, entry_id=entry.id)
    return entry


def list_waitlist(session: Session, clinic_id: str, doctor_id: Optional[str] = None) -> List[WaitlistEntry]:
    stmt = scoped_query(WaitlistEntry, clinic_id)
    if doctor_id:
        stmt = stmt.where(WaitlistEntry.doctor_id == doctor_id)
    stmt = stmt.order_by(WaitlistEntry.priority.desc(), WaitlistEntry.created_at.asc())
    return list(session.execute(stmt).scalars().unique())


def remove_from_waitlist(session: Session, clinic_id: str, entry_id: str) -> None:
    entry = get_scoped(session, WaitlistEntry, entry_id, clinic_id, label="Waitlist entry")
    session.delete(entry)
    session.flush()


def call_from_waitlist(
    session: Session,
    clinic_id: str,
    entry_id: str,
    *,
    starts_at: datetime,
    **booking: Any,
) -> Appointment:
    """Book the waiting patient and drop the waitlist entry."""

    entry = get_scoped(session, WaitlistEntry, entry_id, clinic_id, label="Waitlist entry")
    if not booking.get("notes"):
        booking["notes"] = entry.notes
    appointment = create_appointment(
        session,
        clinic_id,
        patient_id=entry.patient_id,
        doctor_id=entry.doctor_id,
        starts_at=starts_at,
        **booking,
    )
    session.delete(entry)
    session.flush()
    logger.info("waitlist_entry_called", clinic_id=clinic_id, entry_id=entry_id, appointment_id=appointment.id)
    return appointment


# ---------------------------------------------------------------------------
# Calendar export
# ---------------------------------------------------------------------------


def _ics_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace(";", "\\;").replace(",", "\\,").replace("\n", "\\n")


def export_appointment_ics(appointment: Appointment, summary: Optional[str] = None) -> str:
    """Return a minimal VCALENDAR document for ``appointment``."""

    fmt = "%Y%m%dT%H%M%S"
    doctor = appointment.doctor.name if appointment.doctor is not None else ""
    title = summary or (f"{DEFAULT_EVENT_SUMMARY} - {doctor}" if doctor else DEFAULT_EVENT_SUMMARY)
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Prontivus//Agenda//PT-BR",
        "BEGIN:VEVENT",
        f"UID:{appointment.id}@prontivus",
        f"DTSTAMP:{utc_now().strftime(fmt)}Z",
        f"DTSTART:{appointment.starts_at.strftime(fmt)}",
        f"DTEND:{appointment.ends_at.strftime(fmt)}",
        f"SUMMARY:{_ics_escape(title)}",
    ]
    if appointment.notes:
        lines.append(f"DESCRIPTION:{_ics_escape(appointment.notes)}")
    lines.extend(["END:VEVENT", "END:VCALENDAR"])
    return "\r\n".join(lines)


def serialize_many(items: Iterable[Any]) -> List[Dict[str, Any]]:
    return [item.to_dict() for item in items]
