"""SQLAlchemy models for the multi-tenant clinic schema.

Every clinic-owned table carries ``clinic_id``; queries against them go
through :mod:`prontivus.tenancy`.  Audit stamps are timezone aware UTC while
scheduling columns hold naive clinic wall-clock values.
"""

from __future__ import annotations

import enum
import uuid
from datetime import date as date_cls, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime | date_cls]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(microsecond=0).isoformat()
    return value.isoformat()


def _money(value: Optional[Decimal]) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def _created_at() -> sa.Column:
    return sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)


def _updated_at() -> sa.Column:
    return sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
        onupdate=_utcnow,
    )


class UserRole(str, enum.Enum):
    """Roles a user can hold inside a clinic."""

    SUPER_ADMIN = "super_admin"
    CLINIC_ADMIN = "clinic_admin"
    DOCTOR = "doctor"
    SECRETARY = "secretary"
    PATIENT = "patient"


class ClinicStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class PlanTier(str, enum.Enum):
    BASIC = "basic"
    INTERMEDIATE = "intermediate"
    PROFESSIONAL = "professional"


class AppointmentStatus(str, enum.Enum):
    """Lifecycle of an appointment."""

    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class AccountStatus(str, enum.Enum):
    """Status for payables and receivables."""

    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class CashFlowKind(str, enum.Enum):
    INFLOW = "inflow"
    OUTFLOW = "outflow"


class CashClosingStatus(str, enum.Enum):
    AUTHORIZED = "authorized"
    CLOSED = "closed"


class PaymentStatus(str, enum.Enum):
    """Status of a subscription payment."""

    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class PaymentMethodKind(str, enum.Enum):
    BOLETO = "boleto"
    PIX = "pix"
    CREDIT_CARD = "credit_card"
    STRIPE = "stripe"


class ExamRequestStatus(str, enum.Enum):
    REQUESTED = "requested"
    COMPLETED = "completed"


class StockMovementKind(str, enum.Enum):
    """Stock movement types; an adjustment sets the counted quantity."""

    IN = "in"
    OUT = "out"
    ADJUSTMENT = "adjustment"


class ConsultationStep(str, enum.Enum):
    """Ordered steps of the AI-assisted consultation."""

    TRANSCRIPTION = "transcription"
    ANAMNESIS = "anamnesis"
    AI_CONTEXT = "ai_context"
    SUGGESTIONS = "suggestions"
    DOCUMENTS = "documents"
    FINISHED = "finished"


CONSULTATION_STEP_ORDER: List[str] = [step.value for step in ConsultationStep]


class Plan(Base):
    __tablename__ = "plans"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    tier = sa.Column(String, nullable=False, unique=True)
    name = sa.Column(String, nullable=False)
    price = sa.Column(Numeric(12, 2), nullable=False)
    monthly_tokens = sa.Column(Integer, nullable=False, server_default=sa.text("0"), default=0)
    max_doctors = sa.Column(Integer, nullable=True)
    telemedicine_enabled = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_at = _created_at()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tier": self.tier,
            "name": self.name,
            "price": _money(self.price),
            "monthly_tokens": self.monthly_tokens,
            "max_doctors": self.max_doctors,
            "telemedicine_enabled": bool(self.telemedicine_enabled),
            "active": bool(self.active),
        }


class Clinic(Base):
    __tablename__ = "clinics"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    name = sa.Column(String, nullable=False)
    cnpj = sa.Column(String(14), nullable=False, unique=True, index=True)
    email = sa.Column(String, nullable=True)
    phone = sa.Column(String, nullable=True)
    plan_id = sa.Column(String(36), ForeignKey("plans.id"), nullable=False)
    status = sa.Column(String, nullable=False, default=ClinicStatus.ACTIVE.value)
    monthly_tokens_available = sa.Column(Integer, nullable=False, server_default=sa.text("0"), default=0)
    tokens_consumed = sa.Column(Integer, nullable=False, server_default=sa.text("0"), default=0)
    contracted_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = sa.Column(DateTime(timezone=True), nullable=True)
    stripe_customer_id = sa.Column(String, nullable=True, unique=True)
    stripe_subscription_id = sa.Column(String, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()

    plan = relationship("Plan", lazy="joined")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "cnpj": self.cnpj,
            "email": self.email,
            "phone": self.phone,
            "plan_id": self.plan_id,
            "plan": self.plan.tier if self.plan is not None else None,
            "status": self.status,
            "monthly_tokens_available": self.monthly_tokens_available,
            "tokens_consumed": self.tokens_consumed,
            "contracted_at": _iso(self.contracted_at),
            "expires_at": _iso(self.expires_at),
            "created_at": _iso(self.created_at),
        }


class User(Base):
    __tablename__ = "users"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    email = sa.Column(String, nullable=False, unique=True, index=True)
    name = sa.Column(String, nullable=False)
    cpf = sa.Column(String(11), nullable=True)
    password_hash = sa.Column(String, nullable=False)
    role = sa.Column(String, nullable=False)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=True)
    active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    failed_login_attempts = sa.Column(Integer, nullable=False, server_default=sa.text("0"), default=0)
    account_locked_until = sa.Column(DateTime(timezone=True), nullable=True)
    last_login = sa.Column(DateTime(timezone=True), nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()

    __table_args__ = (sa.Index("idx_users_clinic", "clinic_id"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "clinic_id": self.clinic_id,
            "active": bool(self.active),
            "last_login": _iso(self.last_login),
        }


class UserTenant(Base):
    """Membership of a user in a clinic with a per-clinic role."""

    __tablename__ = "user_tenants"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    user_id = sa.Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False)
    role = sa.Column(String, nullable=False)
    active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_at = _created_at()

    clinic = relationship("Clinic", lazy="joined")

    __table_args__ = (sa.UniqueConstraint("user_id", "clinic_id", name="uq_user_tenant"),)


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    user_id = sa.Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_hash = sa.Column(String, nullable=False, unique=True)
    expires_at = sa.Column(DateTime(timezone=True), nullable=False)
    used = sa.Column(Boolean, nullable=False, server_default=sa.false(), default=False)
    created_at = _created_at()

    __table_args__ = (sa.Index("idx_password_reset_user", "user_id"),)


class AuditLogEntry(Base):
    __tablename__ = "audit_log"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    timestamp = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)
    user_id = sa.Column(String(36), ForeignKey("users.id"), nullable=True)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=True)
    action = sa.Column(String, nullable=False)
    details = sa.Column(sa.JSON, nullable=True)

    __table_args__ = (
        sa.Index("idx_audit_log_user", "user_id", "timestamp"),
        sa.Index("idx_audit_log_action", "action"),
    )


class Doctor(Base):
    __tablename__ = "doctors"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    user_id = sa.Column(String(36), ForeignKey("users.id"), nullable=False)
    crm = sa.Column(String, nullable=False)
    specialty = sa.Column(String, nullable=True)
    max_returns_per_day = sa.Column(Integer, nullable=True)
    active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_at = _created_at()

    user = relationship("User", lazy="joined")

    __table_args__ = (
        sa.UniqueConstraint("clinic_id", "user_id", name="uq_doctor_clinic_user"),
        sa.Index("idx_doctors_clinic", "clinic_id"),
    )

    @property
    def name(self) -> str:
        return self.user.name if self.user is not None else ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "clinic_id": self.clinic_id,
            "user_id": self.user_id,
            "name": self.name,
            "email": self.user.email if self.user is not None else None,
            "crm": self.crm,
            "specialty": self.specialty,
            "max_returns_per_day": self.max_returns_per_day,
            "active": bool(self.active),
        }


class Patient(Base):
    __tablename__ = "patients"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    user_id = sa.Column(String(36), ForeignKey("users.id"), nullable=True)
    record_number = sa.Column(Integer, nullable=False, unique=True)
    name = sa.Column(String, nullable=False)
    cpf = sa.Column(String(11), nullable=True)
    birth_date = sa.Column(Date, nullable=True)
    sex = sa.Column(String, nullable=True)
    email = sa.Column(String, nullable=True)
    phone = sa.Column(String, nullable=True)
    mobile = sa.Column(String, nullable=True)
    zip_code = sa.Column(String(8), nullable=True)
    address = sa.Column(String, nullable=True)
    notes = sa.Column(Text, nullable=True)
    active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_at = _created_at()
    updated_at = _updated_at()

    __table_args__ = (
        sa.UniqueConstraint("clinic_id", "cpf", name="uq_patient_clinic_cpf"),
        sa.Index("idx_patients_clinic_name", "clinic_id", "name"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "clinic_id": self.clinic_id,
            "record_number": self.record_number,
            "name": self.name,
            "cpf": self.cpf,
            "birth_date": _iso(self.birth_date),
            "sex": self.sex,
            "email": self.email,
            "phone": self.phone,
            "mobile": self.mobile,
            "zip_code": self.zip_code,
            "address": self.address,
            "notes": self.notes,
            "active": bool(self.active),
            "created_at": _iso(self.created_at),
        }


class Operator(Base):
    """Health-insurance operator (operadora)."""

    __tablename__ = "operators"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    name = sa.Column(String, nullable=False)
    ans_code = sa.Column(String, nullable=True)
    active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_at = _created_at()

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "ans_code": self.ans_code, "active": bool(self.active)}


class HealthPlan(Base):
    __tablename__ = "health_plans"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    operator_id = sa.Column(String(36), ForeignKey("operators.id"), nullable=False)
    name = sa.Column(String, nullable=False)
    active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_at = _created_at()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "operator_id": self.operator_id,
            "name": self.name,
            "active": bool(self.active),
        }


class ConsultationType(Base):
    __tablename__ = "consultation_types"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    code = sa.Column(String, nullable=False, unique=True)
    name = sa.Column(String, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "code": self.code, "name": self.name}


class PaymentMethod(Base):
    __tablename__ = "payment_methods"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    name = sa.Column(String, nullable=False)
    active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)

    __table_args__ = (sa.UniqueConstraint("clinic_id", "name", name="uq_payment_method_name"),)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "active": bool(self.active)}


class TussCode(Base):
    __tablename__ = "tuss_codes"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    code = sa.Column(String, nullable=False, unique=True, index=True)
    description = sa.Column(String, nullable=False)
    procedure_type = sa.Column(String, nullable=True)
    valid_from = sa.Column(Date, nullable=True)
    valid_until = sa.Column(Date, nullable=True)
    active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "description": self.description,
            "procedure_type": self.procedure_type,
            "valid_from": _iso(self.valid_from),
            "valid_until": _iso(self.valid_until),
            "active": bool(self.active),
        }


class TussValue(Base):
    """Price of a TUSS code for a clinic, optionally narrowed by payer and type."""

    __tablename__ = "tuss_values"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    tuss_code_id = sa.Column(String(36), ForeignKey("tuss_codes.id"), nullable=False)
    operator_id = sa.Column(String(36), ForeignKey("operators.id"), nullable=True)
    health_plan_id = sa.Column(String(36), ForeignKey("health_plans.id"), nullable=True)
    consultation_type_id = sa.Column(String(36), ForeignKey("consultation_types.id"), nullable=True)
    amount = sa.Column(Numeric(12, 2), nullable=False)
    valid_from = sa.Column(Date, nullable=True)
    valid_until = sa.Column(Date, nullable=True)
    active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)

    __table_args__ = (sa.Index("idx_tuss_values_lookup", "clinic_id", "tuss_code_id"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tuss_code_id": self.tuss_code_id,
            "operator_id": self.operator_id,
            "health_plan_id": self.health_plan_id,
            "consultation_type_id": self.consultation_type_id,
            "amount": _money(self.amount),
            "valid_from": _iso(self.valid_from),
            "valid_until": _iso(self.valid_until),
            "active": bool(self.active),
        }


class TussOperatorRule(Base):
    """Acceptance of a TUSS code by an operator, optionally for one plan."""

    __tablename__ = "tuss_operator_rules"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    tuss_code_id = sa.Column(String(36), ForeignKey("tuss_codes.id"), nullable=False)
    operator_id = sa.Column(String(36), ForeignKey("operators.id"), nullable=False)
    health_plan_id = sa.Column(String(36), ForeignKey("health_plans.id"), nullable=True)
    accepted = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    notes = sa.Column(String, nullable=True)

    __table_args__ = (
        sa.UniqueConstraint("tuss_code_id", "operator_id", "health_plan_id", name="uq_tuss_operator_rule"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tuss_code_id": self.tuss_code_id,
            "operator_id": self.operator_id,
            "health_plan_id": self.health_plan_id,
            "accepted": bool(self.accepted),
            "notes": self.notes,
        }


class Appointment(Base):
    __tablename__ = "appointments"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    patient_id = sa.Column(String(36), ForeignKey("patients.id"), nullable=False)
    doctor_id = sa.Column(String(36), ForeignKey("doctors.id"), nullable=False)
    starts_at = sa.Column(DateTime, nullable=False)
    duration_minutes = sa.Column(Integer, nullable=False, server_default=sa.text("30"), default=30)
    status = sa.Column(String, nullable=False, default=AppointmentStatus.SCHEDULED.value)
    tuss_code_id = sa.Column(String(36), ForeignKey("tuss_codes.id"), nullable=True)
    consultation_type_id = sa.Column(String(36), ForeignKey("consultation_types.id"), nullable=True)
    operator_id = sa.Column(String(36), ForeignKey("operators.id"), nullable=True)
    health_plan_id = sa.Column(String(36), ForeignKey("health_plans.id"), nullable=True)
    insurance_card_number = sa.Column(String, nullable=True)
    amount = sa.Column(Numeric(12, 2), nullable=True)
    notes = sa.Column(Text, nullable=True)
    checked_in_at = sa.Column(DateTime(timezone=True), nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()

    patient = relationship("Patient", lazy="joined")
    doctor = relationship("Doctor", lazy="joined")
    consultation_type = relationship("ConsultationType", lazy="joined")
    tuss_code = relationship("TussCode", lazy="joined")

    __table_args__ = (
        sa.Index("idx_appointments_doctor_start", "doctor_id", "starts_at"),
        sa.Index("idx_appointments_clinic_start", "clinic_id", "starts_at"),
    )

    @property
    def ends_at(self) -> datetime:
        return self.starts_at + timedelta(minutes=self.duration_minutes or 30)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "clinic_id": self.clinic_id,
            "patient_id": self.patient_id,
            "patient_name": self.patient.name if self.patient is not None else None,
            "doctor_id": self.doctor_id,
            "doctor_name": self.doctor.name if self.doctor is not None else None,
            "starts_at": _iso(self.starts_at),
            "ends_at": _iso(self.ends_at),
            "duration_minutes": self.duration_minutes,
            "status": self.status,
            "tuss_code_id": self.tuss_code_id,
            "tuss_code": self.tuss_code.code if self.tuss_code is not None else None,
            "consultation_type_id": self.consultation_type_id,
            "consultation_type": self.consultation_type.code if self.consultation_type is not None else None,
            "operator_id": self.operator_id,
            "health_plan_id": self.health_plan_id,
            "insurance_card_number": self.insurance_card_number,
            "amount": _money(self.amount),
            "notes": self.notes,
            "checked_in_at": _iso(self.checked_in_at),
        }


class ScheduleBlock(Base):
    """Interval in which a doctor takes no appointments."""

    __tablename__ = "schedule_blocks"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    doctor_id = sa.Column(String(36), ForeignKey("doctors.id"), nullable=False)
    starts_at = sa.Column(DateTime, nullable=False)
    ends_at = sa.Column(DateTime, nullable=False)
    reason = sa.Column(String, nullable=True)
    created_at = _created_at()

    __table_args__ = (sa.Index("idx_blocks_doctor_range", "doctor_id", "starts_at", "ends_at"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "doctor_id": self.doctor_id,
            "starts_at": _iso(self.starts_at),
            "ends_at": _iso(self.ends_at),
            "reason": self.reason,
        }


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    doctor_id = sa.Column(String(36), ForeignKey("doctors.id"), nullable=False)
    patient_id = sa.Column(String(36), ForeignKey("patients.id"), nullable=False)
    priority = sa.Column(Integer, nullable=False, server_default=sa.text("0"), default=0)
    notes = sa.Column(Text, nullable=True)
    created_at = _created_at()

    patient = relationship("Patient", lazy="joined")

    __table_args__ = (
        sa.UniqueConstraint("clinic_id", "doctor_id", "patient_id", name="uq_waitlist_patient_doctor"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "doctor_id": self.doctor_id,
            "patient_id": self.patient_id,
            "patient_name": self.patient.name if self.patient is not None else None,
            "priority": self.priority,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
        }


class MedicalRecord(Base):
    """Prontuário entry for one appointment."""

    __tablename__ = "medical_records"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    appointment_id = sa.Column(String(36), ForeignKey("appointments.id"), nullable=False, unique=True)
    patient_id = sa.Column(String(36), ForeignKey("patients.id"), nullable=False)
    doctor_id = sa.Column(String(36), ForeignKey("doctors.id"), nullable=False)
    anamnesis = sa.Column(Text, nullable=True)
    physical_exam = sa.Column(Text, nullable=True)
    diagnosis = sa.Column(Text, nullable=True)
    conduct = sa.Column(Text, nullable=True)
    evolution = sa.Column(Text, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "appointment_id": self.appointment_id,
            "patient_id": self.patient_id,
            "doctor_id": self.doctor_id,
            "anamnesis": self.anamnesis,
            "physical_exam": self.physical_exam,
            "diagnosis": self.diagnosis,
            "conduct": self.conduct,
            "evolution": self.evolution,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Prescription(Base):
    __tablename__ = "prescriptions"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    patient_id = sa.Column(String(36), ForeignKey("patients.id"), nullable=False)
    doctor_id = sa.Column(String(36), ForeignKey("doctors.id"), nullable=False)
    appointment_id = sa.Column(String(36), ForeignKey("appointments.id"), nullable=True)
    items = sa.Column(sa.JSON, nullable=False, default=list)
    notes = sa.Column(Text, nullable=True)
    created_at = _created_at()

    patient = relationship("Patient", lazy="joined")
    doctor = relationship("Doctor", lazy="joined")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "doctor_id": self.doctor_id,
            "appointment_id": self.appointment_id,
            "items": list(self.items or []),
            "notes": self.notes,
            "created_at": _iso(self.created_at),
        }


class ExamRequest(Base):
    __tablename__ = "exam_requests"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    patient_id = sa.Column(String(36), ForeignKey("patients.id"), nullable=False)
    doctor_id = sa.Column(String(36), ForeignKey("doctors.id"), nullable=False)
    appointment_id = sa.Column(String(36), ForeignKey("appointments.id"), nullable=True)
    exam_name = sa.Column(String, nullable=False)
    exam_type = sa.Column(String, nullable=False, default="Laboratorial")
    justification = sa.Column(Text, nullable=True)
    status = sa.Column(String, nullable=False, default=ExamRequestStatus.REQUESTED.value)
    result_notes = sa.Column(Text, nullable=True)
    completed_at = sa.Column(DateTime(timezone=True), nullable=True)
    created_at = _created_at()

    patient = relationship("Patient", lazy="joined")
    doctor = relationship("Doctor", lazy="joined")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "doctor_id": self.doctor_id,
            "appointment_id": self.appointment_id,
            "exam_name": self.exam_name,
            "exam_type": self.exam_type,
            "justification": self.justification,
            "status": self.status,
            "result_notes": self.result_notes,
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
        }


class AccountPayable(Base):
    __tablename__ = "accounts_payable"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    description = sa.Column(String, nullable=False)
    supplier = sa.Column(String, nullable=True)
    amount = sa.Column(Numeric(12, 2), nullable=False)
    due_date = sa.Column(Date, nullable=False)
    paid_on = sa.Column(Date, nullable=True)
    payment_method_id = sa.Column(String(36), ForeignKey("payment_methods.id"), nullable=True)
    status = sa.Column(String, nullable=False, default=AccountStatus.PENDING.value)
    notes = sa.Column(Text, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()

    __table_args__ = (sa.Index("idx_payables_clinic_due", "clinic_id", "due_date"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "supplier": self.supplier,
            "amount": _money(self.amount),
            "due_date": _iso(self.due_date),
            "paid_on": _iso(self.paid_on),
            "payment_method_id": self.payment_method_id,
            "status": self.status,
            "notes": self.notes,
        }


class AccountReceivable(Base):
    __tablename__ = "accounts_receivable"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    patient_id = sa.Column(String(36), ForeignKey("patients.id"), nullable=True)
    appointment_id = sa.Column(String(36), ForeignKey("appointments.id"), nullable=True)
    description = sa.Column(String, nullable=False)
    amount = sa.Column(Numeric(12, 2), nullable=False)
    due_date = sa.Column(Date, nullable=False)
    received_on = sa.Column(Date, nullable=True)
    payment_method_id = sa.Column(String(36), ForeignKey("payment_methods.id"), nullable=True)
    status = sa.Column(String, nullable=False, default=AccountStatus.PENDING.value)
    notes = sa.Column(Text, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()

    patient = relationship("Patient", lazy="joined")

    __table_args__ = (sa.Index("idx_receivables_clinic_due", "clinic_id", "due_date"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "patient_name": self.patient.name if self.patient is not None else None,
            "appointment_id": self.appointment_id,
            "description": self.description,
            "amount": _money(self.amount),
            "due_date": _iso(self.due_date),
            "received_on": _iso(self.received_on),
            "payment_method_id": self.payment_method_id,
            "status": self.status,
            "notes": self.notes,
        }


class CashFlowEntry(Base):
    __tablename__ = "cash_flow_entries"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    kind = sa.Column(String, nullable=False)
    description = sa.Column(String, nullable=False)
    amount = sa.Column(Numeric(12, 2), nullable=False)
    occurred_on = sa.Column(Date, nullable=False)
    payment_method_id = sa.Column(String(36), ForeignKey("payment_methods.id"), nullable=True)
    payable_id = sa.Column(String(36), ForeignKey("accounts_payable.id"), nullable=True)
    receivable_id = sa.Column(String(36), ForeignKey("accounts_receivable.id"), nullable=True)
    notes = sa.Column(Text, nullable=True)
    created_at = _created_at()

    payment_method = relationship("PaymentMethod", lazy="joined")

    __table_args__ = (sa.Index("idx_cash_flow_clinic_day", "clinic_id", "occurred_on"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "description": self.description,
            "amount": _money(self.amount),
            "occurred_on": _iso(self.occurred_on),
            "payment_method_id": self.payment_method_id,
            "payment_method": self.payment_method.name if self.payment_method is not None else None,
            "payable_id": self.payable_id,
            "receivable_id": self.receivable_id,
            "notes": self.notes,
        }


class CashClosing(Base):
    """Doctor authorization and secretary closing of one day's cash."""

    __tablename__ = "cash_closings"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    doctor_id = sa.Column(String(36), ForeignKey("doctors.id"), nullable=False)
    day = sa.Column(Date, nullable=False)
    status = sa.Column(String, nullable=False, default=CashClosingStatus.AUTHORIZED.value)
    notes = sa.Column(Text, nullable=True)
    authorized_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    closed_at = sa.Column(DateTime(timezone=True), nullable=True)
    closed_by = sa.Column(String(36), ForeignKey("users.id"), nullable=True)
    signature = sa.Column(Text, nullable=True)

    __table_args__ = (sa.UniqueConstraint("clinic_id", "doctor_id", "day", name="uq_cash_closing_day"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "doctor_id": self.doctor_id,
            "day": _iso(self.day),
            "status": self.status,
            "notes": self.notes,
            "authorized_at": _iso(self.authorized_at),
            "closed_at": _iso(self.closed_at),
            "closed_by": self.closed_by,
            "signed": bool(self.signature),
        }


class Medication(Base):
    __tablename__ = "medications"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    name = sa.Column(String, nullable=False)
    active_ingredient = sa.Column(String, nullable=True)
    manufacturer = sa.Column(String, nullable=True)
    presentation = sa.Column(String, nullable=True)
    concentration = sa.Column(String, nullable=True)
    unit = sa.Column(String, nullable=True)
    active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_at = _created_at()

    __table_args__ = (sa.Index("idx_medications_clinic_name", "clinic_id", "name"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "active_ingredient": self.active_ingredient,
            "manufacturer": self.manufacturer,
            "presentation": self.presentation,
            "concentration": self.concentration,
            "unit": self.unit,
            "active": bool(self.active),
        }


class StockItem(Base):
    """Stock on hand for one medication of the clinic."""

    __tablename__ = "stock_items"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    medication_id = sa.Column(String(36), ForeignKey("medications.id"), nullable=False, unique=True)
    quantity = sa.Column(Integer, nullable=False, server_default=sa.text("0"), default=0)
    minimum_quantity = sa.Column(Integer, nullable=False, server_default=sa.text("0"), default=0)
    maximum_quantity = sa.Column(Integer, nullable=True)
    unit = sa.Column(String, nullable=False, server_default="UN", default="UN")
    location = sa.Column(String, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()

    medication = relationship("Medication", lazy="joined")

    @property
    def low(self) -> bool:
        return (self.quantity or 0) <= (self.minimum_quantity or 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "medication_id": self.medication_id,
            "medication_name": self.medication.name if self.medication is not None else None,
            "quantity": self.quantity,
            "minimum_quantity": self.minimum_quantity,
            "maximum_quantity": self.maximum_quantity,
            "unit": self.unit,
            "location": self.location,
            "low": self.low,
        }


class StockMovement(Base):
    __tablename__ = "stock_movements"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    stock_item_id = sa.Column(String(36), ForeignKey("stock_items.id"), nullable=False)
    kind = sa.Column(String, nullable=False)
    quantity = sa.Column(Integer, nullable=False)
    balance = sa.Column(Integer, nullable=False)
    reason = sa.Column(String, nullable=True)
    notes = sa.Column(Text, nullable=True)
    execution_id = sa.Column(String(36), ForeignKey("procedure_executions.id"), nullable=True)
    occurred_at = _created_at()

    stock_item = relationship("StockItem", lazy="joined")

    __table_args__ = (sa.Index("idx_stock_movements_item", "stock_item_id", "occurred_at"),)

    def to_dict(self) -> Dict[str, Any]:
        medication = self.stock_item.medication if self.stock_item is not None else None
        return {
            "id": self.id,
            "stock_item_id": self.stock_item_id,
            "medication_name": medication.name if medication is not None else None,
            "kind": self.kind,
            "quantity": self.quantity,
            "balance": self.balance,
            "reason": self.reason,
            "notes": self.notes,
            "execution_id": self.execution_id,
            "occurred_at": _iso(self.occurred_at),
        }


class Procedure(Base):
    __tablename__ = "procedures"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    code = sa.Column(String, nullable=False)
    name = sa.Column(String, nullable=False)
    description = sa.Column(Text, nullable=True)
    price = sa.Column(Numeric(12, 2), nullable=False)
    active = sa.Column(Boolean, nullable=False, server_default=sa.true(), default=True)
    created_at = _created_at()
    updated_at = _updated_at()

    medications = relationship("ProcedureMedication", lazy="selectin", cascade="all, delete-orphan")

    __table_args__ = (sa.UniqueConstraint("clinic_id", "code", name="uq_procedure_clinic_code"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "price": _money(self.price),
            "active": bool(self.active),
            "medications": [item.to_dict() for item in self.medications],
        }


class ProcedureMedication(Base):
    """Medication consumed each time a procedure is executed."""

    __tablename__ = "procedure_medications"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    procedure_id = sa.Column(String(36), ForeignKey("procedures.id"), nullable=False)
    medication_id = sa.Column(String(36), ForeignKey("medications.id"), nullable=False)
    quantity = sa.Column(Integer, nullable=False, server_default=sa.text("1"), default=1)
    notes = sa.Column(String, nullable=True)

    medication = relationship("Medication", lazy="joined")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "medication_id": self.medication_id,
            "medication_name": self.medication.name if self.medication is not None else None,
            "quantity": self.quantity,
            "notes": self.notes,
        }


class ProcedureExecution(Base):
    __tablename__ = "procedure_executions"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    procedure_id = sa.Column(String(36), ForeignKey("procedures.id"), nullable=False)
    patient_id = sa.Column(String(36), ForeignKey("patients.id"), nullable=False)
    payment_method_id = sa.Column(String(36), ForeignKey("payment_methods.id"), nullable=False)
    receivable_id = sa.Column(String(36), ForeignKey("accounts_receivable.id"), nullable=True)
    amount = sa.Column(Numeric(12, 2), nullable=False)
    executed_by = sa.Column(String(36), ForeignKey("users.id"), nullable=True)
    notes = sa.Column(Text, nullable=True)
    executed_at = _created_at()

    procedure = relationship("Procedure", lazy="joined")
    patient = relationship("Patient", lazy="joined")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "procedure_id": self.procedure_id,
            "procedure_name": self.procedure.name if self.procedure is not None else None,
            "patient_id": self.patient_id,
            "patient_name": self.patient.name if self.patient is not None else None,
            "payment_method_id": self.payment_method_id,
            "receivable_id": self.receivable_id,
            "amount": _money(self.amount),
            "executed_by": self.executed_by,
            "notes": self.notes,
            "executed_at": _iso(self.executed_at),
        }


class SubscriptionPayment(Base):
    __tablename__ = "subscription_payments"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    amount = sa.Column(Numeric(12, 2), nullable=False)
    reference_month = sa.Column(Date, nullable=False)
    status = sa.Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    method = sa.Column(String, nullable=False, default=PaymentMethodKind.BOLETO.value)
    transaction_id = sa.Column(String, nullable=True)
    due_date = sa.Column(Date, nullable=False)
    paid_at = sa.Column(DateTime(timezone=True), nullable=True)
    notes = sa.Column(Text, nullable=True)
    created_at = _created_at()

    __table_args__ = (sa.Index("idx_subscription_payments_clinic", "clinic_id", "reference_month"),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "clinic_id": self.clinic_id,
            "amount": _money(self.amount),
            "reference_month": _iso(self.reference_month),
            "status": self.status,
            "method": self.method,
            "transaction_id": self.transaction_id,
            "due_date": _iso(self.due_date),
            "paid_at": _iso(self.paid_at),
            "notes": self.notes,
        }


class ConsultationSession(Base):
    """State of an AI-assisted consultation for one appointment."""

    __tablename__ = "consultation_sessions"

    id = sa.Column(String(36), primary_key=True, default=_uuid)
    clinic_id = sa.Column(String(36), ForeignKey("clinics.id"), nullable=False)
    appointment_id = sa.Column(String(36), ForeignKey("appointments.id"), nullable=False, unique=True)
    doctor_id = sa.Column(String(36), ForeignKey("doctors.id"), nullable=False)
    step = sa.Column(String, nullable=False, default=ConsultationStep.TRANSCRIPTION.value)
    transcript = sa.Column(sa.JSON, nullable=False, default=list)
    analysis = sa.Column(sa.JSON, nullable=True)
    anamnesis = sa.Column(Text, nullable=True)
    extra_context = sa.Column(Text, nullable=True)
    selection = sa.Column(sa.JSON, nullable=True)
    tokens_used = sa.Column(Integer, nullable=False, server_default=sa.text("0"), default=0)
    result = sa.Column(sa.JSON, nullable=True)
    created_at = _created_at()
    updated_at = _updated_at()

    appointment = relationship("Appointment", lazy="joined")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "appointment_id": self.appointment_id,
            "doctor_id": self.doctor_id,
            "step": self.step,
            "transcript": list(self.transcript or []),
            "analysis": self.analysis,
            "anamnesis": self.anamnesis,
            "selection": self.selection,
            "tokens_used": self.tokens_used,
            "result": self.result,
            "updated_at": _iso(self.updated_at),
        }


class WebhookEvent(Base):
    """Processed payment-processor event ids."""

    __tablename__ = "webhook_events"

    id = sa.Column(String, primary_key=True)
    event_type = sa.Column(String, nullable=False)
    outcome = sa.Column(String, nullable=False)
    received_at = _created_at()


__all__ = [
    "Base",
    "UserRole",
    "ClinicStatus",
    "PlanTier",
    "AppointmentStatus",
    "AccountStatus",
    "CashFlowKind",
    "CashClosingStatus",
    "PaymentStatus",
    "PaymentMethodKind",
    "ExamRequestStatus",
    "ConsultationStep",
    "StockMovementKind",
    "CONSULTATION_STEP_ORDER",
    "Plan",
    "Clinic",
    "User",
    "UserTenant",
    "PasswordResetToken",
    "AuditLogEntry",
    "Doctor",
    "Patient",
    "Operator",
    "HealthPlan",
    "ConsultationType",
    "PaymentMethod",
    "TussCode",
    "TussValue",
    "TussOperatorRule",
    "Appointment",
    "ScheduleBlock",
    "WaitlistEntry",
    "MedicalRecord",
    "Prescription",
    "ExamRequest",
    "AccountPayable",
    "AccountReceivable",
    "CashFlowEntry",
    "CashClosing",
    "Medication",
    "StockItem",
    "StockMovement",
    "Procedure",
    "ProcedureMedication",
    "ProcedureExecution",
    "SubscriptionPayment",
    "ConsultationSession",
    "WebhookEvent",
]
