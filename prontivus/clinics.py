"""Clinic, plan, staff and catalogue management."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from prontivus import auth
from prontivus.db.models import (
    Clinic,
    ClinicStatus,
    ConsultationType,
    Doctor,
    HealthPlan,
    Operator,
    PaymentMethod,
    Plan,
    PlanTier,
    User,
    UserRole,
    UserTenant,
)
from prontivus.errors import ConflictError, DomainValidationError, NotFoundError
from prontivus.tenancy import get_scoped, scoped_query
from prontivus.time_utils import utc_now
from prontivus.validators import doctor_email, is_valid_cnpj, only_digits

logger = structlog.get_logger(__name__)

CLINIC_LICENSE_DAYS = 365

DEFAULT_CONSULTATION_TYPES = (
    ("FIRST_VISIT", "Primeira consulta"),
    ("RETURN", "Retorno"),
    ("EMERGENCY", "Urgência"),
    ("TELEMEDICINE", "Telemedicina"),
)

DEFAULT_PAYMENT_METHODS = ("Dinheiro", "PIX", "Cartão de crédito", "Cartão de débito", "Convênio")

STAFF_ROLES = {UserRole.SECRETARY.value, UserRole.CLINIC_ADMIN.value}


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


def create_plan(
    session: Session,
    tier: str,
    name: str,
    price: Decimal,
    monthly_tokens: int,
    *,
    max_doctors: Optional[int] = None,
    telemedicine_enabled: bool = False,
) -> Plan:
    if tier not in {t.value for t in PlanTier}:
        raise DomainValidationError(f"Unknown plan tier {tier!r}")
    if session.execute(select(Plan).where(Plan.tier == tier)).scalar_one_or_none() is not None:
        raise ConflictError("Plan tier already exists", {"tier": tier})
    plan = Plan(
        tier=tier,
        name=name,
        price=Decimal(str(price)),
        monthly_tokens=monthly_tokens,
        max_doctors=max_doctors,
        telemedicine_enabled=telemedicine_enabled,
    )
    session.add(plan)
    session.flush()
    return plan


def list_plans(session: Session) -> List[Plan]:
    return list(session.execute(select(Plan).order_by(Plan.price)).scalars())


def get_plan_by_tier(session: Session, tier: str) -> Optional[Plan]:
    return session.execute(select(Plan).where(Plan.tier == tier, Plan.active.is_(True))).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Clinics
# ---------------------------------------------------------------------------


def create_clinic(
    session: Session,
    name: str,
    cnpj: str,
    plan_id: str,
    *,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    validate_cnpj: bool = True,
) -> Clinic:
    """Create an active clinic with a one-year license and the plan's tokens."""

    digits = only_digits(cnpj)
    if validate_cnpj and not is_valid_cnpj(digits):
        raise DomainValidationError("Invalid CNPJ", {"cnpj": cnpj})
    if session.execute(select(Clinic).where(Clinic.cnpj == digits)).scalar_one_or_none() is not None:
        raise ConflictError("CNPJ already registered", {"cnpj": digits})
    plan = session.get(Plan, plan_id)
    if plan is None:
        raise NotFoundError("Plan not found", {"id": plan_id})
    now = utc_now()
    clinic = Clinic(
        name=name.strip(),
        cnpj=digits,
        email=email,
        phone=only_digits(phone) or None,
        plan_id=plan.id,
        status=ClinicStatus.ACTIVE.value,
        monthly_tokens_available=plan.monthly_tokens,
        tokens_consumed=0,
        contracted_at=now,
        expires_at=now + timedelta(days=CLINIC_LICENSE_DAYS),
    )
    session.add(clinic)
    session.flush()
    for method_name in DEFAULT_PAYMENT_METHODS:
        session.add(PaymentMethod(clinic_id=clinic.id, name=method_name))
    session.flush()
    logger.info("clinic_created", clinic_id=clinic.id, plan=plan.tier)
    return clinic


def get_clinic(session: Session, clinic_id: str) -> Clinic:
    clinic = session.get(Clinic, clinic_id)
    if clinic is None:
        raise NotFoundError("Clinic not found", {"id": clinic_id})
    return clinic


def list_clinics(session: Session, *, status: Optional[str] = None, search: Optional[str] = None) -> List[Clinic]:
    stmt = select(Clinic).order_by(Clinic.name)
    if status:
        stmt = stmt.where(Clinic.status == status)
    if search:
        like = f"%{search.strip()}%"
        stmt = stmt.where(Clinic.name.ilike(like) | Clinic.cnpj.like(f"%{only_digits(search)}%"))
    return list(session.execute(stmt).scalars())


def set_clinic_status(session: Session, clinic_id: str, status: str) -> Clinic:
    if status not in {s.value for s in ClinicStatus}:
        raise DomainValidationError(f"Unknown clinic status {status!r}")
    clinic = get_clinic(session, clinic_id)
    clinic.status = status
    session.flush()
    logger.info("clinic_status_changed", clinic_id=clinic_id, status=status)
    return clinic


# ---------------------------------------------------------------------------
# Doctors and staff
# ---------------------------------------------------------------------------


def _check_doctor_limit(session: Session, clinic_id: str) -> Clinic:
    clinic = get_clinic(session, clinic_id)
    active_doctors = session.execute(
        select(func.count(Doctor.id)).where(Doctor.clinic_id == clinic_id, Doctor.active.is_(True))
    ).scalar_one()
    if clinic.plan is not None and clinic.plan.max_doctors is not None and active_doctors >= clinic.plan.max_doctors:
        raise DomainValidationError(
            "Plan doctor limit reached",
            {"max_doctors": clinic.plan.max_doctors, "active_doctors": active_doctors},
        )
    return clinic


def create_doctor(
    session: Session,
    clinic_id: str,
    name: str,
    email: Optional[str],
    password: str,
    crm: str,
    *,
    specialty: Optional[str] = None,
    max_returns_per_day: Optional[int] = None,
) -> Doctor:
    """Create the doctor's login, clinic membership and doctor profile.

    Without an e-mail the login is generated from the doctor and clinic names.
    """

    clinic = _check_doctor_limit(session, clinic_id)
    if not email:
        email = doctor_email(name, clinic.name)
        if auth.get_user_by_email(session, email) is not None:
            raise ConflictError("Generated doctor e-mail is already in use", {"email": email})
    if max_returns_per_day is not None and max_returns_per_day < 0:
        raise DomainValidationError("max_returns_per_day must not be negative")

    user = auth.get_user_by_email(session, email)
    if user is None:
        auth.validate_password_strength(password)
        user = auth.register_user(session, email, password, name, UserRole.DOCTOR.value, clinic_id=clinic_id)
    else:
        existing = session.execute(
            select(Doctor).where(Doctor.clinic_id == clinic_id, Doctor.user_id == user.id)
        ).scalar_one_or_none()
        if existing is not None:
            raise ConflictError("Doctor already registered in this clinic", {"doctor_id": existing.id})
        _ensure_membership(session, user, clinic_id, UserRole.DOCTOR.value)

    doctor = Doctor(
        clinic_id=clinic_id,
        user_id=user.id,
        crm=crm.strip(),
        specialty=specialty,
        max_returns_per_day=max_returns_per_day,
    )
    session.add(doctor)
    session.flush()
    logger.info("doctor_created", clinic_id=clinic_id, doctor_id=doctor.id)
    return doctor


def _ensure_membership(session: Session, user: User, clinic_id: str, role: str) -> None:
    membership = session.execute(
        select(UserTenant).where(UserTenant.user_id == user.id, UserTenant.clinic_id == clinic_id)
    ).scalar_one_or_none()
    if membership is None:
        session.add(UserTenant(user_id=user.id, clinic_id=clinic_id, role=role))
    else:
        membership.role = role
        membership.active = True
    session.flush()


def list_doctors(session: Session, clinic_id: str, *, active_only: bool = True) -> List[Doctor]:
    stmt = scoped_query(Doctor, clinic_id).join(User, Doctor.user_id == User.id).order_by(User.name)
    if active_only:
        stmt = stmt.where(Doctor.active.is_(True))
    return list(session.execute(stmt).scalars().unique())


def get_doctor(session: Session, clinic_id: str, doctor_id: str) -> Doctor:
    return get_scoped(session, Doctor, doctor_id, clinic_id, label="Doctor")


def doctor_for_user(session: Session, clinic_id: str, user_id: str) -> Optional[Doctor]:
    return session.execute(
        scoped_query(Doctor, clinic_id).where(Doctor.user_id == user_id)
    ).scalars().unique().one_or_none()


def update_doctor(session: Session, clinic_id: str, doctor_id: str, changes: Dict[str, Any]) -> Doctor:
    doctor = get_doctor(session, clinic_id, doctor_id)
    if changes.get("active") and not doctor.active:
        _check_doctor_limit(session, clinic_id)
    for field in ("crm", "specialty", "max_returns_per_day", "active"):
        if field in changes:
            setattr(doctor, field, changes[field])
    if doctor.max_returns_per_day is not None and doctor.max_returns_per_day < 0:
        raise DomainValidationError("max_returns_per_day must not be negative")
    session.flush()
    return doctor


def create_staff_user(
    session: Session,
    clinic_id: str,
    name: str,
    email: str,
    password: str,
    role: str,
) -> User:
    if role not in STAFF_ROLES:
        raise DomainValidationError("Staff role must be secretary or clinic_admin")
    get_clinic(session, clinic_id)
    auth.validate_password_strength(password)
    return auth.register_user(session, email, password, name, role, clinic_id=clinic_id)


def list_staff(session: Session, clinic_id: str) -> List[Dict[str, Any]]:
    rows = session.execute(
        select(User, UserTenant.role)
        .join(UserTenant, UserTenant.user_id == User.id)
        .where(UserTenant.clinic_id == clinic_id, UserTenant.role.in_(STAFF_ROLES))
        .order_by(User.name)
    ).all()
    staff = []
    for user, role in rows:
        data = user.to_dict()
        data["role"] = role
        staff.append(data)
    return staff


# ---------------------------------------------------------------------------
# Operators, health plans, payment methods, consultation types
# ---------------------------------------------------------------------------


def create_operator(session: Session, clinic_id: str, name: str, ans_code: Optional[str] = None) -> Operator:
    operator = Operator(clinic_id=clinic_id, name=name.strip(), ans_code=ans_code)
    session.add(operator)
    session.flush()
    return operator


def list_operators(session: Session, clinic_id: str) -> List[Operator]:
    return list(session.execute(scoped_query(Operator, clinic_id).order_by(Operator.name)).scalars())


def create_health_plan(session: Session, clinic_id: str, operator_id: str, name: str) -> HealthPlan:
    get_scoped(session, Operator, operator_id, clinic_id, label="Operator")
    plan = HealthPlan(clinic_id=clinic_id, operator_id=operator_id, name=name.strip())
    session.add(plan)
    session.flush()
    return plan


def list_health_plans(session: Session, clinic_id: str, operator_id: Optional[str] = None) -> List[HealthPlan]:
    stmt = scoped_query(HealthPlan, clinic_id).order_by(HealthPlan.name)
    if operator_id:
        stmt = stmt.where(HealthPlan.operator_id == operator_id)
    return list(session.execute(stmt).scalars())


def create_payment_method(session: Session, clinic_id: str, name: str) -> PaymentMethod:
    existing = session.execute(
        scoped_query(PaymentMethod, clinic_id).where(PaymentMethod.name == name.strip())
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError("Payment method already exists", {"id": existing.id})
    method = PaymentMethod(clinic_id=clinic_id, name=name.strip())
    session.add(method)
    session.flush()
    return method


def list_payment_methods(session: Session, clinic_id: str) -> List[PaymentMethod]:
    return list(
        session.execute(
            scoped_query(PaymentMethod, clinic_id).where(PaymentMethod.active.is_(True)).order_by(PaymentMethod.name)
        ).scalars()
    )


def ensure_consultation_types(
    session: Session, types: Iterable[tuple[str, str]] = DEFAULT_CONSULTATION_TYPES
) -> List[ConsultationType]:
    """Insert missing consultation types keyed by code."""

    existing = {ct.code: ct for ct in session.execute(select(ConsultationType)).scalars()}
    for code, name in types:
        if code not in existing:
            ct = ConsultationType(code=code, name=name)
            session.add(ct)
            existing[code] = ct
    session.flush()
    return sorted(existing.values(), key=lambda ct: ct.code)


def list_consultation_types(session: Session) -> List[ConsultationType]:
    return list(session.execute(select(ConsultationType).order_by(ConsultationType.name)).scalars())


def consultation_type_by_code(session: Session, code: str) -> Optional[ConsultationType]:
    return session.execute(select(ConsultationType).where(ConsultationType.code == code)).scalar_one_or_none()
