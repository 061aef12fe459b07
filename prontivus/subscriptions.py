"""Clinic subscription payments and license lifecycle."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from prontivus.config import get_settings
from prontivus.db.models import (
    Clinic,
    ClinicStatus,
    PaymentMethodKind,
    PaymentStatus,
    Plan,
    SubscriptionPayment,
)
from prontivus.errors import DomainValidationError, NotFoundError
from prontivus.time_utils import add_months, ensure_utc, local_today, month_start, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_DUE_DAYS = 7
RENEWAL_WINDOW_DAYS = 7


def _clinic(session: Session, clinic_id: str) -> Clinic:
    clinic = session.get(Clinic, clinic_id)
    if clinic is None:
        raise NotFoundError("Clinic not found", {"id": clinic_id})
    return clinic


def _expiry_date(clinic: Clinic) -> Optional[date]:
    if clinic.expires_at is None:
        return None
    return ensure_utc(clinic.expires_at).date()


def register_payment(
    session: Session,
    clinic_id: str,
    reference_month: date,
    *,
    amount: Optional[Decimal] = None,
    due_date: Optional[date] = None,
    method: str = PaymentMethodKind.BOLETO.value,
    status: str = PaymentStatus.PENDING.value,
    transaction_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> SubscriptionPayment:
    clinic = _clinic(session, clinic_id)
    if method not in {m.value for m in PaymentMethodKind}:
        raise DomainValidationError(f"Unknown payment method {method!r}")
    if status not in {s.value for s in PaymentStatus}:
        raise DomainValidationError(f"Unknown payment status {status!r}")
    if amount is None:
        amount = clinic.plan.price
    payment = SubscriptionPayment(
        clinic_id=clinic.id,
        amount=Decimal(str(amount)),
        reference_month=month_start(reference_month),
        status=status,
        method=method,
        transaction_id=transaction_id,
        due_date=due_date or local_today() + timedelta(days=DEFAULT_DUE_DAYS),
        paid_at=utc_now() if status == PaymentStatus.PAID.value else None,
        notes=notes,
    )
    session.add(payment)
    session.flush()
    logger.info(
        "subscription_payment_registered",
        clinic_id=clinic.id,
        payment_id=payment.id,
        amount=float(payment.amount),
        status=status,
    )
    return payment


def renew_license(session: Session, clinic: Clinic) -> Clinic:
    """Extend the license by one calendar month and refill the token quota."""

    base = ensure_utc(clinic.expires_at or clinic.contracted_at)
    clinic.expires_at = add_months(base, 1)
    clinic.monthly_tokens_available = clinic.plan.monthly_tokens
    clinic.tokens_consumed = 0
    clinic.status = ClinicStatus.ACTIVE.value
    session.flush()
    logger.info("license_renewed", clinic_id=clinic.id, expires_at=clinic.expires_at.isoformat())
    return clinic


def confirm_payment(
    session: Session,
    payment_id: str,
    *,
    transaction_id: Optional[str] = None,
    paid_at: Optional[datetime] = None,
) -> SubscriptionPayment:
    payment = session.get(SubscriptionPayment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found", {"id": payment_id})
    if payment.status == PaymentStatus.PAID.value:
        raise DomainValidationError("Payment was already confirmed")
    payment.status = PaymentStatus.PAID.value
    payment.transaction_id = transaction_id or payment.transaction_id
    payment.paid_at = paid_at or utc_now()
    session.flush()
    renew_license(session, _clinic(session, payment.clinic_id))
    logger.info("subscription_payment_confirmed", payment_id=payment.id, clinic_id=payment.clinic_id)
    return payment


def cancel_payment(session: Session, payment_id: str) -> SubscriptionPayment:
    payment = session.get(SubscriptionPayment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found", {"id": payment_id})
    if payment.status == PaymentStatus.PAID.value:
        raise DomainValidationError("Paid payments cannot be cancelled")
    payment.status = PaymentStatus.CANCELLED.value
    session.flush()
    return payment


def is_paid_up(clinic: Clinic, today: Optional[date] = None) -> bool:
    expiry = _expiry_date(clinic)
    if expiry is None:
        return False
    return expiry >= (today or local_today())


def _has_payment_for_month(session: Session, clinic_id: str, month: date) -> bool:
    existing = session.execute(
        select(SubscriptionPayment.id).where(
            SubscriptionPayment.clinic_id == clinic_id,
            SubscriptionPayment.reference_month == month,
            SubscriptionPayment.status.in_([PaymentStatus.PENDING.value, PaymentStatus.PAID.value]),
        )
    ).first()
    return existing is not None


def generate_monthly_payments(session: Session, today: Optional[date] = None) -> List[SubscriptionPayment]:
    """Bill every active clinic whose license ends within the renewal window."""

    today = today or local_today()
    month = month_start(today)
    horizon = today + timedelta(days=RENEWAL_WINDOW_DAYS)
    clinics = session.execute(
        select(Clinic).where(Clinic.status == ClinicStatus.ACTIVE.value, Clinic.expires_at.is_not(None))
    ).scalars()
    created = []
    for clinic in clinics:
        expiry = _expiry_date(clinic)
        if expiry is None or expiry > horizon:
            continue
        if _has_payment_for_month(session, clinic.id, month):
            continue
        created.append(
            register_payment(
                session,
                clinic.id,
                month,
                amount=clinic.plan.price,
                due_date=today + timedelta(days=DEFAULT_DUE_DAYS),
            )
        )
    logger.info("monthly_payments_generated", count=len(created), month=month.isoformat())
    return created


def suspend_overdue_clinics(
    session: Session, today: Optional[date] = None, grace_days: Optional[int] = None
) -> List[Dict[str, Any]]:
    """Suspend active clinics expired beyond the grace period without a recent pending bill."""

    today = today or local_today()
    if grace_days is None:
        grace_days = get_settings().payment_grace_days
    cutoff = today - timedelta(days=grace_days)
    clinics = session.execute(
        select(Clinic).where(Clinic.status == ClinicStatus.ACTIVE.value, Clinic.expires_at.is_not(None))
    ).scalars().all()
    suspended = []
    for clinic in clinics:
        expiry = _expiry_date(clinic)
        if expiry is None or expiry >= cutoff:
            continue
        pending = session.execute(
            select(SubscriptionPayment.id).where(
                SubscriptionPayment.clinic_id == clinic.id,
                SubscriptionPayment.status == PaymentStatus.PENDING.value,
                SubscriptionPayment.due_date >= cutoff,
            )
        ).first()
        if pending is not None:
            continue
        clinic.status = ClinicStatus.SUSPENDED.value
        suspended.append({"clinic_id": clinic.id, "name": clinic.name, "action": "suspended"})
        logger.warning("clinic_suspended", clinic_id=clinic.id, expired_on=expiry.isoformat())
    session.flush()
    return suspended


def change_plan(session: Session, clinic_id: str, plan_id: str) -> Clinic:
    clinic = _clinic(session, clinic_id)
    plan = session.get(Plan, plan_id)
    if plan is None or not plan.active:
        raise NotFoundError("Plan not found", {"id": plan_id})
    if plan.id == clinic.plan_id:
        raise DomainValidationError("Clinic is already on this plan")
    clinic.plan_id = plan.id
    clinic.plan = plan
    clinic.monthly_tokens_available = plan.monthly_tokens
    clinic.tokens_consumed = min(clinic.tokens_consumed or 0, plan.monthly_tokens)
    session.flush()
    logger.info("clinic_plan_changed", clinic_id=clinic.id, plan=plan.tier)
    return clinic


def list_payments(
    session: Session, *, clinic_id: Optional[str] = None, status: Optional[str] = None
) -> List[SubscriptionPayment]:
    stmt = select(SubscriptionPayment)
    if clinic_id:
        stmt = stmt.where(SubscriptionPayment.clinic_id == clinic_id)
    if status:
        stmt = stmt.where(SubscriptionPayment.status == status)
    return list(
        session.execute(
            stmt.order_by(SubscriptionPayment.reference_month.desc(), SubscriptionPayment.created_at.desc())
        ).scalars()
    )
