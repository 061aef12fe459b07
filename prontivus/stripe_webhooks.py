"""Stripe webhook receiver: signature check, idempotency and event handlers."""

from __future__ import annotations

import json
import secrets
import string
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import stripe
import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from prontivus import auth, clinics, subscriptions
from prontivus.db.models import (
    Clinic,
    ClinicStatus,
    PaymentMethodKind,
    PaymentStatus,
    UserRole,
    WebhookEvent,
)
from prontivus.errors import AuthenticationError, DomainValidationError
from prontivus.observability import WEBHOOK_EVENTS
from prontivus.time_utils import from_epoch_seconds, local_today
from prontivus.validators import only_digits

logger = structlog.get_logger(__name__)

PLAN_ALIASES = {
    "BASICO": "basic",
    "INTERMEDIARIO": "intermediate",
    "PROFISSIONAL": "professional",
    "basic": "basic",
    "intermediate": "intermediate",
    "professional": "professional",
}

_PASSWORD_SYMBOLS = "!@#$%&*-_=+"


def generate_secure_password(length: int = 12) -> str:
    """Random password with lower, upper, digit and symbol characters."""

    length = max(length, 10)
    alphabet = string.ascii_letters + string.digits + _PASSWORD_SYMBOLS
    while True:
        pwd = "".join(secrets.choice(alphabet) for _ in range(length))
        if (
            any(c.islower() for c in pwd)
            and any(c.isupper() for c in pwd)
            and any(c.isdigit() for c in pwd)
            and any(c in _PASSWORD_SYMBOLS for c in pwd)
        ):
            return pwd


def parse_event(payload: bytes | str, signature_header: Optional[str], secret: Optional[str]) -> Dict[str, Any]:
    """Verify (when a secret is configured) and decode a webhook payload."""

    text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    if secret:
        if not signature_header:
            raise AuthenticationError("Missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(
                text, signature_header, secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError as exc:
            raise AuthenticationError("Invalid webhook signature") from exc
    try:
        event = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DomainValidationError("Invalid JSON payload") from exc
    if not isinstance(event, dict) or not event.get("type"):
        raise DomainValidationError("Payload is not a Stripe event")
    return event


def _custom_field(obj: Dict[str, Any], key: str) -> Optional[str]:
    for field in obj.get("custom_fields") or []:
        if field.get("key") == key:
            return ((field.get("text") or {}).get("value") or "").strip() or None
    return None


def _temporary_cnpj() -> str:
    return "".join(secrets.choice(string.digits) for _ in range(14))


def _clinic_by_customer(session: Session, customer_id: Optional[str]) -> Optional[Clinic]:
    if not customer_id:
        return None
    return session.execute(select(Clinic).where(Clinic.stripe_customer_id == customer_id)).scalar_one_or_none()


def handle_checkout_completed(session: Session, obj: Dict[str, Any]) -> str:
    metadata = obj.get("metadata") or {}
    details = obj.get("customer_details") or {}
    email = details.get("email") or obj.get("customer_email")
    tier = PLAN_ALIASES.get((metadata.get("plan") or metadata.get("plano") or "").strip())
    name = (
        _custom_field(obj, "nome_clinica")
        or metadata.get("clinic_name")
        or details.get("name")
        or "Clínica Nova"
    )
    cnpj = only_digits(_custom_field(obj, "cnpj") or metadata.get("cnpj"))

    if cnpj:
        existing = session.execute(select(Clinic).where(Clinic.cnpj == cnpj)).scalar_one_or_none()
        if existing is not None:
            existing.stripe_customer_id = obj.get("customer") or existing.stripe_customer_id
            existing.stripe_subscription_id = obj.get("subscription") or existing.stripe_subscription_id
            existing.status = ClinicStatus.ACTIVE.value
            session.flush()
            logger.info("stripe_checkout_linked", clinic_id=existing.id)
            return "updated"

    if not email or tier is None:
        logger.warning("stripe_checkout_skipped", reason="missing email or unknown plan", plan=tier)
        return "skipped"
    if auth.get_user_by_email(session, email) is not None:
        logger.warning("stripe_checkout_skipped", reason="email already registered")
        return "skipped"
    plan = clinics.get_plan_by_tier(session, tier)
    if plan is None:
        logger.warning("stripe_checkout_skipped", reason="plan not configured", plan=tier)
        return "skipped"

    clinic = clinics.create_clinic(
        session,
        name,
        cnpj or _temporary_cnpj(),
        plan.id,
        email=email,
        phone=details.get("phone"),
        validate_cnpj=False,
    )
    clinic.stripe_customer_id = obj.get("customer")
    clinic.stripe_subscription_id = obj.get("subscription")
    auth.register_user(
        session,
        email,
        generate_secure_password(),
        f"Admin {name}",
        UserRole.CLINIC_ADMIN.value,
        clinic_id=clinic.id,
    )
    subscriptions.register_payment(
        session,
        clinic.id,
        local_today(),
        amount=plan.price,
        due_date=local_today() + timedelta(days=30),
        method=PaymentMethodKind.STRIPE.value,
        status=PaymentStatus.PAID.value,
        transaction_id=obj.get("payment_intent") or obj.get("subscription"),
        notes=f"Stripe checkout session {obj.get('id')}",
    )
    logger.info("stripe_checkout_clinic_created", clinic_id=clinic.id, plan=tier)
    return "created"


def handle_subscription_deleted(session: Session, obj: Dict[str, Any]) -> str:
    clinic = _clinic_by_customer(session, obj.get("customer"))
    if clinic is None:
        return "ignored"
    clinic.status = ClinicStatus.INACTIVE.value
    clinic.stripe_subscription_id = None
    session.flush()
    logger.info("stripe_subscription_cancelled", clinic_id=clinic.id)
    return "deactivated"


def handle_payment_succeeded(session: Session, obj: Dict[str, Any]) -> str:
    if obj.get("billing_reason") == "subscription_create":
        return "ignored"
    clinic = _clinic_by_customer(session, obj.get("customer"))
    if clinic is None:
        return "ignored"
    was_suspended = clinic.status == ClinicStatus.SUSPENDED.value
    subscriptions.register_payment(
        session,
        clinic.id,
        local_today(),
        amount=Decimal(obj.get("amount_paid") or 0) / 100,
        due_date=local_today() + timedelta(days=30),
        method=PaymentMethodKind.STRIPE.value,
        status=PaymentStatus.PAID.value,
        transaction_id=obj.get("id"),
        notes=f"Stripe invoice {obj.get('id')}",
    )
    subscriptions.renew_license(session, clinic)
    logger.info("stripe_payment_succeeded", clinic_id=clinic.id, reactivated=was_suspended)
    return "reactivated" if was_suspended else "renewed"


def handle_payment_failed(session: Session, obj: Dict[str, Any]) -> str:
    clinic = _clinic_by_customer(session, obj.get("customer"))
    if clinic is None:
        return "ignored"
    clinic.status = ClinicStatus.SUSPENDED.value
    due = from_epoch_seconds(obj.get("due_date"))
    subscriptions.register_payment(
        session,
        clinic.id,
        local_today(),
        amount=Decimal(obj.get("amount_due") or 0) / 100,
        due_date=due.date() if due is not None else local_today(),
        method=PaymentMethodKind.STRIPE.value,
        status=PaymentStatus.PENDING.value,
        transaction_id=obj.get("id"),
        notes=f"Stripe payment failed, invoice {obj.get('id')}",
    )
    logger.warning("stripe_payment_failed", clinic_id=clinic.id)
    return "suspended"


HANDLERS: Dict[str, Callable[[Session, Dict[str, Any]], str]] = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_payment_succeeded,
    "invoice.payment_failed": handle_payment_failed,
}


def process_event(session: Session, event: Dict[str, Any]) -> Dict[str, Any]:
    """Dispatch ``event`` once; repeated event ids are reported as duplicates."""

    event_id = event.get("id")
    event_type = event["type"]
    if event_id and session.get(WebhookEvent, event_id) is not None:
        WEBHOOK_EVENTS.labels(event_type=event_type, outcome="duplicate").inc()
        return {"status": "duplicate", "event_id": event_id}

    handler = HANDLERS.get(event_type)
    obj = ((event.get("data") or {}).get("object")) or {}
    outcome = handler(session, obj) if handler is not None else "ignored"
    if event_id:
        session.add(WebhookEvent(id=event_id, event_type=event_type, outcome=outcome))
        session.flush()
    WEBHOOK_EVENTS.labels(event_type=event_type, outcome=outcome).inc()
    logger.info("stripe_event_processed", event_id=event_id, event_type=event_type, outcome=outcome)
    return {"status": "processed", "event_id": event_id, "outcome": outcome}
