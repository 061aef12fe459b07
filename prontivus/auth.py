"""Authentication helpers: passwords, lockout, tokens and tenant membership."""

from __future__ import annotations

import hashlib
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional

import jwt
import structlog
from passlib.context import CryptContext
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from prontivus.config import get_settings
from prontivus.db.models import (
    AuditLogEntry,
    Clinic,
    ClinicStatus,
    PasswordResetToken,
    User,
    UserRole,
    UserTenant,
)
from prontivus.errors import (
    AuthenticationError,
    ConflictError,
    DomainValidationError,
    NotFoundError,
    TenantAccessError,
)
from prontivus.time_utils import ensure_utc, utc_now

logger = structlog.get_logger(__name__)

# Password hashing context using bcrypt
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

LOCKOUT_THRESHOLD = 5
LOCKOUT_DURATION = timedelta(minutes=15)
PASSWORD_RESET_TTL = timedelta(hours=1)

ROLES = {role.value for role in UserRole}


def hash_password(password: str) -> str:
    """Hash a plaintext password using a secure algorithm."""

    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    """Verify a plaintext password against a stored hash."""

    try:
        return pwd_context.verify(password, hashed)
    except ValueError:
        return False


def validate_password_strength(password: str) -> None:
    if len(password) < 8:
        raise DomainValidationError("Password must be at least 8 characters long")
    if not any(ch.isalpha() for ch in password):
        raise DomainValidationError("Password must include a letter")
    if not any(ch.isdigit() for ch in password):
        raise DomainValidationError("Password must include a number")


def _normalise_email(email: str) -> str:
    return (email or "").strip().lower()


def get_user_by_email(session: Session, email: str) -> Optional[User]:
    return session.execute(
        select(User).where(func.lower(User.email) == _normalise_email(email))
    ).scalar_one_or_none()


def register_user(
    session: Session,
    email: str,
    password: str,
    name: str,
    role: str = UserRole.SECRETARY.value,
    *,
    clinic_id: Optional[str] = None,
    cpf: Optional[str] = None,
) -> User:
    """Create a user and, when ``clinic_id`` is given, its clinic membership."""

    if role not in ROLES:
        raise DomainValidationError(f"Unknown role {role!r}")
    normalised = _normalise_email(email)
    if not normalised or "@" not in normalised:
        raise DomainValidationError("A valid e-mail is required")
    if get_user_by_email(session, normalised) is not None:
        raise ConflictError("E-mail already registered", {"email": normalised})

    user = User(
        email=normalised,
        name=name.strip(),
        cpf=cpf,
        password_hash=hash_password(password),
        role=role,
        clinic_id=clinic_id,
    )
    session.add(user)
    session.flush()
    if clinic_id:
        session.add(UserTenant(user_id=user.id, clinic_id=clinic_id, role=role))
        session.flush()
    logger.info("user_registered", user_id=user.id, role=role, clinic_id=clinic_id)
    return user


def authenticate_user(session: Session, email: str, password: str) -> Optional[User]:
    """Validate credentials, applying the failed-attempt lockout.

    Returns the user on success and ``None`` for bad credentials.  A locked
    account raises :class:`AuthenticationError` so callers can tell the user.
    """

    user = get_user_by_email(session, email)
    if user is None:
        return None
    now = utc_now()
    if user.account_locked_until and ensure_utc(user.account_locked_until) > now:
        raise AuthenticationError(
            "Account locked",
            {"locked_until": ensure_utc(user.account_locked_until).isoformat()},
        )
    if not user.active:
        return None

    if verify_password(password, user.password_hash):
        user.failed_login_attempts = 0
        user.account_locked_until = None
        user.last_login = now
        session.flush()
        return user

    user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
    if user.failed_login_attempts >= LOCKOUT_THRESHOLD:
        user.account_locked_until = now + LOCKOUT_DURATION
        logger.warning("account_locked", user_id=user.id, attempts=user.failed_login_attempts)
    session.flush()
    return None


def create_access_token(user: User, clinic_id: Optional[str], role: str) -> str:
    """Create a signed JWT bound to the user's active clinic and role there."""

    settings = get_settings()
    payload = {
        "sub": user.id,
        "email": user.email,
        "name": user.name,
        "role": role,
        "clinic_id": clinic_id,
        "exp": utc_now() + timedelta(minutes=settings.access_token_expire_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as exc:
        raise AuthenticationError("Invalid or expired token") from exc


def _membership(session: Session, user_id: str, clinic_id: str) -> Optional[UserTenant]:
    return session.execute(
        select(UserTenant).where(UserTenant.user_id == user_id, UserTenant.clinic_id == clinic_id)
    ).scalar_one_or_none()


def resolve_login_context(session: Session, user: User) -> tuple[Optional[str], str]:
    """Return the ``(clinic_id, role)`` a fresh login should be bound to."""

    if user.role == UserRole.SUPER_ADMIN.value:
        return None, user.role
    if user.clinic_id:
        membership = _membership(session, user.id, user.clinic_id)
        if membership is not None and membership.active:
            return user.clinic_id, membership.role
    tenants = list_user_tenants(session, user)
    for tenant in tenants:
        if tenant["clinic_status"] == ClinicStatus.ACTIVE.value:
            return tenant["clinic_id"], tenant["role"]
    if tenants:
        return tenants[0]["clinic_id"], tenants[0]["role"]
    return user.clinic_id, user.role


def list_user_tenants(session: Session, user: User) -> List[Dict[str, Any]]:
    rows = session.execute(
        select(UserTenant)
        .where(UserTenant.user_id == user.id, UserTenant.active.is_(True))
        .order_by(UserTenant.created_at)
    ).scalars()
    tenants: List[Dict[str, Any]] = []
    for membership in rows:
        clinic = membership.clinic
        tenants.append(
            {
                "clinic_id": membership.clinic_id,
                "clinic_name": clinic.name if clinic is not None else None,
                "clinic_status": clinic.status if clinic is not None else None,
                "role": membership.role,
                "current": membership.clinic_id == user.clinic_id,
            }
        )
    return tenants


def switch_tenant(session: Session, user: User, clinic_id: str) -> Dict[str, Any]:
    """Move ``user`` to ``clinic_id`` and return a token bound to it."""

    membership = _membership(session, user.id, clinic_id)
    if membership is None or not membership.active:
        raise TenantAccessError("You do not have access to this clinic")
    clinic = session.get(Clinic, clinic_id)
    if clinic is None or clinic.status != ClinicStatus.ACTIVE.value:
        raise TenantAccessError("Clinic is not active", {"clinic_id": clinic_id})
    user.clinic_id = clinic_id
    session.flush()
    logger.info("tenant_switched", user_id=user.id, clinic_id=clinic_id)
    return {
        "access_token": create_access_token(user, clinic_id, membership.role),
        "token_type": "bearer",
        "clinic_id": clinic_id,
        "role": membership.role,
    }


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_password_reset_token(session: Session, email: str) -> Optional[str]:
    """Store a one-hour reset token and return it; unknown e-mails return ``None``."""

    user = get_user_by_email(session, email)
    if user is None or not user.active:
        return None
    token = secrets.token_urlsafe(32)
    session.add(
        PasswordResetToken(
            user_id=user.id,
            token_hash=_hash_token(token),
            expires_at=utc_now() + PASSWORD_RESET_TTL,
        )
    )
    session.flush()
    logger.info("password_reset_requested", user_id=user.id)
    return token


def reset_password(session: Session, token: str, new_password: str) -> User:
    validate_password_strength(new_password)
    record = session.execute(
        select(PasswordResetToken).where(PasswordResetToken.token_hash == _hash_token(token))
    ).scalar_one_or_none()
    if record is None or record.used or ensure_utc(record.expires_at) < utc_now():
        raise DomainValidationError("Invalid or expired reset token")
    user = session.get(User, record.user_id)
    if user is None:
        raise NotFoundError("User not found")
    user.password_hash = hash_password(new_password)
    user.failed_login_attempts = 0
    user.account_locked_until = None
    record.used = True
    session.flush()
    logger.info("password_reset_completed", user_id=user.id)
    return user


def change_password(session: Session, user: User, current_password: str, new_password: str) -> None:
    if not verify_password(current_password, user.password_hash):
        raise AuthenticationError("Current password is incorrect")
    validate_password_strength(new_password)
    user.password_hash = hash_password(new_password)
    session.flush()


def record_audit(
    session: Session,
    user_id: Optional[str],
    clinic_id: Optional[str],
    action: str,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    session.add(AuditLogEntry(user_id=user_id, clinic_id=clinic_id, action=action, details=details or {}))
