"""
HTTP API for the Prontivus clinic management service.

Routes are thin: they validate the request body with pydantic, resolve the
caller and its active clinic, delegate to a service module and wrap the
result in the standard ``{"success": true, "data": ...}`` envelope.  Every
error, whether raised by FastAPI or by a service, is rendered as
``{"success": false, "error": {...}}``.
"""

from __future__ import annotations

import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

import structlog
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from prontivus import (
    auth,
    clinical,
    clinics,
    consultation,
    documents,
    finance,
    inventory,
    patients,
    scheduling,
    stripe_webhooks,
    subscriptions,
    tenancy,
    tuss,
)
from prontivus.config import APP_NAME, get_settings
from prontivus.db import get_session, init_schema
from prontivus.db.models import ClinicStatus, Doctor, User, UserRole
from prontivus.errors import (
    AuthenticationError,
    DomainValidationError,
    PermissionDeniedError,
    ProntivusError,
    TenantAccessError,
)
from prontivus.observability import HTTP_REQUESTS, configure_logging
from prontivus.time_utils import to_local_naive

load_dotenv()
configure_logging()

logger = structlog.get_logger(__name__)

SUPER_ADMIN = UserRole.SUPER_ADMIN.value
CLINIC_ADMIN = UserRole.CLINIC_ADMIN.value
DOCTOR = UserRole.DOCTOR.value
SECRETARY = UserRole.SECRETARY.value
PATIENT = UserRole.PATIENT.value

STAFF = (CLINIC_ADMIN, SECRETARY)
CLINIC_USERS = (CLINIC_ADMIN, SECRETARY, DOCTOR)

START_TIME = time.time()


# ---------------------------------------------------------------------------
# Response envelopes
# ---------------------------------------------------------------------------


class SuccessResponse(BaseModel):
    """Standard successful response envelope."""

    success: Literal[True] = True
    data: Any | None = None


class ErrorDetail(BaseModel):
    """Details describing an error response payload."""

    code: int | str | None = None
    message: str
    details: Any | None = None

    model_config = {"extra": "allow"}


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    success: Literal[False] = False
    error: ErrorDetail


def _success_payload(data: Any) -> Dict[str, Any]:
    return SuccessResponse(data=data).model_dump()


def _build_error_response(payload: Any, status_code: int | None = None) -> ErrorResponse:
    """Normalize ``payload`` into the standard :class:`ErrorResponse` structure."""

    code: int | str | None = status_code
    message = "An error occurred"
    details: Any | None = None

    if isinstance(payload, dict):
        if payload.get("code") not in (None, ""):
            code = payload["code"]
        details = payload.get("details")
        for key in ("message", "detail", "error"):
            if payload.get(key) not in (None, ""):
                message = str(payload[key])
                break
    elif payload not in (None, ""):
        message = str(payload)

    return ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))


def _dump(items) -> List[Dict[str, Any]]:
    return [item.to_dict() for item in items]


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised indirectly in integration
    logger.info("lifespan_startup", environment=get_settings().environment)
    if os.getenv("PRONTIVUS_AUTO_CREATE_SCHEMA", "").lower() in {"1", "true", "yes"}:
        init_schema()
    try:
        yield
    finally:
        logger.info("lifespan_shutdown_complete", uptime=round(time.time() - START_TIME, 2))


app = FastAPI(title=f"{APP_NAME} API", lifespan=lifespan)


@app.middleware("http")
async def track_http_metrics(request: Request, call_next):
    """Count every request by method and response status."""

    try:
        response = await call_next(request)
    except Exception:
        HTTP_REQUESTS.labels(request.method, "500").inc()
        logger.exception("request_failed", path=request.url.path, method=request.method)
        raise
    HTTP_REQUESTS.labels(request.method, str(response.status_code)).inc()
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Convert ``HTTPException`` instances into the standard error envelope."""

    error_payload = _build_error_response(exc.detail, status_code=exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload.model_dump(),
        headers=dict(exc.headers or {}),
    )


@app.exception_handler(ProntivusError)
async def domain_exception_handler(request: Request, exc: ProntivusError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("service_error", path=request.url.path, code=exc.code, error=exc.message)
    else:
        logger.info("request_rejected", path=request.url.path, code=exc.code, error=exc.message)
    error_payload = _build_error_response(exc.to_payload(), status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=error_payload.model_dump())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    error_payload = ErrorResponse(
        error=ErrorDetail(code="validation_error", message="Invalid request", details=details)
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_payload.model_dump(),
    )


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------


security = HTTPBearer()


@dataclass
class Principal:
    """The authenticated caller and the clinic/role bound to its token."""

    user: User
    role: str
    clinic_id: Optional[str]

    @property
    def is_super_admin(self) -> bool:
        return self.role == SUPER_ADMIN


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    session: Session = Depends(get_session),
) -> Principal:
    """Decode the bearer token and load the active user it names."""

    try:
        data = auth.decode_access_token(credentials.credentials)
    except AuthenticationError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    user = session.get(User, data["sub"]) if data.get("sub") else None
    if user is None or not user.active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return Principal(user=user, role=data.get("role") or user.role, clinic_id=data.get("clinic_id"))


def require_roles(*roles: str):
    """Dependency factory ensuring the current user is in an allowed role.

    Super admins pass every gate.
    """

    allowed = {SUPER_ADMIN, *roles}

    def checker(principal: Principal = Depends(get_current_user)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient privileges",
            )
        return principal

    return checker


def tenant_id(
    principal: Principal = Depends(get_current_user),
    clinic_id: Optional[str] = Query(None),
) -> str:
    """Resolve the clinic a request operates on.

    Super admins must name the clinic explicitly; everybody else is bound to
    the clinic in their token and may not name another one.
    """

    if principal.is_super_admin:
        if not clinic_id:
            raise DomainValidationError("clinic_id is required for super admin requests")
        return clinic_id
    if not principal.clinic_id:
        raise TenantAccessError("No active clinic for this request")
    tenancy.assert_payload_tenant(clinic_id, principal.clinic_id)
    return principal.clinic_id


def current_doctor(
    principal: Principal = Depends(require_roles(DOCTOR)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
) -> Doctor:
    doctor = clinics.doctor_for_user(session, clinic_id, principal.user.id)
    if doctor is None or not doctor.active:
        raise PermissionDeniedError("Only doctors registered in this clinic can do this")
    return doctor


def _own_doctor_id(session: Session, principal: Principal, clinic_id: str, doctor_id: Optional[str]) -> Optional[str]:
    """Doctors only act on their own agenda; staff may name any doctor."""

    if principal.role != DOCTOR:
        return doctor_id
    doctor = clinics.doctor_for_user(session, clinic_id, principal.user.id)
    if doctor is None:
        raise PermissionDeniedError("Only doctors registered in this clinic can do this")
    if doctor_id and doctor_id != doctor.id:
        raise PermissionDeniedError("Doctors can only manage their own schedule")
    return doctor.id


def _portal_patients(session: Session, principal: Principal, clinic_id: str):
    linked = [p for p in patients.patients_for_user(session, principal.user.id) if p.clinic_id == clinic_id]
    if not linked:
        raise PermissionDeniedError("No patient record is linked to this account")
    return linked


def _pdf_response(document: documents.Document) -> Response:
    filename, content = document
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginModel(BaseModel):
    email: str
    password: str


class SwitchTenantModel(BaseModel):
    clinic_id: str


class ForgotPasswordModel(BaseModel):
    email: str


class ResetPasswordModel(BaseModel):
    token: str
    new_password: str


class ChangePasswordModel(BaseModel):
    current_password: str
    new_password: str


class PlanCreate(BaseModel):
    tier: str
    name: str
    price: Decimal = Field(..., ge=0)
    monthly_tokens: int = Field(..., ge=0)
    max_doctors: Optional[int] = Field(None, ge=1)
    telemedicine_enabled: bool = False


class ClinicCreate(BaseModel):
    name: str
    cnpj: str
    plan_id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    admin_name: Optional[str] = None
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None


class ClinicStatusModel(BaseModel):
    status: str


class PlanChangeModel(BaseModel):
    plan_id: str


class PaymentCreate(BaseModel):
    clinic_id: str
    reference_month: date
    amount: Optional[Decimal] = Field(None, ge=0)
    due_date: Optional[date] = None
    method: str = "boleto"
    notes: Optional[str] = None


class PaymentConfirm(BaseModel):
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None


class BillingRunModel(BaseModel):
    today: Optional[date] = None
    grace_days: Optional[int] = Field(None, ge=0)


class DoctorCreate(BaseModel):
    name: str
    email: Optional[str] = None
    password: str
    crm: str
    specialty: Optional[str] = None
    max_returns_per_day: Optional[int] = Field(None, ge=0)


class DoctorUpdate(BaseModel):
    crm: Optional[str] = None
    specialty: Optional[str] = None
    max_returns_per_day: Optional[int] = Field(None, ge=0)
    active: Optional[bool] = None


class StaffCreate(BaseModel):
    name: str
    email: str
    password: str
    role: str = SECRETARY


class OperatorCreate(BaseModel):
    name: str
    ans_code: Optional[str] = None


class HealthPlanCreate(BaseModel):
    operator_id: str
    name: str


class PaymentMethodCreate(BaseModel):
    name: str


class TussCodeCreate(BaseModel):
    code: str
    description: str
    procedure_type: Optional[str] = "CONSULTA"
    valid_from: Optional[date] = None
    valid_until: Optional[date] = None
    active: bool = True


class TussValueCreate(BaseModel):
    tuss_code_id: str
    amount: Decimal = Field(..., ge=0)
    operator_id: Optional[str] = None
    health_plan_id: Optional[str] = None
    consultation_type_id: Optional[str] = None
    valid_from: Optional[date] = None
    valid_until: Optional[date] = None


class TussRuleCreate(BaseModel):
    tuss_code_id: str
    operator_id: str
    health_plan_id: Optional[str] = None
    accepted: bool = True
    notes: Optional[str] = None


class PatientModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    cpf: Optional[str] = None
    birth_date: Optional[date] = None
    sex: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    mobile: Optional[str] = None
    zip_code: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    active: Optional[bool] = None
    clinic_id: Optional[str] = None


class PortalAccessModel(BaseModel):
    email: str
    password: str


class AppointmentCreate(BaseModel):
    patient_id: str
    doctor_id: str
    starts_at: datetime
    duration_minutes: Optional[int] = Field(None, gt=0, le=scheduling.MAX_APPOINTMENT_MINUTES)
    tuss_code_id: Optional[str] = None
    consultation_type_id: Optional[str] = None
    operator_id: Optional[str] = None
    health_plan_id: Optional[str] = None
    insurance_card_number: Optional[str] = None
    amount: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None
    clinic_id: Optional[str] = None


class AppointmentUpdate(BaseModel):
    patient_id: Optional[str] = None
    doctor_id: Optional[str] = None
    starts_at: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(None, gt=0, le=scheduling.MAX_APPOINTMENT_MINUTES)
    tuss_code_id: Optional[str] = None
    consultation_type_id: Optional[str] = None
    operator_id: Optional[str] = None
    health_plan_id: Optional[str] = None
    insurance_card_number: Optional[str] = None
    amount: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None
    status: Optional[str] = None


class StatusModel(BaseModel):
    status: str


class BlockCreate(BaseModel):
    doctor_id: Optional[str] = None
    starts_at: datetime
    ends_at: datetime
    reason: Optional[str] = None


class WaitlistCreate(BaseModel):
    doctor_id: str
    patient_id: str
    priority: int = 0
    notes: Optional[str] = None


class WaitlistCall(BaseModel):
    starts_at: datetime
    duration_minutes: Optional[int] = Field(None, gt=0, le=scheduling.MAX_APPOINTMENT_MINUTES)
    tuss_code_id: Optional[str] = None
    consultation_type_id: Optional[str] = None
    operator_id: Optional[str] = None
    health_plan_id: Optional[str] = None
    insurance_card_number: Optional[str] = None
    amount: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None


class PayableCreate(BaseModel):
    description: str
    amount: Decimal = Field(..., ge=0)
    due_date: date
    supplier: Optional[str] = None
    payment_method_id: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None


class PayableUpdate(BaseModel):
    description: Optional[str] = None
    supplier: Optional[str] = None
    amount: Optional[Decimal] = Field(None, ge=0)
    due_date: Optional[date] = None
    payment_method_id: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None


class ReceivableCreate(BaseModel):
    description: str
    amount: Decimal = Field(..., ge=0)
    due_date: date
    patient_id: Optional[str] = None
    appointment_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None


class ReceivableUpdate(BaseModel):
    description: Optional[str] = None
    amount: Optional[Decimal] = Field(None, ge=0)
    due_date: Optional[date] = None
    patient_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None


class SettleModel(BaseModel):
    on: Optional[date] = None
    payment_method_id: Optional[str] = None


class CashEntryCreate(BaseModel):
    kind: str
    description: str
    amount: Decimal = Field(..., ge=0)
    occurred_on: Optional[date] = None
    payment_method_id: Optional[str] = None
    notes: Optional[str] = None


class CashClosingCreate(BaseModel):
    day: Optional[date] = None
    notes: Optional[str] = None


class CashCloseModel(BaseModel):
    signature: Optional[str] = None


class MedicationCreate(BaseModel):
    name: str
    active_ingredient: Optional[str] = None
    manufacturer: Optional[str] = None
    presentation: Optional[str] = None
    concentration: Optional[str] = None
    unit: Optional[str] = None


class MedicationUpdate(BaseModel):
    name: Optional[str] = None
    active_ingredient: Optional[str] = None
    manufacturer: Optional[str] = None
    presentation: Optional[str] = None
    concentration: Optional[str] = None
    unit: Optional[str] = None
    active: Optional[bool] = None


class StockItemCreate(BaseModel):
    medication_id: str
    quantity: int = Field(0, ge=0)
    minimum_quantity: int = Field(0, ge=0)
    maximum_quantity: Optional[int] = Field(None, ge=0)
    unit: str = "UN"
    location: Optional[str] = None


class StockItemUpdate(BaseModel):
    minimum_quantity: Optional[int] = Field(None, ge=0)
    maximum_quantity: Optional[int] = Field(None, ge=0)
    unit: Optional[str] = None
    location: Optional[str] = None


class StockMovementCreate(BaseModel):
    stock_item_id: str
    kind: str
    quantity: int = Field(..., ge=0)
    reason: Optional[str] = None
    notes: Optional[str] = None


class ProcedureMedicationModel(BaseModel):
    medication_id: str
    quantity: int = Field(1, ge=0)
    notes: Optional[str] = None


class ProcedureCreate(BaseModel):
    code: str
    name: str
    price: Decimal = Field(..., ge=0)
    description: Optional[str] = None
    medications: List[ProcedureMedicationModel] = Field(default_factory=list)


class ProcedureUpdate(BaseModel):
    code: Optional[str] = None
    name: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)
    description: Optional[str] = None
    active: Optional[bool] = None
    medications: Optional[List[ProcedureMedicationModel]] = None


class ProcedureExecute(BaseModel):
    patient_id: str
    payment_method_id: str
    amount_paid: Decimal = Field(..., gt=0)
    notes: Optional[str] = None


class MedicalRecordModel(BaseModel):
    anamnesis: Optional[str] = None
    physical_exam: Optional[str] = None
    diagnosis: Optional[str] = None
    conduct: Optional[str] = None
    evolution: Optional[str] = None


class PrescriptionItem(BaseModel):
    medication: str
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    instructions: Optional[str] = None


class PrescriptionCreate(BaseModel):
    patient_id: str
    appointment_id: Optional[str] = None
    items: List[PrescriptionItem]
    notes: Optional[str] = None


class ExamRequestCreate(BaseModel):
    patient_id: str
    appointment_id: Optional[str] = None
    exam_name: str
    exam_type: Optional[str] = None
    justification: Optional[str] = None


class ExamResultModel(BaseModel):
    result_notes: Optional[str] = None


class ConsultationStart(BaseModel):
    appointment_id: str


class TranscriptModel(BaseModel):
    text: str
    speaker: Optional[str] = None


class AnalyzeModel(BaseModel):
    extra_context: Optional[str] = None


class AnamnesisModel(BaseModel):
    text: str


class StepModel(BaseModel):
    step: str


class SelectionModel(BaseModel):
    cid_codes: List[str] = Field(default_factory=list)
    exam_indexes: List[int] = Field(default_factory=list)
    prescription_indexes: List[int] = Field(default_factory=list)


class CertificateModel(BaseModel):
    patient_id: str
    days: int
    cid_code: Optional[str] = None
    issued_on: Optional[date] = None


class ExamGuideModel(BaseModel):
    exam_request_ids: List[str]


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"])
async def health():
    """Lightweight health check reporting uptime."""

    return {
        "status": "ok",
        "uptime": round(time.time() - START_TIME, 2),
        "environment": get_settings().environment,
    }


@app.get("/metrics", tags=["system"])
async def metrics(principal: Principal = Depends(require_roles())):
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


@app.post("/api/auth/login", tags=["auth"])
async def login(model: LoginModel, session: Session = Depends(get_session)) -> Dict[str, Any]:
    """Validate credentials and return a JWT bound to the user's clinic."""

    user = auth.authenticate_user(session, model.email, model.password)
    if user is None:
        auth.record_audit(session, None, None, "failed_login", {"email": model.email.strip().lower()})
        # Failed attempts must survive the error response.
        session.commit()
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Invalid credentials", "code": "invalid_credentials"},
        )
    clinic_id, role = auth.resolve_login_context(session, user)
    if clinic_id and role != SUPER_ADMIN:
        clinic = clinics.get_clinic(session, clinic_id)
        if clinic.status != ClinicStatus.ACTIVE.value:
            raise TenantAccessError("Clinic license is not active", {"status": clinic.status})
    auth.record_audit(session, user.id, clinic_id, "login")
    logger.info("user_logged_in", user_id=user.id, clinic_id=clinic_id, role=role)
    return _success_payload(
        {
            "access_token": auth.create_access_token(user, clinic_id, role),
            "token_type": "bearer",
            "role": role,
            "clinic_id": clinic_id,
            "user": user.to_dict(),
            "tenants": auth.list_user_tenants(session, user),
        }
    )


@app.get("/api/auth/me", tags=["auth"])
async def me(principal: Principal = Depends(get_current_user), session: Session = Depends(get_session)):
    data = principal.user.to_dict()
    data["role"] = principal.role
    data["clinic_id"] = principal.clinic_id
    data["clinic"] = clinics.get_clinic(session, principal.clinic_id).to_dict() if principal.clinic_id else None
    return _success_payload(data)


@app.get("/api/auth/tenants", tags=["auth"])
async def tenants(principal: Principal = Depends(get_current_user), session: Session = Depends(get_session)):
    return _success_payload(auth.list_user_tenants(session, principal.user))


@app.post("/api/auth/switch-tenant", tags=["auth"])
async def switch_tenant(
    model: SwitchTenantModel,
    principal: Principal = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    result = auth.switch_tenant(session, principal.user, model.clinic_id)
    auth.record_audit(session, principal.user.id, model.clinic_id, "switch_tenant")
    return _success_payload(result)


@app.post("/api/auth/forgot-password", tags=["auth"])
async def forgot_password(model: ForgotPasswordModel, session: Session = Depends(get_session)):
    token = auth.create_password_reset_token(session, model.email)
    response: Dict[str, Any] = {"message": "If an account exists, reset instructions have been sent"}
    if token and get_settings().is_development:
        response["debug_token"] = token
    return _success_payload(response)


@app.post("/api/auth/reset-password", tags=["auth"])
async def reset_password(model: ResetPasswordModel, session: Session = Depends(get_session)):
    user = auth.reset_password(session, model.token, model.new_password)
    auth.record_audit(session, user.id, user.clinic_id, "password_reset")
    return _success_payload({"message": "Password updated"})


@app.post("/api/auth/change-password", tags=["auth"])
async def change_password(
    model: ChangePasswordModel,
    principal: Principal = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    auth.change_password(session, principal.user, model.current_password, model.new_password)
    auth.record_audit(session, principal.user.id, principal.clinic_id, "password_changed")
    return _success_payload({"message": "Password updated"})


# ---------------------------------------------------------------------------
# Super admin
# ---------------------------------------------------------------------------


@app.get("/api/admin/plans", tags=["admin"])
async def admin_list_plans(
    principal: Principal = Depends(require_roles()), session: Session = Depends(get_session)
):
    return _success_payload(_dump(clinics.list_plans(session)))


@app.post("/api/admin/plans", tags=["admin"], status_code=201)
async def admin_create_plan(
    model: PlanCreate, principal: Principal = Depends(require_roles()), session: Session = Depends(get_session)
):
    plan = clinics.create_plan(session, **model.model_dump())
    return _success_payload(plan.to_dict())


@app.get("/api/admin/clinics", tags=["admin"])
async def admin_list_clinics(
    status_filter: Optional[str] = Query(None, alias="status"),
    search: Optional[str] = None,
    principal: Principal = Depends(require_roles()),
    session: Session = Depends(get_session),
):
    items = []
    for clinic in clinics.list_clinics(session, status=status_filter, search=search):
        data = clinic.to_dict()
        data["paid_up"] = subscriptions.is_paid_up(clinic)
        items.append(data)
    return _success_payload(items)


@app.post("/api/admin/clinics", tags=["admin"], status_code=201)
async def admin_create_clinic(
    model: ClinicCreate, principal: Principal = Depends(require_roles()), session: Session = Depends(get_session)
):
    clinic = clinics.create_clinic(
        session, model.name, model.cnpj, model.plan_id, email=model.email, phone=model.phone
    )
    data = clinic.to_dict()
    if model.admin_email:
        if not model.admin_password:
            raise DomainValidationError("admin_password is required with admin_email")
        admin = clinics.create_staff_user(
            session,
            clinic.id,
            model.admin_name or f"Admin {clinic.name}",
            model.admin_email,
            model.admin_password,
            CLINIC_ADMIN,
        )
        data["admin_user"] = admin.to_dict()
    auth.record_audit(session, principal.user.id, clinic.id, "clinic_created")
    return _success_payload(data)


@app.patch("/api/admin/clinics/{clinic_id}/status", tags=["admin"])
async def admin_set_clinic_status(
    clinic_id: str,
    model: ClinicStatusModel,
    principal: Principal = Depends(require_roles()),
    session: Session = Depends(get_session),
):
    clinic = clinics.set_clinic_status(session, clinic_id, model.status)
    auth.record_audit(session, principal.user.id, clinic_id, "clinic_status_changed", {"status": model.status})
    return _success_payload(clinic.to_dict())


@app.post("/api/admin/clinics/{clinic_id}/plan", tags=["admin"])
async def admin_change_plan(
    clinic_id: str,
    model: PlanChangeModel,
    principal: Principal = Depends(require_roles()),
    session: Session = Depends(get_session),
):
    clinic = subscriptions.change_plan(session, clinic_id, model.plan_id)
    return _success_payload(clinic.to_dict())


@app.get("/api/admin/subscriptions", tags=["admin"])
async def admin_list_payments(
    clinic_filter: Optional[str] = Query(None, alias="clinic"),
    status_filter: Optional[str] = Query(None, alias="status"),
    principal: Principal = Depends(require_roles()),
    session: Session = Depends(get_session),
):
    payments = subscriptions.list_payments(session, clinic_id=clinic_filter, status=status_filter)
    return _success_payload(_dump(payments))


@app.post("/api/admin/subscriptions", tags=["admin"], status_code=201)
async def admin_register_payment(
    model: PaymentCreate, principal: Principal = Depends(require_roles()), session: Session = Depends(get_session)
):
    payment = subscriptions.register_payment(
        session,
        model.clinic_id,
        model.reference_month,
        amount=model.amount,
        due_date=model.due_date,
        method=model.method,
        notes=model.notes,
    )
    return _success_payload(payment.to_dict())


@app.post("/api/admin/subscriptions/{payment_id}/confirm", tags=["admin"])
async def admin_confirm_payment(
    payment_id: str,
    model: PaymentConfirm,
    principal: Principal = Depends(require_roles()),
    session: Session = Depends(get_session),
):
    payment = subscriptions.confirm_payment(
        session, payment_id, transaction_id=model.transaction_id, paid_at=model.paid_at
    )
    return _success_payload(payment.to_dict())


@app.post("/api/admin/subscriptions/{payment_id}/cancel", tags=["admin"])
async def admin_cancel_payment(
    payment_id: str, principal: Principal = Depends(require_roles()), session: Session = Depends(get_session)
):
    return _success_payload(subscriptions.cancel_payment(session, payment_id).to_dict())


@app.post("/api/admin/billing/run", tags=["admin"])
async def admin_billing_run(
    model: BillingRunModel, principal: Principal = Depends(require_roles()), session: Session = Depends(get_session)
):
    created = subscriptions.generate_monthly_payments(session, model.today)
    suspended = subscriptions.suspend_overdue_clinics(session, model.today, model.grace_days)
    return _success_payload({"created": _dump(created), "suspended": suspended})


# ---------------------------------------------------------------------------
# Clinic administration and catalogues
# ---------------------------------------------------------------------------


@app.get("/api/clinic", tags=["clinic"])
async def get_clinic(
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    clinic = clinics.get_clinic(session, clinic_id)
    data = clinic.to_dict()
    data["paid_up"] = subscriptions.is_paid_up(clinic)
    return _success_payload(data)


@app.post("/api/clinic/plan", tags=["clinic"])
async def change_clinic_plan(
    model: PlanChangeModel,
    principal: Principal = Depends(require_roles(CLINIC_ADMIN)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    clinic = subscriptions.change_plan(session, clinic_id, model.plan_id)
    auth.record_audit(session, principal.user.id, clinic_id, "plan_changed", {"plan_id": model.plan_id})
    return _success_payload(clinic.to_dict())


@app.get("/api/clinic/subscriptions", tags=["clinic"])
async def clinic_payments(
    principal: Principal = Depends(require_roles(CLINIC_ADMIN)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(_dump(subscriptions.list_payments(session, clinic_id=clinic_id)))


@app.get("/api/clinic/doctors", tags=["clinic"])
async def list_doctors(
    include_inactive: bool = False,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    doctors = clinics.list_doctors(session, clinic_id, active_only=not include_inactive)
    return _success_payload(_dump(doctors))


@app.post("/api/clinic/doctors", tags=["clinic"], status_code=201)
async def create_doctor(
    model: DoctorCreate,
    principal: Principal = Depends(require_roles(CLINIC_ADMIN)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    doctor = clinics.create_doctor(
        session,
        clinic_id,
        model.name,
        model.email,
        model.password,
        model.crm,
        specialty=model.specialty,
        max_returns_per_day=model.max_returns_per_day,
    )
    return _success_payload(doctor.to_dict())


@app.patch("/api/clinic/doctors/{doctor_id}", tags=["clinic"])
async def update_doctor(
    doctor_id: str,
    model: DoctorUpdate,
    principal: Principal = Depends(require_roles(CLINIC_ADMIN)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    doctor = clinics.update_doctor(session, clinic_id, doctor_id, model.model_dump(exclude_unset=True))
    return _success_payload(doctor.to_dict())


@app.get("/api/clinic/staff", tags=["clinic"])
async def list_staff(
    principal: Principal = Depends(require_roles(CLINIC_ADMIN)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(clinics.list_staff(session, clinic_id))


@app.post("/api/clinic/staff", tags=["clinic"], status_code=201)
async def create_staff(
    model: StaffCreate,
    principal: Principal = Depends(require_roles(CLINIC_ADMIN)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    user = clinics.create_staff_user(session, clinic_id, model.name, model.email, model.password, model.role)
    return _success_payload(user.to_dict())


@app.get("/api/clinic/operators", tags=["clinic"])
async def list_operators(
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(_dump(clinics.list_operators(session, clinic_id)))


@app.post("/api/clinic/operators", tags=["clinic"], status_code=201)
async def create_operator(
    model: OperatorCreate,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    operator = clinics.create_operator(session, clinic_id, model.name, model.ans_code)
    return _success_payload(operator.to_dict())


@app.get("/api/clinic/health-plans", tags=["clinic"])
async def list_health_plans(
    operator_id: Optional[str] = None,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(_dump(clinics.list_health_plans(session, clinic_id, operator_id)))


@app.post("/api/clinic/health-plans", tags=["clinic"], status_code=201)
async def create_health_plan(
    model: HealthPlanCreate,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    plan = clinics.create_health_plan(session, clinic_id, model.operator_id, model.name)
    return _success_payload(plan.to_dict())


@app.get("/api/clinic/payment-methods", tags=["clinic"])
async def list_payment_methods(
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(_dump(clinics.list_payment_methods(session, clinic_id)))


@app.post("/api/clinic/payment-methods", tags=["clinic"], status_code=201)
async def create_payment_method(
    model: PaymentMethodCreate,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(clinics.create_payment_method(session, clinic_id, model.name).to_dict())


@app.get("/api/consultation-types", tags=["clinic"])
async def list_consultation_types(
    principal: Principal = Depends(get_current_user), session: Session = Depends(get_session)
):
    return _success_payload(_dump(clinics.list_consultation_types(session)))


# ---------------------------------------------------------------------------
# TUSS catalogue
# ---------------------------------------------------------------------------


@app.get("/api/tuss", tags=["tuss"])
async def list_tuss_codes(
    search: Optional[str] = None,
    procedure_type: Optional[str] = None,
    valid_on: Optional[date] = None,
    active: Optional[bool] = None,
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    codes = tuss.list_tuss_codes(
        session, search=search, procedure_type=procedure_type, valid_on=valid_on, active=active, limit=limit
    )
    return _success_payload(_dump(codes))


@app.post("/api/tuss", tags=["tuss"], status_code=201)
async def create_tuss_code(
    model: TussCodeCreate, principal: Principal = Depends(require_roles()), session: Session = Depends(get_session)
):
    code = tuss.create_tuss_code(
        session,
        model.code,
        model.description,
        procedure_type=model.procedure_type,
        valid_from=model.valid_from,
        valid_until=model.valid_until,
        active=model.active,
    )
    return _success_payload(code.to_dict())


@app.get("/api/tuss/{tuss_code_id}/validation", tags=["tuss"])
async def validate_tuss_code(
    tuss_code_id: str,
    operator_id: Optional[str] = None,
    health_plan_id: Optional[str] = None,
    at: Optional[date] = None,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    validity = tuss.validate_tuss_code(session, tuss_code_id, at)
    acceptance = tuss.is_accepted_by_operator(session, tuss_code_id, operator_id, health_plan_id)
    return _success_payload({**validity, "accepted": acceptance["accepted"], "acceptance_reason": acceptance["reason"]})


@app.get("/api/tuss/{tuss_code_id}/value", tags=["tuss"])
async def resolve_tuss_value(
    tuss_code_id: str,
    operator_id: Optional[str] = None,
    health_plan_id: Optional[str] = None,
    consultation_type_id: Optional[str] = None,
    at: Optional[date] = None,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    resolved = tuss.resolve_value(
        session,
        clinic_id,
        tuss_code_id,
        operator_id=operator_id,
        health_plan_id=health_plan_id,
        consultation_type_id=consultation_type_id,
        at=at,
    )
    amount = resolved["amount"]
    return _success_payload({**resolved, "amount": float(amount) if amount is not None else None})


@app.get("/api/clinic/tuss-values", tags=["tuss"])
async def list_tuss_values(
    tuss_code_id: Optional[str] = None,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(_dump(tuss.list_tuss_values(session, clinic_id, tuss_code_id)))


@app.post("/api/clinic/tuss-values", tags=["tuss"], status_code=201)
async def create_tuss_value(
    model: TussValueCreate,
    principal: Principal = Depends(require_roles(CLINIC_ADMIN)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    data = model.model_dump()
    tuss_code_id = data.pop("tuss_code_id")
    amount = data.pop("amount")
    value = tuss.create_tuss_value(session, clinic_id, tuss_code_id, amount, **data)
    return _success_payload(value.to_dict())


@app.post("/api/clinic/tuss-rules", tags=["tuss"], status_code=201)
async def create_tuss_rule(
    model: TussRuleCreate,
    principal: Principal = Depends(require_roles(CLINIC_ADMIN)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    rule = tuss.create_operator_rule(
        session,
        clinic_id,
        model.tuss_code_id,
        model.operator_id,
        health_plan_id=model.health_plan_id,
        accepted=model.accepted,
        notes=model.notes,
    )
    return _success_payload(rule.to_dict())


# ---------------------------------------------------------------------------
# Patients
# ---------------------------------------------------------------------------


@app.get("/api/patients", tags=["patients"])
async def list_patients(
    search: Optional[str] = None,
    active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(
        patients.list_patients(session, clinic_id, search=search, active=active, page=page, limit=limit)
    )


@app.post("/api/patients", tags=["patients"], status_code=201)
async def create_patient(
    model: PatientModel,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    data = model.model_dump(exclude_unset=True)
    tenancy.assert_payload_tenant(data.pop("clinic_id", None), clinic_id)
    return _success_payload(patients.create_patient(session, clinic_id, data).to_dict())


@app.get("/api/patients/{patient_id}", tags=["patients"])
async def get_patient(
    patient_id: str,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(patients.get_patient(session, clinic_id, patient_id).to_dict())


@app.put("/api/patients/{patient_id}", tags=["patients"])
async def update_patient(
    patient_id: str,
    model: PatientModel,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    data = model.model_dump(exclude_unset=True)
    tenancy.assert_payload_tenant(data.pop("clinic_id", None), clinic_id)
    return _success_payload(patients.update_patient(session, clinic_id, patient_id, data).to_dict())


@app.delete("/api/patients/{patient_id}", tags=["patients"])
async def delete_patient(
    patient_id: str,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(patients.delete_patient(session, clinic_id, patient_id))


@app.get("/api/patients/{patient_id}/record", tags=["patients"])
async def patient_complete_record(
    patient_id: str,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(patients.complete_record(session, clinic_id, patient_id))


@app.get("/api/patients/{patient_id}/history", tags=["patients"])
async def patient_history(
    patient_id: str,
    principal: Principal = Depends(require_roles(DOCTOR)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(clinical.patient_history(session, clinic_id, patient_id))


@app.post("/api/patients/{patient_id}/portal-access", tags=["patients"], status_code=201)
async def grant_portal_access(
    patient_id: str,
    model: PortalAccessModel,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(
        patients.grant_portal_access(session, clinic_id, patient_id, model.email, model.password)
    )


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------


@app.get("/api/appointments", tags=["appointments"])
async def list_appointments(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    doctor_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    doctor_id = _own_doctor_id(session, principal, clinic_id, doctor_id)
    appointments = scheduling.list_appointments(
        session,
        clinic_id,
        date_from=to_local_naive(date_from) if date_from else None,
        date_to=to_local_naive(date_to) if date_to else None,
        doctor_id=doctor_id,
        patient_id=patient_id,
        status=status_filter,
    )
    return _success_payload(_dump(appointments))


@app.post("/api/appointments", tags=["appointments"], status_code=201)
async def create_appointment(
    model: AppointmentCreate,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    data = model.model_dump()
    tenancy.assert_payload_tenant(data.pop("clinic_id"), clinic_id)
    data["starts_at"] = to_local_naive(data["starts_at"])
    appointment = scheduling.create_appointment(session, clinic_id, **data)
    return _success_payload(appointment.to_dict())


@app.get("/api/appointments/{appointment_id}", tags=["appointments"])
async def get_appointment(
    appointment_id: str,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(scheduling.get_appointment(session, clinic_id, appointment_id).to_dict())


@app.put("/api/appointments/{appointment_id}", tags=["appointments"])
async def update_appointment(
    appointment_id: str,
    model: AppointmentUpdate,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    changes = model.model_dump(exclude_unset=True)
    if changes.get("starts_at"):
        changes["starts_at"] = to_local_naive(changes["starts_at"])
    appointment = scheduling.update_appointment(session, clinic_id, appointment_id, changes)
    return _success_payload(appointment.to_dict())


@app.patch("/api/appointments/{appointment_id}/status", tags=["appointments"])
async def change_appointment_status(
    appointment_id: str,
    model: StatusModel,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    appointment = scheduling.change_status(session, clinic_id, appointment_id, model.status)
    return _success_payload(appointment.to_dict())


@app.get("/api/appointments/{appointment_id}/ics", tags=["appointments"])
async def export_appointment(
    appointment_id: str,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    appointment = scheduling.get_appointment(session, clinic_id, appointment_id)
    return Response(
        content=scheduling.export_appointment_ics(appointment),
        media_type="text/calendar",
        headers={"Content-Disposition": f'attachment; filename="consulta-{appointment.id[:8]}.ics"'},
    )


# ---------------------------------------------------------------------------
# Schedule: slots, blocks, returns, check-in, waitlist
# ---------------------------------------------------------------------------


@app.get("/api/schedule/slots", tags=["schedule"])
async def available_slots(
    doctor_id: str,
    day: date = Query(..., alias="date"),
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    slots = scheduling.available_slots(session, clinic_id, doctor_id, day)
    return _success_payload({"doctor_id": doctor_id, "date": day.isoformat(), "slots": slots})


@app.get("/api/schedule/blocks", tags=["schedule"])
async def list_blocks(
    doctor_id: Optional[str] = None,
    on_date: Optional[date] = Query(None, alias="date"),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    blocks = scheduling.list_blocks(
        session,
        clinic_id,
        doctor_id=doctor_id,
        date_from=to_local_naive(date_from) if date_from else None,
        date_to=to_local_naive(date_to) if date_to else None,
        on_date=on_date,
    )
    return _success_payload(_dump(blocks))


@app.post("/api/schedule/blocks", tags=["schedule"], status_code=201)
async def create_block(
    model: BlockCreate,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    doctor_id = _own_doctor_id(session, principal, clinic_id, model.doctor_id)
    if not doctor_id:
        raise DomainValidationError("doctor_id is required")
    block = scheduling.create_block(
        session,
        clinic_id,
        doctor_id,
        to_local_naive(model.starts_at),
        to_local_naive(model.ends_at),
        model.reason,
    )
    return _success_payload(block.to_dict())


@app.delete("/api/schedule/blocks/{block_id}", tags=["schedule"])
async def delete_block(
    block_id: str,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    block = scheduling.get_block(session, clinic_id, block_id)
    _own_doctor_id(session, principal, clinic_id, block.doctor_id)
    scheduling.delete_block(session, clinic_id, block_id)
    return _success_payload({"id": block_id, "deleted": True})


@app.get("/api/schedule/return-limit", tags=["schedule"])
async def return_limit(
    doctor_id: str,
    day: date = Query(..., alias="date"),
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(scheduling.return_limit_status(session, clinic_id, doctor_id, day))


@app.get("/api/returns/suggestion", tags=["schedule"])
async def suggest_return(
    patient_id: str,
    doctor_id: str,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(scheduling.suggest_return_date(session, clinic_id, patient_id, doctor_id))


@app.get("/api/checkin", tags=["checkin"])
async def checkin_queue(
    day: Optional[date] = Query(None, alias="date"),
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(_dump(scheduling.checkin_queue(session, clinic_id, day)))


@app.post("/api/checkin/{appointment_id}", tags=["checkin"])
async def check_in(
    appointment_id: str,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(scheduling.check_in(session, clinic_id, appointment_id).to_dict())


@app.get("/api/waitlist", tags=["waitlist"])
async def list_waitlist(
    doctor_id: Optional[str] = None,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(_dump(scheduling.list_waitlist(session, clinic_id, doctor_id)))


@app.post("/api/waitlist", tags=["waitlist"], status_code=201)
async def add_to_waitlist(
    model: WaitlistCreate,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    entry = scheduling.add_to_waitlist(
        session, clinic_id, model.doctor_id, model.patient_id, priority=model.priority, notes=model.notes
    )
    return _success_payload(entry.to_dict())


@app.delete("/api/waitlist/{entry_id}", tags=["waitlist"])
async def remove_from_waitlist(
    entry_id: str,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    scheduling.remove_from_waitlist(session, clinic_id, entry_id)
    return _success_payload({"id": entry_id, "deleted": True})


@app.post("/api/waitlist/{entry_id}/call", tags=["waitlist"], status_code=201)
async def call_from_waitlist(
    entry_id: str,
    model: WaitlistCall,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    booking = model.model_dump()
    starts_at = to_local_naive(booking.pop("starts_at"))
    appointment = scheduling.call_from_waitlist(session, clinic_id, entry_id, starts_at=starts_at, **booking)
    return _success_payload(appointment.to_dict())


# ---------------------------------------------------------------------------
# Finance
# ---------------------------------------------------------------------------


@app.get("/api/finance/payables", tags=["finance"])
async def list_payables(
    search: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(
        finance.list_payables(
            session,
            clinic_id,
            search=search,
            status=status_filter,
            date_from=date_from,
            date_to=date_to,
            page=page,
            limit=limit,
        )
    )


@app.post("/api/finance/payables", tags=["finance"], status_code=201)
async def create_payable(
    model: PayableCreate,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(finance.create_payable(session, clinic_id, **model.model_dump()).to_dict())


@app.put("/api/finance/payables/{payable_id}", tags=["finance"])
async def update_payable(
    payable_id: str,
    model: PayableUpdate,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    payable = finance.update_payable(session, clinic_id, payable_id, model.model_dump(exclude_unset=True))
    return _success_payload(payable.to_dict())


@app.delete("/api/finance/payables/{payable_id}", tags=["finance"])
async def delete_payable(
    payable_id: str,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    finance.delete_payable(session, clinic_id, payable_id)
    return _success_payload({"id": payable_id, "deleted": True})


@app.post("/api/finance/payables/{payable_id}/pay", tags=["finance"])
async def pay_payable(
    payable_id: str,
    model: SettleModel,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    payable = finance.pay_payable(
        session, clinic_id, payable_id, paid_on=model.on, payment_method_id=model.payment_method_id
    )
    return _success_payload(payable.to_dict())


@app.get("/api/finance/receivables", tags=["finance"])
async def list_receivables(
    search: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    patient_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(
        finance.list_receivables(
            session,
            clinic_id,
            search=search,
            status=status_filter,
            patient_id=patient_id,
            date_from=date_from,
            date_to=date_to,
            page=page,
            limit=limit,
        )
    )


@app.post("/api/finance/receivables", tags=["finance"], status_code=201)
async def create_receivable(
    model: ReceivableCreate,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(finance.create_receivable(session, clinic_id, **model.model_dump()).to_dict())


@app.put("/api/finance/receivables/{receivable_id}", tags=["finance"])
async def update_receivable(
    receivable_id: str,
    model: ReceivableUpdate,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    receivable = finance.update_receivable(
        session, clinic_id, receivable_id, model.model_dump(exclude_unset=True)
    )
    return _success_payload(receivable.to_dict())


@app.delete("/api/finance/receivables/{receivable_id}", tags=["finance"])
async def delete_receivable(
    receivable_id: str,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    finance.delete_receivable(session, clinic_id, receivable_id)
    return _success_payload({"id": receivable_id, "deleted": True})


@app.post("/api/finance/receivables/{receivable_id}/receive", tags=["finance"])
async def receive_receivable(
    receivable_id: str,
    model: SettleModel,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    receivable = finance.receive(
        session, clinic_id, receivable_id, received_on=model.on, payment_method_id=model.payment_method_id
    )
    return _success_payload(receivable.to_dict())


@app.post("/api/finance/refresh-overdue", tags=["finance"])
async def refresh_overdue(
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(finance.refresh_overdue(session, clinic_id))


@app.get("/api/finance/cash-flow", tags=["finance"])
async def list_cash_entries(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    kind: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(
        finance.list_cash_entries(
            session, clinic_id, date_from=date_from, date_to=date_to, kind=kind, page=page, limit=limit
        )
    )


@app.post("/api/finance/cash-flow", tags=["finance"], status_code=201)
async def create_cash_entry(
    model: CashEntryCreate,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(finance.create_cash_entry(session, clinic_id, **model.model_dump()).to_dict())


@app.delete("/api/finance/cash-flow/{entry_id}", tags=["finance"])
async def delete_cash_entry(
    entry_id: str,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    finance.delete_cash_entry(session, clinic_id, entry_id)
    return _success_payload({"id": entry_id, "deleted": True})


@app.get("/api/finance/cash-flow/summary", tags=["finance"])
async def cash_flow_summary(
    date_from: date,
    date_to: date,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(finance.cash_flow_summary(session, clinic_id, date_from, date_to))


@app.get("/api/finance/delinquency", tags=["finance"])
async def delinquency(
    doctor_id: Optional[str] = None,
    search: Optional[str] = None,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    doctor_id = _own_doctor_id(session, principal, clinic_id, doctor_id)
    return _success_payload(
        finance.delinquency_report(session, clinic_id, doctor_id=doctor_id, search=search)
    )


@app.get("/api/finance/cash-closings", tags=["finance"])
async def list_cash_closings(
    day: Optional[date] = Query(None, alias="date"),
    status_filter: Optional[str] = Query(None, alias="status"),
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    closings = finance.list_cash_closings(session, clinic_id, day=day, status=status_filter)
    return _success_payload(_dump(closings))


@app.post("/api/finance/cash-closings", tags=["finance"], status_code=201)
async def authorize_cash_closing(
    model: CashClosingCreate,
    doctor: Doctor = Depends(current_doctor),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    closing = finance.authorize_cash_closing(session, clinic_id, doctor.id, model.day, model.notes)
    return _success_payload(closing.to_dict())


@app.post("/api/finance/cash-closings/{closing_id}/close", tags=["finance"])
async def close_cash(
    closing_id: str,
    model: CashCloseModel,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    closing = finance.close_cash(session, clinic_id, closing_id, principal.user.id, model.signature)
    return _success_payload(closing.to_dict())


@app.get("/api/finance/daily-summary", tags=["finance"])
async def daily_cash_summary(
    day: Optional[date] = Query(None, alias="date"),
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(finance.daily_cash_summary(session, clinic_id, day))


@app.get("/api/finance/dashboard", tags=["finance"])
async def finance_dashboard(
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(finance.dashboard(session, clinic_id))


# ---------------------------------------------------------------------------
# Medications, stock and procedures
# ---------------------------------------------------------------------------


@app.get("/api/medications", tags=["inventory"])
async def list_medications(
    search: Optional[str] = None,
    active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(
        inventory.list_medications(session, clinic_id, search=search, active=active, page=page, limit=limit)
    )


@app.post("/api/medications", tags=["inventory"], status_code=201)
async def create_medication(
    model: MedicationCreate,
    principal: Principal = Depends(require_roles(CLINIC_ADMIN)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(inventory.create_medication(session, clinic_id, model.model_dump()).to_dict())


@app.put("/api/medications/{medication_id}", tags=["inventory"])
async def update_medication(
    medication_id: str,
    model: MedicationUpdate,
    principal: Principal = Depends(require_roles(CLINIC_ADMIN)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    medication = inventory.update_medication(session, clinic_id, medication_id, model.model_dump(exclude_unset=True))
    return _success_payload(medication.to_dict())


@app.get("/api/stock", tags=["inventory"])
async def list_stock(
    search: Optional[str] = None,
    low: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(
        inventory.list_stock(session, clinic_id, search=search, low_only=low, page=page, limit=limit)
    )


@app.post("/api/stock", tags=["inventory"], status_code=201)
async def create_stock_item(
    model: StockItemCreate,
    principal: Principal = Depends(require_roles(CLINIC_ADMIN)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    data = model.model_dump()
    item = inventory.create_stock_item(session, clinic_id, data.pop("medication_id"), **data)
    return _success_payload(item.to_dict())


@app.patch("/api/stock/{stock_item_id}", tags=["inventory"])
async def update_stock_item(
    stock_item_id: str,
    model: StockItemUpdate,
    principal: Principal = Depends(require_roles(CLINIC_ADMIN)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    item = inventory.update_stock_item(session, clinic_id, stock_item_id, model.model_dump(exclude_unset=True))
    return _success_payload(item.to_dict())


@app.delete("/api/stock/{stock_item_id}", tags=["inventory"])
async def delete_stock_item(
    stock_item_id: str,
    principal: Principal = Depends(require_roles(CLINIC_ADMIN)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    inventory.delete_stock_item(session, clinic_id, stock_item_id)
    return _success_payload({"id": stock_item_id, "deleted": True})


@app.get("/api/stock/movements", tags=["inventory"])
async def list_stock_movements(
    stock_item_id: Optional[str] = None,
    kind: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(
        inventory.list_movements(
            session, clinic_id, stock_item_id=stock_item_id, kind=kind, page=page, limit=limit
        )
    )


@app.post("/api/stock/movements", tags=["inventory"], status_code=201)
async def record_stock_movement(
    model: StockMovementCreate,
    principal: Principal = Depends(require_roles(CLINIC_ADMIN)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    movement = inventory.record_movement(
        session,
        clinic_id,
        model.stock_item_id,
        model.kind,
        model.quantity,
        reason=model.reason,
        notes=model.notes,
    )
    return _success_payload(movement.to_dict())


@app.get("/api/procedures", tags=["inventory"])
async def list_procedures(
    search: Optional[str] = None,
    active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(
        inventory.list_procedures(session, clinic_id, search=search, active=active, page=page, limit=limit)
    )


@app.post("/api/procedures", tags=["inventory"], status_code=201)
async def create_procedure(
    model: ProcedureCreate,
    principal: Principal = Depends(require_roles(CLINIC_ADMIN)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    procedure = inventory.create_procedure(session, clinic_id, **model.model_dump())
    return _success_payload(procedure.to_dict())


@app.put("/api/procedures/{procedure_id}", tags=["inventory"])
async def update_procedure(
    procedure_id: str,
    model: ProcedureUpdate,
    principal: Principal = Depends(require_roles(CLINIC_ADMIN)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    procedure = inventory.update_procedure(session, clinic_id, procedure_id, model.model_dump(exclude_unset=True))
    return _success_payload(procedure.to_dict())


@app.post("/api/procedures/{procedure_id}/execute", tags=["inventory"], status_code=201)
async def execute_procedure(
    procedure_id: str,
    model: ProcedureExecute,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    execution = inventory.execute_procedure(
        session,
        clinic_id,
        procedure_id,
        patient_id=model.patient_id,
        payment_method_id=model.payment_method_id,
        amount_paid=model.amount_paid,
        notes=model.notes,
        executed_by=principal.user.id,
    )
    return _success_payload(execution.to_dict())


@app.get("/api/procedures/executions", tags=["inventory"])
async def list_procedure_executions(
    patient_id: Optional[str] = None,
    principal: Principal = Depends(require_roles(*STAFF)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(_dump(inventory.list_executions(session, clinic_id, patient_id=patient_id)))


# ---------------------------------------------------------------------------
# Clinical records
# ---------------------------------------------------------------------------


@app.put("/api/clinical/records/{appointment_id}", tags=["clinical"])
async def upsert_medical_record(
    appointment_id: str,
    model: MedicalRecordModel,
    doctor: Doctor = Depends(current_doctor),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    record = clinical.upsert_medical_record(
        session, clinic_id, appointment_id, doctor.id, model.model_dump(exclude_unset=True)
    )
    return _success_payload(record.to_dict())


@app.get("/api/clinical/records/{appointment_id}", tags=["clinical"])
async def get_medical_record(
    appointment_id: str,
    principal: Principal = Depends(require_roles(DOCTOR)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(clinical.get_medical_record(session, clinic_id, appointment_id).to_dict())


@app.get("/api/clinical/prescriptions", tags=["clinical"])
async def list_prescriptions(
    patient_id: Optional[str] = None,
    principal: Principal = Depends(require_roles(DOCTOR)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(_dump(clinical.list_prescriptions(session, clinic_id, patient_id=patient_id)))


@app.post("/api/clinical/prescriptions", tags=["clinical"], status_code=201)
async def create_prescription(
    model: PrescriptionCreate,
    doctor: Doctor = Depends(current_doctor),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    prescription = clinical.create_prescription(
        session,
        clinic_id,
        patient_id=model.patient_id,
        doctor_id=doctor.id,
        appointment_id=model.appointment_id,
        items=[item.model_dump() for item in model.items],
        notes=model.notes,
    )
    return _success_payload(prescription.to_dict())


@app.get("/api/clinical/prescriptions/{prescription_id}", tags=["clinical"])
async def get_prescription(
    prescription_id: str,
    principal: Principal = Depends(require_roles(DOCTOR)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(clinical.get_prescription(session, clinic_id, prescription_id).to_dict())


@app.get("/api/clinical/exam-requests", tags=["clinical"])
async def list_exam_requests(
    patient_id: Optional[str] = None,
    appointment_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    principal: Principal = Depends(require_roles(DOCTOR)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    requests = clinical.list_exam_requests(
        session, clinic_id, patient_id=patient_id, appointment_id=appointment_id, status=status_filter
    )
    return _success_payload(_dump(requests))


@app.post("/api/clinical/exam-requests", tags=["clinical"], status_code=201)
async def create_exam_request(
    model: ExamRequestCreate,
    doctor: Doctor = Depends(current_doctor),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    request = clinical.create_exam_request(session, clinic_id, doctor_id=doctor.id, **model.model_dump())
    return _success_payload(request.to_dict())


@app.post("/api/clinical/exam-requests/{exam_request_id}/complete", tags=["clinical"])
async def complete_exam_request(
    exam_request_id: str,
    model: ExamResultModel,
    principal: Principal = Depends(require_roles(DOCTOR)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    request = clinical.complete_exam_request(session, clinic_id, exam_request_id, model.result_notes)
    return _success_payload(request.to_dict())


# ---------------------------------------------------------------------------
# AI-assisted consultation
# ---------------------------------------------------------------------------


@app.post("/api/consultations", tags=["consultations"], status_code=201)
async def start_consultation(
    model: ConsultationStart,
    doctor: Doctor = Depends(current_doctor),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(consultation.start_session(session, clinic_id, model.appointment_id, doctor.id).to_dict())


@app.get("/api/consultations/{session_id}", tags=["consultations"])
async def get_consultation(
    session_id: str,
    doctor: Doctor = Depends(current_doctor),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(consultation.get_session(session, clinic_id, session_id, doctor.id).to_dict())


@app.post("/api/consultations/{session_id}/transcript", tags=["consultations"])
async def append_transcript(
    session_id: str,
    model: TranscriptModel,
    doctor: Doctor = Depends(current_doctor),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    state = consultation.append_transcript(
        session, clinic_id, session_id, model.text, model.speaker, doctor_id=doctor.id
    )
    return _success_payload(state.to_dict())


@app.post("/api/consultations/{session_id}/analyze", tags=["consultations"])
def analyze_consultation(
    session_id: str,
    model: AnalyzeModel,
    doctor: Doctor = Depends(current_doctor),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    """Run the AI analysis; a plain ``def`` keeps the blocking API call off the event loop."""

    state = consultation.analyze(session, clinic_id, session_id, model.extra_context, doctor_id=doctor.id)
    return _success_payload(state.to_dict())


@app.put("/api/consultations/{session_id}/anamnesis", tags=["consultations"])
async def update_anamnesis(
    session_id: str,
    model: AnamnesisModel,
    doctor: Doctor = Depends(current_doctor),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    state = consultation.update_anamnesis(session, clinic_id, session_id, model.text, doctor_id=doctor.id)
    return _success_payload(state.to_dict())


@app.post("/api/consultations/{session_id}/step", tags=["consultations"])
async def advance_consultation(
    session_id: str,
    model: StepModel,
    doctor: Doctor = Depends(current_doctor),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    state = consultation.advance(session, clinic_id, session_id, model.step, doctor_id=doctor.id)
    return _success_payload(state.to_dict())


@app.post("/api/consultations/{session_id}/selection", tags=["consultations"])
async def select_suggestions(
    session_id: str,
    model: SelectionModel,
    doctor: Doctor = Depends(current_doctor),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    state = consultation.select_suggestions(
        session,
        clinic_id,
        session_id,
        cid_codes=model.cid_codes,
        exam_indexes=model.exam_indexes,
        prescription_indexes=model.prescription_indexes,
        doctor_id=doctor.id,
    )
    return _success_payload(state.to_dict())


@app.post("/api/consultations/{session_id}/finalize", tags=["consultations"])
async def finalize_consultation(
    session_id: str,
    doctor: Doctor = Depends(current_doctor),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    return _success_payload(consultation.finalize(session, clinic_id, session_id, doctor_id=doctor.id))


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@app.get("/api/documents/prescriptions/{prescription_id}", tags=["documents"])
async def prescription_document(
    prescription_id: str,
    principal: Principal = Depends(require_roles(DOCTOR)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    prescription = clinical.get_prescription(session, clinic_id, prescription_id)
    return _pdf_response(documents.prescription_pdf(clinics.get_clinic(session, clinic_id), prescription))


@app.post("/api/documents/certificate", tags=["documents"])
async def certificate_document(
    model: CertificateModel,
    doctor: Doctor = Depends(current_doctor),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    patient = patients.get_patient(session, clinic_id, model.patient_id)
    document = documents.medical_certificate_pdf(
        clinics.get_clinic(session, clinic_id), patient, doctor, model.days, model.cid_code, model.issued_on
    )
    return _pdf_response(document)


@app.get("/api/documents/attendance/{appointment_id}", tags=["documents"])
async def attendance_document(
    appointment_id: str,
    principal: Principal = Depends(require_roles(*CLINIC_USERS)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    appointment = scheduling.get_appointment(session, clinic_id, appointment_id)
    return _pdf_response(documents.attendance_declaration_pdf(clinics.get_clinic(session, clinic_id), appointment))


@app.post("/api/documents/exam-requests", tags=["documents"])
async def exam_request_document(
    model: ExamGuideModel,
    principal: Principal = Depends(require_roles(DOCTOR)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    requests = [clinical.get_exam_request(session, clinic_id, request_id) for request_id in model.exam_request_ids]
    return _pdf_response(documents.exam_request_pdf(clinics.get_clinic(session, clinic_id), requests))


# ---------------------------------------------------------------------------
# Patient portal
# ---------------------------------------------------------------------------


@app.get("/api/me/appointments", tags=["portal"])
async def my_appointments(
    principal: Principal = Depends(require_roles(PATIENT)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    items = []
    for patient in _portal_patients(session, principal, clinic_id):
        items.extend(_dump(scheduling.list_appointments(session, clinic_id, patient_id=patient.id)))
    return _success_payload(items)


@app.get("/api/me/prescriptions", tags=["portal"])
async def my_prescriptions(
    principal: Principal = Depends(require_roles(PATIENT)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    items = []
    for patient in _portal_patients(session, principal, clinic_id):
        items.extend(_dump(clinical.list_prescriptions(session, clinic_id, patient_id=patient.id)))
    return _success_payload(items)


@app.get("/api/me/prescriptions/{prescription_id}/pdf", tags=["portal"])
async def my_prescription_document(
    prescription_id: str,
    principal: Principal = Depends(require_roles(PATIENT)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    own = {patient.id for patient in _portal_patients(session, principal, clinic_id)}
    prescription = clinical.get_prescription(session, clinic_id, prescription_id)
    if prescription.patient_id not in own:
        raise PermissionDeniedError("Prescription belongs to another patient")
    return _pdf_response(documents.prescription_pdf(clinics.get_clinic(session, clinic_id), prescription))


@app.get("/api/me/exam-requests", tags=["portal"])
async def my_exam_requests(
    principal: Principal = Depends(require_roles(PATIENT)),
    clinic_id: str = Depends(tenant_id),
    session: Session = Depends(get_session),
):
    items = []
    for patient in _portal_patients(session, principal, clinic_id):
        items.extend(_dump(clinical.list_exam_requests(session, clinic_id, patient_id=patient.id)))
    return _success_payload(items)


# ---------------------------------------------------------------------------
# Payment webhooks
# ---------------------------------------------------------------------------


@app.post("/api/webhooks/stripe", tags=["webhooks"])
async def stripe_webhook(request: Request, session: Session = Depends(get_session)):
    settings = get_settings()
    secret = settings.stripe_webhook_secret
    if not secret and not settings.is_development:
        raise AuthenticationError("Webhook secret is not configured")
    payload = await request.body()
    event = stripe_webhooks.parse_event(payload, request.headers.get("stripe-signature"), secret)
    return _success_payload(stripe_webhooks.process_event(session, event))


__all__ = ["app", "get_current_user", "require_roles", "tenant_id", "current_doctor", "Principal"]
