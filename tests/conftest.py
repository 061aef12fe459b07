import os
import sys
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure the repository root is on sys.path so tests can import the prontivus package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault('ENVIRONMENT', 'test')
os.environ.setdefault('JWT_SECRET', 'test-secret')
os.environ.setdefault('PRONTIVUS_DATABASE_URL', 'sqlite://')
os.environ.setdefault('USE_OFFLINE_MODEL', '1')
os.environ.setdefault('CLINIC_TIMEZONE', 'America/Sao_Paulo')

from prontivus import auth, clinics, patients  # noqa: E402
from prontivus.db import Base, configure_session_factory  # noqa: E402
from prontivus.db.models import Clinic, ConsultationType, Doctor, Patient, Plan, User, UserRole  # noqa: E402

VALID_CPF = '52998224725'
OTHER_CPF = '11144477735'
CLINIC_CNPJ = '11222333000181'
OTHER_CNPJ = '11444777000161'
DEFAULT_PASSWORD = 'Senha1234'


def next_weekday(days_ahead: int = 7) -> date:
    """A date comfortably in the future so booking rules never see it as past."""

    return date.today() + timedelta(days=days_ahead)


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day, datetime.min.time()).replace(hour=hour, minute=minute)


@pytest.fixture()
def session_factory():
    """Fresh in-memory database shared by the service layer and the API."""

    engine = sa.create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    configure_session_factory(factory)
    yield factory
    engine.dispose()


@pytest.fixture()
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@dataclass
class World:
    plan: Plan
    clinic: Clinic
    doctor: Doctor
    patient: Patient
    consultation_types: Dict[str, ConsultationType] = field(default_factory=dict)

    def type_id(self, code: str) -> str:
        return self.consultation_types[code].id


@pytest.fixture()
def world(db_session) -> World:
    """One active clinic with a doctor, a patient and the consultation types."""

    plan = clinics.create_plan(db_session, 'basic', 'Básico', Decimal('299.00'), 2000)
    clinic = clinics.create_clinic(db_session, 'Clínica Saúde', CLINIC_CNPJ, plan.id, email='contato@saude.com')
    types = {ct.code: ct for ct in clinics.ensure_consultation_types(db_session)}
    doctor = clinics.create_doctor(
        db_session,
        clinic.id,
        'Ana Souza',
        'ana@saude.com',
        DEFAULT_PASSWORD,
        'CRM-SP 12345',
        specialty='Clínica geral',
        max_returns_per_day=1,
    )
    patient = patients.create_patient(db_session, clinic.id, {'name': 'João Silva', 'cpf': VALID_CPF})
    db_session.commit()
    return World(plan=plan, clinic=clinic, doctor=doctor, patient=patient, consultation_types=types)


@pytest.fixture()
def other_clinic(db_session, world) -> Clinic:
    clinic = clinics.create_clinic(db_session, 'Clínica Vida', OTHER_CNPJ, world.plan.id)
    db_session.commit()
    return clinic


@pytest.fixture()
def client(session_factory):
    from prontivus.main import app

    return TestClient(app)


def bearer(user: User, clinic_id, role: str) -> Dict[str, str]:
    token = auth.create_access_token(user, clinic_id, role)
    return {'Authorization': f'Bearer {token}'}


@dataclass
class Headers:
    super_admin: Dict[str, str]
    clinic_admin: Dict[str, str]
    secretary: Dict[str, str]
    doctor: Dict[str, str]


@pytest.fixture()
def headers(db_session, world) -> Headers:
    """Bearer headers for every staff role of ``world.clinic``."""

    root = auth.register_user(db_session, 'root@prontivus.com', DEFAULT_PASSWORD, 'Root', UserRole.SUPER_ADMIN.value)
    admin = clinics.create_staff_user(
        db_session, world.clinic.id, 'Carla Admin', 'admin@saude.com', DEFAULT_PASSWORD, UserRole.CLINIC_ADMIN.value
    )
    secretary = clinics.create_staff_user(
        db_session, world.clinic.id, 'Bia Recepção', 'recepcao@saude.com', DEFAULT_PASSWORD, UserRole.SECRETARY.value
    )
    doctor_user = db_session.get(User, world.doctor.user_id)
    db_session.commit()
    return Headers(
        super_admin=bearer(root, None, UserRole.SUPER_ADMIN.value),
        clinic_admin=bearer(admin, world.clinic.id, UserRole.CLINIC_ADMIN.value),
        secretary=bearer(secretary, world.clinic.id, UserRole.SECRETARY.value),
        doctor=bearer(doctor_user, world.clinic.id, UserRole.DOCTOR.value),
    )
