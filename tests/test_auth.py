"""Authentication, lockout and tenant switching."""

import jwt
import pytest

from prontivus import auth, clinics
from prontivus.config import get_settings
from prontivus.db.models import AuditLogEntry, ClinicStatus, User, UserRole
from prontivus.errors import AuthenticationError, DomainValidationError, TenantAccessError

from conftest import DEFAULT_PASSWORD, bearer


def test_password_hash_roundtrip():
    hashed = auth.hash_password('Senha1234')
    assert hashed.startswith('$2b$')
    assert auth.verify_password('Senha1234', hashed)
    assert not auth.verify_password('outra', hashed)


def test_weak_passwords_rejected():
    for weak in ('curta1', 'somenteletras', '12345678'):
        with pytest.raises(DomainValidationError):
            auth.validate_password_strength(weak)


def test_login_returns_token_bound_to_clinic(client, world):
    resp = client.post('/api/auth/login', json={'email': 'ana@saude.com', 'password': DEFAULT_PASSWORD})
    assert resp.status_code == 200
    body = resp.json()
    assert body['success'] is True
    data = body['data']
    assert data['role'] == UserRole.DOCTOR.value
    assert data['clinic_id'] == world.clinic.id
    claims = jwt.decode(data['access_token'], get_settings().jwt_secret, algorithms=['HS256'])
    assert claims['clinic_id'] == world.clinic.id
    assert claims['role'] == 'doctor'
    assert [t['clinic_id'] for t in data['tenants']] == [world.clinic.id]


def test_login_is_case_insensitive_on_email(client, world):
    resp = client.post('/api/auth/login', json={'email': ' ANA@saude.com ', 'password': DEFAULT_PASSWORD})
    assert resp.status_code == 200


def test_failed_login_is_audited(client, world, db_session):
    resp = client.post('/api/auth/login', json={'email': 'ana@saude.com', 'password': 'errada123'})
    assert resp.status_code == 401
    body = resp.json()
    assert body['success'] is False
    assert body['error']['code'] == 'invalid_credentials'
    entries = db_session.query(AuditLogEntry).filter_by(action='failed_login').all()
    assert len(entries) == 1


def test_account_locks_after_repeated_failures(db_session, world):
    for _ in range(auth.LOCKOUT_THRESHOLD):
        assert auth.authenticate_user(db_session, 'ana@saude.com', 'errada123') is None
    with pytest.raises(AuthenticationError) as excinfo:
        auth.authenticate_user(db_session, 'ana@saude.com', DEFAULT_PASSWORD)
    assert excinfo.value.message == 'Account locked'


def test_locked_account_api_response(client, world):
    for _ in range(auth.LOCKOUT_THRESHOLD):
        client.post('/api/auth/login', json={'email': 'ana@saude.com', 'password': 'errada123'})
    resp = client.post('/api/auth/login', json={'email': 'ana@saude.com', 'password': DEFAULT_PASSWORD})
    assert resp.status_code == 401
    assert resp.json()['error']['code'] == 'authentication_failed'


def test_successful_login_resets_failure_counter(db_session, world):
    auth.authenticate_user(db_session, 'ana@saude.com', 'errada123')
    user = auth.authenticate_user(db_session, 'ana@saude.com', DEFAULT_PASSWORD)
    assert user is not None
    assert user.failed_login_attempts == 0


def test_suspended_clinic_blocks_login(client, world, db_session):
    clinics.set_clinic_status(db_session, world.clinic.id, ClinicStatus.SUSPENDED.value)
    db_session.commit()
    resp = client.post('/api/auth/login', json={'email': 'ana@saude.com', 'password': DEFAULT_PASSWORD})
    assert resp.status_code == 403
    assert resp.json()['error']['code'] == 'tenant_access_denied'


def test_super_admin_login_has_no_clinic(client, db_session):
    auth.register_user(db_session, 'root@prontivus.com', DEFAULT_PASSWORD, 'Root', UserRole.SUPER_ADMIN.value)
    db_session.commit()
    resp = client.post('/api/auth/login', json={'email': 'root@prontivus.com', 'password': DEFAULT_PASSWORD})
    assert resp.status_code == 200
    assert resp.json()['data']['clinic_id'] is None
    assert resp.json()['data']['role'] == 'super_admin'


def test_me_reports_active_clinic(client, headers, world):
    resp = client.get('/api/auth/me', headers=headers.secretary)
    assert resp.status_code == 200
    data = resp.json()['data']
    assert data['role'] == 'secretary'
    assert data['clinic']['id'] == world.clinic.id


def test_invalid_token_rejected(client, world):
    resp = client.get('/api/auth/me', headers={'Authorization': 'Bearer nonsense'})
    assert resp.status_code == 401
    assert resp.json()['error']['message'] == 'Invalid or expired token'


def test_switch_tenant_requires_membership(db_session, world, other_clinic):
    doctor_user = db_session.get(User, world.doctor.user_id)
    with pytest.raises(TenantAccessError):
        auth.switch_tenant(db_session, doctor_user, other_clinic.id)


def test_doctor_in_two_clinics_can_switch(client, db_session, world, other_clinic):
    """Registering the same e-mail in a second clinic adds a membership."""
    clinics.create_doctor(db_session, other_clinic.id, 'Ana Souza', 'ana@saude.com', DEFAULT_PASSWORD, 'CRM-SP 12345')
    doctor_user = db_session.get(User, world.doctor.user_id)
    db_session.commit()

    headers = bearer(doctor_user, world.clinic.id, 'doctor')
    resp = client.get('/api/auth/tenants', headers=headers)
    assert {t['clinic_id'] for t in resp.json()['data']} == {world.clinic.id, other_clinic.id}

    resp = client.post('/api/auth/switch-tenant', json={'clinic_id': other_clinic.id}, headers=headers)
    assert resp.status_code == 200
    data = resp.json()['data']
    assert data['clinic_id'] == other_clinic.id
    claims = auth.decode_access_token(data['access_token'])
    assert claims['clinic_id'] == other_clinic.id


def test_password_reset_flow(client, world):
    resp = client.post('/api/auth/forgot-password', json={'email': 'ana@saude.com'})
    token = resp.json()['data']['debug_token']

    resp = client.post('/api/auth/reset-password', json={'token': token, 'new_password': 'NovaSenha99'})
    assert resp.status_code == 200

    resp = client.post('/api/auth/reset-password', json={'token': token, 'new_password': 'OutraSenha99'})
    assert resp.status_code == 400

    resp = client.post('/api/auth/login', json={'email': 'ana@saude.com', 'password': 'NovaSenha99'})
    assert resp.status_code == 200


def test_forgot_password_unknown_email_does_not_leak(client, world):
    resp = client.post('/api/auth/forgot-password', json={'email': 'ninguem@saude.com'})
    assert resp.status_code == 200
    assert 'debug_token' not in resp.json()['data']


def test_change_password_checks_current(client, headers):
    resp = client.post(
        '/api/auth/change-password',
        json={'current_password': 'errada123', 'new_password': 'NovaSenha99'},
        headers=headers.secretary,
    )
    assert resp.status_code == 401
    resp = client.post(
        '/api/auth/change-password',
        json={'current_password': DEFAULT_PASSWORD, 'new_password': 'NovaSenha99'},
        headers=headers.secretary,
    )
    assert resp.status_code == 200
