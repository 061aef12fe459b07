from datetime import date, timedelta

import pytest

from prontivus import clinical, patients, scheduling
from prontivus.db.models import Patient
from prontivus.errors import ConflictError, DomainValidationError

from conftest import DEFAULT_PASSWORD, OTHER_CPF, VALID_CPF, at, next_weekday


def test_create_patient_normalises_fields(db_session, world):
    patient = patients.create_patient(
        db_session,
        world.clinic.id,
        {'name': ' Maria Lima ', 'cpf': '111.444.777-35', 'email': 'Maria@Email.com', 'mobile': '(11) 99999-8888'},
    )
    assert patient.name == 'Maria Lima'
    assert patient.cpf == OTHER_CPF
    assert patient.email == 'maria@email.com'
    assert patient.mobile == '11999998888'
    assert patient.record_number == world.patient.record_number + 1


def test_patient_validation(db_session, world):
    with pytest.raises(DomainValidationError):
        patients.create_patient(db_session, world.clinic.id, {'name': 'Sem CPF válido', 'cpf': '12345678900'})
    with pytest.raises(DomainValidationError):
        patients.create_patient(db_session, world.clinic.id, {'name': '  '})
    with pytest.raises(DomainValidationError):
        patients.create_patient(
            db_session, world.clinic.id, {'name': 'Futuro', 'birth_date': date.today() + timedelta(days=1)}
        )


def test_cpf_unique_within_clinic(db_session, world):
    with pytest.raises(ConflictError):
        patients.create_patient(db_session, world.clinic.id, {'name': 'Outro João', 'cpf': VALID_CPF})
    other = patients.create_patient(db_session, world.clinic.id, {'name': 'Maria Lima', 'cpf': OTHER_CPF})
    with pytest.raises(ConflictError):
        patients.update_patient(db_session, world.clinic.id, other.id, {'cpf': VALID_CPF})
    # Keeping its own CPF is not a conflict.
    assert patients.update_patient(db_session, world.clinic.id, other.id, {'cpf': OTHER_CPF}).cpf == OTHER_CPF


def test_list_patients_search_and_pages(db_session, world):
    for name in ('Ana Clara', 'Bruno Alves', 'Carlos Dias'):
        patients.create_patient(db_session, world.clinic.id, {'name': name})
    page = patients.list_patients(db_session, world.clinic.id, page=2, limit=3)
    assert page['total'] == 4
    assert page['total_pages'] == 2
    assert [item['name'] for item in page['items']] == ['João Silva']

    found = patients.list_patients(db_session, world.clinic.id, search='529.982')
    assert [item['name'] for item in found['items']] == ['João Silva']
    by_number = patients.list_patients(db_session, world.clinic.id, search=str(world.patient.record_number))
    assert world.patient.id in [item['id'] for item in by_number['items']]


def test_delete_without_history_removes(db_session, world):
    patient = patients.create_patient(db_session, world.clinic.id, {'name': 'Temporário'})
    assert patients.delete_patient(db_session, world.clinic.id, patient.id) == {'id': patient.id, 'deleted': True}
    assert db_session.get(Patient, patient.id) is None


def test_delete_with_appointments_deactivates(db_session, world):
    scheduling.create_appointment(
        db_session,
        world.clinic.id,
        patient_id=world.patient.id,
        doctor_id=world.doctor.id,
        starts_at=at(next_weekday(), 9),
    )
    result = patients.delete_patient(db_session, world.clinic.id, world.patient.id)
    assert result == {'id': world.patient.id, 'deleted': False, 'active': False}
    assert patients.list_patients(db_session, world.clinic.id, active=True)['total'] == 0


def test_complete_record(db_session, world):
    appt = scheduling.create_appointment(
        db_session,
        world.clinic.id,
        patient_id=world.patient.id,
        doctor_id=world.doctor.id,
        starts_at=at(next_weekday(), 9),
    )
    clinical.upsert_medical_record(db_session, world.clinic.id, appt.id, world.doctor.id, {'diagnosis': 'J06.9'})
    clinical.create_exam_request(
        db_session, world.clinic.id, patient_id=world.patient.id, doctor_id=world.doctor.id, exam_name='TSH'
    )
    record = patients.complete_record(db_session, world.clinic.id, world.patient.id)
    assert record['patient']['id'] == world.patient.id
    assert len(record['appointments']) == 1
    assert record['medical_records'][0]['diagnosis'] == 'J06.9'
    assert len(record['exam_requests']) == 1
    assert record['prescriptions'] == []
    assert record['receivables'] == []


def test_patient_api_crud(client, headers, world):
    resp = client.post('/api/patients', json={'name': 'Maria Lima', 'cpf': OTHER_CPF}, headers=headers.secretary)
    assert resp.status_code == 201
    patient_id = resp.json()['data']['id']

    resp = client.put(f'/api/patients/{patient_id}', json={'phone': '(11) 3333-4444'}, headers=headers.doctor)
    assert resp.json()['data']['phone'] == '1133334444'

    resp = client.get('/api/patients', params={'search': 'maria'}, headers=headers.doctor)
    assert resp.json()['data']['total'] == 1

    resp = client.delete(f'/api/patients/{patient_id}', headers=headers.doctor)
    assert resp.status_code == 403
    resp = client.delete(f'/api/patients/{patient_id}', headers=headers.secretary)
    assert resp.json()['data']['deleted'] is True

    resp = client.post('/api/patients', json={'name': 'Dup', 'cpf': VALID_CPF}, headers=headers.secretary)
    assert resp.status_code == 409


def test_patient_portal(client, headers, db_session, world):
    resp = client.post(
        f'/api/patients/{world.patient.id}/portal-access',
        json={'email': 'joao@email.com', 'password': DEFAULT_PASSWORD},
        headers=headers.secretary,
    )
    assert resp.status_code == 201
    assert resp.json()['data']['email'] == 'joao@email.com'

    resp = client.post(
        f'/api/patients/{world.patient.id}/portal-access',
        json={'email': 'joao2@email.com', 'password': DEFAULT_PASSWORD},
        headers=headers.secretary,
    )
    assert resp.status_code == 409

    scheduling.create_appointment(
        db_session,
        world.clinic.id,
        patient_id=world.patient.id,
        doctor_id=world.doctor.id,
        starts_at=at(next_weekday(), 9),
    )
    prescription = clinical.create_prescription(
        db_session,
        world.clinic.id,
        patient_id=world.patient.id,
        doctor_id=world.doctor.id,
        items=[{'medication': 'Ibuprofeno 400mg'}],
    )
    db_session.commit()

    resp = client.post('/api/auth/login', json={'email': 'joao@email.com', 'password': DEFAULT_PASSWORD})
    assert resp.json()['data']['role'] == 'patient'
    portal = {'Authorization': f"Bearer {resp.json()['data']['access_token']}"}

    resp = client.get('/api/me/appointments', headers=portal)
    assert len(resp.json()['data']) == 1
    resp = client.get('/api/me/prescriptions', headers=portal)
    assert [item['id'] for item in resp.json()['data']] == [prescription.id]
    resp = client.get(f'/api/me/prescriptions/{prescription.id}/pdf', headers=portal)
    assert resp.headers['content-type'] == 'application/pdf'
    resp = client.get('/api/me/exam-requests', headers=portal)
    assert resp.json()['data'] == []

    # Staff tokens cannot use the portal.
    assert client.get('/api/me/appointments', headers=headers.secretary).status_code == 403
    # Nor can a patient read the clinic registry.
    assert client.get('/api/patients', headers=portal).status_code == 403


def test_portal_rejects_weak_password(client, headers, world):
    resp = client.post(
        f'/api/patients/{world.patient.id}/portal-access',
        json={'email': 'joao@email.com', 'password': 'abc'},
        headers=headers.secretary,
    )
    assert resp.status_code == 400
