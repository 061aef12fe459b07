import pytest

from prontivus import clinical, clinics, scheduling
from prontivus.errors import DomainValidationError, NotFoundError, PermissionDeniedError

from conftest import DEFAULT_PASSWORD, at, next_weekday

DAY = next_weekday(3)


@pytest.fixture()
def appointment(db_session, world):
    appt = scheduling.create_appointment(
        db_session,
        world.clinic.id,
        patient_id=world.patient.id,
        doctor_id=world.doctor.id,
        starts_at=at(DAY, 9),
    )
    db_session.commit()
    return appt


@pytest.fixture()
def second_doctor(db_session, world):
    doctor = clinics.create_doctor(
        db_session, world.clinic.id, 'Caio Prado', 'caio@saude.com', DEFAULT_PASSWORD, 'CRM-SP 54321'
    )
    db_session.commit()
    return doctor


def test_medical_record_upsert(db_session, world, appointment):
    first = clinical.upsert_medical_record(
        db_session, world.clinic.id, appointment.id, world.doctor.id, {'anamnesis': 'Dor de cabeça'}
    )
    second = clinical.upsert_medical_record(
        db_session, world.clinic.id, appointment.id, world.doctor.id, {'diagnosis': 'Cefaleia', 'anamnesis': None}
    )
    assert first.id == second.id
    assert second.anamnesis == 'Dor de cabeça'
    assert second.diagnosis == 'Cefaleia'
    assert clinical.get_medical_record(db_session, world.clinic.id, appointment.id).id == first.id


def test_record_only_by_appointment_doctor(db_session, world, appointment, second_doctor):
    with pytest.raises(PermissionDeniedError):
        clinical.upsert_medical_record(db_session, world.clinic.id, appointment.id, second_doctor.id, {})


def test_record_rejected_for_cancelled_appointment(db_session, world, appointment):
    scheduling.change_status(db_session, world.clinic.id, appointment.id, 'cancelled')
    with pytest.raises(DomainValidationError):
        clinical.upsert_medical_record(db_session, world.clinic.id, appointment.id, world.doctor.id, {})


def test_missing_record(db_session, world, appointment):
    with pytest.raises(NotFoundError):
        clinical.get_medical_record(db_session, world.clinic.id, appointment.id)


def test_prescription_items_cleaned(db_session, world, appointment):
    prescription = clinical.create_prescription(
        db_session,
        world.clinic.id,
        patient_id=world.patient.id,
        doctor_id=world.doctor.id,
        appointment_id=appointment.id,
        items=[{'medication': ' Dipirona 500mg ', 'dosage': '1 comprimido', 'frequency': '', 'duration': None}],
    )
    assert prescription.items == [{'medication': 'Dipirona 500mg', 'dosage': '1 comprimido'}]


def test_prescription_requires_items(db_session, world):
    with pytest.raises(DomainValidationError):
        clinical.create_prescription(
            db_session, world.clinic.id, patient_id=world.patient.id, doctor_id=world.doctor.id, items=[]
        )
    with pytest.raises(DomainValidationError):
        clinical.create_prescription(
            db_session,
            world.clinic.id,
            patient_id=world.patient.id,
            doctor_id=world.doctor.id,
            items=[{'dosage': '10 gotas'}],
        )


def test_exam_request_lifecycle(db_session, world, appointment):
    request = clinical.create_exam_request(
        db_session,
        world.clinic.id,
        patient_id=world.patient.id,
        doctor_id=world.doctor.id,
        appointment_id=appointment.id,
        exam_name='Glicemia de jejum',
    )
    assert request.exam_type == 'Laboratorial'
    assert request.status == 'requested'
    done = clinical.complete_exam_request(db_session, world.clinic.id, request.id, 'Normal')
    assert done.status == 'completed'
    assert done.completed_at is not None
    with pytest.raises(DomainValidationError):
        clinical.complete_exam_request(db_session, world.clinic.id, request.id)


def test_patient_history_lists_completed_visits(db_session, world, appointment):
    scheduling.change_status(db_session, world.clinic.id, appointment.id, 'in_progress')
    clinical.upsert_medical_record(
        db_session, world.clinic.id, appointment.id, world.doctor.id, {'diagnosis': 'J06.9'}
    )
    assert clinical.patient_history(db_session, world.clinic.id, world.patient.id) == []
    scheduling.change_status(db_session, world.clinic.id, appointment.id, 'completed')
    history = clinical.patient_history(db_session, world.clinic.id, world.patient.id)
    assert len(history) == 1
    assert history[0]['appointment']['id'] == appointment.id
    assert history[0]['medical_record']['diagnosis'] == 'J06.9'


def test_record_api_is_doctor_only(client, headers, world, appointment):
    resp = client.put(
        f'/api/clinical/records/{appointment.id}', json={'anamnesis': 'Tosse'}, headers=headers.secretary
    )
    assert resp.status_code == 403

    resp = client.put(f'/api/clinical/records/{appointment.id}', json={'anamnesis': 'Tosse'}, headers=headers.doctor)
    assert resp.status_code == 200
    resp = client.get(f'/api/clinical/records/{appointment.id}', headers=headers.doctor)
    assert resp.json()['data']['anamnesis'] == 'Tosse'


def test_prescription_api(client, headers, world, appointment):
    resp = client.post(
        '/api/clinical/prescriptions',
        json={
            'patient_id': world.patient.id,
            'appointment_id': appointment.id,
            'items': [{'medication': 'Amoxicilina 500mg', 'frequency': '8/8h', 'duration': '7 dias'}],
        },
        headers=headers.doctor,
    )
    assert resp.status_code == 201
    resp = client.get('/api/clinical/prescriptions', params={'patient_id': world.patient.id}, headers=headers.doctor)
    assert len(resp.json()['data']) == 1
