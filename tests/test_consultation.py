"""AI-assisted consultation workflow, using the offline model."""

import pytest

from prontivus import consultation, openai_client, scheduling
from prontivus.db.models import Appointment, Clinic, ExamRequest, MedicalRecord
from prontivus.errors import DomainValidationError, ExternalServiceError, QuotaExceededError

from conftest import at, next_weekday

DAY = next_weekday(2)


@pytest.fixture()
def appointment(db_session, world):
    appt = scheduling.create_appointment(
        db_session,
        world.clinic.id,
        patient_id=world.patient.id,
        doctor_id=world.doctor.id,
        starts_at=at(DAY, 10),
    )
    db_session.commit()
    return appt


@pytest.fixture()
def started(db_session, world, appointment):
    state = consultation.start_session(db_session, world.clinic.id, appointment.id, world.doctor.id)
    consultation.append_transcript(
        db_session, world.clinic.id, state.id, 'Paciente relata cansaço há duas semanas.', 'paciente'
    )
    return state


def test_start_marks_appointment_in_progress(db_session, world, appointment):
    state = consultation.start_session(db_session, world.clinic.id, appointment.id, world.doctor.id)
    assert state.step == 'transcription'
    assert appointment.status == 'in_progress'
    again = consultation.start_session(db_session, world.clinic.id, appointment.id, world.doctor.id)
    assert again.id == state.id


def test_cannot_start_cancelled_appointment(db_session, world, appointment):
    scheduling.change_status(db_session, world.clinic.id, appointment.id, 'cancelled')
    with pytest.raises(DomainValidationError):
        consultation.start_session(db_session, world.clinic.id, appointment.id, world.doctor.id)


def test_transcript_requires_text(db_session, world, started):
    with pytest.raises(DomainValidationError):
        consultation.append_transcript(db_session, world.clinic.id, started.id, '   ')
    assert started.transcript == [{'text': 'Paciente relata cansaço há duas semanas.', 'speaker': 'paciente'}]


def test_validate_analysis_normalises_reply():
    result = consultation.validate_analysis(
        {
            'anamnese': 'Queixa: febre',
            'cid_codes': [
                {'code': 'A90', 'description': 'Dengue', 'score': 1.7},
                {'code': 'R50.9', 'description': 'Febre', 'score': 'alta'},
                {'code': 'X00'},
            ],
            'exames': [{'nome': 'Sorologia', 'justificativa': 'Suspeita de dengue'}],
            'prescricoes': [{'medicamento': 'Paracetamol', 'posologia': '6/6h'}, {'dosagem': '1g'}],
        }
    )
    assert result['anamnesis'] == 'Queixa: febre'
    assert [c['score'] for c in result['cid_codes']] == [1.0, 0.7]
    assert result['exams'] == [{'name': 'Sorologia', 'type': 'Laboratorial', 'justification': 'Suspeita de dengue'}]
    assert [p['medication'] for p in result['prescriptions']] == ['Paracetamol']
    assert result['prescriptions'][0]['frequency'] == '6/6h'


def test_validate_analysis_defaults_anamnesis():
    assert consultation.validate_analysis({})['anamnesis'] == consultation.DEFAULT_ANAMNESIS


def test_offline_analysis_charges_tokens(db_session, world, started):
    state = consultation.analyze(db_session, world.clinic.id, started.id)
    assert state.step == 'anamnesis'
    assert state.analysis['cid_codes'][0]['code'] == 'Z00.0'
    assert state.analysis['exams'][0]['name'] == 'Hemograma completo'
    assert state.tokens_used > 0
    clinic = db_session.get(Clinic, world.clinic.id)
    assert clinic.tokens_consumed == state.tokens_used


def test_quota_exhausted(db_session, world, started):
    clinic = db_session.get(Clinic, world.clinic.id)
    clinic.tokens_consumed = clinic.monthly_tokens_available
    with pytest.raises(QuotaExceededError) as excinfo:
        consultation.analyze(db_session, world.clinic.id, started.id)
    assert excinfo.value.status_code == 402


def test_ai_failure_maps_to_external_error(db_session, world, started, monkeypatch):
    def fail(*args, **kwargs):
        raise openai_client.AIServiceError('Too many requests', 429)

    monkeypatch.setattr(openai_client, 'call_openai_json', fail)
    with pytest.raises(ExternalServiceError) as excinfo:
        consultation.analyze(db_session, world.clinic.id, started.id)
    assert excinfo.value.message == 'rate limit exceeded'
    assert started.step == 'transcription'


def test_model_reply_is_validated(db_session, world, started, monkeypatch):
    reply = {
        'anamnesis': 'Cansaço',
        'cid_codes': [{'code': 'R53', 'description': 'Mal estar, fadiga', 'score': 0.8}],
        'exams': [{'name': 'TSH'}, {'name': 'Ferritina', 'type': 'Laboratorial'}],
        'prescriptions': [{'medication': 'Sulfato ferroso', 'dosage': '40mg'}],
    }
    monkeypatch.setattr(openai_client, 'call_openai_json', lambda *a, **k: (reply, 321))
    state = consultation.analyze(db_session, world.clinic.id, started.id, 'Hipotireoidismo na família')
    assert state.tokens_used == 321
    assert state.extra_context == 'Hipotireoidismo na família'
    assert len(state.analysis['exams']) == 2


def test_step_rules(db_session, world, started):
    with pytest.raises(DomainValidationError):
        consultation.advance(db_session, world.clinic.id, started.id, 'anamnesis')
    consultation.analyze(db_session, world.clinic.id, started.id)
    with pytest.raises(DomainValidationError):
        consultation.advance(db_session, world.clinic.id, started.id, 'suggestions')
    with pytest.raises(DomainValidationError):
        consultation.advance(db_session, world.clinic.id, started.id, 'finished')
    assert consultation.advance(db_session, world.clinic.id, started.id, 'ai_context').step == 'ai_context'
    assert consultation.advance(db_session, world.clinic.id, started.id, 'transcription').step == 'transcription'
    with pytest.raises(DomainValidationError):
        consultation.advance(db_session, world.clinic.id, started.id, 'limbo')


def test_selection_rejects_unknown_items(db_session, world, started):
    consultation.analyze(db_session, world.clinic.id, started.id)
    with pytest.raises(DomainValidationError):
        consultation.select_suggestions(db_session, world.clinic.id, started.id, cid_codes=['B99'])
    with pytest.raises(DomainValidationError):
        consultation.select_suggestions(db_session, world.clinic.id, started.id, exam_indexes=[3])


def test_full_offline_flow(db_session, world, appointment, started):
    consultation.analyze(db_session, world.clinic.id, started.id)
    consultation.update_anamnesis(db_session, world.clinic.id, started.id, 'Cansaço há 2 semanas, sem febre.')
    state = consultation.select_suggestions(
        db_session, world.clinic.id, started.id, cid_codes=['Z00.0'], exam_indexes=[0]
    )
    assert state.step == 'documents'

    result = consultation.finalize(db_session, world.clinic.id, started.id)
    assert result['appointment_id'] == appointment.id
    assert result['prescription_id'] is None
    assert len(result['exam_request_ids']) == 1

    record = db_session.get(MedicalRecord, result['medical_record_id'])
    assert record.anamnesis == 'Cansaço há 2 semanas, sem febre.'
    assert record.diagnosis == 'Z00.0 - Exame médico geral'
    exam = db_session.get(ExamRequest, result['exam_request_ids'][0])
    assert exam.exam_name == 'Hemograma completo'
    assert db_session.get(Appointment, appointment.id).status == 'completed'
    assert started.step == 'finished'

    with pytest.raises(DomainValidationError):
        consultation.finalize(db_session, world.clinic.id, started.id)


def test_consultation_api_flow(client, headers, world, appointment):
    resp = client.post('/api/consultations', json={'appointment_id': appointment.id}, headers=headers.doctor)
    assert resp.status_code == 201
    session_id = resp.json()['data']['id']

    resp = client.post(
        f'/api/consultations/{session_id}/transcript', json={'text': 'Dor lombar há 3 dias.'}, headers=headers.doctor
    )
    assert resp.status_code == 200

    resp = client.post(f'/api/consultations/{session_id}/analyze', json={}, headers=headers.doctor)
    assert resp.status_code == 200
    assert resp.json()['data']['step'] == 'anamnesis'

    resp = client.post(
        f'/api/consultations/{session_id}/selection', json={'cid_codes': ['Z00.0']}, headers=headers.doctor
    )
    assert resp.json()['data']['step'] == 'documents'

    resp = client.post(f'/api/consultations/{session_id}/finalize', headers=headers.doctor)
    assert resp.status_code == 200
    assert resp.json()['data']['exam_request_ids'] == []


def test_consultation_api_quota_error(client, headers, db_session, world, appointment):
    clinic = db_session.get(Clinic, world.clinic.id)
    clinic.tokens_consumed = clinic.monthly_tokens_available
    db_session.commit()

    resp = client.post('/api/consultations', json={'appointment_id': appointment.id}, headers=headers.doctor)
    session_id = resp.json()['data']['id']
    client.post(f'/api/consultations/{session_id}/transcript', json={'text': 'Tosse seca.'}, headers=headers.doctor)
    resp = client.post(f'/api/consultations/{session_id}/analyze', json={}, headers=headers.doctor)
    assert resp.status_code == 402
    assert resp.json()['error']['code'] == 'quota_exceeded'


def test_secretary_cannot_run_consultation(client, headers, appointment):
    resp = client.post('/api/consultations', json={'appointment_id': appointment.id}, headers=headers.secretary)
    assert resp.status_code == 403
