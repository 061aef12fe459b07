from datetime import date

import pytest

from prontivus import clinical, documents, patients, scheduling
from prontivus.errors import DomainValidationError

from conftest import OTHER_CPF, at, next_weekday

DAY = next_weekday(4)


@pytest.fixture()
def appointment(db_session, world):
    appt = scheduling.create_appointment(
        db_session,
        world.clinic.id,
        patient_id=world.patient.id,
        doctor_id=world.doctor.id,
        starts_at=at(DAY, 14),
    )
    db_session.commit()
    return appt


def _exam(db_session, world, name, patient_id=None):
    return clinical.create_exam_request(
        db_session,
        world.clinic.id,
        patient_id=patient_id or world.patient.id,
        doctor_id=world.doctor.id,
        exam_name=name,
        justification='Rotina',
    )


def test_render_pdf_from_text_paginates():
    content = documents.render_pdf_from_text('\n'.join(f'linha {i}' for i in range(200)), 'Teste')
    assert content.startswith(b'%PDF-1.4')
    assert content.rstrip().endswith(b'%%EOF')
    assert b'/Count 4' in content


def test_render_pdf_rejects_empty_text():
    with pytest.raises(ValueError):
        documents.render_pdf_from_text('\n\n', 'Vazio')


def test_prescription_pdf(db_session, world):
    prescription = clinical.create_prescription(
        db_session,
        world.clinic.id,
        patient_id=world.patient.id,
        doctor_id=world.doctor.id,
        items=[{'medication': 'Dipirona 500mg', 'frequency': '6/6h'}],
    )
    filename, content = documents.prescription_pdf(world.clinic, prescription)
    assert filename.startswith('receita-')
    assert filename.endswith('.pdf')
    assert content.startswith(b'%PDF-1.4')
    assert b'1. Dipirona 500mg' in content
    assert 'João Silva'.encode('latin-1') in content
    assert b'CNPJ: 11.222.333/0001-81' in content
    assert b'CRM: CRM-SP 12345' in content


def test_certificate_pdf(db_session, world):
    filename, content = documents.medical_certificate_pdf(
        world.clinic, world.patient, world.doctor, 3, 'J11', date(2030, 5, 2)
    )
    assert filename.startswith('atestado-')
    assert b'CID-10: J11' in content
    assert b'Emitido em 02/05/2030' in content


def test_certificate_requires_a_day(world):
    with pytest.raises(DomainValidationError):
        documents.medical_certificate_pdf(world.clinic, world.patient, world.doctor, 0)


def test_attendance_declaration(world, appointment):
    filename, content = documents.attendance_declaration_pdf(world.clinic, appointment)
    assert filename.startswith('declaracao-')
    assert b'14:00' in content


def test_exam_guide_lists_requests(db_session, world):
    requests = [_exam(db_session, world, 'Hemograma completo'), _exam(db_session, world, 'TSH')]
    filename, content = documents.exam_request_pdf(world.clinic, requests)
    assert filename.startswith('exames-')
    assert rb'1. Hemograma completo \(Laboratorial\)' in content
    assert rb'2. TSH \(Laboratorial\)' in content


def test_exam_guide_prints_patient_contact(db_session, world):
    world.clinic.phone = '1133334444'
    world.patient.mobile = '11987654321'
    world.patient.address = 'Rua das Flores, 10'
    world.patient.zip_code = '01310100'
    _, content = documents.exam_request_pdf(world.clinic, [_exam(db_session, world, 'TSH')])
    assert rb'Tel: \(11\) 3333-4444' in content
    assert rb'Telefone: \(11\) 98765-4321' in content
    assert 'Endereço: Rua das Flores, 10 - CEP 01310-100'.encode('latin-1') in content


def test_exam_guide_single_patient(db_session, world):
    other = patients.create_patient(db_session, world.clinic.id, {'name': 'Maria Lima', 'cpf': OTHER_CPF})
    requests = [_exam(db_session, world, 'TSH'), _exam(db_session, world, 'TSH', patient_id=other.id)]
    with pytest.raises(DomainValidationError):
        documents.exam_request_pdf(world.clinic, requests)
    with pytest.raises(DomainValidationError):
        documents.exam_request_pdf(world.clinic, [])


def test_document_endpoints_return_pdf(client, headers, db_session, world, appointment):
    prescription = clinical.create_prescription(
        db_session,
        world.clinic.id,
        patient_id=world.patient.id,
        doctor_id=world.doctor.id,
        items=[{'medication': 'Loratadina 10mg'}],
    )
    exam = _exam(db_session, world, 'Glicemia')
    db_session.commit()

    resp = client.get(f'/api/documents/prescriptions/{prescription.id}', headers=headers.doctor)
    assert resp.status_code == 200
    assert resp.headers['content-type'] == 'application/pdf'
    assert 'receita-' in resp.headers['content-disposition']

    resp = client.post(
        '/api/documents/certificate', json={'patient_id': world.patient.id, 'days': 2}, headers=headers.doctor
    )
    assert resp.content.startswith(b'%PDF')

    resp = client.get(f'/api/documents/attendance/{appointment.id}', headers=headers.secretary)
    assert resp.status_code == 200

    resp = client.post('/api/documents/exam-requests', json={'exam_request_ids': [exam.id]}, headers=headers.doctor)
    assert resp.status_code == 200
    assert 'exames-' in resp.headers['content-disposition']


def test_secretary_cannot_print_prescriptions(client, headers, db_session, world):
    prescription = clinical.create_prescription(
        db_session,
        world.clinic.id,
        patient_id=world.patient.id,
        doctor_id=world.doctor.id,
        items=[{'medication': 'Loratadina 10mg'}],
    )
    db_session.commit()
    resp = client.get(f'/api/documents/prescriptions/{prescription.id}', headers=headers.secretary)
    assert resp.status_code == 403
