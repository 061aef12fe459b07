from datetime import datetime, timedelta

import pytest

from prontivus import clinics, scheduling
from prontivus.db.models import AppointmentStatus
from prontivus.errors import ConflictError, DomainValidationError, NotFoundError, ScheduleConflictError

from conftest import DEFAULT_PASSWORD, at, next_weekday

DAY = next_weekday(14)


def book(session, world, hour, minute=0, **extra):
    return scheduling.create_appointment(
        session,
        world.clinic.id,
        patient_id=world.patient.id,
        doctor_id=world.doctor.id,
        starts_at=at(DAY, hour, minute),
        **extra,
    )


def test_half_open_overlap():
    nine, half_past, ten = at(DAY, 9), at(DAY, 9, 30), at(DAY, 10)
    assert scheduling.intervals_overlap(nine, ten, half_past, ten + timedelta(minutes=30))
    assert not scheduling.intervals_overlap(nine, half_past, half_past, ten)


def test_status_aliases():
    assert scheduling.normalise_status('Confirmada') == 'confirmed'
    assert scheduling.normalise_status('no-show') == 'no_show'
    assert scheduling.normalise_status(None) == 'scheduled'
    with pytest.raises(DomainValidationError):
        scheduling.normalise_status('sumiu')


def test_booking_defaults(db_session, world):
    appt = book(db_session, world, 9)
    assert appt.status == AppointmentStatus.SCHEDULED.value
    assert appt.duration_minutes == 30
    assert appt.ends_at == at(DAY, 9, 30)


def test_overlapping_booking_conflicts(db_session, world):
    first = book(db_session, world, 9)
    with pytest.raises(ScheduleConflictError) as excinfo:
        book(db_session, world, 9, 15)
    assert excinfo.value.details['conflict']['appointment_id'] == first.id
    assert excinfo.value.status_code == 409


def test_back_to_back_bookings_allowed(db_session, world):
    book(db_session, world, 9)
    second = book(db_session, world, 9, 30)
    assert second.starts_at == at(DAY, 9, 30)


def test_long_appointment_blocks_later_start(db_session, world):
    book(db_session, world, 9, duration_minutes=90)
    with pytest.raises(ScheduleConflictError):
        book(db_session, world, 10)


def test_day_long_appointment_blocks_next_morning(db_session, world):
    book(db_session, world, 8, duration_minutes=scheduling.MAX_APPOINTMENT_MINUTES)
    next_morning = at(DAY + timedelta(days=1), 7, 30)
    with pytest.raises(ScheduleConflictError):
        scheduling.create_appointment(
            db_session,
            world.clinic.id,
            patient_id=world.patient.id,
            doctor_id=world.doctor.id,
            starts_at=next_morning,
        )


def test_duration_is_capped(db_session, world):
    with pytest.raises(DomainValidationError):
        book(db_session, world, 8, duration_minutes=scheduling.MAX_APPOINTMENT_MINUTES + 1)
    appt = book(db_session, world, 9)
    with pytest.raises(DomainValidationError):
        scheduling.update_appointment(db_session, world.clinic.id, appt.id, {'duration_minutes': 30 * 60})
    with pytest.raises(DomainValidationError):
        scheduling.update_appointment(db_session, world.clinic.id, appt.id, {'duration_minutes': 0})
    assert appt.duration_minutes == 30


def test_cancelled_appointment_frees_slot(db_session, world):
    first = book(db_session, world, 9)
    scheduling.change_status(db_session, world.clinic.id, first.id, 'cancelada')
    assert book(db_session, world, 9).status == 'scheduled'


def test_reschedule_excludes_itself(db_session, world):
    appt = book(db_session, world, 9)
    moved = scheduling.update_appointment(
        db_session, world.clinic.id, appt.id, {'starts_at': at(DAY, 9, 15)}
    )
    assert moved.starts_at == at(DAY, 9, 15)


def test_block_prevents_booking(db_session, world):
    block = scheduling.create_block(db_session, world.clinic.id, world.doctor.id, at(DAY, 12), at(DAY, 14), 'Almoço')
    with pytest.raises(ScheduleConflictError) as excinfo:
        book(db_session, world, 13)
    assert excinfo.value.details['block']['block_id'] == block.id
    assert book(db_session, world, 14).starts_at == at(DAY, 14)


def test_block_over_existing_appointment_rejected(db_session, world):
    book(db_session, world, 10)
    with pytest.raises(ScheduleConflictError):
        scheduling.create_block(db_session, world.clinic.id, world.doctor.id, at(DAY, 9), at(DAY, 11))


def test_block_requires_positive_interval(db_session, world):
    with pytest.raises(DomainValidationError):
        scheduling.create_block(db_session, world.clinic.id, world.doctor.id, at(DAY, 11), at(DAY, 11))


def test_delete_block(db_session, world):
    block = scheduling.create_block(db_session, world.clinic.id, world.doctor.id, at(DAY, 8), at(DAY, 9))
    assert len(scheduling.list_blocks(db_session, world.clinic.id, on_date=DAY)) == 1
    scheduling.delete_block(db_session, world.clinic.id, block.id)
    assert scheduling.list_blocks(db_session, world.clinic.id, on_date=DAY) == []


def test_available_slots_skip_busy_times(db_session, world):
    book(db_session, world, 9)
    scheduling.create_block(db_session, world.clinic.id, world.doctor.id, at(DAY, 12), at(DAY, 13))
    slots = scheduling.available_slots(db_session, world.clinic.id, world.doctor.id, DAY)
    assert slots[0] == '08:00'
    assert slots[-1] == '17:30'
    assert '09:00' not in slots
    assert '12:00' not in slots and '12:30' not in slots
    assert '09:30' in slots
    assert len(slots) == 20 - 3


def test_available_slots_today_respect_margin(db_session, world):
    now = datetime.combine(DAY, datetime.min.time()).replace(hour=10, minute=25)
    slots = scheduling.available_slots(db_session, world.clinic.id, world.doctor.id, DAY, now=now)
    assert slots[0] == '11:00'


def test_available_slots_past_day_empty(db_session, world):
    now = datetime.combine(DAY + timedelta(days=1), datetime.min.time())
    assert scheduling.available_slots(db_session, world.clinic.id, world.doctor.id, DAY, now=now) == []


def test_return_limit_enforced(db_session, world):
    """The fixture doctor accepts a single RETURN per day."""
    return_type = world.type_id('RETURN')
    book(db_session, world, 9, consultation_type_id=return_type)
    status = scheduling.return_limit_status(db_session, world.clinic.id, world.doctor.id, DAY)
    assert status == {
        'doctor_id': world.doctor.id,
        'date': DAY.isoformat(),
        'limit': 1,
        'count': 1,
        'reached': True,
    }
    with pytest.raises(DomainValidationError):
        book(db_session, world, 10, consultation_type_id=return_type)
    # Other consultation types are not limited.
    book(db_session, world, 10, consultation_type_id=world.type_id('FIRST_VISIT'))


def test_return_limit_applies_to_edits(db_session, world):
    return_type = world.type_id('RETURN')
    first = book(db_session, world, 9, consultation_type_id=return_type)
    other = book(db_session, world, 10, consultation_type_id=world.type_id('FIRST_VISIT'))
    with pytest.raises(DomainValidationError):
        scheduling.update_appointment(db_session, world.clinic.id, other.id, {'consultation_type_id': return_type})
    assert other.consultation_type_id == world.type_id('FIRST_VISIT')

    later = scheduling.create_appointment(
        db_session,
        world.clinic.id,
        patient_id=world.patient.id,
        doctor_id=world.doctor.id,
        starts_at=at(DAY + timedelta(days=1), 9),
        consultation_type_id=return_type,
    )
    with pytest.raises(DomainValidationError):
        scheduling.update_appointment(db_session, world.clinic.id, later.id, {'starts_at': at(DAY, 11)})
    # Moving the day's own RETURN within the day does not count it twice.
    moved = scheduling.update_appointment(db_session, world.clinic.id, first.id, {'starts_at': at(DAY, 8)})
    assert moved.starts_at == at(DAY, 8)


def test_update_rejects_unknown_consultation_type(db_session, world):
    appt = book(db_session, world, 9)
    with pytest.raises(NotFoundError):
        scheduling.update_appointment(db_session, world.clinic.id, appt.id, {'consultation_type_id': 'missing'})


def test_status_transitions(db_session, world):
    appt = book(db_session, world, 9)
    scheduling.change_status(db_session, world.clinic.id, appt.id, 'confirmed')
    assert appt.checked_in_at is not None
    scheduling.change_status(db_session, world.clinic.id, appt.id, 'em_atendimento')
    scheduling.change_status(db_session, world.clinic.id, appt.id, 'completed')
    with pytest.raises(DomainValidationError):
        scheduling.change_status(db_session, world.clinic.id, appt.id, 'scheduled')
    with pytest.raises(DomainValidationError):
        scheduling.update_appointment(db_session, world.clinic.id, appt.id, {'notes': 'tarde demais'})


def test_cannot_complete_without_starting(db_session, world):
    appt = book(db_session, world, 9)
    with pytest.raises(DomainValidationError):
        scheduling.change_status(db_session, world.clinic.id, appt.id, 'completed')


def test_check_in(db_session, world):
    appt = book(db_session, world, 9)
    queue = scheduling.checkin_queue(db_session, world.clinic.id, DAY)
    assert [a.id for a in queue] == [appt.id]
    checked = scheduling.check_in(db_session, world.clinic.id, appt.id)
    assert checked.status == 'confirmed'
    assert checked.checked_in_at is not None
    assert scheduling.check_in(db_session, world.clinic.id, appt.id).status == 'confirmed'


def test_suggest_return_date(db_session, world):
    today = DAY + timedelta(days=5)
    assert scheduling.suggest_return_date(
        db_session, world.clinic.id, world.patient.id, world.doctor.id, today=today
    ) is None
    book(db_session, world, 9, consultation_type_id=world.type_id('RETURN'))
    suggestion = scheduling.suggest_return_date(
        db_session, world.clinic.id, world.patient.id, world.doctor.id, today=today
    )
    assert suggestion['suggested_date'] == (DAY + timedelta(days=30)).isoformat()
    assert suggestion['interval_days'] == 30


def test_suggest_return_ignores_future_visits(db_session, world):
    book(db_session, world, 9, consultation_type_id=world.type_id('RETURN'))
    today = DAY - timedelta(days=10)
    assert scheduling.suggest_return_date(
        db_session, world.clinic.id, world.patient.id, world.doctor.id, today=today
    ) is None
    # A visit later on the same day still counts.
    assert scheduling.suggest_return_date(
        db_session, world.clinic.id, world.patient.id, world.doctor.id, today=DAY
    )['last_return_at'] == at(DAY, 9).isoformat()


def test_waitlist_call_books_and_removes_entry(db_session, world):
    entry = scheduling.add_to_waitlist(db_session, world.clinic.id, world.doctor.id, world.patient.id, notes='Manhã')
    with pytest.raises(ConflictError):
        scheduling.add_to_waitlist(db_session, world.clinic.id, world.doctor.id, world.patient.id)
    appt = scheduling.call_from_waitlist(db_session, world.clinic.id, entry.id, starts_at=at(DAY, 8))
    assert appt.notes == 'Manhã'
    assert scheduling.list_waitlist(db_session, world.clinic.id) == []


def test_waitlist_call_respects_conflicts(db_session, world):
    book(db_session, world, 8)
    entry = scheduling.add_to_waitlist(db_session, world.clinic.id, world.doctor.id, world.patient.id)
    with pytest.raises(ScheduleConflictError):
        scheduling.call_from_waitlist(db_session, world.clinic.id, entry.id, starts_at=at(DAY, 8))


def test_export_ics(db_session, world):
    appt = book(db_session, world, 9, notes='Trazer exames')
    ics = scheduling.export_appointment_ics(appt)
    assert 'BEGIN:VCALENDAR' in ics
    assert f"DTSTART:{DAY.strftime('%Y%m%d')}T090000" in ics
    assert 'SUMMARY:Consulta - Ana Souza' in ics
    assert 'DESCRIPTION:Trazer exames' in ics


def test_api_conflict_returns_409(client, headers, world):
    payload = {
        'patient_id': world.patient.id,
        'doctor_id': world.doctor.id,
        'starts_at': at(DAY, 9).isoformat(),
    }
    resp = client.post('/api/appointments', json=payload, headers=headers.secretary)
    assert resp.status_code == 201
    assert resp.json()['data']['status'] == 'scheduled'

    resp = client.post('/api/appointments', json=payload, headers=headers.secretary)
    assert resp.status_code == 409
    error = resp.json()['error']
    assert error['code'] == 'schedule_conflict'
    assert 'conflict' in error['details']


def test_api_slots_and_ics(client, headers, world):
    resp = client.post(
        '/api/appointments',
        json={'patient_id': world.patient.id, 'doctor_id': world.doctor.id, 'starts_at': at(DAY, 8).isoformat()},
        headers=headers.secretary,
    )
    appointment_id = resp.json()['data']['id']

    resp = client.get(
        '/api/schedule/slots',
        params={'doctor_id': world.doctor.id, 'date': DAY.isoformat()},
        headers=headers.doctor,
    )
    assert resp.status_code == 200
    assert resp.json()['data']['slots'][0] == '08:30'

    resp = client.get(f'/api/appointments/{appointment_id}/ics', headers=headers.secretary)
    assert resp.headers['content-type'].startswith('text/calendar')
    assert 'BEGIN:VEVENT' in resp.text


def test_doctor_cannot_book_appointments(client, headers, world):
    resp = client.post(
        '/api/appointments',
        json={'patient_id': world.patient.id, 'doctor_id': world.doctor.id, 'starts_at': at(DAY, 9).isoformat()},
        headers=headers.doctor,
    )
    assert resp.status_code == 403


def test_doctor_blocks_own_schedule(client, headers, world):
    resp = client.post(
        '/api/schedule/blocks',
        json={'starts_at': at(DAY, 12).isoformat(), 'ends_at': at(DAY, 13).isoformat(), 'reason': 'Congresso'},
        headers=headers.doctor,
    )
    assert resp.status_code == 201
    assert resp.json()['data']['doctor_id'] == world.doctor.id


def test_doctor_cannot_delete_colleague_block(client, headers, db_session, world):
    colleague = clinics.create_doctor(
        db_session, world.clinic.id, 'Caio Prado', 'caio@saude.com', DEFAULT_PASSWORD, 'CRM-SP 54321'
    )
    block = scheduling.create_block(db_session, world.clinic.id, colleague.id, at(DAY, 12), at(DAY, 13), 'Férias')
    db_session.commit()

    resp = client.delete(f'/api/schedule/blocks/{block.id}', headers=headers.doctor)
    assert resp.status_code == 403
    resp = client.delete(f'/api/schedule/blocks/{block.id}', headers=headers.secretary)
    assert resp.json()['data'] == {'id': block.id, 'deleted': True}


def test_api_rejects_oversized_duration(client, headers, world):
    resp = client.post(
        '/api/appointments',
        json={
            'patient_id': world.patient.id,
            'doctor_id': world.doctor.id,
            'starts_at': at(DAY, 8).isoformat(),
            'duration_minutes': 30 * 60,
        },
        headers=headers.secretary,
    )
    assert resp.status_code == 422
