import pytest

from prontivus import clinics
from prontivus.errors import ConflictError, DomainValidationError

from conftest import DEFAULT_PASSWORD


def test_plan_limits_new_doctors(db_session, world):
    world.plan.max_doctors = 1
    with pytest.raises(DomainValidationError) as excinfo:
        clinics.create_doctor(db_session, world.clinic.id, 'Caio Prado', 'caio@saude.com', DEFAULT_PASSWORD, 'CRM-SP 54321')
    assert excinfo.value.details == {'max_doctors': 1, 'active_doctors': 1}


def test_reactivation_respects_plan_limit(db_session, world):
    world.plan.max_doctors = 2
    colleague = clinics.create_doctor(
        db_session, world.clinic.id, 'Caio Prado', 'caio@saude.com', DEFAULT_PASSWORD, 'CRM-SP 54321'
    )
    clinics.update_doctor(db_session, world.clinic.id, colleague.id, {'active': False})
    clinics.create_doctor(db_session, world.clinic.id, 'Rita Melo', 'rita@saude.com', DEFAULT_PASSWORD, 'CRM-SP 67890')

    with pytest.raises(DomainValidationError):
        clinics.update_doctor(db_session, world.clinic.id, colleague.id, {'active': True})
    assert colleague.active is False

    # Editing an already active doctor is not a reactivation.
    updated = clinics.update_doctor(db_session, world.clinic.id, world.doctor.id, {'active': True, 'specialty': 'Pediatria'})
    assert updated.specialty == 'Pediatria'


def test_doctor_without_email_gets_generated_login(db_session, world):
    doctor = clinics.create_doctor(db_session, world.clinic.id, 'Dr. Caio Prado', None, DEFAULT_PASSWORD, 'CRM-SP 54321')
    assert doctor.user.email == 'drcaioprado@clinicasaude.prontivus.com'
    with pytest.raises(ConflictError):
        clinics.create_doctor(db_session, world.clinic.id, 'Dr. Caio Prado', '', DEFAULT_PASSWORD, 'CRM-SP 99999')
