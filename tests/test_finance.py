"""Payables, receivables, cash flow, delinquency and cash closing."""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from prontivus import clinics, finance, scheduling
from prontivus.db.models import CashFlowEntry
from prontivus.errors import ConflictError, DomainValidationError

from conftest import at

TODAY = date(2030, 3, 15)


def _method(session, clinic_id, name='PIX'):
    return next(m for m in clinics.list_payment_methods(session, clinic_id) if m.name == name)


def test_clinic_seeded_with_payment_methods(db_session, world):
    names = {m.name for m in clinics.list_payment_methods(db_session, world.clinic.id)}
    assert {'Dinheiro', 'PIX', 'Convênio'} <= names


def test_amount_validation(db_session, world):
    with pytest.raises(DomainValidationError):
        finance.create_payable(db_session, world.clinic.id, description='Aluguel', amount='-1', due_date=TODAY)
    with pytest.raises(DomainValidationError):
        finance.create_payable(db_session, world.clinic.id, description='Aluguel', amount='abc', due_date=TODAY)
    with pytest.raises(DomainValidationError):
        finance.create_payable(db_session, world.clinic.id, description=' ', amount='10', due_date=TODAY)


def test_pay_payable_records_outflow(db_session, world):
    pix = _method(db_session, world.clinic.id)
    payable = finance.create_payable(
        db_session, world.clinic.id, description='Aluguel', amount='2500', due_date=TODAY, supplier='Imobiliária'
    )
    assert payable.status == 'pending'
    finance.pay_payable(db_session, world.clinic.id, payable.id, paid_on=TODAY, payment_method_id=pix.id)
    assert payable.status == 'paid'
    assert payable.paid_on == TODAY

    entries = db_session.query(CashFlowEntry).filter_by(payable_id=payable.id).all()
    assert len(entries) == 1
    assert entries[0].kind == 'outflow'
    assert entries[0].amount == Decimal('2500.00')

    with pytest.raises(DomainValidationError):
        finance.pay_payable(db_session, world.clinic.id, payable.id)
    with pytest.raises(DomainValidationError):
        finance.delete_cash_entry(db_session, world.clinic.id, entries[0].id)


def test_receive_records_inflow_and_links_patient(db_session, world):
    appt = scheduling.create_appointment(
        db_session,
        world.clinic.id,
        patient_id=world.patient.id,
        doctor_id=world.doctor.id,
        starts_at=at(TODAY, 9),
    )
    receivable = finance.create_receivable(
        db_session, world.clinic.id, description='Consulta', amount='300', due_date=TODAY, appointment_id=appt.id
    )
    assert receivable.patient_id == world.patient.id
    finance.receive(db_session, world.clinic.id, receivable.id, received_on=TODAY)
    assert receivable.status == 'paid'
    summary = finance.cash_flow_summary(db_session, world.clinic.id, TODAY, TODAY)
    assert summary['inflow'] == 300.0
    assert summary['balance'] == 300.0


def test_refresh_overdue(db_session, world):
    finance.create_payable(db_session, world.clinic.id, description='Luz', amount='100', due_date=TODAY - timedelta(days=1))
    finance.create_payable(db_session, world.clinic.id, description='Água', amount='80', due_date=TODAY)
    finance.create_receivable(
        db_session, world.clinic.id, description='Consulta', amount='200', due_date=TODAY - timedelta(days=3)
    )
    counts = finance.refresh_overdue(db_session, world.clinic.id, today=TODAY)
    assert counts == {'payables': 1, 'receivables': 1}
    listing = finance.list_payables(db_session, world.clinic.id, status='overdue')
    assert [item['description'] for item in listing['items']] == ['Luz']
    assert listing['total'] == 1


def test_cash_flow_summary_by_day(db_session, world):
    cid = world.clinic.id
    finance.create_cash_entry(db_session, cid, kind='inflow', description='Consulta', amount='300', occurred_on=TODAY)
    finance.create_cash_entry(db_session, cid, kind='outflow', description='Material', amount='120.50', occurred_on=TODAY)
    finance.create_cash_entry(
        db_session, cid, kind='inflow', description='Consulta', amount='150', occurred_on=TODAY + timedelta(days=1)
    )
    summary = finance.cash_flow_summary(db_session, cid, TODAY, TODAY + timedelta(days=1))
    assert summary['inflow'] == 450.0
    assert summary['outflow'] == 120.5
    assert summary['balance'] == 329.5
    assert [day['date'] for day in summary['days']] == [TODAY.isoformat(), (TODAY + timedelta(days=1)).isoformat()]
    assert summary['days'][0]['balance'] == 179.5


def test_cash_entry_kind_validated(db_session, world):
    with pytest.raises(DomainValidationError):
        finance.create_cash_entry(db_session, world.clinic.id, kind='sideways', description='x', amount='1')


def test_manual_cash_entry_can_be_deleted(db_session, world):
    entry = finance.create_cash_entry(db_session, world.clinic.id, kind='inflow', description='Troco', amount='5')
    finance.delete_cash_entry(db_session, world.clinic.id, entry.id)
    assert finance.list_cash_entries(db_session, world.clinic.id)['total'] == 0


def test_delinquency_report(db_session, world):
    cid = world.clinic.id
    finance.create_receivable(
        db_session, cid, description='Consulta A', amount='100', due_date=TODAY - timedelta(days=10),
        patient_id=world.patient.id,
    )
    finance.create_receivable(
        db_session, cid, description='Consulta B', amount='50', due_date=TODAY - timedelta(days=20),
        patient_id=world.patient.id,
    )
    finance.create_receivable(db_session, cid, description='Futuro', amount='70', due_date=TODAY + timedelta(days=1))
    report = finance.delinquency_report(db_session, cid, today=TODAY)
    assert [item['description'] for item in report['items']] == ['Consulta B', 'Consulta A']
    assert report['items'][0]['days_overdue'] == 20
    assert report['summary'] == {'total': 150.0, 'count': 2, 'average_days_overdue': 15}

    # The doctor has not seen this patient yet.
    assert finance.delinquency_report(db_session, cid, today=TODAY, doctor_id=world.doctor.id)['items'] == []
    assert finance.delinquency_report(db_session, cid, today=TODAY, search='joão')['summary']['count'] == 2


def test_cash_closing_once_per_day(db_session, world):
    closing = finance.authorize_cash_closing(db_session, world.clinic.id, world.doctor.id, TODAY, 'Sem pendências')
    assert closing.status == 'authorized'
    with pytest.raises(ConflictError):
        finance.authorize_cash_closing(db_session, world.clinic.id, world.doctor.id, TODAY)
    closed = finance.close_cash(db_session, world.clinic.id, closing.id, world.doctor.user_id, 'assinatura')
    assert closed.status == 'closed'
    assert closed.closed_at is not None
    with pytest.raises(DomainValidationError):
        finance.close_cash(db_session, world.clinic.id, closing.id, world.doctor.user_id)


def test_daily_summary_groups_by_method(db_session, world):
    cid = world.clinic.id
    pix = _method(db_session, cid)
    finance.create_cash_entry(
        db_session, cid, kind='inflow', description='Consulta', amount='200', occurred_on=TODAY, payment_method_id=pix.id
    )
    finance.create_cash_entry(db_session, cid, kind='outflow', description='Café', amount='20', occurred_on=TODAY)
    summary = finance.daily_cash_summary(db_session, cid, TODAY)
    assert summary['balance'] == 180.0
    by_method = {item['method']: item for item in summary['by_method']}
    assert by_method['PIX']['inflow'] == 200.0
    assert by_method['Not informed']['outflow'] == 20.0


def test_dashboard_counts(db_session, world):
    cid = world.clinic.id
    scheduling.create_appointment(
        db_session, cid, patient_id=world.patient.id, doctor_id=world.doctor.id, starts_at=at(TODAY, 9)
    )
    finance.create_receivable(db_session, cid, description='Consulta', amount='300', due_date=TODAY)
    finance.create_cash_entry(db_session, cid, kind='inflow', description='Consulta', amount='100', occurred_on=TODAY)
    data = finance.dashboard(db_session, cid, today=TODAY)
    assert data['patients'] == 1
    assert data['appointments_today'] == 1
    assert data['appointments_month']['scheduled'] == 1
    assert data['month_revenue'] == 100.0
    assert data['open_receivables'] == 300.0


def test_finance_api_roles(client, headers, world):
    payload = {'description': 'Aluguel', 'amount': '1500.00', 'due_date': '2030-03-10'}
    resp = client.post('/api/finance/payables', json=payload, headers=headers.doctor)
    assert resp.status_code == 403

    resp = client.post('/api/finance/payables', json=payload, headers=headers.secretary)
    assert resp.status_code == 201
    payable_id = resp.json()['data']['id']

    resp = client.post(f'/api/finance/payables/{payable_id}/pay', json={'on': '2030-03-10'}, headers=headers.secretary)
    assert resp.status_code == 200
    assert resp.json()['data']['status'] == 'paid'

    resp = client.get(
        '/api/finance/cash-flow/summary',
        params={'date_from': '2030-03-01', 'date_to': '2030-03-31'},
        headers=headers.clinic_admin,
    )
    assert resp.json()['data']['outflow'] == 1500.0


def test_cash_closing_api_flow(client, headers, world):
    resp = client.post('/api/finance/cash-closings', json={'day': '2030-03-15'}, headers=headers.secretary)
    assert resp.status_code == 403

    resp = client.post('/api/finance/cash-closings', json={'day': '2030-03-15'}, headers=headers.doctor)
    assert resp.status_code == 201
    closing_id = resp.json()['data']['id']

    resp = client.post('/api/finance/cash-closings', json={'day': '2030-03-15'}, headers=headers.doctor)
    assert resp.status_code == 409

    resp = client.post(f'/api/finance/cash-closings/{closing_id}/close', json={}, headers=headers.secretary)
    assert resp.status_code == 200
    assert resp.json()['data']['status'] == 'closed'
