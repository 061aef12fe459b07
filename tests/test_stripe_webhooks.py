import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest
from sqlalchemy import select

from prontivus import clinics, stripe_webhooks
from prontivus.config import get_settings
from prontivus.db.models import Clinic, SubscriptionPayment, User
from prontivus.errors import AuthenticationError, DomainValidationError

SECRET = 'whsec_test'


def sign(payload: str, secret: str = SECRET, timestamp=None) -> str:
    timestamp = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f'{timestamp}.{payload}'.encode(), hashlib.sha256).hexdigest()
    return f't={timestamp},v1={digest}'


def checkout_event(event_id='evt_checkout', email='dono@novaclinica.com', plan='BASICO', cnpj=None):
    obj = {
        'id': 'cs_test_1',
        'customer': 'cus_123',
        'subscription': 'sub_123',
        'customer_details': {'email': email, 'name': 'Dr. Paulo', 'phone': '(11) 98888-7777'},
        'metadata': {'plan': plan},
        'custom_fields': [{'key': 'nome_clinica', 'text': {'value': 'Nova Clínica'}}],
    }
    if cnpj:
        obj['custom_fields'].append({'key': 'cnpj', 'text': {'value': cnpj}})
    return {'id': event_id, 'type': 'checkout.session.completed', 'data': {'object': obj}}


@pytest.fixture()
def stripe_clinic(db_session, world):
    world.clinic.stripe_customer_id = 'cus_existing'
    db_session.commit()
    return world.clinic


def test_generate_secure_password():
    pwd = stripe_webhooks.generate_secure_password(4)
    assert len(pwd) == 10
    assert any(c.isupper() for c in pwd)
    assert any(c.isdigit() for c in pwd)


def test_parse_event_verifies_signature():
    payload = json.dumps({'id': 'evt_1', 'type': 'invoice.paid'})
    assert stripe_webhooks.parse_event(payload, sign(payload), SECRET)['id'] == 'evt_1'
    with pytest.raises(AuthenticationError):
        stripe_webhooks.parse_event(payload, sign(payload, 'whsec_other'), SECRET)
    with pytest.raises(AuthenticationError):
        stripe_webhooks.parse_event(payload, None, SECRET)


def test_parse_event_rejects_stale_signature():
    payload = json.dumps({'id': 'evt_old', 'type': 'invoice.paid'})
    stale = sign(payload, timestamp=int(time.time()) - 3600)
    with pytest.raises(AuthenticationError):
        stripe_webhooks.parse_event(payload, stale, SECRET)


def test_parse_event_rejects_bad_payloads():
    with pytest.raises(DomainValidationError):
        stripe_webhooks.parse_event(b'not json', None, None)
    with pytest.raises(DomainValidationError):
        stripe_webhooks.parse_event(b'{"id": "evt"}', None, None)


def test_checkout_creates_clinic_and_admin(db_session, world):
    result = stripe_webhooks.process_event(db_session, checkout_event())
    assert result == {'status': 'processed', 'event_id': 'evt_checkout', 'outcome': 'created'}

    clinic = db_session.execute(select(Clinic).where(Clinic.stripe_customer_id == 'cus_123')).scalar_one()
    assert clinic.name == 'Nova Clínica'
    assert clinic.plan_id == world.plan.id
    assert len(clinic.cnpj) == 14
    admin = db_session.execute(select(User).where(User.email == 'dono@novaclinica.com')).scalar_one()
    assert admin.role == 'clinic_admin'
    payment = db_session.execute(select(SubscriptionPayment).where(SubscriptionPayment.clinic_id == clinic.id)).scalar_one()
    assert payment.status == 'paid'
    assert payment.method == 'stripe'


def test_duplicate_event_is_not_reprocessed(db_session, world):
    stripe_webhooks.process_event(db_session, checkout_event())
    again = stripe_webhooks.process_event(db_session, checkout_event())
    assert again == {'status': 'duplicate', 'event_id': 'evt_checkout'}
    assert db_session.query(Clinic).count() == 2


def test_checkout_skips_unknown_plan(db_session, world):
    result = stripe_webhooks.process_event(db_session, checkout_event(plan='ENTERPRISE'))
    assert result['outcome'] == 'skipped'


def test_checkout_skips_registered_email(db_session, world):
    result = stripe_webhooks.process_event(db_session, checkout_event(email='ana@saude.com'))
    assert result['outcome'] == 'skipped'


def test_checkout_links_existing_clinic_by_cnpj(db_session, world):
    result = stripe_webhooks.process_event(db_session, checkout_event(cnpj='11.222.333/0001-81'))
    assert result['outcome'] == 'updated'
    assert world.clinic.stripe_customer_id == 'cus_123'


def test_payment_failed_suspends_and_success_reactivates(db_session, stripe_clinic):
    failed = {
        'id': 'evt_fail',
        'type': 'invoice.payment_failed',
        'data': {'object': {'id': 'in_1', 'customer': 'cus_existing', 'amount_due': 29900}},
    }
    assert stripe_webhooks.process_event(db_session, failed)['outcome'] == 'suspended'
    assert stripe_clinic.status == 'suspended'

    stripe_clinic.tokens_consumed = 1999
    paid = {
        'id': 'evt_paid',
        'type': 'invoice.payment_succeeded',
        'data': {'object': {'id': 'in_2', 'customer': 'cus_existing', 'amount_paid': 29900}},
    }
    assert stripe_webhooks.process_event(db_session, paid)['outcome'] == 'reactivated'
    assert stripe_clinic.status == 'active'
    assert stripe_clinic.tokens_consumed == 0
    amounts = sorted(p.amount for p in db_session.query(SubscriptionPayment).all())
    assert amounts == [Decimal('299.00'), Decimal('299.00')]


def test_first_invoice_is_left_to_checkout(db_session, stripe_clinic):
    event = {
        'id': 'evt_first',
        'type': 'invoice.payment_succeeded',
        'data': {'object': {'customer': 'cus_existing', 'billing_reason': 'subscription_create'}},
    }
    assert stripe_webhooks.process_event(db_session, event)['outcome'] == 'ignored'


def test_subscription_deleted_deactivates(db_session, stripe_clinic):
    event = {
        'id': 'evt_del',
        'type': 'customer.subscription.deleted',
        'data': {'object': {'customer': 'cus_existing'}},
    }
    assert stripe_webhooks.process_event(db_session, event)['outcome'] == 'deactivated'
    assert stripe_clinic.status == 'inactive'


def test_unhandled_event_type_ignored(db_session):
    result = stripe_webhooks.process_event(db_session, {'id': 'evt_x', 'type': 'charge.refunded'})
    assert result['outcome'] == 'ignored'


def test_webhook_endpoint_requires_valid_signature(client, world, monkeypatch):
    monkeypatch.setenv('STRIPE_WEBHOOK_SECRET', SECRET)
    get_settings.cache_clear()
    try:
        payload = json.dumps(checkout_event())
        resp = client.post(
            '/api/webhooks/stripe', content=payload, headers={'stripe-signature': sign(payload, 'whsec_wrong')}
        )
        assert resp.status_code == 401

        resp = client.post('/api/webhooks/stripe', content=payload, headers={'stripe-signature': sign(payload)})
        assert resp.status_code == 200
        assert resp.json()['data']['outcome'] == 'created'
    finally:
        get_settings.cache_clear()


def test_webhook_endpoint_without_secret_in_development(client, world, monkeypatch):
    monkeypatch.delenv('STRIPE_WEBHOOK_SECRET', raising=False)
    get_settings.cache_clear()
    try:
        resp = client.post('/api/webhooks/stripe', content=json.dumps({'id': 'evt_dev', 'type': 'ping'}))
        assert resp.status_code == 200
        assert resp.json()['data'] == {'status': 'processed', 'event_id': 'evt_dev', 'outcome': 'ignored'}
    finally:
        get_settings.cache_clear()
