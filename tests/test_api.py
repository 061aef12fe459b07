"""Response envelopes and system endpoints."""


def test_health(client):
    resp = client.get('/health')
    assert resp.status_code == 200
    body = resp.json()
    assert body['status'] == 'ok'
    assert body['environment'] == 'test'
    assert body['uptime'] >= 0


def test_success_envelope(client, headers, world):
    resp = client.get(f'/api/patients/{world.patient.id}', headers=headers.secretary)
    body = resp.json()
    assert body['success'] is True
    assert body['data']['name'] == 'João Silva'


def test_not_found_envelope(client, headers, world):
    resp = client.get('/api/patients/does-not-exist', headers=headers.secretary)
    assert resp.status_code == 404
    body = resp.json()
    assert body['success'] is False
    assert body['error']['code'] == 'not_found'
    assert body['error']['message'] == 'Patient not found'


def test_request_validation_envelope(client, headers, world):
    resp = client.post('/api/appointments', json={'patient_id': world.patient.id}, headers=headers.secretary)
    assert resp.status_code == 422
    error = resp.json()['error']
    assert error['code'] == 'validation_error'
    fields = {tuple(item['loc'])[-1] for item in error['details']}
    assert {'doctor_id', 'starts_at'} <= fields


def test_domain_validation_is_400(client, headers, world):
    resp = client.post('/api/patients', json={'name': 'X', 'cpf': '00000000000'}, headers=headers.secretary)
    assert resp.status_code == 400
    assert resp.json()['error']['code'] == 'validation_error'


def test_missing_token_rejected(client, world):
    resp = client.get('/api/patients')
    assert resp.status_code in (401, 403)
    assert resp.json()['success'] is False


def test_invalid_token_rejected(client, world):
    resp = client.get('/api/patients', headers={'Authorization': 'Bearer nope'})
    assert resp.status_code == 401
    assert resp.json()['error']['message'] == 'Invalid or expired token'


def test_role_guard_message(client, headers, world):
    resp = client.get('/api/admin/clinics', headers=headers.clinic_admin)
    assert resp.status_code == 403
    assert resp.json()['error']['message'] == 'Insufficient privileges'


def test_metrics_restricted_to_super_admin(client, headers):
    client.get('/health')
    assert client.get('/metrics', headers=headers.clinic_admin).status_code == 403
    resp = client.get('/metrics', headers=headers.super_admin)
    assert resp.status_code == 200
    assert 'prontivus_http_requests_total' in resp.text
