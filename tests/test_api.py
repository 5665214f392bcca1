import json
from unittest.mock import patch

import pytest

from bulkcheck import db
from bulkcheck.models import RequestResponse, SequenceResult, TestingInstance
from bulkcheck.services import clear_engine_cache, overall_result
from tests.fakes import NDJSON, FakeResponse
from tests.test_export import BASE, COMPLETE_STATUS, export_session


# Helper function to parse NDJSON stream
def parse_ndjson(byte_stream):
    decoded_stream = byte_stream.decode('utf-8').strip()
    if not decoded_stream:
        return []
    return [json.loads(line) for line in decoded_stream.split('\n') if line.strip()]


INSTANCE_JSON = {
    'name': 'Reference server',
    'bulk_url': BASE,
    'bulk_access_token': 'token-123',
    'bulk_group_id': 'g1',
    'bulk_lines_to_validate': '',
    'bulk_patient_ids_in_group': 'A, B',
    'bulk_timeout': 30,
}


@pytest.fixture(autouse=True)
def fresh_engine():
    clear_engine_cache()
    yield
    clear_engine_cache()


def create_instance(client, api_headers, **overrides):
    response = client.post('/api/instances', headers=api_headers, data=json.dumps(dict(INSTANCE_JSON, **overrides)))
    assert response.status_code == 201, response.get_json()
    return response.get_json()['instance']


# --- Authentication ---

def test_missing_api_key_is_rejected(client):
    response = client.get('/api/instances/1')
    assert response.status_code == 401
    assert response.get_json() == {'status': 'error', 'message': 'API key missing'}


def test_wrong_api_key_is_rejected(client):
    response = client.get('/api/instances/1', headers={'X-API-Key': 'nope'})
    assert response.status_code == 401
    assert response.get_json()['message'] == 'Invalid API key'


# --- Instances ---

def test_create_and_get_instance(client, api_headers):
    created = create_instance(client, api_headers)
    assert created['bulk_url'] == BASE
    assert created['has_access_token'] is True
    assert 'bulk_access_token' not in created

    response = client.get(f"/api/instances/{created['id']}", headers=api_headers)
    assert response.status_code == 200
    assert response.get_json()['instance']['bulk_patient_ids_in_group'] == 'A, B'


@pytest.mark.parametrize('overrides,field', [
    ({'bulk_url': 'not a url'}, 'bulk_url'),
    ({'bulk_lines_to_validate': 'ten'}, 'bulk_lines_to_validate'),
    ({'bulk_patient_ids_in_group': 'A, A'}, 'bulk_patient_ids_in_group'),
    ({'bulk_device_types_in_group': 'pacemaker'}, 'bulk_device_types_in_group'),
])
def test_invalid_instance_is_rejected(client, api_headers, overrides, field):
    response = client.post('/api/instances', headers=api_headers, data=json.dumps(dict(INSTANCE_JSON, **overrides)))
    assert response.status_code == 400
    assert field in response.get_json()['errors']


def test_unknown_instance_is_404(client, api_headers):
    assert client.get('/api/instances/999', headers=api_headers).status_code == 404
    assert client.post('/api/instances/999/export', headers=api_headers).status_code == 404


def test_non_json_body_is_rejected(client):
    response = client.post('/api/instances', headers={'X-API-Key': 'test-api-key'}, data='bulk_url=x')
    assert response.status_code == 400


# --- Sequences ---

def test_run_export_streams_results_and_persists_them(client, api_headers):
    instance = create_instance(client, api_headers)

    with patch('bulkcheck.services.requests.Session', return_value=export_session()):
        response = client.post(f"/api/instances/{instance['id']}/export", headers=api_headers)
        lines = parse_ndjson(response.data)

    assert response.status_code == 200
    assert response.mimetype == 'application/x-ndjson'
    assert lines[0]['type'] == 'start'
    assert lines[0]['sequence'] == 'BulkDataExportSequence'
    results = [line['data'] for line in lines if line['type'] == 'result']
    assert [r['test_id'] for r in results] == [f"{i:02d}" for i in range(1, 11)]
    assert all(r['result'] == 'pass' for r in results), results
    assert lines[-1] == {'type': 'complete', 'data': {'result': 'pass', 'counts': {
        'pass': 10, 'fail': 0, 'skip': 0, 'omit': 0, 'error': 0}}}

    stored = db.session.get(TestingInstance, instance['id'])
    assert json.loads(stored.bulk_status_output) == COMPLETE_STATUS
    assert SequenceResult.query.count() == 1
    assert RequestResponse.query.filter_by(testing_instance_id=instance['id']).count() >= 8

    results_response = client.get(f"/api/instances/{instance['id']}/results", headers=api_headers)
    sequence = results_response.get_json()['results'][0]
    assert sequence['result'] == 'pass'
    assert len(sequence['test_results']) == 10

    requests_response = client.get(f"/api/instances/{instance['id']}/requests", headers=api_headers)
    logged = requests_response.get_json()['requests']
    assert logged[0]['url'] == f"{BASE}/metadata"
    assert logged[0]['response_code'] == 200


def test_run_group_validation_uses_persisted_status(client, api_headers):
    instance = create_instance(client, api_headers, bulk_patient_ids_in_group='A, B')
    stored = db.session.get(TestingInstance, instance['id'])
    stored.bulk_status_output = json.dumps(dict(COMPLETE_STATUS, requiresAccessToken=False))
    db.session.commit()

    patients = [
        {'resourceType': 'Patient', 'id': 'A', 'gender': 'female'},
        {'resourceType': 'Patient', 'id': 'B', 'gender': 'male'},
    ]
    body = ''.join(json.dumps(p) + '\n' for p in patients)
    file_session = export_session()
    file_session.add('GET', COMPLETE_STATUS['output'][0]['url'], FakeResponse(200, {'Content-Type': NDJSON}, body))

    with patch('bulkcheck.services.requests.Session', return_value=file_session):
        response = client.post(f"/api/instances/{instance['id']}/group-validation", headers=api_headers)
        lines = parse_ndjson(response.data)

    by_id = {line['data']['test_id']: line['data'] for line in lines if line['type'] == 'result'}
    assert by_id['02']['result'] == 'skip'
    assert by_id['04']['result'] == 'pass'
    assert by_id['05']['result'] == 'pass'
    assert lines[-1]['type'] == 'complete'


def test_sequence_crash_is_reported_as_error_line(client, api_headers):
    instance = create_instance(client, api_headers)
    with patch('bulkcheck.services.build_sequence', side_effect=RuntimeError('boom')):
        lines = parse_ndjson(client.post(f"/api/instances/{instance['id']}/export", headers=api_headers).data)
    assert [line['type'] for line in lines] == ['start', 'error', 'complete']
    assert lines[1]['message'] == 'Sequence aborted: boom'
    assert lines[-1]['data']['result'] == 'fail'


def test_overall_result():
    assert overall_result({'pass': 3, 'fail': 1}) == 'fail'
    assert overall_result({'pass': 3, 'error': 1}) == 'fail'
    assert overall_result({'pass': 3, 'skip': 2}) == 'pass'
    assert overall_result({'skip': 2, 'omit': 1}) == 'skip'
