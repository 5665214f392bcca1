import json
from unittest.mock import MagicMock

from bulkcheck.bulk_data.group_validation import (DEFAULT_RESOURCE_TYPES, BulkDataGroupValidationSequence,
                                                  parse_status_output)
from bulkcheck.bulk_data.http_client import LoggedClient
from bulkcheck.bulk_data.profiles import ProfileRegistry
from bulkcheck.bulk_data.sequence import ERROR, FAIL, OMIT, PASS, SKIP
from bulkcheck.bulk_data.terminology import Terminology
from bulkcheck.bulk_data.validators import empty_result
from tests.fakes import NDJSON, FakeResponse, FakeSession, ndjson_body

FILES = 'https://files.example.org'


def status_output(requires_access_token=True, output=None):
    return json.dumps({
        'transactionTime': '2021-01-01T00:00:00Z',
        'request': 'https://bulk.example.org/fhir/Group/g1/$export',
        'requiresAccessToken': requires_access_token,
        'output': output if output is not None else [
            {'type': 'Patient', 'url': f"{FILES}/Patient.ndjson", 'count': 2},
            {'type': 'Condition', 'url': f"{FILES}/Condition.ndjson", 'count': 1},
        ],
        'error': [],
    })


def limited_backend():
    backend = MagicMock()
    backend.limited = True
    backend.validate.side_effect = lambda resource, profile_url=None: empty_result()
    return backend


def build_sequence(settings, session, output_json):
    return BulkDataGroupValidationSequence(settings, LoggedClient(session=session), output_json,
                                           ProfileRegistry(), Terminology(), limited_backend())


def group_session(patients=('A', 'B')):
    session = FakeSession()
    session.add('GET', f"{FILES}/Patient.ndjson", FakeResponse(401),
                FakeResponse(200, {'Content-Type': NDJSON},
                             ndjson_body([{'resourceType': 'Patient', 'id': p} for p in patients])))
    session.add('GET', f"{FILES}/Condition.ndjson", FakeResponse(200, {'Content-Type': NDJSON}, ndjson_body(
        [{'resourceType': 'Condition', 'id': 'c1', 'subject': {'reference': 'Patient/A'}}])))
    return session


def test_parse_status_output():
    output, requires_access_token = parse_status_output(status_output(requires_access_token='true'))
    assert requires_access_token
    assert [o['type'] for o in output] == ['Patient', 'Condition']
    assert parse_status_output(None) == (None, False)


def test_one_test_per_resource_type():
    steps = BulkDataGroupValidationSequence.test_steps()
    assert len(steps) == 5 + len(DEFAULT_RESOURCE_TYPES)
    assert steps[-1].bulk_test_name == 'Location resources returned conform to the base FHIR Location resource'
    assert [s.bulk_test_id for s in steps] == [f"{i:02d}" for i in range(1, len(steps) + 1)]


def test_group_validation_run(settings):
    session = group_session()
    sequence = build_sequence(settings.with_overrides(patient_ids_in_group=('A', 'B')), session, status_output())

    results = {r.name: r for r in sequence.run()}

    by_id = {r.test_id: r for r in results.values()}
    assert by_id['01'].result == PASS
    assert by_id['02'].result == PASS, by_id['02'].message
    assert 'Authorization' not in session.calls[0]['headers']
    assert session.calls[1]['headers']['Authorization'] == 'Bearer token-123'
    assert by_id['03'].result == PASS
    assert by_id['03'].message == 'Successfully validated 2 resource(s).'
    assert by_id['04'].result == PASS
    assert by_id['05'].result == PASS
    assert results['Condition resources returned conform to the US Core Condition Profile'].result == PASS
    assert results['Medication resources returned conform to the US Core Medication Profile'].result == OMIT
    assert results['Goal resources returned conform to the US Core Goal Profile'].result == SKIP
    assert sequence.patient_ids_seen == {'A', 'B'}


def test_downloadable_without_token_fails(settings):
    session = FakeSession().add('GET', f"{FILES}/Patient.ndjson", FakeResponse(200, {'Content-Type': NDJSON},
                                                                                ndjson_body([{'resourceType': 'Patient',
                                                                                              'id': 'A'}])))
    sequence = build_sequence(settings, session, status_output())
    result = sequence.run_test(BulkDataGroupValidationSequence.test_require_access_token)
    assert result.result == FAIL


def test_access_token_check_skipped_when_not_required(settings):
    sequence = build_sequence(settings, FakeSession(), status_output(requires_access_token=False))
    assert sequence.run_test(BulkDataGroupValidationSequence.test_require_access_token).result == SKIP


def test_missing_status_output_skips(settings):
    sequence = build_sequence(settings, FakeSession(), None)
    results = {r.test_id: r for r in sequence.run()}
    assert results['01'].result == SKIP
    assert results['03'].result == SKIP
    assert results['04'].result == SKIP


def test_broken_ndjson_is_an_error(settings):
    session = FakeSession().add('GET', f"{FILES}/Patient.ndjson",
                                FakeResponse(200, {'Content-Type': NDJSON}, b'{"resourceType": "Patient", "id"\n'))
    sequence = build_sequence(settings, session, status_output())
    result = sequence.run_test(BulkDataGroupValidationSequence.test_validate_patient)
    assert result.result == ERROR
    assert result.message.startswith('JSONDecodeError')
