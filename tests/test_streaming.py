import json
from unittest.mock import MagicMock

import pytest
import requests

from bulkcheck.bulk_data.http_client import LoggedClient
from bulkcheck.bulk_data.streaming import (MAX_RECENT_LINE_SIZE, NDJSONStream, iter_ndjson_lines, media_type,
                                           truncation_notice)
from tests.fakes import NDJSON, FakeResponse, FakeSession, ndjson_body

BODY = (
    '{"resourceType": "Patient", "id": "A", "name": [{"family": "Müller"}]}\n'
    '\n'
    '{"resourceType": "Patient", "id": "B"}\r\n'
    '   \n'
    '{"resourceType": "Patient", "id": "患者"}'
).encode('utf-8')


def whole_body_lines(body):
    return [line.strip() for line in body.decode('utf-8').split('\n') if line.strip()]


def test_lines_identical_for_every_split_point():
    expected = whole_body_lines(BODY)
    assert len(expected) == 3
    for split_at in range(len(BODY) + 1):
        chunks = [BODY[:split_at], BODY[split_at:]]
        assert list(iter_ndjson_lines(chunks)) == expected, f"split at byte {split_at}"


def test_lines_identical_for_single_byte_chunks():
    chunks = [BODY[i:i + 1] for i in range(len(BODY))]
    assert list(iter_ndjson_lines(chunks)) == whole_body_lines(BODY)


def test_trailing_fragment_is_flushed_and_blank_lines_skipped():
    assert list(iter_ndjson_lines([b'{"a": 1}\n\n\n{"b"', b': 2}'])) == ['{"a": 1}', '{"b": 2}']
    assert list(iter_ndjson_lines([b'\n', b'', b'  \n'])) == []


def test_accepts_text_chunks():
    assert list(iter_ndjson_lines(['{"a": 1}\n{"b', '": 2}\n'])) == ['{"a": 1}', '{"b": 2}']


def test_media_type():
    assert media_type('application/fhir+ndjson; charset=utf-8') == 'application/fhir+ndjson'
    assert media_type('Application/JSON') == 'application/json'
    assert media_type(None) == ''


def _stream_client(body, url='https://files.example.org/Patient.ndjson', chunk_size=None):
    session = FakeSession().add('GET', url, FakeResponse(200, {'Content-Type': NDJSON}, body, chunk_size=chunk_size))
    return LoggedClient(session=session), url


def test_large_file_log_is_bounded_but_every_line_is_read():
    resources = [{'resourceType': 'Patient', 'id': str(i)} for i in range(10000)]
    client, url = _stream_client(ndjson_body(resources), chunk_size=4096)

    with NDJSONStream(client, url, {'Accept': NDJSON}) as stream:
        ids = [json.loads(line)['id'] for line in stream]

    assert len(ids) == 10000
    assert stream.line_count == 10000
    assert len(stream.recent_lines) == MAX_RECENT_LINE_SIZE
    assert stream.truncated

    entry = client.requests[-1]
    assert entry['response_code'] == 200
    assert entry['response_body'].startswith(truncation_notice(MAX_RECENT_LINE_SIZE))
    logged_lines = entry['response_body'][len(truncation_notice(MAX_RECENT_LINE_SIZE)):].split('\n')
    assert len(logged_lines) == MAX_RECENT_LINE_SIZE
    assert json.loads(logged_lines[0])['id'] == '0'


def test_small_file_is_logged_verbatim_without_notice():
    client, url = _stream_client(ndjson_body([{'resourceType': 'Patient', 'id': 'A'}]))
    with NDJSONStream(client, url) as stream:
        list(stream)
    assert not stream.truncated
    assert client.requests[-1]['response_body'] == '{"resourceType": "Patient", "id": "A"}'


def test_log_is_recorded_when_processing_fails():
    resources = [{'resourceType': 'Patient', 'id': str(i)} for i in range(150)]
    client, url = _stream_client(ndjson_body(resources) + b'{not json}\n')

    with pytest.raises(ValueError):
        with NDJSONStream(client, url) as stream:
            for line in stream:
                json.loads(line)

    assert len(client.requests) == 1
    body = client.requests[0]['response_body']
    assert body.startswith('NOTE: RESPONSE TRUNCATED')
    assert stream.response.closed
    assert stream.line_count == 151


def test_record_happens_once():
    client, url = _stream_client(ndjson_body([{'resourceType': 'Patient', 'id': 'A'}]))
    with NDJSONStream(client, url) as stream:
        list(stream)
        stream.record()
    assert len(client.requests) == 1


def test_connection_failure_is_logged_and_raised():
    session = MagicMock()
    session.get.side_effect = requests.ConnectionError('refused')
    client = LoggedClient(session=session)

    with pytest.raises(requests.ConnectionError):
        with NDJSONStream(client, 'https://files.example.org/Patient.ndjson', {'Authorization': 'Bearer t'}):
            pass

    assert len(client.requests) == 1
    entry = client.requests[0]
    assert entry['url'] == 'https://files.example.org/Patient.ndjson'
    assert entry['request_headers'] == {'Authorization': 'Bearer t'}
    assert entry['response_code'] is None
    assert entry['response_body'] == 'Request failed: refused'
