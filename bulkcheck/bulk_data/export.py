"""
Bulk Data kick-off, status polling and cancellation, and the export test
sequence built on them.
"""

import json
import logging
import time
from urllib.parse import urlencode

from .sequence import AssertionFailed, OmitTest, SequenceBase, assert_that, bulk_test, omit_if, skip_if
from .streaming import media_type

logger = logging.getLogger(__name__)

FHIR_JSON = 'application/fhir+json'
REQUIRED_STATUS_FIELDS = ['transactionTime', 'request', 'requiresAccessToken', 'output', 'error']
DEFAULT_KICK_OFF_HEADERS = {'Accept': FHIR_JSON, 'Prefer': 'respond-async'}

EXPORT_OPERATIONS = {
    'Group': 'http://hl7.org/fhir/uv/bulkdata/OperationDefinition/group-export',
    None: 'http://hl7.org/fhir/uv/bulkdata/OperationDefinition/export',
}


class ExportState:
    NOT_STARTED = 'NotStarted'
    KICKED_OFF = 'KickedOff'
    POLLING = 'Polling'
    COMPLETE = 'Complete'
    FAILED = 'Failed'
    TIMED_OUT = 'TimedOut'


def retry_after_seconds(response):
    value = response.headers.get('Retry-After')
    try:
        return int(str(value).strip()) if value is not None else 0
    except ValueError:
        # HTTP-date form is not honoured; fall back to backoff
        return 0


def next_wait_time(previous, response):
    """Retry-After when positive, otherwise double the previous wait (the first wait is 1 second)."""
    retry_after = retry_after_seconds(response)
    if retry_after > 0:
        return retry_after
    return 1 if previous is None else previous * 2


def status_field_checks(body):
    """Presence of each required Complete Status field, checked independently."""
    return {field: isinstance(body, dict) and field in body for field in REQUIRED_STATUS_FIELDS}


def missing_status_fields(body):
    return [field for field, present in status_field_checks(body).items() if not present]


class ExportOrchestrator:
    """
    Drives one export job against the server under test.

    NotStarted -> KickedOff -> Polling -> Complete | Failed | TimedOut, never
    backwards; a new instance is used for every job. ``sleep`` and ``clock``
    are injectable so polling can be tested without waiting.
    """

    def __init__(self, settings, client, sleep=time.sleep, clock=time.monotonic):
        self.settings = settings
        self.client = client
        self.sleep = sleep
        self.clock = clock
        self.state = ExportState.NOT_STARTED
        self.content_location = None
        self.status_response = None
        self.wait_times = []

    @property
    def endpoint(self):
        return 'Group' if self.settings.group_id else None

    def export_url(self, params=None):
        url = self.settings.base_url
        if self.endpoint:
            url += f"/{self.endpoint}/{self.settings.group_id}"
        url += '/$export'
        if params:
            url += '?' + urlencode(params)
        return url

    def build_headers(self, headers, use_token=True):
        headers = dict(headers)
        if use_token and self.settings.access_token:
            headers['Authorization'] = f"Bearer {self.settings.access_token}"
        return headers

    def request_export(self, headers=None, use_token=True, params=None):
        """Sends a kick-off request without touching the job state."""
        return self.client.get(self.export_url(params),
                               headers=self.build_headers(headers or DEFAULT_KICK_OFF_HEADERS, use_token))

    def kick_off(self, headers=None, use_token=True, params=None):
        if self.state != ExportState.NOT_STARTED:
            raise RuntimeError(f"Export already started (state {self.state})")
        response = self.request_export(headers, use_token, params)
        self.content_location = response.headers.get('Content-Location')
        if response.status_code == 202 and self.content_location:
            self.state = ExportState.KICKED_OFF
        else:
            self.state = ExportState.FAILED
        logger.info(f"Kick-off {self.export_url(params)} -> {response.status_code}, Content-Location: {self.content_location}")
        return response

    def kick_off_fail(self, headers):
        """Kick-off with deliberately invalid headers; the server is expected to reject it."""
        return self.request_export(headers)

    def poll_status(self, url=None, timeout=None):
        """
        Polls the status url until a non-202 reply or until the next wait would
        exceed ``timeout`` seconds; returns the last reply.
        """
        url = url or self.content_location
        timeout = self.settings.status_timeout if timeout is None else timeout
        self.state = ExportState.POLLING
        headers = self.build_headers({'Accept': 'application/json'})
        wait_time = None
        start = self.clock()
        while True:
            response = self.client.get(url, headers=headers)
            wait_time = next_wait_time(wait_time, response)
            seconds_used = self.clock() - start + wait_time
            if response.status_code != 202 or seconds_used > timeout:
                break
            logger.debug(f"Export in progress at {url}; waiting {wait_time}s")
            self.wait_times.append(wait_time)
            self.sleep(wait_time)

        if response.status_code == 200:
            self.state = ExportState.COMPLETE
        elif response.status_code == 202:
            self.state = ExportState.TIMED_OUT
            logger.warning(f"Export at {url} still in progress after {timeout}s")
        else:
            self.state = ExportState.FAILED
        return response

    def cancel(self, url=None):
        return self.client.delete(url or self.content_location, headers=self.build_headers({'Accept': 'application/json'}))


# --- Assertions ---

def assert_response_accepted(response):
    assert_that(response.status_code == 202, f"Bad response code: expected 202, but found {response.status_code}")


def assert_response_bad_or_unauthorized(response):
    assert_that(response.status_code in (400, 401),
                f"Bad response code: expected 400 or 401, but found {response.status_code}")


def assert_kick_off_error_response(response):
    assert_that(response.status_code >= 400,
                f"Bad response code: expected 4xx or 5xx, but found {response.status_code}")
    content_type = media_type(response.headers.get('Content-Type'))
    assert_that(content_type in ('application/json', FHIR_JSON),
                f"Expected content-type application/json but found {content_type or 'none'}")
    try:
        resource_type = response.json().get('resourceType')
    except (ValueError, AttributeError):
        resource_type = None
    assert_that(resource_type == 'OperationOutcome',
                f"Bad response body. Expected OperationOutcome but received {resource_type}")


def assert_tls(url):
    assert_that(bool(url) and url.lower().startswith('https://'), f"URL is not secured by TLS: {url}")


class BulkDataExportSequence(SequenceBase):
    title = 'Bulk Data Export Tests'

    def __init__(self, settings, client, sleep=time.sleep, clock=time.monotonic):
        super().__init__(settings, client)
        self.sleep = sleep
        self.clock = clock
        self.orchestrator = self.new_orchestrator()
        self.status_response = None
        self.output = None
        self.status_output = None

    def new_orchestrator(self):
        return ExportOrchestrator(self.settings, self.client, sleep=self.sleep, clock=self.clock)

    @bulk_test('01', 'Bulk Data Server is secured by transport layer security')
    def test_tls(self):
        omit_if(self.settings.disable_tls_tests, 'TLS tests have been disabled by configuration.')
        assert_tls(self.settings.bulk_url)

    @bulk_test('02', 'Bulk Data Server declares support for export operation in CapabilityStatement')
    def test_capability_statement(self):
        response = self.client.get(f"{self.settings.base_url}/metadata", headers={'Accept': FHIR_JSON})
        assert_that(response.status_code == 200, f"Bad response code: expected 200, but found {response.status_code}")
        try:
            capability = response.json()
        except ValueError:
            capability = None
        assert_that(isinstance(capability, dict) and capability.get('resourceType') == 'CapabilityStatement',
                    'Cannot read server CapabilityStatement.')

        endpoint = self.orchestrator.endpoint
        definition = EXPORT_OPERATIONS[endpoint]
        for rest in capability.get('rest') or []:
            if endpoint is None:
                operations = rest.get('operation') or []
            else:
                operations = [op for r in rest.get('resource') or [] if r.get('type') == endpoint
                              for op in r.get('operation') or []]
            if any(op.get('definition') == definition for op in operations):
                return None
        scope = f"in {endpoint} resource" if endpoint else 'at system level'
        raise AssertionFailed(f"Server CapabilityStatement did not declare support for export operation {scope}.")

    @bulk_test('03', 'Bulk Data Server rejects $export request without authorization')
    def test_kick_off_without_token(self):
        skip_if(not self.settings.access_token, 'Could not verify this functionality when bearer token is not set')
        assert_response_bad_or_unauthorized(self.orchestrator.request_export(use_token=False))

    @bulk_test('04', 'Bulk Data Server rejects $export operation with invalid Accept header')
    def test_kick_off_invalid_accept(self):
        assert_kick_off_error_response(
            self.orchestrator.kick_off_fail({'Accept': 'application/fhir+xml', 'Prefer': 'respond-async'}))

    @bulk_test('05', 'Bulk Data Server rejects $export operation with invalid Prefer header')
    def test_kick_off_invalid_prefer(self):
        assert_kick_off_error_response(
            self.orchestrator.kick_off_fail({'Accept': FHIR_JSON, 'Prefer': 'return=representation'}))

    @bulk_test('06', 'Bulk Data Server returns "202 Accepted" and "Content-location" for $export operation')
    def test_kick_off(self):
        response = self.orchestrator.kick_off()
        assert_response_accepted(response)
        assert_that(self.orchestrator.content_location, 'Export response header did not include "Content-Location"')

    @bulk_test('07', 'Bulk Data Server returns "202 Accepted" or "200 OK" for status check')
    def test_status_check(self):
        skip_if(not self.orchestrator.content_location, 'Server response did not have Content-Location in header')
        timeout = self.settings.status_timeout
        response = self.orchestrator.poll_status(timeout=timeout)
        skip_if(response.status_code == 202, f"Server took more than {timeout} seconds to process the request.")
        assert_that(response.status_code == 200,
                    f"Bad response code: expected 200, 202, but found {response.status_code}.")
        content_type = media_type(response.headers.get('Content-Type'))
        assert_that(content_type == 'application/json',
                    f"Expected content-type application/json but found {content_type or 'none'}")
        try:
            body = response.json()
        except ValueError as e:
            raise AssertionFailed(f"Complete Status response is not valid JSON: {e}")
        missing = missing_status_fields(body)
        assert_that(not missing, ' '.join(f"Complete Status response did not contain \"{field}\" as required"
                                          for field in missing))
        self.orchestrator.status_response = body
        self.status_response = body
        self.output = body.get('output')

    @bulk_test('08', 'Bulk Data Server returns output with type and url for status complete')
    def test_output_type_url(self):
        assert_that(self.output, 'Server response did not have output data')
        for output_file in self.output:
            for key in ('type', 'url'):
                assert_that(key in output_file, f"Output file did not contain \"{key}\" as required")
        self.status_output = json.dumps(self.status_response)

    @bulk_test('09', 'Bulk Data Server returns requiresAccessToken with value true')
    def test_requires_access_token(self):
        if self.settings.disable_require_access_token_test:
            raise OmitTest('Require Access Token Test has been disabled by configuration.')
        assert_that(self.status_response, 'Bulk Data server response is empty')
        requires_access_token = self.status_response.get('requiresAccessToken')
        assert_that(str(requires_access_token).lower() == 'true',
                    'Bulk Data file server access SHALL require access token.')

    @bulk_test('10', 'Bulk Data Server returns "202 Accepted" for delete request')
    def test_delete(self):
        orchestrator = self.new_orchestrator()
        response = orchestrator.kick_off()
        assert_response_accepted(response)
        assert_that(orchestrator.content_location, 'Export response header did not include "Content-Location"')
        assert_response_accepted(orchestrator.cancel())

