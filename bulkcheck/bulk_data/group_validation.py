"""Validation of the files produced by a completed Group export."""

import json
import logging

from .export import assert_response_bad_or_unauthorized, assert_tls
from .reporting import Aggregator
from .sequence import SequenceBase, bulk_test, omit_if, skip_if
from .streaming import NDJSONStream
from .validators import ResourceValidator

logger = logging.getLogger(__name__)

DEFAULT_RESOURCE_TYPES = [
    'AllergyIntolerance', 'CarePlan', 'CareTeam', 'Condition', 'Device', 'DiagnosticReport',
    'DocumentReference', 'Goal', 'Immunization', 'Medication', 'MedicationRequest', 'Observation',
    'Procedure', 'Encounter', 'Organization', 'Practitioner', 'Provenance', 'Location',
]


def parse_status_output(status_output):
    """(output, requires_access_token) from the persisted Complete Status body."""
    if not status_output:
        return None, False
    status = json.loads(status_output) if isinstance(status_output, str) else status_output
    requires_access_token = str(status.get('requiresAccessToken', '')).lower() == 'true'
    return status.get('output'), requires_access_token


class BulkDataGroupValidationSequence(SequenceBase):
    title = 'Group Export Validation Tests'

    def __init__(self, settings, client, status_output, registry, terminology, backend):
        super().__init__(settings, client)
        self.output, self.requires_access_token = parse_status_output(status_output)
        self.validator = ResourceValidator(backend, registry, settings.device_types_in_group)
        self.aggregator = Aggregator(settings, client, self.validator, terminology, self.requires_access_token)

    @property
    def patient_ids_seen(self):
        return self.aggregator.patient_ids

    def validate_resource_type(self, resource_type):
        return self.aggregator.validate_resource_type(
            resource_type, self.output, self.test_warnings, self.information_messages)

    @bulk_test('01', 'Bulk Data Server is secured by transport layer security')
    def test_tls(self):
        skip_if(not self.output, 'Could not verify this functionality when output is empty')
        omit_if(self.settings.disable_tls_tests, 'TLS tests have been disabled by configuration.')
        assert_tls(self.output[0].get('url'))

    @bulk_test('02', 'NDJSON download requires access token if requireAccessToken is true')
    def test_require_access_token(self):
        skip_if(not self.requires_access_token, 'Could not verify this functionality when requireAccessToken is false')
        skip_if(not self.settings.access_token, 'Could not verify this functionality when bearer token is not set')
        headers = self.aggregator.processor.file_headers(use_token=False)
        # Opened as a stream so a server that wrongly serves the file is not downloaded in full
        with NDJSONStream(self.client, self.output[0]['url'], headers,
                          max_recent_lines=self.settings.max_recent_lines) as stream:
            assert_response_bad_or_unauthorized(stream.response)

    @bulk_test('03', 'Patient resources returned conform to the US Core Patient Profile')
    def test_validate_patient(self):
        return self.validate_resource_type('Patient')

    @bulk_test('04', 'Group export has at least two patients')
    def test_validate_two_patients(self):
        self.aggregator.check_two_patients()

    @bulk_test('05', 'Patient IDs match those expected in Group')
    def test_validate_patient_ids_in_group(self):
        self.aggregator.check_patient_ids_in_group()


def _resource_type_test(test_id, resource_type):
    if resource_type == 'Location':
        name = 'Location resources returned conform to the base FHIR Location resource'
    else:
        name = f"{resource_type} resources returned conform to the US Core {resource_type} Profile"

    @bulk_test(test_id, name)
    def test(self):
        return self.validate_resource_type(resource_type)

    test.__name__ = f"test_validate_{resource_type.lower()}"
    return test


for _index, _resource_type in enumerate(DEFAULT_RESOURCE_TYPES, start=6):
    _test = _resource_type_test(f"{_index:02d}", _resource_type)
    setattr(BulkDataGroupValidationSequence, _test.__name__, _test)
