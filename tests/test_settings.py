from types import SimpleNamespace

import pytest

from bulkcheck.bulk_data.settings import BulkDataSettings, parse_lines_to_validate, split_csv


@pytest.mark.parametrize('value,expected', [
    (None, (True, 0)),
    ('', (True, 0)),
    ('   ', (True, 0)),
    ('25', (False, 25)),
    (' 3 ', (False, 3)),
    ('0', (False, 0)),
    ('-4', (False, 0)),
    ('many', (False, 0)),
])
def test_parse_lines_to_validate(value, expected):
    assert parse_lines_to_validate(value) == expected


def test_split_csv():
    assert split_csv(' A, B ,,C ') == ['A', 'B', 'C']
    assert split_csv(None) == []


def test_base_url_drops_trailing_slash():
    assert BulkDataSettings(bulk_url='https://x/fhir/').base_url == 'https://x/fhir'


def test_settings_are_immutable(settings):
    with pytest.raises(AttributeError):
        settings.group_id = 'other'
    assert settings.with_overrides(group_id='other').group_id == 'other'
    assert settings.group_id == 'g1'


def test_from_instance_uses_app_config_defaults():
    instance = SimpleNamespace(
        bulk_url='https://bulk.example.org/fhir', bulk_access_token=None, bulk_group_id='g1',
        bulk_lines_to_validate='10', bulk_patient_ids_in_group='A, B', bulk_device_types_in_group='',
        bulk_timeout=None, disable_tls_tests=True, disable_bulk_data_require_access_token_test=None,
    )
    settings = BulkDataSettings.from_instance(instance, {'BULK_STATUS_TIMEOUT': 90, 'BULK_STRICT_COUNT_CHECK': True})

    assert settings.access_token == ''
    assert settings.patient_ids_in_group == ('A', 'B')
    assert settings.device_types_in_group == ()
    assert settings.status_timeout == 90
    assert settings.strict_count_check
    assert settings.disable_tls_tests and not settings.disable_require_access_token_test
    assert (settings.validate_all, settings.line_limit) == (False, 10)


def test_instance_timeout_overrides_config():
    instance = SimpleNamespace(
        bulk_url='https://bulk.example.org/fhir', bulk_access_token='t', bulk_group_id='', bulk_lines_to_validate='',
        bulk_patient_ids_in_group=None, bulk_device_types_in_group=None, bulk_timeout=15,
        disable_tls_tests=False, disable_bulk_data_require_access_token_test=False,
    )
    assert BulkDataSettings.from_instance(instance, {'BULK_STATUS_TIMEOUT': 90}).status_timeout == 15
