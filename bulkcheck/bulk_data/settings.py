"""Explicit configuration for one bulk data validation run."""

from dataclasses import dataclass, field, replace

SETTINGS_VERSION = 1

DEFAULT_STATUS_TIMEOUT = 180
DEFAULT_MAX_RECENT_LINES = 100
DEFAULT_MIN_PATIENT_COUNT = 2
DEFAULT_CHUNK_SIZE = 8192


def split_csv(value):
    """Splits a comma separated input field into a list of stripped, non-empty items."""
    if not value:
        return []
    return [item.strip() for item in str(value).split(',') if item.strip()]


def parse_lines_to_validate(value):
    """
    Interprets the "lines to validate" input.

    Blank or missing means validate every line. Anything else is read as an
    integer line limit; unparseable input counts as 0.

    Returns:
        tuple: (validate_all, lines_to_validate)
    """
    if value is None or not str(value).strip():
        return True, 0
    try:
        return False, max(int(str(value).strip()), 0)
    except ValueError:
        return False, 0


@dataclass(frozen=True)
class BulkDataSettings:
    """Immutable settings owned by a single export/validation run."""
    bulk_url: str = ''
    access_token: str = ''
    group_id: str = ''
    lines_to_validate: str = ''
    patient_ids_in_group: tuple = ()
    device_types_in_group: tuple = ()
    status_timeout: int = DEFAULT_STATUS_TIMEOUT
    request_timeout: int = 60
    max_recent_lines: int = DEFAULT_MAX_RECENT_LINES
    min_patient_count: int = DEFAULT_MIN_PATIENT_COUNT
    chunk_size: int = DEFAULT_CHUNK_SIZE
    strict_count_check: bool = False
    verify_tls: bool = True
    disable_tls_tests: bool = False
    disable_require_access_token_test: bool = False
    hapi_fhir_url: str = ''
    terminology_server_url: str = ''
    version: int = field(default=SETTINGS_VERSION)

    @property
    def base_url(self):
        return self.bulk_url[:-1] if self.bulk_url.endswith('/') else self.bulk_url

    @property
    def validate_all(self):
        return parse_lines_to_validate(self.lines_to_validate)[0]

    @property
    def line_limit(self):
        return parse_lines_to_validate(self.lines_to_validate)[1]

    def with_overrides(self, **changes):
        return replace(self, **changes)

    @classmethod
    def from_instance(cls, instance, app_config=None):
        """Builds settings from a TestingInstance row and the Flask app config."""
        app_config = app_config or {}
        return cls(
            bulk_url=instance.bulk_url or '',
            access_token=instance.bulk_access_token or '',
            group_id=instance.bulk_group_id or '',
            lines_to_validate=instance.bulk_lines_to_validate or '',
            patient_ids_in_group=tuple(split_csv(instance.bulk_patient_ids_in_group)),
            device_types_in_group=tuple(split_csv(instance.bulk_device_types_in_group)),
            status_timeout=instance.bulk_timeout or app_config.get('BULK_STATUS_TIMEOUT', DEFAULT_STATUS_TIMEOUT),
            request_timeout=app_config.get('BULK_REQUEST_TIMEOUT', 60),
            max_recent_lines=app_config.get('BULK_MAX_RECENT_LINES', DEFAULT_MAX_RECENT_LINES),
            min_patient_count=app_config.get('BULK_MIN_PATIENT_COUNT', DEFAULT_MIN_PATIENT_COUNT),
            chunk_size=app_config.get('BULK_CHUNK_SIZE', DEFAULT_CHUNK_SIZE),
            strict_count_check=app_config.get('BULK_STRICT_COUNT_CHECK', False),
            verify_tls=app_config.get('BULK_VERIFY_TLS', True),
            disable_tls_tests=bool(instance.disable_tls_tests),
            disable_require_access_token_test=bool(instance.disable_bulk_data_require_access_token_test),
            hapi_fhir_url=app_config.get('HAPI_FHIR_URL', ''),
            terminology_server_url=app_config.get('TERMINOLOGY_SERVER_URL', ''),
        )
