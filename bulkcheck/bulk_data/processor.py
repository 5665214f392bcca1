"""Streams one declared output file through the resource validator and summarises it."""

import json
import logging

from .sequence import assert_that
from .streaming import NDJSON_CONTENT_TYPE, NDJSONStream, media_type

logger = logging.getLogger(__name__)

NO_PROFILE_WARNING = 'No profiles found for this Resource'


class FileSummary:
    """
    Per-file aggregate of line results.

    Lines are folded in as they are validated; only the error count, the
    first failing line's message block, the first line's warnings and a
    de-duplicated information list are kept.
    """

    def __init__(self, resource_type, url, declared_count=None):
        self.resource_type = resource_type
        self.url = url
        self.declared_count = declared_count
        self.line_count = 0
        self.error_count = 0
        self.first_error = ''
        self.warnings = []
        self.information = []
        self._information_seen = set()
        self.count_mismatch = None
        self.first_warning_line = None

    def add_line(self, line_number, result):
        if result['errors']:
            self.error_count += 1
            if not self.first_error:
                self.first_error = f"The first failed is line #{line_number}:\n\n* " + '\n* '.join(result['errors'])
        # Warnings of later lines usually repeat the first ones
        if result['warnings'] and self.first_warning_line is None:
            self.first_warning_line = line_number
            self.warnings.extend(f"Line #{line_number}: {w}" for w in result['warnings'])
        for info in result['information']:
            if info not in self._information_seen:
                self._information_seen.add(info)
                self.information.append(f"Line #{line_number}: {info}")
        if result.get('profile') is None and not result['errors'] and NO_PROFILE_WARNING not in self.warnings:
            self.warnings.append(NO_PROFILE_WARNING)

    def check_count(self, validate_all):
        """Compares the server-declared count with the lines read; only meaningful when every line was read."""
        if not validate_all or self.declared_count is None:
            return None
        if str(self.declared_count) != str(self.line_count):
            self.count_mismatch = (f"Count in status output ({self.declared_count}) did not match actual number "
                                   f"of resources returned ({self.line_count})")
        return self.count_mismatch

    def to_dict(self):
        return {
            'resource_type': self.resource_type,
            'url': self.url,
            'line_count': self.line_count,
            'error_count': self.error_count,
            'first_error': self.first_error,
            'warnings': list(self.warnings),
            'information': list(self.information),
            'count_mismatch': self.count_mismatch,
        }


class FileProcessor:
    def __init__(self, client, validator, settings, requires_access_token=False):
        self.client = client
        self.validator = validator
        self.settings = settings
        self.requires_access_token = requires_access_token

    def file_headers(self, use_token=True):
        headers = {'Accept': NDJSON_CONTENT_TYPE}
        if use_token and self.requires_access_token and self.settings.access_token:
            headers['Authorization'] = f"Bearer {self.settings.access_token}"
        return headers

    def should_stop(self, resource_type, line_count, validate_all, line_limit, patient_ids):
        if validate_all or line_count < line_limit:
            return False
        # Patient files are read until enough distinct ids prove multi-patient support
        return resource_type != 'Patient' or len(patient_ids) >= self.settings.min_patient_count

    def process(self, output_file, resource_type, validate_all, line_limit, state, patient_ids):
        """
        Validates the lines of one output file and returns its FileSummary.

        ``state`` is the ResourceTypeState shared by every file of the type;
        Patient ids are added to ``patient_ids`` as they are read.
        """
        url = output_file.get('url')
        summary = FileSummary(resource_type, url, output_file.get('count'))
        logger.info(f"Processing {resource_type} file {url} (validate_all={validate_all}, limit={line_limit})")

        with NDJSONStream(self.client, url, self.file_headers(), chunk_size=self.settings.chunk_size,
                          max_recent_lines=self.settings.max_recent_lines) as stream:
            assert_that(stream.status_code == 200,
                        f"Bad response code: expected 200, but found {stream.status_code} for {url}")
            assert_that(media_type(stream.content_type) == NDJSON_CONTENT_TYPE,
                        f"Content type must be '{NDJSON_CONTENT_TYPE}' but is '{stream.content_type}'")
            for line in stream:
                if self.should_stop(resource_type, summary.line_count, validate_all, line_limit, patient_ids):
                    break
                summary.line_count += 1
                resource = json.loads(line)
                result = self.validator.validate(resource, resource_type, state, summary.line_count)
                if resource_type == 'Patient' and isinstance(resource, dict) and resource.get('resourceType') == 'Patient':
                    if resource.get('id'):
                        patient_ids.add(resource['id'])
                summary.add_line(summary.line_count, result)

        summary.check_count(validate_all)
        logger.info(f"{resource_type} file {url}: {summary.line_count} line(s), {summary.error_count} with errors")
        return summary
