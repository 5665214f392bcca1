"""
Per-resource-type verdicts over all output files of a type, plus the Patient
id cross-checks of a Group export.
"""

import logging

from .processor import FileProcessor
from .sequence import AssertionFailed, OmitTest, SkipTest, assert_that, omit_if, skip_if
from .validators import ResourceTypeState

logger = logging.getLogger(__name__)


def omit_or_skip_empty_resources(resource_type):
    omit_if(resource_type == 'Medication', 'No Medication resources provided, and Medication resources are optional.')
    raise SkipTest(f"Bulk Data Server export did not provide any {resource_type} resources.")


def _extend_unique(target, messages):
    for message in messages:
        if message not in target:
            target.append(message)


class Aggregator:
    """
    Owns the mutable state of one validation run: the Patient ids seen and
    the per-file summaries. Built fresh for every run.
    """

    def __init__(self, settings, client, validator, terminology, requires_access_token=False):
        self.settings = settings
        self.validator = validator
        self.terminology = terminology
        self.processor = FileProcessor(client, validator, settings, requires_access_token)
        self.patient_ids = set()
        self.summaries = {}

    def validate_resource_type(self, resource_type, output, warnings, information, definitions=None):
        """
        Validates every file of ``resource_type`` listed in ``output``.

        Warnings and information notes are appended to the given lists. Ends
        by raising a test outcome, or returns the pass message.
        """
        skip_if(not output, 'Bulk Data Server response does not have output data')
        files = [f for f in output if f.get('type') == resource_type]
        if not files:
            omit_or_skip_empty_resources(resource_type)

        validate_all, line_limit = self.settings.validate_all, self.settings.line_limit
        omit_if(not validate_all and line_limit == 0 and resource_type != 'Patient',
                'Validate has been omitted because line_to_validate is 0')

        if definitions is None:
            definitions = self.validator.registry.definitions_for(resource_type)
        state = ResourceTypeState(resource_type, definitions, self.terminology)

        summaries = [self.processor.process(f, resource_type, validate_all, line_limit, state, self.patient_ids)
                     for f in files]
        self.summaries[resource_type] = [s.to_dict() for s in summaries]

        line_count = sum(s.line_count for s in summaries)
        error_count = sum(s.error_count for s in summaries)
        for summary in summaries:
            _extend_unique(warnings, summary.warnings)
            _extend_unique(information, summary.information)

        if line_count == 0 and (validate_all or line_limit > 0):
            omit_or_skip_empty_resources(resource_type)

        first_error = next((s.first_error for s in summaries if s.first_error), '')
        assert_that(error_count == 0,
                    f"{error_count} / {line_count} {resource_type} resources failed profile validation. {first_error}")

        if line_count > 0:
            missing = state.must_support_failures()
            assert_that(not missing, '\n\n'.join(missing))

        mismatches = [s.count_mismatch for s in summaries if s.count_mismatch]
        if mismatches:
            if self.settings.strict_count_check:
                raise AssertionFailed(' '.join(mismatches))
            _extend_unique(warnings, mismatches)

        logger.info(f"{resource_type}: validated {line_count} resource(s) from {len(files)} file(s)")
        return f"Successfully validated {line_count} resource(s)."

    def check_two_patients(self):
        skip_if(not self.patient_ids, 'Bulk Data Server export did not provide any Patient resources.')
        assert_that(len(self.patient_ids) >= self.settings.min_patient_count,
                    'Bulk Data Server export did not have multiple Patient resources.')

    def check_patient_ids_in_group(self):
        expected_ids = set(self.settings.patient_ids_in_group)
        if not expected_ids:
            raise OmitTest('No patient ids were given')
        unexpected = sorted(self.patient_ids - expected_ids)
        missing = sorted(expected_ids - self.patient_ids)
        if unexpected or missing:
            details = []
            if unexpected:
                details.append(f"unexpected: {', '.join(unexpected)}")
            if missing:
                details.append(f"missing: {', '.join(missing)}")
            raise AssertionFailed(
                f"Mismatch between patient ids seen ({', '.join(sorted(self.patient_ids))}) and patient ids "
                f"expected ({', '.join(self.settings.patient_ids_in_group)}); {'; '.join(details)}"
            )
