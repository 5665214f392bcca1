"""
Test sequence plumbing: outcome signals, result records and the runner.

A test step raises AssertionFailed, SkipTest or OmitTest to end with that
outcome; returning normally is a pass. Transport faults (requests exceptions,
broken JSON in a stream) are not caught by the step and end up as 'error'.
"""

import logging
from dataclasses import dataclass, field

import requests

logger = logging.getLogger(__name__)

PASS = 'pass'
FAIL = 'fail'
SKIP = 'skip'
OMIT = 'omit'
ERROR = 'error'


class TestOutcome(Exception):
    """Base class for the signals a test step raises to end early."""
    __test__ = False
    result = None

    def __init__(self, message=''):
        super().__init__(message)
        self.message = message


class AssertionFailed(TestOutcome):
    result = FAIL


class SkipTest(TestOutcome):
    result = SKIP


class OmitTest(TestOutcome):
    result = OMIT


class PassTest(TestOutcome):
    result = PASS


def assert_that(condition, message):
    if not condition:
        raise AssertionFailed(message)


def skip_if(condition, message):
    if condition:
        raise SkipTest(message)


def omit_if(condition, message):
    if condition:
        raise OmitTest(message)


@dataclass
class TestResult:
    __test__ = False

    test_id: str
    name: str
    result: str = PASS
    message: str = ''
    warnings: list = field(default_factory=list)
    information: list = field(default_factory=list)

    def to_dict(self):
        return {
            'test_id': self.test_id,
            'name': self.name,
            'result': self.result,
            'message': self.message,
            'warnings': list(self.warnings),
            'information': list(self.information),
        }


def bulk_test(test_id, name):
    """Marks a sequence method as a test step with a stable id and display name."""
    def decorator(func):
        func.bulk_test_id = test_id
        func.bulk_test_name = name
        return func
    return decorator


class SequenceBase:
    """
    Runs the decorated test steps of a subclass in id order.

    Steps share state through instance attributes (e.g. the Content-Location
    captured by kick-off is polled by the next step), so a sequence instance is
    built fresh for every run.
    """
    title = ''

    def __init__(self, settings, client):
        self.settings = settings
        self.client = client
        self.test_warnings = []
        self.information_messages = []

    @classmethod
    def test_steps(cls):
        steps = []
        for attr_name in dir(cls):
            attr = getattr(cls, attr_name)
            if callable(attr) and hasattr(attr, 'bulk_test_id'):
                steps.append(attr)
        return sorted(steps, key=lambda step: step.bulk_test_id)

    def warning(self, condition, message):
        """Soft assertion: a failed check is surfaced as a warning only."""
        if not condition:
            self.test_warnings.append(message)
        return condition

    def run_test(self, step):
        self.test_warnings = []
        self.information_messages = []
        result = TestResult(test_id=step.bulk_test_id, name=step.bulk_test_name)
        try:
            message = step(self)
            if message:
                result.message = message
        except TestOutcome as outcome:
            result.result = outcome.result
            result.message = outcome.message
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Test {step.bulk_test_id} '{step.bulk_test_name}' errored: {e}", exc_info=True)
            result.result = ERROR
            result.message = f"{type(e).__name__}: {e}"
        result.warnings = list(self.test_warnings)
        result.information = list(self.information_messages)
        logger.info(f"[{self.title}] {result.test_id} {result.name}: {result.result.upper()} {result.message}")
        return result

    def run(self):
        """Yields one TestResult per step, in order."""
        for step in self.test_steps():
            yield self.run_test(step)
