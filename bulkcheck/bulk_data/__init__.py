"""Bulk Data export and Group export validation engine (no Flask dependency)."""

from .export import BulkDataExportSequence, ExportOrchestrator, ExportState
from .group_validation import BulkDataGroupValidationSequence, DEFAULT_RESOURCE_TYPES
from .http_client import LoggedClient
from .profiles import ProfileDefinition, ProfileRegistry, build_registry
from .sequence import ERROR, FAIL, OMIT, PASS, SKIP, TestResult
from .settings import BulkDataSettings
from .terminology import Terminology
from .validators import build_backend

__all__ = [
    'BulkDataExportSequence', 'BulkDataGroupValidationSequence', 'BulkDataSettings', 'DEFAULT_RESOURCE_TYPES',
    'ExportOrchestrator', 'ExportState', 'LoggedClient', 'ProfileDefinition', 'ProfileRegistry', 'Terminology',
    'TestResult', 'build_backend', 'build_registry', 'PASS', 'FAIL', 'SKIP', 'OMIT', 'ERROR',
]
