# config.py
# Basic configuration settings for the bulk data conformance harness

import os

# Determine the base directory of the application (where config.py lives)
basedir = os.path.abspath(os.path.dirname(__file__))

# Instance folder holds the SQLite database, the debug log and downloaded IG packages
instance_path = os.path.join(basedir, 'instance')


def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return int(value)


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Base configuration class."""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-will-never-guess'
    API_KEY = os.environ.get('API_KEY', 'your-fallback-api-key-here')

    # Points to 'instance/bulkcheck.db' relative to config.py location
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(instance_path, 'bulkcheck.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # --- Bulk Data engine settings ---
    BULK_STATUS_TIMEOUT = _env_int('BULK_STATUS_TIMEOUT', 180)  # seconds, polling phase only
    BULK_REQUEST_TIMEOUT = _env_int('BULK_REQUEST_TIMEOUT', 60)  # per request transport timeout
    BULK_MAX_RECENT_LINES = _env_int('BULK_MAX_RECENT_LINES', 100)
    BULK_MIN_PATIENT_COUNT = _env_int('BULK_MIN_PATIENT_COUNT', 2)
    BULK_CHUNK_SIZE = _env_int('BULK_CHUNK_SIZE', 8192)
    BULK_STRICT_COUNT_CHECK = _env_bool('BULK_STRICT_COUNT_CHECK', False)
    BULK_VERIFY_TLS = _env_bool('BULK_VERIFY_TLS', True)

    # External validator / terminology (both optional)
    HAPI_FHIR_URL = os.environ.get('HAPI_FHIR_URL', '')
    TERMINOLOGY_SERVER_URL = os.environ.get('TERMINOLOGY_SERVER_URL', '')

    # FHIR packages (.tgz) providing StructureDefinitions, ValueSets and CodeSystems
    FHIR_PACKAGES_DIR = os.environ.get('FHIR_PACKAGES_DIR') or os.path.join(instance_path, 'fhir_packages')
    # YAML must-support / binding tables; empty means the bundled US Core set
    PROFILE_DEFINITIONS_DIR = os.environ.get('PROFILE_DEFINITIONS_DIR', '')

    LOG_FILE = os.path.join(instance_path, 'bulkcheck_debug.log')


class TestingConfig(Config):
    """Configuration specific to testing."""
    TESTING = True

    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'

    # Disable CSRF protection during tests for simplicity
    WTF_CSRF_ENABLED = False

    SECRET_KEY = 'testing-secret-key'
    API_KEY = 'test-api-key'

    HAPI_FHIR_URL = ''
    TERMINOLOGY_SERVER_URL = ''
    FHIR_PACKAGES_DIR = os.path.join(instance_path, 'test_fhir_packages')
    LOG_FILE = None
