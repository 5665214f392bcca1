# tests/conftest.py

import pytest

from bulkcheck import create_app, db
from bulkcheck.bulk_data.settings import BulkDataSettings
from config import TestingConfig


# --- Use 'function' scope for better isolation ---
@pytest.fixture(scope='function')
def app():
    """
    Function-scoped test Flask application backed by an in-memory database.
    Tables are created by the factory and dropped after each test.
    """
    app = create_app(TestingConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    return app.test_client()


@pytest.fixture
def api_headers():
    return {'X-API-Key': TestingConfig.API_KEY, 'Content-Type': 'application/json'}


@pytest.fixture
def settings():
    return BulkDataSettings(bulk_url='https://bulk.example.org/fhir', access_token='token-123', group_id='g1')
