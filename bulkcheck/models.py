from datetime import datetime

from bulkcheck import db


class TestingInstance(db.Model):
    """A server under test: its bulk data configuration and the persisted Complete Status body."""
    __test__ = False

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128))
    bulk_url = db.Column(db.String(512), nullable=False)
    bulk_access_token = db.Column(db.Text)
    bulk_group_id = db.Column(db.String(128))
    bulk_lines_to_validate = db.Column(db.String(32))
    bulk_patient_ids_in_group = db.Column(db.Text)  # Comma-separated
    bulk_device_types_in_group = db.Column(db.Text)  # Comma-separated SNOMED codes
    bulk_timeout = db.Column(db.Integer)
    disable_tls_tests = db.Column(db.Boolean, default=False)
    disable_bulk_data_require_access_token_test = db.Column(db.Boolean, default=False)
    bulk_status_output = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_updated = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    sequence_results = db.relationship('SequenceResult', backref='instance', lazy=True,
                                       cascade='all, delete-orphan', order_by='SequenceResult.id')
    request_responses = db.relationship('RequestResponse', backref='instance', lazy=True,
                                        cascade='all, delete-orphan', order_by='RequestResponse.id')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'bulk_url': self.bulk_url,
            'bulk_group_id': self.bulk_group_id,
            'bulk_lines_to_validate': self.bulk_lines_to_validate,
            'bulk_patient_ids_in_group': self.bulk_patient_ids_in_group,
            'bulk_device_types_in_group': self.bulk_device_types_in_group,
            'bulk_timeout': self.bulk_timeout,
            'disable_tls_tests': bool(self.disable_tls_tests),
            'disable_bulk_data_require_access_token_test': bool(self.disable_bulk_data_require_access_token_test),
            'has_access_token': bool(self.bulk_access_token),
            'has_status_output': bool(self.bulk_status_output),
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class SequenceResult(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    testing_instance_id = db.Column(db.Integer, db.ForeignKey('testing_instance.id'), nullable=False)
    sequence_name = db.Column(db.String(128), nullable=False)
    result = db.Column(db.String(16))
    counts = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    test_results = db.relationship('TestResult', backref='sequence_result', lazy=True,
                                   cascade='all, delete-orphan', order_by='TestResult.id')

    def to_dict(self):
        return {
            'id': self.id,
            'sequence_name': self.sequence_name,
            'result': self.result,
            'counts': self.counts or {},
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'test_results': [t.to_dict() for t in self.test_results],
        }


class TestResult(db.Model):
    __test__ = False

    id = db.Column(db.Integer, primary_key=True)
    sequence_result_id = db.Column(db.Integer, db.ForeignKey('sequence_result.id'), nullable=False)
    test_id = db.Column(db.String(16), nullable=False)
    name = db.Column(db.String(256))
    result = db.Column(db.String(16), nullable=False)
    message = db.Column(db.Text)
    warnings = db.Column(db.JSON, nullable=True)
    information = db.Column(db.JSON, nullable=True)

    def to_dict(self):
        return {
            'test_id': self.test_id,
            'name': self.name,
            'result': self.result,
            'message': self.message,
            'warnings': self.warnings or [],
            'information': self.information or [],
        }


class RequestResponse(db.Model):
    """One entry of the activity log; streamed NDJSON bodies are already truncated."""
    id = db.Column(db.Integer, primary_key=True)
    testing_instance_id = db.Column(db.Integer, db.ForeignKey('testing_instance.id'), nullable=False)
    timestamp = db.Column(db.String(64))
    request_method = db.Column(db.String(16))
    request_url = db.Column(db.Text)
    request_headers = db.Column(db.JSON, nullable=True)
    request_payload = db.Column(db.Text)
    response_code = db.Column(db.Integer)
    response_headers = db.Column(db.JSON, nullable=True)
    response_body = db.Column(db.Text)

    @classmethod
    def from_entry(cls, instance_id, entry):
        return cls(
            testing_instance_id=instance_id,
            timestamp=entry.get('timestamp'),
            request_method=entry.get('method'),
            request_url=entry.get('url'),
            request_headers=entry.get('request_headers'),
            request_payload=entry.get('request_body'),
            response_code=entry.get('response_code'),
            response_headers=entry.get('response_headers'),
            response_body=entry.get('response_body'),
        )

    def to_dict(self):
        return {
            'timestamp': self.timestamp,
            'method': self.request_method,
            'url': self.request_url,
            'request_headers': self.request_headers or {},
            'response_code': self.response_code,
            'response_headers': self.response_headers or {},
            'response_body': self.response_body,
        }
