# forms.py
import logging

from flask_wtf import FlaskForm
from wtforms import BooleanField, IntegerField, StringField, TextAreaField
from wtforms.validators import URL, DataRequired, NumberRange, Optional, Regexp

from bulkcheck.bulk_data.settings import split_csv

logger = logging.getLogger(__name__)


class TestingInstanceForm(FlaskForm):
    """Configuration of a server under test; accepts JSON bodies through Flask-WTF's form data wrapping."""
    __test__ = False

    class Meta:
        csrf = False

    name = StringField('Name', validators=[Optional()])
    bulk_url = StringField('Bulk Data Server URL', validators=[DataRequired(), URL(require_tld=False)],
                           render_kw={'placeholder': 'e.g., https://bulk.example.org/fhir'})
    bulk_access_token = TextAreaField('Bearer Token', validators=[Optional()])
    bulk_group_id = StringField('Group ID', validators=[
        Optional(), Regexp(r'^[A-Za-z0-9\-\.]{1,64}$', message='Invalid FHIR id.')])
    bulk_lines_to_validate = StringField('Lines to Validate', validators=[
        Optional(), Regexp(r'^\s*\d*\s*$', message='Lines to validate must be blank or a whole number.')],
        description='Leave blank to validate every line.')
    bulk_patient_ids_in_group = TextAreaField('Patient IDs in Group', validators=[Optional()],
                                              description='Comma-separated list of expected Patient ids.')
    bulk_device_types_in_group = TextAreaField('Device Types in Group', validators=[
        Optional(), Regexp(r'^[\d,\s]*$', message='Device types must be comma-separated SNOMED codes.')])
    bulk_timeout = IntegerField('Status Timeout (seconds)', validators=[Optional(), NumberRange(min=1, max=86400)])
    disable_tls_tests = BooleanField('Disable TLS Tests', default=False)
    disable_bulk_data_require_access_token_test = BooleanField('Disable Require Access Token Test', default=False)

    def validate(self, extra_validators=None):
        if not super().validate(extra_validators):
            return False
        ids = split_csv(self.bulk_patient_ids_in_group.data)
        if len(ids) != len(set(ids)):
            self.bulk_patient_ids_in_group.errors.append('Patient IDs must not contain duplicates.')
            return False
        return True

    def populate_instance(self, instance):
        for field_name in ('name', 'bulk_url', 'bulk_access_token', 'bulk_group_id', 'bulk_lines_to_validate',
                           'bulk_patient_ids_in_group', 'bulk_device_types_in_group', 'bulk_timeout',
                           'disable_tls_tests', 'disable_bulk_data_require_access_token_test'):
            value = getattr(self, field_name).data
            if isinstance(value, str):
                value = value.strip()
            setattr(instance, field_name, value)
        return instance
