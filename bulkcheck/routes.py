import logging

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from bulkcheck import db, services
from bulkcheck.forms import TestingInstanceForm
from bulkcheck.models import RequestResponse, SequenceResult, TestingInstance

logger = logging.getLogger(__name__)

api_bp = Blueprint('api', __name__)


def check_api_key():
    api_key = request.headers.get('X-API-Key')
    if not api_key:
        logger.error("API key missing in request")
        return jsonify({"status": "error", "message": "API key missing"}), 401
    if api_key != current_app.config['API_KEY']:
        logger.error("Invalid API key provided.")
        return jsonify({"status": "error", "message": "Invalid API key"}), 401
    logger.debug("API key validated successfully")
    return None


@api_bp.before_request
def require_api_key():
    return check_api_key()


def _get_instance(instance_id):
    instance = db.session.get(TestingInstance, instance_id)
    if instance is None:
        return None, (jsonify({"status": "error", "message": f"Testing instance {instance_id} not found"}), 404)
    return instance, None


# --- Testing instances ---

@api_bp.route('/instances', methods=['POST'])
def create_instance():
    if not request.is_json:
        return jsonify({"status": "error", "message": "Request must be JSON"}), 400
    form = TestingInstanceForm()
    if not form.validate():
        logger.warning(f"[API] Invalid testing instance: {form.errors}")
        return jsonify({"status": "error", "message": "Invalid input", "errors": form.errors}), 400
    instance = form.populate_instance(TestingInstance())
    db.session.add(instance)
    db.session.commit()
    logger.info(f"[API] Created testing instance {instance.id} for {instance.bulk_url}")
    return jsonify({"status": "success", "instance": instance.to_dict()}), 201


@api_bp.route('/instances/<int:instance_id>', methods=['GET'])
def get_instance(instance_id):
    instance, error = _get_instance(instance_id)
    if error:
        return error
    return jsonify({"status": "success", "instance": instance.to_dict()}), 200


# --- Sequences ---

def _run_sequence(instance_id, sequence_name):
    instance, error = _get_instance(instance_id)
    if error:
        return error
    app_config = dict(current_app.config)
    logger.info(f"[API] Running {sequence_name} for instance {instance_id}")
    return Response(stream_with_context(services.generate_sequence_stream(instance, sequence_name, app_config)),
                    mimetype='application/x-ndjson')


@api_bp.route('/instances/<int:instance_id>/export', methods=['POST'])
def run_export(instance_id):
    return _run_sequence(instance_id, services.EXPORT_SEQUENCE)


@api_bp.route('/instances/<int:instance_id>/group-validation', methods=['POST'])
def run_group_validation(instance_id):
    return _run_sequence(instance_id, services.GROUP_VALIDATION_SEQUENCE)


# --- Results ---

@api_bp.route('/instances/<int:instance_id>/results', methods=['GET'])
def get_results(instance_id):
    instance, error = _get_instance(instance_id)
    if error:
        return error
    results = SequenceResult.query.filter_by(testing_instance_id=instance.id).order_by(SequenceResult.id).all()
    return jsonify({"status": "success", "results": [r.to_dict() for r in results]}), 200


@api_bp.route('/instances/<int:instance_id>/requests', methods=['GET'])
def get_requests(instance_id):
    instance, error = _get_instance(instance_id)
    if error:
        return error
    entries = RequestResponse.query.filter_by(testing_instance_id=instance.id).order_by(RequestResponse.id).all()
    return jsonify({"status": "success", "requests": [e.to_dict() for e in entries]}), 200
