"""
Glue between the Flask app and the bulk data engine: builds the shared
profile registry / terminology / validator backend and runs sequences while
persisting results and the activity log.
"""

import json
import logging
import threading

import requests
from cachetools import TTLCache

from bulkcheck import db
from bulkcheck.bulk_data import (BulkDataExportSequence, BulkDataGroupValidationSequence, BulkDataSettings,
                                 LoggedClient, Terminology, build_backend, build_registry)
from bulkcheck.bulk_data.packages import list_package_files
from bulkcheck.bulk_data.sequence import ERROR, FAIL, OMIT, PASS, SKIP
from bulkcheck.models import RequestResponse, SequenceResult, TestResult

logger = logging.getLogger(__name__)

EXPORT_SEQUENCE = 'BulkDataExportSequence'
GROUP_VALIDATION_SEQUENCE = 'BulkDataGroupValidationSequence'

# Loading IG packages is slow; keep the engine per configuration for an hour
_engine_cache = TTLCache(maxsize=8, ttl=3600)
_engine_lock = threading.Lock()


class Engine:
    def __init__(self, registry, terminology, backend):
        self.registry = registry
        self.terminology = terminology
        self.backend = backend


def _engine_key(app_config):
    return (app_config.get('PROFILE_DEFINITIONS_DIR') or '', app_config.get('FHIR_PACKAGES_DIR') or '',
            app_config.get('HAPI_FHIR_URL') or '', app_config.get('TERMINOLOGY_SERVER_URL') or '')


def get_engine(app_config):
    key = _engine_key(app_config)
    with _engine_lock:
        engine = _engine_cache.get(key)
        if engine is None:
            profiles_dir, packages_dir, hapi_url, terminology_url = key
            package_files = list_package_files(packages_dir)
            registry = build_registry(profiles_dir or None, package_files)
            terminology = Terminology(server_url=terminology_url or None)
            for package_file in package_files:
                terminology.load(package_file)
            engine = Engine(registry, terminology, build_backend(registry, hapi_url or None))
            _engine_cache[key] = engine
            logger.info(f"Validation engine built from {len(package_files)} package(s) in {packages_dir}")
    return engine


def clear_engine_cache():
    with _engine_lock:
        _engine_cache.clear()


def build_sequence(sequence_name, settings, client, instance, app_config):
    if sequence_name == EXPORT_SEQUENCE:
        return BulkDataExportSequence(settings, client)
    if sequence_name == GROUP_VALIDATION_SEQUENCE:
        engine = get_engine(app_config)
        return BulkDataGroupValidationSequence(settings, client, instance.bulk_status_output,
                                               engine.registry, engine.terminology, engine.backend)
    raise ValueError(f"Unknown sequence: {sequence_name}")


def overall_result(counts):
    if counts.get(FAIL) or counts.get(ERROR):
        return FAIL
    if counts.get(PASS):
        return PASS
    return SKIP


def generate_sequence_stream(instance, sequence_name, app_config, session=None):
    """
    Runs a sequence and yields NDJSON progress lines ('start', one 'result'
    per test, 'complete'). Results and the activity log are committed after
    every test so a crash leaves the evidence gathered so far.
    """
    settings = BulkDataSettings.from_instance(instance, app_config)
    instance_id = instance.id

    def record(entry):
        db.session.add(RequestResponse.from_entry(instance_id, entry))

    client = LoggedClient(session=session or requests.Session(), timeout=settings.request_timeout,
                          verify=settings.verify_tls, recorder=record)
    sequence_result = SequenceResult(testing_instance_id=instance_id, sequence_name=sequence_name)
    db.session.add(sequence_result)
    db.session.commit()

    counts = {PASS: 0, FAIL: 0, SKIP: 0, OMIT: 0, ERROR: 0}
    yield json.dumps({"type": "start", "sequence": sequence_name, "sequence_result_id": sequence_result.id,
                      "settings_version": settings.version}) + "\n"
    try:
        sequence = build_sequence(sequence_name, settings, client, instance, app_config)
        for result in sequence.run():
            counts[result.result] += 1
            db.session.add(TestResult(sequence_result_id=sequence_result.id, **result.to_dict()))
            if getattr(sequence, 'status_output', None) and instance.bulk_status_output != sequence.status_output:
                instance.bulk_status_output = sequence.status_output
                logger.info(f"Persisted Complete Status output for instance {instance_id}")
            db.session.commit()
            yield json.dumps({"type": "result", "data": result.to_dict()}) + "\n"
    except Exception as e:
        logger.error(f"Sequence {sequence_name} aborted for instance {instance_id}: {e}", exc_info=True)
        db.session.rollback()
        yield json.dumps({"type": "error", "message": f"Sequence aborted: {e}"}) + "\n"
        counts[ERROR] += 1

    sequence_result.result = overall_result(counts)
    sequence_result.counts = counts
    db.session.commit()
    yield json.dumps({"type": "complete", "data": {"result": sequence_result.result, "counts": counts}}) + "\n"
