"""
Per-record validation: resource type check, profile selection, structural /
profile validation through a backend, must-support tracking and bindings.
"""

import json
import logging

import requests
from fhir.resources.R4B import construct_fhir_element

from .paths import resolve_primitive_path
from .profiles import MustSupportTracker
from .terminology import BindingChecker

logger = logging.getLogger(__name__)

SNOMED = 'http://snomed.info/sct'


def empty_result():
    return {'errors': [], 'warnings': [], 'information': []}


def _label(resource):
    return f"{resource.get('resourceType')}/{resource.get('id', 'unknown')}"


class ModelsValidator:
    """
    Local validation with the fhir.resources models plus required-element
    checks against a loaded StructureDefinition.

    It evaluates no FHIRPath invariants, so its warnings are not trustworthy
    and callers discard them for records without errors.
    """
    limited = True

    def __init__(self, registry=None):
        self.registry = registry

    def _model_errors(self, resource):
        try:
            construct_fhir_element(resource.get('resourceType'), resource)
        except (ValueError, TypeError, KeyError, LookupError) as e:
            details = e.errors() if hasattr(e, 'errors') else None
            if not details:
                return [f"{_label(resource)}: {e}"]
            return [f"{_label(resource)}: {'.'.join(str(p) for p in d.get('loc', ()))}: {d.get('msg')}" for d in details]
        return []

    def _profile_errors(self, resource, sd):
        errors = []
        for element in sd.get('snapshot', {}).get('element', []):
            path = element.get('path', '')
            # Top-level elements only; nested minimums depend on their parent being present
            if element.get('min', 0) <= 0 or path.count('.') != 1 or ':' in element.get('id', ''):
                continue
            if not resolve_primitive_path(resource, path.replace('[x]', '')):
                errors.append(f"{_label(resource)}: Required element {path} missing")
        return errors

    def validate(self, resource, profile_url=None):
        result = empty_result()
        result['errors'].extend(self._model_errors(resource))
        if profile_url:
            sd = self.registry.structure_definition(profile_url) if self.registry else None
            if sd:
                result['errors'].extend(self._profile_errors(resource, sd))
            else:
                result['information'].append(
                    f"StructureDefinition {profile_url} is not loaded; validated against the base resource only"
                )
        return result


class HapiValidator:
    """Delegates to a FHIR server's $validate operation, falling back to local validation if it is unreachable."""
    limited = False

    def __init__(self, base_url, fallback, session=None, timeout=30):
        self.base_url = base_url.rstrip('/')
        self.fallback = fallback
        self.session = session or requests.Session()
        self.timeout = timeout

    def validate(self, resource, profile_url=None):
        url = f"{self.base_url}/{resource.get('resourceType')}/$validate"
        params = {'profile': profile_url} if profile_url else None
        try:
            response = self.session.post(
                url, params=params, data=json.dumps(resource),
                headers={'Content-Type': 'application/fhir+json', 'Accept': 'application/fhir+json'},
                timeout=self.timeout,
            )
            outcome = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"External validation failed for {_label(resource)}: {e}")
            result = self.fallback.validate(resource, profile_url)
            result['information'].append(f"External validator unavailable ({e}); validated locally")
            return result

        if outcome.get('resourceType') != 'OperationOutcome':
            logger.warning(f"Validator returned non-OperationOutcome: {outcome.get('resourceType')}")
            result = self.fallback.validate(resource, profile_url)
            result['information'].append('External validator returned no OperationOutcome; validated locally')
            return result

        result = empty_result()
        for issue in outcome.get('issue', []):
            severity = issue.get('severity')
            diagnostics = issue.get('diagnostics') or (issue.get('details') or {}).get('text', 'No details provided')
            location = ', '.join(issue.get('expression') or issue.get('location') or [])
            message = f"{location}: {diagnostics}" if location else diagnostics
            if severity in ('error', 'fatal'):
                result['errors'].append(message)
            elif severity == 'warning':
                result['warnings'].append(message)
            else:
                result['information'].append(message)
        logger.debug(f"$validate {_label(resource)}: {len(result['errors'])} error(s), {len(result['warnings'])} warning(s)")
        return result


def build_backend(registry, hapi_fhir_url=None, session=None):
    local = ModelsValidator(registry)
    if hapi_fhir_url:
        return HapiValidator(hapi_fhir_url, local, session=session)
    return local


class ResourceTypeState:
    """
    Mutable state of one resource type's validation: one must-support tracker
    per profile definition and one binding checker. Never shared between runs.
    """

    def __init__(self, resource_type, definitions, terminology):
        self.resource_type = resource_type
        self.definitions = list(definitions or [])
        self.trackers = [MustSupportTracker(d) for d in self.definitions]
        self.binding_checker = BindingChecker(terminology)

    def tracker_for(self, definition):
        return self.trackers[self.definitions.index(definition)]

    def must_support_failures(self):
        return [message for tracker in self.trackers for message in tracker.failures()]


class ResourceValidator:
    """Validates one parsed NDJSON record declared to be of a given resource type."""

    def __init__(self, backend, registry, device_types=()):
        self.backend = backend
        self.registry = registry
        self.device_types = set(device_types or ())

    def predefined_device_type(self, resource):
        """True when no allow-list is configured or a SNOMED (or system-less) type code is on it."""
        if resource is None:
            return False
        if not self.device_types:
            return True
        codings = ((resource.get('type') or {}).get('coding')) or []
        actual = {c.get('code') for c in codings if isinstance(c, dict) and c.get('system') in (None, SNOMED)}
        return bool(self.device_types & actual)

    def guess_profile(self, resource):
        # Devices outside the allow-list and all Locations are validated against the base resource
        if resource.get('resourceType') == 'Device' and not self.predefined_device_type(resource):
            return None
        if resource.get('resourceType') == 'Location':
            return None
        return self.registry.guess_profile(resource)

    def validate(self, resource, declared_type, state, line_number=None):
        """
        Returns the line result: {'errors', 'warnings', 'information', 'profile'}.

        Only warnings from the validation backend are discarded for a limited
        backend; binding warnings are kept.
        """
        result = empty_result()
        result['profile'] = None
        resource_type = resource.get('resourceType') if isinstance(resource, dict) else None
        if resource_type != declared_type:
            where = f" at line \"{line_number}\"" if line_number is not None else ''
            result['errors'].append(
                f"Resource type \"{resource_type}\"{where} does not match type defined in output \"{declared_type}\""
            )
            return result

        profile = self.guess_profile(resource)
        result['profile'] = profile
        backend_result = self.backend.validate(resource, profile) if profile else self.backend.validate(resource)

        result['errors'].extend(backend_result['errors'])
        if backend_result['errors'] or not self.backend.limited:
            result['warnings'].extend(backend_result['warnings'])
            result['information'].extend(backend_result['information'])

        if profile:
            definition = self.registry.select_definition(resource_type, profile, state.definitions)
            if definition is not None:
                state.tracker_for(definition).observe(resource)
                binding_result = state.binding_checker.validate_bindings(definition.bindings, [resource])
                result['errors'].extend(binding_result['errors'])
                result['warnings'].extend(binding_result['warnings'])
        return result
