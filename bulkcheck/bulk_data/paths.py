"""
Element navigation over FHIR JSON resources.

Paths are the dotted, type-prefix-free paths used by the must-support and
binding tables ('code.coding.system', 'value.unit'). Every hop is an explicit
presence check: a missing or blank hop means the element is absent.
Choice elements are addressed by their base name ('value' matches
'valueQuantity', 'valueString', ...).
"""

import logging
import re

from fhirpathpy import evaluate
from fhirpathpy.models import models

logger = logging.getLogger(__name__)

_CHOICE_SUFFIX = re.compile(r'^[A-Z]')
_DATE = re.compile(r"^\d{4}(-\d{2}(-\d{2})?)?$")


def is_blank(value):
    if isinstance(value, str):
        return not value.strip()
    return value is None or value == [] or value == {}


def as_list(value):
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def child_values(element, name):
    """Values of the child ``name`` of a JSON element, flattened; choice types expand to every typed key."""
    if not isinstance(element, dict):
        return []
    if name in element:
        return [v for v in as_list(element[name]) if not is_blank(v)]
    found = []
    for key, value in element.items():
        if key.startswith(name) and len(key) > len(name) and _CHOICE_SUFFIX.match(key[len(name):]):
            found.extend(v for v in as_list(value) if not is_blank(v))
    return found


def resolve_path(elements, path):
    """All non-blank values reachable from ``elements`` along ``path``."""
    current = [e for e in as_list(elements) if not is_blank(e)]
    if not path:
        return current
    for part in path.split('.'):
        current = [value for element in current for value in child_values(element, part)]
        if not current:
            return []
    return current


def resolve_element_from_path(element, path, predicate=None):
    """
    First value at ``path`` (optionally the first one satisfying ``predicate``), or None.

    Mirrors a depth-first search: each element of an array is tried in turn,
    so a predicate can match a deeper value under any branch.
    """
    for value in resolve_path(element, path):
        if predicate is None or predicate(value):
            return value
    return None


def resolve_primitive_path(resource, path, fhir_version='r4'):
    """Evaluates a full FHIRPath expression (e.g. 'Patient.name') with choice type support."""
    try:
        return evaluate(resource, path, {}, models[fhir_version])
    except Exception as e:
        logger.debug(f"FHIRPath evaluation failed for {path}: {e}")
        return []


# --- Slices ---

def _coding_matches(coding, code, system):
    return isinstance(coding, dict) and coding.get('code') == code and coding.get('system') == system


def _matches_values(element, values):
    """
    True when ``element`` satisfies every (path parts, expected value) pair.

    Pairs are grouped by their first path part, and all pairs in a group must
    be satisfied by the same child, e.g. 'coding.code' and 'coding.system'
    must come from a single Coding.
    """
    groups = {}
    for parts, expected in values:
        groups.setdefault(parts[0], []).append((parts[1:], expected))
    for part, group in groups.items():
        leaf_values = [expected for rest, expected in group if not rest]
        nested = [(rest, expected) for rest, expected in group if rest]
        matched = False
        for child in child_values(element, part):
            if any(child != expected for expected in leaf_values):
                continue
            if nested and not _matches_values(child, nested):
                continue
            matched = True
            break
        if not matched:
            return False
    return True


def _is_date(value):
    return isinstance(value, str) and _DATE.match(value) is not None


def _has_typed_choice(resource, path, type_code):
    """'value' + 'Quantity' -> is a non-blank 'valueQuantity' present at that path?"""
    parts = path.split('.')
    parents = resolve_path(resource, '.'.join(parts[:-1])) if len(parts) > 1 else [resource]
    key = parts[-1] + type_code[0].upper() + type_code[1:]
    return any(isinstance(parent, dict) and not is_blank(parent.get(key)) for parent in parents)


def find_slice(resource, path, discriminator):
    """Returns the first array element at ``path`` belonging to the slice described by ``discriminator``."""
    discriminator_type = discriminator.get('type')

    if discriminator_type == 'type':
        type_code = discriminator.get('code', '')
        if type_code == 'Date':
            return resolve_element_from_path(resource, path, _is_date)
        if type_code == 'String':
            return resolve_element_from_path(resource, path, lambda value: isinstance(value, str))
        return path if _has_typed_choice(resource, path, type_code) else None

    def in_slice(array_element):
        if discriminator_type == 'patternCodeableConcept':
            sub_path = discriminator.get('path')
            coding_path = f"{sub_path}.coding" if sub_path else 'coding'
            return resolve_element_from_path(
                array_element, coding_path,
                lambda coding: _coding_matches(coding, discriminator.get('code'), discriminator.get('system'))
            ) is not None
        if discriminator_type == 'patternIdentifier':
            return resolve_element_from_path(
                array_element, discriminator.get('path'),
                lambda identifier: isinstance(identifier, dict) and identifier.get('system') == discriminator.get('system')
            ) is not None
        if discriminator_type == 'value':
            values = [(value_def['path'].split('.'), value_def['value']) for value_def in discriminator.get('values', [])]
            return _matches_values(array_element, values)
        logger.warning(f"Unsupported slice discriminator type: {discriminator_type}")
        return False

    return resolve_element_from_path(resource, path, in_slice)
