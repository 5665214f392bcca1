"""
Profile definitions (must-support and binding tables), profile guessing and
must-support coverage tracking.

Definitions come from YAML tables (a US Core 3.1.1 set is bundled) or are
extracted from StructureDefinitions in FHIR IG packages.
"""

import copy
import logging
import os

import yaml

from .packages import iter_resources
from .paths import find_slice, is_blank, resolve_element_from_path

logger = logging.getLogger(__name__)

BUNDLED_PROFILES_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'data', 'profiles')

US_CORE = 'http://hl7.org/fhir/us/core/StructureDefinition'
US_CORE_R4_URIS = {
    'smoking_status': f'{US_CORE}/us-core-smokingstatus',
    'lab_results': f'{US_CORE}/us-core-observation-lab',
    'pediatric_bmi_age': f'{US_CORE}/pediatric-bmi-for-age',
    'pediatric_weight_height': f'{US_CORE}/pediatric-weight-for-height',
    'pulse_oximetry': f'{US_CORE}/us-core-pulse-oximetry',
    'diagnostic_report_lab': f'{US_CORE}/us-core-diagnosticreport-lab',
    'diagnostic_report_note': f'{US_CORE}/us-core-diagnosticreport-note',
}

BINDABLE_TYPES = {'CodeableConcept', 'Coding', 'Quantity', 'code'}


class ProfileDefinition:
    """Must-support and binding tables for one profile of one resource type."""

    def __init__(self, resource_type, profile=None, must_support=None, bindings=None):
        self.resource_type = resource_type
        self.profile = profile
        must_support = must_support or {}
        self.must_support = {
            'elements': list(must_support.get('elements') or []),
            'extensions': list(must_support.get('extensions') or []),
            'slices': list(must_support.get('slices') or []),
        }
        self.bindings = list(bindings or [])

    def __repr__(self):
        return f"<ProfileDefinition {self.resource_type} {self.profile or '(any)'}>"

    @classmethod
    def from_dict(cls, resource_type, data):
        return cls(resource_type, data.get('profile'), data.get('must_support'), data.get('bindings'))

    @classmethod
    def from_structure_definition(cls, sd):
        """Extracts must-support elements, extensions, slices and bindings from a profile snapshot."""
        resource_type = sd.get('type')
        elements = sd.get('snapshot', {}).get('element', [])
        by_id = {e.get('id'): e for e in elements if e.get('id')}
        must_support = {'elements': [], 'extensions': [], 'slices': []}
        bindings = []

        for element in elements:
            element_id = element.get('id', '')
            path = _relative_path(element.get('path', ''))
            if not path:
                continue
            in_slice = ':' in element_id

            binding = element.get('binding') or {}
            type_code = (element.get('type') or [{}])[0].get('code')
            if (binding.get('strength') in ('required', 'extensible') and binding.get('valueSet')
                    and type_code in BINDABLE_TYPES and not in_slice):
                bindings.append({
                    'type': type_code,
                    'strength': binding['strength'],
                    'system': binding['valueSet'].split('|')[0],
                    'path': path,
                })

            if not element.get('mustSupport'):
                continue

            if element.get('sliceName'):
                if path.split('.')[-1] == 'extension':
                    profiles = (element.get('type') or [{}])[0].get('profile') or []
                    if profiles and '.' not in path:
                        must_support['extensions'].append({'id': element_id, 'url': profiles[0]})
                    continue
                discriminator = _slice_discriminator(element, by_id, elements)
                if discriminator:
                    must_support['slices'].append({'name': element_id, 'path': path, 'discriminator': discriminator})
                continue

            fixed_value = _fixed_value(element)
            if in_slice and fixed_value is None:
                continue
            entry = {'path': path}
            if fixed_value is not None:
                entry['fixed_value'] = fixed_value
            if entry not in must_support['elements']:
                must_support['elements'].append(entry)

        return cls(resource_type, sd.get('url'), must_support, bindings)


def _relative_path(path):
    """'Observation.value[x]' -> 'value'; the root element maps to ''."""
    parts = path.replace('[x]', '').split('.')
    return '.'.join(parts[1:])


def _fixed_value(element):
    for key, value in element.items():
        if key.startswith(('fixed', 'pattern')) and isinstance(value, (str, int, float, bool)):
            return value
    return None


def _slice_discriminator(slice_element, by_id, elements):
    """Translates the parent's slicing discriminator into the table form used by find_slice."""
    slice_id = slice_element.get('id', '')
    parent_id = slice_id.rsplit(':', 1)[0]
    parent = by_id.get(parent_id) or {}
    discriminators = (parent.get('slicing') or {}).get('discriminator') or []
    if not discriminators:
        return None
    disc_type = discriminators[0].get('type')
    disc_path = discriminators[0].get('path', '$this')
    sub_path = '' if disc_path == '$this' else disc_path

    if disc_type == 'type':
        type_code = (slice_element.get('type') or [{}])[0].get('code')
        return {'type': 'type', 'code': type_code} if type_code else None

    target = slice_element if not sub_path else by_id.get(f"{slice_id}.{sub_path}", {})
    pattern_cc = target.get('patternCodeableConcept')
    if pattern_cc and pattern_cc.get('coding'):
        coding = pattern_cc['coding'][0]
        return {'type': 'patternCodeableConcept', 'path': sub_path, 'code': coding.get('code'), 'system': coding.get('system')}
    pattern_identifier = target.get('patternIdentifier')
    if pattern_identifier:
        return {'type': 'patternIdentifier', 'path': sub_path, 'system': pattern_identifier.get('system')}

    values = []
    prefix = f"{slice_id}."
    for element in elements:
        if element.get('id', '').startswith(prefix):
            fixed_value = _fixed_value(element)
            if fixed_value is not None:
                slice_depth = len(slice_element.get('path', '').split('.'))
                values.append({'path': '.'.join(element['path'].replace('[x]', '').split('.')[slice_depth:]), 'value': fixed_value})
    return {'type': 'value', 'values': values} if values else None


class MustSupportTracker:
    """
    Must-support elements, extensions and slices not yet observed for one profile.

    Starts with everything the profile requires and is pruned as records are
    observed; whatever remains after the last file of a resource type was never
    populated by the server.
    """

    def __init__(self, definition):
        self.profile = definition.profile
        self.elements = copy.deepcopy(definition.must_support['elements'])
        self.extensions = copy.deepcopy(definition.must_support['extensions'])
        self.slices = copy.deepcopy(definition.must_support['slices'])

    def observe(self, resource):
        self.elements = [e for e in self.elements if not _element_found(resource, e)]
        resource_extensions = [ext.get('url') for ext in resource.get('extension') or [] if isinstance(ext, dict)]
        self.extensions = [e for e in self.extensions if e.get('url') not in resource_extensions]
        self.slices = [s for s in self.slices if not find_slice(resource, s['path'], s['discriminator'])]

    def merge(self, other):
        """Combines trackers that observed different parts of the same file set: only what neither saw stays missing."""
        self.elements = [e for e in self.elements if e in other.elements]
        self.extensions = [e for e in self.extensions if e in other.extensions]
        self.slices = [s for s in self.slices if s in other.slices]
        return self

    @property
    def complete(self):
        return not (self.elements or self.extensions or self.slices)

    def failures(self):
        """One message per category with unobserved items."""
        target = f" for profile {self.profile}" if self.profile else ''
        template = f"Could not verify presence{target} of the following must support %s: %s"
        messages = []
        if self.elements:
            listed = [f"{e['path']}: {e['fixed_value']}" if not is_blank(e.get('fixed_value')) else e['path']
                      for e in self.elements]
            messages.append(template % ('elements', ', '.join(listed)))
        if self.slices:
            messages.append(template % ('slices', ', '.join(s['name'] for s in self.slices)))
        if self.extensions:
            messages.append(template % ('extensions', ', '.join(e.get('id') or e['url'] for e in self.extensions)))
        return messages


def _element_found(resource, ms_element):
    fixed_value = ms_element.get('fixed_value')
    if is_blank(fixed_value):
        return resolve_element_from_path(resource, ms_element['path']) is not None
    return resolve_element_from_path(resource, ms_element['path'], lambda value: value == fixed_value) is not None


def _codes(codeable_concepts):
    codes = []
    for concept in codeable_concepts or []:
        if isinstance(concept, dict):
            codes.extend(c.get('code') for c in concept.get('coding') or [] if isinstance(c, dict))
    return codes


class ProfileRegistry:
    """Profile definitions and StructureDefinitions keyed by resource type and canonical url."""

    def __init__(self):
        self.definitions = {}
        self.structure_definitions = {}
        self.profiles_by_type = {}

    # --- Loading ---

    def add_definition(self, definition):
        self.definitions.setdefault(definition.resource_type, []).append(definition)
        if definition.profile:
            urls = self.profiles_by_type.setdefault(definition.resource_type, [])
            if definition.profile not in urls:
                urls.append(definition.profile)

    def load_yaml_file(self, path):
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
        resource_type = data.get('resource_type')
        if not resource_type:
            logger.warning(f"Profile definition file {path} has no resource_type, skipping")
            return 0
        profiles = data.get('profiles') or []
        for profile_data in profiles:
            self.add_definition(ProfileDefinition.from_dict(resource_type, profile_data))
        logger.debug(f"Loaded {len(profiles)} profile definition(s) for {resource_type} from {path}")
        return len(profiles)

    def load_yaml_dir(self, directory):
        count = 0
        for filename in sorted(os.listdir(directory)):
            if filename.lower().endswith(('.yaml', '.yml')):
                count += self.load_yaml_file(os.path.join(directory, filename))
        logger.info(f"Loaded {count} profile definition(s) from {directory}")
        return count

    def load_structure_definitions(self, source, derive_definitions=True):
        """
        Registers constraint StructureDefinitions from a package or directory.

        With ``derive_definitions`` a must-support/binding table is extracted
        for every profile that has no table yet.
        """
        known = {d.profile for defs in self.definitions.values() for d in defs}
        count = 0
        for sd in iter_resources(source, ['StructureDefinition']):
            if sd.get('kind') != 'resource' or sd.get('derivation') != 'constraint' or not sd.get('url'):
                continue
            self.structure_definitions[sd['url']] = sd
            count += 1
            if derive_definitions and sd['url'] not in known:
                self.add_definition(ProfileDefinition.from_structure_definition(sd))
        logger.info(f"Registered {count} StructureDefinition(s) from {source}")
        return count

    # --- Lookup ---

    def definitions_for(self, resource_type):
        return list(self.definitions.get(resource_type, []))

    def structure_definition(self, url):
        return self.structure_definitions.get(url)

    def select_definition(self, resource_type, profile_url, definitions=None):
        """With one definition it always applies; with several, the one for ``profile_url``."""
        definitions = self.definitions_for(resource_type) if definitions is None else definitions
        if not definitions:
            return None
        if len(definitions) == 1:
            return definitions[0]
        return next((d for d in definitions if d.profile == profile_url), None)

    def guess_profile(self, resource):
        """Canonical url of the profile a record should conform to, or None."""
        if not isinstance(resource, dict):
            return None
        resource_type = resource.get('resourceType')
        candidates = self.profiles_by_type.get(resource_type) or []

        for uri in (resource.get('meta') or {}).get('profile') or []:
            if uri in candidates or uri in self.structure_definitions:
                return uri

        if not candidates:
            return None

        def known(key):
            uri = US_CORE_R4_URIS[key]
            return uri if uri in candidates else None

        if resource_type == 'Observation':
            codes = _codes([resource.get('code')])
            first_category = (resource.get('category') or [None])[:1]
            if '72166-2' in codes and known('smoking_status'):
                return known('smoking_status')
            if 'laboratory' in _codes(first_category) and known('lab_results'):
                return known('lab_results')
            if '59576-9' in codes and known('pediatric_bmi_age'):
                return known('pediatric_bmi_age')
            if '77606-2' in codes and known('pediatric_weight_height'):
                return known('pediatric_weight_height')
            if '59408-5' in codes and known('pulse_oximetry'):
                return known('pulse_oximetry')
        elif resource_type == 'DiagnosticReport':
            first_category = (resource.get('category') or [None])[:1]
            if 'LAB' in _codes(first_category) and known('diagnostic_report_lab'):
                return known('diagnostic_report_lab')
            if known('diagnostic_report_note'):
                return known('diagnostic_report_note')

        return candidates[0]


def build_registry(profiles_dir=None, package_files=()):
    """Registry with the YAML tables (bundled set by default) plus StructureDefinitions from packages."""
    registry = ProfileRegistry()
    registry.load_yaml_dir(profiles_dir or BUNDLED_PROFILES_DIR)
    for package_file in package_files:
        registry.load_structure_definitions(package_file)
    return registry
