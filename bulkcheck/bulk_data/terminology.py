"""
Terminology lookups and binding validation.

ValueSets and CodeSystems are loaded from FHIR packages (or directories of
JSON) into an in-memory store. A terminology server can optionally answer
codes the local store does not know. Anything that cannot be resolved raises
TerminologyError, which binding checks downgrade to a warning.
"""

import logging

import requests
from cachetools import TTLCache

from .packages import iter_resources
from .paths import as_list, resolve_element_from_path

logger = logging.getLogger(__name__)


class TerminologyError(Exception):
    pass


class UnknownValueSetError(TerminologyError):
    def __init__(self, url):
        super().__init__(f"Unknown ValueSet: {url}")
        self.url = url


class UnknownCodeSystemError(TerminologyError):
    def __init__(self, url):
        super().__init__(f"Unknown CodeSystem: {url}")
        self.url = url


def _concept_codes(concepts):
    """Codes of a CodeSystem concept tree (nested concepts included)."""
    codes = set()
    for concept in concepts or []:
        if concept.get('code'):
            codes.add(concept['code'])
        codes |= _concept_codes(concept.get('concept'))
    return codes


def _intersect(left, right):
    """Intersects two (codes, open systems) pairs; an open system admits any code of that system."""
    left_codes, left_open = left
    right_codes, right_open = right
    codes = (left_codes & right_codes
             | {c for c in right_codes if c[0] in left_open}
             | {c for c in left_codes if c[0] in right_open})
    return codes, left_open & right_open


class Terminology:
    """
    In-memory ValueSet/CodeSystem store.

    A ValueSet expands to a set of (system, code) pairs; an include of a whole
    CodeSystem that is not loaded is kept as an open system, meaning any code
    from that system is accepted.
    """

    def __init__(self, server_url=None, session=None, timeout=20, cache_ttl=3600):
        self.valuesets = {}
        self.codesystems = {}
        self.server_url = server_url.rstrip('/') if server_url else None
        self.session = session or requests.Session()
        self.timeout = timeout
        self._expansions = {}
        self._remote_cache = TTLCache(maxsize=10000, ttl=cache_ttl)

    # --- Loading ---

    def add_valueset(self, valueset):
        url = valueset.get('url')
        if url:
            self.valuesets[url] = valueset
            self._expansions.pop(url, None)

    def add_codesystem(self, codesystem):
        url = codesystem.get('url')
        if url:
            self.codesystems[url] = _concept_codes(codesystem.get('concept'))
            self._expansions.clear()

    def load(self, source):
        """Loads every ValueSet and CodeSystem from a .tgz package or a directory."""
        counts = {'ValueSet': 0, 'CodeSystem': 0}
        for resource in iter_resources(source, ['ValueSet', 'CodeSystem']):
            if resource['resourceType'] == 'ValueSet':
                self.add_valueset(resource)
            else:
                self.add_codesystem(resource)
            counts[resource['resourceType']] += 1
        logger.info(f"Loaded {counts['ValueSet']} ValueSet(s) and {counts['CodeSystem']} CodeSystem(s) from {source}")
        return counts

    # --- Expansion ---

    def expand(self, url, _seen=None):
        """
        Returns (codes, open_systems) for a ValueSet.

        Raises:
            UnknownValueSetError: the ValueSet (or one it includes) is not loaded.
        """
        url = url.split('|')[0]
        if url in self._expansions:
            return self._expansions[url]
        valueset = self.valuesets.get(url)
        if valueset is None:
            raise UnknownValueSetError(url)
        seen = set(_seen or ()) | {url}

        codes, open_systems = set(), set()
        contains = (valueset.get('expansion') or {}).get('contains')
        if contains:
            stack = list(contains)
            while stack:
                entry = stack.pop()
                if entry.get('code'):
                    codes.add((entry.get('system'), entry['code']))
                stack.extend(entry.get('contains') or [])
        else:
            compose = valueset.get('compose') or {}
            for include in compose.get('include') or []:
                inc_codes, inc_open = self._expand_include(include, seen)
                codes |= inc_codes
                open_systems |= inc_open
            for exclude in compose.get('exclude') or []:
                system = exclude.get('system')
                codes -= {(system, c.get('code')) for c in exclude.get('concept') or []}

        result = (frozenset(codes), frozenset(open_systems))
        self._expansions[url] = result
        return result

    def _expand_include(self, include, seen):
        system = include.get('system')
        current = None
        if include.get('concept'):
            current = ({(system, c.get('code')) for c in include['concept'] if c.get('code')}, set())
        elif system and include.get('filter'):
            # Filters cannot be evaluated locally; accept the whole system
            current = (set(), {system})
        elif system:
            if system in self.codesystems:
                current = ({(system, code) for code in self.codesystems[system]}, set())
            else:
                current = (set(), {system})

        # Every source named by one include constrains the others
        for vs_url in include.get('valueSet') or []:
            if vs_url.split('|')[0] in seen:
                continue
            vs_codes, vs_open = self.expand(vs_url, seen)
            operand = (set(vs_codes), set(vs_open))
            current = operand if current is None else _intersect(current, operand)

        if current is None:
            return set(), set()
        return current

    # --- Validation ---

    def _validate_remote(self, valueset_url, code, system):
        key = (valueset_url, system, code)
        if key in self._remote_cache:
            return self._remote_cache[key]
        if valueset_url:
            url = f"{self.server_url}/ValueSet/$validate-code"
            params = {'url': valueset_url, 'code': code}
            if system:
                params['system'] = system
        else:
            url = f"{self.server_url}/CodeSystem/$validate-code"
            params = {'url': system, 'code': code}
        try:
            response = self.session.get(url, params=params, headers={'Accept': 'application/fhir+json'}, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Terminology server lookup failed for {key}: {e}")
            return None
        if response.status_code != 200:
            logger.debug(f"Terminology server returned {response.status_code} for {key}")
            return None
        parameters = response.json().get('parameter') or []
        result = next((p.get('valueBoolean') for p in parameters if p.get('name') == 'result'), None)
        self._remote_cache[key] = result
        return result

    def validate_code(self, valueset_url=None, code=None, system=None):
        """
        True when the code belongs to the ValueSet, or (without a ValueSet) to its CodeSystem.

        Raises:
            UnknownValueSetError / UnknownCodeSystemError when the membership cannot be decided.
        """
        if valueset_url:
            try:
                codes, open_systems = self.expand(valueset_url)
            except UnknownValueSetError:
                remote = self._validate_remote(valueset_url, code, system) if self.server_url else None
                if remote is None:
                    raise
                return remote
            if system:
                return (system, code) in codes or system in open_systems
            return any(c == code for _, c in codes)

        if not system or system not in self.codesystems:
            remote = self._validate_remote(None, code, system) if self.server_url and system else None
            if remote is None:
                raise UnknownCodeSystemError(system)
            return remote
        return code in self.codesystems[system]


# --- Binding checks ---

def _code_string(element):
    if isinstance(element, dict) and 'coding' in element:
        return ' or '.join(f"{c.get('system')}|{c.get('code')}" for c in element.get('coding') or [])
    if isinstance(element, dict):
        return f"{element.get('system')}|{element.get('code')}"
    return str(element)


def _resource_label(resource):
    return f"{resource.get('resourceType')}/{resource.get('id')}"


class BindingChecker:
    """
    Validates coded values at the bound paths of a profile.

    One checker lives for one file set of one resource type. A required
    binding that has been violated once is not checked again for the rest of
    the file set, and a ValueSet that could not be resolved is reported once.
    """

    def __init__(self, terminology):
        self.terminology = terminology
        self.failed_required = set()
        self.unresolvable = set()
        self._reported = set()

    @staticmethod
    def binding_key(binding_def):
        return (binding_def.get('path'), binding_def.get('system'), binding_def.get('strength'),
                tuple(binding_def.get('extensions') or ()))

    def _element_invalid(self, binding_def, element):
        valueset_url = binding_def.get('system')
        binding_type = binding_def.get('type')
        if binding_type == 'CodeableConcept':
            if not isinstance(element, dict):
                return False
            codings = [c for c in element.get('coding') or [] if isinstance(c, dict)]
            if not codings:
                return False
            if valueset_url:
                # At least one coding must come from the ValueSet
                return not any(self.terminology.validate_code(valueset_url, c.get('code'), c.get('system')) for c in codings)
            # Without a ValueSet each coding must be valid in its own CodeSystem
            return any(not self.terminology.validate_code(None, c.get('code'), c.get('system')) for c in codings)
        if binding_type in ('Quantity', 'Coding'):
            if not isinstance(element, dict) or element.get('code') is None:
                return False
            return not self.terminology.validate_code(valueset_url, element.get('code'), element.get('system'))
        if binding_type == 'code':
            return not self.terminology.validate_code(valueset_url, element)
        return False

    def invalid_bindings(self, binding_def, resources):
        """[{resource, element}] for each resource holding a value outside the binding."""
        invalid = []
        for resource in as_list(resources):
            path_source = [resource]
            for url in binding_def.get('extensions') or []:
                path_source = [ext for el in path_source for ext in el.get('extension') or [] if ext.get('url') == url]
            element = resolve_element_from_path(path_source, binding_def['path'],
                                                lambda el: self._element_invalid(binding_def, el))
            if element is not None:
                invalid.append({'resource': resource, 'element': element})
        return invalid

    @staticmethod
    def invalid_binding_message(invalid, binding_def):
        resource = invalid['resource']
        binding_entity = binding_def.get('system') or 'the declared CodeSystem'
        return (f"{_resource_label(resource)} at {resource.get('resourceType')}.{binding_def['path']} "
                f"with code '{_code_string(invalid['element'])}' is not in {binding_entity}")

    def _unresolved(self, binding_def, error, warnings):
        message = f"Could not verify binding at {binding_def['path']}: {error}"
        if message not in self._reported:
            self._reported.add(message)
            warnings.append(message)
        if isinstance(error, UnknownValueSetError):
            self.unresolvable.add(self.binding_key(binding_def))

    def validate_bindings(self, bindings, resources):
        """
        Returns {'errors': [...], 'warnings': [...]} for the given records.

        Required bindings are checked first; any violation is an error and the
        extensible checks are skipped for these records. Extensible bindings
        fall back to CodeSystem membership and only report warnings.
        """
        result = {'errors': [], 'warnings': []}
        if not bindings:
            return result
        resources = as_list(resources)

        messages = []
        invalid_resources = set()
        for binding_def in (b for b in bindings if b.get('strength') == 'required'):
            key = self.binding_key(binding_def)
            if key in self.failed_required or key in self.unresolvable:
                continue
            try:
                invalid = self.invalid_bindings(binding_def, resources)
            except TerminologyError as e:
                self._unresolved(binding_def, e, result['warnings'])
                continue
            if invalid:
                self.failed_required.add(key)
            invalid_resources |= {_resource_label(i['resource']) for i in invalid}
            messages.extend(self.invalid_binding_message(i, binding_def) for i in invalid)

        if messages:
            binding_word = 'binding' if len(messages) == 1 else 'bindings'
            resource_word = 'resource' if len(invalid_resources) == 1 else 'resources'
            result['errors'].append(
                f"{len(messages)} invalid required {binding_word} found in {len(invalid_resources)} "
                f"{resource_word}: {'. '.join(messages)}"
            )
            return result

        for binding_def in (b for b in bindings if b.get('strength') == 'extensible'):
            if self.binding_key(binding_def) in self.unresolvable:
                continue
            checked_def = binding_def
            try:
                invalid = self.invalid_bindings(binding_def, resources)
                if invalid:
                    # Not in the ValueSet; accept codes that are valid in their stated CodeSystem
                    checked_def = {k: v for k, v in binding_def.items() if k != 'system'}
                    invalid = self.invalid_bindings(checked_def, resources)
            except TerminologyError as e:
                self._unresolved(binding_def, e, result['warnings'])
                continue
            result['warnings'].extend(self.invalid_binding_message(i, checked_def) for i in invalid)

        return result
