"""Reads conformance resources (StructureDefinition, ValueSet, CodeSystem) out of FHIR IG packages."""

import json
import logging
import os
import tarfile

logger = logging.getLogger(__name__)

SKIPPED_PACKAGE_FILES = ['package.json', '.index.json', 'validation-summary.json', 'validation-oo.json']


def _parse_member(name, content_bytes, resource_types):
    try:
        data = json.loads(content_bytes.decode('utf-8-sig'))
    except json.JSONDecodeError as e:
        logger.debug(f"Could not parse JSON in {name}, skipping: {e}")
        return None
    except UnicodeDecodeError as e:
        logger.warning(f"Could not decode UTF-8 in {name}, skipping: {e}")
        return None
    if isinstance(data, dict) and data.get('resourceType') in resource_types:
        return data
    return None


def iter_package_resources(tgz_path, resource_types):
    """Yields every resource of the given types found under 'package/' in a .tgz IG package."""
    resource_types = set(resource_types)
    try:
        with tarfile.open(tgz_path, "r:gz") as tar:
            for member in tar:
                if not (member.isfile() and member.name.startswith('package/') and member.name.lower().endswith('.json')):
                    continue
                if os.path.basename(member.name).lower() in SKIPPED_PACKAGE_FILES:
                    continue
                fileobj = tar.extractfile(member)
                if not fileobj:
                    continue
                try:
                    data = _parse_member(member.name, fileobj.read(), resource_types)
                finally:
                    fileobj.close()
                if data is not None:
                    yield data
    except tarfile.ReadError as e:
        logger.error(f"Tar ReadError reading {tgz_path}: {e}")


def iter_directory_resources(directory, resource_types):
    """Yields every resource of the given types from the *.json files of a directory."""
    resource_types = set(resource_types)
    for filename in sorted(os.listdir(directory)):
        if not filename.lower().endswith('.json') or filename.lower() in SKIPPED_PACKAGE_FILES:
            continue
        path = os.path.join(directory, filename)
        with open(path, 'rb') as f:
            data = _parse_member(path, f.read(), resource_types)
        if data is not None:
            yield data


def iter_resources(source, resource_types):
    """Dispatches on the source: a .tgz package, or a directory of JSON files."""
    if os.path.isdir(source):
        yield from iter_directory_resources(source, resource_types)
    elif source.lower().endswith(('.tgz', '.tar.gz')):
        yield from iter_package_resources(source, resource_types)
    else:
        logger.warning(f"Unsupported conformance resource source: {source}")


def list_package_files(packages_dir):
    """All .tgz packages in a packages directory (empty if the directory does not exist)."""
    if not packages_dir or not os.path.isdir(packages_dir):
        return []
    return sorted(
        os.path.join(packages_dir, name) for name in os.listdir(packages_dir)
        if name.lower().endswith('.tgz')
    )
