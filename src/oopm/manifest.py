from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .client import OopmError

MANIFEST_FILENAME = "package.oo.yaml"
THUMBNAIL_FILENAME = ".oo-thumbnail.json"
THUMBNAIL_LANGUAGES = ("en", "zh-CN")
THUMBNAIL_FILENAMES = tuple(
    THUMBNAIL_FILENAME if lang == "en" else THUMBNAIL_FILENAME.replace(".json", f".{lang}.json")
    for lang in THUMBNAIL_LANGUAGES
)

logger = logging.getLogger(__name__)


class ManifestNotFoundError(OopmError):
    pass


class InvalidManifestError(OopmError):
    pass


class SelfDependencyError(OopmError):
    def __init__(self, name: str) -> None:
        super().__init__(f"ERR_OOPM_DEPEND_ITSELF: Not allowed to depend on itself ({name})")
        self.name = name


@dataclass(frozen=True)
class Manifest:
    name: str
    version: str
    dependencies: dict[str, str] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


def manifest_path(directory: Path) -> Path:
    return Path(directory) / MANIFEST_FILENAME


def _parse_dependencies(value: Any, *, path: Path) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise InvalidManifestError(f"Field dependencies must be a mapping in {path}")
    deps: dict[str, str] = {}
    for key, version in value.items():
        if not isinstance(key, str) or not key.strip():
            raise InvalidManifestError(f"Invalid dependency name {key!r} in {path}")
        if isinstance(version, (int, float)) and not isinstance(version, bool):
            version = str(version)
        if not isinstance(version, str) or not version.strip():
            raise InvalidManifestError(f"Invalid version for dependency {key!r} in {path}")
        deps[key.strip()] = version.strip()
    return deps


def read_manifest(directory: Path) -> Manifest:
    path = manifest_path(directory)
    if not path.is_file():
        raise ManifestNotFoundError(f"Not found: {path}")

    try:
        content = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise InvalidManifestError(f"Could not read {path}: {e}") from e

    if not isinstance(content, dict):
        raise InvalidManifestError(f"Manifest is not a mapping: {path}")

    name = content.get("name")
    if not isinstance(name, str) or not name.strip():
        raise InvalidManifestError(f"Miss required field: name in {path}")

    version = content.get("version")
    # YAML happily turns `version: 1.0` into a float.
    if isinstance(version, (int, float)) and not isinstance(version, bool):
        version = str(version)
    if not isinstance(version, str) or not version.strip():
        raise InvalidManifestError(f"Miss required field: version in {path}")

    return Manifest(
        name=name.strip(),
        version=version.strip(),
        dependencies=_parse_dependencies(content.get("dependencies"), path=path),
        raw=content,
    )


def try_read_manifest(directory: Path) -> Manifest | None:
    """Read a manifest, treating a missing or malformed file as absent."""
    try:
        return read_manifest(directory)
    except (ManifestNotFoundError, InvalidManifestError) as e:
        logger.debug("ignoring manifest in %s: %s", directory, e)
        return None


def check_self_dependency(manifest: Manifest) -> None:
    if manifest.name in manifest.dependencies:
        raise SelfDependencyError(manifest.name)


def get_dependencies(workdir: Path | None) -> dict[str, str]:
    """Declared dependencies of a workspace; no workspace means nothing is declared."""
    if workdir is None:
        return {}
    manifest = read_manifest(workdir)
    check_self_dependency(manifest)
    return dict(manifest.dependencies)


def _write_yaml_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(yaml.safe_dump(data, sort_keys=False, allow_unicode=True), encoding="utf-8")
    tmp.replace(path)


def update_dependencies(workdir: Path, deps: dict[str, str]) -> Manifest:
    """Record exact versions for `deps` in the workspace manifest, keeping every other field."""
    manifest = read_manifest(workdir)
    payload = dict(manifest.raw)
    dependencies = dict(manifest.dependencies)
    dependencies.update(deps)
    payload["dependencies"] = dependencies
    payload.pop("scripts", None)
    _write_yaml_atomic(manifest_path(workdir), payload)
    return read_manifest(workdir)
