from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import tarfile
import tempfile
from collections.abc import Iterable
from pathlib import Path

from .client import OopmError
from .manifest import THUMBNAIL_FILENAMES, Manifest, try_read_manifest

TEMP_PREFIX = "oopm-"

logger = logging.getLogger(__name__)

# Resolved versions are exact semver: the name ends at the first "-" followed by a
# full MAJOR.MINOR.PATCH core, so names like "es-2015" keep their digits.
_STORE_KEY_RE = re.compile(r"^(?P<name>.+?)-(?P<version>\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.+-]*)?)$")


def store_key(name: str, version: str) -> str:
    if name.startswith("@") and "/" in name:
        name = name.replace("/", "+", 1)
    return f"{name}-{version}"


def parse_store_key(key: str) -> tuple[str, str]:
    m = _STORE_KEY_RE.match(key)
    if not m:
        raise OopmError(f"Invalid store key: {key!r}")
    name = m.group("name")
    if name.startswith("@") and "+" in name:
        name = name.replace("+", "/", 1)
    return name, m.group("version")


def entry_dir(store_dir: Path, name: str, version: str) -> Path:
    return Path(store_dir) / store_key(name, version)


def read_entry(directory: Path, name: str, version: str) -> Manifest | None:
    """The manifest of a store entry, if it exists and really is `name@version`."""
    if not directory.is_dir():
        return None
    manifest = try_read_manifest(directory)
    if manifest is None:
        return None
    if manifest.name != name or manifest.version != version:
        logger.debug("store entry %s holds %s@%s", directory, manifest.name, manifest.version)
        return None
    return manifest


def find_entry(search_dirs: Iterable[Path], name: str, version: str) -> tuple[Path, Manifest] | None:
    # First directory that holds a valid entry wins; later ones are never consulted.
    for base in search_dirs:
        candidate = entry_dir(base, name, version)
        manifest = read_entry(candidate, name, version)
        if manifest is not None:
            return candidate, manifest
    return None


async def is_satisfied(store_dir: Path, name: str, version: str) -> bool:
    found = await asyncio.to_thread(read_entry, entry_dir(store_dir, name, version), name, version)
    return found is not None


def _ignore_thumbnails(root: Path):
    root_s = os.path.normpath(str(root))

    def _ignore(directory: str, names: list[str]) -> set[str]:
        if os.path.normpath(directory) != root_s:
            return set()
        return {n for n in names if n in THUMBNAIL_FILENAMES}

    return _ignore


def _copy_tree(src: Path, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(src, dest, ignore=_ignore_thumbnails(src), symlinks=True, dirs_exist_ok=True)


def _strip_thumbnails(directory: Path) -> None:
    for n in THUMBNAIL_FILENAMES:
        p = directory / n
        if p.is_file():
            p.unlink()


def _move(src: Path, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(src), str(dest))


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


async def copy_package(src: Path, dest: Path) -> None:
    """Copy a package tree into the store, leaving out the generated thumbnails."""
    await asyncio.to_thread(_copy_tree, src, dest)


async def move_package(src: Path, dest: Path) -> None:
    await asyncio.to_thread(_move, src, dest)
    await asyncio.to_thread(_strip_thumbnails, dest)


async def move(src: Path, dest: Path) -> None:
    await asyncio.to_thread(_move, src, dest)


async def remove(path: Path) -> None:
    await asyncio.to_thread(_remove, path)


async def remove_quietly(path: Path) -> None:
    try:
        await remove(path)
    except OSError as e:
        logger.warning("could not remove temporary directory %s: %s", path, e)
    else:
        logger.debug("removed %s", path)


async def make_temp_dir(temp_root: Path | None = None) -> Path:
    # No await before the directory exists: a caller cancelled here never owns an orphan.
    if temp_root is not None:
        Path(temp_root).mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=TEMP_PREFIX, dir=temp_root))
    logger.debug("created %s", path)
    return path


async def exists(path: Path) -> bool:
    return await asyncio.to_thread(Path(path).exists)


async def mkdir(path: Path) -> None:
    await asyncio.to_thread(Path(path).mkdir, parents=True, exist_ok=True)


def safe_extract_tar(archive: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    base = dest.resolve()
    with tarfile.open(archive, "r:*") as tf:
        members = tf.getmembers()
        for member in members:
            name = member.name
            if not name:
                continue
            if name.startswith("/"):
                raise OopmError(f"Archive contains an absolute path entry: {name!r}")
            target = (dest / name).resolve()
            if not str(target).startswith(str(base) + os.sep) and target != base:
                raise OopmError(f"Archive contains an invalid path entry: {name!r}")
            if member.issym() or member.islnk():
                raise OopmError(f"Archive contains a link entry: {name!r}")
        for member in members:
            if member.isdir():
                (dest / member.name).mkdir(parents=True, exist_ok=True)
                continue
            if not member.isfile():
                continue
            target = dest / member.name
            target.parent.mkdir(parents=True, exist_ok=True)
            src = tf.extractfile(member)
            if src is None:
                continue
            with src, target.open("wb") as out:
                shutil.copyfileobj(src, out)
