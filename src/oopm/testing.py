"""In-process stand-ins for the delegated resolver, for tests and local experiments."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from pathlib import Path
from typing import Mapping

import yaml

from .aio import AbortedError, CancelToken
from .manifest import MANIFEST_FILENAME, THUMBNAIL_FILENAME
from .resolver import NODE_MODULES, PACKAGE_SUBDIR, ResolverOutcome

PackageTable = Mapping[tuple[str, str], Mapping[str, str]]


def write_package(directory: Path, name: str, version: str, dependencies: Mapping[str, str] | None = None) -> Path:
    """Write a minimal package (manifest plus one source file) into `directory`."""
    directory.mkdir(parents=True, exist_ok=True)
    payload: dict = {"name": name, "version": version}
    if dependencies:
        payload["dependencies"] = dict(dependencies)
    (directory / MANIFEST_FILENAME).write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    (directory / "main.py").write_text(f"# {name}@{version}\n", encoding="utf-8")
    return directory


class FakeResolver:
    """
    Lays out a hoisted, non-deduplicated `node_modules` tree from an in-memory registry.

    `packages` maps `(name, version)` to that version's exact dependencies. The first version
    of a name takes the top-level slot; other versions nest under the package that needs them.
    Unknown packages make the run exit with code 1, like a registry 404.
    """

    def __init__(
        self,
        packages: PackageTable,
        *,
        hang: bool = False,
        delay_s: float = 0.0,
        with_thumbnail: bool = False,
    ) -> None:
        self.packages = {k: dict(v) for k, v in packages.items()}
        self.hang = hang
        self.delay_s = delay_s
        self.with_thumbnail = with_thumbnail
        self.calls: list[dict[str, str]] = []
        self.envs: list[dict[str, str]] = []
        self.workdirs: list[Path] = []
        self.active = 0
        self.peak = 0

    async def resolve(self, workdir: Path, env: dict[str, str], cancel: CancelToken | None) -> ResolverOutcome:
        manifest = json.loads((workdir / "package.json").read_text(encoding="utf-8"))
        requested: dict[str, str] = dict(manifest.get("dependencies") or {})
        self.calls.append(requested)
        self.envs.append(env)
        self.workdirs.append(workdir)

        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.hang:
                if cancel is None:
                    await asyncio.Event().wait()
                else:
                    await cancel.wait()
                raise AbortedError("Aborted while resolving")
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            return self._materialize(workdir, requested)
        finally:
            self.active -= 1

    def _materialize(self, workdir: Path, requested: Mapping[str, str]) -> ResolverOutcome:
        root = workdir / NODE_MODULES
        top_level: dict[str, str] = {}
        placed: set[tuple[str, str]] = set()
        queue: deque[tuple[str, str, Path]] = deque((n, v, root) for n, v in requested.items())

        while queue:
            name, version, container = queue.popleft()
            if (name, version) in placed:
                continue
            deps = self.packages.get((name, version))
            if deps is None:
                return ResolverOutcome(returncode=1, output=f"npm error 404 Not Found - {name}@{version}\n")

            holder = top_level.get(name)
            if holder is None:
                top_level[name] = version
                pkg_dir = root / name
            elif holder == version:
                continue
            else:
                pkg_dir = container / name
            placed.add((name, version))

            pkg_dir.mkdir(parents=True, exist_ok=True)
            (pkg_dir / "package.json").write_text(json.dumps({"name": name, "version": version}), encoding="utf-8")
            write_package(pkg_dir / PACKAGE_SUBDIR, name, version, deps)
            if self.with_thumbnail:
                (pkg_dir / PACKAGE_SUBDIR / THUMBNAIL_FILENAME).write_text("{}", encoding="utf-8")

            for dep_name, dep_version in deps.items():
                queue.append((dep_name, dep_version, pkg_dir / NODE_MODULES))

        return ResolverOutcome(returncode=0, output="")
