from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .aio import gather_or_cancel
from .manifest import get_dependencies
from .store import find_entry, store_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyGraphEntry:
    name: str
    version: str
    dist_dir: str  # "" when no search directory holds the package

    @property
    def key(self) -> str:
        return store_key(self.name, self.version)

    @property
    def missing(self) -> bool:
        return self.dist_dir == ""


async def walk(
    name: str,
    version: str,
    search_dirs: Sequence[Path],
    visited: dict[str, DependencyGraphEntry],
) -> None:
    """
    Add `name@version` and everything it transitively depends on to `visited`.

    Each key is claimed before the first await, so concurrent branches asking for the
    same package (or a cycle leading back to it) stop immediately. A package that cannot
    be found is recorded with an empty `dist_dir` and its dependencies are not followed.
    """
    key = store_key(name, version)
    if key in visited:
        return
    visited[key] = DependencyGraphEntry(name=name, version=version, dist_dir="")

    found = await asyncio.to_thread(find_entry, search_dirs, name, version)
    if found is None:
        logger.debug("walk: %s not found in %d search dir(s)", key, len(search_dirs))
        return

    directory, manifest = found
    visited[key] = DependencyGraphEntry(name=name, version=version, dist_dir=str(directory))
    await gather_or_cancel(
        walk(dep_name, dep_version, search_dirs, visited)
        for dep_name, dep_version in manifest.dependencies.items()
    )


async def walk_all(
    deps: dict[str, str],
    search_dirs: Sequence[Path],
    visited: dict[str, DependencyGraphEntry] | None = None,
) -> dict[str, DependencyGraphEntry]:
    visited = {} if visited is None else visited
    dirs = [Path(d) for d in search_dirs]
    await gather_or_cancel(walk(name, version, dirs, visited) for name, version in deps.items())
    return visited


async def list_closure(workdir: Path, search_dirs: Sequence[Path]) -> list[DependencyGraphEntry]:
    """Every package reachable from the workspace's declared dependencies."""
    dirs = [Path(d).resolve() for d in search_dirs]
    declared = await asyncio.to_thread(get_dependencies, Path(workdir))
    visited = await walk_all(declared, dirs)
    return list(visited.values())
