from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .aio import CancelToken, bounded, gather_or_cancel
from .resolver import BatchResolver, Dependency, ResolvedEntry
from .store import copy_package, entry_dir, is_satisfied, make_temp_dir, move_package, remove_quietly
from .walker import DependencyGraphEntry, walk

MAX_CONCURRENT_BATCHES = 5
MAX_CONCURRENT_MOVES = 10

logger = logging.getLogger(__name__)


def group(deps: Iterable[Dependency]) -> list[list[Dependency]]:
    """
    Split dependencies into batches that hold at most one version per name.

        [a@1, b@1, a@2] -> [[a@1, b@1], [a@2]]

    Each entry lands in the first batch without that name; an exact duplicate of an
    entry already placed is dropped.
    """
    batches: list[list[Dependency]] = []
    for dep in deps:
        placed = False
        for batch in batches:
            same_name = next((d for d in batch if d.name == dep.name), None)
            if same_name is None:
                batch.append(dep)
                placed = True
                break
            if same_name.version == dep.version:
                placed = True
                break
        if not placed:
            batches.append([dep])
    return batches


@dataclass(frozen=True)
class RepairReport:
    missing: tuple[Dependency, ...]
    batches: tuple[tuple[Dependency, ...], ...]
    merged: tuple[ResolvedEntry, ...]


class IntegrityRepairer:
    """
    Finds packages referenced from the store that the store does not hold, and installs them.

    The primary install only looks at the workspace's direct dependencies; an entry that was
    already present can still point at a transitive version nobody fetched.
    """

    def __init__(
        self,
        *,
        store_dir: Path,
        batch_resolver: BatchResolver,
        max_batches: int = MAX_CONCURRENT_BATCHES,
        max_moves: int = MAX_CONCURRENT_MOVES,
    ) -> None:
        self.store_dir = Path(store_dir)
        self.batch_resolver = batch_resolver
        self.max_batches = max_batches
        self.max_moves = max_moves

    async def find_missing(self, candidates: Sequence[Dependency]) -> list[Dependency]:
        visited: dict[str, DependencyGraphEntry] = {}
        dirs = [self.store_dir]
        await gather_or_cancel(walk(d.name, d.version, dirs, visited) for d in candidates)
        return [Dependency(e.name, e.version) for e in visited.values() if e.missing]

    async def repair(
        self,
        candidates: Sequence[Dependency],
        *,
        skip_keys: Iterable[str] = (),
        cancel: CancelToken | None = None,
    ) -> RepairReport:
        """
        Install every missing transitive dependency of `candidates` into the store.

        Keys in `skip_keys` belong to the primary pass and are never overwritten. Returned
        entries point at their final location in the store.
        """
        if not candidates:
            return RepairReport(missing=(), batches=(), merged=())

        missing = await self.find_missing(candidates)
        if not missing:
            return RepairReport(missing=(), batches=(), merged=())

        batches = group(missing)
        logger.info("repair: %d missing package(s) in %d batch(es)", len(missing), len(batches))

        staging = await make_temp_dir(self.batch_resolver.temp_root)
        try:
            staged = await self._resolve_batches(batches, staging, cancel)
            merged = await self._merge(staged, skip=set(skip_keys))
        finally:
            await remove_quietly(staging)

        return RepairReport(
            missing=tuple(missing),
            batches=tuple(tuple(b) for b in batches),
            merged=tuple(merged),
        )

    async def _resolve_batches(
        self,
        batches: list[list[Dependency]],
        staging: Path,
        cancel: CancelToken | None,
    ) -> list[ResolvedEntry]:
        staged: dict[str, ResolvedEntry] = {}
        run_batch = bounded(self.max_batches)
        run_move = bounded(self.max_moves)

        async def _stage(entry: ResolvedEntry) -> None:
            if entry.key in staged:
                return
            target = staging / entry.key
            staged[entry.key] = ResolvedEntry(entry.name, entry.version, target)
            await move_package(entry.source_dir, target)

        async def _one(batch: list[Dependency]) -> None:
            async with self.batch_resolver.resolve(batch, cancel) as entries:
                await gather_or_cancel(run_move(lambda e=e: _stage(e)) for e in entries)

        await gather_or_cancel(run_batch(lambda b=b: _one(b)) for b in batches)
        return list(staged.values())

    async def _merge(self, staged: list[ResolvedEntry], *, skip: set[str]) -> list[ResolvedEntry]:
        merged: list[ResolvedEntry] = []

        async def _copy(entry: ResolvedEntry) -> None:
            target = entry_dir(self.store_dir, entry.name, entry.version)
            # Batches bring their whole closure along; parts of it may already be in the store.
            if await is_satisfied(self.store_dir, entry.name, entry.version):
                return
            await copy_package(entry.source_dir, target)
            logger.info("repair: installed %s", entry.key)
            merged.append(ResolvedEntry(entry.name, entry.version, target))

        await gather_or_cancel(_copy(e) for e in staged if e.key not in skip)
        return merged


async def repair(
    candidates: Sequence[Dependency],
    store_dir: Path,
    batch_resolver: BatchResolver,
    *,
    skip_keys: Iterable[str] = (),
    cancel: CancelToken | None = None,
) -> list[ResolvedEntry]:
    repairer = IntegrityRepairer(store_dir=store_dir, batch_resolver=batch_resolver)
    report = await repairer.repair(candidates, skip_keys=skip_keys, cancel=cancel)
    return list(report.merged)

