from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from .aio import CancelToken, gather_or_cancel
from .client import OopmError, RegistryClient
from .config import DEFAULT_REGISTRY, DEFAULT_TIMEOUT_S
from .manifest import (
    MANIFEST_FILENAME,
    Manifest,
    ManifestNotFoundError,
    SelfDependencyError,
    check_self_dependency,
    read_manifest,
    update_dependencies,
)
from .repair import IntegrityRepairer
from .resolver import BatchResolver, DelegatedResolver, Dependency, ResolvedEntry
from .store import (
    copy_package,
    entry_dir,
    exists,
    is_satisfied,
    make_temp_dir,
    mkdir,
    move_package,
    remove,
    remove_quietly,
    safe_extract_tar,
)

TARBALL_SUFFIXES = (".tgz", ".tar.gz")

logger = logging.getLogger(__name__)


class SourceNotFoundError(OopmError):
    pass


class InvalidOperationError(OopmError):
    pass


@dataclass(frozen=True)
class DepRequest:
    name: str
    version: str | None = None


def parse_dep_request(value: str) -> DepRequest:
    """`name`, `name@1.0.0`, `@scope/name` or `@scope/name@1.0.0`."""
    raw = value.strip()
    if not raw:
        raise InvalidOperationError("Empty package name.")
    at_idx = raw.rfind("@")
    if at_idx > 0:
        name, version = raw[:at_idx].strip(), raw[at_idx + 1 :].strip()
        return DepRequest(name=name, version=version or None)
    return DepRequest(name=raw)


@dataclass(frozen=True)
class InstallPlan:
    already_installed: tuple[Dependency, ...]
    need_install: tuple[Dependency, ...]
    primary: tuple[str, ...] = ()
    # Explicit requests with their versions filled in; what `save` writes back.
    requested: tuple[Dependency, ...] = ()


@dataclass(frozen=True)
class InstalledPackage:
    name: str
    version: str
    target: Path
    is_already_exist: bool
    meta: Manifest | None = None


@dataclass(frozen=True)
class InstallResult:
    resolved: dict[str, InstalledPackage]
    primary: tuple[str, ...]


@dataclass(frozen=True)
class FileInstallResult:
    target: Path
    meta: Manifest
    is_overwrite: bool


@dataclass(frozen=True)
class FromPath:
    path: Path


@dataclass(frozen=True)
class ExplicitDeps:
    deps: tuple[DepRequest, ...]
    workdir: Path | None = None
    save: bool = False


@dataclass(frozen=True)
class SyncAll:
    workdir: Path


InstallOptions = Union[FromPath, ExplicitDeps, SyncAll]


async def classify(
    requested: Sequence[DepRequest],
    declared: Mapping[str, str],
    store_dir: Path,
    *,
    latest_version: Callable[[str], Awaitable[str]] | None = None,
) -> InstallPlan:
    """
    Split the required packages into those the store already satisfies and those to fetch.

    With no explicit requests every declared dependency is primary and judged by disk
    presence alone. Otherwise a request is only "already installed" when the store has it
    and the workspace declares exactly that version; declared dependencies that were not
    requested are fetched when missing and otherwise left alone.
    """
    requested_names = {r.name for r in requested}

    async def _pin(req: DepRequest) -> Dependency:
        version = req.version or declared.get(req.name)
        if not version:
            if latest_version is None:
                raise OopmError(f"No version given for {req.name} and no registry to ask.")
            version = await latest_version(req.name)
        return Dependency(req.name, version)

    pinned = await gather_or_cancel(_pin(r) for r in requested)

    versions_by_name: dict[str, str] = {}
    for dep in pinned:
        seen = versions_by_name.setdefault(dep.name, dep.version)
        if seen != dep.version:
            raise InvalidOperationError(f"Conflicting versions requested for {dep.name}: {seen} and {dep.version}")

    others = [Dependency(n, v) for n, v in declared.items() if n not in requested_names]
    present = await gather_or_cancel(is_satisfied(store_dir, d.name, d.version) for d in [*pinned, *others])
    on_disk = dict(zip([d.key for d in [*pinned, *others]], present))

    already: dict[str, Dependency] = {}
    need: dict[str, Dependency] = {}
    primary: dict[str, None] = {}

    for dep in pinned:
        primary[dep.key] = None
        if on_disk[dep.key] and declared.get(dep.name) == dep.version:
            already.setdefault(dep.key, dep)
        else:
            need.setdefault(dep.key, dep)

    sync = not requested
    for dep in others:
        if sync:
            primary[dep.key] = None
        if not on_disk[dep.key]:
            need.setdefault(dep.key, dep)
        elif sync:
            already.setdefault(dep.key, dep)

    return InstallPlan(
        already_installed=tuple(d for k, d in already.items() if k not in need),
        need_install=tuple(need.values()),
        primary=tuple(primary),
        requested=tuple(dict.fromkeys(pinned)),
    )


def _is_tarball(path: Path) -> bool:
    return path.is_file() and path.name.endswith(TARBALL_SUFFIXES)


def _package_root(unpacked: Path) -> Path:
    # Registry archives are laid out as package/package/<files>.
    for candidate in (unpacked / "package" / "package", unpacked / "package", unpacked):
        if (candidate / MANIFEST_FILENAME).is_file():
            return candidate
    raise ManifestNotFoundError(f"Archive does not contain {MANIFEST_FILENAME}")


class Installer:
    def __init__(
        self,
        *,
        store_dir: Path,
        registry: str = DEFAULT_REGISTRY,
        token: str | None = None,
        resolver: DelegatedResolver | None = None,
        temp_root: Path | None = None,
        registry_client: RegistryClient | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self.store_dir = Path(store_dir).expanduser().resolve()
        self.registry = registry
        self.token = token
        self.timeout_s = timeout_s
        self.batch_resolver = BatchResolver(registry=registry, token=token, resolver=resolver, temp_root=temp_root)
        self.repairer = IntegrityRepairer(store_dir=self.store_dir, batch_resolver=self.batch_resolver)
        self._registry_client = registry_client

    async def install(self, options: InstallOptions, *, cancel: CancelToken | None = None):
        match options:
            case FromPath(path=path):
                return await self.install_from_path(path)
            case ExplicitDeps(deps=deps, workdir=workdir, save=save):
                return await self.install_packages(deps, workdir=workdir, save=save, cancel=cancel)
            case SyncAll(workdir=workdir):
                return await self.sync_workspace(workdir, cancel=cancel)
            case _:
                raise InvalidOperationError(f"Invalid install options: {options!r}")

    async def install_from_path(self, path: Path) -> FileInstallResult:
        """Copy a local package directory (or `.tgz`) into the store; dependencies are not touched."""
        source = Path(path).expanduser()
        if not await exists(source):
            raise SourceNotFoundError(f"File not found: {source}")

        if _is_tarball(source):
            temp = await make_temp_dir(self.batch_resolver.temp_root)
            try:
                unpacked = temp / "unpacked"
                await asyncio.to_thread(safe_extract_tar, source, unpacked)
                root = await asyncio.to_thread(_package_root, unpacked)
                meta, target, is_overwrite = await self._prepare_target(root)
                await move_package(root, target)
            finally:
                await remove_quietly(temp)
        elif source.is_dir():
            meta, target, is_overwrite = await self._prepare_target(source)
            await copy_package(source, target)
        else:
            raise InvalidOperationError(f"Not a package directory or .tgz archive: {source}")

        logger.info("installed %s@%s into %s", meta.name, meta.version, target)
        return FileInstallResult(target=target, meta=meta, is_overwrite=is_overwrite)

    async def _prepare_target(self, root: Path) -> tuple[Manifest, Path, bool]:
        meta = await asyncio.to_thread(read_manifest, root)
        check_self_dependency(meta)
        target = entry_dir(self.store_dir, meta.name, meta.version)
        is_overwrite = await exists(target)
        if is_overwrite:
            await remove(target)
        await mkdir(target.parent)
        return meta, target, is_overwrite

    async def install_packages(
        self,
        deps: Sequence[DepRequest],
        *,
        workdir: Path | None = None,
        save: bool = False,
        cancel: CancelToken | None = None,
    ) -> InstallResult:
        if not deps:
            raise InvalidOperationError("No packages given to install.")

        workspace: Manifest | None = None
        if workdir is not None:
            try:
                workspace = await asyncio.to_thread(read_manifest, Path(workdir))
            except ManifestNotFoundError:
                if save:
                    raise
        if workspace is not None:
            check_self_dependency(workspace)
            for req in deps:
                if req.name == workspace.name:
                    raise SelfDependencyError(req.name)
        declared = dict(workspace.dependencies) if workspace is not None else {}

        plan = await self._classify(deps, declared)

        # Declared packages already on disk may still reference transitive versions that are gone.
        need_names = {d.name for d in plan.need_install}
        candidates = [Dependency(n, v) for n, v in declared.items() if n not in need_names]

        resolved = await self._install(
            plan,
            candidates=candidates,
            save_to=Path(workdir) if save and workspace is not None else None,
            cancel=cancel,
        )
        return InstallResult(resolved=resolved, primary=plan.primary)

    async def sync_workspace(self, workdir: Path, *, cancel: CancelToken | None = None) -> InstallResult:
        workspace = await asyncio.to_thread(read_manifest, Path(workdir))
        check_self_dependency(workspace)
        declared = dict(workspace.dependencies)

        plan = await classify([], declared, self.store_dir)
        candidates = [Dependency(n, v) for n, v in declared.items()]
        resolved = await self._install(plan, candidates=candidates, save_to=None, cancel=cancel)
        return InstallResult(resolved=resolved, primary=plan.primary)

    async def _classify(self, deps: Sequence[DepRequest], declared: dict[str, str]) -> InstallPlan:
        if all(d.version or d.name in declared for d in deps):
            return await classify(deps, declared, self.store_dir)
        if self._registry_client is not None:
            return await classify(deps, declared, self.store_dir, latest_version=self._registry_client.latest_version)
        async with RegistryClient(registry=self.registry, token=self.token, timeout_s=self.timeout_s) as client:
            return await classify(deps, declared, self.store_dir, latest_version=client.latest_version)

    async def _install(
        self,
        plan: InstallPlan,
        *,
        candidates: list[Dependency],
        save_to: Path | None,
        cancel: CancelToken | None,
    ) -> dict[str, InstalledPackage]:
        if cancel is not None:
            cancel.raise_if_cancelled()
        await mkdir(self.store_dir)

        results: dict[str, InstalledPackage] = {}
        claimed: set[str] = set()
        for dep in plan.already_installed:
            target = entry_dir(self.store_dir, dep.name, dep.version)
            meta = await asyncio.to_thread(read_manifest, target)
            claimed.add(dep.key)
            results[dep.key] = InstalledPackage(dep.name, dep.version, target, True, meta)

        async def _adopt(entry: ResolvedEntry) -> None:
            if entry.key in claimed:
                return
            claimed.add(entry.key)
            target = entry_dir(self.store_dir, entry.name, entry.version)
            present = await is_satisfied(self.store_dir, entry.name, entry.version)
            meta = await asyncio.to_thread(read_manifest, entry.source_dir)
            if not present:
                if await exists(target):
                    await remove(target)
                await copy_package(entry.source_dir, target)
                logger.info("installed %s", entry.key)
            results[entry.key] = InstalledPackage(entry.name, entry.version, target, present, meta)

        if plan.need_install:
            async with self.batch_resolver.resolve(plan.need_install, cancel) as entries:
                await gather_or_cancel(_adopt(e) for e in entries)

        if save_to is not None and plan.requested:
            await asyncio.to_thread(update_dependencies, save_to, {d.name: d.version for d in plan.requested})
            logger.info("saved %d dependenc(ies) to %s", len(plan.requested), save_to / MANIFEST_FILENAME)

        if cancel is not None:
            cancel.raise_if_cancelled()
        report = await self.repairer.repair(candidates, skip_keys=set(results), cancel=cancel)
        for entry in report.merged:
            meta = await asyncio.to_thread(read_manifest, entry.source_dir)
            results.setdefault(
                entry.key, InstalledPackage(entry.name, entry.version, entry.source_dir, False, meta)
            )
        return results


async def install_from_path(path: Path, store_dir: Path) -> FileInstallResult:
    return await Installer(store_dir=store_dir).install_from_path(path)


async def install_packages(
    deps: Sequence[DepRequest],
    *,
    store_dir: Path,
    registry: str = DEFAULT_REGISTRY,
    workdir: Path | None = None,
    token: str | None = None,
    save: bool = False,
    cancel: CancelToken | None = None,
    resolver: DelegatedResolver | None = None,
) -> InstallResult:
    installer = Installer(store_dir=store_dir, registry=registry, token=token, resolver=resolver)
    return await installer.install_packages(deps, workdir=workdir, save=save, cancel=cancel)


async def sync_workspace(
    workdir: Path,
    *,
    store_dir: Path,
    registry: str = DEFAULT_REGISTRY,
    token: str | None = None,
    cancel: CancelToken | None = None,
    resolver: DelegatedResolver | None = None,
) -> InstallResult:
    installer = Installer(store_dir=store_dir, registry=registry, token=token, resolver=resolver)
    return await installer.sync_workspace(workdir, cancel=cancel)


async def install(
    options: InstallOptions,
    *,
    store_dir: Path,
    registry: str = DEFAULT_REGISTRY,
    token: str | None = None,
    cancel: CancelToken | None = None,
    resolver: DelegatedResolver | None = None,
) -> FileInstallResult | InstallResult:
    installer = Installer(store_dir=store_dir, registry=registry, token=token, resolver=resolver)
    return await installer.install(options, cancel=cancel)
