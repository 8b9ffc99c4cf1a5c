from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import urlsplit

from .aio import AbortedError, CancelToken
from .client import OopmError
from .config import DEFAULT_RESOLVER_COMMAND
from .manifest import MANIFEST_FILENAME, read_manifest
from .store import make_temp_dir, remove_quietly, store_key

SYNTHETIC_PACKAGE_NAME = "oopm-package-temp"
SYNTHETIC_PACKAGE_VERSION = "0.0.1"
NODE_MODULES = "node_modules"
# Published archives nest the real package one level down: node_modules/<name>/package/
PACKAGE_SUBDIR = "package"
DEFAULT_KILL_GRACE_S = 1.0

logger = logging.getLogger(__name__)


class ResolutionFailedError(OopmError):
    def __init__(self, deps: Sequence[Dependency], returncode: int, output: str = "") -> None:
        names = ", ".join(f"{d.name}@{d.version}" for d in deps)
        message = f"Resolver exited with code {returncode} while installing {names}"
        tail = output.strip()[-2000:]
        if tail:
            message = f"{message}\n{tail}"
        super().__init__(message)
        self.returncode = returncode
        self.output = output


@dataclass(frozen=True)
class Dependency:
    name: str
    version: str

    @property
    def key(self) -> str:
        return store_key(self.name, self.version)


@dataclass(frozen=True)
class ResolvedEntry:
    name: str
    version: str
    source_dir: Path

    @property
    def key(self) -> str:
        return store_key(self.name, self.version)


@dataclass(frozen=True)
class ResolverOutcome:
    returncode: int
    output: str = ""


class DelegatedResolver(Protocol):
    async def resolve(self, workdir: Path, env: dict[str, str], cancel: CancelToken | None) -> ResolverOutcome:
        """Materialize the dependencies of `workdir`'s synthetic manifest; raise AbortedError on cancel."""
        ...


def resolver_env(registry: str, base: dict[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    env.update(
        {
            "npm_config_registry": registry,
            "npm_config_save_exact": "true",
            # One directory per exact version: the flat store depends on duplicates staying put.
            "npm_config_install_strategy": "hoisted",
            "npm_config_prefer_dedupe": "false",
            "npm_config_ignore_scripts": "true",
            "npm_config_audit": "false",
            "npm_config_fund": "false",
            "npm_config_update_notifier": "false",
        }
    )
    return env


def nerf_url(url: str) -> str:
    parts = urlsplit(url)
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    path = parts.path or "/"
    return f"//{host}{path[: path.rfind('/') + 1]}"


def write_synthetic_manifest(workdir: Path, deps: Sequence[Dependency], *, registry: str, token: str | None) -> None:
    dependencies: dict[str, str] = {}
    for dep in deps:
        seen = dependencies.get(dep.name)
        if seen is not None and seen != dep.version:
            raise OopmError(f"One batch cannot hold {dep.name}@{seen} and {dep.name}@{dep.version}")
        dependencies[dep.name] = dep.version

    payload = {
        "name": SYNTHETIC_PACKAGE_NAME,
        "version": SYNTHETIC_PACKAGE_VERSION,
        "scripts": {},
        "dependencies": dependencies,
    }
    (workdir / "package.json").write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    if token:
        (workdir / ".npmrc").write_text(f"{nerf_url(registry)}:_authToken={token}\n", encoding="utf-8")


def _at_install_depth(manifest_file: Path) -> bool:
    # Accept node_modules/<name>/package/<manifest> and node_modules/@scope/<name>/package/<manifest>.
    package_dir = manifest_file.parent
    if package_dir.name != PACKAGE_SUBDIR:
        return False
    container = package_dir.parent.parent
    if container.name == NODE_MODULES:
        return True
    return container.name.startswith("@") and container.parent.name == NODE_MODULES


def scan_resolved_tree(workdir: Path) -> list[ResolvedEntry]:
    root = workdir / NODE_MODULES
    if not root.is_dir():
        return []

    hits = sorted(root.rglob(MANIFEST_FILENAME), key=lambda p: (len(p.parts), str(p)))
    entries: dict[str, ResolvedEntry] = {}
    for hit in hits:
        if not _at_install_depth(hit):
            logger.debug("skipping manifest outside install depth: %s", hit)
            continue
        manifest = read_manifest(hit.parent)
        entry = ResolvedEntry(name=manifest.name, version=manifest.version, source_dir=hit.parent)
        entries.setdefault(entry.key, entry)
    return list(entries.values())


class SubprocessResolver:
    """Runs the package manager CLI (npm by default) inside the ephemeral workspace."""

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_RESOLVER_COMMAND,
        *,
        kill_grace_s: float = DEFAULT_KILL_GRACE_S,
    ) -> None:
        if not command:
            raise OopmError("Resolver command must not be empty.")
        self.command = tuple(command)
        self.kill_grace_s = kill_grace_s

    async def resolve(self, workdir: Path, env: dict[str, str], cancel: CancelToken | None) -> ResolverOutcome:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(workdir),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            raise OopmError(f"Resolver command not found: {self.command[0]}") from e

        communicate = asyncio.ensure_future(proc.communicate())
        waiters: set[asyncio.Future] = {communicate}
        cancelled: asyncio.Future | None = None
        if cancel is not None:
            cancelled = asyncio.ensure_future(cancel.wait())
            waiters.add(cancelled)

        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self._stop(proc, communicate)
            raise
        finally:
            if cancelled is not None and not cancelled.done():
                cancelled.cancel()

        if not communicate.done():
            await self._stop(proc, communicate)
            raise AbortedError(f"Aborted while running {' '.join(self.command)}")

        stdout, _ = communicate.result()
        output = (stdout or b"").decode("utf-8", errors="replace")
        return ResolverOutcome(returncode=proc.returncode or 0, output=output)

    async def _stop(self, proc: asyncio.subprocess.Process, communicate: asyncio.Future) -> None:
        if proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(asyncio.shield(communicate), self.kill_grace_s)
            return
        except asyncio.TimeoutError:
            pass
        logger.warning("resolver pid %s ignored SIGTERM for %.1fs; killing", proc.pid, self.kill_grace_s)
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await asyncio.gather(communicate, return_exceptions=True)


class BatchResolver:
    """
    Resolves one batch of exact `name@version` pairs through the delegated resolver.

    Usage::

        async with batch.resolve(deps, cancel) as entries:
            ...  # entries point into an ephemeral workspace removed on exit
    """

    def __init__(
        self,
        *,
        registry: str,
        token: str | None = None,
        resolver: DelegatedResolver | None = None,
        temp_root: Path | None = None,
    ) -> None:
        self.registry = registry
        self.token = token
        self.resolver: DelegatedResolver = resolver if resolver is not None else SubprocessResolver()
        self.temp_root = temp_root

    @asynccontextmanager
    async def resolve(
        self,
        deps: Sequence[Dependency],
        cancel: CancelToken | None = None,
    ) -> AsyncIterator[list[ResolvedEntry]]:
        if cancel is not None:
            cancel.raise_if_cancelled()
        workdir = await make_temp_dir(self.temp_root)
        try:
            await asyncio.to_thread(
                write_synthetic_manifest, workdir, deps, registry=self.registry, token=self.token
            )
            logger.info("resolving %d package(s) via %s", len(deps), self.registry)
            outcome = await self.resolver.resolve(workdir, resolver_env(self.registry), cancel)
            if outcome.returncode != 0:
                logger.warning("resolver failed with code %d", outcome.returncode)
                raise ResolutionFailedError(deps, outcome.returncode, outcome.output)
            entries = await asyncio.to_thread(scan_resolved_tree, workdir)
            logger.debug("resolver produced %d package(s)", len(entries))
            yield entries
        finally:
            await remove_quietly(workdir)
