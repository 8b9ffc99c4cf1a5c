from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
import textwrap
from pathlib import Path
from typing import Any

from ._version import __version__
from .aio import AbortedError, CancelToken
from .client import OopmError, OopmHTTPError
from .config import Config, config_path, default_store_dir, load_config, redact_token, save_config
from .install import (
    TARBALL_SUFFIXES,
    ExplicitDeps,
    FileInstallResult,
    FromPath,
    InstallOptions,
    Installer,
    InstallResult,
    SyncAll,
    parse_dep_request,
)
from .resolver import SubprocessResolver
from .walker import list_closure


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    registry = getattr(args, "registry", None) or os.getenv("OOPM_REGISTRY") or base.registry
    token = getattr(args, "token", None) or os.getenv("OOPM_TOKEN") or base.token
    store_dir = getattr(args, "dist_dir", None) or os.getenv("OOPM_STORE_DIR") or base.store_dir
    timeout_s = getattr(args, "timeout_s", None) or os.getenv("OOPM_TIMEOUT_S") or base.timeout_s
    try:
        timeout_s_f = float(timeout_s)
    except (TypeError, ValueError):
        timeout_s_f = base.timeout_s

    return Config(
        registry=registry,
        token=token,
        store_dir=store_dir,
        timeout_s=timeout_s_f,
        resolver_command=base.resolver_command,
    )


def _render_install_table(result: InstallResult) -> str:
    """One row per store entry; primary packages are starred."""
    header = ("", "PACKAGE", "VERSION", "STATUS")
    rows = [
        (
            "*" if key in result.primary else "",
            dep.name,
            dep.version,
            "present" if dep.is_already_exist else "installed",
        )
        for key, dep in sorted(result.resolved.items())
    ]
    widths = [max(len(r[i]) for r in (header, *rows)) for i in range(len(header))]
    return "\n".join("  ".join(c.ljust(w) for c, w in zip(r, widths)).rstrip() for r in (header, *rows))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="oopm",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="OOMOL package manager: installs packages into a flat store.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              OOPM_REGISTRY, OOPM_TOKEN, OOPM_STORE_DIR, OOPM_TIMEOUT_S, OOPM_CONFIG_PATH
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"oopm {__version__}")
    p.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (token redacted)")

    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--registry")
    cfg_set.add_argument("--token")
    cfg_set.add_argument("--store-dir")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--resolver-command", help='Resolver command line, e.g. "npm install"')

    # install
    install = sub.add_parser(
        "install",
        aliases=["i"],
        help="Install packages (no arguments: every dependency of the workspace)",
    )
    install.add_argument(
        "pkgs",
        nargs="*",
        help="name, name@version, or a local path (./dir or a .tgz archive)",
    )
    install.add_argument("-r", "--registry", help="Registry URL")
    install.add_argument("-t", "--token", help="Registry token (overrides config/env)")
    install.add_argument(
        "-d",
        "--dist-dir",
        help=f"Store directory (default: $OOPM_STORE_DIR or <cwd>{os.sep}.oomol{os.sep}oopm-store)",
    )
    install.add_argument("--workdir", default=".", help="Workspace directory (default: .)")
    install.add_argument("--no-save", action="store_true", help="Do not record versions in the workspace manifest")
    install.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")
    install.add_argument("--json", action="store_true", help="Output JSON")

    # list
    lst = sub.add_parser("list", aliases=["ls"], help="List the dependency closure of a workspace")
    lst.add_argument("dir", nargs="?", default=".", help="Workspace directory (default: .)")
    lst.add_argument(
        "-s",
        "--search-dir",
        action="append",
        default=[],
        help="Directory to look for packages in; repeatable, first match wins (default: the store)",
    )

    return p


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        d: dict[str, Any] = dict(cfg.__dict__)
        d["token"] = redact_token(cfg.token)
        d["resolver_command"] = list(cfg.resolver_command)
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        resolver_command = cfg.resolver_command
        if args.resolver_command is not None:
            resolver_command = tuple(args.resolver_command.split())
            if not resolver_command:
                raise OopmError("--resolver-command must not be empty.")

        new_cfg = Config(
            registry=args.registry or cfg.registry,
            token=args.token if args.token is not None else cfg.token,
            store_dir=args.store_dir if args.store_dir is not None else cfg.store_dir,
            timeout_s=args.timeout_s if args.timeout_s is not None else cfg.timeout_s,
            resolver_command=resolver_command,
        )
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def _looks_like_path(value: str) -> bool:
    if value.startswith("."):
        return True
    return value.endswith(TARBALL_SUFFIXES) and Path(value).expanduser().is_file()


def _install_options(args: argparse.Namespace) -> InstallOptions:
    workdir = Path(args.workdir).expanduser().resolve()
    pkgs: list[str] = list(args.pkgs)
    if not pkgs:
        return SyncAll(workdir=workdir)
    if len(pkgs) == 1 and _looks_like_path(pkgs[0]):
        return FromPath(path=Path(pkgs[0]).expanduser().resolve())
    return ExplicitDeps(
        deps=tuple(parse_dep_request(p) for p in pkgs),
        workdir=workdir,
        save=not args.no_save,
    )


async def _run_with_cancel(installer: Installer, options: InstallOptions) -> FileInstallResult | InstallResult:
    cancel = CancelToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel)
        handled = True
    except (NotImplementedError, RuntimeError):
        # Windows event loops cannot install signal handlers.
        handled = False
    try:
        return await installer.install(options, cancel=cancel)
    finally:
        if handled:
            loop.remove_signal_handler(signal.SIGINT)


def cmd_install(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    store_dir = default_store_dir(cfg)
    options = _install_options(args)
    installer = Installer(
        store_dir=store_dir,
        registry=cfg.registry,
        token=cfg.token,
        resolver=SubprocessResolver(cfg.resolver_command),
        timeout_s=cfg.timeout_s,
    )
    result = asyncio.run(_run_with_cancel(installer, options))

    if isinstance(result, FileInstallResult):
        payload: dict[str, Any] = {
            "target": str(result.target),
            "name": result.meta.name,
            "version": result.meta.version,
            "is_overwrite": result.is_overwrite,
        }
        if args.json:
            print(json.dumps(payload, indent=2, sort_keys=True))
            return 0
        action = "overwrote" if result.is_overwrite else "installed"
        print(f"{action}: {result.meta.name}@{result.meta.version} -> {result.target}")
        return 0

    if args.json:
        payload = {
            "primary": list(result.primary),
            "deps": {
                key: {
                    "name": dep.name,
                    "version": dep.version,
                    "target": str(dep.target),
                    "is_already_exist": dep.is_already_exist,
                }
                for key, dep in sorted(result.resolved.items())
            },
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    print(f"store: {installer.store_dir}")
    print(_render_install_table(result))
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    search_dirs = [Path(d).expanduser() for d in args.search_dir]
    if not search_dirs:
        search_dirs = [default_store_dir(_merge_cfg(load_config(), args))]
    entries = asyncio.run(list_closure(Path(args.dir).expanduser().resolve(), search_dirs))
    payload = [
        {"name": e.name, "version": e.version, "distDir": e.dist_dir}
        for e in sorted(entries, key=lambda e: (e.name, e.version))
    ]
    print(json.dumps(payload, indent=2))
    return 0


def _format_http_error(err: OopmHTTPError) -> str:
    body = err.body.strip()
    if len(body) > 500:
        body = body[:500] + "..."
    return f"HTTP {err.status_code}: {body}" if body else f"HTTP {err.status_code}"


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        raise AssertionError("unreachable")
    except AbortedError as e:
        print(f"aborted: {e}", file=sys.stderr)
        return 130
    except OopmHTTPError as e:
        print(f"error: {_format_http_error(e)}", file=sys.stderr)
        return 1
    except OopmError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
