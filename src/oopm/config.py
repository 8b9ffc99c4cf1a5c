from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

DEFAULT_REGISTRY = "https://registry.oomol.com"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_RESOLVER_COMMAND = ("npm", "install")
STORE_DIR_ENV = "OOPM_STORE_DIR"


@dataclass(frozen=True)
class Config:
    registry: str = DEFAULT_REGISTRY
    token: str | None = None
    store_dir: str | None = None  # falls back to $OOPM_STORE_DIR, then <cwd>/.oomol/oopm-store
    timeout_s: float = DEFAULT_TIMEOUT_S
    resolver_command: tuple[str, ...] = field(default=DEFAULT_RESOLVER_COMMAND)


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("OOPM_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("oopm") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    command = filtered.get("resolver_command")
    if isinstance(command, list) and command and all(isinstance(c, str) for c in command):
        filtered["resolver_command"] = tuple(command)
    else:
        filtered.pop("resolver_command", None)
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    payload = asdict(cfg)
    payload["resolver_command"] = list(cfg.resolver_command)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort permissions hardening (the file may hold a registry token).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def default_store_dir(cfg: Config | None = None, *, cwd: Path | None = None) -> Path:
    if cfg is not None and cfg.store_dir:
        return Path(cfg.store_dir).expanduser()
    if env := os.getenv(STORE_DIR_ENV):
        return Path(env).expanduser()
    return (cwd or Path.cwd()) / ".oomol" / "oopm-store"


def redact_token(token: str | None) -> str | None:
    """Mask a registry token for display, keeping the last four characters of long ones."""
    if not token:
        return token
    if len(token) <= 8:
        return "*" * len(token)
    return "*" * 8 + token[-4:]
