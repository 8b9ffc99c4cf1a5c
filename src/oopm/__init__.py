from ._version import __version__
from .aio import AbortedError, CancelToken
from .client import OopmError, OopmHTTPError, RegistryClient
from .install import (
    DepRequest,
    ExplicitDeps,
    FileInstallResult,
    FromPath,
    InstalledPackage,
    Installer,
    InstallPlan,
    InstallResult,
    InvalidOperationError,
    SourceNotFoundError,
    SyncAll,
    classify,
    install,
    install_from_path,
    install_packages,
    sync_workspace,
)
from .manifest import InvalidManifestError, Manifest, ManifestNotFoundError, SelfDependencyError
from .repair import IntegrityRepairer, group
from .resolver import BatchResolver, Dependency, ResolutionFailedError, ResolvedEntry, SubprocessResolver
from .store import parse_store_key, store_key
from .walker import DependencyGraphEntry, list_closure, walk

__all__ = [
    "__version__",
    "AbortedError",
    "BatchResolver",
    "CancelToken",
    "Dependency",
    "DependencyGraphEntry",
    "DepRequest",
    "ExplicitDeps",
    "FileInstallResult",
    "FromPath",
    "InstallPlan",
    "InstallResult",
    "InstalledPackage",
    "Installer",
    "IntegrityRepairer",
    "InvalidManifestError",
    "InvalidOperationError",
    "Manifest",
    "ManifestNotFoundError",
    "OopmError",
    "OopmHTTPError",
    "RegistryClient",
    "ResolutionFailedError",
    "ResolvedEntry",
    "SelfDependencyError",
    "SourceNotFoundError",
    "SubprocessResolver",
    "SyncAll",
    "classify",
    "group",
    "install",
    "install_from_path",
    "install_packages",
    "list_closure",
    "parse_store_key",
    "store_key",
    "sync_workspace",
    "walk",
]
