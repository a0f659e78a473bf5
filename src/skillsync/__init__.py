from ._version import __version__
from .catalog import CatalogPackage, CatalogSnapshot, fetch_snapshot
from .client import (
    ConfigurationError,
    ConflictError,
    GitHubClient,
    IntegrityError,
    NetworkError,
    RegistryHTTPError,
    SkillsyncError,
    ValidationError,
)
from .config import Config, load_config
from .destinations import LIBRARY, WORKSPACE, DestinationStore, InstalledPackageRecord
from .importer import ImportExecutor, ImportOutcome, ImportRequest
from .reference import RegistryLocator, parse_reference
from .sync import SyncEngine

__all__ = [
    "__version__",
    "CatalogPackage",
    "CatalogSnapshot",
    "Config",
    "ConfigurationError",
    "ConflictError",
    "DestinationStore",
    "GitHubClient",
    "ImportExecutor",
    "ImportOutcome",
    "ImportRequest",
    "InstalledPackageRecord",
    "IntegrityError",
    "LIBRARY",
    "NetworkError",
    "RegistryHTTPError",
    "RegistryLocator",
    "SkillsyncError",
    "SyncEngine",
    "ValidationError",
    "WORKSPACE",
    "fetch_snapshot",
    "load_config",
    "parse_reference",
]
