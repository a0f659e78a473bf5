from __future__ import annotations

from enum import Enum

from .destinations import InstalledPackageRecord
from .versions import is_update_available


class InstallState(str, Enum):
    NOT_INSTALLED = "not-installed"
    SAME_VERSION = "same-version"
    UPDATE_AVAILABLE = "update-available"
    JUST_IMPORTED = "just-imported"
    ALREADY_INSTALLED = "already-installed-duplicate"


def classify_install_state(
    record: InstalledPackageRecord | None,
    catalog_version: str | None,
    *,
    imported_in_session: bool = False,
) -> InstallState:
    """Label one (package, destination) pair for display. First matching rule wins."""
    if imported_in_session:
        return InstallState.JUST_IMPORTED
    if record is None:
        return InstallState.NOT_INSTALLED
    if not (catalog_version or "").strip():
        # Nothing to compare against; the package is simply present.
        return InstallState.ALREADY_INSTALLED
    if is_update_available(catalog_version, record.version):
        return InstallState.UPDATE_AVAILABLE
    return InstallState.SAME_VERSION
