from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

from .descriptor import DESCRIPTOR_FILENAME
from .destinations import DestinationStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CustomizationStatus:
    identity: str
    destination: str
    is_customized: bool


def content_hash(package_dir: Path) -> str | None:
    """SHA-256 of the descriptor file's raw bytes, or None when it cannot be read."""
    try:
        data = (package_dir / DESCRIPTOR_FILENAME).read_bytes()
    except OSError as e:
        logger.debug("Cannot fingerprint %s: %s", package_dir, e)
        return None
    return hashlib.sha256(data).hexdigest()


def detect_customization(store: DestinationStore, identity: str) -> CustomizationStatus:
    """
    Compare the installed descriptor against the fingerprint recorded at import time.

    The stored path is checked against the destination root before anything is
    read; a path outside it raises IntegrityError. A record with no baseline
    fingerprint, or a file that cannot be read, counts as not customized.
    """
    record = store.get(identity)
    if record is None:
        return CustomizationStatus(identity=identity, destination=store.name, is_customized=False)

    package_dir = store.ensure_within_root(Path(record.disk_path))
    if not record.content_hash:
        return CustomizationStatus(identity=identity, destination=store.name, is_customized=False)

    current = content_hash(package_dir)
    if current is None:
        return CustomizationStatus(identity=identity, destination=store.name, is_customized=False)

    customized = current != record.content_hash
    if customized:
        logger.info("%r in %s has local edits", identity, store.name)
    return CustomizationStatus(identity=identity, destination=store.name, is_customized=customized)


def list_customized(store: DestinationStore) -> list[str]:
    out: list[str] = []
    for record in store.list():
        if detect_customization(store, record.identity).is_customized:
            out.append(record.identity)
    return out
