from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable, Iterator

from ._jsonfile import read_json_object, write_json_atomic
from .client import IntegrityError, SkillsyncError
from .config import Config
from .descriptor import BACKUP_SUFFIX, validate_identity

logger = logging.getLogger(__name__)

WORKSPACE = "workspace"  # destination A: bundled entries, deactivate-only
LIBRARY = "library"  # destination B: fully deletable
DESTINATIONS = (WORKSPACE, LIBRARY)

STATE_FILENAME = ".skillsync-state.json"
INACTIVE_DIRNAME = ".inactive"
TMP_DIRNAME = ".tmp"


@dataclass(frozen=True)
class DestinationRules:
    name: str
    supports_bundled: bool
    supports_deactivation: bool


WORKSPACE_RULES = DestinationRules(name=WORKSPACE, supports_bundled=True, supports_deactivation=True)
LIBRARY_RULES = DestinationRules(name=LIBRARY, supports_bundled=False, supports_deactivation=False)


@dataclass(frozen=True)
class InstalledPackageRecord:
    identity: str
    version: str
    disk_path: str
    content_hash: str | None = None
    active: bool = True
    deletable: bool = True
    imported_at: str = ""
    description: str | None = None
    purpose: str | None = None
    model_hint: str | None = None
    argument_hint: str | None = None
    invocable: bool | None = None
    disable_model_invocation: bool | None = None

    @property
    def bundled(self) -> bool:
        return not self.deletable

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InstalledPackageRecord | None":
        allowed = {f.name for f in fields(cls)}
        filtered = {k: v for k, v in data.items() if k in allowed}
        if not isinstance(filtered.get("identity"), str) or not isinstance(filtered.get("disk_path"), str):
            return None
        if not isinstance(filtered.get("version"), str):
            filtered["version"] = ""
        try:
            return cls(**filtered)
        except TypeError:
            return None


class DestinationStore:
    """
    One install target: a managed directory of packages plus a JSON state file of records.

    Mutations are serialized with a per-store lock; callers that need several
    mutations to form a unit hold ``locked()`` around them.
    """

    def __init__(self, *, root: Path, rules: DestinationRules, index_path: Path | None = None) -> None:
        self.root = root.expanduser().resolve()
        self.rules = rules
        self.index_path = index_path
        self.state_path = self.root / STATE_FILENAME
        self._lock = threading.RLock()

    @property
    def name(self) -> str:
        return self.rules.name

    def locked(self) -> threading.RLock:
        return self._lock

    def _load(self) -> dict[str, InstalledPackageRecord]:
        try:
            raw = read_json_object(self.state_path)
        except ValueError as e:
            logger.error("Unreadable %s state file %s: %s", self.name, self.state_path, e)
            raise IntegrityError(f"The {self.name} state file {self.state_path} is unreadable; fix or remove it.") from e
        if raw is None:
            return {}
        items = raw.get("packages")
        if not isinstance(items, dict):
            raise IntegrityError(f"The {self.name} state file {self.state_path} has no package table.")
        records: dict[str, InstalledPackageRecord] = {}
        for key, value in items.items():
            if not isinstance(value, dict):
                continue
            record = InstalledPackageRecord.from_dict(value)
            if record is not None and record.identity == key:
                records[key] = record
        return records

    def _save(self, records: dict[str, InstalledPackageRecord]) -> None:
        payload = {
            "schema_version": 1,
            "destination": self.name,
            "packages": {key: records[key].to_dict() for key in sorted(records)},
        }
        write_json_atomic(self.state_path, payload)

    def get(self, identity: str) -> InstalledPackageRecord | None:
        return self._load().get(identity)

    def list(self, *, active_only: bool = False) -> list[InstalledPackageRecord]:
        records = sorted(self._load().values(), key=lambda r: r.identity)
        if active_only:
            return [r for r in records if r.active]
        return records

    def __iter__(self) -> Iterator[InstalledPackageRecord]:
        return iter(self.list())

    def upsert(self, record: InstalledPackageRecord) -> None:
        validate_identity(record.identity)
        with self._lock:
            records = self._load()
            records[record.identity] = record
            self._save(records)

    def set_content_hash(self, identity: str, content_hash: str | None) -> None:
        with self._lock:
            records = self._load()
            record = records.get(identity)
            if record is None:
                raise SkillsyncError(f"No {self.name} record for {identity!r}.")
            records[identity] = replace(record, content_hash=content_hash)
            self._save(records)

    def _remove_record(self, identity: str) -> None:
        with self._lock:
            records = self._load()
            records.pop(identity, None)
            self._save(records)

    def package_dir(self, identity: str, *, active: bool = True) -> Path:
        name = validate_identity(identity)
        if active:
            return self.root / name
        return self.root / INACTIVE_DIRNAME / name

    def ensure_within_root(self, path: Path) -> Path:
        resolved = path.expanduser().resolve()
        if resolved == self.root or self.root not in resolved.parents:
            logger.error("Path %s is outside the %s root %s", resolved, self.name, self.root)
            raise IntegrityError(f"Path {str(path)!r} is outside the managed {self.name} directory.")
        return resolved

    def replace_package_dir(self, target: Path, populate: Callable[[Path], None]) -> None:
        """Stage new content with ``populate`` and swap it into ``target``, restoring the old tree on failure."""
        target = self.ensure_within_root(target)
        tmp_root = self.root / TMP_DIRNAME
        tmp_root.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix="skillsync-", dir=tmp_root) as td:
            staged = Path(td) / "staged"
            staged.mkdir()
            populate(staged)

            target.parent.mkdir(parents=True, exist_ok=True)
            backup = target.with_name(target.name + BACKUP_SUFFIX)
            had_existing = target.exists()
            if backup.exists():
                shutil.rmtree(backup, ignore_errors=True)
            if had_existing:
                target.rename(backup)

            try:
                shutil.move(str(staged), str(target))
            except Exception:
                if target.exists():
                    shutil.rmtree(target, ignore_errors=True)
                if had_existing and backup.exists():
                    backup.rename(target)
                raise
            finally:
                if backup.exists():
                    shutil.rmtree(backup, ignore_errors=True)

    def set_active(self, identity: str, active: bool) -> InstalledPackageRecord:
        """
        Move a package in or out of the inactive subtree.

        The record is updated first; if the directory move then fails the
        record is restored, so the flag and the file location never disagree.
        """
        if not self.rules.supports_deactivation:
            raise SkillsyncError(f"Packages in the {self.name} cannot be activated or deactivated.")
        with self._lock:
            record = self.get(identity)
            if record is None:
                raise SkillsyncError(f"No {self.name} record for {identity!r}.")
            if record.active == active:
                return record

            src = self.package_dir(identity, active=record.active)
            dst = self.package_dir(identity, active=active)
            updated = replace(record, active=active, disk_path=str(dst))
            self.upsert(updated)

            if src.exists():
                try:
                    dst.parent.mkdir(parents=True, exist_ok=True)
                    os.rename(src, dst)
                except OSError as e:
                    self.upsert(record)
                    verb = "activate" if active else "deactivate"
                    raise SkillsyncError(f"Failed to {verb} {identity!r}: {e}") from e
            logger.info("%s %r in %s", "Activated" if active else "Deactivated", identity, self.name)
            return updated

    def delete(self, identity: str) -> None:
        with self._lock:
            record = self.get(identity)
            if record is None:
                raise SkillsyncError(f"No {self.name} record for {identity!r}.")
            if not record.deletable:
                raise SkillsyncError(f"Bundled package {identity!r} cannot be deleted; deactivate it instead.")

            stored = self.ensure_within_root(Path(record.disk_path))
            for path in (stored, self.package_dir(identity, active=True), self.package_dir(identity, active=False)):
                if path.exists():
                    shutil.rmtree(path)
            self._remove_record(identity)
            logger.info("Deleted %r from %s", identity, self.name)


def open_stores(cfg: Config) -> dict[str, DestinationStore]:
    workspace = cfg.workspace_path()
    library = cfg.library_path()
    return {
        WORKSPACE: DestinationStore(
            root=workspace / ".claude" / "skills",
            rules=WORKSPACE_RULES,
            index_path=workspace / ".claude" / "CLAUDE.md",
        ),
        LIBRARY: DestinationStore(root=library, rules=LIBRARY_RULES, index_path=library / "SKILLS.md"),
    }
