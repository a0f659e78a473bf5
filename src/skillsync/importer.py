from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Mapping

from ._fanout import fan_out
from .catalog import CatalogPackage, CatalogSnapshot
from .client import ConflictError, GitHubClient, IntegrityError, SkillsyncError, ValidationError
from .config import DEFAULT_MAX_CONCURRENCY
from .customization import content_hash, detect_customization
from .descriptor import DESCRIPTOR_FILENAME, PackageDescriptor, parse_descriptor
from .destinations import DestinationStore, InstalledPackageRecord
from .skills_index import regenerate_index
from .versions import is_update_available

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 10_000_000

IMPORTED = "imported"
UPGRADED = "upgraded"
REINSTALLED = "reinstalled"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass(frozen=True)
class ImportRequest:
    identity: str
    destination: str
    force: bool = False
    overwrite_customized: bool = False


@dataclass(frozen=True)
class ImportOutcome:
    identity: str
    destination: str
    status: str
    version: str | None = None
    error: str | None = None
    error_type: str | None = None

    @classmethod
    def failure(cls, request: "ImportRequest", exc: Exception) -> "ImportOutcome":
        return cls(request.identity, request.destination, FAILED, error=str(exc), error_type=type(exc).__name__)

    @property
    def success(self) -> bool:
        return self.status != FAILED

    @property
    def changed(self) -> bool:
        return self.status in (IMPORTED, UPGRADED, REINSTALLED)

    @property
    def is_conflict(self) -> bool:
        return self.error_type == ConflictError.__name__


@dataclass(frozen=True)
class BatchResult:
    outcomes: tuple[ImportOutcome, ...] = ()
    regenerated: tuple[str, ...] = ()
    regeneration_errors: dict[str, str] = field(default_factory=dict)

    @property
    def failed(self) -> list[ImportOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def changed(self) -> list[ImportOutcome]:
        return [o for o in self.outcomes if o.changed]

    @property
    def all_failed(self) -> bool:
        return bool(self.outcomes) and all(not o.success for o in self.outcomes)


@dataclass(frozen=True)
class _Plan:
    request: ImportRequest
    package: CatalogPackage
    store: DestinationStore
    existing: InstalledPackageRecord | None


@dataclass(frozen=True)
class _Download:
    files: dict[str, bytes]
    descriptor: PackageDescriptor


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _relative_path(path: str, prefix: str) -> str:
    rel = path[len(prefix) :] if prefix else path
    parts = rel.split("/")
    if not rel or any(p in ("", ".", "..") or "\\" in p for p in parts):
        raise IntegrityError(f"Unsafe file path {path!r} in package.")
    return rel


def merge_record(
    descriptor: PackageDescriptor,
    existing: InstalledPackageRecord | None,
    *,
    disk_path: Path,
    now: str | None = None,
) -> InstalledPackageRecord:
    """
    Build the record written after an import.

    New non-empty descriptor values win; missing ones keep what was stored.
    ``active``, the bundled/deletable flag and ``imported_at`` are never taken
    from the catalog. The content hash is left for the caller to set last.
    """
    if existing is None:
        return InstalledPackageRecord(
            identity=descriptor.identity,
            version=descriptor.import_version,
            disk_path=str(disk_path),
            imported_at=now or _utc_now(),
            description=descriptor.description,
            purpose=descriptor.purpose,
            model_hint=descriptor.model_hint,
            argument_hint=descriptor.argument_hint,
            invocable=descriptor.invocable,
            disable_model_invocation=descriptor.disable_model_invocation,
        )

    def pick(new, old):
        return new if new is not None and new != "" else old

    return replace(
        existing,
        version=descriptor.import_version,
        disk_path=str(disk_path),
        description=pick(descriptor.description, existing.description),
        purpose=pick(descriptor.purpose, existing.purpose),
        model_hint=pick(descriptor.model_hint, existing.model_hint),
        argument_hint=pick(descriptor.argument_hint, existing.argument_hint),
        invocable=pick(descriptor.invocable, existing.invocable),
        disable_model_invocation=pick(descriptor.disable_model_invocation, existing.disable_model_invocation),
    )


class ImportExecutor:
    """
    Apply a batch of import requests against one catalog snapshot.

    Validation runs first, then every package is downloaded concurrently into
    memory. Nothing touches the destinations until all downloads have settled.
    Writes are then applied one package at a time and each destination's
    index is regenerated once at the end.
    """

    def __init__(
        self,
        client: GitHubClient,
        snapshot: CatalogSnapshot,
        stores: Mapping[str, DestinationStore],
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        regenerate: Callable[[DestinationStore], object] | None = regenerate_index,
    ) -> None:
        self.client = client
        self.snapshot = snapshot
        self.stores = dict(stores)
        self.max_concurrency = max_concurrency
        self.regenerate = regenerate

    def _plan(self, request: ImportRequest) -> _Plan | ImportOutcome:
        store = self.stores.get(request.destination)
        if store is None:
            return ImportOutcome.failure(request, ValidationError(f"Unknown destination {request.destination!r}."))
        package = self.snapshot.get(request.identity)
        if package is None:
            return ImportOutcome.failure(
                request, ValidationError(f"Package {request.identity!r} is not in {self.snapshot.locator.key}.")
            )

        try:
            existing = store.get(request.identity)
        except IntegrityError as e:
            return ImportOutcome.failure(request, e)
        if existing is not None:
            if not request.force and not is_update_available(package.version, existing.version):
                return ImportOutcome(request.identity, request.destination, SKIPPED, version=existing.version)
            try:
                status = detect_customization(store, request.identity)
            except IntegrityError as e:
                return ImportOutcome.failure(request, e)
            if status.is_customized and not request.overwrite_customized:
                return ImportOutcome.failure(
                    request,
                    ConflictError(f"{request.identity!r} in {store.name} has local edits; confirm to overwrite them."),
                )

        return _Plan(request=request, package=package, store=store, existing=existing)

    def _download(self, plan: _Plan) -> _Download:
        locator = self.snapshot.locator
        package = plan.package
        prefix = f"{package.path}/" if package.path else ""
        files: dict[str, bytes] = {}
        for path in self.snapshot.files_for(package):
            rel = _relative_path(path, prefix)
            data = self.client.get_raw(locator.owner, locator.repo, self.snapshot.branch, path)
            if len(data) > MAX_FILE_BYTES:
                raise ValidationError(f"File {rel!r} exceeds the {MAX_FILE_BYTES} byte limit.")
            files[rel] = data

        raw = files.get(DESCRIPTOR_FILENAME)
        if raw is None:
            raise ValidationError(f"Package {package.identity!r} has no {DESCRIPTOR_FILENAME}.")
        try:
            descriptor = parse_descriptor(raw.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise ValidationError(f"{DESCRIPTOR_FILENAME} is not valid UTF-8") from e
        if descriptor.identity != package.identity:
            raise ValidationError(
                f"Downloaded descriptor is named {descriptor.identity!r}, expected {package.identity!r}."
            )
        return _Download(files=files, descriptor=descriptor)

    def _apply(self, plan: _Plan, download: _Download) -> ImportOutcome:
        store = plan.store
        identity = plan.request.identity
        active = plan.existing.active if plan.existing is not None else True
        target = store.package_dir(identity, active=active)

        def populate(staged: Path) -> None:
            for rel, data in download.files.items():
                out = staged / rel
                out.parent.mkdir(parents=True, exist_ok=True)
                out.write_bytes(data)

        with store.locked():
            store.replace_package_dir(target, populate)
            record = merge_record(download.descriptor, plan.existing, disk_path=target)
            store.upsert(record)
            # Fingerprint last so the baseline always matches what is on disk.
            store.set_content_hash(identity, content_hash(target))

        if plan.existing is None:
            status = IMPORTED
        elif is_update_available(record.version, plan.existing.version):
            status = UPGRADED
        else:
            status = REINSTALLED
        logger.info("%s %r %s into %s", status.capitalize(), identity, record.version, store.name)
        return ImportOutcome(identity, store.name, status, version=record.version)

    def run(self, requests: Iterable[ImportRequest]) -> BatchResult:
        outcomes: dict[int, ImportOutcome] = {}
        plans: list[tuple[int, _Plan]] = []
        for i, request in enumerate(requests):
            planned = self._plan(request)
            if isinstance(planned, ImportOutcome):
                if not planned.success:
                    logger.warning("Not importing %r into %s: %s", request.identity, request.destination, planned.error)
                outcomes[i] = planned
            else:
                plans.append((i, planned))

        downloads = fan_out(lambda item: self._download(item[1]), plans, max_workers=self.max_concurrency)

        for (i, plan), result in zip(plans, downloads):
            request = plan.request
            if isinstance(result, Exception):
                if not isinstance(result, SkillsyncError):
                    raise result
                logger.warning("Download of %r failed: %s", request.identity, result)
                outcomes[i] = ImportOutcome.failure(request, result)
                continue
            try:
                outcomes[i] = self._apply(plan, result)
            except (SkillsyncError, OSError) as e:
                logger.error("Failed to install %r into %s: %s", request.identity, request.destination, e)
                outcomes[i] = ImportOutcome.failure(request, e)

        ordered = tuple(outcomes[i] for i in sorted(outcomes))
        regenerated, errors = self._regenerate(ordered)
        return BatchResult(outcomes=ordered, regenerated=regenerated, regeneration_errors=errors)

    def _regenerate(self, outcomes: tuple[ImportOutcome, ...]) -> tuple[tuple[str, ...], dict[str, str]]:
        if self.regenerate is None:
            return (), {}
        touched: list[str] = []
        for outcome in outcomes:
            if outcome.changed and outcome.destination not in touched:
                touched.append(outcome.destination)
        return regenerate_destinations(self.stores, touched, self.regenerate)


def regenerate_destinations(
    stores: Mapping[str, DestinationStore],
    names: Iterable[str],
    regenerate: Callable[[DestinationStore], object],
) -> tuple[tuple[str, ...], dict[str, str]]:
    """Regenerate each named destination's index once; failures are collected, not raised."""
    done: list[str] = []
    errors: dict[str, str] = {}
    for name in names:
        try:
            regenerate(stores[name])
        except (OSError, ValueError, IntegrityError) as e:
            logger.warning("Failed to regenerate the %s index: %s", name, e)
            errors[name] = str(e)
            continue
        done.append(name)
    return tuple(done), errors


def seed_bundled(
    store: DestinationStore,
    bundled_dir: Path,
    *,
    regenerate: Callable[[DestinationStore], object] | None = regenerate_index,
) -> list[str]:
    """
    Install the packages shipped in ``bundled_dir`` as non-deletable records.

    Re-seeding refreshes content and metadata but keeps the user's active flag.
    """
    if not store.rules.supports_bundled:
        raise SkillsyncError(f"The {store.name} has no bundled packages.")
    if not bundled_dir.is_dir():
        logger.debug("No bundled packages at %s", bundled_dir)
        return []

    seeded: list[str] = []
    for source in sorted(p for p in bundled_dir.iterdir() if p.is_dir()):
        descriptor_path = source / DESCRIPTOR_FILENAME
        if not descriptor_path.is_file():
            continue
        try:
            descriptor = parse_descriptor(descriptor_path.read_text(encoding="utf-8"))
        except (ValidationError, UnicodeDecodeError) as e:
            logger.warning("Skipping bundled package %s: %s", source.name, e)
            continue

        try:
            with store.locked():
                existing = store.get(descriptor.identity)
                active = existing.active if existing is not None else True
                target = store.package_dir(descriptor.identity, active=active)
                store.replace_package_dir(
                    target, lambda staged, src=source: shutil.copytree(src, staged, dirs_exist_ok=True)
                )
                record = merge_record(descriptor, existing, disk_path=target)
                store.upsert(replace(record, active=active, deletable=False))
                store.set_content_hash(descriptor.identity, content_hash(target))
        except (SkillsyncError, OSError) as e:
            logger.error("Failed to seed bundled package %r into %s: %s", descriptor.identity, store.name, e)
            continue
        seeded.append(descriptor.identity)

    if seeded and regenerate is not None:
        regenerate_destinations({store.name: store}, [store.name], regenerate)
    logger.info("Seeded %d bundled package(s) into %s", len(seeded), store.name)
    return seeded
