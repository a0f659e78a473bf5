from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Iterable

from ._fanout import fan_out
from ._jsonfile import read_json_object, write_json_atomic
from .client import ConfigurationError, GitHubClient, IntegrityError, NetworkError, RegistryHTTPError, SkillsyncError, ValidationError
from .config import DEFAULT_MAX_CONCURRENCY
from .descriptor import DESCRIPTOR_FILENAME, PackageDescriptor, parse_descriptor
from .reference import RegistryLocator, resolve_branch

logger = logging.getLogger(__name__)

CATALOG_PATH = ".claude-plugin/marketplace.json"
COLLECTION_METADATA_PATH = ".claude-plugin/plugin.json"
PACKAGES_SUBDIR = "skills"


@dataclass(frozen=True)
class CollectionEntry:
    name: str
    source_path: str | None = None
    external_ref: dict[str, Any] | None = None
    description: str | None = None
    version: str | None = None
    author: str | None = None
    category: str | None = None
    tags: tuple[str, ...] = ()

    @property
    def is_external(self) -> bool:
        return self.external_ref is not None


@dataclass(frozen=True)
class Catalog:
    name: str | None
    entries: tuple[CollectionEntry, ...]
    collection_root: str | None = None


@dataclass(frozen=True)
class Excluded:
    subject: str
    reason: str
    collection: str | None = None


@dataclass(frozen=True)
class PackageCandidate:
    collection: str
    path: str
    metadata_path: str | None = None


@dataclass(frozen=True)
class CatalogPackage:
    descriptor: PackageDescriptor
    collection: str
    path: str
    label: str | None = None

    @property
    def identity(self) -> str:
        return self.descriptor.identity

    @property
    def version(self) -> str | None:
        return self.descriptor.version

    @property
    def display_name(self) -> str:
        return f"{self.label}:{self.identity}" if self.label else self.identity


@dataclass(frozen=True)
class CatalogSnapshot:
    locator: RegistryLocator
    branch: str
    packages: tuple[CatalogPackage, ...]
    excluded: tuple[Excluded, ...] = ()
    files: tuple[str, ...] = ()
    fetched_at: str = field(default_factory=lambda: _utc_now())

    def get(self, identity: str) -> CatalogPackage | None:
        for package in self.packages:
            if package.identity == identity:
                return package
        return None

    def files_for(self, package: CatalogPackage) -> list[str]:
        prefix = f"{package.path}/" if package.path else ""
        if not prefix:
            return [p for p in self.files if "/" not in p]
        return [p for p in self.files if p.startswith(prefix)]


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _join(*parts: str | None) -> str:
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


def catalog_path(subpath: str | None) -> str:
    return _join(subpath, CATALOG_PATH)


def _opt_str(obj: dict[str, Any], key: str) -> str | None:
    value = obj.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _parse_entry(raw: Any, *, index: int, location: str) -> CollectionEntry:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Catalog entry #{index} in {location} is not an object.")
    name = _opt_str(raw, "name")
    if name is None:
        raise ConfigurationError(f"Catalog entry #{index} in {location} has no 'name'.")

    source = raw.get("source")
    source_path: str | None = None
    external_ref: dict[str, Any] | None = None
    if isinstance(source, str):
        source_path = source
    elif isinstance(source, dict) and isinstance(source.get("source"), str):
        external_ref = dict(source)
    else:
        raise ConfigurationError(f"Catalog entry {name!r} in {location} has an invalid 'source'.")

    author = raw.get("author")
    if isinstance(author, dict):
        author = author.get("name")
    tags = raw.get("tags")

    return CollectionEntry(
        name=name,
        source_path=source_path,
        external_ref=external_ref,
        description=_opt_str(raw, "description"),
        version=_opt_str(raw, "version"),
        author=author.strip() if isinstance(author, str) and author.strip() else None,
        category=_opt_str(raw, "category"),
        tags=tuple(t for t in tags if isinstance(t, str)) if isinstance(tags, list) else (),
    )


def parse_catalog(payload: Any, *, location: str = CATALOG_PATH) -> Catalog:
    """Validate the catalog document shape before trusting any entry."""
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Catalog at {location} must be a JSON object.")
    plugins = payload.get("plugins")
    if not isinstance(plugins, list):
        raise ConfigurationError(f"Catalog at {location} is missing the 'plugins' list.")

    entries = tuple(_parse_entry(raw, index=i, location=location) for i, raw in enumerate(plugins))
    metadata = payload.get("metadata")
    collection_root = _opt_str(metadata, "pluginRoot") if isinstance(metadata, dict) else None
    name = payload.get("name")
    return Catalog(
        name=name if isinstance(name, str) else None,
        entries=entries,
        collection_root=collection_root,
    )


def fetch_catalog(client: GitHubClient, locator: RegistryLocator, branch: str) -> Catalog:
    path = catalog_path(locator.subpath)
    where = f"{path} in {locator.owner}/{locator.repo}"
    try:
        text = client.get_raw_text(locator.owner, locator.repo, branch, path)
    except RegistryHTTPError as e:
        if e.status_code == 404:
            raise ConfigurationError(f"Catalog not found at {where}. Ensure the repository has this file.") from e
        raise
    except UnicodeDecodeError as e:
        raise ConfigurationError(f"Catalog at {where} is not valid UTF-8.") from e

    try:
        payload = json.loads(text)
    except ValueError as e:
        raise ConfigurationError(f"Catalog at {where} is not valid JSON: {e}") from e
    return parse_catalog(payload, location=where)


def resolve_source_path(entry: CollectionEntry, *, collection_root: str | None, subpath: str | None) -> str:
    """Map a path-sourced entry to a repo-relative directory ("" is the repository root)."""
    if entry.source_path is None:
        raise ValidationError(f"Collection {entry.name!r} has no path source.")
    raw = entry.source_path.strip()
    while raw.startswith("./"):
        raw = raw[2:]
    raw = raw.strip("/")
    if raw == ".":
        raw = ""

    parts = raw.split("/") if raw else []
    if any(part in ("..", ".") or "\\" in part for part in parts):
        raise IntegrityError(f"Collection {entry.name!r} source {entry.source_path!r} escapes the registry.")

    if raw and "/" not in raw and collection_root:
        raw = _join(collection_root.removeprefix("./"), raw)
    return _join(subpath, raw)


def enumerate_packages(
    catalog: Catalog,
    files: Iterable[str],
    *,
    subpath: str | None = None,
    collection_root: str | None = None,
) -> tuple[list[PackageCandidate], list[Excluded]]:
    """
    Walk registry -> collection -> package and keep only directories that carry a descriptor.

    ``files`` is the set of blob paths in the repository tree. A collection is
    either a package itself (``<dir>/SKILL.md``) or holds packages at
    ``<dir>/skills/<pkg>/SKILL.md`` or ``<dir>/<pkg>/SKILL.md``.
    """
    blobs = set(files)
    root_default = catalog.collection_root or collection_root
    candidates: list[PackageCandidate] = []
    excluded: list[Excluded] = []

    for entry in catalog.entries:
        if entry.is_external:
            kind = (entry.external_ref or {}).get("source")
            logger.warning("Skipping collection %r: unsupported source type %r", entry.name, kind)
            excluded.append(Excluded(subject=entry.name, reason=f"unsupported source type {kind!r}", collection=entry.name))
            continue

        try:
            directory = resolve_source_path(entry, collection_root=root_default, subpath=subpath)
        except IntegrityError as e:
            logger.error("Skipping collection %r: %s", entry.name, e)
            excluded.append(Excluded(subject=entry.name, reason=str(e), collection=entry.name))
            continue

        metadata = _join(directory, COLLECTION_METADATA_PATH)
        metadata_path = metadata if metadata in blobs else None

        if _join(directory, DESCRIPTOR_FILENAME) in blobs:
            candidates.append(PackageCandidate(collection=entry.name, path=directory, metadata_path=metadata_path))
            continue

        found = _packages_below(directory, blobs)
        for missing in _subdirs_without_descriptor(_join(directory, PACKAGES_SUBDIR), blobs):
            logger.debug("Skipping %s in collection %r: no %s", missing, entry.name, DESCRIPTOR_FILENAME)
            excluded.append(Excluded(subject=missing, reason=f"no {DESCRIPTOR_FILENAME}", collection=entry.name))

        if not found:
            logger.debug("Collection %r at %r has no package with %s", entry.name, directory, DESCRIPTOR_FILENAME)
            excluded.append(
                Excluded(subject=entry.name, reason=f"no package with {DESCRIPTOR_FILENAME}", collection=entry.name)
            )
            continue
        for path in found:
            candidates.append(PackageCandidate(collection=entry.name, path=path, metadata_path=metadata_path))

    return candidates, excluded


def _packages_below(directory: str, blobs: set[str]) -> list[str]:
    parents = {directory, _join(directory, PACKAGES_SUBDIR)}
    found: set[str] = set()
    for path in blobs:
        pure = PurePosixPath(path)
        if pure.name != DESCRIPTOR_FILENAME:
            continue
        package_dir = pure.parent
        parent = "" if str(package_dir.parent) == "." else str(package_dir.parent)
        if parent in parents:
            found.add(str(package_dir))
    return sorted(found)


def _subdirs_without_descriptor(directory: str, blobs: set[str]) -> list[str]:
    prefix = f"{directory}/"
    children: set[str] = set()
    for path in blobs:
        if not path.startswith(prefix):
            continue
        rest = path[len(prefix) :]
        if "/" in rest:
            children.add(prefix + rest.split("/", 1)[0])
    return sorted(c for c in children if f"{c}/{DESCRIPTOR_FILENAME}" not in blobs)


def _read_label(client: GitHubClient, locator: RegistryLocator, branch: str, path: str) -> str | None:
    try:
        payload = json.loads(client.get_raw_text(locator.owner, locator.repo, branch, path))
    except (SkillsyncError, ValueError) as e:
        logger.debug("No collection label from %s: %s", path, e)
        return None
    if isinstance(payload, dict):
        return _opt_str(payload, "name")
    return None


def _read_descriptor(client: GitHubClient, locator: RegistryLocator, branch: str, path: str) -> PackageDescriptor:
    try:
        text = client.get_raw_text(locator.owner, locator.repo, branch, _join(path, DESCRIPTOR_FILENAME))
    except UnicodeDecodeError as e:
        raise ValidationError(f"{DESCRIPTOR_FILENAME} is not valid UTF-8") from e
    return parse_descriptor(text)


def build_snapshot(
    client: GitHubClient,
    locator: RegistryLocator,
    branch: str,
    catalog: Catalog,
    tree: list[dict[str, Any]],
    *,
    collection_root: str | None = None,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
) -> CatalogSnapshot:
    files = tuple(sorted(e["path"] for e in tree if e.get("type") == "blob" and isinstance(e.get("path"), str)))
    candidates, excluded = enumerate_packages(catalog, files, subpath=locator.subpath, collection_root=collection_root)

    label_paths = sorted({c.metadata_path for c in candidates if c.metadata_path})
    descriptors = fan_out(
        lambda c: _read_descriptor(client, locator, branch, c.path), candidates, max_workers=max_concurrency
    )
    labels_raw = fan_out(lambda p: _read_label(client, locator, branch, p), label_paths, max_workers=max_concurrency)
    labels: dict[str, str | None] = {}
    for path, label in zip(label_paths, labels_raw):
        if isinstance(label, Exception):
            raise label
        labels[path] = label

    by_identity: dict[str, CatalogPackage] = {}
    for candidate, result in zip(candidates, descriptors):
        if isinstance(result, (ValidationError, NetworkError)):
            logger.warning("Skipping package %s: %s", candidate.path or "<root>", result)
            excluded.append(Excluded(subject=candidate.path, reason=str(result), collection=candidate.collection))
            continue
        if isinstance(result, Exception):
            raise result
        package = CatalogPackage(
            descriptor=result,
            collection=candidate.collection,
            path=candidate.path,
            label=labels.get(candidate.metadata_path) if candidate.metadata_path else None,
        )
        previous = by_identity.get(package.identity)
        if previous is not None:
            logger.warning(
                "Package %r from collection %r replaces the one from %r",
                package.identity,
                package.collection,
                previous.collection,
            )
            excluded.append(
                Excluded(
                    subject=previous.path,
                    reason=f"identity {package.identity!r} superseded by collection {package.collection!r}",
                    collection=previous.collection,
                )
            )
        by_identity[package.identity] = package

    logger.info(
        "Catalog %s@%s: %d packages, %d excluded",
        locator.key,
        branch,
        len(by_identity),
        len(excluded),
    )
    return CatalogSnapshot(
        locator=locator,
        branch=branch,
        packages=tuple(by_identity.values()),
        excluded=tuple(excluded),
        files=files,
    )


def fetch_snapshot(
    client: GitHubClient,
    locator: RegistryLocator,
    *,
    collection_root: str | None = None,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
) -> CatalogSnapshot:
    """Resolve the branch, fetch and validate the catalog, then enumerate and describe every package."""
    branch = resolve_branch(client, locator)
    catalog = fetch_catalog(client, locator, branch)
    tree = client.get_tree(locator.owner, locator.repo, branch)
    return build_snapshot(
        client,
        locator,
        branch,
        catalog,
        tree,
        collection_root=collection_root,
        max_concurrency=max_concurrency,
    )


def check_registry(client: GitHubClient, locator: RegistryLocator) -> Catalog:
    """Strict reachability check: the real default branch must resolve and the catalog must validate."""
    branch = resolve_branch(client, locator, strict=True)
    return fetch_catalog(client, locator, branch)


def _mirror_path(directory: Path, locator: RegistryLocator) -> Path:
    return directory / "catalogs" / (locator.key.replace("/", "__") + ".json")


def save_mirror(snapshot: CatalogSnapshot, directory: Path) -> Path:
    path = _mirror_path(directory, snapshot.locator)
    payload = {
        "schema_version": 1,
        "locator": asdict(snapshot.locator),
        "branch": snapshot.branch,
        "fetched_at": snapshot.fetched_at,
        "packages": [
            {
                "collection": p.collection,
                "path": p.path,
                "label": p.label,
                "descriptor": asdict(p.descriptor),
            }
            for p in snapshot.packages
        ],
        "excluded": [asdict(e) for e in snapshot.excluded],
    }
    write_json_atomic(path, payload)
    return path


def load_mirror(locator: RegistryLocator, directory: Path) -> CatalogSnapshot | None:
    """Read the last fetched snapshot for offline browsing. Never used for syncing."""
    path = _mirror_path(directory, locator)
    try:
        raw = read_json_object(path)
    except ValueError as e:
        logger.warning("Ignoring unreadable offline copy %s: %s", path, e)
        return None
    if raw is None:
        return None
    packages: list[CatalogPackage] = []
    for item in raw.get("packages") or []:
        if not isinstance(item, dict) or not isinstance(item.get("descriptor"), dict):
            continue
        try:
            descriptor = PackageDescriptor(**item["descriptor"])
        except TypeError:
            continue
        packages.append(
            CatalogPackage(
                descriptor=descriptor,
                collection=str(item.get("collection") or ""),
                path=str(item.get("path") or ""),
                label=item.get("label") if isinstance(item.get("label"), str) else None,
            )
        )
    excluded = tuple(
        Excluded(subject=str(e.get("subject")), reason=str(e.get("reason")), collection=e.get("collection"))
        for e in raw.get("excluded") or []
        if isinstance(e, dict)
    )
    return CatalogSnapshot(
        locator=locator,
        branch=str(raw.get("branch") or locator.branch_hint),
        packages=tuple(packages),
        excluded=excluded,
        fetched_at=str(raw.get("fetched_at") or ""),
    )
