from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Mapping

from .catalog import Catalog, CatalogSnapshot, check_registry, fetch_snapshot, load_mirror, save_mirror
from .client import GitHubClient, SkillsyncError
from .config import Config, cache_dir
from .delivery import DeliveryResult, ErrorNotice, deliver_updates, error_delivery
from .destinations import WORKSPACE, DestinationStore, open_stores
from .importer import BatchResult, ImportExecutor, ImportRequest, regenerate_destinations, seed_bundled
from .reference import parse_reference
from .skills_index import regenerate_index

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistrySyncResult:
    reference: str
    delivery: DeliveryResult
    snapshot: CatalogSnapshot | None = None


@dataclass(frozen=True)
class SyncReport:
    results: tuple[RegistrySyncResult, ...] = ()
    regenerated: tuple[str, ...] = ()
    regeneration_errors: dict[str, str] = field(default_factory=dict)

    @property
    def errors(self) -> list[ErrorNotice]:
        return [e for r in self.results for e in r.delivery.errors]


class SyncEngine:
    """
    Discovery and synchronization against every configured registry.

    Registries are processed one after another and isolated from each other:
    a failure in one becomes an error notice and the rest still run. Only one
    sync runs at a time per engine.
    """

    def __init__(
        self,
        cfg: Config,
        *,
        client: GitHubClient | None = None,
        stores: Mapping[str, DestinationStore] | None = None,
        mirror_dir: Path | None = None,
        regenerate: Callable[[DestinationStore], object] | None = regenerate_index,
    ) -> None:
        self.cfg = cfg
        self.client = client or GitHubClient(
            token=cfg.token,
            timeout_s=cfg.timeout_s,
            api_base_url=cfg.api_base_url,
            raw_base_url=cfg.raw_base_url,
        )
        self.stores = dict(stores) if stores is not None else open_stores(cfg)
        self.mirror_dir = mirror_dir if mirror_dir is not None else cache_dir()
        self.regenerate = regenerate
        self._sync_lock = threading.Lock()

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "SyncEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def check(self, reference: str) -> Catalog:
        return check_registry(self.client, parse_reference(reference))

    def snapshot(self, reference: str) -> CatalogSnapshot:
        locator = parse_reference(reference)
        snapshot = fetch_snapshot(
            self.client,
            locator,
            collection_root=self.cfg.collection_root,
            max_concurrency=self.cfg.max_concurrency,
        )
        try:
            save_mirror(snapshot, self.mirror_dir)
        except OSError as e:
            logger.warning("Could not save the offline copy of %s: %s", locator.key, e)
        return snapshot

    def offline_snapshot(self, reference: str) -> CatalogSnapshot | None:
        return load_mirror(parse_reference(reference), self.mirror_dir)

    def import_packages(self, snapshot: CatalogSnapshot, requests: Iterable[ImportRequest]) -> BatchResult:
        executor = ImportExecutor(
            self.client,
            snapshot,
            self.stores,
            max_concurrency=self.cfg.max_concurrency,
            regenerate=self.regenerate,
        )
        return executor.run(requests)

    def sync_registry(self, reference: str, *, auto_update: bool | None = None) -> RegistrySyncResult:
        return self._sync_registry(reference, auto_update=auto_update, regenerate=self.regenerate)

    def _sync_registry(
        self,
        reference: str,
        *,
        auto_update: bool | None,
        regenerate: Callable[[DestinationStore], object] | None,
    ) -> RegistrySyncResult:
        auto = self.cfg.auto_update if auto_update is None else auto_update
        try:
            snapshot = self.snapshot(reference)
        except SkillsyncError as e:
            logger.error("Sync of %s failed: %s", reference, e)
            return RegistrySyncResult(reference=reference, delivery=error_delivery(e, registry=reference))

        try:
            delivery = deliver_updates(
                self.client,
                snapshot,
                self.stores,
                auto_update=auto,
                max_concurrency=self.cfg.max_concurrency,
                regenerate=regenerate,
            )
        except SkillsyncError as e:
            logger.error("Delivering updates from %s failed: %s", reference, e)
            delivery = error_delivery(e, registry=reference)
        return RegistrySyncResult(reference=reference, delivery=delivery, snapshot=snapshot)

    def sync(self, *, auto_update: bool | None = None) -> SyncReport:
        """
        Sync every configured registry in turn.

        Indexes are regenerated once per sync, for each destination that any
        registry changed, after all registries have been processed.
        """
        if not self._sync_lock.acquire(blocking=False):
            raise SkillsyncError("A sync is already running.")
        try:
            if not self.cfg.registries:
                logger.info("No registries configured; nothing to sync")
            results = tuple(
                self._sync_registry(ref, auto_update=auto_update, regenerate=None) for ref in self.cfg.registries
            )
            touched: list[str] = []
            for result in results:
                batch = result.delivery.batch
                for outcome in batch.changed if batch is not None else ():
                    if outcome.destination not in touched:
                        touched.append(outcome.destination)
            regenerated: tuple[str, ...] = ()
            errors: dict[str, str] = {}
            if self.regenerate is not None and touched:
                regenerated, errors = regenerate_destinations(self.stores, touched, self.regenerate)
        finally:
            self._sync_lock.release()
        return SyncReport(results=results, regenerated=regenerated, regeneration_errors=errors)

    def seed_bundled(self) -> list[str]:
        bundled = self.cfg.bundled_path()
        if bundled is None:
            return []
        return seed_bundled(self.stores[WORKSPACE], bundled, regenerate=self.regenerate)

    def startup(self) -> SyncReport:
        """Seed bundled packages, then run the startup sync."""
        self.seed_bundled()
        return self.sync()
