from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Mapping

from .catalog import CatalogSnapshot
from .client import GitHubClient, IntegrityError
from .comparator import UpdateAvailability, find_updates
from .config import DEFAULT_MAX_CONCURRENCY
from .customization import detect_customization
from .destinations import DestinationStore
from .importer import BatchResult, ImportExecutor, ImportRequest
from .skills_index import regenerate_index

logger = logging.getLogger(__name__)

SILENT = "silent"
MANUAL = "manual"
ERROR = "error"


@dataclass(frozen=True)
class UpdateSummary:
    """Packages updated per destination; destinations with nothing updated are omitted."""

    updated: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.updated


@dataclass(frozen=True)
class UpdatePrompt:
    destination: str
    identities: tuple[str, ...]
    customized: tuple[str, ...] = ()


@dataclass(frozen=True)
class ErrorNotice:
    message: str
    registry: str | None = None


@dataclass(frozen=True)
class DeliveryResult:
    mode: str
    summary: UpdateSummary | None = None
    prompts: tuple[UpdatePrompt, ...] = ()
    errors: tuple[ErrorNotice, ...] = ()
    batch: BatchResult | None = None


def _customized(
    stores: Mapping[str, DestinationStore], updates: list[UpdateAvailability]
) -> tuple[set[tuple[str, str]], set[tuple[str, str]]]:
    """Split off (identity, destination) pairs that are customized or failed the path check."""
    customized: set[tuple[str, str]] = set()
    broken: set[tuple[str, str]] = set()
    for update in updates:
        key = (update.identity, update.destination)
        try:
            if detect_customization(stores[update.destination], update.identity).is_customized:
                customized.add(key)
        except IntegrityError as e:
            logger.error("Skipping update of %r in %s: %s", update.identity, update.destination, e)
            broken.add(key)
    return customized, broken


def silent_delivery(
    client: GitHubClient,
    snapshot: CatalogSnapshot,
    stores: Mapping[str, DestinationStore],
    *,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    regenerate: Callable[[DestinationStore], object] | None = regenerate_index,
) -> DeliveryResult:
    """
    Apply every available update without asking, except customized packages.

    Customized packages are left alone and not mentioned in the summary.
    """
    updates = find_updates(snapshot, stores.values())
    customized, broken = _customized(stores, updates)
    for identity, destination in sorted(customized):
        logger.info("Holding back update of customized %r in %s", identity, destination)

    requests = [
        ImportRequest(identity=u.identity, destination=u.destination)
        for u in updates
        if (u.identity, u.destination) not in customized | broken
    ]
    if not requests:
        return DeliveryResult(mode=SILENT, summary=UpdateSummary())

    executor = ImportExecutor(client, snapshot, stores, max_concurrency=max_concurrency, regenerate=regenerate)
    batch = executor.run(requests)

    updated: dict[str, list[str]] = {}
    for outcome in batch.changed:
        updated.setdefault(outcome.destination, []).append(outcome.identity)
    summary = UpdateSummary(updated={k: tuple(v) for k, v in updated.items() if v})

    errors: tuple[ErrorNotice, ...] = ()
    if batch.all_failed:
        details = "; ".join(f"{o.identity}: {o.error}" for o in batch.failed)
        errors = (ErrorNotice(message=f"All updates failed: {details}", registry=snapshot.locator.key),)
    return DeliveryResult(mode=SILENT, summary=summary, errors=errors, batch=batch)


def manual_delivery(snapshot: CatalogSnapshot, stores: Mapping[str, DestinationStore]) -> DeliveryResult:
    """Report available updates per destination, flagging customized ones, without installing anything."""
    updates = find_updates(snapshot, stores.values())
    customized, broken = _customized(stores, updates)

    prompts: list[UpdatePrompt] = []
    for name in stores:
        pending = [u for u in updates if u.destination == name and (u.identity, name) not in broken]
        if not pending:
            continue
        prompts.append(
            UpdatePrompt(
                destination=name,
                identities=tuple(u.identity for u in pending),
                customized=tuple(u.identity for u in pending if (u.identity, name) in customized),
            )
        )
    return DeliveryResult(mode=MANUAL, prompts=tuple(prompts))


def error_delivery(exc: Exception, *, registry: str | None = None) -> DeliveryResult:
    """A registry that could not be read produces only an error notice carrying its message verbatim."""
    return DeliveryResult(mode=ERROR, errors=(ErrorNotice(message=str(exc), registry=registry),))


def deliver_updates(
    client: GitHubClient,
    snapshot: CatalogSnapshot,
    stores: Mapping[str, DestinationStore],
    *,
    auto_update: bool,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    regenerate: Callable[[DestinationStore], object] | None = regenerate_index,
) -> DeliveryResult:
    if auto_update:
        return silent_delivery(client, snapshot, stores, max_concurrency=max_concurrency, regenerate=regenerate)
    return manual_delivery(snapshot, stores)
