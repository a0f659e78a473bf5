from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .catalog import CatalogSnapshot
from .classifier import InstallState, classify_install_state
from .destinations import DestinationStore


@dataclass(frozen=True)
class PackageState:
    identity: str
    destination: str
    state: InstallState
    installed_version: str | None
    catalog_version: str | None


@dataclass(frozen=True)
class UpdateAvailability:
    identity: str
    destination: str
    installed_version: str
    catalog_version: str


def compare_destination(
    snapshot: CatalogSnapshot,
    store: DestinationStore,
    *,
    imported_in_session: Iterable[str] = (),
) -> list[PackageState]:
    """Classify every catalog package against one destination's records."""
    session = set(imported_in_session)
    records = {r.identity: r for r in store.list()}
    out: list[PackageState] = []
    for package in snapshot.packages:
        record = records.get(package.identity)
        out.append(
            PackageState(
                identity=package.identity,
                destination=store.name,
                state=classify_install_state(
                    record, package.version, imported_in_session=package.identity in session
                ),
                installed_version=record.version if record else None,
                catalog_version=package.version,
            )
        )
    return out


def find_updates(snapshot: CatalogSnapshot, stores: Iterable[DestinationStore]) -> list[UpdateAvailability]:
    """
    Every (identity, destination) pair whose catalog version is newer than the installed one.

    Destinations are compared independently: the same package can be current
    in one and outdated in the other.
    """
    updates: list[UpdateAvailability] = []
    for store in stores:
        for state in compare_destination(snapshot, store):
            if state.state is not InstallState.UPDATE_AVAILABLE:
                continue
            updates.append(
                UpdateAvailability(
                    identity=state.identity,
                    destination=state.destination,
                    installed_version=state.installed_version or "",
                    catalog_version=state.catalog_version or "",
                )
            )
    return updates
