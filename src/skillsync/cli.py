from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any

from ._version import __version__
from .catalog import CatalogSnapshot
from .client import RegistryHTTPError, SkillsyncError
from .comparator import compare_destination
from .config import Config, apply_env_overrides, config_path, load_config, redact_token, save_config
from .customization import list_customized
from .destinations import DESTINATIONS, LIBRARY, WORKSPACE
from .importer import ImportRequest
from .sync import SyncEngine, SyncReport


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = apply_env_overrides(base)
    changes: dict[str, Any] = {}
    if getattr(args, "token", None):
        changes["token"] = args.token
    if getattr(args, "timeout_s", None):
        changes["timeout_s"] = args.timeout_s
    return replace(cfg, **changes) if changes else cfg


def _format_http_error(e: RegistryHTTPError) -> str:
    return f"HTTP {e.status_code}: {e.message}"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillsync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Discover skill packages in git-hosted registries and keep local copies in sync.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SKILLSYNC_CONFIG_PATH, SKILLSYNC_REGISTRY, SKILLSYNC_TOKEN (or GITHUB_TOKEN), SKILLSYNC_TIMEOUT_S
            """
        ),
    )
    p.add_argument("--token", help="GitHub token (overrides config/env)")
    p.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    p.add_argument("--version", action="version", version=f"skillsync {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (token redacted)")

    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--add-registry", action="append", default=[], metavar="REF")
    cfg_set.add_argument("--remove-registry", action="append", default=[], metavar="REF")
    cfg_set.add_argument("--auto-update", choices=["on", "off"], help="Install updates silently on sync")
    cfg_set.add_argument("--workspace-dir")
    cfg_set.add_argument("--library-dir")
    cfg_set.add_argument("--bundled-dir")
    cfg_set.add_argument("--collection-root")
    cfg_set.add_argument("--token")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--max-concurrency", type=int)

    # registry
    reg = sub.add_parser("registry", help="Registry helpers")
    reg_sub = reg.add_subparsers(dest="subcmd", required=True)
    reg_check = reg_sub.add_parser("check", help="Verify that a registry resolves and has a valid catalog")
    reg_check.add_argument("reference", help="owner/repo, github.com/owner/repo or a full URL")
    reg_check.add_argument("--json", action="store_true", help="Output JSON")

    browse = sub.add_parser("browse", help="List the packages a registry offers and their install state")
    browse.add_argument("--registry", help="Registry reference (default: first configured)")
    browse.add_argument("--offline", action="store_true", help="Use the last fetched copy; no network")
    browse.add_argument("--json", action="store_true", help="Output JSON")

    check = sub.add_parser("check", help="Report available updates without installing them")
    check.add_argument("--json", action="store_true", help="Output JSON")

    imp = sub.add_parser("import", help="Import packages from a registry into a destination")
    imp.add_argument("identities", nargs="+", metavar="IDENTITY")
    imp.add_argument("--to", choices=DESTINATIONS, required=True, dest="destination")
    imp.add_argument("--registry", help="Registry reference (default: first configured)")
    imp.add_argument("--force", action="store_true", help="Reinstall even when the version is not newer")
    imp.add_argument("--overwrite-customized", action="store_true", help="Replace packages that have local edits")
    imp.add_argument("--json", action="store_true", help="Output JSON")

    sync = sub.add_parser("sync", help="Sync every configured registry")
    mode = sync.add_mutually_exclusive_group()
    mode.add_argument("--auto", action="store_true", default=None, dest="auto_update", help="Install updates")
    mode.add_argument("--manual", action="store_false", dest="auto_update", help="Only report updates")
    sync.add_argument("--json", action="store_true", help="Output JSON")
    sync.set_defaults(auto_update=None)

    cust = sub.add_parser("customized", help="List installed packages with local edits")
    cust.add_argument("--to", choices=DESTINATIONS, dest="destination", help="Only this destination")
    cust.add_argument("--json", action="store_true", help="Output JSON")

    activate = sub.add_parser("activate", help=f"Re-enable a package in the {WORKSPACE}")
    activate.add_argument("identity")
    deactivate = sub.add_parser("deactivate", help=f"Disable a package in the {WORKSPACE} without deleting it")
    deactivate.add_argument("identity")

    remove = sub.add_parser("remove", aliases=["rm"], help="Delete an installed package")
    remove.add_argument("identity")
    remove.add_argument("--to", choices=DESTINATIONS, default=LIBRARY, dest="destination")

    seed = sub.add_parser("seed-bundled", help=f"Install bundled packages into the {WORKSPACE}")
    seed.add_argument("--from", dest="bundled_dir", help="Directory of bundled packages (default: config)")

    return p


def _engine_from_cfg(cfg: Config) -> SyncEngine:
    return SyncEngine(cfg)


def _registry_ref(args: argparse.Namespace, cfg: Config) -> str:
    if getattr(args, "registry", None):
        return args.registry
    if cfg.registries:
        return cfg.registries[0]
    raise SkillsyncError("No registry configured. Use --registry or `skillsync config set --add-registry`.")


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        d = asdict(cfg)
        d["registries"] = list(cfg.registries)
        d["token"] = redact_token(cfg.token)
        _print_json(d)
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        registries = [r for r in cfg.registries if r not in args.remove_registry]
        for ref in args.add_registry:
            if ref not in registries:
                registries.append(ref)
        changes: dict[str, Any] = {"registries": tuple(registries)}
        if args.auto_update is not None:
            changes["auto_update"] = args.auto_update == "on"
        for key in ("workspace_dir", "library_dir", "bundled_dir", "collection_root", "token", "timeout_s", "max_concurrency"):
            value = getattr(args, key)
            if value is not None:
                changes[key] = value
        path = save_config(replace(cfg, **changes))
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_registry(args: argparse.Namespace, cfg: Config) -> int:
    engine = _engine_from_cfg(cfg)
    try:
        catalog = engine.check(args.reference)
    finally:
        engine.close()

    if args.json:
        _print_json(
            {
                "reference": args.reference,
                "name": catalog.name,
                "collections": [e.name for e in catalog.entries],
            }
        )
        return 0
    print(f"ok: {args.reference}")
    if catalog.name:
        print(f"name: {catalog.name}")
    print(f"collections: {len(catalog.entries)}")
    return 0


def _browse_rows(engine: SyncEngine, snapshot: CatalogSnapshot) -> list[dict[str, Any]]:
    states = {
        name: {s.identity: s for s in compare_destination(snapshot, store)} for name, store in engine.stores.items()
    }
    rows: list[dict[str, Any]] = []
    for package in snapshot.packages:
        row: dict[str, Any] = {
            "identity": package.identity,
            "display_name": package.display_name,
            "version": package.version,
            "collection": package.collection,
            "description": package.descriptor.description,
        }
        for name in engine.stores:
            row[name] = states[name][package.identity].state.value
        rows.append(row)
    return rows


def cmd_browse(args: argparse.Namespace, cfg: Config) -> int:
    ref = _registry_ref(args, cfg)
    engine = _engine_from_cfg(cfg)
    try:
        if args.offline:
            snapshot = engine.offline_snapshot(ref)
            if snapshot is None:
                raise SkillsyncError(f"No offline copy of {ref}; run `skillsync browse` while online first.")
        else:
            snapshot = engine.snapshot(ref)
        rows = _browse_rows(engine, snapshot)
    finally:
        engine.close()

    if args.json:
        _print_json(
            {
                "registry": snapshot.locator.key,
                "branch": snapshot.branch,
                "fetched_at": snapshot.fetched_at,
                "packages": rows,
                "excluded": [asdict(e) for e in snapshot.excluded],
            }
        )
        return 0

    table = [["NAME", "VERSION", WORKSPACE.upper(), LIBRARY.upper()]]
    for row in rows:
        table.append([row["display_name"], row["version"] or "-", row[WORKSPACE], row[LIBRARY]])
    _print_table(table)
    for item in snapshot.excluded:
        print(f"excluded: {item.subject or '<root>'} ({item.reason})")
    return 0


def _report_payload(report: SyncReport) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for result in report.results:
        delivery = result.delivery
        out.append(
            {
                "registry": result.reference,
                "mode": delivery.mode,
                "updated": {k: list(v) for k, v in delivery.summary.updated.items()} if delivery.summary else {},
                "available": [
                    {"destination": p.destination, "identities": list(p.identities), "customized": list(p.customized)}
                    for p in delivery.prompts
                ],
                "errors": [e.message for e in delivery.errors],
            }
        )
    return out


def _print_report(report: SyncReport) -> None:
    if not report.results:
        print("No registries configured.")
    for result in report.results:
        delivery = result.delivery
        print(f"registry: {result.reference}")
        if delivery.summary is not None:
            for destination, identities in delivery.summary.updated.items():
                print(f"  updated ({destination}): {', '.join(identities)}")
        for prompt in delivery.prompts:
            names = [f"{i} (customized)" if i in prompt.customized else i for i in prompt.identities]
            print(f"  updates available ({prompt.destination}): {', '.join(names)}")
        for notice in delivery.errors:
            print(f"  error: {notice.message}")


def cmd_sync(args: argparse.Namespace, cfg: Config, *, auto_update: bool | None) -> int:
    engine = _engine_from_cfg(cfg)
    try:
        report = engine.sync(auto_update=auto_update)
    finally:
        engine.close()

    if args.json:
        _print_json(
            {
                "registries": _report_payload(report),
                "regenerated": list(report.regenerated),
                "regeneration_errors": report.regeneration_errors,
            }
        )
    else:
        _print_report(report)
        for name, err in report.regeneration_errors.items():
            print(f"warning: {name} index not updated: {err}")
    return 1 if report.errors else 0


def cmd_import(args: argparse.Namespace, cfg: Config) -> int:
    ref = _registry_ref(args, cfg)
    requests = [
        ImportRequest(
            identity=identity,
            destination=args.destination,
            force=args.force,
            overwrite_customized=args.overwrite_customized,
        )
        for identity in args.identities
    ]
    engine = _engine_from_cfg(cfg)
    try:
        snapshot = engine.snapshot(ref)
        batch = engine.import_packages(snapshot, requests)
    finally:
        engine.close()

    if args.json:
        _print_json(
            {
                "outcomes": [asdict(o) for o in batch.outcomes],
                "regenerated": list(batch.regenerated),
                "regeneration_errors": batch.regeneration_errors,
            }
        )
    else:
        for outcome in batch.outcomes:
            if outcome.success:
                print(f"{outcome.status}: {outcome.identity} {outcome.version or ''}".rstrip())
            else:
                print(f"failed: {outcome.identity}: {outcome.error}")
                if outcome.is_conflict:
                    print("  re-run with --overwrite-customized to replace local edits")
        for name, err in batch.regeneration_errors.items():
            print(f"warning: {name} index not updated: {err}")
    return 1 if batch.failed else 0


def cmd_customized(args: argparse.Namespace, cfg: Config) -> int:
    engine = _engine_from_cfg(cfg)
    try:
        names = [args.destination] if args.destination else list(engine.stores)
        found = {name: list_customized(engine.stores[name]) for name in names}
    finally:
        engine.close()

    if args.json:
        _print_json(found)
        return 0
    for name, identities in found.items():
        for identity in identities:
            print(f"{name}: {identity}")
    return 0


def cmd_local(args: argparse.Namespace, cfg: Config) -> int:
    engine = _engine_from_cfg(cfg)
    try:
        if args.cmd in ("activate", "deactivate"):
            store = engine.stores[WORKSPACE]
            store.set_active(args.identity, args.cmd == "activate")
            target = WORKSPACE
            verb = f"{args.cmd}d"
        elif args.cmd in ("remove", "rm"):
            store = engine.stores[args.destination]
            store.delete(args.identity)
            target = args.destination
            verb = "removed"
        elif args.cmd == "seed-bundled":
            if args.bundled_dir:
                engine.cfg = replace(cfg, bundled_dir=str(Path(args.bundled_dir).expanduser()))
            seeded = engine.seed_bundled()
            print(f"seeded: {len(seeded)}")
            for identity in seeded:
                print(f"  {identity}")
            return 0
        else:
            raise AssertionError("unreachable")
        if engine.regenerate is not None:
            engine.regenerate(store)
    finally:
        engine.close()

    print(f"{verb}: {args.identity} ({target})")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        if args.cmd == "config":
            return cmd_config(args)
        cfg = _merge_cfg(load_config(), args)
        if args.cmd == "registry":
            return cmd_registry(args, cfg)
        if args.cmd == "browse":
            return cmd_browse(args, cfg)
        if args.cmd == "check":
            return cmd_sync(args, cfg, auto_update=False)
        if args.cmd == "sync":
            return cmd_sync(args, cfg, auto_update=args.auto_update)
        if args.cmd == "import":
            return cmd_import(args, cfg)
        if args.cmd == "customized":
            return cmd_customized(args, cfg)
        if args.cmd in ("activate", "deactivate", "remove", "rm", "seed-bundled"):
            return cmd_local(args, cfg)
        raise AssertionError("unreachable")
    except RegistryHTTPError as e:
        print(f"error: {_format_http_error(e)}", file=sys.stderr)
        return 1
    except SkillsyncError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
