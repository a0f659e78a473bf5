from __future__ import annotations

import re

_SEMVER_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[A-Za-z-][0-9A-Za-z-]*)(?:\.(?:0|[1-9]\d*|\d*[A-Za-z-][0-9A-Za-z-]*))*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)


def parse_semver(version: str) -> tuple[tuple[int, int, int], tuple[str, ...] | None]:
    """Split a strict MAJOR.MINOR.PATCH[-pre][+build] string. Raises ValueError otherwise."""
    if not isinstance(version, str):
        raise ValueError("version must be str")
    m = _SEMVER_RE.match(version.strip())
    if not m:
        raise ValueError(f"Not a semantic version: {version!r}")
    core = (int(m.group(1)), int(m.group(2)), int(m.group(3)))
    pre = tuple(m.group(4).split(".")) if m.group(4) else None
    return core, pre


def is_semver(version: str) -> bool:
    try:
        parse_semver(version)
    except ValueError:
        return False
    return True


def compare_semver(a: str, b: str) -> int:
    ma, pa = parse_semver(a)
    mb, pb = parse_semver(b)
    if ma < mb:
        return -1
    if ma > mb:
        return 1

    if pa is None and pb is None:
        return 0
    if pa is None:
        return 1
    if pb is None:
        return -1

    for i in range(max(len(pa), len(pb))):
        if i >= len(pa):
            return -1
        if i >= len(pb):
            return 1
        x = pa[i]
        y = pb[i]
        x_num = x.isdigit()
        y_num = y.isdigit()
        if x_num and y_num:
            xi = int(x)
            yi = int(y)
            if xi < yi:
                return -1
            if xi > yi:
                return 1
            continue
        if x_num and not y_num:
            return -1
        if not x_num and y_num:
            return 1
        if x < y:
            return -1
        if x > y:
            return 1
    return 0


def is_update_available(catalog_version: str | None, installed_version: str | None) -> bool:
    """
    True when the catalog version should replace the installed one.

    Both sides valid semver: strictly greater. Otherwise the comparison degrades
    to plain string inequality, so "different" means "update".
    """
    catalog = (catalog_version or "").strip()
    installed = (installed_version or "").strip()
    if not catalog:
        return False
    try:
        return compare_semver(catalog, installed) > 0
    except ValueError:
        return catalog != installed
