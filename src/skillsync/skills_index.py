from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

from .destinations import DestinationStore, InstalledPackageRecord

logger = logging.getLogger(__name__)

SECTION_MARKER = "\n## Imported Skills\n"
CUSTOMIZATION_MARKER = "\n## Customization\n"
DEFAULT_BASE = "# Skills"
DEFAULT_CUSTOMIZATION_SECTION = (
    "## Customization\n\n"
    "Add your own instructions below. This section is preserved when the skill list is regenerated.\n"
)


def render_section(records: Iterable[InstalledPackageRecord]) -> str:
    """The ``## Imported Skills`` block for active records, or "" when there are none."""
    active = sorted((r for r in records if r.active), key=lambda r: r.identity)
    if not active:
        return ""
    lines = ["", "", "## Imported Skills"]
    for record in active:
        lines.append("")
        lines.append(f"### /{record.identity}")
        lines.append(record.description or "")
    return "\n".join(lines) + "\n"


def merge_index(existing: str | None, records: Iterable[InstalledPackageRecord]) -> str:
    """
    Rebuild an index document in three parts: the base text above the generated
    section, the regenerated skill list, and the customization section copied verbatim.
    """
    content = existing or ""
    if existing is None:
        base = DEFAULT_BASE
    else:
        ends = [i for i in (content.find(SECTION_MARKER), content.find(CUSTOMIZATION_MARKER)) if i >= 0]
        base = content[: min(ends)] if ends else content
        base = base.rstrip()

    pos = content.find(CUSTOMIZATION_MARKER)
    customization = content[pos + 1 :] if pos >= 0 else DEFAULT_CUSTOMIZATION_SECTION

    return base + render_section(records).rstrip("\n") + "\n\n" + customization


def regenerate_index(store: DestinationStore) -> Path | None:
    """Rewrite the store's index file from its current records."""
    path = store.index_path
    if path is None:
        return None
    existing = path.read_text(encoding="utf-8") if path.is_file() else None
    content = merge_index(existing, store.list())

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(content, encoding="utf-8")
    os.replace(tmp, path)
    logger.debug("Regenerated %s", path)
    return path
