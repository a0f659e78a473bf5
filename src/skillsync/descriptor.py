from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import frontmatter
import yaml

from .client import ValidationError

DESCRIPTOR_FILENAME = "SKILL.md"
DEFAULT_IMPORT_VERSION = "1.0.0"

REQUIRED_FIELDS = ("name", "description")

# Names a destination root uses for its own bookkeeping.
BACKUP_SUFFIX = ".skillsync-backup"
RESERVED_NAMES = frozenset({"skills.md", "claude.md"})


@dataclass(frozen=True)
class PackageDescriptor:
    identity: str
    description: str
    version: str | None = None  # defaulted to DEFAULT_IMPORT_VERSION only at import time
    purpose: str | None = None
    model_hint: str | None = None
    argument_hint: str | None = None
    invocable: bool | None = None
    disable_model_invocation: bool | None = None

    @property
    def import_version(self) -> str:
        return self.version or DEFAULT_IMPORT_VERSION


def validate_identity(identity: str) -> str:
    name = identity.strip()
    if not name:
        raise ValidationError("Package identity cannot be empty.")
    if "/" in name or "\\" in name or ".." in name:
        raise ValidationError(f"Invalid package identity {identity!r}: must not contain '/', '\\' or '..'")
    if name.startswith(".") or name.endswith(BACKUP_SUFFIX) or name.lower() in RESERVED_NAMES:
        raise ValidationError(f"Invalid package identity {identity!r}: the name is reserved for bookkeeping files.")
    return name


def _opt_str(meta: dict[str, Any], key: str) -> str | None:
    value = meta.get(key)
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # YAML reads `version: 1.0` as a float.
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _opt_bool(meta: dict[str, Any], key: str) -> bool | None:
    value = meta.get(key)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def read_header(text: str) -> dict[str, Any]:
    try:
        post = frontmatter.loads(text)
    except yaml.YAMLError as e:
        raise ValidationError(f"Malformed descriptor header: {e}") from e
    meta = post.metadata
    return dict(meta) if isinstance(meta, dict) else {}


def parse_descriptor(text: str) -> PackageDescriptor:
    """
    Parse the front matter block of a SKILL.md file.

    ``name`` and ``description`` are required; there is no fallback to the
    directory name. Every other field is optional and left as ``None``.
    """
    meta = read_header(text)
    missing = [key for key in REQUIRED_FIELDS if _opt_str(meta, key) is None]
    if missing:
        raise ValidationError(f"missing required descriptor fields: {', '.join(missing)}")

    return PackageDescriptor(
        identity=validate_identity(_opt_str(meta, "name") or ""),
        description=_opt_str(meta, "description") or "",
        version=_opt_str(meta, "version"),
        purpose=_opt_str(meta, "type"),
        model_hint=_opt_str(meta, "model"),
        argument_hint=_opt_str(meta, "argument-hint"),
        invocable=_opt_bool(meta, "user-invocable"),
        disable_model_invocation=_opt_bool(meta, "disable-model-invocation"),
    )
