from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import unquote, urlsplit

from .client import ConfigurationError, GitHubClient, NetworkError

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"
SUPPORTED_HOSTS = {"github.com", "www.github.com"}


@dataclass(frozen=True)
class RegistryLocator:
    owner: str
    repo: str
    branch_hint: str = DEFAULT_BRANCH
    subpath: str | None = None

    @property
    def key(self) -> str:
        base = f"{self.owner}/{self.repo}"
        return f"{base}/{self.subpath}" if self.subpath else base


def _check_segment(segment: str, *, reference: str) -> None:
    decoded = unquote(segment)
    if decoded in (".", "..") or "\\" in decoded or "/" in decoded:
        raise ConfigurationError(f"Invalid path segment {segment!r} in registry reference {reference!r}")


def parse_reference(reference: str) -> RegistryLocator:
    """
    Parse a registry reference into a locator.

    Accepted forms:
      owner/repo
      github.com/owner/repo
      https://github.com/owner/repo
      https://github.com/owner/repo/tree/<branch>[/<subpath>]
    """
    raw = reference.strip()
    if not raw:
        raise ConfigurationError("Registry reference cannot be empty.")

    if "://" in raw:
        parts = urlsplit(raw)
        if parts.scheme not in ("http", "https"):
            raise ConfigurationError(f"Unsupported URL scheme in registry reference {reference!r}")
        host = parts.netloc.lower()
        path = parts.path
    else:
        path = raw
        first = path.split("/", 1)[0]
        host = first.lower() if "." in first else ""
        if host:
            path = path[len(first) :]

    if host and host not in SUPPORTED_HOSTS:
        raise ConfigurationError(f"Unsupported host {host!r} in registry reference {reference!r}")

    path = path.strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]

    raw_segments = path.split("/") if path else []
    for segment in raw_segments:
        _check_segment(segment, reference=reference)
    segments = [s for s in raw_segments if s]

    if len(segments) < 2:
        raise ConfigurationError(f"Invalid registry reference {reference!r}: expected at least owner/repo")

    owner, repo = segments[0], segments[1]
    if len(segments) == 2:
        return RegistryLocator(owner=owner, repo=repo)

    if len(segments) >= 4 and segments[2] == "tree":
        subpath = "/".join(segments[4:]) or None
        return RegistryLocator(owner=owner, repo=repo, branch_hint=segments[3], subpath=subpath)

    raise ConfigurationError(
        f"Unsupported registry reference {reference!r}: expected owner/repo or owner/repo/tree/<branch>[/<path>]"
    )


def resolve_branch(client: GitHubClient, locator: RegistryLocator, *, strict: bool = False) -> str:
    """Return the repository's real default branch, falling back to the hint unless ``strict``."""
    try:
        return client.get_default_branch(locator.owner, locator.repo)
    except NetworkError as e:
        if strict:
            raise
        logger.warning(
            "Could not resolve default branch for %s/%s (%s); using %r",
            locator.owner,
            locator.repo,
            e,
            locator.branch_hint,
        )
        return locator.branch_hint
