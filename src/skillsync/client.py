from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from ._version import __version__
from .config import DEFAULT_API_BASE_URL, DEFAULT_RAW_BASE_URL, DEFAULT_TIMEOUT_S

logger = logging.getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"


class SkillsyncError(RuntimeError):
    pass


class ConfigurationError(SkillsyncError):
    """Bad reference string or missing/invalid catalog. Aborts one registry."""


class ValidationError(SkillsyncError):
    """A descriptor is missing required fields. Excludes one package."""


class NetworkError(SkillsyncError):
    """Transient transport failure or timeout. Not retried within a sync."""


class ConflictError(SkillsyncError):
    """Overwriting a locally customized record needs explicit confirmation."""


class IntegrityError(SkillsyncError):
    """Path traversal or a stored disk path outside its managed root."""


@dataclass(frozen=True)
class RegistryHTTPError(NetworkError):
    status_code: int
    body: str

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code}: {self.body}"

    @property
    def message(self) -> str:
        return _github_message(self.body) or self.body


def _github_message(body: str) -> str | None:
    try:
        obj = json.loads(body)
    except ValueError:
        return None
    if isinstance(obj, dict) and isinstance(obj.get("message"), str):
        return obj["message"]
    return None


class GitHubClient:
    """
    Thin synchronous client for the git host: repository metadata, recursive trees and raw files.

    The underlying ``httpx.Client`` is safe to share across the worker threads used for fan-out.
    """

    def __init__(
        self,
        *,
        token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        api_base_url: str = DEFAULT_API_BASE_URL,
        raw_base_url: str = DEFAULT_RAW_BASE_URL,
    ) -> None:
        self.token = token
        self.timeout_s = timeout_s
        self.api_base_url = api_base_url.rstrip("/")
        self.raw_base_url = raw_base_url.rstrip("/")
        self._http = httpx.Client(
            timeout=httpx.Timeout(timeout_s, connect=min(timeout_s, 10.0)),
            follow_redirects=True,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _headers(self, *, api: bool) -> dict[str, str]:
        headers = {"User-Agent": f"skillsync/{__version__}"}
        if api:
            headers["Accept"] = "application/vnd.github+json"
            headers["X-GitHub-Api-Version"] = GITHUB_API_VERSION
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def request(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        api: bool = True,
    ) -> httpx.Response:
        try:
            resp = self._http.request(method.upper(), url, params=params, headers=self._headers(api=api))
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timed out: {url}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise RegistryHTTPError(resp.status_code, resp.text)
        return resp

    def get_json(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        resp = self.request(method="GET", url=f"{self.api_base_url}{path}", params=params)
        try:
            return resp.json()
        except ValueError as e:
            raise NetworkError(f"Invalid JSON from {path}") from e

    def raw_url(self, owner: str, repo: str, branch: str, path: str) -> str:
        quoted = "/".join(quote(part, safe="") for part in path.split("/") if part)
        return f"{self.raw_base_url}/{owner}/{repo}/{quote(branch, safe='')}/{quoted}"

    def get_raw(self, owner: str, repo: str, branch: str, path: str) -> bytes:
        resp = self.request(method="GET", url=self.raw_url(owner, repo, branch, path), api=False)
        return resp.content

    def get_raw_text(self, owner: str, repo: str, branch: str, path: str) -> str:
        return self.get_raw(owner, repo, branch, path).decode("utf-8")

    def get_default_branch(self, owner: str, repo: str) -> str:
        data = self.get_json(f"/repos/{quote(owner, safe='')}/{quote(repo, safe='')}")
        branch = data.get("default_branch") if isinstance(data, dict) else None
        if not isinstance(branch, str) or not branch.strip():
            raise NetworkError(f"Repository metadata for {owner}/{repo} has no default_branch.")
        return branch.strip()

    def get_tree(self, owner: str, repo: str, branch: str) -> list[dict[str, Any]]:
        path = f"/repos/{quote(owner, safe='')}/{quote(repo, safe='')}/git/trees/{quote(branch, safe='')}"
        data = self.get_json(path, params={"recursive": "1"})
        tree = data.get("tree") if isinstance(data, dict) else None
        if not isinstance(tree, list):
            raise NetworkError(f"Invalid tree response for {owner}/{repo}@{branch}: missing 'tree' array")
        if isinstance(data, dict) and data.get("truncated"):
            logger.warning("Tree listing for %s/%s@%s is truncated", owner, repo, branch)
        return [entry for entry in tree if isinstance(entry, dict)]
