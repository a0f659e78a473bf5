from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

import httpx

from skillsync.client import GitHubClient
from skillsync.destinations import LIBRARY, LIBRARY_RULES, WORKSPACE, WORKSPACE_RULES, DestinationStore

API_HOST = "api.github.com"
RAW_HOST = "raw.githubusercontent.com"


def skill_md(name: str, description: str = "Does things", *, version: str | None = None, body: str = "Body\n", **extra: Any) -> str:
    lines = ["---", f"name: {name}", f"description: {description}"]
    if version is not None:
        lines.append(f"version: {version}")
    for key, value in extra.items():
        lines.append(f"{key.replace('_', '-')}: {value}")
    lines.append("---")
    return "\n".join(lines) + "\n" + body


def marketplace(*plugins: dict[str, Any], plugin_root: str | None = None) -> str:
    doc: dict[str, Any] = {"name": "test-market", "plugins": list(plugins)}
    if plugin_root is not None:
        doc["metadata"] = {"pluginRoot": plugin_root}
    return json.dumps(doc)


class FakeGitHub:
    """In-memory repository served through httpx.MockTransport."""

    def __init__(
        self,
        files: dict[str, str | bytes],
        *,
        owner: str = "acme",
        repo: str = "skills",
        default_branch: str = "main",
    ) -> None:
        self.owner = owner
        self.repo = repo
        self.default_branch = default_branch
        self.files: dict[str, bytes] = {
            k: v.encode("utf-8") if isinstance(v, str) else v for k, v in files.items()
        }
        self.repo_status = 200
        self.fail_paths: set[str] = set()
        self.requests: list[str] = []
        self._lock = threading.Lock()

    def _tree(self) -> dict[str, Any]:
        entries: list[dict[str, Any]] = []
        dirs: set[str] = set()
        for path in sorted(self.files):
            entries.append({"path": path, "type": "blob"})
            parts = path.split("/")[:-1]
            for i in range(1, len(parts) + 1):
                dirs.add("/".join(parts[:i]))
        entries.extend({"path": d, "type": "tree"} for d in sorted(dirs))
        return {"sha": "abc", "tree": entries, "truncated": False}

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(str(request.url))
        host = request.url.host
        path = request.url.path
        repo_prefix = f"/repos/{self.owner}/{self.repo}"

        if host == API_HOST:
            if path == repo_prefix:
                if self.repo_status != 200:
                    return httpx.Response(self.repo_status, json={"message": "Not Found"})
                return httpx.Response(200, json={"default_branch": self.default_branch})
            if path == f"{repo_prefix}/git/trees/{self.default_branch}":
                return httpx.Response(200, json=self._tree())
            return httpx.Response(404, json={"message": "Not Found"})

        if host == RAW_HOST:
            prefix = f"/{self.owner}/{self.repo}/{self.default_branch}/"
            if not path.startswith(prefix):
                return httpx.Response(404, text="404: Not Found")
            rel = path[len(prefix) :]
            if rel in self.fail_paths:
                return httpx.Response(500, text="boom")
            if rel not in self.files:
                return httpx.Response(404, text="404: Not Found")
            return httpx.Response(200, content=self.files[rel])

        return httpx.Response(404)

    def raw_fetches(self, rel: str) -> int:
        suffix = f"/{self.default_branch}/{rel}"
        return sum(1 for url in self.requests if RAW_HOST in url and url.endswith(suffix))


def make_client(fake: FakeGitHub, *, token: str | None = None) -> GitHubClient:
    client = GitHubClient(token=token)
    client._http = httpx.Client(transport=httpx.MockTransport(fake.handler), follow_redirects=True)  # type: ignore[attr-defined]
    return client


def make_stores(base: Path) -> dict[str, DestinationStore]:
    return {
        WORKSPACE: DestinationStore(
            root=base / "ws" / ".claude" / "skills",
            rules=WORKSPACE_RULES,
            index_path=base / "ws" / ".claude" / "CLAUDE.md",
        ),
        LIBRARY: DestinationStore(root=base / "lib", rules=LIBRARY_RULES, index_path=base / "lib" / "SKILLS.md"),
    }


def standard_registry(**versions: str | None) -> dict[str, str]:
    """A catalog with one collection ``tools`` whose packages live under ``plugins/tools/skills``."""
    files: dict[str, str] = {
        ".claude-plugin/marketplace.json": marketplace({"name": "tools", "source": "./plugins/tools"}),
        "plugins/tools/.claude-plugin/plugin.json": json.dumps({"name": "toolkit"}),
    }
    for name, version in versions.items():
        files[f"plugins/tools/skills/{name}/SKILL.md"] = skill_md(name, f"{name} helper", version=version)
        files[f"plugins/tools/skills/{name}/references/guide.md"] = f"# {name} guide\n"
    return files
