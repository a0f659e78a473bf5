from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_cache_path, user_config_path, user_data_path

APP_NAME = "skillsync"
DEFAULT_API_BASE_URL = "https://api.github.com"
DEFAULT_RAW_BASE_URL = "https://raw.githubusercontent.com"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_MAX_CONCURRENCY = 8


@dataclass(frozen=True)
class Config:
    registries: tuple[str, ...] = ()
    auto_update: bool = False  # True: silent delivery, False: manual prompts
    workspace_dir: str | None = None  # destination A root
    library_dir: str | None = None  # destination B root
    bundled_dir: str | None = None
    collection_root: str | None = None
    token: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    api_base_url: str = DEFAULT_API_BASE_URL
    raw_base_url: str = DEFAULT_RAW_BASE_URL

    def workspace_path(self) -> Path:
        if self.workspace_dir:
            return Path(self.workspace_dir).expanduser()
        return user_data_path(APP_NAME) / "workspace"

    def library_path(self) -> Path:
        if self.library_dir:
            return Path(self.library_dir).expanduser()
        return user_data_path(APP_NAME) / "library"

    def bundled_path(self) -> Path | None:
        return Path(self.bundled_dir).expanduser() if self.bundled_dir else None


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLSYNC_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path(APP_NAME) / "config.json"


def cache_dir() -> Path:
    return user_cache_path(APP_NAME)


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    registries = filtered.get("registries")
    if isinstance(registries, str):
        filtered["registries"] = (registries,)
    elif isinstance(registries, list):
        filtered["registries"] = tuple(r for r in registries if isinstance(r, str) and r.strip())
    elif registries is not None:
        filtered.pop("registries")
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    payload = asdict(cfg)
    payload["registries"] = list(cfg.registries)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort permissions hardening (mainly for tokens).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def apply_env_overrides(cfg: Config, environ: dict[str, str] | None = None) -> Config:
    env = os.environ if environ is None else environ
    changes: dict[str, Any] = {}
    if registry := env.get("SKILLSYNC_REGISTRY"):
        changes["registries"] = (registry,)
    token = env.get("SKILLSYNC_TOKEN") or env.get("GITHUB_TOKEN")
    if token and not cfg.token:
        changes["token"] = token
    if env.get("SKILLSYNC_TOKEN"):
        changes["token"] = env["SKILLSYNC_TOKEN"]
    if timeout := env.get("SKILLSYNC_TIMEOUT_S"):
        try:
            changes["timeout_s"] = float(timeout)
        except ValueError:
            pass
    return replace(cfg, **changes) if changes else cfg


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]
