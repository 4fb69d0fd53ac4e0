# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .cache import DEFAULT_CACHE_DIR

DEFAULT_WORKSPACE_DIR = ".flowci/workspaces"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean (got {raw!r})")


def _env_int(env: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None


@dataclass(frozen=True)
class RunConfig:
    """
    Settings for one run. Built from FLOWCI_* environment variables, then
    overridden by CLI options via `with_overrides`.
    """
    repo_root: Path = field(default_factory=Path.cwd)
    max_workers: Optional[int] = None  # None -> cpu_count - 1
    cache_dir: Path = Path(DEFAULT_CACHE_DIR)
    workspace_dir: Path = Path(DEFAULT_WORKSPACE_DIR)
    cache_enabled: bool = True
    cache_retries: int = 2
    strict: bool = False
    stub_actions: bool = False
    keep_workspaces: bool = False
    required_jobs: Optional[Tuple[str, ...]] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides) -> "RunConfig":
        env = os.environ if env is None else env
        config = cls(
            max_workers=_env_int(env, "FLOWCI_MAX_WORKERS", None),
            cache_dir=Path(env.get("FLOWCI_CACHE_DIR") or DEFAULT_CACHE_DIR),
            workspace_dir=Path(env.get("FLOWCI_WORKSPACE_DIR") or DEFAULT_WORKSPACE_DIR),
            cache_enabled=not _env_bool(env, "FLOWCI_NO_CACHE", False),
            cache_retries=_env_int(env, "FLOWCI_CACHE_RETRIES", 2) or 0,
            strict=_env_bool(env, "FLOWCI_STRICT", False),
            stub_actions=_env_bool(env, "FLOWCI_STUB_ACTIONS", False),
        )
        return config.with_overrides(**overrides)

    def with_overrides(self, **overrides) -> "RunConfig":
        """Apply non-None overrides (unset CLI options stay at their env/default value)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if "required_jobs" in changes:
            changes["required_jobs"] = tuple(changes["required_jobs"]) or None
        for key in ("repo_root", "cache_dir", "workspace_dir"):
            if key in changes:
                changes[key] = Path(changes[key])
        return replace(self, **changes)

    def resolve(self, path: Path) -> Path:
        """Relative config paths are relative to the repository root."""
        return path if path.is_absolute() else (self.repo_root / path)
