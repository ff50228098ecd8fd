"""Per-project hive settings.

Projects may tune lock behaviour and worktree defaults in
``.hive/config.toml``::

    [lock]
    timeout = 5.0          # seconds to wait for a document lock
    retry_interval = 0.05  # seconds between attempts
    stale_ttl = 30.0       # a lock older than this is presumed abandoned

    [worktree]
    base_branch = "main"       # default: the branch currently checked out
    merge_strategy = "squash"  # merge | squash | rebase

A missing file means defaults. ``HIVE_LOCK_TIMEOUT`` and
``HIVE_LOCK_STALE_TTL`` override the lock values from the environment.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from hive.docstore import LockOptions
from hive.models import VALID_MERGE_STRATEGIES
from hive.paths import get_config_path

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HiveSettings:
    lock: LockOptions = field(default_factory=LockOptions)
    base_branch: str | None = None
    merge_strategy: str = "merge"

    def __post_init__(self) -> None:
        if self.merge_strategy not in VALID_MERGE_STRATEGIES:
            raise ValueError(
                f"Invalid merge_strategy '{self.merge_strategy}'. "
                f"Must be one of: {', '.join(VALID_MERGE_STRATEGIES)}"
            )


def load_config_file(project_root: str | Path) -> dict[str, Any] | None:
    """Parse ``.hive/config.toml``; None if it is missing or unparsable."""
    path = get_config_path(project_root)
    if not path.exists():
        return None
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s, using defaults", path, exc_info=True)
        return None


def _float_setting(section: dict[str, Any], key: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"config.toml: [lock] {key} must be a number, got {value!r}")
    return float(value)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def load_settings(project_root: str | Path) -> HiveSettings:
    """Build settings from config.toml, then apply environment overrides."""
    data = load_config_file(project_root) or {}
    lock_section = data.get("lock", {})
    worktree_section = data.get("worktree", {})
    if not isinstance(lock_section, dict) or not isinstance(worktree_section, dict):
        raise ValueError("config.toml: [lock] and [worktree] must be tables")

    defaults = LockOptions()
    timeout = _float_setting(lock_section, "timeout", defaults.timeout)
    retry_interval = _float_setting(lock_section, "retry_interval", defaults.retry_interval)
    stale_ttl = _float_setting(lock_section, "stale_ttl", defaults.stale_lock_ttl)
    timeout = _env_float("HIVE_LOCK_TIMEOUT", timeout)
    stale_ttl = _env_float("HIVE_LOCK_STALE_TTL", stale_ttl)

    base_branch = worktree_section.get("base_branch")
    if base_branch is not None and (not isinstance(base_branch, str) or not base_branch.strip()):
        raise ValueError("config.toml: [worktree] base_branch must be a non-empty string")

    return HiveSettings(
        lock=LockOptions(
            timeout=timeout,
            retry_interval=retry_interval,
            stale_lock_ttl=stale_ttl,
        ),
        base_branch=base_branch,
        merge_strategy=worktree_section.get("merge_strategy", "merge"),
    )
