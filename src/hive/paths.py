"""Canonical on-disk layout for hive state.

Documents are addressed by keys relative to ``<project>/.hive`` so they can be
handed to a JsonDocumentStore; worktrees get absolute paths because git needs
them.
"""

from __future__ import annotations

import re
from pathlib import Path

HIVE_DIR_NAME = ".hive"
WORKTREES_DIR_NAME = ".worktrees"
CONFIG_FILE_NAME = "config.toml"

FEATURE_JSON = "feature.json"
PLAN_FILE = "plan.md"
STATUS_FILE = "status.json"
SPEC_FILE = "spec.md"
REPORT_FILE = "report.md"

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_name(value: str, kind: str = "name") -> str:
    """Reject names that could escape their directory or break a git ref."""
    if not _NAME_RE.match(value) or ".." in value or value.endswith((".lock", ".")):
        raise ValueError(
            f"Invalid {kind} '{value}'. Use letters, digits, '.', '_' or '-' "
            "(must start with a letter or digit)."
        )
    return value


def get_hive_path(project_root: str | Path) -> Path:
    return Path(project_root) / HIVE_DIR_NAME


def get_config_path(project_root: str | Path) -> Path:
    return get_hive_path(project_root) / CONFIG_FILE_NAME


def get_worktrees_path(project_root: str | Path) -> Path:
    return get_hive_path(project_root) / WORKTREES_DIR_NAME


def get_worktree_path(project_root: str | Path, feature: str, task: str) -> Path:
    return get_worktrees_path(project_root) / feature / task


def branch_name(feature: str, task: str) -> str:
    """Deterministic task branch: ``hive/<feature>/<task>``."""
    return f"hive/{feature}/{task}"


# -- document keys (relative to .hive) --


def features_key() -> str:
    return "features"


def feature_key(feature: str, *parts: str) -> str:
    return "/".join(("features", feature, *parts))


def tasks_key(feature: str) -> str:
    return feature_key(feature, "tasks")


def task_key(feature: str, task: str, *parts: str) -> str:
    return feature_key(feature, "tasks", task, *parts)


def task_status_key(feature: str, task: str) -> str:
    return task_key(feature, task, STATUS_FILE)


def subtasks_key(feature: str, task: str) -> str:
    return task_key(feature, task, "subtasks")


def subtask_key(feature: str, task: str, subtask_folder: str, *parts: str) -> str:
    return task_key(feature, task, "subtasks", subtask_folder, *parts)


def context_key(feature: str, *parts: str) -> str:
    return feature_key(feature, "context", *parts)
