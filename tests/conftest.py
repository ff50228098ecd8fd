"""Shared test fixtures: throwaway project roots and git repositories."""

import shutil
import subprocess
from pathlib import Path

import pytest

from hive.docstore import JsonDocumentStore, LockOptions
from hive.paths import get_hive_path

FAST_LOCKS = LockOptions(timeout=2.0, retry_interval=0.005, stale_lock_ttl=30.0)


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture()
def store(project_root: Path) -> JsonDocumentStore:
    return JsonDocumentStore(get_hive_path(project_root), FAST_LOCKS)


@pytest.fixture()
def git_identity_env(monkeypatch):
    """Ensure commits succeed without relying on global git config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "hive-tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "hive-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "hive-tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "hive-tests@example.com")


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=str(cwd), check=True, capture_output=True, text=True
    )
    return result.stdout.strip()


@pytest.fixture()
def git_repo(project_root: Path, git_identity_env) -> Path:
    """A repository on ``main`` with one commit containing README.md and app.py."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    git(project_root, "init", "-b", "main")
    git(project_root, "config", "commit.gpgsign", "false")
    (project_root / "README.md").write_text("# demo\n")
    (project_root / "app.py").write_text("def main():\n    return 1\n")
    git(project_root, "add", "README.md", "app.py")
    git(project_root, "commit", "-m", "init")
    return project_root
