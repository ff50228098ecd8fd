"""Git worktree isolation for tasks.

Each (feature, task) pair gets one worktree at ``.hive/.worktrees/<f>/<t>``
on branch ``hive/<f>/<t>``. Git failures raise GitCommandError (not
ClickException) so the service is usable from the CLI and from workers.
Merge and apply conflicts are returned as data.
"""

from __future__ import annotations

import contextlib
import logging
import re
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path

from hive.config import HiveSettings
from hive.docstore import JsonDocumentStore
from hive.models import (
    VALID_MERGE_STRATEGIES,
    ApplyResult,
    CommitResult,
    DiffResult,
    MergeResult,
    TaskChangedFile,
    WorktreeInfo,
)
from hive.paths import (
    branch_name,
    get_hive_path,
    get_worktree_path,
    get_worktrees_path,
    task_status_key,
    validate_name,
)

log = logging.getLogger(__name__)

_DIFF_HEADER_RE = re.compile(r"^diff --git a/(.+?) b/(.+)$", re.MULTILINE)
_APPLY_FAILED_RE = re.compile(r"^error: patch failed: (.+):\d+$", re.MULTILINE)
_APPLY_PATH_ERROR_RE = re.compile(
    r"^error: (.+?): (?:patch does not apply|already exists in working directory"
    r"|does not exist in index|No such file or directory)$",
    re.MULTILINE,
)
_MERGE_CONFLICT_RE = re.compile(r"^CONFLICT \([^)]*\): .*?Merge conflict in (.+)$", re.MULTILINE)

_NAME_STATUS = {"A": "added", "C": "added", "D": "deleted", "R": "renamed"}


class GitCommandError(RuntimeError):
    """A git subprocess failed during *operation*."""

    def __init__(
        self,
        operation: str,
        args: Sequence[str],
        returncode: int | None,
        stderr: str,
    ) -> None:
        super().__init__(f"Failed to {operation}: {stderr or f'git exited with {returncode}'}")
        self.operation = operation
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr


def _run_git(
    args: Sequence[str],
    cwd: str | Path,
    operation: str,
    input: str | None = None,
) -> str:
    """Run git, returning stdout. Raises GitCommandError on failure."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            check=True,
            capture_output=True,
            text=True,
            input=input,
        )
    except subprocess.CalledProcessError as e:
        raise GitCommandError(operation, args, e.returncode, e.stderr.strip()) from None
    except FileNotFoundError as e:
        raise GitCommandError(operation, args, None, str(e)) from None
    return result.stdout


def _probe_git(
    args: Sequence[str], cwd: str | Path, input: str | None = None
) -> subprocess.CompletedProcess[str]:
    """Run git without raising on a non-zero exit."""
    return subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        input=input,
    )


def files_in_patch(patch: str) -> list[str]:
    """Paths touched by a unified diff, in order of appearance."""
    return list(dict.fromkeys(b for _a, b in _DIFF_HEADER_RE.findall(patch)))


def parse_apply_conflicts(stderr: str) -> list[str]:
    paths = _APPLY_FAILED_RE.findall(stderr) + _APPLY_PATH_ERROR_RE.findall(stderr)
    return list(dict.fromkeys(paths))


def parse_numstat(output: str) -> dict[str, tuple[int, int]]:
    """Parse ``git diff --numstat -z`` output into ``{path: (ins, del)}``.

    Binary files report ``-`` and count as zero.
    """
    stats: dict[str, tuple[int, int]] = {}
    tokens = output.split("\0")
    i = 0
    while i < len(tokens):
        token = tokens[i]
        i += 1
        if not token:
            continue
        insertions, deletions, path = token.split("\t", 2)
        if not path:
            # rename: old and new paths follow as separate tokens
            path = tokens[i + 1]
            i += 2
        stats[path] = (
            int(insertions) if insertions.isdigit() else 0,
            int(deletions) if deletions.isdigit() else 0,
        )
    return stats


def parse_name_status(output: str) -> list[tuple[str, str, str | None]]:
    """Parse ``git diff --name-status -z`` into ``(status, path, old_path)``."""
    entries: list[tuple[str, str, str | None]] = []
    tokens = output.split("\0")
    i = 0
    while i < len(tokens):
        code = tokens[i]
        i += 1
        if not code:
            continue
        kind = code[0]
        if kind in ("R", "C"):
            old_path, path = tokens[i], tokens[i + 1]
            i += 2
            entries.append((_NAME_STATUS[kind], path, old_path if kind == "R" else None))
        else:
            path = tokens[i]
            i += 1
            entries.append((_NAME_STATUS.get(kind, "modified"), path, None))
    return entries


def _numstat(worktree: str | Path, base: str) -> dict[str, tuple[int, int]]:
    output = _run_git(["diff", "--numstat", "-z", "-M", base], worktree, "compute diff")
    return parse_numstat(output)


def _empty_diff() -> DiffResult:
    return {
        "hasDiff": False,
        "diffContent": "",
        "filesChanged": [],
        "insertions": 0,
        "deletions": 0,
    }


class WorktreeService:
    def __init__(
        self,
        project_root: str | Path,
        *,
        store: JsonDocumentStore | None = None,
        settings: HiveSettings | None = None,
    ) -> None:
        self.project_root = Path(project_root)
        self.settings = settings or HiveSettings()
        self.store = store or JsonDocumentStore(get_hive_path(project_root), self.settings.lock)

    # -- lifecycle --

    def _branch_exists(self, branch: str) -> bool:
        probe = _probe_git(
            ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], self.project_root
        )
        return probe.returncode == 0

    def create(self, feature: str, task: str, base_branch: str | None = None) -> WorktreeInfo:
        """Create the task's worktree, or return the existing one."""
        validate_name(feature, "feature name")
        validate_name(task, "task name")
        existing = self.get(feature, task)
        if existing is not None:
            return existing

        path = get_worktree_path(self.project_root, feature, task)
        branch = branch_name(feature, task)
        base = base_branch or self.settings.base_branch or "HEAD"
        path.parent.mkdir(parents=True, exist_ok=True)

        # drop registrations left by directories deleted by hand
        _probe_git(["worktree", "prune"], self.project_root)
        if self._branch_exists(branch):
            args = ["worktree", "add", str(path), branch]
        else:
            args = ["worktree", "add", "-b", branch, str(path), base]
        _run_git(args, self.project_root, "create worktree")
        log.info("Created worktree %s on %s (base %s)", path, branch, base)

        info = self.get(feature, task)
        if info is None:
            raise GitCommandError("create worktree", args, None, f"{path} was not created")
        return info

    def get(self, feature: str, task: str) -> WorktreeInfo | None:
        path = get_worktree_path(self.project_root, feature, task)
        if not path.is_dir():
            return None
        # a leftover directory would otherwise resolve to the enclosing repo
        toplevel = _probe_git(["rev-parse", "--show-toplevel"], path)
        if toplevel.returncode != 0 or Path(toplevel.stdout.strip()).resolve() != path.resolve():
            return None
        head = _probe_git(["rev-parse", "HEAD"], path)
        branch = _probe_git(["rev-parse", "--abbrev-ref", "HEAD"], path)
        if head.returncode != 0 or branch.returncode != 0:
            return None
        return {
            "path": str(path),
            "branch": branch.stdout.strip(),
            "commit": head.stdout.strip(),
            "feature": feature,
            "task": task,
        }

    def list(self, feature: str | None = None) -> list[WorktreeInfo]:
        root = get_worktrees_path(self.project_root)
        if not root.is_dir():
            return []
        features = [feature] if feature else sorted(p.name for p in root.iterdir() if p.is_dir())
        worktrees: list[WorktreeInfo] = []
        for name in features:
            feature_dir = root / name
            if not feature_dir.is_dir():
                continue
            for task_dir in sorted(feature_dir.iterdir()):
                if not task_dir.is_dir():
                    continue
                info = self.get(name, task_dir.name)
                if info is not None:
                    worktrees.append(info)
        return worktrees

    def remove(self, feature: str, task: str, delete_branch: bool = False) -> None:
        """Remove a worktree (and optionally its branch). Best-effort, logs warnings."""
        path = get_worktree_path(self.project_root, feature, task)
        branch = branch_name(feature, task)
        if path.exists():
            try:
                _run_git(
                    ["worktree", "remove", "--force", str(path)],
                    self.project_root,
                    "remove worktree",
                )
            except GitCommandError as exc:
                log.warning("Failed to remove worktree %s: %s", path, exc.stderr)
                shutil.rmtree(path, ignore_errors=True)

        with contextlib.suppress(GitCommandError):
            _run_git(["worktree", "prune"], self.project_root, "prune worktrees")

        if delete_branch and self._branch_exists(branch):
            try:
                _run_git(["branch", "-D", branch], self.project_root, "delete branch")
            except GitCommandError as exc:
                log.warning("Failed to delete branch %s: %s", branch, exc.stderr)
        log.info("Removed worktree %s/%s", feature, task)

    def _registered_worktrees(self) -> set[Path]:
        output = _run_git(["worktree", "list", "--porcelain"], self.project_root, "list worktrees")
        return {
            Path(line.removeprefix("worktree ")).resolve()
            for line in output.splitlines()
            if line.startswith("worktree ")
        }

    def cleanup(self, feature: str | None = None) -> dict[str, list[str] | bool]:
        """Delete worktree directories git no longer knows about, then prune."""
        root = get_worktrees_path(self.project_root)
        registered = self._registered_worktrees()
        removed: list[str] = []
        if root.is_dir():
            if feature:
                features = [root / feature]
            else:
                features = sorted(p for p in root.iterdir() if p.is_dir())
            for feature_dir in features:
                if not feature_dir.is_dir():
                    continue
                for task_dir in sorted(p for p in feature_dir.iterdir() if p.is_dir()):
                    if task_dir.resolve() not in registered:
                        shutil.rmtree(task_dir, ignore_errors=True)
                        removed.append(f"{feature_dir.name}/{task_dir.name}")
                        log.info("Removed orphaned worktree directory %s", task_dir)

        prune = _probe_git(["worktree", "prune", "--verbose"], self.project_root)
        pruned = prune.returncode == 0 and bool((prune.stdout + prune.stderr).strip())
        return {"removed": removed, "pruned": pruned}

    # -- diffs --

    def _resolve_base(self, feature: str, task: str, base_commit: str | None) -> str:
        if base_commit:
            return base_commit
        status = self.store.read(task_status_key(feature, task))
        if status and status.get("baseCommit"):
            return status["baseCommit"]
        return _run_git(
            ["merge-base", "HEAD", branch_name(feature, task)],
            self.project_root,
            "resolve base commit",
        ).strip()

    def get_diff(self, feature: str, task: str, base_commit: str | None = None) -> DiffResult:
        """Diff the worktree (committed and uncommitted) against its base."""
        info = self.get(feature, task)
        if info is None:
            return _empty_diff()
        path = info["path"]
        base = self._resolve_base(feature, task, base_commit)
        diff = _run_git(["diff", base], path, "compute diff")
        if not diff.strip():
            return _empty_diff()
        stats = _numstat(path, base)
        return {
            "hasDiff": True,
            "diffContent": diff,
            "filesChanged": list(stats),
            "insertions": sum(ins for ins, _ in stats.values()),
            "deletions": sum(dels for _, dels in stats.values()),
        }

    def get_detailed_diff(
        self, feature: str, task: str, base_commit: str | None = None
    ) -> list[TaskChangedFile]:
        """Per-file change records: status, insertions, deletions, oldPath for renames."""
        info = self.get(feature, task)
        if info is None:
            return []
        path = info["path"]
        base = self._resolve_base(feature, task, base_commit)
        stats = _numstat(path, base)
        name_status = parse_name_status(
            _run_git(["diff", "--name-status", "-z", "-M", base], path, "compute diff")
        )
        changed: list[TaskChangedFile] = []
        for status, file_path, old_path in name_status:
            insertions, deletions = stats.get(file_path, (0, 0))
            record: TaskChangedFile = {
                "path": file_path,
                "status": status,
                "insertions": insertions,
                "deletions": deletions,
            }
            if old_path:
                record["oldPath"] = old_path
            changed.append(record)
        return changed

    def export_patch(self, feature: str, task: str, base_commit: str | None = None) -> str:
        """Portable patch text (binary-safe) of the worktree against its base."""
        info = self.get(feature, task)
        if info is None:
            return ""
        base = self._resolve_base(feature, task, base_commit)
        return _run_git(["diff", "--binary", base], info["path"], "export patch")

    # -- applying patches to the project working tree --

    def _apply_patch(self, patch: str, reverse: bool = False) -> ApplyResult:
        files = files_in_patch(patch)
        if not patch.strip():
            return {"success": True, "filesAffected": []}
        flags = ["-R"] if reverse else []
        check = _probe_git(["apply", "--check", *flags, "-"], self.project_root, input=patch)
        if check.returncode != 0:
            return {"success": False, "filesAffected": [], "error": check.stderr.strip()}
        operation = "revert patch" if reverse else "apply patch"
        _run_git(["apply", *flags, "-"], self.project_root, operation, input=patch)
        log.info("%s: %d file(s)", operation, len(files))
        return {"success": True, "filesAffected": files}

    def apply_diff(
        self, feature: str, task: str, base_commit: str | None = None
    ) -> ApplyResult:
        """Apply the worktree's changes to the project working tree."""
        if self.get(feature, task) is None:
            return {"success": False, "filesAffected": [], "error": "Worktree not found"}
        return self._apply_patch(self.export_patch(feature, task, base_commit))

    def revert_diff(
        self, feature: str, task: str, base_commit: str | None = None
    ) -> ApplyResult:
        """Reverse-apply the worktree's changes from the project working tree."""
        if self.get(feature, task) is None:
            return {"success": False, "filesAffected": [], "error": "Worktree not found"}
        return self._apply_patch(self.export_patch(feature, task, base_commit), reverse=True)

    def revert_from_saved_diff(self, diff_path: str | Path) -> ApplyResult:
        try:
            patch = Path(diff_path).read_text(encoding="utf-8")
        except FileNotFoundError:
            error = f"Diff file not found: {diff_path}"
            return {"success": False, "filesAffected": [], "error": error}
        return self._apply_patch(patch, reverse=True)

    def _check_patch(self, patch: str, reverse: bool = False) -> list[str]:
        if not patch.strip():
            return []
        flags = ["-R"] if reverse else []
        check = _probe_git(["apply", "--check", *flags, "-"], self.project_root, input=patch)
        if check.returncode == 0:
            return []
        return parse_apply_conflicts(check.stderr) or files_in_patch(patch)

    def check_conflicts(
        self, feature: str, task: str, base_commit: str | None = None
    ) -> list[str]:
        """Paths that would not apply cleanly to the project tree. Never writes."""
        return self._check_patch(self.export_patch(feature, task, base_commit))

    def check_conflicts_from_saved_diff(
        self, diff_path: str | Path, reverse: bool = False
    ) -> list[str]:
        """Like check_conflicts, for a patch file. A missing file has nothing to conflict."""
        try:
            patch = Path(diff_path).read_text(encoding="utf-8")
        except FileNotFoundError:
            log.warning("Diff file not found: %s", diff_path)
            return []
        return self._check_patch(patch, reverse=reverse)

    # -- commits and merges --

    def has_uncommitted_changes(self, feature: str, task: str) -> bool:
        info = self.get(feature, task)
        if info is None:
            return False
        status = _run_git(["status", "--porcelain"], info["path"], "read worktree status")
        return bool(status.strip())

    def commit_changes(
        self, feature: str, task: str, message: str | None = None
    ) -> CommitResult:
        """Stage everything in the worktree and commit it."""
        info = self.get(feature, task)
        if info is None:
            return {"committed": False, "sha": "", "message": "Worktree not found"}
        path = info["path"]
        _run_git(["add", "-A"], path, "stage changes")
        if not _run_git(["status", "--porcelain"], path, "read worktree status").strip():
            return {"committed": False, "sha": info["commit"], "message": "No changes to commit"}

        message = message or f"hive({task}): task changes"
        _run_git(["commit", "-m", message], path, "commit changes")
        sha = _run_git(["rev-parse", "HEAD"], path, "commit changes").strip()
        log.info("Committed %s/%s as %s", feature, task, sha[:8])
        return {"committed": True, "sha": sha, "message": message}

    def _conflicted_paths(self, output: str) -> list[str]:
        unmerged = _probe_git(["diff", "--name-only", "--diff-filter=U"], self.project_root)
        paths = unmerged.stdout.splitlines() if unmerged.returncode == 0 else []
        paths += _MERGE_CONFLICT_RE.findall(output)
        return sorted({p.strip() for p in paths if p.strip()})

    def _abort(self, strategy: str) -> None:
        abort = {
            "merge": ["merge", "--abort"],
            "squash": ["reset", "--merge"],
            "rebase": ["cherry-pick", "--abort"],
        }[strategy]
        with contextlib.suppress(GitCommandError):
            _run_git(abort, self.project_root, f"abort {strategy}")

    def merge(self, feature: str, task: str, strategy: str | None = None) -> MergeResult:
        """Integrate the task branch into the branch checked out in the project.

        - merge: ``--no-ff`` merge commit, branch history preserved.
        - squash: one new commit with all of the branch's changes.
        - rebase: branch commits replayed on top of the current HEAD.

        Conflicts abort the operation and come back as ``conflicts``.
        """
        strategy = strategy or self.settings.merge_strategy
        if strategy not in VALID_MERGE_STRATEGIES:
            raise ValueError(
                f"Invalid merge strategy '{strategy}'. "
                f"Must be one of: {', '.join(VALID_MERGE_STRATEGIES)}"
            )
        branch = branch_name(feature, task)
        if not self._branch_exists(branch):
            return {"success": False, "merged": False, "error": f"Branch '{branch}' not found"}

        dirty = _run_git(
            ["status", "--porcelain", "--untracked-files=no", "--", ".", ":(exclude).hive"],
            self.project_root,
            "read project status",
        )
        if dirty.strip():
            return {
                "success": False,
                "merged": False,
                "error": "Project working tree has uncommitted changes; commit or stash them first",
            }

        ahead = _run_git(["rev-list", "--count", f"HEAD..{branch}"], self.project_root, "merge")
        if ahead.strip() == "0":
            return {"success": True, "merged": False, "filesChanged": []}

        files = _run_git(
            ["diff", "--name-only", f"HEAD...{branch}"], self.project_root, "merge"
        ).splitlines()
        if strategy == "merge":
            args = ["merge", "--no-ff", "-m", f"Merge {branch}", branch]
        elif strategy == "squash":
            args = ["merge", "--squash", branch]
        else:
            merge_base = _run_git(
                ["merge-base", "HEAD", branch], self.project_root, "merge"
            ).strip()
            args = ["cherry-pick", f"{merge_base}..{branch}"]

        result = _probe_git(args, self.project_root)
        if result.returncode != 0:
            conflicts = self._conflicted_paths(result.stdout + result.stderr)
            self._abort(strategy)
            log.warning("Merge of %s (%s) failed: %d conflict(s)", branch, strategy, len(conflicts))
            if conflicts:
                return {"success": False, "merged": False, "conflicts": conflicts}
            return {"success": False, "merged": False, "error": result.stderr.strip()}

        if strategy == "squash":
            staged = _probe_git(["diff", "--cached", "--quiet"], self.project_root)
            if staged.returncode == 0:
                # the branch's net changes are already in HEAD
                self._abort(strategy)
                log.info("Squash merge of %s staged nothing; skipping commit", branch)
                return {"success": True, "merged": False, "filesChanged": []}
            message = f"hive({task}): squash merge {branch}"
            _run_git(["commit", "-m", message], self.project_root, "merge")

        sha = _run_git(["rev-parse", "HEAD"], self.project_root, "merge").strip()
        log.info("Merged %s via %s at %s", branch, strategy, sha[:8])
        return {"success": True, "merged": True, "sha": sha, "filesChanged": files}
