"""Task Graph Engine: one status document per task, updated under lock.

Task folders are ``NN-slug`` so that alphabetical order equals creation
order. Two write paths exist:

- ``update`` is the completion flow. It alone may change status, summary
  and completedAt.
- ``patch_background_fields`` is for background workers reporting liveness.
  It only ever writes ``idempotencyKey`` and ``workerSession`` (merged field
  by field), so heartbeats never race a completion.
"""

from __future__ import annotations

import contextlib
import logging
import re
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from hive.docstore import UNSET, JsonDocumentStore, LockHandle, LockOptions
from hive.models import (
    BACKGROUND_FIELDS,
    COMPLETION_FIELDS,
    TASK_STATUS_SCHEMA_VERSION,
    VALID_SUBTASK_TYPES,
    VALID_TASK_STATUSES,
    ContextFile,
    Subtask,
    TaskCommit,
    TaskInfo,
    TasksSyncResult,
    TaskStatus,
)
from hive.paths import (
    PLAN_FILE,
    REPORT_FILE,
    SPEC_FILE,
    STATUS_FILE,
    feature_key,
    get_hive_path,
    subtask_key,
    subtasks_key,
    task_key,
    task_status_key,
    tasks_key,
    validate_name,
)
from hive.plans import extract_plan_section, parse_tasks_from_plan
from hive.task_graph import (
    PlannedTask,
    RunnableBlocked,
    compute_runnable_and_blocked,
    parse_order,
    resolve_dependencies,
    validate_dependency_graph,
)

log = logging.getLogger(__name__)


class TaskNotFoundError(LookupError):
    """An update targeted a task (or subtask) that does not exist."""


def _utcnow() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def slugify(text: str, max_len: int = 40) -> str:
    """Turn a task name into a folder-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-")


def task_folder_name(order: int, name: str) -> str:
    slug = slugify(name)
    if not slug:
        raise ValueError(f"Task name '{name}' has no usable characters")
    return f"{order:02d}-{slug}"


def _validate_status(status: str) -> None:
    if status not in VALID_TASK_STATUSES:
        raise ValueError(
            f"Invalid task status '{status}'. Must be one of: {sorted(VALID_TASK_STATUSES)}"
        )


def _display_name(folder: str, status: Mapping[str, Any]) -> str:
    title = status.get("planTitle")
    if title:
        return title
    return re.sub(r"^\d+-", "", folder)


def build_spec_content(
    *,
    feature: str,
    task: PlannedTask,
    depends_on: Sequence[str],
    all_tasks: Sequence[PlannedTask],
    plan_content: str | None = None,
    context_files: Sequence[ContextFile] = (),
    completed_tasks: Sequence[Mapping[str, str]] = (),
) -> str:
    """Render a task's execution brief. Pure text composition."""
    by_folder = {t.folder: t for t in all_tasks}
    lines = [f"# Task: {task.folder}", "", f"## Feature: {feature}", "", "## Dependencies", ""]
    if depends_on:
        for dep in depends_on:
            planned = by_folder.get(dep)
            label = f"{planned.order}. {planned.name}" if planned else dep
            lines.append(f"- **{label}** ({dep})")
    else:
        lines.append("_None_")
    lines.append("")

    lines += ["## Plan Section", ""]
    section = extract_plan_section(plan_content, task.order)
    if section:
        lines.append(section)
    elif task.description:
        lines.append(task.description)
    else:
        lines.append(f"### {task.order}. {task.name}")
    lines.append("")

    if context_files:
        lines += ["## Context", ""]
        for ctx in context_files:
            lines += [f"### {ctx['name']}", "", ctx["content"].rstrip(), ""]

    if completed_tasks:
        lines += ["## Completed Tasks", ""]
        for done in completed_tasks:
            lines.append(f"- {done['name']}: {done.get('summary') or '(no summary)'}")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


class TaskService:
    """Persists and queries task lifecycle state for one project."""

    def __init__(
        self,
        project_root: str | Path,
        store: JsonDocumentStore | None = None,
        lock_options: LockOptions | None = None,
    ) -> None:
        self.project_root = Path(project_root)
        self.store = store or JsonDocumentStore(get_hive_path(project_root), lock_options)

    # -- queries --

    def _list_folders(self, feature: str) -> list[str]:
        return [
            key.split("/")[-2]
            for key in self.store.keys(f"{tasks_key(feature)}/*/{STATUS_FILE}")
        ]

    def get_raw_status(self, feature: str, task: str) -> TaskStatus | None:
        return self.store.read(task_status_key(feature, task))  # type: ignore[return-value]

    def get(self, feature: str, task: str) -> TaskInfo | None:
        status = self.get_raw_status(feature, task)
        if status is None:
            return None
        return {
            "folder": task,
            "name": _display_name(task, status),
            "status": status["status"],
            "origin": status.get("origin", "manual"),
            "planTitle": status.get("planTitle"),
            "summary": status.get("summary"),
            "dependsOn": list(status.get("dependsOn") or []),
        }

    def list(self, feature: str) -> list[TaskInfo]:
        tasks = []
        for folder in self._list_folders(feature):
            info = self.get(feature, folder)
            if info is not None:
                tasks.append(info)
        return tasks

    def _snapshot(self, feature: str) -> list[dict[str, Any]]:
        records = []
        for folder in self._list_folders(feature):
            status = self.get_raw_status(feature, folder)
            if status is not None:
                records.append({"folder": folder, **status})
        return records

    def runnable(self, feature: str) -> RunnableBlocked:
        """Partition the feature's pending tasks from one status snapshot."""
        return compute_runnable_and_blocked(self._snapshot(feature))

    # -- creation --

    def _creation_lock(self, feature: str) -> contextlib.AbstractContextManager[LockHandle]:
        # serializes order allocation across create() and sync() for one feature
        return self.store.lock(f"{tasks_key(feature)}/.create")

    def create(self, feature: str, name: str, order: int | None = None) -> str:
        """Create a manual task and return its folder.

        Order allocation and the status write happen under one lock, so two
        concurrent creates never receive the same order.
        """
        validate_name(feature, "feature name")
        if order is not None and order < 1:
            raise ValueError(f"Task order must be >= 1, got {order}")
        with self._creation_lock(feature):
            folders = self._list_folders(feature)
            order_to_folder = {
                o: folder for folder in folders if (o := parse_order(folder)) is not None
            }
            if order is None:
                order = max(order_to_folder, default=0) + 1
            elif order in order_to_folder:
                raise ValueError(
                    f"Task order {order} is already used by '{order_to_folder[order]}'"
                )

            folder = task_folder_name(order, name)
            key = task_status_key(feature, folder)
            if self.store.exists(key):
                raise ValueError(f"Task '{folder}' already exists in feature '{feature}'")
            status: TaskStatus = {
                "schemaVersion": TASK_STATUS_SCHEMA_VERSION,
                "status": "pending",
                "origin": "manual",
                "planTitle": name,
                "dependsOn": resolve_dependencies(order, None, order_to_folder),
            }
            self.store.write(key, status)
        log.info("Created manual task %s/%s", feature, folder)
        return folder

    def sync(
        self,
        feature: str,
        context_files: Sequence[ContextFile] = (),
    ) -> TasksSyncResult:
        """Bring the task folders in line with the feature's plan.

        The whole graph is validated first; a rejected plan writes nothing.
        Plan tasks that left the plan are removed only while still pending.
        Manual tasks are never touched.
        """
        plan = self.store.read_text(feature_key(feature, PLAN_FILE))
        if plan is None:
            raise ValueError(f"No {PLAN_FILE} found for feature '{feature}'")

        planned = [
            PlannedTask(
                order=entry.order,
                name=entry.name,
                folder=task_folder_name(entry.order, entry.name),
                depends_on_numbers=entry.depends_on_numbers,
                description=entry.body,
            )
            for entry in parse_tasks_from_plan(plan)
        ]
        validate_dependency_graph(planned)

        with self._creation_lock(feature):
            result = self._apply_plan(feature, plan, planned, context_files)
        log.info(
            "Synced tasks for %s: %d created, %d removed, %d kept, %d manual",
            feature,
            len(result["created"]),
            len(result["removed"]),
            len(result["kept"]),
            len(result["manual"]),
        )
        return result

    def _apply_plan(
        self,
        feature: str,
        plan: str,
        planned: list[PlannedTask],
        context_files: Sequence[ContextFile],
    ) -> TasksSyncResult:
        order_to_folder = {p.order: p.folder for p in planned}
        planned_folders = set(order_to_folder.values())
        existing = {record["folder"]: record for record in self._snapshot(feature)}
        result: TasksSyncResult = {"created": [], "removed": [], "kept": [], "manual": []}

        for folder, record in existing.items():
            if record.get("origin") == "manual":
                result["manual"].append(folder)
            elif folder in planned_folders or record["status"] != "pending":
                result["kept"].append(folder)
            else:
                self.store.delete(task_key(feature, folder))
                result["removed"].append(folder)

        completed = [
            {"name": _display_name(folder, record), "summary": record.get("summary", "")}
            for folder, record in existing.items()
            if record["status"] == "done"
        ]
        for task in planned:
            depends_on = resolve_dependencies(task.order, task.depends_on_numbers, order_to_folder)
            current = existing.get(task.folder)
            if current is not None:
                if (
                    current.get("origin") == "plan"
                    and current["status"] == "pending"
                    and current.get("dependsOn") != depends_on
                ):
                    key = task_status_key(feature, task.folder)
                    self.store.patch(key, {"dependsOn": depends_on})
                continue
            status: TaskStatus = {
                "schemaVersion": TASK_STATUS_SCHEMA_VERSION,
                "status": "pending",
                "origin": "plan",
                "planTitle": task.name,
                "dependsOn": depends_on,
            }
            self.store.write(task_status_key(feature, task.folder), status)
            self.write_spec(
                feature,
                task.folder,
                build_spec_content(
                    feature=feature,
                    task=task,
                    depends_on=depends_on,
                    all_tasks=planned,
                    plan_content=plan,
                    context_files=context_files,
                    completed_tasks=completed,
                ),
            )
            result["created"].append(task.folder)
        return result

    build_spec_content = staticmethod(build_spec_content)

    def write_spec(self, feature: str, task: str, content: str) -> Path:
        return self.store.write_text(task_key(feature, task, SPEC_FILE), content)

    def write_report(self, feature: str, task: str, report: str) -> Path:
        return self.store.write_text(task_key(feature, task, REPORT_FILE), report)

    def delete(self, feature: str, task: str) -> bool:
        removed = self.store.delete(task_key(feature, task))
        if removed:
            log.info("Deleted task %s/%s", feature, task)
        return removed

    # -- updates --

    def update(
        self,
        feature: str,
        task: str,
        *,
        status: str = UNSET,
        summary: str = UNSET,
        base_commit: str = UNSET,
        commits: list[TaskCommit] = UNSET,
        changed_files: list[dict[str, Any]] = UNSET,
        blocker: dict[str, str] | None = UNSET,
    ) -> TaskStatus:
        """Completion-flow update under the task's lock.

        Arguments left out are not touched. Moving to in_progress stamps
        startedAt (once); moving to done stamps completedAt.
        """
        if status is not UNSET:
            _validate_status(status)

        self._require_task(feature, task)

        def _patch(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise TaskNotFoundError(f"Task '{task}' not found in feature '{feature}'")
            patch: dict[str, Any] = {
                "status": status,
                "summary": summary,
                "baseCommit": base_commit,
                "commits": commits,
                "changedFiles": changed_files,
                "blocker": blocker,
            }
            if status == "in_progress" and not current.get("startedAt"):
                patch["startedAt"] = _utcnow()
            if status == "done":
                patch["completedAt"] = _utcnow()
            return patch

        updated = self.store.update(task_status_key(feature, task), _patch)
        if status is not UNSET:
            log.info("Task %s/%s -> %s", feature, task, status)
        return updated  # type: ignore[return-value]

    def append_commit(self, feature: str, task: str, commit: TaskCommit) -> TaskStatus:
        """Append to the task's commit history under the same lock as update."""
        self._require_task(feature, task)

        def _patch(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise TaskNotFoundError(f"Task '{task}' not found in feature '{feature}'")
            return {"commits": [*current.get("commits", []), dict(commit)]}

        updated = self.store.update(task_status_key(feature, task), _patch)
        return updated  # type: ignore[return-value]

    def patch_background_fields(
        self, feature: str, task: str, patch: Mapping[str, Any]
    ) -> TaskStatus:
        """Write worker-owned fields only; everything else in *patch* is dropped."""
        dropped = sorted(set(patch) - BACKGROUND_FIELDS)
        completion = sorted(COMPLETION_FIELDS.intersection(dropped))
        if completion:
            log.warning(
                "Background patch for %s/%s tried to write completion fields %s; dropped",
                feature,
                task,
                completion,
            )
        elif dropped:
            log.debug("Ignoring non-background fields %s for %s/%s", dropped, feature, task)
        allowed = {key: value for key, value in patch.items() if key in BACKGROUND_FIELDS}

        self._require_task(feature, task)

        def _patch(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise TaskNotFoundError(f"Task '{task}' not found in feature '{feature}'")
            return allowed

        updated = self.store.update(task_status_key(feature, task), _patch)
        return updated  # type: ignore[return-value]

    # -- subtasks --

    def _subtask_folders(self, feature: str, task: str) -> list[str]:
        folders = self.store.children(subtasks_key(feature, task))
        return sorted(folders, key=lambda f: (parse_order(f) or 0, f))

    def _find_subtask_folder(self, feature: str, task: str, subtask_id: str) -> str | None:
        number = subtask_id.rsplit(".", 1)[-1]
        for folder in self._subtask_folders(feature, task):
            if folder.split("-", 1)[0] == number:
                return folder
        return None

    def _subtask_from_folder(self, feature: str, task: str, folder: str) -> Subtask | None:
        status = self.store.read(subtask_key(feature, task, folder, STATUS_FILE))
        if status is None:
            return None
        subtask: Subtask = {
            "id": f"{parse_order(task) or 0}.{parse_order(folder) or 0}",
            "name": status.get("name") or re.sub(r"^\d+-", "", folder),
            "folder": folder,
            "status": status["status"],
        }
        for field_name in ("type", "createdAt", "completedAt"):
            if status.get(field_name):
                subtask[field_name] = status[field_name]  # type: ignore[literal-required]
        return subtask

    def _refresh_subtask_index(self, feature: str, task: str) -> None:
        self.store.patch(
            task_status_key(feature, task), {"subtasks": self.list_subtasks(feature, task)}
        )

    def _require_task(self, feature: str, task: str) -> None:
        if self.get_raw_status(feature, task) is None:
            raise TaskNotFoundError(f"Task '{task}' not found in feature '{feature}'")

    def create_subtask(
        self, feature: str, task: str, name: str, type: str | None = None
    ) -> Subtask:
        self._require_task(feature, task)
        if type is not None and type not in VALID_SUBTASK_TYPES:
            raise ValueError(
                f"Invalid subtask type '{type}'. Must be one of: {sorted(VALID_SUBTASK_TYPES)}"
            )
        numbers = [parse_order(f) or 0 for f in self._subtask_folders(feature, task)]
        number = max(numbers, default=0) + 1
        folder = f"{number}-{slugify(name) or 'subtask'}"
        status: dict[str, Any] = {"name": name, "status": "pending", "createdAt": _utcnow()}
        if type is not None:
            status["type"] = type
        self.store.write(subtask_key(feature, task, folder, STATUS_FILE), status)
        self._refresh_subtask_index(feature, task)
        subtask = self._subtask_from_folder(feature, task, folder)
        assert subtask is not None
        return subtask

    def update_subtask(self, feature: str, task: str, subtask_id: str, status: str) -> Subtask:
        _validate_status(status)
        folder = self._find_subtask_folder(feature, task, subtask_id)
        if folder is None:
            raise TaskNotFoundError(f"Subtask '{subtask_id}' not found in {feature}/{task}")
        patch: dict[str, Any] = {"status": status}
        if status == "done":
            patch["completedAt"] = _utcnow()
        self.store.patch(subtask_key(feature, task, folder, STATUS_FILE), patch)
        self._refresh_subtask_index(feature, task)
        subtask = self._subtask_from_folder(feature, task, folder)
        assert subtask is not None
        return subtask

    def list_subtasks(self, feature: str, task: str) -> list[Subtask]:
        subtasks = []
        for folder in self._subtask_folders(feature, task):
            subtask = self._subtask_from_folder(feature, task, folder)
            if subtask is not None:
                subtasks.append(subtask)
        return subtasks

    def get_subtask(self, feature: str, task: str, subtask_id: str) -> Subtask | None:
        folder = self._find_subtask_folder(feature, task, subtask_id)
        return self._subtask_from_folder(feature, task, folder) if folder else None

    def delete_subtask(self, feature: str, task: str, subtask_id: str) -> bool:
        folder = self._find_subtask_folder(feature, task, subtask_id)
        if folder is None:
            return False
        self.store.delete(subtask_key(feature, task, folder))
        self._refresh_subtask_index(feature, task)
        return True

    def _subtask_file_key(self, feature: str, task: str, subtask_id: str, name: str) -> str:
        folder = self._find_subtask_folder(feature, task, subtask_id)
        if folder is None:
            raise TaskNotFoundError(f"Subtask '{subtask_id}' not found in {feature}/{task}")
        return subtask_key(feature, task, folder, name)

    def write_subtask_spec(self, feature: str, task: str, subtask_id: str, content: str) -> Path:
        return self.store.write_text(
            self._subtask_file_key(feature, task, subtask_id, SPEC_FILE), content
        )

    def write_subtask_report(
        self, feature: str, task: str, subtask_id: str, content: str
    ) -> Path:
        return self.store.write_text(
            self._subtask_file_key(feature, task, subtask_id, REPORT_FILE), content
        )

    def read_subtask_spec(self, feature: str, task: str, subtask_id: str) -> str | None:
        folder = self._find_subtask_folder(feature, task, subtask_id)
        if folder is None:
            return None
        return self.store.read_text(subtask_key(feature, task, folder, SPEC_FILE))

    def read_subtask_report(self, feature: str, task: str, subtask_id: str) -> str | None:
        folder = self._find_subtask_folder(feature, task, subtask_id)
        if folder is None:
            return None
        return self.store.read_text(subtask_key(feature, task, folder, REPORT_FILE))
