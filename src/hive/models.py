"""Shapes of hive documents and engine results.

Keys are camelCase because these dicts are the JSON wire format shared with
the editor extension and the worker agents.
"""

from __future__ import annotations

from typing import NotRequired, TypedDict

TASK_STATUS_SCHEMA_VERSION = 1

VALID_FEATURE_STATUSES = {"planning", "approved", "executing", "completed"}
VALID_TASK_STATUSES = {
    "pending",
    "in_progress",
    "done",
    "cancelled",
    "blocked",
    "failed",
    "partial",
}
VALID_SUBTASK_TYPES = {"test", "implement", "review", "verify", "research", "debug", "custom"}
VALID_MERGE_STRATEGIES = ("merge", "squash", "rebase")

# Written only by the completion flow, never by background patches.
COMPLETION_FIELDS = frozenset({"status", "summary", "completedAt"})
BACKGROUND_FIELDS = frozenset({"idempotencyKey", "workerSession"})


class FeatureJson(TypedDict):
    name: str
    status: str
    createdAt: str
    ticket: NotRequired[str]
    approvedAt: NotRequired[str]
    completedAt: NotRequired[str]


class WorkerSession(TypedDict, total=False):
    taskId: str
    sessionId: str
    workerId: str
    agent: str
    mode: str
    lastHeartbeatAt: str
    attempt: int
    messageCount: int


class TaskCommit(TypedDict):
    sha: str
    message: str
    timestamp: str


class TaskChangedFile(TypedDict):
    path: str
    status: str
    insertions: int
    deletions: int
    oldPath: NotRequired[str]


class TaskBlocker(TypedDict):
    reason: str
    detail: NotRequired[str]


class Subtask(TypedDict):
    id: str
    name: str
    folder: str
    status: str
    type: NotRequired[str]
    createdAt: NotRequired[str]
    completedAt: NotRequired[str]


class SubtaskStatus(TypedDict):
    status: str
    createdAt: str
    type: NotRequired[str]
    completedAt: NotRequired[str]


class TaskStatus(TypedDict):
    schemaVersion: NotRequired[int]
    status: str
    origin: str
    planTitle: NotRequired[str]
    summary: NotRequired[str]
    startedAt: NotRequired[str]
    completedAt: NotRequired[str]
    baseCommit: NotRequired[str]
    dependsOn: NotRequired[list[str]]
    subtasks: NotRequired[list[Subtask]]
    idempotencyKey: NotRequired[str]
    workerSession: NotRequired[WorkerSession]
    commits: NotRequired[list[TaskCommit]]
    changedFiles: NotRequired[list[TaskChangedFile]]
    blocker: NotRequired[TaskBlocker | None]


class TaskInfo(TypedDict):
    folder: str
    name: str
    status: str
    origin: str
    planTitle: str | None
    summary: str | None
    dependsOn: list[str]


class TasksSyncResult(TypedDict):
    created: list[str]
    removed: list[str]
    kept: list[str]
    manual: list[str]


class ContextFile(TypedDict):
    name: str
    content: str
    updatedAt: str


class WorktreeInfo(TypedDict):
    path: str
    branch: str
    commit: str
    feature: str
    task: str


class DiffResult(TypedDict):
    hasDiff: bool
    diffContent: str
    filesChanged: list[str]
    insertions: int
    deletions: int


class ApplyResult(TypedDict):
    success: bool
    filesAffected: list[str]
    error: NotRequired[str]


class CommitResult(TypedDict):
    committed: bool
    sha: str
    message: NotRequired[str]


class MergeResult(TypedDict):
    success: bool
    merged: bool
    sha: NotRequired[str]
    filesChanged: NotRequired[list[str]]
    conflicts: NotRequired[list[str]]
    error: NotRequired[str]
