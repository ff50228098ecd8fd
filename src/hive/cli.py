from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from hive import __version__
from hive.config import HiveSettings, load_settings
from hive.docstore import DocumentError, LockTimeout
from hive.features import FeatureService
from hive.models import VALID_FEATURE_STATUSES, VALID_MERGE_STRATEGIES, VALID_TASK_STATUSES
from hive.task_graph import ValidationError
from hive.tasks import TaskService
from hive.worktrees import GitCommandError, WorktreeService

log = logging.getLogger(__name__)

_DOMAIN_ERRORS = (
    ValidationError,
    LockTimeout,
    GitCommandError,
    DocumentError,
    ValueError,
    LookupError,
)


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click normally writes plain-text usage errors to stderr. Every hive
    command prints JSON, so this subclass emits ``{"ok": false, "error": ...}``
    on stdout instead, and turns the engines' exceptions into the same shape.
    Unknown commands get fuzzy-matched suggestions.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def invoke(self, ctx):  # type: ignore[override]
        try:
            return super().invoke(ctx)
        except _DOMAIN_ERRORS as e:
            log.debug("Command failed", exc_info=True)
            raise click.ClickException(str(e)) from None

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _not_found(entity: str, identifier: str, hint: str) -> click.ClickException:
    return click.ClickException(f"{entity.title()} '{identifier}' not found.\n{hint}")


def _root(ctx: click.Context) -> Path:
    return ctx.obj["root"]


def _settings(ctx: click.Context) -> HiveSettings:
    if "settings" not in ctx.obj:
        ctx.obj["settings"] = load_settings(_root(ctx))
    return ctx.obj["settings"]


def _features(ctx: click.Context) -> FeatureService:
    return FeatureService(_root(ctx), lock_options=_settings(ctx).lock)


def _tasks(ctx: click.Context) -> TaskService:
    return TaskService(_root(ctx), lock_options=_settings(ctx).lock)


def _worktrees(ctx: click.Context) -> WorktreeService:
    return WorktreeService(_root(ctx), settings=_settings(ctx))


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option(
    "--dir",
    "-C",
    "project_dir",
    default=".",
    envvar="HIVE_PROJECT_DIR",
    type=click.Path(file_okay=False, path_type=Path),
    help="Project root (default: current directory).",
)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
@click.pass_context
def main(ctx: click.Context, project_dir: Path, verbose: bool):
    """Coordinate worker agents on a feature's task graph.

    \b
    Quick start:
      hive feature create auth                 Create a feature
      hive feature plan auth plan.md           Attach its plan
      hive task sync auth                      Create tasks from the plan
      hive task runnable auth                  Which tasks can start now
      hive worktree create auth 01-schema      Isolated checkout for a task

    Every command prints JSON on stdout; logs go to stderr.
    """
    level = "DEBUG" if verbose else os.environ.get("HIVE_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj["root"] = project_dir.resolve()


# -- feature --


@main.group()
def feature():
    """Create features and attach plans."""


@feature.command("create")
@click.argument("name")
@click.option("--ticket", default=None, help="External ticket reference.")
@click.pass_context
def feature_create(ctx: click.Context, name: str, ticket: str | None):
    """Create a feature in planning status."""
    _emit(_features(ctx).create(name, ticket))


@feature.command("list")
@click.pass_context
def feature_list(ctx: click.Context):
    """List features."""
    service = _features(ctx)
    _emit([service.get(name) for name in service.list()])


@feature.command("status")
@click.argument("name")
@click.argument("status", type=click.Choice(sorted(VALID_FEATURE_STATUSES)))
@click.pass_context
def feature_status(ctx: click.Context, name: str, status: str):
    """Move a feature to STATUS."""
    _emit(_features(ctx).update_status(name, status))


@feature.command("plan")
@click.argument("name")
@click.argument("plan_file", type=click.File("r", encoding="utf-8"))
@click.pass_context
def feature_plan(ctx: click.Context, name: str, plan_file):
    """Store PLAN_FILE (or '-' for stdin) as the feature's plan.md."""
    service = _features(ctx)
    if service.get(name) is None:
        raise _not_found("feature", name, "Run 'hive feature list' to see features.")
    path = service.write_plan(name, plan_file.read())
    _emit({"ok": True, "path": str(path)})


# -- task --


@main.group()
def task():
    """Sync, inspect and update tasks."""


@task.command("sync")
@click.argument("feature_name")
@click.pass_context
def task_sync(ctx: click.Context, feature_name: str):
    """Create and remove tasks to match the feature's plan.

    The whole dependency graph is validated first; an invalid plan changes
    nothing.
    """
    context_files = _features(ctx).list_context_files(feature_name)
    _emit(_tasks(ctx).sync(feature_name, context_files))


@task.command("create")
@click.argument("feature_name")
@click.argument("name")
@click.option("--order", type=click.IntRange(min=1), default=None, help="Explicit order number.")
@click.pass_context
def task_create(ctx: click.Context, feature_name: str, name: str, order: int | None):
    """Create a manual task."""
    folder = _tasks(ctx).create(feature_name, name, order)
    _emit({"ok": True, "folder": folder})


@task.command("list")
@click.argument("feature_name")
@click.pass_context
def task_list(ctx: click.Context, feature_name: str):
    """List a feature's tasks in order."""
    _emit(_tasks(ctx).list(feature_name))


@task.command("show")
@click.argument("feature_name")
@click.argument("task_name")
@click.pass_context
def task_show(ctx: click.Context, feature_name: str, task_name: str):
    """Show a task's raw status document."""
    status = _tasks(ctx).get_raw_status(feature_name, task_name)
    if status is None:
        raise _not_found(
            "task", task_name, f"Run 'hive task list {feature_name}' to see tasks."
        )
    _emit(status)


@task.command("update")
@click.argument("feature_name")
@click.argument("task_name")
@click.option("--status", type=click.Choice(sorted(VALID_TASK_STATUSES)), default=None)
@click.option("--summary", default=None, help="Completion summary.")
@click.option("--base-commit", default=None, help="Commit the task started from.")
@click.pass_context
def task_update(
    ctx: click.Context,
    feature_name: str,
    task_name: str,
    status: str | None,
    summary: str | None,
    base_commit: str | None,
):
    """Completion-flow update of status, summary or base commit."""
    fields: dict[str, Any] = {}
    if status is not None:
        fields["status"] = status
    if summary is not None:
        fields["summary"] = summary
    if base_commit is not None:
        fields["base_commit"] = base_commit
    if not fields:
        raise click.UsageError("Nothing to update: pass --status, --summary or --base-commit.")
    _emit(_tasks(ctx).update(feature_name, task_name, **fields))


@task.command("heartbeat")
@click.argument("feature_name")
@click.argument("task_name")
@click.option("--session-id", default=None)
@click.option("--worker-id", default=None)
@click.option("--agent", default=None)
@click.option("--mode", type=click.Choice(["inline", "delegate"]), default=None)
@click.option("--attempt", type=int, default=None)
@click.option("--message-count", type=int, default=None)
@click.option("--idempotency-key", default=None)
@click.pass_context
def task_heartbeat(
    ctx: click.Context,
    feature_name: str,
    task_name: str,
    session_id: str | None,
    worker_id: str | None,
    agent: str | None,
    mode: str | None,
    attempt: int | None,
    message_count: int | None,
    idempotency_key: str | None,
):
    """Record worker liveness. Never touches status or summary."""
    session = {
        "sessionId": session_id,
        "workerId": worker_id,
        "agent": agent,
        "mode": mode,
        "attempt": attempt,
        "messageCount": message_count,
    }
    worker_session: dict[str, Any] = {k: v for k, v in session.items() if v is not None}
    worker_session["lastHeartbeatAt"] = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
    patch: dict[str, Any] = {"workerSession": worker_session}
    if idempotency_key is not None:
        patch["idempotencyKey"] = idempotency_key
    _emit(_tasks(ctx).patch_background_fields(feature_name, task_name, patch))


@task.command("runnable")
@click.argument("feature_name")
@click.pass_context
def task_runnable(ctx: click.Context, feature_name: str):
    """Pending tasks whose dependencies are all done, and what blocks the rest."""
    _emit(_tasks(ctx).runnable(feature_name).to_dict())


# -- worktree --


@main.group()
def worktree():
    """Per-task git worktrees: create, diff, commit, merge."""


@worktree.command("create")
@click.argument("feature_name")
@click.argument("task_name")
@click.option("--base", "base_branch", default=None, help="Base branch (default: current).")
@click.pass_context
def worktree_create(ctx: click.Context, feature_name: str, task_name: str, base_branch: str | None):
    """Create (or reuse) the task's worktree."""
    _emit(_worktrees(ctx).create(feature_name, task_name, base_branch))


@worktree.command("diff")
@click.argument("feature_name")
@click.argument("task_name")
@click.option("--base-commit", default=None, help="Diff against this commit.")
@click.option("--detailed", is_flag=True, help="Per-file change records instead of the patch.")
@click.pass_context
def worktree_diff(
    ctx: click.Context,
    feature_name: str,
    task_name: str,
    base_commit: str | None,
    detailed: bool,
):
    """Show the task's changes against its base commit."""
    service = _worktrees(ctx)
    if detailed:
        _emit(service.get_detailed_diff(feature_name, task_name, base_commit))
    else:
        _emit(service.get_diff(feature_name, task_name, base_commit))


@worktree.command("commit")
@click.argument("feature_name")
@click.argument("task_name")
@click.option("--message", "-m", default=None, help="Commit message.")
@click.pass_context
def worktree_commit(ctx: click.Context, feature_name: str, task_name: str, message: str | None):
    """Stage and commit everything in the task's worktree."""
    _emit(_worktrees(ctx).commit_changes(feature_name, task_name, message))


@worktree.command("merge")
@click.argument("feature_name")
@click.argument("task_name")
@click.option("--strategy", type=click.Choice(VALID_MERGE_STRATEGIES), default=None)
@click.pass_context
def worktree_merge(ctx: click.Context, feature_name: str, task_name: str, strategy: str | None):
    """Merge the task branch into the checked-out branch.

    Conflicts abort the merge and are reported in the output.
    """
    result = _worktrees(ctx).merge(feature_name, task_name, strategy)
    _emit(result)
    if not result["success"]:
        ctx.exit(1)


@worktree.command("remove")
@click.argument("feature_name")
@click.argument("task_name")
@click.option("--delete-branch", is_flag=True, help="Also delete the task branch.")
@click.pass_context
def worktree_remove(ctx: click.Context, feature_name: str, task_name: str, delete_branch: bool):
    """Remove the task's worktree."""
    _worktrees(ctx).remove(feature_name, task_name, delete_branch=delete_branch)
    _emit({"ok": True})


@worktree.command("list")
@click.argument("feature_name", required=False)
@click.pass_context
def worktree_list(ctx: click.Context, feature_name: str | None):
    """List worktrees, optionally for one feature."""
    _emit(_worktrees(ctx).list(feature_name))


@worktree.command("cleanup")
@click.option("--feature", "feature_name", default=None, help="Limit to one feature.")
@click.pass_context
def worktree_cleanup(ctx: click.Context, feature_name: str | None):
    """Delete orphaned worktree directories and prune git metadata."""
    _emit(_worktrees(ctx).cleanup(feature_name))


@worktree.command("conflicts")
@click.argument("feature_name")
@click.argument("task_name")
@click.option("--base-commit", default=None)
@click.pass_context
def worktree_conflicts(
    ctx: click.Context, feature_name: str, task_name: str, base_commit: str | None
):
    """Dry-run: paths that would conflict when applying the task's diff."""
    conflicts = _worktrees(ctx).check_conflicts(feature_name, task_name, base_commit)
    _emit({"conflicts": conflicts, "clean": not conflicts})
