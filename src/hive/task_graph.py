"""Task dependency graph: resolution, validation, runnable/blocked partition.

Pure functions over task records; nothing here touches the filesystem.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

_ORDER_PREFIX_RE = re.compile(r"^(\d+)-")

WHITE, GRAY, BLACK = 0, 1, 2


class ValidationError(ValueError):
    """The task graph is invalid. Raised before any task file is written."""

    def __init__(self, message: str, errors: Sequence[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors) if errors else [message]


@dataclass(frozen=True, slots=True)
class PlannedTask:
    """A task as declared in plan text, before it exists on disk.

    ``depends_on_numbers`` is None when the plan says nothing (implicit
    dependency on the preceding task) and an empty tuple for an explicit
    "none".
    """

    order: int
    name: str
    folder: str
    depends_on_numbers: tuple[int, ...] | None = None
    description: str = ""

    @property
    def label(self) -> str:
        return f"{self.order} ({self.name})"


@dataclass(slots=True)
class RunnableBlocked:
    runnable: list[str] = field(default_factory=list)
    blocked: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"runnable": list(self.runnable), "blocked": dict(self.blocked)}


def parse_order(folder: str) -> int | None:
    """Numeric order prefix of a task folder (``03-api`` -> 3)."""
    match = _ORDER_PREFIX_RE.match(folder)
    return int(match.group(1)) if match else None


def _preceding_order(order: int, orders: Iterable[int]) -> int | None:
    earlier = [o for o in orders if o < order]
    return max(earlier) if earlier else None


def resolve_dependencies(
    order: int,
    depends_on_numbers: Sequence[int] | None,
    order_to_folder: Mapping[int, str],
) -> list[str]:
    """Map dependency order numbers to task folders.

    - None: implicit dependency on the preceding task (none for the first).
    - []: explicitly no dependencies.
    - [n, ...]: the folders of those orders, duplicates dropped.
    """
    if depends_on_numbers is None:
        previous = _preceding_order(order, order_to_folder)
        return [order_to_folder[previous]] if previous is not None else []

    resolved: list[str] = []
    for number in depends_on_numbers:
        folder = order_to_folder.get(number)
        if folder is None:
            raise ValidationError(f"Task {order} depends on unknown task {number}")
        if folder not in resolved:
            resolved.append(folder)
    return resolved


def _effective_numbers(task: PlannedTask, orders: Sequence[int]) -> list[int]:
    if task.depends_on_numbers is None:
        previous = _preceding_order(task.order, orders)
        return [previous] if previous is not None else []
    return list(dict.fromkeys(task.depends_on_numbers))


def find_cycle(adjacency: Sequence[Sequence[int]]) -> list[int] | None:
    """Return one cycle as node indices (first node repeated at the end), or None.

    Iterative three-color DFS: WHITE unvisited, GRAY on the current path,
    BLACK finished. An edge into a GRAY node closes a cycle. The explicit
    stack mirrors the GRAY path, so the cycle is read straight off it.
    O(V + E), no recursion.
    """
    color = [WHITE] * len(adjacency)
    for start in range(len(adjacency)):
        if color[start] != WHITE:
            continue
        color[start] = GRAY
        stack: list[list[int]] = [[start, 0]]
        while stack:
            frame = stack[-1]
            node, edge = frame
            if edge < len(adjacency[node]):
                frame[1] += 1
                nxt = adjacency[node][edge]
                if color[nxt] == GRAY:
                    path = [n for n, _ in stack]
                    return path[path.index(nxt) :] + [nxt]
                if color[nxt] == WHITE:
                    color[nxt] = GRAY
                    stack.append([nxt, 0])
            else:
                color[node] = BLACK
                stack.pop()
    return None


def validate_dependency_graph(tasks: Sequence[PlannedTask]) -> None:
    """Reject duplicate numbers, unknown references, self-dependencies and cycles.

    Reference errors are collected and reported together; cycle detection
    runs only once every reference resolves.
    """
    errors: list[str] = []
    by_order: dict[int, PlannedTask] = {}
    for task in tasks:
        if task.order in by_order:
            errors.append(
                f"Task number {task.order} is used by both "
                f"'{by_order[task.order].name}' and '{task.name}'"
            )
        by_order.setdefault(task.order, task)

    for task in tasks:
        for dep in task.depends_on_numbers or ():
            if dep == task.order:
                errors.append(f"Task {task.label} depends on itself")
            elif dep not in by_order:
                errors.append(f"Task {task.label} depends on unknown task {dep}")

    if errors:
        raise ValidationError(
            "Invalid task dependencies in plan.md:\n"
            + "\n".join(f"  - {e}" for e in errors)
            + "\nFix the 'Depends on' annotations and sync again.",
            errors,
        )

    orders = [task.order for task in tasks]
    index = {task.order: i for i, task in enumerate(tasks)}
    adjacency = [[index[n] for n in _effective_numbers(task, orders)] for task in tasks]
    cycle = find_cycle(adjacency)
    if cycle is not None:
        path = " -> ".join(tasks[i].label for i in cycle)
        raise ValidationError(
            f"Dependency cycle in plan.md: {path}\n"
            "Each task may only depend on tasks that do not (transitively) depend on it.",
            [f"cycle: {path}"],
        )


def build_effective_dependencies(tasks: Iterable[Mapping[str, Any]]) -> dict[str, list[str]]:
    """Dependencies per folder, with the legacy sequential fallback.

    A task whose ``dependsOn`` is missing (or null) depends on the task with
    the nearest lower order prefix. An explicit list, empty included, is used
    as-is.
    """
    records = list(tasks)
    order_to_folder: dict[int, str] = {}
    for record in records:
        order = parse_order(record["folder"])
        if order is not None:
            order_to_folder.setdefault(order, record["folder"])

    effective: dict[str, list[str]] = {}
    for record in records:
        folder = record["folder"]
        depends_on = record.get("dependsOn")
        if depends_on is not None:
            effective[folder] = list(depends_on)
            continue
        order = parse_order(folder)
        if order is None:
            effective[folder] = []
            continue
        effective[folder] = resolve_dependencies(order, None, order_to_folder)
    return effective


def compute_runnable_and_blocked(tasks: Iterable[Mapping[str, Any]]) -> RunnableBlocked:
    """Partition pending tasks into runnable and blocked.

    A pending task is runnable when every dependency has status ``done``;
    otherwise it is blocked and mapped to its unsatisfied dependencies. Only
    ``done`` satisfies: in_progress, cancelled, failed, blocked and partial
    do not, and neither does a dependency on a folder that does not exist.
    Non-pending tasks appear in neither set.
    """
    records = sorted(tasks, key=lambda record: record["folder"])
    status_by_folder = {record["folder"]: record.get("status") for record in records}
    effective = build_effective_dependencies(records)

    result = RunnableBlocked()
    for record in records:
        if record.get("status") != "pending":
            continue
        folder = record["folder"]
        missing = [dep for dep in effective[folder] if status_by_folder.get(dep) != "done"]
        if missing:
            result.blocked[folder] = missing
        else:
            result.runnable.append(folder)
    return result
