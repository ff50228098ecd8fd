"""Plan text parsing.

A plan lists its tasks as numbered level-3 headings. Each task section may
carry one dependency annotation::

    ### 1. Set up schema
    Create the tables.

    ### 2. Build the API
    **Depends on**: 1

    ### 3. Write docs
    Depends on: none

No annotation means "depends on the previous task"; ``none`` (or ``-``)
means no dependencies at all.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from hive.task_graph import ValidationError

_TASK_HEADING_RE = re.compile(r"^###\s+(\d+)\.\s+(.+?)\s*$", re.MULTILINE)
_SECTION_END_RE = re.compile(r"^#{1,3}\s", re.MULTILINE)
_DEPENDS_RE = re.compile(
    r"^[ \t>*_-]*depends\s+on[ \t*_]*:[ \t*_]*(?P<value>.*?)[ \t*_]*$",
    re.IGNORECASE | re.MULTILINE,
)
_NONE_VALUES = {"", "none", "-", "n/a", "nothing"}


@dataclass(frozen=True, slots=True)
class PlanTaskEntry:
    order: int
    name: str
    depends_on_numbers: tuple[int, ...] | None
    body: str


def _parse_depends(order: int, body: str) -> tuple[int, ...] | None:
    match = _DEPENDS_RE.search(body)
    if match is None:
        return None
    value = match.group("value").strip()
    if value.lower() in _NONE_VALUES:
        return ()
    numbers = re.findall(r"\d+", value)
    if not numbers:
        raise ValidationError(
            f"Task {order}: cannot read dependency annotation 'Depends on: {value}'. "
            "Use task numbers (e.g. 'Depends on: 1, 2') or 'none'."
        )
    return tuple(int(n) for n in numbers)


def _section_bounds(content: str, heading: re.Match[str]) -> tuple[int, int]:
    start = heading.end()
    end_match = _SECTION_END_RE.search(content, start)
    return start, end_match.start() if end_match else len(content)


def parse_tasks_from_plan(content: str) -> list[PlanTaskEntry]:
    """Tasks in the order they appear in the plan."""
    entries: list[PlanTaskEntry] = []
    for heading in _TASK_HEADING_RE.finditer(content):
        order = int(heading.group(1))
        start, end = _section_bounds(content, heading)
        body = content[start:end].strip()
        entries.append(
            PlanTaskEntry(
                order=order,
                name=heading.group(2).strip(),
                depends_on_numbers=_parse_depends(order, body),
                body=body,
            )
        )
    return entries


def extract_plan_section(content: str | None, order: int) -> str | None:
    """The heading and body of task *order*, or None if the plan lacks it."""
    if not content:
        return None
    for heading in _TASK_HEADING_RE.finditer(content):
        if int(heading.group(1)) == order:
            _, end = _section_bounds(content, heading)
            return content[heading.start() : end].strip()
    return None
