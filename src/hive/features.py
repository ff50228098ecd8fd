"""Feature documents, plan text and context files.

The planning and context layers own most of this; the engines only need to
read a feature's plan and context files and to record its lifecycle status.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from hive.docstore import JsonDocumentStore, LockOptions
from hive.models import VALID_FEATURE_STATUSES, ContextFile, FeatureJson
from hive.paths import (
    FEATURE_JSON,
    PLAN_FILE,
    context_key,
    feature_key,
    features_key,
    get_hive_path,
    validate_name,
)

log = logging.getLogger(__name__)


def _utcnow() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class FeatureService:
    def __init__(
        self,
        project_root: str | Path,
        store: JsonDocumentStore | None = None,
        lock_options: LockOptions | None = None,
    ) -> None:
        self.project_root = Path(project_root)
        self.store = store or JsonDocumentStore(get_hive_path(project_root), lock_options)

    def create(self, name: str, ticket: str | None = None) -> FeatureJson:
        validate_name(name, "feature name")
        key = feature_key(name, FEATURE_JSON)
        if self.store.exists(key):
            raise ValueError(f"Feature '{name}' already exists")
        feature: FeatureJson = {"name": name, "status": "planning", "createdAt": _utcnow()}
        if ticket:
            feature["ticket"] = ticket
        self.store.write(key, feature)
        log.info("Created feature %s", name)
        return feature

    def get(self, name: str) -> FeatureJson | None:
        return self.store.read(feature_key(name, FEATURE_JSON))  # type: ignore[return-value]

    def list(self) -> list[str]:
        return [
            name
            for name in self.store.children(features_key())
            if self.store.exists(feature_key(name, FEATURE_JSON))
        ]

    def update_status(self, name: str, status: str) -> FeatureJson:
        if status not in VALID_FEATURE_STATUSES:
            raise ValueError(
                f"Invalid feature status '{status}'. "
                f"Must be one of: {sorted(VALID_FEATURE_STATUSES)}"
            )

        def _patch(current: dict | None) -> dict:
            if current is None:
                raise LookupError(f"Feature '{name}' not found")
            patch: dict = {"status": status}
            if status == "approved":
                patch["approvedAt"] = _utcnow()
            elif status == "completed":
                patch["completedAt"] = _utcnow()
            return patch

        updated = self.store.update(feature_key(name, FEATURE_JSON), _patch)
        return updated  # type: ignore[return-value]

    def read_plan(self, name: str) -> str | None:
        return self.store.read_text(feature_key(name, PLAN_FILE))

    def write_plan(self, name: str, content: str) -> Path:
        validate_name(name, "feature name")
        return self.store.write_text(feature_key(name, PLAN_FILE), content)

    def write_context(self, name: str, file_name: str, content: str) -> Path:
        stem = file_name[:-3] if file_name.endswith(".md") else file_name
        validate_name(stem, "context file name")
        return self.store.write_text(context_key(name, f"{stem}.md"), content)

    def list_context_files(self, name: str) -> list[ContextFile]:
        files: list[ContextFile] = []
        for key in self.store.keys(f"{context_key(name)}/*.md"):
            path = self.store.path_for(key)
            files.append(
                {
                    "name": path.stem,
                    "content": self.store.read_text(key) or "",
                    "updatedAt": datetime.fromtimestamp(path.stat().st_mtime, UTC).strftime(
                        "%Y-%m-%dT%H:%M:%SZ"
                    ),
                }
            )
        return files

    def delete(self, name: str) -> bool:
        """Remove the feature with all its tasks. Worktrees are the caller's business."""
        removed = self.store.delete(feature_key(name))
        if removed:
            log.info("Deleted feature %s", name)
        return removed
