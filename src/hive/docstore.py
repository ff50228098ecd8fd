"""Locked, atomic JSON document store shared by every hive process.

Several OS processes (the editor extension, background workers, CLIs) write
the same JSON files. Every mutation therefore follows one shape:

1. take ``<path>.lock`` with a ``filelock.SoftFileLock`` (an exclusive create),
2. read the current document,
3. merge the patch into it,
4. write to a temp file in the same directory and ``os.replace`` it over the
   target,
5. release the lock.

A holder that crashes leaves its lock file behind. SoftFileLock clears it when
the recorded pid is dead on this host; otherwise the next writer breaks it
once it is older than ``stale_lock_ttl``.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import enum
import json
import logging
import os
import shutil
import tempfile
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import filelock

log = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 5.0
DEFAULT_RETRY_INTERVAL = 0.05
DEFAULT_STALE_LOCK_TTL = 30.0

LOCK_SUFFIX = ".lock"


class LockTimeout(TimeoutError):
    """The lock could not be acquired within the configured window.

    Retryable: a timeout means another writer held the document, not that
    anything is corrupt.
    """

    def __init__(self, path: str | Path, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout:g}s waiting for lock on {path}; retry the operation"
        )
        self.path = str(path)
        self.timeout = timeout


class DocumentError(ValueError):
    """A stored document is not a JSON object."""


@dataclass(frozen=True, slots=True)
class LockOptions:
    """Lock acquisition settings, all in seconds."""

    timeout: float = DEFAULT_LOCK_TIMEOUT
    retry_interval: float = DEFAULT_RETRY_INTERVAL
    stale_lock_ttl: float = DEFAULT_STALE_LOCK_TTL

    def __post_init__(self) -> None:
        if self.timeout < 0:
            raise ValueError("timeout must be >= 0")
        if self.retry_interval <= 0:
            raise ValueError("retry_interval must be > 0")
        if self.stale_lock_ttl <= 0:
            raise ValueError("stale_lock_ttl must be > 0")


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------


def get_lock_path(path: str | Path) -> Path:
    """Return the lock file colocated with *path*."""
    return Path(f"{path}{LOCK_SUFFIX}")


def _identity(stat_result: os.stat_result) -> tuple[int, int, int]:
    # inode numbers are reused as soon as they are freed; mtime tells the files apart
    return stat_result.st_dev, stat_result.st_ino, stat_result.st_mtime_ns


class LockHandle:
    """Release handle for an acquired lock.

    ``release()`` runs at most once; later calls are no-ops. The lock file is
    only removed while it is still the file this handle created, so a handle
    whose lock was broken as stale never deletes the new owner's lock.
    """

    def __init__(self, lock: filelock.SoftFileLock) -> None:
        self._lock = lock
        self.lock_path = Path(lock.lock_file)
        self._identity = _identity(os.stat(self.lock_path))[:2]
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            current = _identity(os.stat(self.lock_path))[:2]
        except FileNotFoundError:
            current = None
        if current != self._identity:
            log.warning("Lock %s was taken over before release", self.lock_path)
        # SoftFileLock only unlinks the path while it still names the file it created
        self._lock.release()

    def __enter__(self) -> LockHandle:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


def _soft_lock(lock_path: Path) -> filelock.SoftFileLock:
    return filelock.SoftFileLock(str(lock_path), thread_local=False)


def _break_stale_lock(lock_path: Path, stale_lock_ttl: float) -> bool:
    """Remove *lock_path* if it is older than the TTL.

    Returns True when the caller should retry immediately (the lock is gone),
    False when it should wait.

    Breakers serialize on ``<lock>.break.lock``. The stale file is renamed
    aside and only deleted when it is still the file that was judged stale; a
    lock that a new owner created in the meantime is linked back in place.
    """
    try:
        seen = os.lstat(lock_path)
    except FileNotFoundError:
        return True
    if time.time() - seen.st_mtime <= stale_lock_ttl:
        return False

    guard = _soft_lock(lock_path.with_name(f"{lock_path.name}.break{LOCK_SUFFIX}"))
    try:
        guard.acquire(blocking=False)
    except filelock.Timeout:
        return False
    try:
        return _remove_if_unchanged(lock_path, seen)
    finally:
        guard.release()


def _remove_if_unchanged(lock_path: Path, seen: os.stat_result) -> bool:
    try:
        if _identity(os.lstat(lock_path)) != _identity(seen):
            return False
    except FileNotFoundError:
        return True

    graveyard = lock_path.with_name(f"{lock_path.name}.stale-{uuid.uuid4().hex}")
    try:
        os.rename(lock_path, graveyard)
    except FileNotFoundError:
        return True
    if _identity(os.lstat(graveyard)) == _identity(seen):
        graveyard.unlink()
        log.warning("Broke stale lock %s (age %.1fs)", lock_path, time.time() - seen.st_mtime)
        return True

    # the overdue holder released and a new owner acquired before the rename
    try:
        os.link(graveyard, lock_path)
    except FileExistsError:
        log.error(
            "Lock %s was re-acquired by two writers while a stale lock was broken; "
            "the displaced holder no longer owns it",
            lock_path,
        )
    graveyard.unlink()
    return False


def acquire_lock(path: str | Path, options: LockOptions | None = None) -> LockHandle:
    """Acquire the exclusive lock for *path*, blocking up to ``options.timeout``.

    Raises LockTimeout if the lock is still held when the window closes.
    """
    options = options or LockOptions()
    lock_path = get_lock_path(path)
    lock = _soft_lock(lock_path)
    deadline = time.monotonic() + options.timeout
    while True:
        remaining = max(deadline - time.monotonic(), 0.0)
        with contextlib.suppress(filelock.Timeout):
            lock.acquire(
                timeout=min(options.retry_interval, remaining),
                poll_interval=options.retry_interval,
            )
            return LockHandle(lock)
        retry_now = _break_stale_lock(lock_path, options.stale_lock_ttl)
        if time.monotonic() >= deadline:
            raise LockTimeout(path, options.timeout)
        if not retry_now:
            log.debug("Lock %s busy, retrying", lock_path)


async def acquire_lock_async(
    path: str | Path, options: LockOptions | None = None
) -> LockHandle:
    """Async variant of acquire_lock; yields to the event loop between attempts."""
    options = options or LockOptions()
    lock_path = get_lock_path(path)
    lock = _soft_lock(lock_path)
    deadline = time.monotonic() + options.timeout
    while True:
        with contextlib.suppress(filelock.Timeout):
            lock.acquire(blocking=False)
            return LockHandle(lock)
        retry_now = _break_stale_lock(lock_path, options.stale_lock_ttl)
        if time.monotonic() >= deadline:
            raise LockTimeout(path, options.timeout)
        await asyncio.sleep(0 if retry_now else options.retry_interval)


@contextlib.contextmanager
def locked(path: str | Path, options: LockOptions | None = None) -> Iterator[LockHandle]:
    """Hold the lock for *path* for the duration of the block.

    Usage:
        with locked(status_path):
            ...
    """
    handle = acquire_lock(path, options)
    try:
        yield handle
    finally:
        handle.release()


@contextlib.asynccontextmanager
async def locked_async(
    path: str | Path, options: LockOptions | None = None
) -> AsyncIterator[LockHandle]:
    handle = await acquire_lock_async(path, options)
    try:
        yield handle
    finally:
        handle.release()


# ---------------------------------------------------------------------------
# Atomic reads and writes
# ---------------------------------------------------------------------------


def write_atomic(path: str | Path, content: str | bytes) -> None:
    """Write *content* so readers see either the old or the new file, never a mix."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8") if isinstance(content, str) else content
    fd, tmp_path = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, target)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise


def read_text(path: str | Path) -> str | None:
    try:
        return Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def write_text(path: str | Path, content: str) -> None:
    write_atomic(path, content)


def read_json(path: str | Path) -> dict[str, Any] | None:
    """Read a JSON object, or None if the file does not exist.

    Raises DocumentError when the file exists but is not a JSON object.
    """
    raw = read_text(path)
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise DocumentError(f"Invalid JSON in {path}: {e}") from None
    if not isinstance(data, dict):
        raise DocumentError(f"Expected a JSON object in {path}, got {type(data).__name__}")
    return data


def _dumps(data: Mapping[str, Any]) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def write_json_atomic(path: str | Path, data: Mapping[str, Any]) -> None:
    write_atomic(path, _dumps(data))


def write_json_locked(
    path: str | Path, data: Mapping[str, Any], options: LockOptions | None = None
) -> None:
    with locked(path, options):
        write_json_atomic(path, data)


async def write_json_locked_async(
    path: str | Path, data: Mapping[str, Any], options: LockOptions | None = None
) -> None:
    async with locked_async(path, options):
        write_json_atomic(path, data)


# ---------------------------------------------------------------------------
# Deep merge
# ---------------------------------------------------------------------------


class _Unset:
    """Marker for "field not supplied" in a patch; distinct from None."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


class PatchOp(enum.Enum):
    """What a single patch value does to the field it targets."""

    MERGE = "merge"
    REPLACE = "replace"
    SET_NULL = "set_null"
    LEAVE = "leave"


def classify_patch_value(current: Any, value: Any) -> PatchOp:
    """Tag a patch value.

    - UNSET leaves the field untouched.
    - None overwrites the field with null.
    - A mapping merges recursively into an existing mapping.
    - Anything else (lists included) replaces the field wholesale.
    """
    if value is UNSET:
        return PatchOp.LEAVE
    if value is None:
        return PatchOp.SET_NULL
    if isinstance(value, Mapping) and isinstance(current, Mapping):
        return PatchOp.MERGE
    return PatchOp.REPLACE


def deep_merge(target: Mapping[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    """Return a new dict with *patch* merged into *target*. Neither input is mutated."""
    result = copy.deepcopy(dict(target))
    for key, value in patch.items():
        op = classify_patch_value(result.get(key, UNSET), value)
        if op is PatchOp.LEAVE:
            continue
        if op is PatchOp.SET_NULL:
            result[key] = None
        elif op is PatchOp.MERGE:
            result[key] = deep_merge(result[key], value)
        elif isinstance(value, Mapping):
            # strip UNSET markers from a freshly introduced object
            result[key] = deep_merge({}, value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ---------------------------------------------------------------------------
# Read-modify-write
# ---------------------------------------------------------------------------


def _merge_current(
    path: str | Path, patch: Mapping[str, Any], default: Mapping[str, Any] | None
) -> dict[str, Any]:
    current = read_json(path)
    if current is None:
        current = dict(default) if default is not None else {}
    merged = deep_merge(current, patch)
    write_json_atomic(path, merged)
    return merged


def patch_json_locked(
    path: str | Path,
    patch: Mapping[str, Any],
    options: LockOptions | None = None,
    default: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Lock, read (or *default*), deep-merge *patch*, write atomically, unlock.

    Returns the merged document.
    """
    with locked(path, options):
        return _merge_current(path, patch, default)


async def patch_json_locked_async(
    path: str | Path,
    patch: Mapping[str, Any],
    options: LockOptions | None = None,
    default: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    async with locked_async(path, options):
        return _merge_current(path, patch, default)


def update_json_locked(
    path: str | Path,
    build_patch: Callable[[dict[str, Any] | None], Mapping[str, Any]],
    options: LockOptions | None = None,
) -> dict[str, Any]:
    """Like patch_json_locked, but the patch is computed from the current document.

    *build_patch* runs under the lock and receives the current document (None
    if absent). It may raise to abort without writing.
    """
    with locked(path, options):
        current = read_json(path)
        merged = deep_merge(current or {}, build_patch(current))
        write_json_atomic(path, merged)
        return merged


# ---------------------------------------------------------------------------
# Key-value interface
# ---------------------------------------------------------------------------


class JsonDocumentStore:
    """Path-keyed JSON documents under *root*, with the locking contract above.

    Keys are relative POSIX paths (``features/x/tasks/01-a/status.json``).
    Anything that offers the same methods can stand in for this store.
    """

    def __init__(self, root: str | Path, lock_options: LockOptions | None = None) -> None:
        self.root = Path(root)
        self.lock_options = lock_options or LockOptions()

    def path_for(self, key: str) -> Path:
        root = self.root.resolve()
        path = (root / key).resolve()
        if path != root and root not in path.parents:
            raise ValueError(f"Key escapes the store root: {key!r}")
        return path

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()

    def read(self, key: str) -> dict[str, Any] | None:
        return read_json(self.path_for(key))

    def write(self, key: str, document: Mapping[str, Any]) -> None:
        write_json_locked(self.path_for(key), document, self.lock_options)

    def patch(
        self,
        key: str,
        patch: Mapping[str, Any],
        default: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        return patch_json_locked(self.path_for(key), patch, self.lock_options, default)

    async def patch_async(
        self,
        key: str,
        patch: Mapping[str, Any],
        default: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        return await patch_json_locked_async(
            self.path_for(key), patch, self.lock_options, default
        )

    def update(
        self,
        key: str,
        build_patch: Callable[[dict[str, Any] | None], Mapping[str, Any]],
    ) -> dict[str, Any]:
        return update_json_locked(self.path_for(key), build_patch, self.lock_options)

    def lock(self, key: str) -> contextlib.AbstractContextManager[LockHandle]:
        return locked(self.path_for(key), self.lock_options)

    def read_text(self, key: str) -> str | None:
        return read_text(self.path_for(key))

    def write_text(self, key: str, content: str) -> Path:
        path = self.path_for(key)
        write_atomic(path, content)
        return path

    def delete(self, key: str) -> bool:
        """Delete a document or a whole subtree. Returns False if absent."""
        path = self.path_for(key)
        if not path.exists():
            return False
        if path.is_dir():
            shutil.rmtree(path)
            return True
        with locked(path, self.lock_options):
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        return True

    def keys(self, pattern: str) -> list[str]:
        """Sorted keys matching a glob *pattern* relative to the root."""
        if not self.root.exists():
            return []
        root = self.root.resolve()
        return sorted(
            path.relative_to(root).as_posix()
            for path in root.glob(pattern)
            if path.is_file() and not path.name.endswith(LOCK_SUFFIX)
        )

    def children(self, key: str) -> list[str]:
        """Sorted names of the directories directly under *key*."""
        path = self.path_for(key)
        if not path.is_dir():
            return []
        return sorted(entry.name for entry in path.iterdir() if entry.is_dir())
