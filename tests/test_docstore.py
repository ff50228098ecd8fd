"""Tests for the locked JSON document store."""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path

import pytest

from hive import docstore
from hive.docstore import (
    UNSET,
    DocumentError,
    JsonDocumentStore,
    LockOptions,
    LockTimeout,
    PatchOp,
    acquire_lock,
    acquire_lock_async,
    classify_patch_value,
    deep_merge,
    get_lock_path,
    locked,
    locked_async,
    patch_json_locked,
    patch_json_locked_async,
    read_json,
    update_json_locked,
    write_atomic,
    write_json_atomic,
    write_json_locked_async,
)

QUICK = LockOptions(timeout=0.2, retry_interval=0.01, stale_lock_ttl=30.0)

# lock markers ("pid\nhost\n") left by writers on other machines
FOREIGN_MARKER = "4242\nbuild-box-2\n"
LIVE_MARKER = "5151\nbuild-box-3\n"


def _age(path: Path, seconds: float) -> None:
    past = time.time() - seconds
    os.utime(path, (past, past))


# -- locking --


def test_lock_path_is_colocated(tmp_path):
    doc = tmp_path / "status.json"
    assert get_lock_path(doc) == tmp_path / "status.json.lock"


def test_acquire_creates_and_release_removes_lock(tmp_path):
    doc = tmp_path / "status.json"
    handle = acquire_lock(doc, QUICK)
    lock_path = get_lock_path(doc)
    assert handle.lock_path == lock_path
    assert lock_path.read_text().splitlines()[0] == str(os.getpid())

    handle.release()
    assert handle.released
    assert not lock_path.exists()


def test_release_is_idempotent(tmp_path):
    doc = tmp_path / "status.json"
    handle = acquire_lock(doc, QUICK)
    handle.release()
    other = acquire_lock(doc, QUICK)
    # a second release of the first handle must not drop the new owner's lock
    handle.release()
    assert get_lock_path(doc).exists()
    other.release()


def test_second_acquire_times_out_while_held(tmp_path):
    doc = tmp_path / "status.json"
    with locked(doc, QUICK):
        started = time.monotonic()
        with pytest.raises(LockTimeout) as excinfo:
            acquire_lock(doc, QUICK)
        assert time.monotonic() - started >= QUICK.timeout
    assert "retry" in str(excinfo.value)
    assert excinfo.value.path == str(doc)
    assert isinstance(excinfo.value, TimeoutError)


def test_lock_released_when_block_raises(tmp_path):
    doc = tmp_path / "status.json"
    with pytest.raises(RuntimeError), locked(doc, QUICK):
        raise RuntimeError("boom")
    assert not get_lock_path(doc).exists()


def test_stale_lock_is_broken(tmp_path, caplog):
    doc = tmp_path / "status.json"
    lock_path = get_lock_path(doc)
    lock_path.write_text(FOREIGN_MARKER)
    _age(lock_path, 60)

    options = LockOptions(timeout=0.5, retry_interval=0.01, stale_lock_ttl=1.0)
    with caplog.at_level("WARNING", logger="hive.docstore"):
        handle = acquire_lock(doc, options)
    assert lock_path.read_text() != FOREIGN_MARKER
    assert "Broke stale lock" in caplog.text
    handle.release()
    # nothing left behind from the rename-aside or the break guard
    assert list(tmp_path.iterdir()) == []


def test_fresh_foreign_lock_is_not_broken(tmp_path):
    doc = tmp_path / "status.json"
    lock_path = get_lock_path(doc)
    lock_path.write_text(FOREIGN_MARKER)
    with pytest.raises(LockTimeout):
        acquire_lock(doc, QUICK)
    assert lock_path.read_text() == FOREIGN_MARKER


def test_lock_taken_while_breaking_stale_lock_is_restored(tmp_path, monkeypatch):
    doc = tmp_path / "status.json"
    lock_path = get_lock_path(doc)
    lock_path.write_text(FOREIGN_MARKER)
    _age(lock_path, 60)

    real_rename = os.rename

    def rename(src, dst, *args, **kwargs):
        if os.fspath(src) == os.fspath(lock_path) and lock_path.read_text() == FOREIGN_MARKER:
            # the overdue holder releases and another writer acquires in between
            lock_path.unlink()
            lock_path.write_text(LIVE_MARKER)
        return real_rename(src, dst, *args, **kwargs)

    monkeypatch.setattr(os, "rename", rename)
    with pytest.raises(LockTimeout):
        acquire_lock(doc, LockOptions(timeout=0.2, retry_interval=0.01, stale_lock_ttl=1.0))

    assert lock_path.read_text() == LIVE_MARKER
    assert sorted(p.name for p in tmp_path.iterdir()) == ["status.json.lock"]


def test_lock_replaced_after_stale_check_is_left_alone(tmp_path, monkeypatch):
    doc = tmp_path / "status.json"
    lock_path = get_lock_path(doc)
    lock_path.write_text(FOREIGN_MARKER)
    _age(lock_path, 60)

    real_soft_lock = docstore._soft_lock

    def soft_lock(path):
        if path.name.endswith(".break.lock") and lock_path.read_text() == FOREIGN_MARKER:
            lock_path.unlink()
            lock_path.write_text(LIVE_MARKER)
        return real_soft_lock(path)

    monkeypatch.setattr(docstore, "_soft_lock", soft_lock)
    assert docstore._break_stale_lock(lock_path, stale_lock_ttl=1.0) is False
    assert lock_path.read_text() == LIVE_MARKER


def test_release_after_takeover_keeps_new_owner(tmp_path, caplog):
    doc = tmp_path / "status.json"
    handle = acquire_lock(doc, QUICK)
    lock_path = get_lock_path(doc)
    lock_path.unlink()
    lock_path.write_text(LIVE_MARKER)

    with caplog.at_level("WARNING", logger="hive.docstore"):
        handle.release()
    assert lock_path.read_text() == LIVE_MARKER
    assert "taken over" in caplog.text


def test_lock_options_validation():
    with pytest.raises(ValueError):
        LockOptions(timeout=-1)
    with pytest.raises(ValueError):
        LockOptions(retry_interval=0)
    with pytest.raises(ValueError):
        LockOptions(stale_lock_ttl=0)


def test_acquire_lock_async_waits_for_release(tmp_path):
    doc = tmp_path / "status.json"

    async def scenario() -> list[str]:
        order: list[str] = []
        first = await acquire_lock_async(doc, QUICK)

        async def contender() -> None:
            handle = await acquire_lock_async(doc, LockOptions(timeout=2.0, retry_interval=0.01))
            order.append("second")
            handle.release()

        task = asyncio.create_task(contender())
        await asyncio.sleep(0.05)
        order.append("first")
        first.release()
        await task
        return order

    assert asyncio.run(scenario()) == ["first", "second"]


def test_acquire_lock_async_times_out(tmp_path):
    doc = tmp_path / "status.json"

    async def scenario() -> None:
        async with locked_async(doc, QUICK):
            await acquire_lock_async(doc, QUICK)

    with pytest.raises(LockTimeout):
        asyncio.run(scenario())
    assert not get_lock_path(doc).exists()


# -- atomic writes --


def test_write_atomic_creates_parents_and_leaves_no_temp_files(tmp_path):
    target = tmp_path / "a" / "b" / "doc.txt"
    write_atomic(target, "hello")
    assert target.read_text() == "hello"
    assert [p.name for p in target.parent.iterdir()] == ["doc.txt"]


def test_write_atomic_failure_keeps_old_content(tmp_path, monkeypatch):
    target = tmp_path / "doc.txt"
    target.write_text("old")

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(OSError, match="disk full"):
        write_atomic(target, "new")
    assert target.read_text() == "old"
    assert [p.name for p in tmp_path.iterdir()] == ["doc.txt"]


def test_read_json_missing_returns_none(tmp_path):
    assert read_json(tmp_path / "nope.json") is None


def test_read_json_rejects_corrupt_and_non_object(tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(DocumentError, match="Invalid JSON"):
        read_json(bad)
    bad.write_text("[1, 2]")
    with pytest.raises(DocumentError, match="JSON object"):
        read_json(bad)


def test_write_json_atomic_format(tmp_path):
    target = tmp_path / "doc.json"
    write_json_atomic(target, {"b": 1, "a": "ü"})
    assert target.read_text(encoding="utf-8") == '{\n  "b": 1,\n  "a": "ü"\n}\n'


# -- deep merge --


def test_deep_merge_merges_nested_objects():
    assert deep_merge({"a": 1, "b": {"c": 2}}, {"b": {"d": 3}}) == {"a": 1, "b": {"c": 2, "d": 3}}


def test_deep_merge_replaces_arrays():
    assert deep_merge({"arr": [1, 2, 3]}, {"arr": [1]}) == {"arr": [1]}


def test_deep_merge_null_overwrites_and_unset_leaves():
    merged = deep_merge({"a": 1, "b": 2}, {"a": None, "b": UNSET})
    assert merged == {"a": None, "b": 2}


def test_deep_merge_strips_unset_from_new_objects():
    merged = deep_merge({}, {"session": {"id": "s1", "attempt": UNSET}})
    assert merged == {"session": {"id": "s1"}}


def test_deep_merge_does_not_mutate_inputs():
    target = {"nested": {"x": [1]}}
    patch = {"nested": {"y": 2}}
    merged = deep_merge(target, patch)
    merged["nested"]["x"].append(99)
    assert target == {"nested": {"x": [1]}}
    assert patch == {"nested": {"y": 2}}


def test_deep_merge_object_replaces_scalar():
    assert deep_merge({"a": 1}, {"a": {"b": 2}}) == {"a": {"b": 2}}


@pytest.mark.parametrize(
    ("current", "value", "expected"),
    [
        ({"x": 1}, {"y": 2}, PatchOp.MERGE),
        (1, {"y": 2}, PatchOp.REPLACE),
        ([1], [2], PatchOp.REPLACE),
        ("a", None, PatchOp.SET_NULL),
        ("a", UNSET, PatchOp.LEAVE),
    ],
)
def test_classify_patch_value(current, value, expected):
    assert classify_patch_value(current, value) is expected


def test_unset_is_a_falsy_singleton():
    assert not UNSET
    assert repr(UNSET) == "UNSET"
    assert type(UNSET)() is UNSET


# -- read-modify-write --


def test_patch_json_locked_uses_default_for_missing_document(tmp_path):
    doc = tmp_path / "doc.json"
    merged = patch_json_locked(doc, {"b": 2}, QUICK, default={"a": 1})
    assert merged == {"a": 1, "b": 2}
    assert read_json(doc) == {"a": 1, "b": 2}
    assert not get_lock_path(doc).exists()


def test_patch_json_locked_times_out_when_held(tmp_path):
    doc = tmp_path / "doc.json"
    write_json_atomic(doc, {"a": 1})
    with locked(doc, QUICK), pytest.raises(LockTimeout):
        patch_json_locked(doc, {"a": 2}, QUICK)
    assert read_json(doc) == {"a": 1}


def test_update_json_locked_sees_current_document(tmp_path):
    doc = tmp_path / "doc.json"
    write_json_atomic(doc, {"count": 1})
    merged = update_json_locked(doc, lambda current: {"count": current["count"] + 1}, QUICK)
    assert merged == {"count": 2}


def test_update_json_locked_abort_writes_nothing(tmp_path):
    doc = tmp_path / "doc.json"
    write_json_atomic(doc, {"count": 1})

    def refuse(current):
        raise LookupError("no")

    with pytest.raises(LookupError):
        update_json_locked(doc, refuse, QUICK)
    assert read_json(doc) == {"count": 1}
    assert not get_lock_path(doc).exists()


def test_async_patch_and_write(tmp_path):
    doc = tmp_path / "doc.json"

    async def scenario() -> dict:
        await write_json_locked_async(doc, {"a": {"b": 1}}, QUICK)
        return await patch_json_locked_async(doc, {"a": {"c": 2}}, QUICK)

    assert asyncio.run(scenario()) == {"a": {"b": 1, "c": 2}}


# -- key-value store --


def test_store_round_trip_and_keys(tmp_path):
    store = JsonDocumentStore(tmp_path / ".hive", QUICK)
    store.write("features/a/feature.json", {"name": "a"})
    store.write("features/b/feature.json", {"name": "b"})
    store.write_text("features/a/plan.md", "# plan\n")

    assert store.exists("features/a/feature.json")
    assert store.read("features/a/feature.json") == {"name": "a"}
    assert store.read("features/zzz/feature.json") is None
    assert store.keys("features/*/feature.json") == [
        "features/a/feature.json",
        "features/b/feature.json",
    ]
    assert store.children("features") == ["a", "b"]
    assert store.children("missing") == []
    assert store.read_text("features/a/plan.md") == "# plan\n"


def test_store_keys_skip_lock_files(tmp_path):
    store = JsonDocumentStore(tmp_path / ".hive", QUICK)
    store.write("docs/a.json", {})
    with store.lock("docs/a.json"):
        assert store.keys("docs/*") == ["docs/a.json"]


def test_store_keys_on_missing_root(tmp_path):
    assert JsonDocumentStore(tmp_path / "absent").keys("**/*.json") == []


def test_store_patch_and_update(tmp_path):
    store = JsonDocumentStore(tmp_path / ".hive", QUICK)
    store.write("doc.json", {"a": 1, "nested": {"x": 1}})
    assert store.patch("doc.json", {"nested": {"y": 2}}) == {"a": 1, "nested": {"x": 1, "y": 2}}
    updated = store.update("doc.json", lambda current: {"a": current["a"] + 1})
    assert updated["a"] == 2


def test_store_patch_async_merges_under_lock(tmp_path):
    store = JsonDocumentStore(tmp_path / ".hive", QUICK)
    store.write("doc.json", {"session": {"id": "s1"}})

    async def scenario() -> dict:
        return await store.patch_async("doc.json", {"session": {"attempt": 2, "id": UNSET}})

    assert asyncio.run(scenario()) == {"session": {"id": "s1", "attempt": 2}}
    assert store.read("doc.json") == {"session": {"id": "s1", "attempt": 2}}
    assert not get_lock_path(store.path_for("doc.json")).exists()


def test_store_patch_async_uses_default(tmp_path):
    store = JsonDocumentStore(tmp_path / ".hive", QUICK)
    merged = asyncio.run(store.patch_async("new.json", {"b": 2}, default={"a": 1}))
    assert merged == {"a": 1, "b": 2}


def test_store_delete_file_and_tree(tmp_path):
    store = JsonDocumentStore(tmp_path / ".hive", QUICK)
    store.write("t/01-a/status.json", {"status": "pending"})
    store.write_text("t/01-a/spec.md", "spec")

    assert store.delete("t/01-a/spec.md") is True
    assert store.delete("t/01-a/spec.md") is False
    assert store.delete("t/01-a") is True
    assert not store.exists("t/01-a")


def test_store_rejects_keys_outside_root(tmp_path):
    store = JsonDocumentStore(tmp_path / ".hive", QUICK)
    with pytest.raises(ValueError, match="escapes"):
        store.read("../outside.json")
