"""Deterministic concurrency tests for document locking.

Threads exercise the lock protocol inside one process; the multiprocessing
tests check it across real OS processes, which is how hive writers actually
contend.
"""

from __future__ import annotations

import json
import multiprocessing
import threading
import time
from pathlib import Path

import pytest

from hive.docstore import (
    LockOptions,
    acquire_lock,
    get_lock_path,
    read_json,
    update_json_locked,
    write_json_atomic,
)
from hive.tasks import TaskService

CONTENDED = LockOptions(timeout=20.0, retry_interval=0.002, stale_lock_ttl=60.0)


def _join_threads(threads: list[threading.Thread]) -> None:
    for thread in threads:
        thread.join(timeout=30)
        assert not thread.is_alive(), f"Thread {thread.name} did not finish"


def _increment(current: dict | None) -> dict:
    return {"count": (current or {}).get("count", 0) + 1}


def _process_worker(doc: str, rounds: int) -> None:
    for _ in range(rounds):
        update_json_locked(doc, _increment, CONTENDED)


def test_two_threads_cannot_hold_the_same_lock(tmp_path: Path):
    doc = tmp_path / "doc.json"
    barrier = threading.Barrier(2)
    holders = 0
    max_holders = 0
    guard = threading.Lock()
    errors: list[BaseException] = []

    def _worker() -> None:
        nonlocal holders, max_holders
        try:
            barrier.wait(timeout=5)
            for _ in range(20):
                handle = acquire_lock(doc, CONTENDED)
                with guard:
                    holders += 1
                    max_holders = max(max_holders, holders)
                time.sleep(0.001)
                with guard:
                    holders -= 1
                handle.release()
        except BaseException as exc:  # pragma: no cover - assertion helper path
            errors.append(exc)

    threads = [threading.Thread(target=_worker, name=f"lock-{i}") for i in range(2)]
    for thread in threads:
        thread.start()
    _join_threads(threads)

    assert errors == []
    assert max_holders == 1
    assert not get_lock_path(doc).exists()


def test_concurrent_thread_updates_lose_nothing(tmp_path: Path):
    doc = tmp_path / "doc.json"
    workers, rounds = 4, 25
    barrier = threading.Barrier(workers)
    errors: list[BaseException] = []

    def _worker() -> None:
        try:
            barrier.wait(timeout=5)
            for _ in range(rounds):
                update_json_locked(doc, _increment, CONTENDED)
        except BaseException as exc:  # pragma: no cover - assertion helper path
            errors.append(exc)

    threads = [threading.Thread(target=_worker, name=f"inc-{i}") for i in range(workers)]
    for thread in threads:
        thread.start()
    _join_threads(threads)

    assert errors == []
    assert read_json(doc) == {"count": workers * rounds}


def test_readers_never_observe_partial_writes(tmp_path: Path):
    doc = tmp_path / "doc.json"
    small = {"fill": "a"}
    large = {"fill": "b" * 200_000}
    write_json_atomic(doc, small)
    stop = threading.Event()
    bad_reads: list[str] = []

    def _writer() -> None:
        for i in range(60):
            write_json_atomic(doc, large if i % 2 else small)
        stop.set()

    def _reader() -> None:
        while not stop.is_set():
            raw = doc.read_text()
            try:
                value = json.loads(raw)["fill"]
            except (json.JSONDecodeError, KeyError):
                bad_reads.append(raw[:40])
                continue
            if value not in (small["fill"], large["fill"]):
                bad_reads.append(value[:40])

    threads = [
        threading.Thread(target=_writer, name="writer"),
        threading.Thread(target=_reader, name="reader"),
    ]
    for thread in threads:
        thread.start()
    _join_threads(threads)

    assert bad_reads == []


def test_heartbeats_and_completion_do_not_clobber_each_other(project_root: Path):
    service = TaskService(project_root, lock_options=CONTENDED)
    service.create("feat", "Only task")
    task = "01-only-task"
    barrier = threading.Barrier(2)
    errors: list[BaseException] = []

    def _heartbeats() -> None:
        try:
            barrier.wait(timeout=5)
            for n in range(30):
                service.patch_background_fields(
                    "feat",
                    task,
                    {"workerSession": {"messageCount": n}, "status": "pending"},
                )
        except BaseException as exc:  # pragma: no cover - assertion helper path
            errors.append(exc)

    def _complete() -> None:
        try:
            barrier.wait(timeout=5)
            service.update("feat", task, status="done", summary="shipped")
        except BaseException as exc:  # pragma: no cover - assertion helper path
            errors.append(exc)

    threads = [
        threading.Thread(target=_heartbeats, name="heartbeat"),
        threading.Thread(target=_complete, name="complete"),
    ]
    for thread in threads:
        thread.start()
    _join_threads(threads)

    assert errors == []
    status = service.get_raw_status("feat", task)
    assert status["status"] == "done"
    assert status["summary"] == "shipped"
    assert status["workerSession"]["messageCount"] == 29


def test_concurrent_creates_get_distinct_orders(project_root: Path):
    service = TaskService(project_root, lock_options=CONTENDED)
    workers = 6
    barrier = threading.Barrier(workers)
    folders: list[str] = []
    errors: list[BaseException] = []

    def _worker(n: int) -> None:
        try:
            barrier.wait(timeout=5)
            folders.append(service.create("feat", f"Task {n}"))
        except BaseException as exc:  # pragma: no cover - assertion helper path
            errors.append(exc)

    threads = [
        threading.Thread(target=_worker, args=(n,), name=f"create-{n}") for n in range(workers)
    ]
    for thread in threads:
        thread.start()
    _join_threads(threads)

    assert errors == []
    assert sorted(folder[:2] for folder in folders) == ["01", "02", "03", "04", "05", "06"]
    assert sorted(folders) == [t["folder"] for t in service.list("feat")]


def test_concurrent_creates_with_one_order_keep_a_single_winner(project_root: Path):
    service = TaskService(project_root, lock_options=CONTENDED)
    workers = 4
    barrier = threading.Barrier(workers)
    created: list[str] = []
    rejected: list[ValueError] = []

    def _worker() -> None:
        barrier.wait(timeout=5)
        try:
            created.append(service.create("feat", "Hotfix", order=3))
        except ValueError as exc:
            rejected.append(exc)

    threads = [threading.Thread(target=_worker, name=f"create-{n}") for n in range(workers)]
    for thread in threads:
        thread.start()
    _join_threads(threads)

    assert created == ["03-hotfix"]
    assert len(rejected) == workers - 1
    assert all("already used" in str(exc) for exc in rejected)
    assert service.get_raw_status("feat", "03-hotfix")["origin"] == "manual"


@pytest.mark.slow
def test_processes_serialize_updates(tmp_path: Path):
    doc = tmp_path / "doc.json"
    ctx = multiprocessing.get_context("spawn")
    processes = [ctx.Process(target=_process_worker, args=(str(doc), 15)) for _ in range(3)]
    for process in processes:
        process.start()
    for process in processes:
        process.join(timeout=60)
        assert process.exitcode == 0

    assert read_json(doc) == {"count": 45}
    assert not get_lock_path(doc).exists()
