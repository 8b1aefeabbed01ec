from __future__ import annotations

import threading
import time

import pytest

from nerdy_k8s_repo_controller.locks import LockMode, RepoLocker

_WAIT_SECONDS = 5.0


def _start(target) -> threading.Thread:
    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread


def test_exclusive_holds_on_same_name_never_overlap() -> None:
    locker = RepoLocker()
    state = {"active": 0, "max_active": 0}
    state_lock = threading.Lock()

    def critical_section() -> None:
        for _ in range(20):
            with locker.exclusive("repo-a"):
                with state_lock:
                    state["active"] += 1
                    state["max_active"] = max(state["max_active"], state["active"])
                time.sleep(0.001)
                with state_lock:
                    state["active"] -= 1

    threads = [_start(critical_section) for _ in range(6)]
    for thread in threads:
        thread.join(timeout=_WAIT_SECONDS)

    assert all(not thread.is_alive() for thread in threads)
    assert state["max_active"] == 1


def test_shared_holds_on_same_name_run_concurrently() -> None:
    locker = RepoLocker()
    barrier = threading.Barrier(3, timeout=_WAIT_SECONDS)
    errors: list[Exception] = []

    def reader() -> None:
        with locker.shared("repo-a"):
            try:
                # Only passes if all three readers are inside at once.
                barrier.wait()
            except threading.BrokenBarrierError as error:
                errors.append(error)

    threads = [_start(reader) for _ in range(3)]
    for thread in threads:
        thread.join(timeout=_WAIT_SECONDS)

    assert errors == []


def test_exclusive_waits_until_all_shared_holders_release() -> None:
    locker = RepoLocker()
    acquired = threading.Event()
    locker.lock("repo-a")
    locker.lock("repo-a")

    def writer() -> None:
        with locker.exclusive("repo-a"):
            acquired.set()

    thread = _start(writer)
    locker.unlock("repo-a")
    assert not acquired.wait(0.1)

    locker.unlock("repo-a")
    assert acquired.wait(_WAIT_SECONDS)
    thread.join(timeout=_WAIT_SECONDS)


def test_exclusive_hold_blocks_new_shared_holders_until_release() -> None:
    locker = RepoLocker()
    acquired = threading.Event()
    locker.lock_exclusive("repo-a")

    def reader() -> None:
        with locker.shared("repo-a"):
            acquired.set()

    thread = _start(reader)
    assert not acquired.wait(0.1)

    locker.unlock_exclusive("repo-a")
    assert acquired.wait(_WAIT_SECONDS)
    thread.join(timeout=_WAIT_SECONDS)


def test_waiting_exclusive_request_blocks_later_shared_requests() -> None:
    locker = RepoLocker()
    order: list[str] = []
    writer_waiting = threading.Event()
    locker.lock("repo-a")

    def writer() -> None:
        writer_waiting.set()
        with locker.exclusive("repo-a"):
            order.append("writer")

    def late_reader() -> None:
        with locker.shared("repo-a"):
            order.append("reader")

    writer_thread = _start(writer)
    writer_waiting.wait(_WAIT_SECONDS)
    time.sleep(0.05)
    reader_thread = _start(late_reader)
    time.sleep(0.05)
    assert order == []

    locker.unlock("repo-a")
    writer_thread.join(timeout=_WAIT_SECONDS)
    reader_thread.join(timeout=_WAIT_SECONDS)

    assert order == ["writer", "reader"]


def test_exclusive_hold_on_one_name_does_not_block_other_names() -> None:
    locker = RepoLocker()
    acquired = threading.Event()
    locker.lock_exclusive("repo-a")

    def other_writer() -> None:
        with locker.exclusive("repo-b"):
            acquired.set()

    thread = _start(other_writer)
    try:
        assert acquired.wait(_WAIT_SECONDS)
    finally:
        locker.unlock_exclusive("repo-a")
        thread.join(timeout=_WAIT_SECONDS)


def test_hold_releases_lock_when_body_raises() -> None:
    locker = RepoLocker()

    with pytest.raises(ValueError):
        with locker.hold("repo-a", LockMode.EXCLUSIVE):
            raise ValueError("boom")

    acquired = threading.Event()
    thread = _start(lambda: (locker.lock_exclusive("repo-a"), acquired.set()))
    assert acquired.wait(_WAIT_SECONDS)
    thread.join(timeout=_WAIT_SECONDS)


def test_unlock_without_hold_raises_runtime_error() -> None:
    locker = RepoLocker()

    with pytest.raises(RuntimeError):
        locker.unlock("repo-a")
    with pytest.raises(RuntimeError):
        locker.unlock_exclusive("repo-a")


def test_concurrent_first_use_creates_single_entry_per_name() -> None:
    locker = RepoLocker()
    barrier = threading.Barrier(8, timeout=_WAIT_SECONDS)

    def first_use() -> None:
        barrier.wait()
        with locker.shared("fresh-repo"):
            pass

    threads = [_start(first_use) for _ in range(8)]
    for thread in threads:
        thread.join(timeout=_WAIT_SECONDS)

    assert locker.known_names() == ["fresh-repo"]
