#!/usr/bin/env python
#
# Copyright (c) 2024-2025, Ryan Galloway (ryan@rsgalloway.com)
#
# Redistribution and use in source and binary forms, with or without
# modification, are permitted provided that the following conditions are met:
#
#  - Redistributions of source code must retain the above copyright notice,
#    this list of conditions and the following disclaimer.
#
#  - Redistributions in binary form must reproduce the above copyright notice,
#    this list of conditions and the following disclaimer in the documentation
#    and/or other materials provided with the distribution.
#
#  - Neither the name of the software nor the names of its contributors
#    may be used to endorse or promote products derived from this software
#    without specific prior written permission.
#
# THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS IS"
# AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED TO, THE
# IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR PURPOSE
# ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT HOLDER OR CONTRIBUTORS BE
# LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL, EXEMPLARY, OR
# CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED TO, PROCUREMENT OF
# SUBSTITUTE GOODS OR SERVICES; LOSS OF USE, DATA, OR PROFITS; OR BUSINESS
# INTERRUPTION) HOWEVER CAUSED AND ON ANY THEORY OF LIABILITY, WHETHER IN
# CONTRACT, STRICT LIABILITY, OR TORT (INCLUDING NEGLIGENCE OR OTHERWISE)
# ARISING IN ANY WAY OUT OF THE USE OF THIS SOFTWARE, EVEN IF ADVISED OF THE
# POSSIBILITY OF SUCH DAMAGE.
#

__doc__ = """
Contains tests for the manager module.
"""

import concurrent.futures as cf
import json
import threading
import time

import pytest

from jobcache import config
from jobcache.definition import CacheDefinition
from jobcache.digest import raw_digest
from jobcache.errors import TransferError
from jobcache.locks import KeyedLocks
from jobcache.manager import CacheManager
from jobcache.remote import ObjectMetadata, list_summaries, prefix_exists
from jobcache.store import LocalStore
from jobcache.strategy import DirectoryStrategy

BUCKET = "bucket"
JOB = "myrepo/main"
DEPS = [CacheDefinition("deps")]


@pytest.fixture
def store(tmp_path):
    return LocalStore(tmp_path / "remote", page_size=2)


@pytest.fixture
def manager(store):
    with CacheManager(store, BUCKET, prefix="", threshold=4) as manager:
        yield manager


def make_workspace(root, files):
    for relpath, content in files.items():
        p = root / relpath
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(content)
    return root


def test_get_cache_path(store):
    with CacheManager(store, BUCKET, prefix="ci") as manager:
        assert str(manager.get_cache_path(JOB)) == "ci/myrepo/main/cache"


def test_restore_nothing_stored(tmp_path, manager):
    savers = manager.restore(JOB, tmp_path / "ws", DEPS)
    assert len(savers) == 1
    assert savers[0].restored == 0
    assert str(savers[0].key) == "myrepo/main/cache/deps"


def test_round_trip(tmp_path, manager, store):
    ws1 = make_workspace(tmp_path / "ws1", {"deps/a.txt": b"a" * 10, "deps/b.txt": b"b" * 20})
    savers = manager.restore(JOB, ws1, DEPS)
    summary = manager.save(JOB, ws1, savers, max_cache_size=100)

    assert not summary.evicted
    assert summary.caches[0]["saved"] == 2
    assert summary.caches[0]["key"] == "myrepo/main/cache/deps"
    assert manager.history == [summary]

    ws2 = tmp_path / "ws2"
    savers = manager.restore(JOB, ws2, DEPS)
    assert savers[0].restored == 2
    assert (ws2 / "deps" / "a.txt").read_bytes() == b"a" * 10
    assert (ws2 / "deps" / "b.txt").read_bytes() == b"b" * 20


def test_summary_file(tmp_path, manager):
    ws = make_workspace(tmp_path / "ws", {"deps/a.txt": b"a"})
    manager.save(JOB, ws, manager.resolve(JOB, ws, DEPS), max_cache_size=100)

    data = json.loads((ws / config.META_DIR / config.SUMMARY_FILE).read_text())
    assert data["job"] == JOB
    assert data["cache_path"] == "myrepo/main/cache"
    assert data["evicted"] is False
    assert data["caches"][0]["path"] == "deps"
    assert data["finished"]


def test_eviction(tmp_path, manager, store):
    """Test that an oversized cache is deleted, nothing is uploaded, and the
    next restore starts empty."""
    ws = make_workspace(tmp_path / "ws", {"deps/a.txt": b"a" * 100})
    manager.save(JOB, ws, manager.resolve(JOB, ws, DEPS), max_cache_size=100)
    assert prefix_exists(store, BUCKET, "myrepo/main/cache")

    (ws / "deps" / "new.txt").write_bytes(b"new")
    summary = manager.save(JOB, ws, manager.resolve(JOB, ws, DEPS), max_cache_size=0)

    assert summary.evicted
    assert summary.total_size == 100
    assert summary.caches[0]["saved"] == 0
    assert not prefix_exists(store, BUCKET, "myrepo/main/cache")

    savers = manager.restore(JOB, tmp_path / "fresh", DEPS)
    assert savers[0].restored == 0


def test_eviction_failure_propagates(tmp_path, manager, store, mocker):
    ws = make_workspace(tmp_path / "ws", {"deps/a.txt": b"a"})
    manager.save(JOB, ws, manager.resolve(JOB, ws, DEPS), max_cache_size=100)

    mocker.patch.object(store, "delete", side_effect=TransferError("denied"))
    with pytest.raises(TransferError):
        manager.save(JOB, ws, manager.resolve(JOB, ws, DEPS), max_cache_size=0)


def test_digest_sensitivity(tmp_path, manager, store):
    """Test that changing the dependency descriptor misses the cache."""
    definitions = [CacheDefinition("deps", dependency_descriptor="lock.txt")]
    ws = make_workspace(tmp_path / "ws", {"deps/a.txt": b"a", "lock.txt": b"v1"})
    savers = manager.restore(JOB, ws, definitions)
    manager.save(JOB, ws, savers, max_cache_size=100)
    assert str(savers[0].key) == "myrepo/main/cache/deps/" + raw_digest(ws / "lock.txt")

    fresh = make_workspace(tmp_path / "fresh", {"lock.txt": b"v1"})
    assert manager.restore(JOB, fresh, definitions)[0].restored == 1

    changed = make_workspace(tmp_path / "changed", {"lock.txt": b"v2"})
    savers2 = manager.restore(JOB, changed, definitions)
    assert savers2[0].restored == 0
    assert savers2[0].key != savers[0].key


def test_missing_descriptor(tmp_path, store):
    definitions = [CacheDefinition("deps", dependency_descriptor="lock.txt")]
    with CacheManager(store, BUCKET, prefix="") as manager:
        with pytest.raises(FileNotFoundError):
            manager.restore(JOB, tmp_path, definitions)

    with CacheManager(store, BUCKET, prefix="", strict_descriptors=False) as manager:
        savers = manager.restore(JOB, tmp_path, definitions)
        assert str(savers[0].key) == "myrepo/main/cache/deps"


def test_locks_are_held_per_job(tmp_path, store, mocker):
    locks = KeyedLocks()
    hold = mocker.spy(locks, "hold")
    with CacheManager(store, BUCKET, prefix="", locks=locks) as manager:
        ws = make_workspace(tmp_path / "ws", {"deps/a.txt": b"a"})
        savers = manager.restore(JOB, ws, DEPS)
        manager.save(JOB, ws, savers)

    assert [c.args[0] for c in hold.call_args_list] == [
        "myrepo/main/cache",
        "myrepo/main/cache",
    ]
    assert len(locks) == 0


def test_run_saves_after_body(tmp_path, manager, store):
    ws = tmp_path / "ws"

    def build():
        make_workspace(ws, {"deps/built.txt": b"built"})
        return "ok"

    assert manager.run(JOB, ws, DEPS, build, max_cache_size=100) == "ok"
    assert list(list_summaries(store, BUCKET, "myrepo/main/cache")) == [
        "myrepo/main/cache/deps/built.txt"
    ]


def test_run_saves_after_body_failure(tmp_path, manager, store):
    ws = tmp_path / "ws"

    def build():
        make_workspace(ws, {"deps/partial.txt": b"partial"})
        raise RuntimeError("build failed")

    with pytest.raises(RuntimeError, match="build failed"):
        manager.run(JOB, ws, DEPS, build, max_cache_size=100)
    assert prefix_exists(store, BUCKET, "myrepo/main/cache")


def test_run_body_error_wins_over_save_error(tmp_path, manager, mocker):
    mocker.patch.object(manager, "save", side_effect=TransferError("upload failed"))

    def build():
        raise RuntimeError("build failed")

    with pytest.raises(RuntimeError, match="build failed"):
        manager.run(JOB, tmp_path / "ws", DEPS, build)
    assert manager.save.called


def test_run_interrupted_does_not_save(tmp_path, manager, mocker):
    save = mocker.patch.object(manager, "save")

    def build():
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        manager.run(JOB, tmp_path / "ws", DEPS, build)
    assert not save.called


def test_cancel(manager):
    assert not manager.cancel_event.is_set()
    manager.cancel()
    assert manager.cancel_event.is_set()


class SlowStore(LocalStore):
    """Local store whose uploads take a while."""

    def put(self, *args, **kwargs):
        time.sleep(0.2)
        return super().put(*args, **kwargs)


def test_failed_save_does_not_cancel_manager(tmp_path, mocker):
    """Test that an error in the middle of a save only stops that save's
    transfers, and later calls on the same manager still run."""
    store = SlowStore(tmp_path / "remote")
    ws = make_workspace(tmp_path / "ws", {"deps/a.txt": b"a", "deps/b.txt": b"b"})
    mocker.patch.object(
        DirectoryStrategy,
        "metadata",
        side_effect=[ObjectMetadata(size=1), FileNotFoundError("gone")],
    )
    with CacheManager(store, BUCKET, prefix="", threshold=4) as manager:
        with pytest.raises(FileNotFoundError):
            manager.save(JOB, ws, manager.resolve(JOB, ws, DEPS), max_cache_size=100)
        assert not manager.cancel_event.is_set()

        mocker.stopall()
        manager.restore(JOB, tmp_path / "fresh", DEPS)
        summary = manager.save(JOB, ws, manager.resolve(JOB, ws, DEPS), max_cache_size=100)
        assert summary.caches[0]["saved"] >= 1

        savers = manager.restore(JOB, tmp_path / "ws2", DEPS)
        assert savers[0].restored == 2


def record_overlap(mocker):
    """Replace directory saves with a slow stub counting concurrent callers."""
    state = {"active": 0, "max_active": 0, "calls": 0}
    guard = threading.Lock()

    def save(key, base):
        with guard:
            state["active"] += 1
            state["calls"] += 1
            state["max_active"] = max(state["max_active"], state["active"])
        time.sleep(0.2)
        with guard:
            state["active"] -= 1
        return 0

    mocker.patch.object(DirectoryStrategy, "save", side_effect=save)
    return state


def save_in_threads(managers, tmp_path):
    with cf.ThreadPoolExecutor(len(managers)) as executor:
        futures = []
        for i, manager in enumerate(managers):
            ws = make_workspace(tmp_path / f"ws{i}", {"deps/a.txt": b"a"})
            savers = manager.resolve(JOB, ws, DEPS)
            futures.append(executor.submit(manager.save, JOB, ws, savers, 100))
        for future in futures:
            future.result()


def test_concurrent_saves_in_one_process(tmp_path, manager, mocker):
    state = record_overlap(mocker)
    save_in_threads([manager, manager], tmp_path)
    assert state["calls"] == 2
    assert state["max_active"] == 1


def test_concurrent_saves_across_processes(tmp_path, mocker):
    """Test that managers with separate keyed locks, standing in for two
    processes sharing a local store, still save one job at a time."""
    state = record_overlap(mocker)
    remote = tmp_path / "remote"
    with CacheManager(LocalStore(remote), BUCKET, prefix="") as first, CacheManager(
        LocalStore(remote), BUCKET, prefix=""
    ) as second:
        assert first.locks is not second.locks
        save_in_threads([first, second], tmp_path)

    assert state["calls"] == 2
    assert state["max_active"] == 1


def test_hold_takes_store_lock(tmp_path, manager, store, mocker):
    lock = mocker.spy(store, "lock")
    ws = make_workspace(tmp_path / "ws", {"deps/a.txt": b"a"})
    manager.save(JOB, ws, manager.restore(JOB, ws, DEPS))
    assert [c.args for c in lock.call_args_list] == [
        (BUCKET, "myrepo/main/cache"),
        (BUCKET, "myrepo/main/cache"),
    ]
