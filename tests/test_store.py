"""Tests for the store: build handles, commit/abort, the index and GC."""

import os
import threading

import pytest

from dervish.errors import AlreadyBuilding, AlreadyValid, IntegrityError, StoreError
from dervish.hash import sha256
from dervish.store import BuildHandle, EntryStatus, Store, StoreEntry
from dervish.store_path import make_fixed_output_id


def _id(name="thing", content=b"x"):
    return make_fixed_output_id(name, sha256(content))


@pytest.fixture
def store(tmp_path):
    with Store(tmp_path / "root") as s:
        yield s


def _build(store, store_id, text="data", references=()):
    handle = store.begin_build(store_id)
    handle.staging_path.write_text(text)
    return store.commit(handle, references=references)


def test_commit_makes_entry_valid(store):
    store_id = _id()
    assert store.lookup(store_id) is None
    entry = _build(store, store_id, "hello")
    assert entry == StoreEntry(store_id, store.path_of(store_id), EntryStatus.VALID)
    assert entry.path.read_text() == "hello"
    assert not os.access(entry.path, os.W_OK) or os.geteuid() == 0
    assert store.lookup(store_id) == entry


def test_staging_path_is_not_visible(store):
    store_id = _id()
    handle = store.begin_build(store_id)
    handle.staging_path.write_text("partial")
    assert store.lookup(store_id) is None
    assert not store.path_of(store_id).exists()
    store.abort(handle)


def test_abort_discards_everything(store):
    store_id = _id()
    handle = store.begin_build(store_id)
    handle.staging_path.mkdir()
    (handle.staging_path / "f").write_text("partial")
    store.abort(handle)
    assert not handle.staging_path.exists()
    assert store.lookup(store_id) is None
    assert handle.status is EntryStatus.FAILED
    # Aborting twice is harmless, and the id can be built again.
    store.abort(handle)
    assert _build(store, store_id).path.exists()


def test_second_begin_build_raises(store):
    store_id = _id()
    handle = store.begin_build(store_id)
    with pytest.raises(AlreadyBuilding):
        store.begin_build(store_id)
    store.abort(handle)


def test_begin_build_on_valid_raises(store):
    store_id = _id()
    _build(store, store_id)
    with pytest.raises(AlreadyValid) as info:
        store.begin_build(store_id)
    assert info.value.entry.id == store_id


def test_other_store_instance_sees_lock(tmp_path):
    """Two stores on one root (as two processes would) exclude each other."""
    with Store(tmp_path) as a, Store(tmp_path) as b:
        store_id = _id()
        handle = a.begin_build(store_id)
        with pytest.raises(AlreadyBuilding):
            b.begin_build(store_id)
        handle.staging_path.write_text("done")
        a.commit(handle)
        assert b.lookup(store_id) is not None


def test_commit_of_closed_handle_fails(store):
    store_id = _id()
    handle = store.begin_build(store_id)
    store.abort(handle)
    with pytest.raises(StoreError):
        store.commit(handle)


def test_commit_without_output_aborts(store):
    store_id = _id()
    handle = store.begin_build(store_id)
    with pytest.raises(StoreError, match="nothing to commit"):
        store.commit(handle)
    assert handle.closed
    assert store.lookup(store_id) is None


def test_commit_from_other_path(store, tmp_path):
    store_id = _id()
    handle = store.begin_build(store_id)
    src = tmp_path / "built"
    src.write_text("elsewhere")
    entry = store.commit(handle, path=src)
    assert entry.path.read_text() == "elsewhere"
    assert not src.exists()


def test_claim_waits_for_concurrent_build(store):
    """A waiter blocks until the build commits, then gets the entry."""
    store_id = _id()
    handle = store.claim(store_id)
    assert isinstance(handle, BuildHandle)
    results = []
    waiter = threading.Thread(target=lambda: results.append(store.claim(store_id)))
    waiter.start()
    waiter.join(0.2)
    assert waiter.is_alive()
    handle.staging_path.write_text("built once")
    store.commit(handle)
    waiter.join(5)
    assert results and isinstance(results[0], StoreEntry)


def test_claim_after_abort_returns_new_handle(store):
    store_id = _id()
    handle = store.claim(store_id)
    results = []
    waiter = threading.Thread(target=lambda: results.append(store.claim(store_id)))
    waiter.start()
    store.abort(handle)
    waiter.join(5)
    assert isinstance(results[0], BuildHandle)
    store.abort(results[0])


def test_stale_building_entry_purged_on_open(tmp_path):
    """A build left behind by a dead process is purged on the next open."""
    store_id = _id()
    crashed = Store(tmp_path)
    handle = crashed.begin_build(store_id)
    handle.staging_path.write_text("half")
    # Simulate the process dying: the lock goes away, nothing is cleaned up.
    os.close(handle._lock_fd)
    crashed._in_flight.clear()
    crashed._conn.close()
    crashed._conn = None

    with Store(tmp_path) as store:
        assert not handle.staging_path.exists()
        assert store.lookup(store_id) is None
        assert isinstance(store.claim(store_id), BuildHandle)


def test_valid_entries_survive_reopen(tmp_path):
    store_id = _id()
    with Store(tmp_path) as store:
        _build(store, store_id, "kept")
    with Store(tmp_path) as store:
        assert store.lookup(store_id).path.read_text() == "kept"


def test_register_derivation(store):
    store_id = _id("pkg")
    path = store.register_derivation(store_id, "Derive(a)")
    assert path.read_text() == "Derive(a)"
    store.register_derivation(store_id, "Derive(a)")
    assert store.derivation_text(store_id) == "Derive(a)"
    with pytest.raises(IntegrityError):
        store.register_derivation(store_id, "Derive(b)")


def test_references_and_gc(store):
    lib = _id("lib")
    app = _id("app")
    junk = _id("junk")
    _build(store, lib)
    _build(store, app, references=[lib])
    _build(store, junk)
    store.add_root(app)

    assert store.references(app) == [lib]
    assert store.referrers(lib) == [app]
    assert store.refcount(lib) == 1
    assert store.refcount(app) == 1

    assert store.collect_garbage() == [junk]
    assert sorted(store.valid_ids()) == sorted([app, lib])

    store.remove_root(app)
    removed = store.collect_garbage()
    assert removed == [app, lib]
    assert store.valid_ids() == []
    assert not store.path_of(lib).exists()


def test_gc_refuses_during_build(store):
    handle = store.begin_build(_id())
    with pytest.raises(StoreError):
        store.collect_garbage()
    store.abort(handle)
