import threading

import pytest

from mytxt.index.engine import Index
from mytxt.index.indexer import build_schema, register_tokenizers
from mytxt.index.store import IndexHandle, IndexStore, StoreState


def make_handle(location) -> IndexHandle:
    index = Index.open_or_create(location, build_schema())
    register_tokenizers(index)
    return IndexHandle(index, index.reader())


def test_new_store_is_absent(store):
    assert store.state is StoreState.ABSENT
    assert store.snapshot() is None


def test_install_makes_store_ready(store, tmp_path):
    handle = make_handle(tmp_path / "a")
    store.install(handle)
    assert store.state is StoreState.READY
    assert store.snapshot() is handle


def test_snapshot_outlives_replacement(store, tmp_path):
    first = make_handle(tmp_path / "a")
    second = make_handle(tmp_path / "b")
    store.install(first)

    taken = store.snapshot()
    store.install(second)

    assert taken is first
    assert store.snapshot() is second
    with taken.reader.searcher() as searcher:
        assert searcher.num_docs() == 0


def test_failed_update_keeps_handle_and_recovers(store, tmp_path, caplog):
    caplog.set_level("WARNING", logger="mytxt")
    handle = make_handle(tmp_path / "a")
    store.install(handle)

    def explode(current):
        raise RuntimeError("fault while holding the store")

    with pytest.raises(RuntimeError):
        store.update(explode)
    assert store.poisoned

    assert store.snapshot() is handle
    assert not store.poisoned
    assert "recovered" in caplog.text


def test_update_sees_current_handle(store, tmp_path):
    handle = make_handle(tmp_path / "a")
    assert store.update(lambda current: current if current is not None else handle) is handle
    other = make_handle(tmp_path / "b")
    assert store.update(lambda current: current if current is not None else other) is handle


def test_concurrent_snapshots_see_whole_handles(store, tmp_path):
    handles = [make_handle(tmp_path / name) for name in ("a", "b")]
    seen = []
    stop = threading.Event()

    def read():
        while not stop.is_set():
            seen.append(store.snapshot())

    reader = threading.Thread(target=read)
    reader.start()
    for _ in range(100):
        for handle in handles:
            store.install(handle)
    stop.set()
    reader.join()

    assert all(item is None or item in handles for item in seen)
