import asyncio

import pytest

from hostblock.atomic_file import AtomicFile


def commit(store: AtomicFile, data: bytes) -> None:
    async def scenario():
        handle = await store.start_write()
        await handle.write(data)
        await store.finish_write(handle)
    asyncio.run(scenario())


def read(store: AtomicFile) -> bytes:
    with store.open_read() as f:
        return f.read()


def test_open_read_before_any_commit(tmp_path):
    store = AtomicFile(tmp_path / "list.txt")
    assert not store.exists()
    assert store.last_modified() is None
    with pytest.raises(FileNotFoundError):
        store.open_read()


def test_finish_write_replaces_committed_version(tmp_path):
    store = AtomicFile(tmp_path / "list.txt")
    commit(store, b"old.example.com\n")
    commit(store, b"new.example.com\n")

    assert read(store) == b"new.example.com\n"
    assert not store.work_path.exists()


def test_write_is_invisible_until_committed(tmp_path):
    store = AtomicFile(tmp_path / "list.txt")
    commit(store, b"old.example.com\n")

    async def scenario():
        handle = await store.start_write()
        await handle.write(b"half-written")
        await handle.flush()
        assert read(store) == b"old.example.com\n"
        await store.finish_write(handle)

    asyncio.run(scenario())
    assert read(store) == b"half-written"


def test_fail_write_keeps_committed_version(tmp_path):
    store = AtomicFile(tmp_path / "list.txt")
    commit(store, b"old.example.com\n")

    async def scenario():
        handle = await store.start_write()
        await handle.write(b"garbage")
        await store.fail_write(handle)

    asyncio.run(scenario())
    assert read(store) == b"old.example.com\n"
    assert not store.work_path.exists()


def test_crash_between_start_and_finish(tmp_path):
    store = AtomicFile(tmp_path / "list.txt")
    commit(store, b"old.example.com\n")

    async def crashed_writer():
        handle = await store.start_write()
        await handle.write(b"partial")
        await handle.close()  # process dies here, nothing else runs

    asyncio.run(crashed_writer())
    assert store.work_path.exists()
    assert read(store) == b"old.example.com\n"

    # The next writer discards the stale work file
    commit(store, b"fresh.example.com\n")
    assert read(store) == b"fresh.example.com\n"
    assert not store.work_path.exists()


def test_set_last_modified(tmp_path):
    store = AtomicFile(tmp_path / "list.txt")
    assert store.set_last_modified(1704067200.0) is False
    commit(store, b"x\n")
    assert store.set_last_modified(1704067200.0) is True
    assert store.last_modified() == 1704067200.0
