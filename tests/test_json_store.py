"""Tests for the locked JSON document store."""

import json
import os
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from testivai.errors import LedgerCorruptedError, LockTimeoutError, PersistenceError
from testivai.storage.json_store import JsonDocumentStore, _process_alive

# Above the largest pid any supported platform hands out
EXITED_PID = 2**30


class TestRead:
    def test_missing_file_returns_none(self, tmp_path: Path):
        assert JsonDocumentStore(tmp_path / "doc.json").read() is None

    def test_reads_object(self, tmp_path: Path):
        path = tmp_path / "doc.json"
        path.write_text(json.dumps({"a": 1}))
        assert JsonDocumentStore(path).read() == {"a": 1}

    def test_malformed_json_raises_corrupted(self, tmp_path: Path):
        path = tmp_path / "doc.json"
        path.write_text("{not json")
        with pytest.raises(LedgerCorruptedError) as exc_info:
            JsonDocumentStore(path).read()
        assert exc_info.value.path == str(path)
        assert path.read_text() == "{not json"

    def test_non_object_raises_corrupted(self, tmp_path: Path):
        path = tmp_path / "doc.json"
        path.write_text("[1, 2, 3]")
        with pytest.raises(LedgerCorruptedError):
            JsonDocumentStore(path).read()


class TestWrite:
    def test_creates_parent_directories(self, tmp_path: Path):
        path = tmp_path / "a" / "b" / "doc.json"
        JsonDocumentStore(path).write({"x": [1, 2]})
        assert json.loads(path.read_text()) == {"x": [1, 2]}

    def test_leaves_no_temp_files(self, tmp_path: Path):
        store = JsonDocumentStore(tmp_path / "doc.json")
        store.write({"x": 1})
        store.write({"x": 2})
        assert sorted(p.name for p in tmp_path.iterdir()) == ["doc.json"]

    def test_replace_failure_raises_and_keeps_original(self, tmp_path: Path):
        path = tmp_path / "doc.json"
        store = JsonDocumentStore(path)
        store.write({"x": 1})

        with patch("testivai.storage.json_store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceError):
                store.write({"x": 2})

        assert json.loads(path.read_text()) == {"x": 1}
        assert sorted(p.name for p in tmp_path.iterdir()) == ["doc.json"]

    def test_unserialisable_data_raises_persistence_error(self, tmp_path: Path):
        with pytest.raises(PersistenceError):
            JsonDocumentStore(tmp_path / "doc.json").write({"x": object()})


class TestLock:
    def test_lock_file_removed_after_block(self, tmp_path: Path):
        store = JsonDocumentStore(tmp_path / "doc.json")
        with store.lock():
            assert store.lock_path.exists()
        assert not store.lock_path.exists()

    def test_lock_released_on_error(self, tmp_path: Path):
        store = JsonDocumentStore(tmp_path / "doc.json")
        with pytest.raises(RuntimeError):
            with store.lock():
                raise RuntimeError("boom")
        assert not store.lock_path.exists()

    def test_held_lock_times_out(self, tmp_path: Path):
        store = JsonDocumentStore(tmp_path / "doc.json", lock_timeout=0.1, poll_interval=0.01)
        store.lock_path.write_text(str(os.getpid()))

        with pytest.raises(LockTimeoutError) as exc_info:
            with store.lock():
                pass
        assert exc_info.value.lock_path == str(store.lock_path)
        assert isinstance(exc_info.value, PersistenceError)

    def test_lock_left_by_exited_process_is_broken(self, tmp_path: Path):
        store = JsonDocumentStore(tmp_path / "doc.json", lock_timeout=0.1, poll_interval=0.01)
        store.lock_path.write_text(str(EXITED_PID))

        store.mutate(lambda current: {"a": 1})

        assert store.read() == {"a": 1}
        assert not store.lock_path.exists()

    def test_broken_lock_is_taken_over_by_current_process(self, tmp_path: Path):
        store = JsonDocumentStore(tmp_path / "doc.json", lock_timeout=0.1, poll_interval=0.01)
        store.lock_path.write_text(str(EXITED_PID))

        with store.lock():
            assert store.lock_path.read_text() == str(os.getpid())

    def test_lock_without_pid_is_not_broken(self, tmp_path: Path):
        store = JsonDocumentStore(tmp_path / "doc.json", lock_timeout=0.1, poll_interval=0.01)
        store.lock_path.write_text("")

        with pytest.raises(LockTimeoutError):
            with store.lock():
                pass
        assert store.lock_path.exists()


class TestProcessAlive:
    def test_current_process_is_alive(self):
        assert _process_alive(os.getpid()) is True

    def test_exited_process_is_not_alive(self):
        assert _process_alive(EXITED_PID) is False

    def test_uses_psutil(self):
        with patch("testivai.storage.json_store.psutil.pid_exists", return_value=False) as pid_exists:
            assert _process_alive(12345) is False
        pid_exists.assert_called_once_with(12345)

    def test_invalid_pid_is_treated_as_alive(self):
        assert _process_alive(0) is True


class TestMutate:
    def test_passes_none_for_missing_document(self, tmp_path: Path):
        seen = []

        def fn(current):
            seen.append(current)
            return {"count": 1}

        result = JsonDocumentStore(tmp_path / "doc.json").mutate(fn)
        assert seen == [None]
        assert result == {"count": 1}

    def test_concurrent_mutations_are_not_lost(self, tmp_path: Path):
        path = tmp_path / "doc.json"
        store_args = dict(lock_timeout=10.0, poll_interval=0.001)

        def increment(current):
            data = current or {"count": 0}
            data["count"] += 1
            return data

        def worker():
            store = JsonDocumentStore(path, **store_args)
            for _ in range(10):
                store.mutate(increment)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert JsonDocumentStore(path).read() == {"count": 40}
