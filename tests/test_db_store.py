"""Tests for conductor/db/store.py: JSON document store."""

import subprocess
import sys
import textwrap
import threading

import pytest

from conductor.core.exceptions import StoreError
from conductor.db.store import JsonStore, bounded_append

# Holds the store lock, writes the document while holding it, then releases.
OTHER_PROCESS_WRITER = textwrap.dedent("""\
    import fcntl, json, sys, time

    with open(sys.argv[1], "a") as lock:
        fcntl.flock(lock, fcntl.LOCK_EX)
        print("locked", flush=True)
        time.sleep(0.5)
        with open(sys.argv[2], "w", encoding="utf-8") as f:
            json.dump({"cancel_requested": True}, f)
        fcntl.flock(lock, fcntl.LOCK_UN)
""")


class TestBoundedAppend:
    def test_appends_under_limit(self):
        items = [1, 2]
        assert bounded_append(items, 3, limit=5) == [1, 2, 3]

    def test_evicts_oldest_first(self):
        items = [1, 2, 3]
        bounded_append(items, 4, limit=3)
        assert items == [2, 3, 4]

    def test_evicts_everything_over_limit(self):
        items = list(range(10))
        bounded_append(items, 10, limit=2)
        assert items == [9, 10]

    def test_rejects_non_positive_limit(self):
        with pytest.raises(ValueError):
            bounded_append([], 1, limit=0)


class TestJsonStore:
    def test_missing_file_returns_default(self, tmp_path):
        store = JsonStore(tmp_path / "state.json", default=lambda: {"runs": []})
        assert store.read() == {"runs": []}

    def test_write_then_read(self, tmp_path):
        store = JsonStore(tmp_path / "nested" / "state.json")
        store.write({"a": 1})
        assert store.read() == {"a": 1}
        assert JsonStore(tmp_path / "nested" / "state.json").read() == {"a": 1}

    def test_update_returns_mutator_result(self, tmp_path):
        store = JsonStore(tmp_path / "state.json")

        def _add(doc):
            doc["count"] = doc.get("count", 0) + 1
            return doc["count"]

        assert store.update(_add) == 1
        assert store.update(_add) == 2
        assert store.read() == {"count": 2}

    def test_failed_update_writes_nothing(self, tmp_path):
        store = JsonStore(tmp_path / "state.json")
        store.write({"keep": True})

        def _boom(doc):
            doc["keep"] = False
            raise RuntimeError("mutation failed")

        with pytest.raises(RuntimeError):
            store.update(_boom)
        assert store.read() == {"keep": True}

    def test_corrupt_file_raises_store_error(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StoreError, match="Corrupt state file"):
            JsonStore(path).read()

    def test_empty_file_is_default(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("  \n", encoding="utf-8")
        assert JsonStore(path).read() == {}

    def test_no_temp_files_left_behind(self, tmp_path):
        store = JsonStore(tmp_path / "state.json")
        for i in range(5):
            store.write({"i": i})
        assert sorted(p.name for p in tmp_path.iterdir()) == ["state.json", "state.json.lock"]

    def test_concurrent_updates_are_serialized(self, tmp_path):
        store = JsonStore(tmp_path / "state.json")

        def _bump(doc):
            doc["n"] = doc.get("n", 0) + 1

        threads = [threading.Thread(target=lambda: [store.update(_bump) for _ in range(20)]) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.read()["n"] == 100

    def test_nested_updates_reenter(self, tmp_path):
        store = JsonStore(tmp_path / "state.json")

        def _outer(doc):
            store.update(lambda inner: inner.setdefault("inner", True))
            doc["outer"] = True

        store.update(_outer)
        assert store.read() == {"outer": True}

    def test_updates_serialize_across_instances(self, tmp_path):
        path = tmp_path / "runs.json"
        worker, operator = JsonStore(path), JsonStore(path)
        flag = threading.Thread(target=lambda: operator.update(lambda d: d.__setitem__("cancel_requested", True)))

        def _slow_status_write(doc):
            flag.start()
            flag.join(timeout=0.3)
            doc["status"] = "executing"
            return flag.is_alive()

        assert worker.update(_slow_status_write) is True
        flag.join(timeout=5)
        assert worker.read() == {"cancel_requested": True, "status": "executing"}

    def test_waits_for_writer_in_another_process(self, tmp_path):
        path = tmp_path / "runs.json"
        store = JsonStore(path)
        other = subprocess.Popen(
            [sys.executable, "-c", OTHER_PROCESS_WRITER, str(store.lock_path), str(path)],
            stdout=subprocess.PIPE,
            text=True,
        )
        try:
            assert other.stdout.readline().strip() == "locked"
            store.update(lambda d: d.__setitem__("status", "executing"))
        finally:
            other.wait(timeout=10)
            other.stdout.close()
        assert store.read() == {"cancel_requested": True, "status": "executing"}
