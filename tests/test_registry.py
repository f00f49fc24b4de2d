import json
import threading
from pathlib import Path

from capturectl.services.registry import DurableRegistry, RegistryRecord


def test_upsert_find_and_remove(tmp_path: Path) -> None:
    registry = DurableRegistry(tmp_path / "public" / ".captures.json")

    assert registry.upsert("a.csv", 101, tmp_path / ".stop-a.signal") is True
    assert registry.upsert("b.csv", 102, None) is True

    record = registry.find("a.csv")
    assert record == RegistryRecord(key="a.csv", pid=101, stop_file=str(tmp_path / ".stop-a.signal"))
    assert registry.find("b.csv").stop_file is None
    assert sorted(registry.keys()) == ["a.csv", "b.csv"]

    assert registry.remove("a.csv") is True
    assert registry.find("a.csv") is None
    assert registry.keys() == ["b.csv"]


def test_concurrent_upserts_of_distinct_keys_all_survive(tmp_path: Path) -> None:
    registry = DurableRegistry(tmp_path / ".captures.json")
    start = threading.Barrier(30)
    results = []

    def upsert(i: int) -> None:
        start.wait()
        results.append(registry.upsert(f"c{i}.csv", 1000 + i, None))

    threads = [threading.Thread(target=upsert, args=(i,)) for i in range(30)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert results == [True] * 30
    assert sorted(registry.keys()) == sorted(f"c{i}.csv" for i in range(30))
    assert {r.key: r.pid for r in DurableRegistry(tmp_path / ".captures.json").load()} == {
        f"c{i}.csv": 1000 + i for i in range(30)
    }


def test_file_layout_is_json_array_of_key_pid_stop_file(tmp_path: Path) -> None:
    path = tmp_path / ".captures.json"
    registry = DurableRegistry(path)
    registry.upsert("a.csv", 101, "/tmp/.stop-a.signal")

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data == [{"key": "a.csv", "pid": 101, "stopFile": "/tmp/.stop-a.signal"}]


def test_upsert_replaces_existing_key(tmp_path: Path) -> None:
    registry = DurableRegistry(tmp_path / ".captures.json")
    registry.upsert("a.csv", 101, None)
    registry.upsert("a.csv", 202, None)

    records = registry.load()
    assert len(records) == 1
    assert records[0].pid == 202


def test_remove_is_idempotent(tmp_path: Path) -> None:
    registry = DurableRegistry(tmp_path / ".captures.json")
    registry.upsert("a.csv", 101, None)
    registry.upsert("b.csv", 102, None)

    assert registry.remove("a.csv") is True
    once = registry.load()
    assert registry.remove("a.csv") is True
    assert registry.load() == once


def test_missing_file_loads_empty(tmp_path: Path) -> None:
    registry = DurableRegistry(tmp_path / "nope" / ".captures.json")
    assert registry.load() == []
    assert registry.find("a.csv") is None


def test_corrupt_file_loads_empty_and_is_rewritten(tmp_path: Path) -> None:
    path = tmp_path / ".captures.json"
    path.write_text("{not json", encoding="utf-8")
    registry = DurableRegistry(path)

    assert registry.load() == []
    assert registry.upsert("a.csv", 101, None) is True
    assert [r.key for r in registry.load()] == ["a.csv"]


def test_non_array_document_loads_empty(tmp_path: Path) -> None:
    path = tmp_path / ".captures.json"
    path.write_text(json.dumps({"key": "a.csv", "pid": 1}), encoding="utf-8")
    assert DurableRegistry(path).load() == []


def test_malformed_entries_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / ".captures.json"
    path.write_text(
        json.dumps(
            [
                {"key": "good.csv", "pid": 10, "stopFile": "/tmp/.stop-good.signal"},
                {"key": "", "pid": 11},
                {"key": "nopid.csv"},
                {"key": "boolpid.csv", "pid": True},
                "garbage",
                {"key": "blank-stop.csv", "pid": 12, "stopFile": "  "},
            ]
        ),
        encoding="utf-8",
    )
    records = DurableRegistry(path).load()
    assert [r.key for r in records] == ["good.csv", "blank-stop.csv"]
    assert records[1].stop_file is None


def test_write_failure_is_reported_not_raised(tmp_path: Path) -> None:
    # A directory where the file should be makes both read and replace fail.
    path = tmp_path / ".captures.json"
    path.mkdir()
    registry = DurableRegistry(path)

    assert registry.load() == []
    assert registry.upsert("a.csv", 101, None) is False
    assert registry.clear() is False


def test_clear_empties_registry(tmp_path: Path) -> None:
    registry = DurableRegistry(tmp_path / ".captures.json")
    registry.upsert("a.csv", 101, None)
    registry.upsert("b.csv", 102, None)

    assert registry.clear() is True
    assert registry.load() == []
    assert json.loads((tmp_path / ".captures.json").read_text(encoding="utf-8")) == []


def test_record_from_dict_round_trip() -> None:
    record = RegistryRecord(key="a.csv", pid=5, stop_file="/x/.stop.signal")
    assert RegistryRecord.from_dict(record.to_dict()) == record
    assert RegistryRecord.from_dict(["a.csv", 5]) is None
