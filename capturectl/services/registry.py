from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from capturectl.errors import RegistryIOError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistryRecord:
    key: str
    pid: int
    stop_file: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "pid": self.pid, "stopFile": self.stop_file}

    @classmethod
    def from_dict(cls, data: object) -> Optional["RegistryRecord"]:
        if not isinstance(data, dict):
            return None
        key = data.get("key")
        pid = data.get("pid")
        if not isinstance(key, str) or not key:
            return None
        if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
            return None
        stop_file = data.get("stopFile")
        if not isinstance(stop_file, str) or not stop_file.strip():
            stop_file = None
        return cls(key=key, pid=pid, stop_file=stop_file)


class DurableRegistry:
    """
    Last-known set of supervised workers, persisted as a JSON array.

    The file survives supervisor restarts so a later process can still find
    a worker's pid and stop-signal path. Reads and writes are best-effort:
    failures are logged and treated as an empty registry / a skipped write.
    Mutations are read-modify-write of the whole file under one lock.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def _read_records(self) -> List[RegistryRecord]:
        if not self._path.exists():
            return []
        try:
            raw = self._path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw.strip() else []
        except (OSError, ValueError) as exc:
            raise RegistryIOError(f"Could not read registry {self._path}: {exc}") from exc
        if not isinstance(data, list):
            raise RegistryIOError(f"Registry {self._path} does not hold a JSON array")
        records: Dict[str, RegistryRecord] = {}
        for item in data:
            record = RegistryRecord.from_dict(item)
            if record is None:
                LOGGER.warning("Skipping malformed registry entry entry=%r", item, extra={"category": "REGISTRY"})
                continue
            records[record.key] = record
        return list(records.values())

    def _write_records(self, records: Iterable[RegistryRecord]) -> None:
        payload = [r.to_dict() for r in records]
        tmp = self._path.with_name(f"{self._path.name}.{os.getpid()}.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            tmp.replace(self._path)
        except OSError as exc:
            try:
                tmp.unlink()
            except OSError:
                pass
            raise RegistryIOError(f"Could not write registry {self._path}: {exc}") from exc

    def load(self) -> List[RegistryRecord]:
        with self._lock:
            try:
                return self._read_records()
            except RegistryIOError as exc:
                LOGGER.warning("Registry load failed, treating as empty reason=%s", exc, extra={"category": "REGISTRY"})
                return []

    def save(self, records: Iterable[RegistryRecord]) -> bool:
        records = list(records)
        with self._lock:
            try:
                self._write_records(records)
            except RegistryIOError as exc:
                LOGGER.warning("Registry save failed reason=%s", exc, extra={"category": "REGISTRY"})
                return False
        LOGGER.debug("Registry saved path=%s records=%s", self._path, len(records), extra={"category": "REGISTRY"})
        return True

    def upsert(self, key: str, pid: int, stop_path: Optional[Path | str]) -> bool:
        record = RegistryRecord(key=key, pid=int(pid), stop_file=str(stop_path) if stop_path else None)
        with self._lock:
            records = [r for r in self.load() if r.key != key]
            records.append(record)
            saved = self.save(records)
        LOGGER.info(
            "Registry upsert key=%s pid=%s stop_file=%s saved=%s",
            key,
            record.pid,
            record.stop_file or "-",
            saved,
            extra={"category": "REGISTRY"},
        )
        return saved

    def remove(self, key: str) -> bool:
        with self._lock:
            current = self.load()
            records = [r for r in current if r.key != key]
            if len(records) == len(current):
                return True
            saved = self.save(records)
        LOGGER.info("Registry remove key=%s saved=%s", key, saved, extra={"category": "REGISTRY"})
        return saved

    def find(self, key: str) -> Optional[RegistryRecord]:
        for record in self.load():
            if record.key == key:
                return record
        return None

    def keys(self) -> List[str]:
        return [r.key for r in self.load()]

    def clear(self) -> bool:
        LOGGER.info("Registry cleared path=%s", self._path, extra={"category": "REGISTRY"})
        return self.save([])
