from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from capturectl.errors import StopTargetNotFoundError
from capturectl.services.process_table import LiveProcessTable
from capturectl.services.registry import DurableRegistry
from capturectl.utils import ensure_dir, signal_pid, terminate_process

LOGGER = logging.getLogger(__name__)

MECHANISM_SIGNAL = "signal"
MECHANISM_HANDLE = "handle"
MECHANISM_PID = "pid"
MECHANISM_NONE = "none"


@dataclass
class StopOutcome:
    key: str
    success: bool
    mechanism: str
    message: str


class StopCoordinator:
    """
    Stops a capture by key, gentlest mechanism first.

    1. write the worker's stop-signal file (the worker polls it and exits)
    2. SIGTERM the live handle held by this process
    3. SIGTERM the pid persisted in the registry (the handle was lost in a restart)

    Nothing here waits for the worker to exit; the controller that launched it
    observes the exit and cleans up.
    """

    def __init__(self, table: LiveProcessTable, registry: Optional[DurableRegistry] = None) -> None:
        self._table = table
        self._registry = registry or table.registry

    def resolve_stop_path(self, key: str) -> Optional[Path]:
        entry = self._table.get(key)
        if entry is not None and entry.stop_path:
            return Path(entry.stop_path)
        record = self._registry.find(key)
        if record is not None and record.stop_file:
            return Path(record.stop_file)
        return None

    def signal_stop(self, key: str) -> bool:
        stop_path = self.resolve_stop_path(key)
        if stop_path is None:
            return False
        try:
            ensure_dir(stop_path)
            stop_path.write_text(str(int(time.time() * 1000)), encoding="utf-8")
        except OSError as exc:
            LOGGER.warning("Stop signal write failed key=%s path=%s reason=%s", key, stop_path, exc, extra={"category": "STOP"})
            return False
        LOGGER.info("Stop signal written key=%s path=%s", key, stop_path, extra={"category": "STOP"})
        return True

    def force_kill(self, key: str) -> bool:
        entry = self._table.get(key)
        if entry is None:
            return False
        try:
            if entry.handle.poll() is not None:
                LOGGER.info("Live capture already exited key=%s pid=%s", key, entry.pid, extra={"category": "STOP"})
                return True
            return terminate_process(entry.handle)
        except OSError as exc:
            LOGGER.warning("Force kill failed key=%s pid=%s reason=%s", key, entry.pid, exc, extra={"category": "STOP"})
            return False
        finally:
            self._table.remove(key, entry.handle)

    def kill_persisted(self, key: str) -> bool:
        record = self._registry.find(key)
        if record is None:
            return False
        if signal_pid(record.pid):
            self._registry.remove(key)
            LOGGER.info("Stopped persisted capture key=%s pid=%s", key, record.pid, extra={"category": "STOP"})
            return True
        LOGGER.warning(
            "Persisted capture pid is gone, dropping stale record key=%s pid=%s",
            key,
            record.pid,
            extra={"category": "STOP"},
        )
        self._registry.remove(key)
        return False

    def stop(self, key: str) -> StopOutcome:
        LOGGER.info("Stop requested key=%s", key, extra={"category": "STOP"})
        if self.signal_stop(key):
            return StopOutcome(key, True, MECHANISM_SIGNAL, f"Stop signal sent for {key}")
        if self.force_kill(key):
            return StopOutcome(key, True, MECHANISM_HANDLE, f"Stopped capture for {key}")
        if self.kill_persisted(key):
            return StopOutcome(key, True, MECHANISM_PID, f"Stopped capture for {key}")
        not_found = StopTargetNotFoundError(key)
        LOGGER.info("Nothing to stop key=%s", key, extra={"category": "STOP"})
        return StopOutcome(key, False, MECHANISM_NONE, str(not_found))

    def request_stop(self, key: str) -> bool:
        return self.stop(key).success

    def stop_all(self) -> int:
        count = 0
        for key in self._table.list():
            if self.signal_stop(key) or self.force_kill(key):
                count += 1
        self._registry.clear()
        LOGGER.info("Stop all completed stopped=%s", count, extra={"category": "STOP"})
        return count
