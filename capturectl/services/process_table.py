from __future__ import annotations

import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from capturectl.services.registry import DurableRegistry
from capturectl.utils import terminate_process

LOGGER = logging.getLogger(__name__)


@dataclass
class LiveEntry:
    handle: subprocess.Popen
    stop_path: Optional[Path]
    registered_at: float = field(default_factory=time.time)

    @property
    def pid(self) -> int:
        return self.handle.pid


class LiveProcessTable:
    """
    In-memory key -> worker handle table, mirrored into the durable registry.

    Authoritative while this process lives; the registry is what survives it.
    """

    def __init__(self, registry: DurableRegistry) -> None:
        self._registry = registry
        self._entries: Dict[str, LiveEntry] = {}
        self._lock = threading.Lock()

    @property
    def registry(self) -> DurableRegistry:
        return self._registry

    def register(self, key: str, handle: subprocess.Popen, stop_path: Optional[Path]) -> None:
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None and existing.handle is not handle and existing.handle.poll() is None:
                LOGGER.warning(
                    "Superseding live capture key=%s old_pid=%s new_pid=%s",
                    key,
                    existing.pid,
                    handle.pid,
                    extra={"category": "CAPTURE"},
                )
                if not terminate_process(existing.handle):
                    LOGGER.warning("Could not terminate superseded capture key=%s", key, extra={"category": "STOP"})
            self._entries[key] = LiveEntry(handle=handle, stop_path=stop_path)
            self._registry.upsert(key, handle.pid, stop_path)
        LOGGER.info(
            "Registered capture key=%s pid=%s stop_file=%s",
            key,
            handle.pid,
            stop_path or "-",
            extra={"category": "CAPTURE"},
        )

    def remove(self, key: str, handle: Optional[subprocess.Popen] = None) -> bool:
        """
        Drop key from the table and the registry. Safe to call repeatedly.

        When handle is given, only an entry owned by that handle is removed;
        returns False if a newer attempt has taken over the key.
        """
        with self._lock:
            entry = self._entries.get(key)
            if handle is not None and entry is not None and entry.handle is not handle:
                LOGGER.info(
                    "Skipping removal of superseded capture key=%s stale_pid=%s live_pid=%s",
                    key,
                    handle.pid,
                    entry.pid,
                    extra={"category": "CAPTURE"},
                )
                return False
            self._entries.pop(key, None)
            if handle is not None and entry is None:
                record = self._registry.find(key)
                if record is not None and record.pid != handle.pid:
                    return False
            self._registry.remove(key)
        if entry is not None:
            LOGGER.info("Removed capture key=%s pid=%s", key, entry.pid, extra={"category": "CAPTURE"})
        return True

    def get(self, key: str) -> Optional[LiveEntry]:
        with self._lock:
            return self._entries.get(key)

    def list(self) -> List[str]:  # noqa: A003
        with self._lock:
            return list(self._entries.keys())

    def is_active(self, key: str) -> bool:
        with self._lock:
            return key in self._entries
