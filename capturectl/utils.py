from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import time
from pathlib import Path
from typing import Iterable, Optional

LOGGER = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")
_DOT_RUNS = re.compile(r"\.{2,}")


def sanitize_key(key: str) -> str:
    """Reduce a capture key to a filename-safe fragment."""
    base = Path(str(key)).name
    return _DOT_RUNS.sub(".", _UNSAFE_NAME_CHARS.sub("_", base))


def ensure_dir(path: Path) -> None:
    LOGGER.debug("Ensuring parent directory exists path=%s", path.parent, extra={"category": "FILES"})
    path.parent.mkdir(parents=True, exist_ok=True)


def remove_file_quietly(path: Optional[Path]) -> bool:
    if path is None:
        return False
    try:
        path.unlink()
        LOGGER.debug("Removed file path=%s", path, extra={"category": "FILES"})
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        LOGGER.warning("Could not remove file path=%s reason=%s", path, exc, extra={"category": "FILES"})
        return False


def find_executable(candidates: Iterable[Path]) -> Optional[Path]:
    checked = []
    for candidate in candidates:
        exists = candidate.is_file()
        checked.append(f"{candidate}={'found' if exists else 'missing'}")
        if exists:
            LOGGER.debug("Executable candidates checked=%s", checked, extra={"category": "CONFIG"})
            return candidate
    LOGGER.debug("Executable candidates checked=%s", checked, extra={"category": "CONFIG"})
    return None


def terminate_process(proc: subprocess.Popen, force_after_seconds: Optional[float] = None) -> bool:
    """
    Send SIGTERM to a child process.

    With force_after_seconds set, wait that long for the exit and escalate to
    SIGKILL. Returns False when the signal could not be delivered.
    """
    if proc.poll() is not None:
        return False
    try:
        proc.terminate()
    except OSError as exc:
        LOGGER.warning("Terminate failed pid=%s reason=%s", proc.pid, exc, extra={"category": "STOP"})
        return False
    LOGGER.info("Sent SIGTERM pid=%s", proc.pid, extra={"category": "STOP"})
    if force_after_seconds is None:
        return True
    deadline = time.time() + max(0.0, float(force_after_seconds))
    while time.time() < deadline:
        if proc.poll() is not None:
            return True
        time.sleep(0.05)
    if proc.poll() is None:
        try:
            proc.kill()
            LOGGER.warning("Escalated to SIGKILL pid=%s", proc.pid, extra={"category": "STOP"})
        except OSError:
            pass
    return True


def signal_pid(pid: int, sig: int = signal.SIGTERM) -> bool:
    """Signal a process we hold no handle for; False if it is gone or not ours."""
    try:
        os.kill(int(pid), sig)
    except OSError as exc:
        LOGGER.info("Signal not delivered pid=%s signal=%s reason=%s", pid, sig, exc, extra={"category": "STOP"})
        return False
    LOGGER.info("Signal delivered pid=%s signal=%s", pid, sig, extra={"category": "STOP"})
    return True


def run_subprocess(cmd: list[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess[str]:
    LOGGER.debug("Executing subprocess cmd=%s timeout=%s", cmd, timeout, extra={"category": "PERF"})
    proc = subprocess.run(cmd, capture_output=True, text=True, errors="replace", timeout=timeout)
    LOGGER.debug(
        "Subprocess completed cmd=%s returncode=%s stdout_len=%s stderr_len=%s",
        cmd,
        proc.returncode,
        len(proc.stdout or ""),
        len(proc.stderr or ""),
        extra={"category": "PERF"},
    )
    return proc
