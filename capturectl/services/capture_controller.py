from __future__ import annotations

import collections
import logging
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Callable, Deque, List, Optional, Sequence

from capturectl.errors import ArtifactMissingError, CaptureError, SpawnError, WorkerExitError
from capturectl.logging_setup import log_context, short_uuid
from capturectl.services.process_table import LiveProcessTable
from capturectl.utils import remove_file_quietly, sanitize_key, terminate_process

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_GRACE_SECONDS = 5.0
DEFAULT_UNLIMITED_TIMEOUT_SECONDS = 24 * 60 * 60.0
DEFAULT_KILL_GRACE_SECONDS = 2.0
DEFAULT_DIAGNOSTIC_BUFFER_LINES = 200
READER_JOIN_SECONDS = 1.0

STATE_SPAWNING = "spawning"
STATE_RUNNING = "running"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"
STATE_TERMINATED = "terminated"
STATE_CLEANED_UP = "cleaned-up"


class OutputBuffer:
    """Keeps the last max_lines lines of a worker stream."""

    def __init__(self, max_lines: int = DEFAULT_DIAGNOSTIC_BUFFER_LINES) -> None:
        self._lines: Deque[str] = collections.deque(maxlen=max(1, int(max_lines)))
        self._lock = threading.Lock()
        self.dropped = 0

    def append(self, line: str) -> None:
        with self._lock:
            if len(self._lines) == self._lines.maxlen:
                self.dropped += 1
            self._lines.append(line)

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def text(self) -> str:
        return "\n".join(self.lines()).strip()


@dataclass
class CaptureResult:
    key: str
    success: bool
    message: str
    outcome: str
    artifact_location: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[CaptureError] = None
    stdout_tail: List[str] = field(default_factory=list)
    stderr_tail: List[str] = field(default_factory=list)


class CaptureAttempt:
    """One run of a worker under a key, from spawn to cleanup."""

    def __init__(
        self,
        key: str,
        artifact_path: Path,
        stop_path: Path,
        public_location: Optional[str] = None,
        buffer_lines: int = DEFAULT_DIAGNOSTIC_BUFFER_LINES,
    ) -> None:
        self.key = key
        self.artifact_path = artifact_path
        self.stop_path = stop_path
        self.public_location = public_location or str(artifact_path)
        self.correlation_id = short_uuid()
        self.started_at = time.time()
        self.state = STATE_SPAWNING
        self.handle: Optional[subprocess.Popen] = None
        self.terminated_by: Optional[str] = None
        self.stdout = OutputBuffer(buffer_lines)
        self.stderr = OutputBuffer(buffer_lines)
        self._result: Optional[CaptureResult] = None
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[CaptureResult], None]] = []

    @property
    def pid(self) -> Optional[int]:
        return self.handle.pid if self.handle is not None else None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> Optional[CaptureResult]:
        """Block until the attempt is cleaned up; None only when timeout expires first."""
        self._done.wait(timeout)
        return self._result

    def result(self) -> CaptureResult:
        result = self.wait()
        if result is None:
            raise CaptureError(f"Capture attempt for {self.key} ended without a result")
        return result

    def add_done_callback(self, fn: Callable[[CaptureResult], None]) -> None:
        """Call fn with the result once the attempt finishes; immediately if it already has."""
        with self._lock:
            if not self._done.is_set():
                self._callbacks.append(fn)
                return
        fn(self._result)

    def _finish(self, result: CaptureResult) -> None:
        with self._lock:
            self._result = result
            self.state = STATE_CLEANED_UP
            self._done.set()
            callbacks, self._callbacks = self._callbacks, []
        for fn in callbacks:
            try:
                fn(result)
            except Exception:
                LOGGER.exception(
                    "Capture done callback failed key=%s",
                    self.key,
                    extra={"category": "ERRORS", "correlation_id": self.correlation_id},
                )


class CaptureController:
    """
    Launches capture workers and turns their exit into a CaptureResult.

    The worker is registered in the live table before launch() returns, so a
    stop request issued afterwards always finds it. Each attempt is waited on
    by its own daemon thread; a safety timeout backstops workers that never
    exit. Cleanup (table entry, registry record, stop file) runs on every exit
    path.
    """

    def __init__(
        self,
        table: LiveProcessTable,
        stop_dir: Path,
        timeout_grace_seconds: float = DEFAULT_TIMEOUT_GRACE_SECONDS,
        unlimited_timeout_seconds: float = DEFAULT_UNLIMITED_TIMEOUT_SECONDS,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        diagnostic_buffer_lines: int = DEFAULT_DIAGNOSTIC_BUFFER_LINES,
    ) -> None:
        self._table = table
        self._stop_dir = Path(stop_dir)
        self._timeout_grace_seconds = float(timeout_grace_seconds)
        self._unlimited_timeout_seconds = float(unlimited_timeout_seconds)
        self._kill_grace_seconds = float(kill_grace_seconds)
        self._diagnostic_buffer_lines = int(diagnostic_buffer_lines)

    def new_stop_path(self, key: str) -> Path:
        stamp = int(time.time() * 1000)
        return self._stop_dir / f".stop-{stamp}-{uuid.uuid4().hex[:12]}-{sanitize_key(key)}.signal"

    def safety_timeout(self, duration_seconds: float) -> float:
        if duration_seconds > 0:
            return float(duration_seconds) + self._timeout_grace_seconds
        return self._unlimited_timeout_seconds

    def start_capture(
        self,
        key: str,
        worker_path: Path,
        args: Sequence[str],
        artifact_path: Path,
        duration_seconds: float,
        public_location: Optional[str] = None,
    ) -> CaptureResult:
        return self.launch(key, worker_path, args, artifact_path, duration_seconds, public_location).result()

    def launch(
        self,
        key: str,
        worker_path: Path,
        args: Sequence[str],
        artifact_path: Path,
        duration_seconds: float,
        public_location: Optional[str] = None,
    ) -> CaptureAttempt:
        stop_path = self.new_stop_path(key)
        remove_file_quietly(stop_path)
        attempt = CaptureAttempt(
            key,
            Path(artifact_path),
            stop_path,
            public_location=public_location,
            buffer_lines=self._diagnostic_buffer_lines,
        )
        log_extra = {"category": "CAPTURE", "correlation_id": attempt.correlation_id}
        cmd = [str(worker_path), *[str(a) for a in args], str(stop_path)]
        LOGGER.info(
            "Launching capture key=%s worker=%s duration=%s stop_file=%s",
            key,
            worker_path,
            duration_seconds,
            stop_path,
            extra=log_extra,
        )
        LOGGER.debug("Capture command args=%s", cmd, extra=log_extra)

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                # Own session: terminal signals aimed at the supervisor do not reach the worker.
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            # ValueError: arguments Popen cannot pass to exec, e.g. an embedded NUL.
            LOGGER.error("Worker failed to start key=%s reason=%s", key, exc, extra={**log_extra, "category": "ERRORS"})
            remove_file_quietly(stop_path)
            error = SpawnError(f"Failed to start sniffer: {exc}")
            attempt._finish(
                CaptureResult(key=key, success=False, message=str(error), outcome=STATE_FAILED, error=error)
            )
            return attempt

        attempt.handle = proc
        try:
            self._table.register(key, proc, stop_path)
            attempt.state = STATE_RUNNING
            readers = [
                self._start_reader(attempt, proc.stdout, attempt.stdout, "stdout"),
                self._start_reader(attempt, proc.stderr, attempt.stderr, "stderr"),
            ]
            timeout_s = self.safety_timeout(duration_seconds)
            watcher = threading.Thread(
                target=self._watch,
                args=(attempt, proc, timeout_s, readers),
                name=f"capture-watch-{sanitize_key(key)}",
                daemon=True,
            )
            watcher.start()
        except BaseException:
            terminate_process(proc)
            self._cleanup(attempt, proc)
            raise
        LOGGER.info(
            "Capture running key=%s pid=%s safety_timeout_s=%s",
            key,
            proc.pid,
            timeout_s,
            extra=log_extra,
        )
        return attempt

    def _start_reader(
        self,
        attempt: CaptureAttempt,
        stream: Optional[IO[str]],
        buffer: OutputBuffer,
        label: str,
    ) -> threading.Thread:
        def _drain() -> None:
            if stream is None:
                return
            extra = {"category": "WORKER", "correlation_id": attempt.correlation_id}
            try:
                for line in iter(stream.readline, ""):
                    text = line.rstrip("\r\n")
                    if not text.strip():
                        continue
                    buffer.append(text)
                    LOGGER.debug("[worker %s] key=%s %s", label, attempt.key, text, extra=extra)
            except (OSError, ValueError) as exc:
                LOGGER.debug("Worker %s stream closed key=%s reason=%s", label, attempt.key, exc, extra=extra)
            finally:
                try:
                    stream.close()
                except OSError:
                    pass
            if buffer.dropped:
                LOGGER.info(
                    "Worker %s output truncated key=%s dropped_lines=%s",
                    label,
                    attempt.key,
                    buffer.dropped,
                    extra=extra,
                )

        reader = threading.Thread(target=_drain, name=f"capture-{label}-{sanitize_key(attempt.key)}", daemon=True)
        reader.start()
        return reader

    def _wait_for_exit(self, attempt: CaptureAttempt, proc: subprocess.Popen, timeout_s: float) -> int:
        try:
            return proc.wait(timeout=timeout_s)
        except subprocess.TimeoutExpired:
            LOGGER.warning(
                "Capture safety timeout reached, terminating key=%s pid=%s timeout_s=%s",
                attempt.key,
                proc.pid,
                timeout_s,
                extra={"category": "CAPTURE", "correlation_id": attempt.correlation_id},
            )
            attempt.terminated_by = "timeout"
            terminate_process(proc, force_after_seconds=self._kill_grace_seconds)
            return proc.wait()

    def _watch(
        self,
        attempt: CaptureAttempt,
        proc: subprocess.Popen,
        timeout_s: float,
        readers: List[threading.Thread],
    ) -> None:
        returncode: Optional[int] = None
        with log_context("CAPTURE", attempt.correlation_id):
            try:
                returncode = self._wait_for_exit(attempt, proc, timeout_s)
                for reader in readers:
                    reader.join(timeout=READER_JOIN_SECONDS)
            finally:
                self._cleanup(attempt, proc)
                attempt._finish(self._safe_classify(attempt, returncode))

    def _safe_classify(self, attempt: CaptureAttempt, returncode: Optional[int]) -> CaptureResult:
        try:
            return self.classify(attempt, returncode)
        except Exception as exc:
            LOGGER.exception(
                "Capture classification failed key=%s exit_code=%s",
                attempt.key,
                returncode,
                extra={"category": "ERRORS", "correlation_id": attempt.correlation_id},
            )
            error = CaptureError(f"Could not determine capture outcome: {exc}")
            return CaptureResult(
                key=attempt.key,
                success=False,
                message=str(error),
                outcome=STATE_FAILED,
                exit_code=returncode,
                error=error,
                stdout_tail=attempt.stdout.lines(),
                stderr_tail=attempt.stderr.lines(),
            )

    def _cleanup(self, attempt: CaptureAttempt, proc: subprocess.Popen) -> None:
        self._table.remove(attempt.key, proc)
        remove_file_quietly(attempt.stop_path)

    def classify(self, attempt: CaptureAttempt, returncode: Optional[int]) -> CaptureResult:
        extra = {"category": "CAPTURE", "correlation_id": attempt.correlation_id}
        stdout_tail = attempt.stdout.lines()
        stderr_tail = attempt.stderr.lines()
        elapsed_ms = int((time.time() - attempt.started_at) * 1000)

        if returncode is None:
            error: CaptureError = CaptureError("Capture supervision ended before the worker exited")
            LOGGER.error("Capture aborted key=%s", attempt.key, extra={**extra, "category": "ERRORS"})
            return CaptureResult(attempt.key, False, str(error), STATE_FAILED, error=error,
                                 stdout_tail=stdout_tail, stderr_tail=stderr_tail)

        # A negative return code is the signal number that killed the worker.
        terminated = returncode < 0 or attempt.terminated_by is not None
        LOGGER.info(
            "Capture process exited key=%s exit_code=%s terminated=%s duration_ms=%s",
            attempt.key,
            returncode,
            terminated,
            elapsed_ms,
            extra=extra,
        )

        if returncode != 0 and not terminated:
            error = WorkerExitError(returncode, attempt.stderr.text())
            LOGGER.error("Capture failed key=%s exit_code=%s", attempt.key, returncode, extra={**extra, "category": "ERRORS"})
            return CaptureResult(attempt.key, False, str(error), STATE_FAILED, exit_code=returncode, error=error,
                                 stdout_tail=stdout_tail, stderr_tail=stderr_tail)

        if not attempt.artifact_path.is_file():
            error = ArtifactMissingError(attempt.artifact_path)
            LOGGER.error(
                "Capture finished without output key=%s artifact=%s",
                attempt.key,
                attempt.artifact_path,
                extra={**extra, "category": "ERRORS"},
            )
            return CaptureResult(attempt.key, False, str(error), STATE_FAILED, exit_code=returncode, error=error,
                                 stdout_tail=stdout_tail, stderr_tail=stderr_tail)

        outcome = STATE_TERMINATED if terminated else STATE_COMPLETED
        LOGGER.info(
            "Capture artifact ready key=%s outcome=%s artifact=%s size_bytes=%s",
            attempt.key,
            outcome,
            attempt.artifact_path,
            attempt.artifact_path.stat().st_size,
            extra={**extra, "category": "FILES"},
        )
        return CaptureResult(
            attempt.key,
            True,
            attempt.public_location,
            outcome,
            artifact_location=attempt.public_location,
            exit_code=returncode,
            stdout_tail=stdout_tail,
            stderr_tail=stderr_tail,
        )
