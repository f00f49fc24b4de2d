"""Capture supervisor error types."""

from __future__ import annotations

from pathlib import Path


class CaptureError(Exception):
    """Base error for capture supervision."""


class SpawnError(CaptureError):
    """Raised when the worker executable is missing or the OS refuses to start it."""


class WorkerExitError(CaptureError):
    """Raised when the worker exits with a real non-zero exit code."""

    def __init__(self, exit_code: int, stderr: str = "") -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"Sniffer exited with exit code {exit_code}. {stderr}".strip())


class ArtifactMissingError(CaptureError):
    """Raised when the worker finished cleanly but produced no output file."""

    def __init__(self, artifact_path: Path) -> None:
        self.artifact_path = artifact_path
        super().__init__("Capture finished but output file not found.")


class StopTargetNotFoundError(CaptureError):
    """Raised when no live or persisted capture exists for a key."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"No active capture found for {key}")


class RegistryIOError(CaptureError):
    """Raised when the durable registry cannot be read or written."""


class InterfaceListError(CaptureError):
    """Raised when the worker cannot produce an interface listing."""
