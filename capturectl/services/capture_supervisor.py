from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from capturectl.config_loader import AppConfig
from capturectl.errors import CaptureError, InterfaceListError, SpawnError
from capturectl.services.capture_controller import STATE_FAILED, CaptureAttempt, CaptureController, CaptureResult
from capturectl.services.process_table import LiveProcessTable
from capturectl.services.registry import DurableRegistry, RegistryRecord
from capturectl.services.stop_coordinator import MECHANISM_NONE, StopCoordinator, StopOutcome
from capturectl.services.worker_client import CaptureRequest, InterfaceListing, list_interfaces, locate_worker

LOGGER = logging.getLogger(__name__)

ARTIFACT_URL_PREFIX = "/captures"


class CaptureSupervisor:
    """Entry point used by the HTTP app and the CLI."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        settings = config.supervisor
        self.capture_root = settings.capture_root
        self.registry = DurableRegistry(settings.registry_path)
        self.table = LiveProcessTable(self.registry)
        self.stopper = StopCoordinator(self.table, self.registry)
        self.controller = CaptureController(
            self.table,
            stop_dir=self.capture_root,
            timeout_grace_seconds=settings.timeout_grace_seconds,
            unlimited_timeout_seconds=settings.unlimited_timeout_seconds,
            kill_grace_seconds=settings.kill_grace_seconds,
            diagnostic_buffer_lines=settings.diagnostic_buffer_lines,
        )

    def artifact_path(self, request: CaptureRequest) -> Path:
        return self.capture_root / request.output

    @staticmethod
    def public_location(request: CaptureRequest) -> str:
        """URL path under which the web app serves the artifact."""
        return f"{ARTIFACT_URL_PREFIX}/{request.output}"

    def _ensure_capture_root(self) -> None:
        try:
            self.capture_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Could not create capture root path=%s reason=%s", self.capture_root, exc, extra={"category": "FILES"})

    def launch_capture(self, request: CaptureRequest) -> CaptureAttempt:
        """Spawn and register the worker; raises SpawnError if no worker executable exists."""
        worker = locate_worker(self._config.worker)
        self._ensure_capture_root()
        artifact = self.artifact_path(request)
        LOGGER.info(
            "Capture requested key=%s iface=%s filter=%s duration=%s promiscuous=%s",
            request.key,
            request.interface_arg,
            request.filter,
            request.duration,
            request.promiscuous,
            extra={"category": "CAPTURE"},
        )
        return self.controller.launch(
            request.key,
            worker,
            request.worker_args(artifact),
            artifact,
            request.duration,
            public_location=self.public_location(request),
        )

    def start_capture(self, request: CaptureRequest) -> CaptureResult:
        try:
            attempt = self.launch_capture(request)
        except SpawnError as exc:
            return self.failed_result(request, exc)
        try:
            return attempt.result()
        except CaptureError as exc:
            return self.failed_result(request, exc)

    @staticmethod
    def failed_result(request: CaptureRequest, error: CaptureError) -> CaptureResult:
        return CaptureResult(key=request.key, success=False, message=str(error), outcome=STATE_FAILED, error=error)

    def request_stop(self, key: str) -> StopOutcome:
        return self.stopper.stop(key)

    def stop_active(self) -> StopOutcome:
        """Stop every known capture, live or persisted, one key at a time."""
        keys = list(dict.fromkeys(self.table.list() + self.registry.keys()))
        if not keys:
            return StopOutcome("", False, MECHANISM_NONE, "No active captures running.")
        outcomes = [self.stopper.stop(key) for key in keys]
        success = any(o.success for o in outcomes)
        return StopOutcome("", success, "bulk", f"Stop signal sent for {len(keys)} active capture(s).")

    def stop_all(self) -> int:
        return self.stopper.stop_all()

    def list_active_keys(self) -> List[str]:
        return self.table.list()

    def list_persisted(self) -> List[RegistryRecord]:
        return self.registry.load()

    def list_interfaces(self) -> InterfaceListing:
        try:
            worker = locate_worker(self._config.worker)
        except SpawnError as exc:
            raise InterfaceListError(str(exc)) from exc
        return list_interfaces(worker, self._config.worker.list_interfaces_timeout_seconds)

    def resolve_artifact(self, filename: str) -> Optional[Path]:
        root = self.capture_root.resolve()
        target = (root / filename).resolve()
        if target.parent != root or target.name.startswith("."):
            return None
        if not target.is_file():
            return None
        return target
