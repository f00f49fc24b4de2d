from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from capturectl.config_loader import WorkerSettings
from capturectl.errors import InterfaceListError, SpawnError
from capturectl.utils import find_executable, run_subprocess

LOGGER = logging.getLogger(__name__)

LIST_INTERFACES_FLAG = "--list-interfaces"
AUTO_INTERFACE = "auto"
FILTER_MODES = ("both", "ipv4", "ipv6", "icmp", "bgp")
WORKER_NOT_FOUND_MESSAGE = "Sniffer executable not found. Build the C++ project first."


class CaptureRequest(BaseModel):
    """Parameters of one capture, in the worker's positional argument order."""

    output: str = "packet_capture.csv"
    iface: str = ""
    filter: str = "both"
    duration: int = 10
    promiscuous: str = "on"

    @field_validator("output", mode="before")
    @classmethod
    def validate_output(cls, value: object) -> str:
        text = str(value if value is not None else "").strip()
        if not text:
            raise ValueError("output filename is required")
        if "/" in text or "\\" in text or Path(text).name != text:
            raise ValueError("output must be a file name, not a path")
        if text.startswith("."):
            raise ValueError("output must not start with '.'")
        return text

    @field_validator("iface", mode="before")
    @classmethod
    def normalize_iface(cls, value: object) -> str:
        return str(value).strip() if value is not None else ""

    @field_validator("filter", mode="before")
    @classmethod
    def normalize_filter(cls, value: object) -> str:
        text = str(value).strip().lower() if value is not None else ""
        if text in ("", "all"):
            return "both"
        if text not in FILTER_MODES:
            raise ValueError(f"filter must be one of {', '.join(FILTER_MODES)}")
        return text

    @field_validator("duration")
    @classmethod
    def validate_duration(cls, value: int) -> int:
        if value < 0:
            raise ValueError("duration cannot be negative (0 means until stopped)")
        return value

    @field_validator("promiscuous", mode="before")
    @classmethod
    def normalize_promiscuous(cls, value: object) -> str:
        if value is False or str(value).strip().lower() == "off":
            return "off"
        return "on"

    @property
    def key(self) -> str:
        return self.output

    @property
    def interface_arg(self) -> str:
        return self.iface or AUTO_INTERFACE

    def worker_args(self, output_path: Path) -> List[str]:
        # The stop-signal path is appended by the controller as the last argument.
        return [str(output_path), self.interface_arg, self.filter, str(self.duration), self.promiscuous]


class NetworkInterface(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    description: str = ""
    is_up: bool = Field(default=False, alias="isUp")
    has_addresses: bool = Field(default=False, alias="hasAddresses")
    is_loopback: bool = Field(default=False, alias="isLoopback")

    @field_validator("id", "name", "description", mode="before")
    @classmethod
    def coerce_text(cls, value: object) -> object:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


@dataclass
class InterfaceListing:
    success: bool
    interfaces: List[NetworkInterface] = field(default_factory=list)
    message: str = ""


def locate_worker(settings: WorkerSettings) -> Path:
    worker = find_executable(settings.candidates())
    if worker is None:
        LOGGER.error("Worker executable not found candidates=%s", settings.candidates(), extra={"category": "ERRORS"})
        raise SpawnError(WORKER_NOT_FOUND_MESSAGE)
    return worker


def parse_interface_listing(stdout: str) -> InterfaceListing:
    trimmed = (stdout or "").strip()
    try:
        data = json.loads(trimmed)
    except ValueError as exc:
        LOGGER.error(
            "Interface list is not JSON head=%r tail=%r",
            trimmed[:500],
            trimmed[-500:],
            extra={"category": "INTERFACES"},
        )
        raise InterfaceListError(f"Failed to parse interface list: {exc}") from exc
    if not isinstance(data, dict):
        raise InterfaceListError("Failed to parse interface list: expected a JSON object")

    if not data.get("success"):
        message = str(data.get("error") or "Failed to list interfaces")
        LOGGER.warning("Worker reported interface listing failure error=%s", message, extra={"category": "INTERFACES"})
        return InterfaceListing(success=False, message=message)

    raw_interfaces = data.get("interfaces")
    if not isinstance(raw_interfaces, list):
        raise InterfaceListError("Failed to parse interface list: 'interfaces' is not a list")

    interfaces: List[NetworkInterface] = []
    for item in raw_interfaces:
        try:
            interfaces.append(NetworkInterface.model_validate(item))
        except ValidationError as exc:
            LOGGER.warning(
                "Dropping malformed interface entry entry=%r errors=%s",
                item,
                exc.error_count(),
                extra={"category": "INTERFACES"},
            )
    LOGGER.info(
        "Parsed interfaces count=%s dropped=%s",
        len(interfaces),
        len(raw_interfaces) - len(interfaces),
        extra={"category": "INTERFACES"},
    )
    return InterfaceListing(success=True, interfaces=interfaces)


def list_interfaces(worker: Path, timeout_seconds: float = 5.0) -> InterfaceListing:
    cmd = [str(worker), LIST_INTERFACES_FLAG]
    try:
        proc = run_subprocess(cmd, timeout=timeout_seconds)
    except subprocess.TimeoutExpired as exc:
        LOGGER.error("Interface listing timed out worker=%s timeout=%s", worker, timeout_seconds, extra={"category": "ERRORS"})
        raise InterfaceListError("Timeout waiting for interface list") from exc
    except OSError as exc:
        LOGGER.error("Interface listing could not start worker=%s reason=%s", worker, exc, extra={"category": "ERRORS"})
        raise InterfaceListError(f"Failed to list interfaces: {exc}") from exc

    if proc.stderr:
        LOGGER.debug("Interface listing stderr=%s", proc.stderr[:500], extra={"category": "WORKER"})
    if proc.returncode != 0:
        LOGGER.error("Interface listing failed worker=%s exit_code=%s", worker, proc.returncode, extra={"category": "ERRORS"})
        raise InterfaceListError(f"Failed to list interfaces (exit code {proc.returncode})")
    return parse_interface_listing(proc.stdout)
