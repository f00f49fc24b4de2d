from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/capturectl.yaml")
WORKER_BASENAME = "NetworkPacketAnalyzer"


def _default_search_paths() -> List[Path]:
    return [
        Path("build") / "Release" / f"{WORKER_BASENAME}.exe",
        Path("build") / f"{WORKER_BASENAME}.exe",
        Path("build") / WORKER_BASENAME,
    ]


def _optional_path(value: object) -> Optional[Path]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return Path(text).expanduser()


class WorkerSettings(BaseModel):
    executable: Optional[Path] = None
    base_dir: Path = Path(".")
    search_paths: List[Path] = Field(default_factory=_default_search_paths)
    list_interfaces_timeout_seconds: float = 5.0

    @field_validator("executable", mode="before")
    @classmethod
    def normalize_executable(cls, value: object) -> Optional[Path]:
        return _optional_path(value)

    @field_validator("list_interfaces_timeout_seconds")
    @classmethod
    def validate_list_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("list_interfaces_timeout_seconds must be positive")
        return value

    def candidates(self) -> List[Path]:
        if self.executable is not None:
            return [self.executable]
        base = self.base_dir.expanduser()
        return [p if p.is_absolute() else base / p for p in self.search_paths]


class SupervisorSettings(BaseModel):
    capture_root: Path = Path("public")
    registry_filename: str = ".captures.json"
    timeout_grace_seconds: float = 5.0
    unlimited_timeout_seconds: float = 24 * 60 * 60.0
    kill_grace_seconds: float = 2.0
    diagnostic_buffer_lines: int = 200

    @field_validator("capture_root", mode="before")
    @classmethod
    def normalize_capture_root(cls, value: object) -> Path:
        return _optional_path(value) or Path("public")

    @field_validator("registry_filename")
    @classmethod
    def validate_registry_filename(cls, value: str) -> str:
        text = str(value).strip()
        if not text or Path(text).name != text or text in {".", ".."}:
            raise ValueError("registry_filename must be a bare file name")
        return text

    @field_validator("timeout_grace_seconds", "kill_grace_seconds")
    @classmethod
    def validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("grace periods cannot be negative")
        return value

    @field_validator("unlimited_timeout_seconds")
    @classmethod
    def validate_ceiling(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("unlimited_timeout_seconds must be positive")
        return value

    @field_validator("diagnostic_buffer_lines")
    @classmethod
    def validate_buffer(cls, value: int) -> int:
        if value < 1:
            raise ValueError("diagnostic_buffer_lines must be at least 1")
        return value

    @property
    def registry_path(self) -> Path:
        return self.capture_root / self.registry_filename


class AppConfig(BaseModel):
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    supervisor: SupervisorSettings = Field(default_factory=SupervisorSettings)


def load_config(config_path: Path) -> AppConfig:
    LOGGER.info("Loading config path=%s", config_path, extra={"category": "CONFIG"})
    if not config_path.exists():
        raise ValueError(f"Config file not found: {config_path}")

    try:
        parsed = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in config file: {exc}") from exc

    if parsed is None:
        parsed = {}
    if not isinstance(parsed, dict):
        raise ValueError("Configuration root must be a YAML object")

    try:
        cfg = AppConfig.model_validate(parsed)
    except ValidationError as exc:
        LOGGER.error("Config validation failed error=%s", exc, extra={"category": "ERRORS"})
        raise ValueError(f"Invalid configuration: {exc}") from exc
    LOGGER.info(
        "Config loaded capture_root=%s worker=%s",
        cfg.supervisor.capture_root,
        cfg.worker.executable or "search",
        extra={"category": "CONFIG"},
    )
    return cfg


def apply_env_overrides(cfg: AppConfig) -> AppConfig:
    capture_root = os.environ.get("CAPTURECTL_CAPTURE_ROOT", "").strip()
    if capture_root:
        cfg.supervisor.capture_root = Path(capture_root).expanduser()
    worker = os.environ.get("CAPTURECTL_WORKER", "").strip()
    if worker:
        cfg.worker.executable = Path(worker).expanduser()
    return cfg


def load_config_or_default(config_path: Optional[Path] = None) -> AppConfig:
    """Load the configured file, or fall back to defaults when none exists."""
    if config_path is None:
        env_path = os.environ.get("CAPTURECTL_CONFIG", "").strip()
        if env_path:
            config_path = Path(env_path).expanduser()
    if config_path is not None:
        cfg = load_config(config_path)
    elif DEFAULT_CONFIG_PATH.exists():
        cfg = load_config(DEFAULT_CONFIG_PATH)
    else:
        LOGGER.info("No config file found, using defaults", extra={"category": "CONFIG"})
        cfg = AppConfig()
    return apply_env_overrides(cfg)
