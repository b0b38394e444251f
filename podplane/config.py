"""Configuration management for the pod provisioning service."""
from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from .database import resolve_database_path
from .ports import DEFAULT_CLAIM_ATTEMPTS, DEFAULT_PORT_RANGE_END, DEFAULT_PORT_RANGE_START
from .templates import (
    DEFAULT_NAMESPACE,
    DEFAULT_PUBLIC_HOST,
    DEFAULT_STORAGE_CLASS,
    DEFAULT_STORAGE_SIZE,
)

ENV_PREFIX = "PODPLANE_"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Expected a boolean value, got {value!r}")


def _optional_path(value: object) -> Optional[Path]:
    if value is None or str(value).strip() == "":
        return None
    return Path(str(value)).expanduser().resolve(strict=False)


def _optional_str(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the orchestrator and its collaborators."""

    db_path: Path
    namespace: str = DEFAULT_NAMESPACE
    port_range_start: int = DEFAULT_PORT_RANGE_START
    port_range_end: int = DEFAULT_PORT_RANGE_END
    port_claim_attempts: int = DEFAULT_CLAIM_ATTEMPTS
    public_host: str = DEFAULT_PUBLIC_HOST
    template_dir: Optional[Path] = None
    storage_class: str = DEFAULT_STORAGE_CLASS
    storage_size: str = DEFAULT_STORAGE_SIZE
    creation_timeout: float = 300.0
    workers: int = 4
    retry_attempts: int = 3
    retry_backoff: float = 0.5
    kubeconfig: Optional[str] = None
    kube_context: Optional[str] = None
    skip_tls_verify: bool = False

    def __post_init__(self) -> None:
        if self.port_range_start > self.port_range_end:
            raise ValueError("port_range_start must not exceed port_range_end")
        if self.creation_timeout <= 0:
            raise ValueError("creation_timeout must be positive")
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if not self.namespace.strip():
            raise ValueError("namespace must not be empty")

    @staticmethod
    def from_dict(data: Mapping[str, object], *, db_path: Optional[Path] = None) -> "Settings":
        """Create :class:`Settings` from raw configuration values."""

        known = {item.name for item in fields(Settings)}
        unknown = set(data.keys()) - known
        if unknown:
            raise ValueError(f"Unknown configuration fields: {', '.join(sorted(unknown))}")

        values: Dict[str, object] = {}
        for key in ("namespace", "public_host", "storage_class", "storage_size"):
            if data.get(key) is not None:
                values[key] = str(data[key]).strip()
        for key in ("port_range_start", "port_range_end", "port_claim_attempts", "workers", "retry_attempts"):
            if data.get(key) is not None:
                values[key] = int(data[key])  # type: ignore[arg-type]
        for key in ("creation_timeout", "retry_backoff"):
            if data.get(key) is not None:
                values[key] = float(data[key])  # type: ignore[arg-type]
        if data.get("skip_tls_verify") is not None:
            values["skip_tls_verify"] = _parse_bool(data["skip_tls_verify"])
        if "template_dir" in data:
            values["template_dir"] = _optional_path(data["template_dir"])
        for key in ("kubeconfig", "kube_context"):
            if key in data:
                values[key] = _optional_str(data[key])

        resolved_db = db_path or resolve_database_path(_optional_str(data.get("db_path")))
        return Settings(db_path=resolved_db, **values)  # type: ignore[arg-type]


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the optional YAML configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "podplane.yaml").resolve(strict=False)
    return candidate


def _read_config_file(config_path: Path) -> Dict[str, object]:
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping")
    section = raw.get("podplane", raw)
    if not isinstance(section, dict):
        raise ValueError("The 'podplane' configuration section must be a mapping")
    return dict(section)


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, object]:
    overrides: Dict[str, object] = {}
    for item in fields(Settings):
        key = ENV_PREFIX + item.name.upper()
        if key in environ:
            overrides[item.name] = environ[key]
    return overrides


def load_settings(
    config_path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from the YAML file (if present) overlaid with environment variables."""

    env = os.environ if environ is None else environ
    path = config_path or resolve_config_path(env.get(ENV_PREFIX + "CONFIG"))

    data: Dict[str, object] = {}
    if path.is_file():
        data.update(_read_config_file(path))
    elif config_path is not None:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    data.update(_env_overrides(env))
    return Settings.from_dict(data)


__all__ = ["ENV_PREFIX", "Settings", "load_settings", "resolve_config_path"]
