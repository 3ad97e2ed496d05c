"""
Modbus connection settings store.

Settings are kept in a small YAML file so they survive restarts. Defaults
come from environment variables; values from the file override them.
The connection manager asks the store for a fresh copy every time it opens
a new connection, so a change only takes effect on the next reconnect.
"""

import os
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from ..logger import get_logger, LogLevel
from .errors import ValidationError


DEFAULT_SETTINGS_PATH = Path("modbus-config.yaml")


@dataclass(frozen=True)
class ModbusConfig:
    """Connection parameters for the robot's Modbus TCP server."""
    host: str = "192.168.125.1"
    port: int = 502
    unit_id: int = 1
    timeout: int = 5000  # milliseconds

    @property
    def timeout_s(self) -> float:
        return self.timeout / 1000.0

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation (camelCase keys)."""
        return {"host": self.host, "port": self.port, "unitId": self.unit_id, "timeout": self.timeout}


def default_config() -> ModbusConfig:
    """Defaults, overridable through MODBUS_* environment variables."""
    return ModbusConfig(
        host=os.environ.get("MODBUS_HOST", "192.168.125.1"),
        port=int(os.environ.get("MODBUS_PORT", "502")),
        unit_id=int(os.environ.get("MODBUS_UNIT_ID", "1")),
        timeout=int(os.environ.get("MODBUS_TIMEOUT", "5000")),
    )


def _as_int(value: Any, name: str, low: int, high: int) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")
    if number != float(value) or not (low <= number <= high):
        raise ValidationError(f"{name} must be between {low} and {high}")
    return number


def validate_updates(updates: Dict[str, Any], require_endpoint: bool = True) -> Dict[str, Any]:
    """
    Normalize a wire payload ``{host, port, unitId, timeout}`` into
    ModbusConfig field values. Missing optional keys are left out.
    """
    if not isinstance(updates, dict):
        raise ValidationError("Configuration must be a JSON object")

    host = updates.get("host")
    port = updates.get("port")
    if require_endpoint and (not host or not port):
        raise ValidationError("Host and port are required")

    fields: Dict[str, Any] = {}
    if host is not None:
        if not isinstance(host, str) or not host.strip():
            raise ValidationError("host must be a non-empty string")
        fields["host"] = host.strip()
    if port is not None:
        fields["port"] = _as_int(port, "port", 1, 65535)
    unit_id = updates.get("unitId", updates.get("unit_id"))
    if unit_id is not None:
        fields["unit_id"] = _as_int(unit_id, "unitId", 0, 255)
    if updates.get("timeout") is not None:
        fields["timeout"] = _as_int(updates["timeout"], "timeout", 100, 60000)
    return fields


class ModbusSettingsStore:
    """Thread-safe, file-backed holder of the current ModbusConfig."""

    def __init__(self, path: Optional[Union[str, Path]] = None,
                 defaults: Optional[ModbusConfig] = None):
        self._path = Path(path) if path else DEFAULT_SETTINGS_PATH
        self._defaults = defaults or default_config()
        self._lock = threading.Lock()
        self._current: Optional[ModbusConfig] = None
        self._log = get_logger()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> ModbusConfig:
        if not self._path.exists():
            self._log.config(f"Using default Modbus configuration: {self._defaults.to_dict()}")
            return self._defaults

        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            fields = validate_updates(data, require_endpoint=False)
        except (OSError, yaml.YAMLError, ValidationError) as e:
            self._log.config(f"Failed to load {self._path}, using defaults: {e}", level=LogLevel.ERROR)
            return self._defaults

        config = replace(self._defaults, **fields)
        self._log.config(f"Loaded Modbus configuration from {self._path}: {config.to_dict()}")
        return config

    def _save(self, config: ModbusConfig) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "w", encoding="utf-8") as f:
            yaml.safe_dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)

    def get(self) -> ModbusConfig:
        with self._lock:
            if self._current is None:
                self._current = self._load()
            return self._current

    def update(self, updates: Dict[str, Any]) -> ModbusConfig:
        """Validate, merge and persist; raises ValidationError on bad input."""
        fields = validate_updates(updates)
        current = self.get()
        with self._lock:
            new_config = replace(current, **fields)
            self._save(new_config)
            self._current = new_config
        self._log.config(f"Modbus configuration updated: {new_config.to_dict()}")
        return new_config

    def reset(self) -> ModbusConfig:
        with self._lock:
            self._save(self._defaults)
            self._current = self._defaults
        self._log.config("Modbus configuration reset to defaults")
        return self._defaults
