"""Runtime configuration."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

DEFAULT_DCGM_LIB_PATH = "/lib/x86_64-linux-gnu/libdcgm.so.4"

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off", ""})


@dataclass(frozen=True)
class GPUMonConfig:
    """Immutable collector configuration."""

    endpoint: str = "api.honeycomb.io:443"
    service_name: str = "gpu-mon"
    api_key: str | None = None
    api_key_header: str = "x-honeycomb-team"
    insecure: bool = False
    export_interval_ms: int = 15000
    export_timeout_ms: int = 10000
    collect_timeout_ms: int | None = None
    shutdown_timeout_ms: int = 5000
    smi_command: tuple[str, ...] = ("nvidia-smi", "-q", "-x")
    dcgm_lib_path: str = DEFAULT_DCGM_LIB_PATH
    dcgm_reporting_interval_s: int = 1
    dynolog_command: tuple[str, ...] | None = None
    dynolog_memory_scale_bytes: int = 80 * 1024**3
    stream_buffer_lines: int = 4096
    echo_stream_lines: bool = True

    def headers(self) -> dict[str, str]:
        """gRPC metadata carrying the API key, empty when no key is set."""
        if not self.api_key:
            return {}
        return {self.api_key_header.lower(): self.api_key}

    def resolved_dynolog_command(self) -> tuple[str, ...]:
        if self.dynolog_command is not None:
            return self.dynolog_command
        return (
            "dynolog",
            "--enable_gpu_monitor",
            f"--dcgm_lib_path={self.dcgm_lib_path}",
            "--use_JSON",
            "--dcgm_reporting_interval_s",
            str(self.dcgm_reporting_interval_s),
        )

    def validate(self) -> None:
        if not self.endpoint:
            raise ValueError("endpoint must not be empty")
        for name in ("export_interval_ms", "export_timeout_ms", "shutdown_timeout_ms",
                     "dcgm_reporting_interval_s", "stream_buffer_lines"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.collect_timeout_ms is not None and self.collect_timeout_ms <= 0:
            raise ValueError("collect_timeout_ms must be positive")
        if self.dynolog_memory_scale_bytes < 0:
            raise ValueError("dynolog_memory_scale_bytes must not be negative")
        if not self.smi_command:
            raise ValueError("smi_command must not be empty")
        if self.dynolog_command is not None and not self.dynolog_command:
            raise ValueError("dynolog_command must not be empty")


def _env_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name}: expected a boolean, got {raw!r}")


def _env_int(name: str, raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError:
        raise ValueError(f"{name}: expected an integer, got {raw!r}") from None


_ENV_FIELDS: dict[str, tuple[str, Any]] = {
    "GPUMON_ENDPOINT": ("endpoint", str),
    "GPUMON_SERVICE_NAME": ("service_name", str),
    "HONEYCOMB_API_KEY": ("api_key", str),
    "GPUMON_API_KEY_HEADER": ("api_key_header", str),
    "GPUMON_INSECURE": ("insecure", _env_bool),
    "GPUMON_EXPORT_INTERVAL_MS": ("export_interval_ms", _env_int),
    "GPUMON_EXPORT_TIMEOUT_MS": ("export_timeout_ms", _env_int),
    "GPUMON_COLLECT_TIMEOUT_MS": ("collect_timeout_ms", _env_int),
    "GPUMON_SHUTDOWN_TIMEOUT_MS": ("shutdown_timeout_ms", _env_int),
    "GPUMON_DCGM_LIB_PATH": ("dcgm_lib_path", str),
    "GPUMON_DCGM_REPORTING_INTERVAL_S": ("dcgm_reporting_interval_s", _env_int),
}


def load_config(env: Mapping[str, str] | None = None, **overrides: Any) -> GPUMonConfig:
    """Build a config from environment variables, then explicit overrides.

    Overrides whose value is None are ignored so that unset command-line
    options fall through to the environment and the defaults.
    """
    if env is None:
        env = os.environ
    values: dict[str, Any] = {}
    for var, (field_name, convert) in _ENV_FIELDS.items():
        raw = env.get(var)
        if raw is None:
            continue
        values[field_name] = raw if convert is str else convert(var, raw)

    known = {f.name for f in dataclasses.fields(GPUMonConfig)}
    for key, value in overrides.items():
        if key not in known:
            raise TypeError(f"unknown config field: {key}")
        if value is not None:
            values[key] = value

    config = GPUMonConfig(**values)
    config.validate()
    return config
