from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import os
from pydantic import BaseModel, SecretStr, field_validator

from .config_loader import load_config

DEFAULT_CONFIG_PATH = Path("config/minipool.yaml")

# field name -> environment variable
ENV_VARS: Dict[str, str] = {
    "bitcoin_rpc_url": "BITCOIN_RPC_URL",
    "bitcoin_rpc_user": "BITCOIN_RPC_USER",
    "bitcoin_rpc_pass": "BITCOIN_RPC_PASS",
    "bind_addr": "BIND_ADDR",
    "prometheus_bind_addr": "PROMETHEUS_BIND_ADDR",
    "rpc_timeout": "RPC_TIMEOUT",
    "offload_workers": "OFFLOAD_WORKERS",
    "log_level": "LOG_LEVEL",
    "log_format": "LOG_FORMAT",
}


def parse_bind_addr(value: str) -> Tuple[str, int]:
    """Split ``host:port`` (``[v6]:port`` for IPv6) into its parts."""
    value = value.strip()
    if value.startswith("["):
        host, sep, port = value[1:].partition("]:")
        if not sep or not host:
            raise ValueError(f"Invalid bind address: {value!r}")
    else:
        host, sep, port = value.rpartition(":")
        if not sep or not host or ":" in host:
            raise ValueError(f"Invalid bind address: {value!r}")
    if not port.isdigit() or not 0 <= int(port) <= 65535:
        raise ValueError(f"Invalid port in bind address: {value!r}")
    return host, int(port)


class MinipoolSettings(BaseModel):
    bitcoin_rpc_url: str
    bitcoin_rpc_user: str
    bitcoin_rpc_pass: SecretStr
    bind_addr: str = "127.0.0.1:3000"
    prometheus_bind_addr: str = "[::]:3001"
    rpc_timeout: Optional[float] = None
    offload_workers: int = 16
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("bind_addr", "prometheus_bind_addr")
    @classmethod
    def _check_bind_addr(cls, value: str) -> str:
        parse_bind_addr(value)
        return value

    @field_validator("offload_workers")
    @classmethod
    def _check_workers(cls, value: int) -> int:
        if value < 1:
            raise ValueError("offload_workers must be at least 1")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return value

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in {"json", "console"}:
            raise ValueError("log_format must be 'json' or 'console'")
        return value

    @property
    def api_host_port(self) -> Tuple[str, int]:
        return parse_bind_addr(self.bind_addr)

    @property
    def metrics_host_port(self) -> Tuple[str, int]:
        return parse_bind_addr(self.prometheus_bind_addr)

    def redacted(self) -> Dict[str, Any]:
        """Settings as a dict that is safe to log."""
        data = self.model_dump()
        data["bitcoin_rpc_pass"] = "********"
        return data

    @classmethod
    def load(
        cls,
        config_path: Optional[Path] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "MinipoolSettings":
        """Merge defaults, YAML file, environment and explicit overrides."""
        env = os.environ if environ is None else environ
        path = config_path or Path(env.get("MINIPOOL_CONFIG", DEFAULT_CONFIG_PATH))
        raw = load_config(path)
        values: Dict[str, Any] = dict(raw.get("minipool", {}) or {})

        for field, env_var in ENV_VARS.items():
            env_value = env.get(env_var)
            if env_value not in (None, ""):
                values[field] = env_value

        for field, value in (overrides or {}).items():
            if value is not None:
                values[field] = value
        return cls(**values)
