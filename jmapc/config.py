"""Harmonization configuration.

Loaded with priority:
1. Environment variables (JMAPC_LEASE_TIMEOUT, JMAPC_HEARTBEAT_INTERVAL, ...)
2. ~/.jmapc/config.json
3. Built-in defaults
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from jmapc.utils import get_jmapc_home

logger = logging.getLogger(__name__)

# A lease whose heartbeat is older than this is considered abandoned (seconds)
DEFAULT_LEASE_TIMEOUT = 3600.0
DEFAULT_TRANSPORT_TIMEOUT = 30.0
DEFAULT_RETENTION_DAYS = 90
DEFAULT_MAX_WORKERS = 4

ENV_OVERRIDES = {
    "JMAPC_LEASE_TIMEOUT": ("lease_timeout", float),
    "JMAPC_HEARTBEAT_INTERVAL": ("heartbeat_interval", float),
    "JMAPC_TRANSPORT_TIMEOUT": ("transport_timeout", float),
    "JMAPC_RETENTION_DAYS": ("chronicle_retention_days", int),
    "JMAPC_MAX_WORKERS": ("max_workers", int),
    "JMAPC_DB_PATH": ("db_path", Path),
}


@dataclass
class HarmonizationConfig:
    """Tunables for the orchestrator, lease and transport.

    ``heartbeat_interval`` defaults to a third of ``lease_timeout`` and must
    stay strictly below half of it, so a live run always refreshes its lease
    well before another worker may consider it stale.
    """

    lease_timeout: float = DEFAULT_LEASE_TIMEOUT
    heartbeat_interval: Optional[float] = None
    transport_timeout: float = DEFAULT_TRANSPORT_TIMEOUT
    chronicle_retention_days: int = DEFAULT_RETENTION_DAYS
    max_workers: int = DEFAULT_MAX_WORKERS
    db_path: Optional[Path] = None

    def __post_init__(self):
        if self.lease_timeout <= 0:
            raise ValueError("lease_timeout must be positive")
        if self.heartbeat_interval is None:
            self.heartbeat_interval = self.lease_timeout / 3
        if self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        if self.heartbeat_interval >= self.lease_timeout / 2:
            raise ValueError(
                f"heartbeat_interval ({self.heartbeat_interval}) must be less than "
                f"half of lease_timeout ({self.lease_timeout})"
            )
        if self.transport_timeout <= 0:
            raise ValueError("transport_timeout must be positive")
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if self.db_path is not None:
            self.db_path = Path(self.db_path).expanduser()

    def resolved_db_path(self) -> Path:
        return self.db_path or get_jmapc_home() / "jmapc.db"


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config file {path}: expected a JSON object")
        return {}
    return data


def load_config(path: Optional[Path] = None, **overrides: Any) -> HarmonizationConfig:
    """Build a HarmonizationConfig from file, environment and explicit overrides."""
    values: Dict[str, Any] = {}
    file_data = _read_config_file(path or get_jmapc_home() / "config.json")
    for key in HarmonizationConfig.__dataclass_fields__:
        if key in file_data:
            values[key] = file_data[key]

    for env_name, (key, cast) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            values[key] = cast(raw)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid {env_name}={raw!r}")

    values.update({k: v for k, v in overrides.items() if v is not None})

    # A file-level lease_timeout without an explicit interval re-derives the default
    if "lease_timeout" in values and "heartbeat_interval" not in values:
        values["heartbeat_interval"] = None
    return HarmonizationConfig(**values)
