"""
Configuration for hybrid storage.

Configuration can be provided directly, via environment variables, or via
a YAML settings file. Environment variables win over the file.

Environment Variables:
    HYBRID_STORAGE_API_URL: Remote API base URL (empty means local-only mode)
    HYBRID_STORAGE_DATA_DIR: Directory for local collections and the offline queue
    HYBRID_STORAGE_USER_ID: User ID forwarded on collection fetches
    HYBRID_STORAGE_TIMEOUT: Remote request timeout in seconds
    HYBRID_STORAGE_PROBE_INTERVAL: Seconds between connectivity probes (0 disables polling)
    HYBRID_STORAGE_RETRY_INTERVAL: Seconds between automatic drain retries (0 disables)

Settings file (``~/.hybrid_storage/settings.yaml``):

```yaml
storage:
  api_url: "https://example.com/api"
  data_dir: "~/.hybrid_storage"
  request_timeout: 10
  probe_interval: 5
  retry_interval: 30
```
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".hybrid_storage"
DEFAULT_SETTINGS_PATH = DEFAULT_DATA_DIR / "settings.yaml"

_ENV_VARS = {
    "api_url": "HYBRID_STORAGE_API_URL",
    "data_dir": "HYBRID_STORAGE_DATA_DIR",
    "user_id": "HYBRID_STORAGE_USER_ID",
    "request_timeout": "HYBRID_STORAGE_TIMEOUT",
    "probe_interval": "HYBRID_STORAGE_PROBE_INTERVAL",
    "retry_interval": "HYBRID_STORAGE_RETRY_INTERVAL",
}


@dataclass(frozen=True)
class SyncPolicy:
    """Per-process sync policy, resolved once at startup.

    Attributes:
        remote_enabled: Whether a remote endpoint is configured at all.
            When False the engine is pure local storage and the offline
            queue and remote client stay dormant.
    """

    remote_enabled: bool


@dataclass
class StorageConfig:
    """Configuration for the hybrid storage engine.

    Attributes:
        api_url: Remote API base URL; None or blank selects local-only mode
        data_dir: Directory holding collections, the offline queue and credentials
        user_id: Optional user ID forwarded as ``userId`` on collection fetches
        request_timeout: Bounded timeout for every remote call, in seconds
        probe_interval: Seconds between connectivity polls; 0 disables polling
        probe_debounce: Consecutive identical poll samples needed for a transition
        retry_interval: Seconds between automatic drain retries; 0 disables
        max_queue_entries: Capacity of the offline queue
        drop_rejected: Remove queued writes the remote rejects during replay
            instead of keeping them queued
    """

    api_url: str | None = None
    data_dir: Path = DEFAULT_DATA_DIR
    user_id: str | None = None
    request_timeout: float = 10.0
    probe_interval: float = 5.0
    probe_debounce: int = 2
    retry_interval: float = 30.0
    max_queue_entries: int = 10_000
    drop_rejected: bool = False

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir).expanduser()
        if self.api_url is not None:
            self.api_url = self.api_url.strip().rstrip("/") or None
        if self.request_timeout <= 0:
            raise ConfigError("request_timeout must be positive")
        if self.probe_debounce < 1:
            raise ConfigError("probe_debounce must be at least 1")
        if self.max_queue_entries < 1:
            raise ConfigError("max_queue_entries must be at least 1")

    def sync_policy(self) -> SyncPolicy:
        """Resolve the sync policy for this configuration."""
        return SyncPolicy(remote_enabled=bool(self.api_url))

    @property
    def queue_path(self) -> Path:
        return self.data_dir / "sync" / "queue.jsonl"

    @property
    def credentials_path(self) -> Path:
        return self.data_dir / "credentials.json"

    @classmethod
    def from_environment(cls, **overrides: Any) -> StorageConfig:
        """Create configuration from environment variables."""
        values = _read_environment()
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_file(cls, path: Path | None = None, **overrides: Any) -> StorageConfig:
        """Create configuration from the ``storage`` section of a YAML file."""
        values = _read_settings_file(path or DEFAULT_SETTINGS_PATH)
        values.update(overrides)
        return cls(**values)


def load_config(path: Path | None = None, **overrides: Any) -> StorageConfig:
    """Load configuration from the settings file, then the environment, then overrides."""
    values = _read_settings_file(path or DEFAULT_SETTINGS_PATH)
    values.update(_read_environment())
    values.update({k: v for k, v in overrides.items() if v is not None})
    return StorageConfig(**values)


def _read_environment() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name, var in _ENV_VARS.items():
        raw = os.environ.get(var)
        if raw is None:
            continue
        if name in ("request_timeout", "probe_interval", "retry_interval"):
            try:
                values[name] = float(raw)
            except ValueError:
                logger.warning(f"Ignoring non-numeric {var}={raw!r}")
        else:
            values[name] = raw
    return values


def _read_settings_file(path: Path) -> dict[str, Any]:
    """Load the ``storage`` section of a YAML settings file."""
    path = Path(path).expanduser()
    if not path.exists():
        return {}

    try:
        content = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid settings file {path}: {e}") from e

    section = content.get("storage", {}) if isinstance(content, dict) else {}
    if not isinstance(section, dict):
        raise ConfigError(f"Invalid settings file {path}: 'storage' must be a mapping")

    known = {f.name for f in fields(StorageConfig)}
    unknown = set(section) - known
    if unknown:
        logger.warning(f"Ignoring unknown settings in {path}: {sorted(unknown)}")
    return {k: v for k, v in section.items() if k in known}
