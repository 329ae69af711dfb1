"""
Sync engine configuration loader.

Loads tunables from config/esisync.yml and lets any field be overridden
from the environment as ESISYNC_<SECTION>_<FIELD>, e.g.
ESISYNC_MARKET_HISTORY_REGION_ID=10000043.

Every setting is a named field on a frozen dataclass. Unknown keys in the
YAML are rejected instead of being carried around as free-form data.

Usage:
    from esisync.config.sync_settings import get_sync_settings

    settings = get_sync_settings()
    settings.market_history.rate_limit_calls
    settings.retry.throttle_counts_as_attempt
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "ESISYNC_"

THE_FORGE = 10000002


@dataclass(frozen=True)
class EsiSettings:
    base_url: str = "https://esi.evetech.net"
    datasource: str = "tranquility"
    timeout_seconds: float = 30.0
    connect_timeout_seconds: float = 10.0
    # Refuse to call ESI once the remaining error budget drops under this
    error_limit_floor: int = 10


@dataclass(frozen=True)
class MarketHistorySettings:
    region_id: int = THE_FORGE
    resource_class: str = "market-history"
    rate_limit_calls: int = 100
    rate_limit_window_seconds: int = 60
    ban_duration_seconds: int = 60 * 60 * 24 * 30  # 1 month
    chunk_size: int = 100
    execution_timeout_seconds: int = 60 * 60 * 24  # 1 day


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 100
    outage_cooldown_seconds: int = 120
    # Whether a pure rate-limit wait consumes one attempt of the budget
    throttle_counts_as_attempt: bool = True


@dataclass(frozen=True)
class WorkerSettings:
    poll_interval_seconds: int = 10
    max_jobs_per_cycle: int = 5
    default_execution_timeout_seconds: int = 60 * 60


@dataclass(frozen=True)
class SyncSettings:
    esi: EsiSettings = field(default_factory=EsiSettings)
    market_history: MarketHistorySettings = field(default_factory=MarketHistorySettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)


def _coerce(raw: Any, target_type: Any, name: str) -> Any:
    """Convert a YAML or env value to the type declared on the dataclass."""
    if target_type in (bool, "bool"):
        if isinstance(raw, bool):
            return raw
        value = str(raw).strip().lower()
        if value in ("1", "true", "yes", "on"):
            return True
        if value in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"Invalid boolean for {name}: {raw!r}")
    if target_type in (int, "int"):
        return int(raw)
    if target_type in (float, "float"):
        return float(raw)
    return str(raw)


def _build_section(section_cls: type, section_name: str, raw: Dict[str, Any]) -> Any:
    known = {f.name: f for f in fields(section_cls)}
    unknown = set(raw) - set(known)
    if unknown:
        raise ValueError(
            f"Unknown settings in section '{section_name}': {sorted(unknown)}"
        )

    values = {}
    for name, f in known.items():
        env_key = f"{ENV_PREFIX}{section_name}_{name}".upper()
        if env_key in os.environ:
            values[name] = _coerce(os.environ[env_key], f.type, env_key)
        elif name in raw:
            values[name] = _coerce(raw[name], f.type, f"{section_name}.{name}")
    return section_cls(**values)


def build_sync_settings(raw: Optional[Dict[str, Any]] = None) -> SyncSettings:
    """
    Build settings from a parsed YAML mapping plus environment overrides.

    Raises:
        ValueError: On unknown sections/keys or values that fail coercion
    """
    raw = dict(raw or {})
    raw.pop("version", None)

    sections = {f.name: f for f in fields(SyncSettings)}
    unknown = set(raw) - set(sections)
    if unknown:
        raise ValueError(f"Unknown settings sections: {sorted(unknown)}")

    defaults = SyncSettings()
    built = {}
    for name in sections:
        section_cls = type(getattr(defaults, name))
        built[name] = _build_section(section_cls, name, raw.get(name) or {})
    return replace(defaults, **built)


class SyncSettingsLoader:
    """
    Thread-safe singleton loader for config/esisync.yml.

    A missing file is not an error: defaults plus environment overrides
    are used.
    """

    _instance: Optional["SyncSettingsLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("ESISYNC_CONFIG")
        self._settings = SyncSettings()
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Optional[Path]:
        if self._config_path:
            path = Path(self._config_path)
            if not path.exists():
                raise FileNotFoundError(f"Sync settings file not found: {path}")
            return path

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "esisync.yml",
            Path(os.getcwd()) / "config" / "esisync.yml",
        ]
        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved
        return None

    def _load(self) -> None:
        with self._load_lock:
            path = self._resolve_path()
            raw: Dict[str, Any] = {}
            if path is None:
                logger.info("No esisync.yml found, using default sync settings")
            else:
                logger.info("Loading sync settings from %s", path)
                with open(path, "r") as f:
                    raw = yaml.safe_load(f) or {}

            self._settings = build_sync_settings(raw)

    def reload(self) -> None:
        """Re-read the YAML from disk (e.g. after a config change)."""
        self._load()

    @property
    def settings(self) -> SyncSettings:
        return self._settings


def get_sync_settings(config_path: Optional[str] = None) -> SyncSettings:
    """Return the settings held by the singleton loader."""
    return SyncSettingsLoader(config_path).settings


def reset_sync_settings_loader() -> None:
    """Reset singleton (for tests only)."""
    SyncSettingsLoader._instance = None
