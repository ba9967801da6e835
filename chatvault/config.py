"""
Config loader for chatvault.
Reads config.yaml once at startup. All other modules import from here.
runtime_config.yaml is hot-reloaded on every call to get_runtime_config()
via mtime check, so per-device sync toggles apply without a restart.

Set CHATVAULT_CONFIG / CHATVAULT_RUNTIME_CONFIG to point elsewhere.
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_ROOT = Path(__file__).parent.parent
_CONFIG_PATH = Path(os.environ.get("CHATVAULT_CONFIG", _ROOT / "config.yaml"))
_RUNTIME_CONFIG_PATH = Path(os.environ.get("CHATVAULT_RUNTIME_CONFIG", _ROOT / "runtime_config.yaml"))

_config: dict | None = None

# Runtime config hot-reload state
_runtime_config: dict = {}
_runtime_mtime: float = 0.0

DEFAULTS: dict = {
    "storage": {"sqlite_path": "./data/chatvault.db"},
    "sync": {
        "enabled": False,
        "auto_sync": True,
        "api_url": "",
        "passphrase": "",
        "user_id": "",
        "debounce_seconds": 5,
        "health_ttl_seconds": 5,
        "health_interval_seconds": 30,
        "polling_interval_seconds": 300,
        "timeout_seconds": 10,
        "retry_count": 3,
        "retry_delay_seconds": 1,
        "strategy": "timestamp",
        "max_payload_bytes": 50 * 1024 * 1024,
    },
    "server": {"host": "0.0.0.0", "port": 8400, "sqlite_path": "./data/sync_server.db"},
    "backend": {"url": "http://localhost:11434", "default_model": "", "api_key": "", "timeout": 120},
    "auto_summarization": {"enabled": False, "token_budget": 3000, "summary_model": "", "keep_last": 4},
    "logging": {"level": "INFO", "file": ""},
}


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def _merge_defaults(defaults: dict, loaded: dict) -> dict:
    merged = dict(defaults)
    for key, value in (loaded or {}).items():
        if isinstance(value, dict) and isinstance(defaults.get(key), dict):
            merged[key] = _merge_defaults(defaults[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file, filling in defaults."""
    global _config
    if _config is not None and path is None:
        return _config

    config_path = path or _CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    _config = _merge_defaults(DEFAULTS, _walk_and_resolve(raw))
    return _config


def get_config() -> dict:
    """Return cached base config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config() -> None:
    """Drop cached state so the next get_config() re-reads from disk."""
    global _config, _runtime_config, _runtime_mtime
    _config = None
    _runtime_config = {}
    _runtime_mtime = 0.0


def set_runtime_config_path(path: Path) -> None:
    global _RUNTIME_CONFIG_PATH, _runtime_mtime
    _RUNTIME_CONFIG_PATH = Path(path)
    _runtime_mtime = 0.0


def get_runtime_config() -> dict:
    """
    Return runtime_config.yaml overrides, hot-reloading if the file changed.
    Returns the contents of the `runtime` key, or {} if file is missing/empty.
    """
    global _runtime_config, _runtime_mtime

    if not _RUNTIME_CONFIG_PATH.exists():
        return {}

    try:
        mtime = _RUNTIME_CONFIG_PATH.stat().st_mtime
    except OSError:
        return _runtime_config

    if mtime == _runtime_mtime:
        return _runtime_config

    try:
        with open(_RUNTIME_CONFIG_PATH) as f:
            data = yaml.safe_load(f) or {}
        _runtime_config = data.get("runtime", {}) or {}
        _runtime_mtime = mtime
    except (OSError, yaml.YAMLError) as e:
        # Keep last good config on parse error
        logger.warning("runtime_config.yaml unreadable, keeping previous values: %s", e)

    return _runtime_config


def update_runtime_config(key: str, value) -> bool:
    """
    Write a single key into the runtime: block of runtime_config.yaml.
    Returns True on success.
    """
    global _runtime_mtime
    try:
        if _RUNTIME_CONFIG_PATH.exists():
            with open(_RUNTIME_CONFIG_PATH) as f:
                data = yaml.safe_load(f) or {}
        else:
            data = {}

        if "runtime" not in data or not isinstance(data["runtime"], dict):
            data["runtime"] = {}

        data["runtime"][key] = value

        with open(_RUNTIME_CONFIG_PATH, "w") as f:
            yaml.dump(data, f, default_flow_style=False, allow_unicode=True)

        # Bust the mtime cache so next get_runtime_config() picks it up
        _runtime_mtime = 0.0
        return True
    except (OSError, yaml.YAMLError) as e:
        logger.error(
            "update_runtime_config(%s) failed: %s (path=%s, writable=%s)",
            key, e, _RUNTIME_CONFIG_PATH,
            os.access(_RUNTIME_CONFIG_PATH.parent, os.W_OK),
        )
        return False


@dataclass
class SyncSettings:
    """Everything the sync engine needs, resolved once and injected."""
    enabled: bool = False
    auto_sync: bool = True
    api_url: str = ""
    passphrase: str = ""
    user_id: str = ""
    strategy: str = "timestamp"
    debounce_seconds: float = 5.0
    health_ttl_seconds: float = 5.0
    health_interval_seconds: float = 30.0
    polling_interval_seconds: float = 300.0
    timeout_seconds: float = 10.0
    retry_count: int = 3
    retry_delay_seconds: float = 1.0
    max_payload_bytes: int = 50 * 1024 * 1024

    @classmethod
    def from_config(cls, cfg: dict, runtime: dict | None = None) -> "SyncSettings":
        """Merge the sync: block with runtime overrides (runtime wins)."""
        sync_cfg = {**DEFAULTS["sync"], **(cfg.get("sync") or {})}
        runtime = runtime or {}
        if "sync_enabled" in runtime:
            sync_cfg["enabled"] = runtime["sync_enabled"]
        if "auto_sync" in runtime:
            sync_cfg["auto_sync"] = runtime["auto_sync"]
        if runtime.get("sync_strategy"):
            sync_cfg["strategy"] = runtime["sync_strategy"]
        if runtime.get("sync_api_url"):
            sync_cfg["api_url"] = runtime["sync_api_url"]

        return cls(
            enabled=bool(sync_cfg["enabled"]),
            auto_sync=bool(sync_cfg["auto_sync"]),
            api_url=str(sync_cfg["api_url"] or "").rstrip("/"),
            passphrase=str(sync_cfg["passphrase"] or ""),
            user_id=str(sync_cfg["user_id"] or ""),
            strategy=str(sync_cfg["strategy"]),
            debounce_seconds=float(sync_cfg["debounce_seconds"]),
            health_ttl_seconds=float(sync_cfg["health_ttl_seconds"]),
            health_interval_seconds=float(sync_cfg["health_interval_seconds"]),
            polling_interval_seconds=float(sync_cfg["polling_interval_seconds"]),
            timeout_seconds=float(sync_cfg["timeout_seconds"]),
            retry_count=int(sync_cfg["retry_count"]),
            retry_delay_seconds=float(sync_cfg["retry_delay_seconds"]),
            max_payload_bytes=int(sync_cfg["max_payload_bytes"]),
        )


def get_sync_settings() -> SyncSettings:
    return SyncSettings.from_config(get_config(), get_runtime_config())
