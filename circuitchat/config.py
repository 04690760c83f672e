"""
Config loader for circuitchat.
Reads config.yaml once at startup. All other modules import from here.
A missing config file is not an error: the built-in defaults apply and
any section present in the file is merged over them key by key.
"""

import copy
import os
import re
import yaml
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

DEFAULT_API_BASE_URL = "https://7j7y34kk48.execute-api.us-east-1.amazonaws.com/v1"

DEFAULTS: dict = {
    "api": {
        "base_url": DEFAULT_API_BASE_URL,
        "timeout": 30,
    },
    "session": {
        "access_token": "",
        "refresh_token": "",
        "id_token": "",
        "user_name": "",
        "user_email": "",
    },
    "polling": {
        "max_attempts": 60,
        "initial_delay": 1.0,
        "max_delay": 5.0,
        "multiplier": 1.5,
    },
    "streaming": {
        "tick": 0.015,
        "min_chunk": 1,
        "max_chunk": 3,
        "start_delay": 0.05,
    },
    "storage": {
        "cache_path": "./data/cache.db",
    },
    "ui": {
        "error_dismiss_seconds": 5.0,
    },
    "logging": {
        "level": "INFO",
        "file": "",
    },
}

_config: dict | None = None


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


def _merge(base: dict, override: dict) -> dict:
    """Merge override into a copy of base. Empty strings keep the default."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        elif value == "" and key in merged:
            continue
        else:
            merged[key] = value
    return merged


def _config_path() -> Path:
    env_path = os.environ.get("CIRCUITCHAT_CONFIG")
    return Path(env_path) if env_path else _CONFIG_PATH


def load_config(path: Path | None = None, reload: bool = False) -> dict:
    """Load and cache config from YAML file, merged over DEFAULTS."""
    global _config
    if _config is not None and not reload and path is None:
        return _config

    config_path = path or _config_path()
    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config must be a mapping: {config_path}")

    _config = _merge(DEFAULTS, _walk_and_resolve(raw))
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config():
    """Drop the cached config so the next get_config() re-reads the file."""
    global _config
    _config = None
