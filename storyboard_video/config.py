"""Configuration loading and path resolution."""

from __future__ import annotations

from pathlib import Path

import yaml

_DEFAULT_CONFIG = "config.yaml"
_PLACEHOLDER_KEY = "YOUR_GEMINI_API_KEY"

DEFAULTS: dict = {
    "api": {
        "base_url": "https://generativelanguage.googleapis.com",
    },
    "generation": {
        "model": "fast",
        "aspect_ratio": "16:9",
        "negative_prompt": "",
    },
    "polling": {
        "interval_seconds": 5.0,
        "max_attempts": 60,
    },
    "batch": {
        "size": 3,
    },
    "storage": {
        "blob_dir": ".storyboard/store",
        "workspace_file": ".storyboard/workspace.json",
    },
    "thumbnail": {
        "ffmpeg": "ffmpeg",
        "offset_seconds": 0.1,
        "quality": 0.8,
    },
}


def _merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: str | Path | None = None) -> dict:
    """Load the YAML configuration file, filling in defaults.

    Args:
        config_path: Path to config.yaml. Defaults to ./config.yaml.

    Returns:
        Parsed config dict.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValueError: If the file is not a YAML mapping.
    """
    path = Path(config_path or _DEFAULT_CONFIG)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config must be a mapping: {path}")
    return _merge(DEFAULTS, loaded)


def get_api_key(config: dict) -> str:
    """Return the API key from the config.

    Raises:
        ValueError: If api_key is missing or still set to placeholder.
    """
    api_key: str = config.get("api", {}).get("api_key", "")
    if not api_key or api_key == _PLACEHOLDER_KEY:
        raise ValueError(
            "API key not configured. Set 'api.api_key' in config.yaml "
            "with your Gemini API key."
        )
    return api_key


def get_project_root(config_path: str | Path | None = None) -> Path:
    """Return the project root (directory containing config.yaml)."""
    path = Path(config_path or _DEFAULT_CONFIG)
    return path.resolve().parent


def resolve_path(config: dict, key_path: str, config_path: str | Path | None = None) -> Path:
    """Resolve a path from config relative to project root.

    Args:
        config: Parsed config dict.
        key_path: Dot-separated path into config (e.g. 'storage.blob_dir').
        config_path: Path to config.yaml for resolving project root.
    """
    root = get_project_root(config_path)
    val = config
    for k in key_path.split("."):
        val = val[k]
    p = Path(val)
    if not p.is_absolute():
        p = root / p
    return p


def get_blob_dir(config: dict, config_path: str | Path | None = None) -> Path:
    return resolve_path(config, "storage.blob_dir", config_path)


def get_workspace_path(config: dict, config_path: str | Path | None = None) -> Path:
    return resolve_path(config, "storage.workspace_file", config_path)
