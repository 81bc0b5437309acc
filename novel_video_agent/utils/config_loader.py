"""
Configuration loader module for the novel video agent.

Handles loading and validation of YAML configuration files
with proper defaults and error handling.
"""

import os
import re
from pathlib import Path
from typing import Dict, Any, Optional
import yaml


PROVIDER_NAMES = ("structuring", "speech", "image", "video")
VALID_ENVIRONMENTS = ("alpha", "prod")


def load_env_file(path: str = ".env") -> None:
    """Load environment variables from .env file if it exists."""
    env_file = Path(path)
    if env_file.exists():
        with open(env_file, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    os.environ.setdefault(key.strip(), value.strip())


def load_global_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load and validate global configuration with environment support.

    When no path is given, the .env file is loaded and NVA_ENV selects
    config/global_<env>.yaml.

    Args:
        path: Explicit YAML file to load instead of the environment file.

    Returns:
        Dictionary containing validated configuration with environment variable interpolation.

    Raises:
        ValueError: If config file not found, invalid YAML, or missing critical keys.

    Examples:
        >>> config = load_global_config()  # Uses NVA_ENV
        >>> print(config["concurrency"]["max_workers"])
        4
    """
    if path is None:
        load_env_file()
        env = os.getenv('NVA_ENV')
        if not env:
            raise ValueError("NVA_ENV environment variable not set. Please set NVA_ENV=alpha or NVA_ENV=prod in .env file")
        path = f"config/global_{env}.yaml"

    if not os.path.exists(path):
        raise ValueError(f"Config file not found: {path}. Available environments: {', '.join(VALID_ENVIRONMENTS)}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file {path}: {e}")

    if not isinstance(config, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    config = _interpolate_env_vars(config)

    return _validate_and_transform_config(config)


def _interpolate_env_vars(obj):
    """Recursively interpolate environment variables in config values.

    Replaces ${VAR} or ${VAR:-default} with environment variable values.
    """
    if isinstance(obj, dict):
        return {key: _interpolate_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [_interpolate_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        def replace_var(match):
            var_expr = match.group(1)
            if ':-' in var_expr:
                var_name, default_value = var_expr.split(':-', 1)
                return os.getenv(var_name, default_value)
            else:
                return os.getenv(var_expr, match.group(0))  # Return original if not found

        return re.sub(r'\$\{([^}]+)\}', replace_var, obj)
    else:
        return obj


def _require_section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = config.get(name)
    if not isinstance(section, dict):
        raise ValueError(f"Missing required section: {name}")
    return section


def _validate_and_transform_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate config structure and fill in defaults.

    Args:
        config: Raw config dictionary from YAML file.

    Returns:
        Normalised config dictionary.
    """
    paths = _require_section(config, "paths")
    for key in ("database", "storage_root"):
        if not paths.get(key):
            raise ValueError(f"Missing required path key: {key}")

    providers = _require_section(config, "providers")
    normalized_providers = {}
    for name in PROVIDER_NAMES:
        provider = providers.get(name)
        if not isinstance(provider, dict):
            raise ValueError(f"Missing required provider section: {name}")
        if not provider.get("base_url"):
            raise ValueError(f"Missing required providers.{name} key: base_url")
        normalized_providers[name] = {
            "base_url": provider["base_url"],
            "api_key": provider.get("api_key", "") or "",
            "model": provider.get("model"),
            "timeout_seconds": float(provider.get("timeout_seconds", 60)),
        }
    llm = normalized_providers["structuring"]
    llm["temperature"] = float(providers["structuring"].get("temperature", 0.7))
    llm["max_retries"] = int(providers["structuring"].get("max_retries", 2))

    video = _require_section(config, "video")
    if not video.get("outro_asset_key"):
        raise ValueError("Missing required video key: outro_asset_key")

    storage = config.get("storage") or {}
    concurrency = config.get("concurrency") or {}
    chaptering = config.get("chaptering") or {}
    logging_cfg = config.get("logging") or {}

    max_workers = int(concurrency.get("max_workers", 4))

    result = {
        "paths": {
            "database": paths["database"],
            "storage_root": paths["storage_root"],
            "logs": paths.get("logs", "logs"),
        },
        "storage": {
            "public_base_url": storage.get("public_base_url"),
            "presign_secret": storage.get("presign_secret", "dev-secret"),
            "default_ttl_seconds": int(storage.get("default_ttl_seconds", 900)),
        },
        "concurrency": {
            # Clamp worker pool to a sane range
            "max_workers": max(1, min(32, max_workers)),
        },
        "chaptering": {
            "default_target_chapters": int(chaptering.get("default_target_chapters", 10)),
            "tolerance": float(chaptering.get("tolerance", 0.2)),
        },
        "providers": normalized_providers,
        "video": {
            "poll_interval_seconds": float(video.get("poll_interval_seconds", 2.0)),
            "max_poll_interval_seconds": float(video.get("max_poll_interval_seconds", 15.0)),
            "backoff_factor": float(video.get("backoff_factor", 1.5)),
            "timeout_seconds": float(video.get("timeout_seconds", 600)),
            "outro_asset_key": video["outro_asset_key"],
            "min_images": int(video.get("min_images", 2)),
        },
        "logging": {
            "level": logging_cfg.get("level", "INFO"),
            "file": logging_cfg.get("file"),
        },
    }

    if result["chaptering"]["default_target_chapters"] < 1:
        raise ValueError("chaptering.default_target_chapters must be at least 1")
    if result["video"]["timeout_seconds"] <= 0:
        raise ValueError("video.timeout_seconds must be positive")

    # Store full config for future use
    result["_full_config"] = config

    return result
