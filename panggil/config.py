"""Client configuration loading with layered precedence.

Configuration precedence (highest wins):
1. Environment variables (PANGGIL_*)
2. Project config (<workspace>/.panggil/client.json)
3. User config (~/.panggil/client.json)
4. Built-in defaults

Usage:
    from panggil.config import load_client_config

    config = load_client_config(workspace_path=Path.cwd())
    print(config.default_server)

Environment Variables:
    PANGGIL_DEFAULT_SERVER: Address pre-filled for connect (default: localhost:8081)
    PANGGIL_MAX_WORKERS: Background worker threads (default: 4)
    PANGGIL_BODY_CACHE: Body cache file (default: ~/.panggil/grpc_cache.json)
    PANGGIL_PERSIST_BODY_CACHE: Save the body cache on exit (default: true)

The dial and invocation deadlines are fixed and are not configurable.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, get_type_hints

logger = logging.getLogger(__name__)


CONFIG_DIR_NAME = ".panggil"
CONFIG_FILE_NAME = "client.json"


def _default_cache_path() -> str:
    return str(Path.home() / CONFIG_DIR_NAME / "grpc_cache.json")


def _parse_bool(value: str) -> bool:
    """Parse boolean from string."""
    return value.lower() in ("true", "1", "yes", "on")


def _parse_env_value(value: str, target_type: Type) -> Any:
    """Parse environment variable value to target type."""
    if target_type == bool:
        return _parse_bool(value)
    elif target_type == int:
        return int(value)
    elif target_type == float:
        return float(value)
    return value


@dataclass
class ClientConfig:
    """Root client configuration.

    Attributes:
        default_server: Address offered when no address is given.
        max_workers: Size of the background worker pool.
        body_cache_path: Where the per-method body cache is persisted.
        persist_body_cache: Whether the body cache is loaded at start and
            saved on exit.
    """
    default_server: str = "localhost:8081"
    max_workers: int = 4
    body_cache_path: str = field(default_factory=_default_cache_path)
    persist_body_cache: bool = True

    def __post_init__(self):
        """Validate configuration values."""
        if not self.default_server:
            raise ValueError("default_server must not be empty")
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")


# Maps config field names to environment variable names
ENV_VAR_MAPPING: Dict[str, str] = {
    "default_server": "PANGGIL_DEFAULT_SERVER",
    "max_workers": "PANGGIL_MAX_WORKERS",
    "body_cache_path": "PANGGIL_BODY_CACHE",
    "persist_body_cache": "PANGGIL_PERSIST_BODY_CACHE",
}


def _find_config_files(workspace_path: Optional[Path] = None) -> List[Path]:
    """Find configuration files in order of precedence (lowest first)."""
    files = []

    user_config = Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    if user_config.exists():
        files.append(user_config)

    if workspace_path:
        project_config = Path(workspace_path) / CONFIG_DIR_NAME / CONFIG_FILE_NAME
        if project_config.exists() and project_config != user_config:
            files.append(project_config)

    return files


def _apply_env_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to config dict."""
    result = config_dict.copy()
    hints = get_type_hints(ClientConfig)

    for name, env_var in ENV_VAR_MAPPING.items():
        env_value = os.environ.get(env_var)
        if env_value is None:
            continue
        try:
            result[name] = _parse_env_value(env_value, hints.get(name, str))
            logger.debug(f"Applied env override: {env_var}={env_value}")
        except (ValueError, TypeError) as e:
            logger.warning(f"Invalid value for {env_var}: {env_value} ({e})")

    return result


def _dict_to_config(data: Dict[str, Any]) -> ClientConfig:
    """Convert dict to ClientConfig, dropping unknown keys and bad values."""
    valid_fields = {f.name for f in fields(ClientConfig)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}

    unknown = {k for k in data if k not in valid_fields and not k.startswith("_")}
    if unknown:
        logger.warning(f"Unknown config keys (ignored): {unknown}")

    try:
        return ClientConfig(**filtered)
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid config values, using defaults: {e}")
        return ClientConfig()


def load_client_config(workspace_path: Optional[Path] = None) -> ClientConfig:
    """Load client configuration with layered precedence.

    Args:
        workspace_path: Project directory for project-level config. If
            None, only user config and environment variables are used.

    Returns:
        Merged ClientConfig instance.
    """
    merged: Dict[str, Any] = {}

    for config_file in _find_config_files(workspace_path):
        try:
            with open(config_file) as f:
                file_config = json.load(f)

            if not isinstance(file_config, dict):
                logger.warning(f"Invalid config format in {config_file} (expected object)")
                continue

            merged.update(file_config)
            logger.debug(f"Loaded config from {config_file}")

        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in {config_file}: {e}")
        except OSError as e:
            logger.warning(f"Failed to load {config_file}: {e}")

    merged = _apply_env_overrides(merged)
    return _dict_to_config(merged)


__all__ = [
    "ClientConfig",
    "load_client_config",
]
