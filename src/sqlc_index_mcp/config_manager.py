"""
Configuration Manager for SQLC Index MCP

This module handles loading and managing configuration from YAML files,
including manifest discovery, watching and logging settings.

Settings are layered: built-in defaults, then the server config file, then
the per-project ``.sqlc-index.yaml`` overrides. Nested mappings are merged
key by key; any other value replaces the one below it.
"""
import copy
import logging
import os
from typing import Any, Dict, List, Optional

import yaml

from .constants import CONFIG_FILENAMES, MANIFEST_FILENAMES, PROJECT_CONFIG_FILENAMES

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SQLC_INDEX_CONFIG"

DEFAULT_CONFIG: Dict[str, Any] = {
    "discovery": {
        "manifest_filenames": list(MANIFEST_FILENAMES),
        "skip_directories": ["node_modules", "vendor", ".git", "venv", ".venv", "dist", "build"],
        "respect_gitignore": True,
    },
    "watch": {
        "enabled": True,
    },
    "logging": {
        "level": "INFO",
    },
}


def merge_settings(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``base`` with ``overlay`` merged into it."""
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = merge_settings(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_settings_file(path: str) -> Optional[Dict[str, Any]]:
    """Load a YAML settings file, logging and returning None when it is unusable."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading config from {path}: {e}")
        return None
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.error(f"Error loading config from {path}: top level must be a mapping")
        return None
    return data


class ConfigManager:
    """Manages configuration for the SQLC Index MCP server."""

    def __init__(self, config_path: Optional[str] = None, project_path: Optional[str] = None):
        """Initialize the configuration manager.

        Args:
            config_path: Path to the configuration file. If None, uses
                        $SQLC_INDEX_CONFIG or sqlc-index.yaml in the current directory.
            project_path: Path to the project directory for per-project overrides.
        """
        self.config_path = self._locate_server_config(config_path)
        self.project_path = project_path
        self.project_config_path: Optional[str] = None
        self.settings: Dict[str, Any] = {}
        self.reload_config()

    @staticmethod
    def _locate_server_config(config_path: Optional[str]) -> Optional[str]:
        candidates = [config_path, os.environ.get(CONFIG_ENV_VAR)] + list(CONFIG_FILENAMES)
        for candidate in candidates:
            if candidate and os.path.isfile(candidate):
                return os.path.abspath(candidate)
        return None

    def _locate_project_config(self) -> Optional[str]:
        if not self.project_path:
            return None
        for name in PROJECT_CONFIG_FILENAMES:
            candidate = os.path.join(self.project_path, name)
            if os.path.isfile(candidate):
                return candidate
        return None

    def reload_config(self):
        """Re-read the server config file and the project overrides."""
        settings = DEFAULT_CONFIG
        if self.config_path:
            settings = merge_settings(settings, load_settings_file(self.config_path) or {})

        self.project_config_path = self._locate_project_config()
        if self.project_config_path:
            overrides = load_settings_file(self.project_config_path)
            if overrides is not None:
                logger.info(f"Loaded project overrides from: {self.project_config_path}")
                settings = merge_settings(settings, overrides)

        self.settings = copy.deepcopy(settings)

    def get_config(self, key: Optional[str] = None) -> Any:
        """Get a setting by dot-separated key, e.g. ``"watch.enabled"``.

        Returns the whole settings tree when key is None, and None for
        unknown keys.
        """
        if key is None:
            return copy.deepcopy(self.settings)

        value: Any = self.settings
        for part in key.split('.'):
            if not isinstance(value, dict) or part not in value:
                return None
            value = value[part]
        return value

    def get_manifest_filenames(self) -> List[str]:
        names = self.get_config('discovery.manifest_filenames')
        return list(names) if isinstance(names, list) and names else list(MANIFEST_FILENAMES)

    def get_manifest_globs(self) -> List[str]:
        return [f"**/{name}" for name in self.get_manifest_filenames()]

    def get_skip_directories(self) -> List[str]:
        patterns = self.get_config('discovery.skip_directories')
        return list(patterns) if isinstance(patterns, list) else []

    def should_respect_gitignore(self) -> bool:
        return bool(self.get_config('discovery.respect_gitignore'))

    def is_watch_enabled(self) -> bool:
        return bool(self.get_config('watch.enabled'))

    def get_log_level(self) -> str:
        level = self.get_config('logging.level')
        return str(level).upper() if level else "INFO"
