"""
Configuration management for smolcam.
Handles loading, saving, and managing default capture settings.
"""

import copy
import json
import logging
import os
from typing import Any, Optional, Dict
from pathlib import Path

__all__ = [
    'ConfigManager',
]

logger = logging.getLogger(__name__)


class ConfigManager:
    """Manages persisted defaults and recent paths."""

    DEFAULT_CONFIG = {
        # Default capture settings
        "capture": {
            "bits_per_pixel": 12,
            "dither_enabled": True,
            "dither_type": "bayer",
            "adaptive_palette": False,
            "saturation_boost": False,
            "linear_dither": False,
            "lut_candidates": 8,
            "downsample_histogram": True
        },

        # Parallel execution
        "pipeline": {
            "executor": "thread",  # "thread" or "serial"
            "workers": None  # None means min(4, CPU count - 1)
        },

        # Last used paths
        "paths": {
            "last_input_dir": None,
            "last_output_dir": None
        },

        # Recent files (keep last 10)
        "recent_files": []
    }

    def __init__(self, config_file: str = "smolcam_config.json"):
        """
        Initialize config manager.

        Args:
            config_file: Path to config file
        """
        self.config_file = config_file
        self.config = self._load_config()

    def _load_config(self) -> Dict:
        """Load config from file, or create default if not exists."""
        defaults = copy.deepcopy(self.DEFAULT_CONFIG)
        if os.path.exists(self.config_file):
            try:
                with open(self.config_file, 'r', encoding='utf-8') as f:
                    loaded = json.load(f)
                # Merge with defaults to handle new settings
                return self._merge_configs(defaults, loaded)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Error loading config %s: %s", self.config_file, e)
                return defaults
        else:
            self.config = defaults
            self.save()
            return defaults

    def _merge_configs(self, default: Dict, loaded: Dict) -> Dict:
        """
        Recursively merge loaded config with defaults.
        Ensures all default keys exist even if not in loaded config.
        """
        for key, value in default.items():
            if key in loaded:
                if isinstance(value, dict) and isinstance(loaded[key], dict):
                    default[key] = self._merge_configs(value, loaded[key])
                else:
                    default[key] = loaded[key]
        return default

    def save(self):
        """Save current config to file."""
        try:
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=4)
        except OSError as e:
            logger.warning("Error saving config %s: %s", self.config_file, e)

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Get config value by nested keys.

        Args:
            *keys: Nested keys (e.g., "capture", "bits_per_pixel")
            default: Default value if key not found

        Returns:
            Config value or default

        Example:
            config.get("capture", "bits_per_pixel")  # Returns 12
        """
        value = self.config
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, *keys: str, value: Any):
        """
        Set config value by nested keys.

        Example:
            config.set("capture", "bits_per_pixel", value=6)
        """
        if len(keys) == 0:
            return

        # Navigate to the parent dict
        current = self.config
        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def capture_defaults(self) -> Dict[str, Any]:
        """Copy of the default capture section."""
        return dict(self.get("capture", default={}))

    def update_last_path(self, path_type: str, filepath: str):
        """
        Update last used directory for a path type.

        Args:
            path_type: "input" or "output"
            filepath: File path to extract directory from
        """
        if filepath:
            directory = str(Path(filepath).parent)
            self.set("paths", f"last_{path_type}_dir", value=directory)

    def get_last_path(self, path_type: str) -> Optional[str]:
        return self.get("paths", f"last_{path_type}_dir")

    def add_recent_file(self, filepath: str, max_recent: int = 10):
        """
        Add file to recent files list.

        Args:
            filepath: File path to add
            max_recent: Maximum number of recent files to keep
        """
        recent = list(self.get("recent_files", default=[]))

        if filepath in recent:
            recent.remove(filepath)
        recent.insert(0, filepath)

        self.set("recent_files", value=recent[:max_recent])

    def get_recent_files(self, max_count: int = 10) -> list:
        """Recent files that still exist, newest first."""
        recent = self.get("recent_files", default=[])
        existing = [f for f in recent if os.path.exists(f)]
        return existing[:max_count]
