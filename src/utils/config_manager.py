"""
Configuration Manager

This module handles persistent storage and retrieval of measurement engine settings.
Settings are stored in a JSON file in the user's application data directory, or
at an explicit path.

Inputs:
    - Settings (undo history bound, display unit, export precision, default style, etc.)

Outputs:
    - Loaded configuration values
    - Saved configuration file

Requirements:
    - json module (standard library)
    - pathlib module (standard library)
    - os module (standard library)
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from tools.measurement_items import AnnotationStyle

VALID_DISPLAY_UNITS = ["mm", "cm", "in"]


class ConfigManager:
    """
    Manages measurement engine configuration.

    Handles loading and saving of settings including:
    - Undo history bound
    - Display unit for lengths and areas
    - Export float precision
    - Minimum vertices for freehand/polygonal ROIs
    - Default annotation style
    - Hit test tolerance
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None,
                 config_filename: str = "measurement_engine_config.json"):
        """
        Initialize the configuration manager.

        Args:
            config_path: Explicit path of the configuration file
            config_filename: Name of the configuration file in the application data directory
                             (used when config_path is not given)
        """
        if config_path is not None:
            self.config_path = Path(config_path)
            self.config_dir = self.config_path.parent
        else:
            # Get application data directory
            if os.name == 'nt':  # Windows
                app_data = os.getenv('APPDATA', os.path.expanduser('~'))
                self.config_dir = Path(app_data) / "MeasurementEngine"
            else:  # Mac/Linux
                self.config_dir = Path.home() / ".config" / "MeasurementEngine"
            self.config_path = self.config_dir / config_filename

        # Default configuration values
        self.default_config = {
            "max_undo_history": 100,
            "display_unit": "mm",  # mm, cm or in
            "export_float_precision": 4,  # Decimal places in JSON/CSV export
            "freeform_min_points": 3,  # Vertices needed to finish a freehand/polygonal ROI
            "default_style": {
                "line_width": 2.0,
                "color_red": 1.0,  # Yellow default
                "color_green": 1.0,
                "color_blue": 0.0,
                "opacity": 1.0,
                "font_size": 12.0,
            },
            "hit_test_tolerance": 5.0,  # Image pixels
        }

        # Load configuration
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """
        Load configuration from file, or return defaults if file doesn't exist.

        Returns:
            Dictionary containing configuration values
        """
        if self.config_path.exists():
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded_config = json.load(f)
                if not isinstance(loaded_config, dict):
                    raise ValueError("top-level JSON value is not an object")
                # Merge with defaults to ensure all keys exist
                config = self._defaults()
                config.update(loaded_config)
                return config
            except (json.JSONDecodeError, ValueError, IOError) as e:
                # If file is corrupted, use defaults
                print(f"Warning: Could not load config file: {e}")
                return self._defaults()
        else:
            # File doesn't exist, use defaults
            return self._defaults()

    def _defaults(self) -> Dict[str, Any]:
        config = self.default_config.copy()
        config["default_style"] = dict(self.default_config["default_style"])
        return config

    def save_config(self) -> bool:
        """
        Save current configuration to file.

        Returns:
            True if save was successful, False otherwise
        """
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=4, ensure_ascii=False)
            return True
        except IOError as e:
            print(f"Error saving config file: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            key: Configuration key to retrieve
            default: Default value if key doesn't exist

        Returns:
            Configuration value or default
        """
        return self.config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """
        Set a configuration value.

        Args:
            key: Configuration key to set
            value: Value to set
        """
        self.config[key] = value

    def get_max_undo_history(self) -> int:
        """
        Get the undo history bound.

        Returns:
            Maximum number of undoable actions (never negative)
        """
        try:
            return max(0, int(self.config.get("max_undo_history", 100)))
        except (TypeError, ValueError):
            return 100

    def set_max_undo_history(self, limit: int) -> None:
        """
        Set the undo history bound.

        Args:
            limit: Maximum number of undoable actions
        """
        if limit >= 0:
            self.config["max_undo_history"] = int(limit)
            self.save_config()

    def get_display_unit(self) -> str:
        """
        Get the display unit for lengths.

        Returns:
            Unit name ("mm", "cm" or "in")
        """
        unit = self.config.get("display_unit", "mm")
        return unit if unit in VALID_DISPLAY_UNITS else "mm"

    def set_display_unit(self, unit: str) -> None:
        if unit in VALID_DISPLAY_UNITS:
            self.config["display_unit"] = unit
            self.save_config()

    def get_default_style(self) -> AnnotationStyle:
        """
        Get the style applied to new measurements.

        Unknown keys in the stored style are ignored; out-of-range values are
        clamped by AnnotationStyle.

        Returns:
            AnnotationStyle
        """
        stored = self.config.get("default_style") or {}
        defaults = self.default_config["default_style"]
        values = {}
        for key, default in defaults.items():
            try:
                values[key] = float(stored.get(key, default))
            except (TypeError, ValueError, AttributeError):
                values[key] = default
        return AnnotationStyle(**values)

    def set_default_style(self, style: AnnotationStyle) -> None:
        self.config["default_style"] = {
            "line_width": style.line_width,
            "color_red": style.color_red,
            "color_green": style.color_green,
            "color_blue": style.color_blue,
            "opacity": style.opacity,
            "font_size": style.font_size,
        }
        self.save_config()

    def get_hit_test_tolerance(self) -> float:
        return float(self.config.get("hit_test_tolerance", 5.0))
