"""
Configuration Manager for the parcel measurement pipeline

Handles YAML configuration loading, validation, hot-reload support and dotted
key access.

Features:
- YAML file loading with validation
- Hot-reload capability (MD5 change detection + callbacks)
- Nested config access with defaults
- Human-readable summary for startup logs
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

# (dotted key, lower bound, upper bound); None = unbounded
_RANGE_RULES = (
    ("calibration.hfov_deg", 0.0, 180.0),
    ("calibration.vfov_deg", 0.0, 180.0),
    ("calibration.tof_hfov_deg", 0.0, 180.0),
    ("calibration.tof_vfov_deg", 0.0, 180.0),
    ("roi.min_span_px", 0, None),
    ("roi.min_roi_samples", 0, None),
    ("plane.ring_pad_px", 1, None),
    ("plane.ransac_iters", 1, None),
    ("plane.inlier_thresh_mm", 0.0, None),
    ("plane.checkpoint_every", 1, None),
    ("segmentation.height_thresh_mm", 0.0, None),
    ("segmentation.roi_pad_px", 0, None),
    ("orientation.height_percentile", 0.0, 1.0),
    ("dimensions.min_height_gap_mm", 0.0, None),
)


class ConfigManager:
    """
    Configuration manager with hot-reload support.

    Handles loading, validation, and runtime updates of YAML configuration files.
    """

    def __init__(self, config_path: Path, logger=None):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to YAML configuration file
            logger: Optional logger instance (module logger if None)
        """
        self.config_path = Path(config_path)
        self.logger = logger or logging.getLogger(__name__)
        self.config: Dict[str, Any] = {}
        self._file_hash: Optional[str] = None
        self._change_callbacks: List[Callable[[Dict[str, Any]], None]] = []

        self.loaded = self.load()

    def load(self) -> bool:
        """
        Load configuration from YAML file.

        Returns:
            True if loaded successfully, False otherwise
        """
        if not self.config_path.exists():
            self.logger.error(f"Config file not found: {self.config_path}")
            return False

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            self.logger.error(f"Failed to parse YAML: {e}")
            return False
        except OSError as e:
            self.logger.error(f"Failed to load config: {e}")
            return False

        if not isinstance(data, dict):
            self.logger.error(f"Config root must be a mapping, got {type(data).__name__}")
            return False

        self.config = data
        self._file_hash = self._compute_file_hash()
        self.logger.info(f"[OK] Loaded configuration from: {self.config_path.name}")
        return True

    def reload(self) -> bool:
        """
        Reload configuration from file if changed.

        Returns:
            True if config was reloaded (file changed), False if unchanged or error
        """
        if not self.has_changed():
            self.logger.debug("Config file unchanged, skipping reload")
            return False

        self.logger.info("Config file changed, reloading...")
        old_config = dict(self.config)

        if self.load():
            self._notify_changes(old_config, self.config)
            return True
        return False

    def has_changed(self) -> bool:
        """True if the file content differs from the last load."""
        return self._compute_file_hash() != self._file_hash

    def _compute_file_hash(self) -> Optional[str]:
        """MD5 of the config file for change detection."""
        if not self.config_path.exists():
            return None
        try:
            with open(self.config_path, 'rb') as f:
                return hashlib.md5(f.read()).hexdigest()
        except OSError:
            return None

    def register_change_callback(self, callback: Callable[[Dict[str, Any]], None]):
        """
        Register a callback to be notified of config changes.

        Args:
            callback: Function to call with new config when changes detected
        """
        self._change_callbacks.append(callback)

    def _notify_changes(self, old_config: Dict, new_config: Dict):
        changed_keys = sorted(
            key for key in set(old_config) | set(new_config)
            if old_config.get(key) != new_config.get(key)
        )
        if not changed_keys:
            return

        self.logger.info(f"Config changes detected in: {', '.join(changed_keys)}")
        for callback in self._change_callbacks:
            callback(new_config)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by key.

        Args:
            key: Configuration key (nested keys with dots, e.g. "plane.ransac_iters")
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        value: Any = self.config
        for k in key.split('.'):
            if not isinstance(value, dict):
                return default
            value = value.get(k)
            if value is None:
                return default
        return value

    def set(self, key: str, value: Any):
        """Set configuration value (in-memory only, does not save to file)."""
        keys = key.split('.')
        config = self.config
        for k in keys[:-1]:
            if not isinstance(config.get(k), dict):
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value

    def validate(self) -> bool:
        """
        Validate value types and ranges of known keys.

        Returns:
            True if valid, False otherwise (logs errors)
        """
        errors = []

        for key, lo, hi in _RANGE_RULES:
            value = self.get(key)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                errors.append(f"{key} must be a number, got {value!r}")
                continue
            if lo is not None and value < lo:
                errors.append(f"{key}={value} below minimum {lo}")
            if hi is not None and value > hi:
                errors.append(f"{key}={value} above maximum {hi}")

        lo_mm = self.get('depth.default_min_mm')
        hi_mm = self.get('depth.default_max_mm')
        if lo_mm is not None and hi_mm is not None and float(hi_mm) <= float(lo_mm):
            errors.append(f"depth.default_max_mm ({hi_mm}) must exceed default_min_mm ({lo_mm})")

        explicit = [self.get(f'calibration.{k}') for k in ('fx', 'fy', 'cx', 'cy')]
        if any(v is not None for v in explicit) and any(v is None for v in explicit):
            errors.append("calibration.fx/fy/cx/cy must be given together")

        if errors:
            self.logger.error("Configuration validation failed:")
            for error in errors:
                self.logger.error(f"  - {error}")
            return False

        self.logger.info("[OK] Configuration validation passed")
        return True

    def save(self, path: Optional[Path] = None) -> bool:
        """
        Save current configuration to YAML file.

        Args:
            path: Optional path to save to (defaults to the loaded config_path)

        Returns:
            True if saved successfully
        """
        save_path = Path(path) if path else self.config_path
        try:
            with open(save_path, 'w', encoding='utf-8') as f:
                yaml.safe_dump(self.config, f, default_flow_style=False, sort_keys=False)
        except OSError as e:
            self.logger.error(f"Failed to save config: {e}")
            return False

        if save_path == self.config_path:
            self._file_hash = self._compute_file_hash()
        self.logger.info(f"[OK] Saved configuration to: {save_path}")
        return True

    def get_summary(self) -> str:
        """Multi-line human-readable summary of the current configuration."""
        modified = (
            datetime.fromtimestamp(self.config_path.stat().st_mtime)
            if self.config_path.exists() else "N/A"
        )
        lines = [
            "=" * 70,
            "MEASUREMENT CONFIGURATION SUMMARY",
            "=" * 70,
            f"Config file: {self.config_path.name}",
            f"Last modified: {modified}",
            "",
            "Calibration:",
            f"  RGB FOV: {self.get('calibration.hfov_deg', 'N/A')} x {self.get('calibration.vfov_deg', 'N/A')} deg",
            f"  Explicit fx/fy: {self.get('calibration.fx', 'N/A')} / {self.get('calibration.fy', 'N/A')}",
            f"  Align offset: ({self.get('calibration.align_dx_px', 0.0)}, {self.get('calibration.align_dy_px', 0.0)}) px",
            f"  Optical offset: ({self.get('calibration.optical_dx_mm', 'N/A')}, {self.get('calibration.optical_dy_mm', 'N/A')}) mm",
            "",
            "Plane fit:",
            f"  RANSAC iters: {self.get('plane.ransac_iters', 'N/A')}",
            f"  Inlier threshold: {self.get('plane.inlier_thresh_mm', 'N/A')} mm",
            f"  Ring pad: {self.get('plane.ring_pad_px', 'N/A')} px",
            "",
            "Thresholds:",
            f"  Foreground height: {self.get('segmentation.height_thresh_mm', 'N/A')} mm",
            f"  Height evidence: {self.get('dimensions.min_height_gap_mm', 'N/A')} mm",
            "=" * 70,
        ]
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"ConfigManager(path={self.config_path}, keys={len(self.config)})"
