"""
Configuration management for TempoKey.

Loads and validates TOML config against strict bounds.
All tunable parameters are bounded and validated at startup.
"""

import copy
import os
from pathlib import Path
from typing import Dict, Any, Optional, Tuple
import toml
import logging

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when config validation fails."""
    pass


class Config:
    """Configuration loader and validator."""

    # Numeric bounds per parameter. Range-pair parameters use the "range" marker.
    PARAM_BOUNDS = {
        "analysis": {
            "bpm_range": ("range", (30, 300)),
            "plausible_bpm_range": ("range", (30, 300)),
            "silence_threshold": (0.0, 0.1),
            "snap_tolerance_bpm": (0.0, 5.0),
            "agreement_tolerance_bpm": (0.5, 20.0),
            "min_onset_spacing_ms": (10, 500),
            "frame_size": (256, 8192),
            "hop_size": (64, 4096),
            "max_analysis_seconds": (5, 1800),
            "primary_confidence_threshold": (0.0, 1.0),
        },
        "key_detection": {
            "window_size": (512, 16384),
            "min_pitch_hz": (20, 1000),
            "max_pitch_hz": (200, 8000),
            "max_analysis_seconds": (1, 600),
            "max_windows": (10, 20000),
            "pitches_per_window": (1, 6),
        },
        "cache": {
            "max_entries": (1, 10000),
            "max_age_hours": (0.01, 24 * 30),
            "sweep_interval_seconds": (1, 86400),
            "hash_chunk_bytes": (512, 1024 * 1024),
        },
        "processing": {
            "timeout_seconds": (0.001, 3600),
            "max_workers": (2, 32),
            "memory_safety_margin": (1.0, 10.0),
        },
    }

    BACKENDS = ("auto", "essentia", "aubio", "none")

    DEFAULT_CONFIG = {
        "config_version": "1.0",
        "analysis": {
            "bpm_range": [60, 200],
            "plausible_bpm_range": [70, 180],
            "silence_threshold": 0.001,
            "snap_tolerance_bpm": 2.0,
            "agreement_tolerance_bpm": 5.0,
            "min_onset_spacing_ms": 50,
            "frame_size": 1024,
            "hop_size": 512,
            "max_analysis_seconds": 120,
            "primary_confidence_threshold": 0.2,
        },
        "key_detection": {
            "window_size": 2048,
            "min_pitch_hz": 80,
            "max_pitch_hz": 2000,
            "max_analysis_seconds": 30,
            "max_windows": 600,
            "pitches_per_window": 3,
        },
        "cache": {
            "enabled": True,
            "max_entries": 50,
            "max_age_hours": 24,
            "sweep_interval_seconds": 300,
            "hash_chunk_bytes": 8192,
        },
        "processing": {
            "timeout_seconds": 30,
            "max_workers": 4,
            "memory_safety_margin": 1.5,
            "backend": "auto",
        },
    }

    def __init__(self, config_dict: Optional[Dict[str, Any]] = None):
        """Initialize config from dictionary (defaults when None)."""
        if config_dict is None:
            config_dict = copy.deepcopy(self.DEFAULT_CONFIG)
        self.data = config_dict
        self._validate()

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "Config":
        """
        Load config from TOML file.

        Args:
            config_path: Path to tempokey.toml. If None, uses TEMPOKEY_CONFIG_PATH env var
                        or defaults to configs/tempokey.toml.

        Returns:
            Config instance.

        Raises:
            ConfigError: If config is invalid or unreadable.
        """
        if config_path is None:
            config_path = os.getenv("TEMPOKEY_CONFIG_PATH", "configs/tempokey.toml")

        config_path = Path(config_path)

        if not config_path.exists():
            logger.warning(f"Config file not found: {config_path}. Using defaults.")
            return cls(copy.deepcopy(cls.DEFAULT_CONFIG))

        try:
            config_dict = toml.load(config_path)
        except Exception as e:
            raise ConfigError(f"Failed to load config from {config_path}: {e}")

        logger.info(f"Loaded config from {config_path}")
        return cls(config_dict)

    def _validate(self) -> None:
        """
        Validate all config parameters against PARAM_BOUNDS.

        Raises:
            ConfigError: If any parameter is out of bounds.
        """
        for section, params in self.PARAM_BOUNDS.items():
            if section not in self.data:
                logger.warning(f"Missing config section: {section}. Using defaults.")
                self.data[section] = copy.deepcopy(self.DEFAULT_CONFIG.get(section, {}))
                continue

            section_data = self.data[section]

            for param, bounds in params.items():
                if param not in section_data:
                    default_val = self.DEFAULT_CONFIG.get(section, {}).get(param)
                    if default_val is not None:
                        logger.warning(f"Missing param {section}.{param}. Using default: {default_val}")
                        section_data[param] = copy.deepcopy(default_val)
                    continue

                value = section_data[param]

                if bounds[0] == "range":
                    self._validate_range(section, param, value, bounds[1])
                    continue

                min_val, max_val = bounds
                if not isinstance(value, (int, float)) or isinstance(value, bool):
                    raise ConfigError(f"Parameter {section}.{param}={value!r} is not numeric")
                if not (min_val <= value <= max_val):
                    raise ConfigError(
                        f"Parameter {section}.{param}={value} out of bounds "
                        f"[{min_val}, {max_val}]"
                    )

        # Sections without numeric bounds still get their defaults filled in
        for param, default_val in self.DEFAULT_CONFIG["cache"].items():
            self.data["cache"].setdefault(param, default_val)
        for param, default_val in self.DEFAULT_CONFIG["processing"].items():
            self.data["processing"].setdefault(param, default_val)

        backend = self.data["processing"]["backend"]
        if backend not in self.BACKENDS:
            raise ConfigError(f"Unknown backend {backend!r}; expected one of {self.BACKENDS}")

        key = self.data["key_detection"]
        if key["min_pitch_hz"] >= key["max_pitch_hz"]:
            raise ConfigError("key_detection.min_pitch_hz must be below max_pitch_hz")

        analysis = self.data["analysis"]
        if analysis["hop_size"] > analysis["frame_size"]:
            raise ConfigError("analysis.hop_size must not exceed analysis.frame_size")

        logger.debug("✅ Config validation passed")

    @staticmethod
    def _validate_range(section: str, param: str, value: Any, limits: Tuple[float, float]) -> None:
        """Validate a [low, high] pair parameter."""
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise ConfigError(f"Parameter {section}.{param} must be a [min, max] pair, got {value!r}")
        low, high = value
        lo_limit, hi_limit = limits
        if not (lo_limit <= low < high <= hi_limit):
            raise ConfigError(
                f"Parameter {section}.{param}={list(value)} must satisfy "
                f"{lo_limit} <= min < max <= {hi_limit}"
            )

    def get(self, section: str, param: str, default: Any = None) -> Any:
        """Get a config parameter safely."""
        return self.data.get(section, {}).get(param, default)

    def __getitem__(self, section: str) -> Dict[str, Any]:
        """Allow dict-like access: config["analysis"]"""
        return self.data.get(section, {})

    def __repr__(self) -> str:
        version = self.data.get('config_version', 'unknown')
        return f"Config(version={version})"
