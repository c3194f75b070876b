"""Configuration loading and validation utilities for selector healing."""

import math
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
import logging

from .models.healing_models import HealingConfiguration, DEFAULT_WEIGHTS
from .config import settings

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


class HealingConfigLoader:
    """Loads and validates healing configuration."""

    DEFAULT_CONFIG = {
        "healing": HealingConfiguration().to_dict()
    }

    def __init__(self, config_path: Optional[str] = None):
        """Initialize config loader with optional custom path."""
        self.config_path = Path(config_path or settings.HEALING_CONFIG_PATH)
        self._config_cache: Optional[HealingConfiguration] = None
        self._config_file_mtime: Optional[float] = None

    def load_config(self, force_reload: bool = False) -> HealingConfiguration:
        """Load and validate healing configuration.

        Args:
            force_reload: Force reload even if cached config exists

        Returns:
            HealingConfiguration: Validated configuration object

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if not force_reload and self._config_cache and self._is_config_current():
            return self._config_cache

        config_data = self._load_config_file()
        healing_config = self._parse_healing_config(config_data)
        validate_config(healing_config)

        self._config_cache = healing_config
        if self.config_path.exists():
            self._config_file_mtime = self.config_path.stat().st_mtime

        logger.info(f"Loaded healing configuration from {self.config_path}")
        return healing_config

    def save_config(self, config: HealingConfiguration) -> None:
        """Save configuration to file.

        Raises:
            ConfigurationError: If the configuration is invalid or cannot be written
        """
        validate_config(config)

        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                yaml.safe_dump({"healing": config.to_dict()}, f, default_flow_style=False, indent=2)
        except OSError as e:
            logger.error(f"Failed to save healing configuration: {e}")
            raise ConfigurationError(f"Configuration saving failed: {e}") from e

        self._config_cache = config
        self._config_file_mtime = self.config_path.stat().st_mtime
        logger.info(f"Saved healing configuration to {self.config_path}")

    def _load_config_file(self) -> Dict[str, Any]:
        """Load configuration from file or return defaults."""
        if not self.config_path.exists():
            logger.info(f"Config file {self.config_path} not found, using defaults")
            return self._deep_merge(self.DEFAULT_CONFIG, {})

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        return self._deep_merge(self.DEFAULT_CONFIG, config_data)

    def _parse_healing_config(self, config_data: Dict[str, Any]) -> HealingConfiguration:
        """Parse configuration data into HealingConfiguration object."""
        section = config_data.get("healing", {})
        known = set(HealingConfiguration().to_dict())
        unknown = sorted(set(section) - known)
        if unknown:
            raise ConfigurationError(f"Unknown healing configuration keys: {', '.join(unknown)}")

        try:
            return HealingConfiguration.from_dict(section)
        except TypeError as e:
            raise ConfigurationError(f"Invalid healing configuration: {e}") from e

    def _is_config_current(self) -> bool:
        """Check if cached config is still current."""
        if not self.config_path.exists():
            return self._config_file_mtime is None

        return self._config_file_mtime == self.config_path.stat().st_mtime

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result


def validate_config(config: HealingConfiguration) -> None:
    """Validate configuration values.

    Raises:
        ConfigurationError: If validation fails, listing every problem
    """
    errors = []

    for name in ("auto_heal_threshold", "review_threshold", "candidate_floor"):
        value = getattr(config, name)
        if not isinstance(value, (int, float)) or value < 0.0 or value > 1.0:
            errors.append(f"{name} must be between 0.0 and 1.0")

    if not errors:
        if config.review_threshold >= config.auto_heal_threshold:
            errors.append("review_threshold must be lower than auto_heal_threshold")
        if config.candidate_floor >= config.review_threshold:
            errors.append("candidate_floor must be lower than review_threshold")

    for name in ("review_candidates", "ignore_after_consecutive_misses", "max_candidates", "fragility_window"):
        value = getattr(config, name)
        if not isinstance(value, int) or value < 1:
            errors.append(f"{name} must be a positive integer")

    if isinstance(config.review_candidates, int) and isinstance(config.max_candidates, int):
        if config.review_candidates > config.max_candidates:
            errors.append("review_candidates cannot exceed max_candidates")

    unknown_terms = sorted(set(config.weights) - set(DEFAULT_WEIGHTS))
    if unknown_terms:
        errors.append(f"Unknown weight terms: {', '.join(unknown_terms)}")
    if any(w < 0 for w in config.weights.values()):
        errors.append("weights must be non-negative")
    elif not math.isclose(sum(config.weights.values()), 1.0, abs_tol=1e-6):
        errors.append("weights must sum to 1.0")

    if not config.test_id_attributes:
        errors.append("At least one test id attribute must be specified")
    elif len(config.test_id_attributes) != len(set(config.test_id_attributes)):
        errors.append("Duplicate test id attributes are not allowed")

    if errors:
        raise ConfigurationError("Configuration validation failed: " + "; ".join(errors))


# Global config loader instance
config_loader = HealingConfigLoader()


def get_healing_config(force_reload: bool = False) -> HealingConfiguration:
    """Get the current healing configuration."""
    return config_loader.load_config(force_reload)


def save_healing_config(config: HealingConfiguration) -> None:
    """Save healing configuration."""
    config_loader.save_config(config)
