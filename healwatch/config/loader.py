"""Configuration file loading for YAML and JSON formats."""

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog
import yaml

from ..core.config import MonitoringSettings
from ..core.exceptions import ConfigurationError

logger = structlog.get_logger(__name__)


class ConfigLoader:
    """Load monitoring settings from YAML/JSON files."""

    @staticmethod
    def load_config(config_path: str | Path, config_type: str | None = None) -> dict[str, Any]:
        """Load configuration from file.

        Args:
            config_path: Path to configuration file
            config_type: Optional type override ('yaml', 'json')

        Returns:
            Configuration dictionary

        Raises:
            FileNotFoundError: If config file doesn't exist
            ConfigurationError: If the format is unsupported or the file is malformed
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        file_type = (config_type or config_path.suffix.lstrip(".")).lower()

        if file_type in ("yaml", "yml"):
            config = ConfigLoader._load_yaml(config_path)
        elif file_type == "json":
            config = ConfigLoader._load_json(config_path)
        else:
            raise ConfigurationError(f"Unsupported config format: {file_type}")

        if not isinstance(config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")
        return config

    @staticmethod
    def _load_yaml(config_path: Path) -> Any:
        try:
            with open(config_path, encoding="utf-8") as f:
                config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
        logger.info("Loaded YAML config", path=str(config_path))
        return config

    @staticmethod
    def _load_json(config_path: Path) -> Any:
        try:
            with open(config_path, encoding="utf-8") as f:
                config = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {config_path}: {e}") from e
        logger.info("Loaded JSON config", path=str(config_path))
        return config

    @staticmethod
    def create_settings(
        config_dict: Mapping[str, Any], base: MonitoringSettings | None = None
    ) -> MonitoringSettings:
        """Create MonitoringSettings from the ``monitoring`` section of a config.

        Values in the file override ``base`` (the environment-derived
        settings by default); nested sections are merged key by key.
        """
        from ..core.config import settings as default_settings

        base = base or default_settings
        section = config_dict.get("monitoring", config_dict)
        if not isinstance(section, Mapping):
            raise ConfigurationError("'monitoring' section must be a mapping")

        merged = base.redacted()
        # redacted() masks secrets; start nested sections from the real values
        merged["notifications"] = {
            name: getattr(base.notifications, name)
            for name in base.notifications.__dataclass_fields__
        }
        for key, value in section.items():
            if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value

        logger.debug("Created monitoring settings", overrides=sorted(section))
        return MonitoringSettings.from_mapping(merged)

    @staticmethod
    def save_example_config(output_path: str | Path, format: str = "yaml") -> None:
        """Save an example configuration file.

        Args:
            output_path: Path to save example config
            format: Format to save ('yaml' or 'json')
        """
        output_path = Path(output_path)
        example = MonitoringSettings().redacted()
        example_config = {"monitoring": example}

        if format.lower() == "yaml":
            with open(output_path, "w", encoding="utf-8") as f:
                yaml.dump(example_config, f, default_flow_style=False, sort_keys=False, indent=2)
        elif format.lower() == "json":
            with open(output_path, "w", encoding="utf-8") as f:
                json.dump(example_config, f, indent=2, sort_keys=True)
        else:
            raise ConfigurationError(f"Unsupported format: {format}")

        logger.info("Saved example config", path=str(output_path), format=format)


def load_settings_from_file(config_path: str | Path) -> MonitoringSettings:
    """Convenience function to load monitoring settings from a file."""
    return ConfigLoader.create_settings(ConfigLoader.load_config(config_path))
