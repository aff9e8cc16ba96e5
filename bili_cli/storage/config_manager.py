"""
Manages loading, validation, and migration of the INI configuration file.
"""

import configparser
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from bili_cli.exceptions import ConfigurationError
from bili_cli.models.config import DownloadConfig

log = logging.getLogger(__name__)


def _to_ini(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ",".join(map(str, value))
    # configparser uses % for interpolation, so we must escape it
    return str(value).replace("%", "%%")


class ConfigManager:
    """Handles all operations related to the application's INI config file."""

    def __init__(self, config_file_path: Path):
        self.config_file_path = config_file_path
        self._parser = configparser.ConfigParser()

    @property
    def session_path(self) -> Path:
        """The session record lives next to the config file."""
        return self.config_file_path.parent / "session.json"

    def load_config(self, cli_options: dict[str, Any] | None = None) -> DownloadConfig:
        """
        Loads configuration from the INI file, applies CLI overrides, and validates it.
        A missing file is created with default values first.

        Args:
            cli_options: A dictionary of options provided via the command line.

        Returns:
            A validated DownloadConfig object.

        Raises:
            ConfigurationError: If the config file is invalid or validation fails.
        """
        if not self.config_file_path.is_file():
            log.info(f"Creating default configuration at '{self.config_file_path}'.")
            self.save_new_config({})

        try:
            self._parser.read(self.config_file_path, encoding="utf-8")
        except configparser.Error as e:
            raise ConfigurationError(f"Error parsing configuration file: {e}") from e

        if self._migrate_if_needed():
            log.info(
                "[yellow]Configuration file was updated with new default values."
                "[/yellow]"
            )

        config_from_file = self._get_config_as_dict()

        # Override with CLI options
        if cli_options:
            config_from_file.update(
                {k: v for k, v in cli_options.items() if v is not None}
            )

        try:
            config_dir = self.config_file_path.parent
            return DownloadConfig(**config_from_file, config_path=str(config_dir))
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    def save_new_config(self, settings: dict[str, Any]) -> None:
        """
        Creates and saves a new configuration file.

        Args:
            settings: A dictionary of settings to save.
        """
        config = configparser.ConfigParser()
        config["DEFAULT"] = {}

        # Get all possible keys from the model to create a complete default config
        defaults = DownloadConfig()
        for key in sorted(DownloadConfig.get_ini_keys()):
            value = settings.get(key, getattr(defaults, key))
            config["DEFAULT"][key] = _to_ini(value)

        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, "w", encoding="utf-8") as configfile:
                config.write(configfile)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration file: {e}") from e

    def _get_config_as_dict(self) -> dict[str, Any]:
        """Reads the 'DEFAULT' section of the INI file into a dictionary."""
        section = self._parser["DEFAULT"]
        defaults = DownloadConfig()
        try:
            return {
                "cookie": section.get("cookie", ""),
                "quality": section.get("quality", defaults.quality),
                "codec_preference": [
                    c.strip()
                    for c in section.get("codec_preference", "").split(",")
                    if c.strip()
                ],
                "output_dir": section.get("output_dir", defaults.output_dir),
                "output_template": section.get(
                    "output_template", defaults.output_template
                ),
                "max_workers": section.getint("max_workers", defaults.max_workers),
                "max_concurrent_jobs": section.getint(
                    "max_concurrent_jobs", defaults.max_concurrent_jobs
                ),
                "segment_size": section.getint("segment_size", defaults.segment_size),
                "skip_existing": section.getboolean(
                    "skip_existing", defaults.skip_existing
                ),
                "max_segment_attempts": section.getint(
                    "max_segment_attempts", defaults.max_segment_attempts
                ),
                "retry_attempts": section.getint(
                    "retry_attempts", defaults.retry_attempts
                ),
                "retry_base_delay": section.getfloat(
                    "retry_base_delay", defaults.retry_base_delay
                ),
                "request_timeout": section.getfloat(
                    "request_timeout", defaults.request_timeout
                ),
                "risk_cooldown": section.getfloat(
                    "risk_cooldown", defaults.risk_cooldown
                ),
                "risk_threshold": section.getint(
                    "risk_threshold", defaults.risk_threshold
                ),
                "ffmpeg_path": section.get("ffmpeg_path", defaults.ffmpeg_path),
                "verify_container": section.getboolean(
                    "verify_container", defaults.verify_container
                ),
            }
        except ValueError as e:
            raise ConfigurationError(f"Invalid value in configuration file: {e}") from e

    def _migrate_if_needed(self) -> bool:
        """Adds missing default values to an existing config file."""
        defaults = DownloadConfig()
        needs_saving = False

        config_section = self._parser["DEFAULT"]

        for key in sorted(DownloadConfig.get_ini_keys()):
            if key not in config_section:
                config_section[key] = _to_ini(getattr(defaults, key))
                needs_saving = True
                log.debug(
                    f"Migrating config: added missing key '{key}' with "
                    f"value '{config_section[key]}'."
                )

        if needs_saving:
            try:
                with open(self.config_file_path, "w", encoding="utf-8") as f:
                    self._parser.write(f)
            except OSError as e:
                log.error(f"Could not save migrated configuration file: {e}")
                return False

        return needs_saving
