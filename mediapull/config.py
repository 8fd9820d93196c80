"""
Manages loading, saving, and validating the application configuration using Pydantic.

This module defines the configuration schema as a Pydantic model (`Settings`)
and provides a manager class (`ConfigManager`) to handle persistence to a JSON file.
"""

import json
import time
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, ValidationError

from .constants import COOKIE_FILE, DEFAULT_DOWNLOADS_ROOT


class Settings(BaseModel):
    """
    Defines the application's configuration schema using Pydantic.

    Engine-facing values such as `proxy` and `cookie_file` are passed to the
    engine verbatim; nothing here interprets them.
    """
    downloads_root: Path = Field(default_factory=lambda: DEFAULT_DOWNLOADS_ROOT)
    engine_path: Optional[Path] = None
    ffmpeg_path: Optional[Path] = None
    proxy: str = ''
    cookie_file: Path = Field(default_factory=lambda: COOKIE_FILE)
    embed_metadata: bool = True
    embed_thumbnail: bool = False
    default_parallelism: int = Field(default=4, ge=1, le=16)
    engine_ready_timeout: float = Field(default=30.0, gt=0)
    spawn_attempts: int = Field(default=5, ge=1, le=20)
    spawn_backoff: float = Field(default=0.5, ge=0)
    move_attempts: int = Field(default=3, ge=1, le=10)
    move_backoff: float = Field(default=1.0, ge=0)
    log_level: str = 'INFO'
    check_for_engine_updates: bool = False

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value

    @field_validator('proxy')
    @classmethod
    def validate_proxy(cls, value: str) -> str:
        return value.strip()

    @field_validator('engine_path', 'ffmpeg_path', mode='before')
    @classmethod
    def empty_path_is_none(cls, value):
        """Treats an empty string in the config file as 'not set'."""
        if value in ('', None):
            return None
        return value


class ConfigManager:
    """Handles loading and saving the application configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Loads config from file, merges with defaults, validates, and returns it.

        If the file doesn't exist, is invalid, or an error occurs, a default
        configuration is returned. Invalid files are backed up.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info("Config file not found. Creating with default settings.")
            default_settings = Settings()
            self.save(default_settings)
            return default_settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            return Settings.model_validate(config_data)
        except (ValidationError, json.JSONDecodeError, IOError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except IOError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            return Settings()

    def save(self, settings: Settings):
        """
        Saves the provided settings object to the config file.

        Args:
            settings: The Settings object to save.
        """
        try:
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except IOError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")
