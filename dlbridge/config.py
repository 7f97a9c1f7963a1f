"""
Settings for the download engine and the desktop app, persisted as JSON.

`Settings` is a pydantic model so every value read from disk is validated
before the engine sees it; `ConfigManager` owns the file on disk.
"""

import json
import sys
import time
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class Settings(BaseModel):
    """
    Validated application settings. All durations are in seconds.

    Attributes:
        download_dir: Where the worker writes finished files.
        max_concurrent_downloads: Simultaneous transfers in the worker.
        worker_command: Overrides the worker command line; empty runs the bundled worker.
        command_timeout: How long a command may wait for the worker's response.
        preparation_timeout: How long a job may sit in Preparing before it reverts to Idle.
        stale_check_interval: Period of the staleness sweep.
        stale_warning_after: Silence after which a download is flagged as possibly stuck.
        stale_complete_after: Silence after which a download is assumed complete.
        success_cooldown: Delay before a downloaded control returns to Idle.
        partial_cooldown: The same, for downloads where some items failed.
        error_cooldown: The same, for failed downloads; None keeps the error until the user retries.
        log_level: Minimum level written to the log file.
    """
    model_config = ConfigDict(validate_assignment=True)

    download_dir: Path = Field(default_factory=Path.home)
    max_concurrent_downloads: int = Field(default=4, ge=1, le=20)
    worker_command: List[str] = Field(default_factory=list)
    command_timeout: float = Field(default=15.0, gt=0)
    preparation_timeout: float = Field(default=10.0, gt=0)
    stale_check_interval: float = Field(default=60.0, gt=0)
    stale_warning_after: float = Field(default=300.0, gt=0)
    stale_complete_after: float = Field(default=600.0, gt=0)
    success_cooldown: float = Field(default=10.0, ge=0)
    partial_cooldown: float = Field(default=30.0, ge=0)
    error_cooldown: Optional[float] = Field(default=None, ge=0)
    log_level: str = 'INFO'

    @field_validator('log_level')
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level {value!r}; expected one of {', '.join(LOG_LEVELS)}.")
        return level

    @field_validator('download_dir', mode='before')
    @classmethod
    def existing_download_dir(cls, value: Any) -> Path:
        """A download folder that has since disappeared falls back to the home directory."""
        folder = Path(value)
        return folder if folder.is_dir() else Path.home()

    @model_validator(mode='after')
    def check_stale_thresholds(self) -> 'Settings':
        if self.stale_complete_after <= self.stale_warning_after:
            raise ValueError("stale_complete_after must be greater than stale_warning_after.")
        return self

    def resolved_worker_command(self) -> List[str]:
        """The command used to launch the background worker."""
        if self.worker_command:
            return list(self.worker_command)
        return [
            sys.executable, '-m', 'dlbridge.worker',
            '--output-dir', str(self.download_dir),
            '--max-concurrent', str(self.max_concurrent_downloads),
        ]


class ConfigManager:
    """Reads and writes the settings file, never letting a bad file stop the app."""

    def __init__(self, config_path: Path):
        self.config_path = config_path
        self.logger = logging.getLogger(__name__)
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Settings:
        """
        Returns the stored settings.

        A missing file is created with defaults. An unreadable or invalid file
        is moved aside as `<name>.<epoch>.bak` and defaults are used instead.
        """
        if not self.config_path.exists():
            self.logger.info(f"No settings at {self.config_path}; writing defaults.")
            settings = Settings()
            self.save(settings)
            return settings

        try:
            return Settings.model_validate(self._read())
        except (ValidationError, json.JSONDecodeError, OSError) as e:
            self.logger.error(f"Settings file {self.config_path} is unusable ({e}); falling back to defaults.")
            self._quarantine()
            return Settings()

    def _read(self) -> Dict[str, Any]:
        return json.loads(self.config_path.read_text(encoding='utf-8'))

    def _quarantine(self):
        backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
        try:
            self.config_path.replace(backup_path)
            self.logger.info(f"Moved the unusable settings file to {backup_path}")
        except OSError as e:
            self.logger.error(f"Could not move the unusable settings file aside: {e}")

    def save(self, settings: Settings):
        try:
            self.config_path.write_text(settings.model_dump_json(indent=4), encoding='utf-8')
        except OSError as e:
            self.logger.error(f"Could not save settings to {self.config_path}: {e}")
