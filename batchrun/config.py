"""
Configuration management for batchrun.

Loads and validates $BATCHRUN_HOME/config.yaml (default
~/.config/batchrun/config.yaml). The config object is created once per
process and passed explicitly to whatever needs it.

Example config.yaml:

    repository_path: ~/.local/share/batchrun/batchrun.db
    definitions_dir: ~/.config/batchrun/jobs
    chunk_size: 100
    failure_policy: abort_step
    log_level: INFO
    log_format: pretty
    log_file: ~/.local/share/batchrun/logs/batchrun-{date}.log
    env_file: ~/.config/batchrun/.env

Environment overrides: BATCHRUN_REPOSITORY_PATH, BATCHRUN_CHUNK_SIZE,
BATCHRUN_LOG_LEVEL.
"""

import os
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from batchrun.errors import BatchError

LOG_FORMATS = ("pretty", "structured")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
FAILURE_POLICIES = ("abort_step", "skip_chunk")


class ConfigError(BatchError):
    """Configuration validation error."""
    pass


def get_batchrun_home() -> Path:
    """Directory holding config.yaml, from BATCHRUN_HOME or ~/.config/batchrun."""
    home = os.environ.get("BATCHRUN_HOME")
    if home:
        return Path(home).expanduser()
    return Path("~/.config/batchrun").expanduser()


@dataclass
class BatchConfig:
    """
    Process-wide batchrun configuration.

    Attributes:
        repository_path: SQLite file of the job repository
        definitions_dir: Directory of YAML job definitions
        chunk_size: Default chunk size for chunk steps that do not set one
        failure_policy: Default failure policy ("abort_step" or "skip_chunk")
        log_level: Logging level
        log_format: "pretty" (rich console) or "structured" (JSON)
        log_file: Optional log file; "{date}" is replaced with today's date
        env_file: Optional .env file loaded into the environment
    """
    repository_path: str = "~/.local/share/batchrun/batchrun.db"
    definitions_dir: str = "~/.config/batchrun/jobs"
    chunk_size: int = 10
    failure_policy: str = "abort_step"
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    env_file: Optional[str] = None

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If a value is invalid
        """
        if isinstance(self.chunk_size, bool) or not isinstance(self.chunk_size, int) or self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be a positive integer, got {self.chunk_size!r}")
        if self.failure_policy not in FAILURE_POLICIES:
            raise ConfigError(
                f"failure_policy must be one of {', '.join(FAILURE_POLICIES)}, got {self.failure_policy!r}"
            )
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {', '.join(LOG_FORMATS)}, got {self.log_format!r}")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}")
        if not self.repository_path:
            raise ConfigError("repository_path is required")

    def get_repository_path(self) -> Path:
        return Path(self.repository_path).expanduser()

    def get_definitions_dir(self) -> Path:
        return Path(self.definitions_dir).expanduser()

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path with date interpolation."""
        if not self.log_file:
            return None
        log_output = self.log_file.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return Path(log_output).expanduser()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**data)


def _apply_env_overrides(config: BatchConfig) -> None:
    if os.environ.get("BATCHRUN_REPOSITORY_PATH"):
        config.repository_path = os.environ["BATCHRUN_REPOSITORY_PATH"]
    if os.environ.get("BATCHRUN_LOG_LEVEL"):
        config.log_level = os.environ["BATCHRUN_LOG_LEVEL"]
    if os.environ.get("BATCHRUN_CHUNK_SIZE"):
        try:
            config.chunk_size = int(os.environ["BATCHRUN_CHUNK_SIZE"])
        except ValueError:
            raise ConfigError(
                f"BATCHRUN_CHUNK_SIZE must be an integer, got {os.environ['BATCHRUN_CHUNK_SIZE']!r}"
            )


def load_config(config_path: Optional[Path] = None) -> BatchConfig:
    """
    Load batchrun configuration from YAML.

    Args:
        config_path: Path to config file. Defaults to $BATCHRUN_HOME/config.yaml

    Returns:
        Validated BatchConfig

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the config is invalid
    """
    if config_path is None:
        config_path = get_batchrun_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(f"batchrun config.yaml not found at {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    config = BatchConfig.from_dict(data)

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path, override=False)

    _apply_env_overrides(config)
    config.validate()
    return config


def load_config_or_default(config_path: Optional[Path] = None) -> BatchConfig:
    """
    Load the config file, falling back to defaults when it does not exist.

    Environment overrides apply in both cases. Invalid files still raise
    ConfigError.
    """
    try:
        return load_config(config_path)
    except FileNotFoundError:
        config = BatchConfig()
        _apply_env_overrides(config)
        config.validate()
        return config
