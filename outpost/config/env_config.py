"""
Environment Variable Configuration with Validation

Every agent setting can be overridden through an ``OUTPOST_*`` environment
variable. Values are typed, defaulted and validated here.

Usage:
    from outpost.config.env_config import overrides, validate_config

    settings = overrides()  # only the variables set in the environment
    validate_config()  # raises ConfigError listing every invalid variable
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from outpost.errors import OutpostError

logger = logging.getLogger(__name__)


class ConfigError(OutpostError):
    """Raised when configuration validation fails."""

    pass


@dataclass
class EnvVar:
    """Environment variable definition with validation."""

    name: str
    default: Any = None
    var_type: str = "str"  # str, int, bool, float, path, list
    required: bool = False
    description: str = ""
    min_value: Optional[Union[int, float]] = None
    max_value: Optional[Union[int, float]] = None
    choices: Optional[List[Any]] = None

    def parse(self, value: str) -> Any:
        """Parse string value to target type."""
        if value is None:
            return None

        if self.var_type == "int":
            try:
                return int(value)
            except ValueError:
                raise ConfigError(f"{self.name}: '{value}' is not a valid integer")
        elif self.var_type == "float":
            try:
                return float(value)
            except ValueError:
                raise ConfigError(f"{self.name}: '{value}' is not a valid float")
        elif self.var_type == "bool":
            return value.lower() in ("true", "1", "yes", "on")
        elif self.var_type == "path":
            return Path(value).expanduser().resolve()
        elif self.var_type == "list":
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    def validate(self, value: Any) -> tuple:
        """Validate parsed value. Returns (is_valid, error_message)."""
        if value is None:
            if self.required:
                return False, f"{self.name} is required but not set"
            return True, ""

        if self.var_type in ("int", "float"):
            if self.min_value is not None and value < self.min_value:
                return False, f"{self.name}: value {value} is below minimum {self.min_value}"
            if self.max_value is not None and value > self.max_value:
                return False, f"{self.name}: value {value} exceeds maximum {self.max_value}"

        if self.choices is not None and value not in self.choices:
            return (
                False,
                f"{self.name}: '{value}' is not a valid choice. Must be one of: {self.choices}",
            )

        return True, ""

    def is_set(self) -> bool:
        return os.environ.get(self.name) is not None

    def get_value(self) -> Any:
        """Get validated value from environment."""
        raw_value = os.environ.get(self.name)

        if raw_value is None:
            if self.required:
                raise ConfigError(f"Required environment variable {self.name} is not set")
            return self.default

        parsed = self.parse(raw_value)
        is_valid, error = self.validate(parsed)

        if not is_valid:
            raise ConfigError(error)

        return parsed


ENV_VARS: Dict[str, EnvVar] = {
    "OUTPOST_ROOT": EnvVar(
        name="OUTPOST_ROOT",
        default=None,
        var_type="path",
        description="Root folder for outpost files (modules, monitor, logs)",
    ),
    "OUTPOST_CONFIG": EnvVar(
        name="OUTPOST_CONFIG",
        default=None,
        var_type="path",
        description="Path to the YAML agent file",
    ),
    "OUTPOST_LOG_LEVEL": EnvVar(
        name="OUTPOST_LOG_LEVEL",
        default="info",
        choices=["debug", "info", "warning", "error"],
        description="Agent log level",
    ),
    "OUTPOST_LOG_FILE": EnvVar(
        name="OUTPOST_LOG_FILE",
        default=None,
        var_type="path",
        description="Agent log file (defaults to <root>/outpost.log)",
    ),
    "OUTPOST_CHECK_INTERVAL": EnvVar(
        name="OUTPOST_CHECK_INTERVAL",
        default=2.0,
        var_type="float",
        min_value=0.1,
        max_value=3600,
        description="Seconds between supervision ticks of a process",
    ),
    "OUTPOST_STOP_TIMEOUT": EnvVar(
        name="OUTPOST_STOP_TIMEOUT",
        default=10,
        var_type="int",
        min_value=-1,
        description="Default seconds to wait for a process to stop (-1 waits forever)",
    ),
    "OUTPOST_LOG_MAX_SIZE_MB": EnvVar(
        name="OUTPOST_LOG_MAX_SIZE_MB",
        default=10.0,
        var_type="float",
        min_value=0.01,
        description="Rotate a process log file once it grows past this size",
    ),
    "OUTPOST_LOG_MAX_AGE_HOURS": EnvVar(
        name="OUTPOST_LOG_MAX_AGE_HOURS",
        default=24.0,
        var_type="float",
        min_value=0.01,
        description="Rotate a process log file at least this often",
    ),
    "OUTPOST_LOG_KEEP": EnvVar(
        name="OUTPOST_LOG_KEEP",
        default=5,
        var_type="int",
        min_value=0,
        max_value=1000,
        description="Number of rotated archives to keep per log file",
    ),
}


def overrides() -> Dict[str, Any]:
    """Return only the variables explicitly set in the environment."""
    return {name: env_var.get_value() for name, env_var in ENV_VARS.items() if env_var.is_set()}


def validate_config() -> Dict[str, Any]:
    """
    Validate all environment variables at startup.

    Returns:
        Dict of validated config values

    Raises:
        ConfigError: If any variable is missing or invalid
    """
    errors = []
    validated = {}

    for name, env_var in ENV_VARS.items():
        try:
            validated[name] = env_var.get_value()
            logger.debug(f"Config: {name} = {validated[name]}")
        except ConfigError as e:
            errors.append(str(e))

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        logger.error(error_msg)
        raise ConfigError(error_msg)

    return validated
