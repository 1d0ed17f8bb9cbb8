# Configuration module
from .config_loader import AgentSettings, ConfigLoader, load_settings
from .env_config import ENV_VARS, ConfigError, EnvVar, overrides, validate_config

__all__ = [
    "AgentSettings",
    "ConfigError",
    "ConfigLoader",
    "EnvVar",
    "ENV_VARS",
    "load_settings",
    "overrides",
    "validate_config",
]
