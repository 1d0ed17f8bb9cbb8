"""
Agent configuration loader.

Settings come from three layers, later layers winning:
1. built-in defaults
2. the YAML agent file (``outpost.yaml``) plus ``local/overrides.yaml`` beside it
3. ``OUTPOST_*`` environment variables (see env_config)
"""

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from outpost.config.env_config import ENV_VARS, ConfigError, overrides
from outpost.supervisor.log_rotation import LogRotationPolicy

logger = logging.getLogger(__name__)

DEFAULT_ROOT = Path.home() / ".outpost"


class ConfigLoader:
    """Load and merge the YAML agent file with its local overrides."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None

    def load(self) -> Dict[str, Any]:
        """
        Load the agent file. A missing file yields an empty mapping.

        Returns:
            Merged configuration dictionary
        """
        if self.path is None:
            return {}

        config = self._read(self.path)
        local_path = self.path.parent / "local" / "overrides.yaml"
        config = self._merge_config(config, self._read(local_path))
        return config

    def _read(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"error parsing {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: expected a mapping at the top level")
        return data

    def _merge_config(self, base: Dict, override: Dict) -> Dict:
        """Deep merge override config into base config."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result


@dataclass
class AgentSettings:
    """Resolved settings for one agent instance."""

    root: Path = DEFAULT_ROOT
    log_level: str = "info"
    log_file: Optional[Path] = None
    check_interval: float = 2.0
    stop_timeout: int = 10
    log_rotation: LogRotationPolicy = field(default_factory=LogRotationPolicy)

    def __post_init__(self):
        self.root = Path(self.root)
        if self.log_file is None:
            self.log_file = self.root / "outpost.log"
        self.log_file = Path(self.log_file)

    @property
    def modules_dir(self) -> Path:
        return self.root / "modules"

    @property
    def monitor_dir(self) -> Path:
        return self.root / "monitor"

    @property
    def fingerprint_file(self) -> Path:
        return self.root / "opconfig.sha"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["root"] = str(self.root)
        data["log_file"] = str(self.log_file)
        return data

    def fingerprint(self) -> str:
        """sha256 of the serialized settings, used to detect configuration changes."""
        serialized = json.dumps(self.to_dict(), sort_keys=True)
        return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


_ENV_FIELDS = {
    "OUTPOST_ROOT": "root",
    "OUTPOST_LOG_LEVEL": "log_level",
    "OUTPOST_LOG_FILE": "log_file",
    "OUTPOST_CHECK_INTERVAL": "check_interval",
    "OUTPOST_STOP_TIMEOUT": "stop_timeout",
}

_ENV_ROTATION_FIELDS = {
    "OUTPOST_LOG_MAX_SIZE_MB": "max_size_mb",
    "OUTPOST_LOG_MAX_AGE_HOURS": "max_age_hours",
    "OUTPOST_LOG_KEEP": "keep",
}


def load_settings(path: Optional[Path] = None) -> AgentSettings:
    """Build AgentSettings from defaults, the agent file and the environment."""
    env = overrides()
    if path is None:
        path = env.get("OUTPOST_CONFIG")

    file_config = ConfigLoader(path).load()
    rotation = dict(file_config.pop("log_rotation", None) or {})

    unknown = set(file_config) - set(_ENV_FIELDS.values())
    if unknown:
        logger.warning(f"Ignoring unknown agent settings: {sorted(unknown)}")

    values = {key: file_config[key] for key in _ENV_FIELDS.values() if key in file_config}
    for env_name, key in _ENV_FIELDS.items():
        if env_name in env:
            values[key] = env[env_name]
    for env_name, key in _ENV_ROTATION_FIELDS.items():
        if env_name in env:
            rotation[key] = env[env_name]

    try:
        policy = LogRotationPolicy(**rotation)
    except TypeError as e:
        raise ConfigError(f"invalid log_rotation settings: {e}")

    settings = AgentSettings(log_rotation=policy, **values)
    if settings.log_level not in ENV_VARS["OUTPOST_LOG_LEVEL"].choices:
        raise ConfigError(f"invalid log_level '{settings.log_level}'")
    return settings
