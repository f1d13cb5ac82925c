"""
RWE Configuration

Settings are resolved in this order (later wins):
1. Built-in defaults
2. YAML file (explicit path, $RWE_CONFIG, or ~/.rwe/config.yaml)
3. Environment variables (a .env file is loaded first)

Example ~/.rwe/config.yaml:

    data_dir: /home/me/rwe_data
    log_level: DEBUG
    backup_keep: 20
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

from core import __version__
from core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / '.rwe' / 'config.yaml'


def _app_data_root() -> Path:
    return Path(os.environ.get('APPDATA') or os.environ.get('HOME') or '.')


def _default_data_dir() -> Path:
    return _app_data_root() / 'rwe_data'


def _default_export_dir() -> Path:
    return _app_data_root() / 'Desktop'


@dataclass
class AppConfig:
    """Application settings and derived paths."""
    data_dir: Path = field(default_factory=_default_data_dir)
    db_filename: str = 'main.db'
    backup_dirname: str = 'backups'
    export_dir: Path = field(default_factory=_default_export_dir)
    log_level: str = 'INFO'
    json_logs: bool = False
    lock_timeout: float = 30.0
    backup_attempts: int = 5
    backup_retry_delay: float = 0.25
    backup_keep: int = 10
    app_version: str = __version__

    def __post_init__(self):
        self.data_dir = Path(self.data_dir).expanduser()
        self.export_dir = Path(self.export_dir).expanduser()

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_filename

    @property
    def backup_dir(self) -> Path:
        return self.data_dir / self.backup_dirname


_ENV_OVERRIDES = {
    'RWE_DATA_DIR': 'data_dir',
    'RWE_EXPORT_DIR': 'export_dir',
    'RWE_LOG_LEVEL': 'log_level',
    'RWE_JSON_LOGS': 'json_logs',
}

_TRUTHY = ('1', 'true', 'yes', 'on')


def _read_yaml(path: Path) -> dict:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f'Cannot read config file {path}: {e}', path=str(path)) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f'Config file {path} must contain a mapping', path=str(path))
    return data


def _coerce(name: str, value):
    """Convert a raw YAML/env value to the type of the AppConfig field."""
    default = getattr(AppConfig(), name)
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in _TRUTHY
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, Path):
        return Path(value)
    return str(value)


def load_config(path: Optional[str] = None, env_file: Optional[str] = None) -> AppConfig:
    """
    Build an AppConfig from defaults, YAML and the environment.

    Args:
        path: Explicit YAML path. A missing default file is not an error.
        env_file: Optional .env file (default: search from the working dir)

    Returns:
        AppConfig
    """
    load_dotenv(env_file)

    values = {}
    known = {f.name for f in fields(AppConfig)}

    config_path = Path(path or os.environ.get('RWE_CONFIG') or DEFAULT_CONFIG_PATH).expanduser()
    if config_path.exists():
        for key, value in _read_yaml(config_path).items():
            if key not in known:
                logger.warning(f'Ignoring unknown config key: {key}', extra={'path': str(config_path)})
                continue
            values[key] = value
    elif path:
        raise ConfigurationError(f'Config file not found: {config_path}', path=str(config_path))

    for env_name, key in _ENV_OVERRIDES.items():
        if os.environ.get(env_name):
            values[key] = os.environ[env_name]

    try:
        coerced = {key: _coerce(key, value) for key, value in values.items()}
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f'Invalid configuration value: {e}') from e

    return AppConfig(**coerced)
