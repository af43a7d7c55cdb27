"""
Configuration Management

Handles loading configuration from environment variables and config files,
plus the git-style key space that adapter declarations live in.

Git-style keys look like ``section.subsection.variable``; as in git, the
section and variable names are case-insensitive while the subsection
(here: the adapter name) is case-sensitive:

    lfs.customtransfer.<name>.path
    lfs.customtransfer.<name>.args
    lfs.customtransfer.<name>.concurrent
    lfs.customtransfer.<name>.direction
    lfs.customtransfer.<name>.timeout
    lfs.concurrenttransfers
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from dotenv import load_dotenv

from .transfer.errors import ConfigurationError

_TRUE = {'true', 'yes', 'on', '1'}
_FALSE = {'false', 'no', 'off', '0', ''}


def normalize_key(key: str) -> str:
    """Lower-case the section and variable name, keep the subsection."""
    key = key.strip()
    if '.' not in key:
        return key.lower()
    section, rest = key.split('.', 1)
    if '.' not in rest:
        return f"{section.lower()}.{rest.lower()}"
    subsection, variable = rest.rsplit('.', 1)
    return f"{section.lower()}.{subsection}.{variable.lower()}"


def parse_bool(value: str) -> bool:
    """Parse a git boolean (an empty value is false, as in git)."""
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"Invalid boolean value {value!r}")


@dataclass
class Config:
    """
    Transfer client configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (LFSX_*)
    2. Config file (JSON)
    3. Default values
    """
    # Adapter key namespace (lfs.customtransfer.<name>.*)
    namespace: str = 'lfs'

    # Flat git-style key space
    git_config: Dict[str, str] = field(default_factory=dict)

    # Performance
    concurrent_transfers: int = 3

    # Storage
    storage_dir: Path = field(default_factory=lambda: Path('./lfs_data'))

    # Timeouts (seconds)
    read_timeout: Optional[float] = None  # None = wait for agents forever
    shutdown_timeout: float = 10.0
    api_timeout: float = 30.0

    # Logging
    log_level: str = 'INFO'

    def __post_init__(self):
        self.git_config = {normalize_key(k): v for k, v in self.git_config.items()}

    # === Git-style key space ===

    def keys(self) -> List[str]:
        """All git-style keys, normalized."""
        return list(self.git_config)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.git_config.get(normalize_key(key), default)

    def get_bool(self, key: str, default: bool) -> bool:
        """
        Get a git boolean.

        Raises:
            ConfigurationError: if the value is not a recognizable boolean
        """
        value = self.get(key)
        if value is None:
            return default
        try:
            return parse_bool(value)
        except ValueError as e:
            raise ConfigurationError(f"{normalize_key(key)}: {e}") from e

    def get_int(self, key: str, default: int) -> int:
        value = self.get(key)
        if value is None or value.strip() == '':
            return default
        try:
            return int(value)
        except ValueError as e:
            raise ConfigurationError(f"{normalize_key(key)}: invalid integer {value!r}") from e

    def set(self, key: str, value: str):
        self.git_config[normalize_key(key)] = value

    def update_git_config(self, entries: Dict[str, str]):
        for key, value in entries.items():
            self.set(key, value)

    def effective_concurrency(self) -> int:
        """Requested concurrency: <namespace>.concurrenttransfers or the default."""
        return self.get_int(f"{self.namespace}.concurrenttransfers", self.concurrent_transfers)

    # === Loading ===

    @staticmethod
    def parse_git_lines(lines: Iterable[str]) -> Dict[str, str]:
        """
        Parse ``git config --list`` output (``key=value`` per line).

        A key without '=' is a boolean set to true, as in git.
        """
        entries: Dict[str, str] = {}
        for line in lines:
            line = line.rstrip('\r\n')
            if not line.strip() or line.lstrip().startswith(('#', ';')):
                continue
            if '=' in line:
                key, value = line.split('=', 1)
            else:
                key, value = line, 'true'
            entries[normalize_key(key)] = value
        return entries

    @classmethod
    def from_git_lines(cls, text: str) -> 'Config':
        return cls(git_config=cls.parse_git_lines(text.splitlines()))

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        config.namespace = os.getenv('LFSX_NAMESPACE', config.namespace)

        config.concurrent_transfers = int(
            os.getenv('LFSX_CONCURRENT_TRANSFERS', config.concurrent_transfers)
        )

        storage_dir = os.getenv('LFSX_STORAGE_DIR')
        if storage_dir:
            config.storage_dir = Path(storage_dir)

        read_timeout = os.getenv('LFSX_READ_TIMEOUT')
        if read_timeout:
            config.read_timeout = float(read_timeout)
        config.shutdown_timeout = float(os.getenv('LFSX_SHUTDOWN_TIMEOUT', config.shutdown_timeout))
        config.api_timeout = float(os.getenv('LFSX_API_TIMEOUT', config.api_timeout))

        config.log_level = os.getenv('LFSX_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """
        Load configuration from a JSON file.

        The optional "git_config" object holds flat git-style keys.
        """
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        config.namespace = data.get('namespace', config.namespace)
        config.update_git_config({k: str(v) for k, v in data.get('git_config', {}).items()})

        config.concurrent_transfers = data.get('concurrent_transfers', config.concurrent_transfers)

        if 'storage_dir' in data:
            config.storage_dir = Path(data['storage_dir'])

        config.read_timeout = data.get('read_timeout', config.read_timeout)
        config.shutdown_timeout = data.get('shutdown_timeout', config.shutdown_timeout)
        config.api_timeout = data.get('api_timeout', config.api_timeout)

        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'namespace': self.namespace,
            'git_config': dict(self.git_config),
            'concurrent_transfers': self.concurrent_transfers,
            'storage_dir': str(self.storage_dir),
            'read_timeout': self.read_timeout,
            'shutdown_timeout': self.shutdown_timeout,
            'api_timeout': self.api_timeout,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for key in ['namespace', 'concurrent_transfers', 'storage_dir', 'read_timeout',
                'shutdown_timeout', 'api_timeout', 'log_level']:
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "namespace": "lfs",
  "git_config": {
    "lfs.customtransfer.testagent.path": "/usr/local/bin/lfs-agent",
    "lfs.customtransfer.testagent.args": "--verbose",
    "lfs.customtransfer.testagent.concurrent": "true",
    "lfs.customtransfer.testagent.direction": "both"
  },
  "concurrent_transfers": 3,
  "storage_dir": "./lfs_data",
  "read_timeout": null,
  "log_level": "INFO"
}
"""
