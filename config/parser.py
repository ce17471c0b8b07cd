"""
Configuration parser for the vantage point agent.
"""

import copy
import yaml
from pathlib import Path
from typing import Dict, Any, Optional


DEFAULT_CONTROLLER_INFO_URL = "http://revtr.cs.washington.edu/vps/registrar.txt"
DEFAULT_UPDATE_BASE_URL = "http://revtr.cs.washington.edu/vps"
DEFAULT_RATE_LIMIT_URL = "http://revtr.cs.washington.edu/vps/RateLimit.txt"
DEFAULT_PORT = 54321
DEFAULT_TOOLS_DIR = "./"
DEFAULT_OUTPUT_DIR = "/tmp"
DEFAULT_PROBING_THREADS = 40
DEFAULT_LOG_FILE = "/tmp/vp_log.txt"


class ConfigurationError(Exception):
    """Raised when configuration is invalid or has fields of the wrong type."""
    pass


class VantagePointConfig:
    """Vantage point configuration parser and validator."""

    # Every field is optional; a supplied value must have the listed type.
    FIELD_TYPES = {
        'controller.uri': str,
        'controller.info_url': str,
        'controller.timeout': (int, float),
        'rpc.port': int,
        'rpc.acl': bool,
        'rpc.front': bool,
        'probing.tools_dir': str,
        'probing.output_dir': str,
        'probing.threads': int,
        'probing.use_sudo': bool,
        'probing.backoff': bool,
        'probing.rate_limit_url': str,
        'update.base_url': str,
        'update.staging_dir': str,
        'update.interval': (int, float),
        'update.jitter': (int, float),
        'update.initial_delay': (int, float),
        'registration.interval': (int, float),
        'registration.jitter': (int, float),
        'registration.retry_delay': (int, float),
        'registration.retry_jitter': (int, float),
        'logging.level': str,
        'logging.file': str,
    }

    def __init__(self, config_dict: Dict[str, Any]):
        if not isinstance(config_dict, dict):
            raise ConfigurationError(
                f"Configuration must be a mapping, got {type(config_dict)}"
            )
        self._config = config_dict
        self._validate()

    def _validate(self):
        """Validate that supplied fields have correct types."""
        for field_path, expected_type in self.FIELD_TYPES.items():
            value = self._get_nested_value(field_path)
            if value is None:
                continue

            # bool is an int subclass; reject it where a number is expected
            if isinstance(value, bool) and expected_type is not bool:
                raise ConfigurationError(
                    f"Field {field_path} has incorrect type. "
                    f"Expected {expected_type}, got {type(value)}"
                )

            if not isinstance(value, expected_type):
                raise ConfigurationError(
                    f"Field {field_path} has incorrect type. "
                    f"Expected {expected_type}, got {type(value)}"
                )

        if self.port < 0 or self.port > 65535:
            raise ConfigurationError(f"Field rpc.port out of range: {self.port}")
        if self.probing_threads <= 0:
            raise ConfigurationError(f"Field probing.threads must be positive: {self.probing_threads}")

    def _get_nested_value(self, field_path: str) -> Any:
        """Get value from nested dictionary using dot notation."""
        keys = field_path.split('.')
        value = self._config
        for key in keys:
            if isinstance(value, dict):
                value = value.get(key)
            else:
                return None
        return value

    def _get(self, field_path: str, default: Any) -> Any:
        value = self._get_nested_value(field_path)
        return default if value is None else value

    def with_overrides(self, overrides: Dict[str, Any]) -> 'VantagePointConfig':
        """
        Return a new config with dot-path overrides applied.

        None values are ignored so unset command-line flags keep file values.
        """
        merged = copy.deepcopy(self._config)
        for field_path, value in overrides.items():
            if value is None:
                continue
            node = merged
            keys = field_path.split('.')
            for key in keys[:-1]:
                node = node.setdefault(key, {})
            node[keys[-1]] = value
        return VantagePointConfig(merged)

    def layered_on(self, base: 'VantagePointConfig') -> 'VantagePointConfig':
        """Return a new config with this config's values over ``base``."""
        def merge(lower, upper):
            merged = copy.deepcopy(lower)
            for key, value in upper.items():
                if isinstance(value, dict) and isinstance(merged.get(key), dict):
                    merged[key] = merge(merged[key], value)
                else:
                    merged[key] = copy.deepcopy(value)
            return merged
        return VantagePointConfig(merge(base._config, self._config))

    @property
    def controller_uri(self) -> Optional[str]:
        uri = self._get_nested_value('controller.uri')
        return uri or None

    @property
    def controller_info_url(self) -> str:
        return self._get('controller.info_url', DEFAULT_CONTROLLER_INFO_URL)

    @property
    def controller_timeout(self) -> float:
        return self._get('controller.timeout', 30)

    @property
    def port(self) -> int:
        return self._get('rpc.port', DEFAULT_PORT)

    @property
    def use_acl(self) -> bool:
        return self._get('rpc.acl', True)

    @property
    def front(self) -> bool:
        return self._get('rpc.front', True)

    @property
    def tools_dir(self) -> str:
        return self._get('probing.tools_dir', DEFAULT_TOOLS_DIR)

    @property
    def output_dir(self) -> str:
        return self._get('probing.output_dir', DEFAULT_OUTPUT_DIR)

    @property
    def probing_threads(self) -> int:
        return self._get('probing.threads', DEFAULT_PROBING_THREADS)

    @property
    def use_sudo(self) -> bool:
        return self._get('probing.use_sudo', True)

    @property
    def backoff(self) -> bool:
        return self._get('probing.backoff', True)

    @property
    def rate_limit_url(self) -> Optional[str]:
        return self._get('probing.rate_limit_url', DEFAULT_RATE_LIMIT_URL) or None

    @property
    def update_base_url(self) -> str:
        return self._get('update.base_url', DEFAULT_UPDATE_BASE_URL).rstrip('/')

    @property
    def update_staging_dir(self) -> str:
        return self._get('update.staging_dir', str(Path(self.output_dir) / 'vp_staging'))

    @property
    def update_interval(self) -> float:
        return self._get('update.interval', 36000)

    @property
    def update_jitter(self) -> float:
        return self._get('update.jitter', 36000)

    @property
    def update_initial_delay(self) -> float:
        return self._get('update.initial_delay', 5)

    @property
    def registration_interval(self) -> float:
        return self._get('registration.interval', 3600)

    @property
    def registration_jitter(self) -> float:
        return self._get('registration.jitter', 3600)

    @property
    def registration_retry_delay(self) -> float:
        return self._get('registration.retry_delay', 120)

    @property
    def registration_retry_jitter(self) -> float:
        return self._get('registration.retry_jitter', 130)

    @property
    def log_level(self) -> str:
        return self._get('logging.level', 'INFO').upper()

    @property
    def log_file(self) -> Optional[str]:
        return self._get('logging.file', DEFAULT_LOG_FILE) or None

    @classmethod
    def defaults(cls) -> 'VantagePointConfig':
        """Configuration with every field at its default value."""
        return cls({})

    @classmethod
    def from_file(cls, config_path: str) -> 'VantagePointConfig':
        """Load configuration from YAML file."""
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(path, 'r') as f:
                config_dict = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML: {e}")

        if config_dict is None:
            raise ConfigurationError("Configuration file is empty")

        return cls(config_dict)
