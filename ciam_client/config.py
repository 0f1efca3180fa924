"""
Configuration Management for the CIAM session client.

This module handles client configuration including the Identity Service URL,
retry policy, session timing and storage settings, with support for an INI
configuration file and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser

from ciam_shared.interfaces import IConfigurationManager
from ciam_shared.exceptions import ConfigurationError, ErrorCode

logger = logging.getLogger(__name__)


DEFAULT_CONFIG_TEMPLATE = """# CIAM session client configuration
# Configuration file: {config_path}

[identity]
# Identity Service base URL (required)
url = http://localhost:8080

# Request timeout in seconds
timeout = 30

# Attempts per call, by urgency
login_retry_attempts = 2
refresh_retry_attempts = 3
poll_retry_attempts = 1

[session]
# Seconds between push challenge status checks
poll_interval = 2.0

# Seconds an invalid OTP stays on screen before the login resets
invalid_proof_reset_delay = 2.0

# Refresh the access token in the background
auto_refresh = true

[logging]
# Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
level = INFO
"""


def default_storage_dir() -> str:
    """Directory for durable client state, following the XDG base directory layout."""
    base = os.environ.get('XDG_CONFIG_HOME') or str(Path.home() / '.config')
    return str(Path(base) / 'ciam-client')


class ClientConfiguration(IConfigurationManager):
    """
    Configuration manager for the CIAM session client.

    Supports configuration from:
    1. Programmatic overrides (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    ENV_MAPPINGS = {
        'CIAM_IDENTITY_URL': ('identity', 'url'),
        'CIAM_TIMEOUT': ('identity', 'timeout'),
        'CIAM_LOGIN_RETRY_ATTEMPTS': ('identity', 'login_retry_attempts'),
        'CIAM_REFRESH_RETRY_ATTEMPTS': ('identity', 'refresh_retry_attempts'),
        'CIAM_POLL_INTERVAL': ('session', 'poll_interval'),
        'CIAM_INVALID_PROOF_RESET_DELAY': ('session', 'invalid_proof_reset_delay'),
        'CIAM_AUTO_REFRESH': ('session', 'auto_refresh'),
        'CIAM_LOG_LEVEL': ('logging', 'level'),
        'CIAM_STORAGE_DIR': ('storage', 'directory'),
    }

    def __init__(self, config_file: Optional[str] = None, create_if_missing: bool = True):
        self._config_file = config_file or self._get_default_config_path()
        self._create_if_missing = create_if_missing
        self._config_data: Dict[str, Any] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path: ~/.ciam-client/client.conf."""
        return str(Path.home() / '.ciam-client' / 'client.conf')

    def _create_default_config(self, config_path: str) -> None:
        """Create a minimal default configuration file."""
        try:
            Path(config_path).parent.mkdir(parents=True, exist_ok=True)
            with open(config_path, 'w') as f:
                f.write(DEFAULT_CONFIG_TEMPLATE.format(config_path=config_path))
            logger.info(f"Created default configuration file: {config_path}")
        except OSError as e:
            logger.warning(f"Failed to create default configuration: {e}")

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if not os.path.exists(self._config_file) and self._create_if_missing:
            self._create_default_config(self._config_file)

        if os.path.exists(self._config_file):
            try:
                self._load_from_file()
                logger.info(f"Configuration loaded from: {self._config_file}")
            except Exception as e:
                logger.warning(f"Failed to load configuration file: {e}")
        else:
            logger.info(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        config.read(self._config_file)

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                # JSON covers numbers, booleans and lists
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        for env_var, (section, key) in self.ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if value is None:
                continue

            section_data = self._config_data.setdefault(section, {})
            if value.lower() in ('true', 'false'):
                section_data[key] = value.lower() == 'true'
            elif value.isdigit():
                section_data[key] = int(value)
            else:
                try:
                    section_data[key] = float(value)
                except ValueError:
                    section_data[key] = value

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        defaults = {
            'identity': {
                'url': 'http://localhost:8080',
                'timeout': 30.0,
                'app_id': 'ciam-client',
                'app_version': '1.0.0',
                'login_retry_attempts': 2,
                'refresh_retry_attempts': 3,
                'poll_retry_attempts': 1,
                'retry_base': 2.0,
                'max_retry_delay': 30.0
            },
            'session': {
                'poll_interval': 2.0,
                'invalid_proof_reset_delay': 2.0,
                'auto_refresh': True,
                'refresh_interval': 300,  # used when token expiry is unknown
                'refresh_threshold': 60
            },
            'storage': {
                'directory': default_storage_dir(),
                'keyring_service': 'ciam-client'
            },
            'logging': {
                'level': 'INFO',
                'format': 'standard',
                'file': None,
                'max_size': 10485760,  # 10MB
                'backup_count': 3
            }
        }

        for section, section_defaults in defaults.items():
            section_data = self._config_data.setdefault(section, {})
            for key, default_value in section_defaults.items():
                if key not in section_data:
                    section_data[key] = default_value

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        return self._config_data.get(section, {}).get(config_key, default)

    def set_config(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            value: Value to set
        """
        if '.' not in key:
            self._config_data[key] = value
            return

        section, config_key = key.split('.', 1)
        self._config_data.setdefault(section, {})[config_key] = value

    def set_override(self, key: str, value: Any) -> None:
        """
        Set configuration override (highest priority).

        Args:
            key: Configuration key in format 'section.key'
            value: Override value
        """
        self._overrides[key] = value

    def save_configuration(self) -> None:
        """Save current configuration to file."""
        config = ConfigParser()

        for section_name, section_data in self._config_data.items():
            config.add_section(section_name)
            for key, value in section_data.items():
                if value is None:
                    continue
                if isinstance(value, (dict, list, bool)):
                    config.set(section_name, key, json.dumps(value))
                else:
                    config.set(section_name, key, str(value))

        try:
            Path(self._config_file).parent.mkdir(parents=True, exist_ok=True)
            with open(self._config_file, 'w') as f:
                config.write(f)
        except OSError as e:
            logger.error(f"Failed to save configuration: {e}")
            raise ConfigurationError(
                f"Failed to save configuration to {self._config_file}",
                error_code=ErrorCode.CONFIG_FILE_NOT_FOUND,
                cause=e
            )

        logger.info(f"Configuration saved to: {self._config_file}")

    def get_all_config(self) -> Dict[str, Any]:
        """Get all configuration data."""
        return self._config_data.copy()

    def get_config_file_path(self) -> str:
        return self._config_file

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    # Typed getters

    def _get_number(self, key: str, default: float, cast=float, minimum: float = 0):
        value = self.get_config(key, default)
        try:
            number = cast(value)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Invalid value for {key}: {value!r}",
                config_key=key
            )
        if number < minimum:
            raise ConfigurationError(
                f"Value for {key} must be at least {minimum}, got {number}",
                config_key=key
            )
        return number

    def _get_bool(self, key: str, default: bool) -> bool:
        value = self.get_config(key, default)
        if isinstance(value, str):
            return value.strip().lower() in ('1', 'true', 'yes', 'on')
        return bool(value)

    def get_identity_url(self) -> str:
        """Get Identity Service base URL."""
        return str(self.get_config('identity.url')).rstrip('/')

    def get_timeout(self) -> float:
        return self._get_number('identity.timeout', 30.0)

    def get_app_id(self) -> str:
        return str(self.get_config('identity.app_id', 'ciam-client'))

    def get_app_version(self) -> str:
        return str(self.get_config('identity.app_version', '1.0.0'))

    def get_login_retry_attempts(self) -> int:
        """Attempts for interactive calls (login, challenge, eSign, device bind)."""
        return self._get_number('identity.login_retry_attempts', 2, int, minimum=1)

    def get_refresh_retry_attempts(self) -> int:
        """Attempts for background calls (refresh, restore)."""
        return self._get_number('identity.refresh_retry_attempts', 3, int, minimum=1)

    def get_poll_retry_attempts(self) -> int:
        return self._get_number('identity.poll_retry_attempts', 1, int, minimum=1)

    def get_retry_base(self) -> float:
        return self._get_number('identity.retry_base', 2.0)

    def get_max_retry_delay(self) -> float:
        return self._get_number('identity.max_retry_delay', 30.0)

    def get_poll_interval(self) -> float:
        return self._get_number('session.poll_interval', 2.0)

    def get_invalid_proof_reset_delay(self) -> float:
        return self._get_number('session.invalid_proof_reset_delay', 2.0)

    def is_auto_refresh_enabled(self) -> bool:
        return self._get_bool('session.auto_refresh', True)

    def get_refresh_interval(self) -> float:
        return self._get_number('session.refresh_interval', 300)

    def get_refresh_threshold(self) -> float:
        """Seconds before expiry at which the access token is refreshed."""
        return self._get_number('session.refresh_threshold', 60)

    def get_storage_dir(self) -> str:
        return os.path.expanduser(str(self.get_config('storage.directory', default_storage_dir())))

    def get_keyring_service(self) -> str:
        return str(self.get_config('storage.keyring_service', 'ciam-client'))

    def get_log_level(self) -> str:
        return str(self.get_config('logging.level', 'INFO')).upper()

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format', 'standard')).lower()

    def get_log_file(self) -> Optional[str]:
        return self.get_config('logging.file')
