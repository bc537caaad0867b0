"""
Configuration loading and management for Directory Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

VALID_ROLES = ('Admin', 'Supervisor', 'User')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'active_directory.bind_password': 'AD_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
        'database.url': 'DATABASE_URL',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if key not in current or current[key] is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        # Directory settings are only required when the integration is switched on
        ad_config = self.config.get('active_directory') or {}
        if ad_config.get('enabled', False):
            required_ad_fields = ['server_url', 'domain', 'bind_dn', 'bind_password']
            for field in required_ad_fields:
                if not ad_config.get(field):
                    errors.append(f"Missing required active_directory field: {field}")

            sync_hour = ad_config.get('daily_sync_hour_utc', 2)
            if not isinstance(sync_hour, int) or not 0 <= sync_hour <= 23:
                errors.append("active_directory.daily_sync_hour_utc must be an integer between 0 and 23")

        # Seed group mappings
        group_mappings = self.config.get('group_mappings') or []
        if not isinstance(group_mappings, list):
            errors.append("group_mappings must be a list")
            group_mappings = []

        seen_groups = set()
        for i, mapping in enumerate(group_mappings):
            prefix = f"group_mappings[{i}]"
            if not isinstance(mapping, dict):
                errors.append(f"{prefix} must be a mapping")
                continue
            group = mapping.get('group')
            if not group:
                errors.append(f"Missing group for {prefix}")
            elif group.lower() in seen_groups:
                errors.append(f"Duplicate group for {prefix}: {group}")
            else:
                seen_groups.add(group.lower())
            role = mapping.get('role', 'User')
            if role not in VALID_ROLES:
                errors.append(f"Invalid role for {prefix}: {role} (expected one of {', '.join(VALID_ROLES)})")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        # Directory defaults
        ad_defaults = {
            'enabled': False,
            'server_url': '',
            'domain': '',
            'search_base': '',
            'bind_dn': '',
            'bind_password': '',
            'use_ssl': False,
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 30,
            'page_size': 1000,
            'identity_attribute': 'sAMAccountName',
            'user_filter': '(&(objectCategory=person)(objectClass=user))',
            'group_filter': '(objectClass=group)',
            'nested_groups': True,
            'daily_sync_hour_utc': 2
        }
        ad_config = self.config.setdefault('active_directory', {})
        if ad_config is None:
            ad_config = self.config['active_directory'] = {}
        for key, value in ad_defaults.items():
            ad_config.setdefault(key, value)

        # Group mapping defaults
        mappings = self.config.get('group_mappings') or []
        for mapping in mappings:
            mapping.setdefault('role', 'User')
            mapping.setdefault('active', True)
        self.config['group_mappings'] = mappings

        # Database defaults
        database_defaults = {
            'url': 'sqlite:///directory_sync.db',
            'echo': False
        }
        database_config = self.config.setdefault('database', {})
        for key, value in database_defaults.items():
            database_config.setdefault(key, value)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Error handling defaults
        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        # Notification defaults
        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
