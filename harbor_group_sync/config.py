"""
Configuration loading and management for Harbor LDAP Group Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from .models import ENSURE_VALUES, ENSURE_PRESENT, is_valid_dn, normalize_dn
from .usergroups import DEFAULT_PAGE_SIZE, MIN_PAGE_SIZE, MAX_PAGE_SIZE

logger = logging.getLogger(__name__)

API_VERSION_CHOICES = ('auto', 1, 2)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'harbor.password': 'HARBOR_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
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
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        harbor_config = self.config.get('harbor') or {}
        for field in ['base_url', 'username', 'password']:
            if not harbor_config.get(field):
                errors.append(f"Missing required Harbor field: {field}")

        base_url = harbor_config.get('base_url')
        if base_url and not str(base_url).startswith(('http://', 'https://')):
            errors.append(f"harbor.base_url must start with http:// or https://, got {base_url!r}")

        api_version = harbor_config.get('api_version', 'auto')
        if api_version not in API_VERSION_CHOICES:
            errors.append(f"harbor.api_version must be one of auto, 1, 2, got {api_version!r}")

        page_size = harbor_config.get('page_size', DEFAULT_PAGE_SIZE)
        if isinstance(page_size, bool) or not isinstance(page_size, int) \
                or not MIN_PAGE_SIZE <= page_size <= MAX_PAGE_SIZE:
            errors.append(f"harbor.page_size must be between {MIN_PAGE_SIZE} and {MAX_PAGE_SIZE}, "
                          f"got {page_size!r}")

        groups = self.config.get('groups')
        if groups is None:
            groups = []
        if not isinstance(groups, list):
            errors.append("groups must be a list")
            groups = []

        seen_dns = {}
        for i, group in enumerate(groups):
            group_prefix = f"groups[{i}]"
            if not isinstance(group, dict):
                errors.append(f"{group_prefix} must be a mapping")
                continue

            ensure = group.get('ensure', ENSURE_PRESENT)
            if ensure not in ENSURE_VALUES:
                errors.append(f"{group_prefix}.ensure must be present or absent, got {ensure!r}")
            if not group.get('group_name') and ensure == ENSURE_PRESENT:
                errors.append(f"Missing group_name for {group_prefix}")

            dn = group.get('ldap_group_dn')
            if not dn:
                errors.append(f"Missing ldap_group_dn for {group_prefix}")
            elif not is_valid_dn(dn):
                errors.append(f"Invalid ldap_group_dn for {group_prefix}: {dn!r}")
            else:
                key = normalize_dn(dn)
                if key in seen_dns:
                    errors.append(f"Duplicate ldap_group_dn for {group_prefix}: {dn!r} "
                                  f"(already declared by groups[{seen_dns[key]}])")
                seen_dns[key] = i

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        harbor_defaults = {
            'api_version': 'auto',
            'verify_ssl': True,
            'timeout': 30,
            'page_size': DEFAULT_PAGE_SIZE
        }
        harbor_config = self.config['harbor'] = self.config.get('harbor') or {}
        for key, value in harbor_defaults.items():
            harbor_config.setdefault(key, value)

        if self.config.get('groups') is None:
            self.config['groups'] = []
        for group in self.config['groups']:
            group.setdefault('ensure', ENSURE_PRESENT)
            group.setdefault('group_name', '')

        self.config.setdefault('purge_unmanaged', False)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config['logging'] = self.config.get('logging') or {}
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Error handling defaults
        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'max_errors': 5
        }
        error_config = self.config['error_handling'] = self.config.get('error_handling') or {}
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
        notification_config = self.config['notifications'] = self.config.get('notifications') or {}
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
