"""
Configuration loading and management for Directory Group Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

SOURCE_TYPES = ('csv', 'directory_group', 'ldap', 'jumpcloud_devices')
JOB_TYPES = ('membership', 'attributes')
SYNC_MODES = ('additive', 'full')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    # Per-directory secrets: auth field -> environment variable suffix
    DIRECTORY_SECRET_OVERRIDES = {
        'client_secret': 'CLIENT_SECRET',
        'api_key': 'API_KEY',
        'password': 'PASSWORD',
        'token': 'TOKEN',
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
                self.config = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration file is empty or not a mapping: {self.config_path}")

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

        for i, directory in enumerate(self.config.get('directories') or []):
            directory_name = str(directory.get('name', f'directory_{i}'))
            prefix = directory_name.upper().replace('-', '_').replace(' ', '_')
            for field, suffix in self.DIRECTORY_SECRET_OVERRIDES.items():
                env_value = os.getenv(f"{prefix}_{suffix}")
                if env_value and isinstance(directory.get('auth'), dict):
                    directory['auth'][field] = env_value
                    logger.debug(f"Applied environment override for {directory_name} {field}")

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

        directories = self.config.get('directories') or []
        if not directories:
            errors.append("At least one directory must be configured")

        directory_names = set()
        for i, directory in enumerate(directories):
            prefix = f"directories[{i}]"
            for field in ['name', 'module', 'base_url', 'auth']:
                if not directory.get(field):
                    errors.append(f"Missing required field {prefix}.{field}")
            auth = directory.get('auth') or {}
            if auth and not auth.get('method'):
                errors.append(f"Missing auth method for {prefix}")
            if directory.get('name'):
                directory_names.add(directory['name'])

        jobs = self.config.get('jobs') or []
        if not jobs:
            errors.append("At least one job must be configured")

        for i, job in enumerate(jobs):
            errors.extend(self._validate_job(f"jobs[{i}]", job, directory_names))

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _validate_job(self, prefix: str, job: Dict[str, Any], directory_names: set) -> List[str]:
        errors = []

        if not job.get('name'):
            errors.append(f"Missing required field {prefix}.name")

        destination = job.get('destination')
        if not destination:
            errors.append(f"Missing required field {prefix}.destination")
        elif destination not in directory_names:
            errors.append(f"Unknown destination '{destination}' for {prefix}")

        job_type = job.get('type', 'membership')
        if job_type not in JOB_TYPES:
            errors.append(f"Unknown job type '{job_type}' for {prefix}")

        mode = job.get('mode', 'additive')
        if mode not in SYNC_MODES:
            errors.append(f"Unknown mode '{mode}' for {prefix}")

        source = job.get('source') or {}
        source_type = source.get('type')
        if not source_type:
            errors.append(f"Missing required field {prefix}.source.type")
        elif source_type not in SOURCE_TYPES:
            errors.append(f"Unknown source type '{source_type}' for {prefix}")
        elif source_type == 'csv':
            if not source.get('path'):
                errors.append(f"Missing required field {prefix}.source.path")
        elif source_type == 'directory_group':
            if source.get('directory') not in directory_names:
                errors.append(f"Unknown source directory '{source.get('directory')}' for {prefix}")
            if not source.get('group'):
                errors.append(f"Missing required field {prefix}.source.group")
        elif source_type == 'ldap':
            if not source.get('group_dn'):
                errors.append(f"Missing required field {prefix}.source.group_dn")
            ldap_config = self.config.get('ldap') or {}
            for field in ['server_url', 'bind_dn', 'bind_password']:
                if not ldap_config.get(field):
                    errors.append(f"Missing required LDAP field: {field}")
        elif source_type == 'jumpcloud_devices':
            if source.get('directory') not in directory_names:
                errors.append(f"Unknown source directory '{source.get('directory')}' for {prefix}")

        if source_type in ('directory_group', 'ldap', 'jumpcloud_devices') and not job.get('group'):
            errors.append(f"Missing required field {prefix}.group")

        if job_type == 'attributes' and source_type != 'csv':
            errors.append(f"Attribute jobs require a csv source ({prefix})")

        return errors

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'INFO'
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        sync_defaults = {
            'removal_batch_size': 100,
        }
        sync_config = self.config.setdefault('sync', {})
        for key, value in sync_defaults.items():
            sync_config.setdefault(key, value)

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

        for directory in self.config.get('directories', []):
            directory.setdefault('verify_ssl', True)
            directory.setdefault('timeout', 30)

        for job in self.config.get('jobs', []):
            job.setdefault('type', 'membership')
            job.setdefault('mode', 'additive')
            job.setdefault('allow_full_removal_when_empty', False)


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
