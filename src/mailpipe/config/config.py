# SPDX-License-Identifier: GPL-2.0-only
# Copyright (C) 2025 Mailpipe contributors
"""
Mailpipe - Provisioning toolkit for the email-processing pipeline.

This module provides configuration loading from YAML files with support for:
- Nested configuration structures using dot notation (e.g., 'secrets.document')
- Environment variable overrides with customizable prefix
- Type preservation (int, float, bool, str, list, dict)
- Relative paths resolved against the configuration file's directory

Example:
    >>> config = Config(config_file='mailpipe.yaml', env_prefix='MAILPIPE_')
    >>> config.load(missing_ok=True)
    >>> timeout = config.get('secrets.tool_timeout', default=30)
    >>> document = config.resolve_path('secrets.document', 'secrets.encrypted.yaml')
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml


class Config:
    """
    Configuration manager for the provisioning tooling.

    Loads configuration from YAML files and allows environment variable overrides.
    Configuration values are accessed using dot notation for nested keys.

    Attributes:
        config_file: Path to the YAML configuration file
        env_prefix: Prefix for environment variables (e.g., 'MAILPIPE_')
                    Set to None to disable environment overrides

    Example:
        # mailpipe.yaml:
        # secrets:
        #   backend: native
        #   tool_timeout: 30

        config = Config('mailpipe.yaml', env_prefix='MAILPIPE_')
        config.load()

        backend = config.get('secrets.backend')  # Returns "native"

        # Get with default
        backup = config.get('secrets.backup', default=True)  # Returns True

        # Environment override (MAILPIPE_SECRETS__TOOL_TIMEOUT=60)
        timeout = config.get('secrets.tool_timeout')  # Returns 60 (from env)
    """

    def __init__(
        self,
        config_file: str | Path | None = None,
        env_prefix: str | None = "MAILPIPE_",
        environ: Mapping[str, str] | None = None,
    ) -> None:
        """
        Initialize configuration manager.

        Args:
            config_file: Path to YAML configuration file
                        If None, uses default 'mailpipe.yaml' in current directory
            env_prefix: Prefix for environment variable overrides
                       Environment variables should be named as:
                       {prefix}{SECTION}__{KEY} (e.g., MAILPIPE_SECRETS__BACKEND)
                       Use double underscores (__) for nesting levels.
                       Single underscores (_) are preserved in key names.
                       Set to None to disable environment overrides
            environ: Environment lookup for overrides (os.environ if None)
        """
        if config_file is None:
            self.config_file = Path("mailpipe.yaml")
        else:
            self.config_file = Path(config_file)

        self.env_prefix = env_prefix
        self.environ: Mapping[str, str] = environ if environ is not None else os.environ
        self._data: dict[str, Any] = {}
        self._loaded = False
        self._from_file = False

    @property
    def base_dir(self) -> Path:
        """
        Directory relative paths are resolved against.

        The configuration file's directory when it was loaded from disk,
        the current working directory otherwise.
        """
        if self._from_file:
            return self.config_file.resolve().parent
        return Path.cwd()

    def load(self, missing_ok: bool = False) -> None:
        """
        Load configuration from YAML file and apply environment overrides.

        Can be called multiple times to reload configuration.

        Args:
            missing_ok: Start from an empty configuration if the file is missing

        Raises:
            ConfigError: If config file doesn't exist or cannot be parsed
        """
        self._data = {}
        self._from_file = False

        if not self.config_file.exists():
            if not missing_ok:
                raise ConfigError(f"Configuration file not found: {self.config_file}")
        else:
            self._load_file()
            self._from_file = True

        # Mark as loaded before applying overrides (so get() works in _apply_env_overrides)
        self._loaded = True

        # Apply environment variable overrides
        if self.env_prefix is not None:
            self._apply_env_overrides()

    def _load_file(self) -> None:
        try:
            with open(self.config_file, encoding="utf-8") as file:
                file_content = file.read()
        except OSError as err:
            # covers permission denied, IO errors, etc.
            raise ConfigError(f"Failed to open configuration file {self.config_file}: {err}") from err

        try:
            data = yaml.safe_load(file_content) or {}
        except yaml.YAMLError as err:
            raise ConfigError(f"Failed to parse configuration file {self.config_file}: {err}") from err

        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file {self.config_file} must contain a mapping at the top level")
        self._data = data

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by key.

        Supports dot notation for nested keys (e.g., 'secrets.tool_timeout').

        Args:
            key: Configuration key in dot notation
            default: Default value if key doesn't exist

        Returns:
            Configuration value or default if key doesn't exist

        Raises:
            ConfigError: If configuration hasn't been loaded yet
            ValueError: If key is empty

        Example:
            >>> config.get('secrets.backend')
            'native'
            >>> config.get('nonexistent.key', default=42)
            42
        """
        if not self._loaded:
            raise ConfigError("Configuration not loaded. Call load() first.")

        if not key:
            raise ValueError("Key cannot be empty")

        # Navigate nested dictionary using dot notation
        parts = key.split(".")
        value: Any = self._data

        for part in parts:
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default

        return value

    def resolve_path(self, key: str, default: str | Path | None = None) -> Path | None:
        """
        Get a path value, resolving relative paths against base_dir.

        Args:
            key: Configuration key in dot notation
            default: Default path if key doesn't exist

        Returns:
            Absolute path, or None if neither value nor default is set
        """
        value = self.get(key, default)
        if value is None or value == "":
            return None

        path = Path(os.path.expanduser(str(value)))
        if not path.is_absolute():
            path = self.base_dir / path
        return path

    def _apply_env_overrides(self) -> None:
        """
        Apply environment variable overrides to configuration.

        Environment variables are matched against config keys:
        - MAILPIPE_SECRETS__BACKEND -> secrets.backend
        - MAILPIPE_SECRETS__TOOL_TIMEOUT -> secrets.tool_timeout

        Double underscores (__) separate nesting levels.
        Single underscores (_) are preserved in key names.
        Only variables containing a nesting separator are applied, so
        plain MAILPIPE_* flags do not leak into the configuration.

        Values are converted to appropriate types based on existing config values.
        """
        if self.env_prefix is None:
            return

        for env_key, env_value in self.environ.items():
            if not env_key.startswith(self.env_prefix):
                continue

            # MAILPIPE_SECRETS__TOOL_TIMEOUT -> secrets.tool_timeout
            suffix = env_key[len(self.env_prefix):]
            if "__" not in suffix:
                continue
            config_key = suffix.lower().replace("__", ".")

            current_value = self.get(config_key)
            converted_value = self._convert_type(env_value, current_value)
            self._set_value(config_key, converted_value)

    def _convert_type(self, value: str, reference_value: Any) -> Any:
        """
        Convert string value to appropriate type based on reference value.

        Args:
            value: String value from environment variable
            reference_value: Existing config value to infer type from

        Returns:
            Converted value with appropriate type
        """
        # If no reference value, return as string
        if reference_value is None:
            return value

        # Convert based on reference type
        if isinstance(reference_value, bool):
            return value.lower() in ("true", "1", "yes", "on")
        elif isinstance(reference_value, int):
            try:
                return int(value)
            except ValueError:
                return value
        elif isinstance(reference_value, float):
            try:
                return float(value)
            except ValueError:
                return value
        else:
            return value

    def _set_value(self, key: str, value: Any) -> None:
        """
        Set a configuration value using dot notation.

        Creates nested dictionaries as needed.

        Args:
            key: Configuration key in dot notation
            value: Value to set
        """
        parts = key.split(".")
        data = self._data

        # Navigate/create nested structure
        for part in parts[:-1]:
            if part not in data:
                data[part] = {}
            elif not isinstance(data[part], dict):
                # Can't navigate further, value is not a dict
                return
            data = data[part]

        data[parts[-1]] = value

    def __repr__(self) -> str:
        """Return string representation of Config."""
        status = "loaded" if self._loaded else "not loaded"
        return f"Config(config_file={self.config_file}, {status})"


# Custom exceptions


class ConfigError(Exception):
    """
    Base exception for configuration errors.

    Raised when:
    - Configuration file cannot be found
    - Configuration file cannot be parsed
    - Configuration is accessed before loading
    """

    pass


class ConfigValidationError(ConfigError):
    """
    Exception raised when configuration validation fails.

    Raised when required configuration keys are missing.
    """

    pass
