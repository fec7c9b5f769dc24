# SPDX-License-Identifier: GPL-2.0-only
# Copyright (C) 2025 Mailpipe contributors
"""
Mailpipe - Provisioning toolkit for the email-processing pipeline.

Tests for mailpipe.config.config module.

Tests configuration loading from YAML files with environment variable overrides.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from mailpipe.config.config import Config, ConfigError


class TestConfigInitialization:
    """Tests for Config initialization."""

    def test_config_creation_without_file(self) -> None:
        """Test creating Config without specifying a config file."""
        config = Config()
        assert config.config_file == Path("mailpipe.yaml")

    def test_config_creation_with_file(self, tmp_path: Path) -> None:
        """Test creating Config with a specific config file."""
        config_file = tmp_path / "mailpipe.yaml"

        config = Config(config_file=config_file)
        assert config.config_file == config_file

    def test_config_with_string_path(self, tmp_path: Path) -> None:
        """Test Config accepts string paths in addition to Path objects."""
        config_file = tmp_path / "mailpipe.yaml"

        config = Config(config_file=str(config_file))
        assert config.config_file == config_file


class TestConfigLoading:
    """Tests for loading configuration from YAML files."""

    def test_load_simple_config(self, tmp_path: Path) -> None:
        """Test loading a simple YAML configuration."""
        config_file = tmp_path / "mailpipe.yaml"
        config_file.write_text("""
secrets:
  backend: native
  tool_timeout: 30
""")

        config = Config(config_file=config_file, environ={})
        config.load()

        assert config.get("secrets.backend") == "native"
        assert config.get("secrets.tool_timeout") == 30

    def test_load_from_nonexistent_file(self, tmp_path: Path) -> None:
        """Test loading from non-existent file raises ConfigError."""
        config = Config(config_file=tmp_path / "nonexistent.yaml", environ={})

        with pytest.raises(ConfigError, match="Configuration file not found"):
            config.load()

    def test_load_missing_ok(self, tmp_path: Path) -> None:
        """Test missing_ok starts from an empty configuration."""
        config = Config(config_file=tmp_path / "nonexistent.yaml", environ={})
        config.load(missing_ok=True)

        assert config.get("secrets.backend") is None
        assert config.get("secrets.backend", default="native") == "native"

    def test_load_invalid_yaml(self, tmp_path: Path) -> None:
        """Test loading invalid YAML raises ConfigError."""
        config_file = tmp_path / "mailpipe.yaml"
        config_file.write_text("invalid: yaml: content:\n  - bad\n  indentation")

        config = Config(config_file=config_file, environ={})

        with pytest.raises(ConfigError, match="Failed to parse"):
            config.load()

    def test_load_non_mapping_yaml(self, tmp_path: Path) -> None:
        """Test a top-level list is rejected."""
        config_file = tmp_path / "mailpipe.yaml"
        config_file.write_text("- one\n- two\n")

        config = Config(config_file=config_file, environ={})

        with pytest.raises(ConfigError, match="mapping"):
            config.load()

    def test_load_empty_yaml(self, tmp_path: Path) -> None:
        """Test loading empty YAML file results in empty config."""
        config_file = tmp_path / "mailpipe.yaml"
        config_file.write_text("")

        config = Config(config_file=config_file, environ={})
        config.load()

        assert config.get("secrets") is None

    def test_load_can_be_called_multiple_times(self, tmp_path: Path) -> None:
        """Test reloading picks up file changes."""
        config_file = tmp_path / "mailpipe.yaml"
        config_file.write_text("secrets:\n  backend: native\n")

        config = Config(config_file=config_file, environ={})
        config.load()
        assert config.get("secrets.backend") == "native"

        config_file.write_text("secrets:\n  backend: sops\n")
        config.load()
        assert config.get("secrets.backend") == "sops"

    def test_get_before_load_raises_error(self, tmp_path: Path) -> None:
        """Test get() before load() raises ConfigError."""
        config = Config(config_file=tmp_path / "mailpipe.yaml")

        with pytest.raises(ConfigError, match="not loaded"):
            config.get("secrets.backend")

    def test_get_with_empty_key_raises_error(self, tmp_path: Path) -> None:
        """Test get() with empty key raises ValueError."""
        config = Config(config_file=tmp_path / "mailpipe.yaml", environ={})
        config.load(missing_ok=True)

        with pytest.raises(ValueError, match="empty"):
            config.get("")


class TestConfigPaths:
    """Tests for path resolution."""

    def test_relative_path_resolved_against_config_dir(self, tmp_path: Path) -> None:
        """Test relative paths are anchored at the config file's directory."""
        config_file = tmp_path / "conf" / "mailpipe.yaml"
        config_file.parent.mkdir()
        config_file.write_text("secrets:\n  document: ../secrets.encrypted.yaml\n")

        config = Config(config_file=config_file, environ={})
        config.load()

        path = config.resolve_path("secrets.document")
        assert path == config_file.resolve().parent / "../secrets.encrypted.yaml"

    def test_absolute_path_unchanged(self, tmp_path: Path) -> None:
        """Test absolute paths are returned as-is."""
        config_file = tmp_path / "mailpipe.yaml"
        config_file.write_text(f"secrets:\n  key_file: {tmp_path / 'key'}\n")

        config = Config(config_file=config_file, environ={})
        config.load()

        assert config.resolve_path("secrets.key_file") == tmp_path / "key"

    def test_default_path_relative_to_cwd_without_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test defaults resolve against the working directory without a config file."""
        monkeypatch.chdir(tmp_path)
        config = Config(config_file=tmp_path / "missing.yaml", environ={})
        config.load(missing_ok=True)

        assert config.resolve_path("secrets.document", "secrets.encrypted.yaml") == Path(
            os.getcwd()
        ) / "secrets.encrypted.yaml"

    def test_missing_path_without_default(self, tmp_path: Path) -> None:
        """Test resolve_path returns None when nothing is configured."""
        config = Config(config_file=tmp_path / "missing.yaml", environ={})
        config.load(missing_ok=True)

        assert config.resolve_path("secrets.audit_log") is None


class TestConfigEnvironmentOverrides:
    """Tests for environment variable overrides."""

    def test_env_override_nested_value(self, tmp_path: Path) -> None:
        """Test environment variable overrides nested config value."""
        config_file = tmp_path / "mailpipe.yaml"
        config_file.write_text("secrets:\n  backend: native\n")

        config = Config(config_file=config_file, environ={"MAILPIPE_SECRETS__BACKEND": "sops"})
        config.load()

        assert config.get("secrets.backend") == "sops"

    def test_env_override_converts_types(self, tmp_path: Path) -> None:
        """Test environment variable override converts string to appropriate type."""
        config_file = tmp_path / "mailpipe.yaml"
        config_file.write_text("secrets:\n  tool_timeout: 30\n  backup: true\n")

        config = Config(
            config_file=config_file,
            environ={
                "MAILPIPE_SECRETS__TOOL_TIMEOUT": "60",
                "MAILPIPE_SECRETS__BACKUP": "false",
            },
        )
        config.load()

        assert config.get("secrets.tool_timeout") == 60
        assert config.get("secrets.backup") is False

    def test_env_override_preserves_underscores_in_keys(self, tmp_path: Path) -> None:
        """Test single underscores stay part of the key name."""
        config = Config(
            config_file=tmp_path / "missing.yaml",
            environ={"MAILPIPE_SECRETS__KEY_FILE": "/keys/ci"},
        )
        config.load(missing_ok=True)

        assert config.get("secrets.key_file") == "/keys/ci"

    def test_env_without_nesting_ignored(self, tmp_path: Path) -> None:
        """Test plain MAILPIPE_* variables do not become configuration keys."""
        config = Config(
            config_file=tmp_path / "missing.yaml",
            environ={"MAILPIPE_INVOCATION_DEPTH": "2"},
        )
        config.load(missing_ok=True)

        assert config.get("invocation_depth") is None

    def test_no_env_prefix_disables_override(self, tmp_path: Path) -> None:
        """Test that env_prefix=None disables environment overrides."""
        config_file = tmp_path / "mailpipe.yaml"
        config_file.write_text("secrets:\n  backend: native\n")

        config = Config(
            config_file=config_file,
            env_prefix=None,
            environ={"MAILPIPE_SECRETS__BACKEND": "sops"},
        )
        config.load()

        assert config.get("secrets.backend") == "native"

    def test_defaults_to_process_environment(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test os.environ is used when no environ is given."""
        monkeypatch.setenv("MAILPIPE_SECRETS__BACKEND", "sops")

        config = Config(config_file=tmp_path / "missing.yaml")
        config.load(missing_ok=True)

        assert config.get("secrets.backend") == "sops"

    def test_set_value_with_non_dict_intermediate(self, tmp_path: Path) -> None:
        """Test an override below a scalar value is ignored."""
        config_file = tmp_path / "mailpipe.yaml"
        config_file.write_text("secrets: disabled\n")

        config = Config(config_file=config_file, environ={"MAILPIPE_SECRETS__BACKEND": "sops"})
        config.load()

        assert config.get("secrets") == "disabled"


class TestConfigRepr:
    """Tests for the string representation."""

    def test_repr_shows_loaded_status(self, tmp_path: Path) -> None:
        """Test repr shows whether the configuration was loaded."""
        config = Config(config_file=tmp_path / "mailpipe.yaml", environ={})
        assert "not loaded" in repr(config)

        config.load(missing_ok=True)
        assert "not loaded" not in repr(config)
        assert "loaded" in repr(config)
