# SPDX-License-Identifier: GPL-2.0-only
# Copyright (C) 2025 Mailpipe contributors
"""
Mailpipe - Provisioning toolkit for the email-processing pipeline.

Unit tests for mailpipe.config.secrets_keys.

Tests keypair bootstrap and private key discovery order.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from mailpipe.config.secrets_encryption import X25519Encryption, parse_secret_key
from mailpipe.config.secrets_errors import KeypairCorruptError, NoKeyAvailableError
from mailpipe.config.secrets_keys import Identity, KeyStore


@pytest.fixture
def encryption() -> X25519Encryption:
    """Create the in-process provider."""
    return X25519Encryption()


class TestEnsureKeypair:
    """Test keypair creation."""

    def test_creates_keypair(self, tmp_path: Path, encryption: X25519Encryption) -> None:
        """Test a missing key file is generated."""
        key_file = tmp_path / ".age-key-local"
        keys = KeyStore(encryption, key_file)

        public_id = keys.ensure_keypair()

        assert key_file.exists()
        assert public_id.startswith("mpk1")
        assert f"# public key: {public_id}" in key_file.read_text()

    def test_is_idempotent(self, tmp_path: Path, encryption: X25519Encryption) -> None:
        """Test a second call returns the same key and leaves the file alone."""
        key_file = tmp_path / ".age-key-local"
        keys = KeyStore(encryption, key_file)

        first = keys.ensure_keypair()
        content = key_file.read_text()
        second = keys.ensure_keypair()

        assert first == second
        assert key_file.read_text() == content

    def test_explicit_path(self, tmp_path: Path, encryption: X25519Encryption) -> None:
        """Test a key can be created at a non-default path."""
        keys = KeyStore(encryption, tmp_path / "default")

        keys.ensure_keypair(tmp_path / "other" / "key")

        assert (tmp_path / "other" / "key").exists()
        assert not (tmp_path / "default").exists()

    def test_file_without_public_key_is_corrupt(self, tmp_path: Path, encryption: X25519Encryption) -> None:
        """Test a key file lacking the public key line is reported, not replaced."""
        key_file = tmp_path / ".age-key-local"
        key_file.write_text("garbage\n")
        keys = KeyStore(encryption, key_file)

        with pytest.raises(KeypairCorruptError) as exc_info:
            keys.ensure_keypair()

        assert exc_info.value.source == key_file
        assert key_file.read_text() == "garbage\n"


class TestLoadActiveKey:
    """Test private key discovery."""

    def test_conventional_key_file(self, tmp_path: Path, encryption: X25519Encryption) -> None:
        """Test the conventional path is used without environment variables."""
        key_file = tmp_path / ".age-key-local"
        keys = KeyStore(encryption, key_file, environ={})
        public_id = keys.ensure_keypair()

        identity = keys.load_active_key()

        assert identity.public_id == public_id
        assert identity.source == f"file:{key_file}"

    def test_raw_key_from_environment_wins(self, tmp_path: Path, encryption: X25519Encryption) -> None:
        """Test an injected key takes precedence over key files."""
        env_key_file = tmp_path / "ci-key"
        env_public = encryption.generate_keypair(env_key_file)
        secret = parse_secret_key(env_key_file.read_text())

        key_file = tmp_path / ".age-key-local"
        keys = KeyStore(encryption, key_file, environ={"SOPS_AGE_KEY": secret})
        keys.ensure_keypair()

        identity = keys.load_active_key()

        assert identity.public_id == env_public
        assert identity.source == "env:SOPS_AGE_KEY"

    def test_key_file_from_environment(self, tmp_path: Path, encryption: X25519Encryption) -> None:
        """Test a key file named in the environment beats the conventional path."""
        custom = tmp_path / "custom-key"
        custom_public = encryption.generate_keypair(custom)
        key_file = tmp_path / ".age-key-local"
        keys = KeyStore(encryption, key_file, environ={"SOPS_AGE_KEY_FILE": str(custom)})
        keys.ensure_keypair()

        assert keys.load_active_key().public_id == custom_public

    def test_missing_env_key_file_falls_back(self, tmp_path: Path, encryption: X25519Encryption) -> None:
        """Test a dangling key file variable falls back to the conventional path."""
        key_file = tmp_path / ".age-key-local"
        keys = KeyStore(encryption, key_file, environ={"SOPS_AGE_KEY_FILE": str(tmp_path / "gone")})
        public_id = keys.ensure_keypair()

        assert keys.load_active_key().public_id == public_id

    def test_custom_variable_names(self, tmp_path: Path, encryption: X25519Encryption) -> None:
        """Test the environment variable names are configurable."""
        custom = tmp_path / "custom-key"
        custom_public = encryption.generate_keypair(custom)
        keys = KeyStore(
            encryption,
            tmp_path / ".age-key-local",
            environ={"MAILPIPE_KEY_FILE": str(custom)},
            key_file_env_var="MAILPIPE_KEY_FILE",
        )

        assert keys.load_active_key().public_id == custom_public

    def test_no_key_lists_every_source(self, tmp_path: Path, encryption: X25519Encryption) -> None:
        """Test the error names each source that was checked."""
        key_file = tmp_path / ".age-key-local"
        keys = KeyStore(encryption, key_file, environ={})

        with pytest.raises(NoKeyAvailableError) as exc_info:
            keys.load_active_key()

        message = str(exc_info.value)
        assert "SOPS_AGE_KEY " in message or "SOPS_AGE_KEY (" in message
        assert "SOPS_AGE_KEY_FILE" in message
        assert str(key_file) in message
        assert len(exc_info.value.checked) == 3

    def test_bare_secret_key_derives_public_id(self, tmp_path: Path, encryption: X25519Encryption) -> None:
        """Test a key without the public key comment still yields its identifier."""
        generated = tmp_path / "generated"
        public_id = encryption.generate_keypair(generated)
        bare = tmp_path / "bare"
        bare.write_text(parse_secret_key(generated.read_text()) + "\n")

        keys = KeyStore(encryption, bare, environ={})

        assert keys.load_active_key().public_id == public_id

    def test_unreadable_key_is_corrupt(self, tmp_path: Path, encryption: X25519Encryption) -> None:
        """Test a key file holding garbage is reported as corrupt."""
        key_file = tmp_path / ".age-key-local"
        key_file.write_text("not a key\n")
        keys = KeyStore(encryption, key_file, environ={})

        with pytest.raises(KeypairCorruptError, match="unreadable"):
            keys.load_active_key()

    def test_key_is_cached(self, tmp_path: Path, encryption: X25519Encryption) -> None:
        """Test the loaded key is reused after the file disappears."""
        key_file = tmp_path / ".age-key-local"
        keys = KeyStore(encryption, key_file, environ={})
        keys.ensure_keypair()

        first = keys.load_active_key()
        key_file.unlink()

        assert keys.load_active_key() is first

    def test_secret_key_not_in_repr(self) -> None:
        """Test the private key never appears in the identity repr."""
        identity = Identity(secret_key="MAILPIPE-SECRET-KEY-1ABC", public_id="mpk1abc", source="test")

        assert "MAILPIPE-SECRET-KEY" not in repr(identity)


class TestBootstrap:
    """Test bootstrap of a fresh trust domain."""

    def test_bootstrap_creates_key(self, tmp_path: Path, encryption: X25519Encryption) -> None:
        """Test bootstrap generates the conventional keypair when nothing exists."""
        key_file = tmp_path / ".age-key-local"
        keys = KeyStore(encryption, key_file, environ={})

        identity = keys.bootstrap()

        assert key_file.exists()
        assert identity.source == f"file:{key_file}"

    def test_bootstrap_prefers_environment_key(self, tmp_path: Path, encryption: X25519Encryption) -> None:
        """Test bootstrap does not create a key file when one is injected."""
        generated = tmp_path / "ci"
        encryption.generate_keypair(generated)
        key_file = tmp_path / ".age-key-local"
        keys = KeyStore(
            encryption,
            key_file,
            environ={"SOPS_AGE_KEY": parse_secret_key(generated.read_text())},
        )

        keys.bootstrap()

        assert not key_file.exists()
