# SPDX-License-Identifier: GPL-2.0-only
# Copyright (C) 2025 Mailpipe contributors
"""
Mailpipe - Provisioning toolkit for the email-processing pipeline.

Private key discovery for one trust domain.

Each trust domain (developer workstation, deployment target, CI runner)
holds its own keypair. The key store makes sure the keypair file exists
and loads the private key used to decrypt the secret document from, in
order:
1. A key already loaded by this process
2. A raw key value injected through an environment variable (CI)
3. A key file named by an environment variable
4. The conventional key file path
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from mailpipe.config.secrets_encryption import EncryptionProvider, parse_public_key, parse_secret_key
from mailpipe.config.secrets_errors import KeypairCorruptError, NoKeyAvailableError

logger = logging.getLogger(__name__)


@dataclass
class Identity:
    """
    A loaded private key.

    Attributes:
        secret_key: Encoded private key (never logged)
        public_id: Derived public key identifier
        source: Where the key came from (e.g. "env:SOPS_AGE_KEY", "file:/path")
    """

    secret_key: str = field(repr=False)
    public_id: str
    source: str


class KeyStore:
    """
    Generates, persists and discovers the local keypair.

    Usage:
        keys = KeyStore(X25519Encryption(), Path(".age-key-local"))
        public_id = keys.ensure_keypair()
        identity = keys.load_active_key()
    """

    def __init__(
        self,
        encryption: EncryptionProvider,
        key_file: Path,
        environ: Mapping[str, str] | None = None,
        key_env_var: str = "SOPS_AGE_KEY",
        key_file_env_var: str = "SOPS_AGE_KEY_FILE",
    ) -> None:
        """
        Initialize key store.

        Args:
            encryption: Provider used for key generation and derivation
            key_file: Conventional key file path for this trust domain
            environ: Environment lookup (empty mapping if None)
            key_env_var: Variable holding a raw private key
            key_file_env_var: Variable holding a key file path
        """
        self.encryption = encryption
        self.key_file = key_file
        self.environ: Mapping[str, str] = environ if environ is not None else {}
        self.key_env_var = key_env_var
        self.key_file_env_var = key_file_env_var
        self._active: Identity | None = None

    def ensure_keypair(self, path: Path | None = None) -> str:
        """
        Make sure a keypair file exists and return its public key.

        Calling this twice never creates a second keypair.

        Args:
            path: Key file path (defaults to the conventional path)

        Returns:
            Public key identifier

        Raises:
            KeypairCorruptError: If the file exists without a public key line
        """
        path = path or self.key_file

        if path.exists():
            public_id = parse_public_key(path.read_text(encoding="utf-8"))
            if public_id is None:
                raise KeypairCorruptError(path)
            return public_id

        public_id = self.encryption.generate_keypair(path)
        logger.info("Generated new keypair at %s (public key %s)", path, public_id)
        return public_id

    def load_active_key(self) -> Identity:
        """
        Load the private key for this trust domain.

        Returns:
            Identity with the secret key and its public key

        Raises:
            NoKeyAvailableError: If no source yields a key (lists every source checked)
            KeypairCorruptError: If a source holds a key that cannot be parsed
        """
        if self._active is not None:
            return self._active

        checked: list[str] = []

        raw_value = self.environ.get(self.key_env_var, "")
        if raw_value.strip():
            self._active = self._identity_from_text(raw_value, f"env:{self.key_env_var}")
            return self._active
        checked.append(f"environment variable {self.key_env_var} (not set)")

        candidates: list[Path] = []
        override = self.environ.get(self.key_file_env_var, "")
        if override.strip():
            candidates.append(Path(override))
        else:
            checked.append(f"environment variable {self.key_file_env_var} (not set)")
        candidates.append(self.key_file)

        for path in candidates:
            if not path.is_file():
                checked.append(f"key file {path} (not found)")
                continue
            self._active = self._identity_from_text(path.read_text(encoding="utf-8"), f"file:{path}")
            return self._active

        raise NoKeyAvailableError(checked)

    def bootstrap(self) -> Identity:
        """
        Load the active key, creating the conventional keypair if none exists.

        Returns:
            Identity of this trust domain
        """
        try:
            return self.load_active_key()
        except NoKeyAvailableError:
            self.ensure_keypair()
            return self.load_active_key()

    def _identity_from_text(self, text: str, source: str) -> Identity:
        secret_key = parse_secret_key(text)
        if secret_key is None:
            raise KeypairCorruptError(source, "contains no private key line")

        public_id = parse_public_key(text)
        if public_id is None:
            try:
                public_id = self.encryption.public_id(secret_key)
            except ValueError as err:
                raise KeypairCorruptError(source, f"holds an unreadable private key ({err})") from err

        return Identity(secret_key=secret_key, public_id=public_id, source=source)
