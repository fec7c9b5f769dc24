# SPDX-License-Identifier: GPL-2.0-only
# Copyright (C) 2025 Mailpipe contributors
"""
Mailpipe - Provisioning toolkit for the email-processing pipeline.

Exceptions raised by the encrypted secret store.

Every failure of the key store, recipient registry, secret store and
configuration resolver derives from SecretsError, so entry points can
report them uniformly. Messages always name the check that failed.
"""

from __future__ import annotations

from collections.abc import Sequence


class SecretsError(Exception):
    """Base class for secret store errors."""

    pass


class KeypairCorruptError(SecretsError):
    """
    Raised when a key file exists but no public key can be extracted from it.

    Attributes:
        source: Path or description of the key that failed to parse
    """

    def __init__(self, source: object, reason: str | None = None) -> None:
        if reason is None:
            reason = "contains no '# public key:' line; delete it or restore it from a backup"
        super().__init__(f"Key {source} exists but {reason}")
        self.source = source


class NoKeyAvailableError(SecretsError):
    """
    Raised when no private key could be loaded from any source.

    Attributes:
        checked: Human-readable description of every source that was tried
    """

    def __init__(self, checked: Sequence[str]) -> None:
        self.checked = list(checked)
        details = "\n".join(f"  - {entry}" for entry in self.checked)
        super().__init__(f"No private key available. Checked:\n{details}")


class DocumentNotEncryptedError(SecretsError):
    """
    Raised when the secret document carries no encryption metadata.

    Readers treat this as an empty store; writers refuse to overwrite
    the document.
    """

    pass


class DecryptionFailedError(SecretsError):
    """
    Raised when an encrypted document cannot be opened with the available key.
    """

    pass


class SecretNotFoundError(SecretsError, KeyError):
    """Raised when a key is not present in the secret document."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Secret '{key}' not found")
        self.key = key

    def __str__(self) -> str:
        return str(self.args[0])


class RequiredValueMissingError(SecretsError):
    """
    Raised when a required configuration value could not be obtained.

    Attributes:
        name: Name of the configuration variable
    """

    def __init__(self, name: str, message: str) -> None:
        super().__init__(message)
        self.name = name


class InvalidRecipientError(SecretsError, ValueError):
    """Raised when a public key identifier is malformed for the active backend."""

    pass


class PolicyError(SecretsError):
    """Raised when the recipient policy file is malformed or does not apply."""

    pass


class PolicyNotFoundError(PolicyError):
    """Raised when the recipient policy file does not exist."""

    pass


class EditorUnavailableError(SecretsError):
    """Raised when no interactive editor can be found."""

    pass


class EditorError(SecretsError):
    """Raised when the editor exits unsuccessfully."""

    pass


class ExternalToolError(SecretsError):
    """Raised when an external tool (sops, age-keygen) is missing, fails or times out."""

    pass


class EnvFileError(SecretsError):
    """Raised when an env file to import cannot be read."""

    pass
