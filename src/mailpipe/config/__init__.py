# SPDX-License-Identifier: GPL-2.0-only
# Copyright (C) 2025 Mailpipe contributors
"""
Mailpipe - Provisioning toolkit for the email-processing pipeline.

This package provides configuration loading from YAML files with
environment variable overrides, the encrypted multi-recipient secret
store and the configuration value resolver used by provisioning scripts.
"""

from __future__ import annotations

from mailpipe.config.config import Config, ConfigError, ConfigValidationError
from mailpipe.config.secrets import SecretsConfiguration, SecretStore
from mailpipe.config.secrets_audit import SecretsAuditLogger
from mailpipe.config.secrets_context import InvocationContext, Verbosity
from mailpipe.config.secrets_encryption import (
    EncryptionConfig,
    EncryptionProvider,
    SopsEncryption,
    X25519Encryption,
)
from mailpipe.config.secrets_errors import (
    DecryptionFailedError,
    DocumentNotEncryptedError,
    EditorError,
    EditorUnavailableError,
    ExternalToolError,
    InvalidRecipientError,
    KeypairCorruptError,
    NoKeyAvailableError,
    PolicyError,
    PolicyNotFoundError,
    RequiredValueMissingError,
    SecretNotFoundError,
    SecretsError,
)
from mailpipe.config.secrets_keys import Identity, KeyStore
from mailpipe.config.secrets_recipients import RecipientChange, RecipientRegistry
from mailpipe.config.secrets_resolver import ConfigResolver, ResolvedValue, ValueSource

__all__ = [
    # Configuration
    "Config",
    "ConfigError",
    "ConfigValidationError",
    # Secret Store
    "SecretStore",
    "SecretsConfiguration",
    # Keys and Recipients
    "KeyStore",
    "Identity",
    "RecipientRegistry",
    "RecipientChange",
    # Resolution
    "ConfigResolver",
    "ResolvedValue",
    "ValueSource",
    # Invocation Context
    "InvocationContext",
    "Verbosity",
    # Encryption
    "EncryptionProvider",
    "EncryptionConfig",
    "X25519Encryption",
    "SopsEncryption",
    # Errors
    "SecretsError",
    "KeypairCorruptError",
    "NoKeyAvailableError",
    "DocumentNotEncryptedError",
    "DecryptionFailedError",
    "SecretNotFoundError",
    "RequiredValueMissingError",
    "InvalidRecipientError",
    "PolicyError",
    "PolicyNotFoundError",
    "EditorUnavailableError",
    "EditorError",
    "ExternalToolError",
    # Audit
    "SecretsAuditLogger",
]
