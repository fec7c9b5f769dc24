# SPDX-License-Identifier: GPL-2.0-only
# Copyright (C) 2025 Mailpipe contributors
"""
Mailpipe - Provisioning toolkit for the email-processing pipeline.

Encrypted secret store.

This module provides:
- Settings for the store (SecretsConfiguration)
- The secret store, the only code touching the document's ciphertext
- Atomic get/set/delete/list/dump/edit operations and .env imports
- Recipient addition with re-encryption of the existing document

Every mutating operation decrypts the whole document, changes the
mapping in memory, encrypts it for the current recipients and atomically
replaces the file. A failure at any step leaves the previous document
untouched.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from mailpipe.config.config import Config, ConfigValidationError
from mailpipe.config.secrets_audit import SecretsAuditLogger
from mailpipe.config.secrets_context import InvocationContext
from mailpipe.config.secrets_encryption import EncryptionConfig, EncryptionProvider
from mailpipe.config.secrets_errors import (
    DecryptionFailedError,
    DocumentNotEncryptedError,
    EditorError,
    EditorUnavailableError,
    EnvFileError,
    PolicyNotFoundError,
    SecretNotFoundError,
    SecretsError,
)
from mailpipe.config.secrets_files import atomic_write_bytes
from mailpipe.config.secrets_keys import KeyStore
from mailpipe.config.secrets_recipients import RecipientChange, RecipientRegistry

logger = logging.getLogger(__name__)

DEFAULT_DOCUMENT = "secrets.encrypted.yaml"
DEFAULT_POLICY = ".sops.yaml"
DEFAULT_KEY_FILE = ".age-key-local"

FALLBACK_EDITORS = ("nano", "vi")

EDIT_HEADER = """\
# Encrypted secrets, one KEY=value per line.
# Values with surrounding whitespace or line breaks are JSON-quoted.
# Removing a line keeps the stored value; use `delete` to remove a key.
"""


@dataclass
class SecretsConfiguration:
    """
    Settings of the secret store, loaded from the 'secrets' section.

    Attributes:
        document: Encrypted document path
        policy: Recipient policy file path
        key_file: Conventional private key path of this trust domain
        backend: Encryption backend ("native" or "sops")
        key_env_var: Variable holding a raw private key (CI injection)
        key_file_env_var: Variable holding a custom key file path
        tool_timeout: Seconds to wait for external tools
        backup: Keep the previous ciphertext as <document>.bak on every write
        audit_log: Audit log file, or None to disable auditing
    """

    document: Path
    policy: Path
    key_file: Path
    backend: str = "native"
    key_env_var: str = "SOPS_AGE_KEY"
    key_file_env_var: str = "SOPS_AGE_KEY_FILE"
    tool_timeout: float = 30.0
    backup: bool = True
    audit_log: Path | None = None

    @classmethod
    def from_config(cls, config: Config) -> SecretsConfiguration:
        """
        Load secrets settings from Config object.

        Relative paths are resolved against the configuration file's
        directory (or the working directory without a file).

        Args:
            config: Config object with loaded YAML

        Returns:
            SecretsConfiguration instance

        Raises:
            ConfigValidationError: If a setting has the wrong type
        """
        timeout = config.get("secrets.tool_timeout", 30.0)
        try:
            tool_timeout = float(timeout)
        except (TypeError, ValueError) as err:
            raise ConfigValidationError(f"secrets.tool_timeout must be a number, got {timeout!r}") from err

        backup = config.get("secrets.backup", True)
        if isinstance(backup, str):
            backup = backup.lower() in ("true", "1", "yes", "on")

        return cls(
            document=config.resolve_path("secrets.document", DEFAULT_DOCUMENT),
            policy=config.resolve_path("secrets.policy", DEFAULT_POLICY),
            key_file=config.resolve_path("secrets.key_file", DEFAULT_KEY_FILE),
            backend=str(config.get("secrets.backend", "native")),
            key_env_var=str(config.get("secrets.key_env_var", "SOPS_AGE_KEY")),
            key_file_env_var=str(config.get("secrets.key_file_env_var", "SOPS_AGE_KEY_FILE")),
            tool_timeout=tool_timeout,
            backup=bool(backup),
            audit_log=config.resolve_path("secrets.audit_log"),
        )

    @classmethod
    def in_directory(cls, directory: Path, **overrides: Any) -> SecretsConfiguration:
        """Build settings with the default file names inside directory."""
        return cls(
            document=directory / DEFAULT_DOCUMENT,
            policy=directory / DEFAULT_POLICY,
            key_file=directory / DEFAULT_KEY_FILE,
            **overrides,
        )


class SecretStore:
    """
    Owns the single encrypted secret document.

    Features:
    - Bootstraps keypair, recipient policy and document on first write
    - Whole-document decrypt / mutate / re-encrypt on every change
    - Atomic replacement with an optional backup of the previous ciphertext
    - Merge-based interactive editing
    - Recipient addition that re-encrypts the existing document

    Usage:
        settings = SecretsConfiguration.in_directory(Path("."))
        store = SecretStore(settings, environ=os.environ)

        store.set("SERVER_IP", "203.0.113.10")
        server_ip = store.get("SERVER_IP")
    """

    def __init__(
        self,
        settings: SecretsConfiguration,
        environ: Mapping[str, str] | None = None,
        encryption: EncryptionProvider | None = None,
        keystore: KeyStore | None = None,
        registry: RecipientRegistry | None = None,
        audit_logger: SecretsAuditLogger | None = None,
        context: InvocationContext | None = None,
    ) -> None:
        """
        Initialize secret store.

        Args:
            settings: Store settings
            environ: Environment lookup for key discovery (empty if None)
            encryption: Optional encryption provider (created from settings if None)
            keystore: Optional key store (created from settings if None)
            registry: Optional recipient registry (created from settings if None)
            audit_logger: Optional audit logger (created from settings if None)
            context: Optional invocation context for diagnostics
        """
        self.settings = settings
        self.environ: Mapping[str, str] = environ if environ is not None else {}

        if encryption is None:
            encryption = EncryptionConfig(
                backend=settings.backend,
                tool_timeout=settings.tool_timeout,
            ).create_provider()
        self.encryption = encryption

        if keystore is None:
            keystore = KeyStore(
                encryption,
                settings.key_file,
                environ=self.environ,
                key_env_var=settings.key_env_var,
                key_file_env_var=settings.key_file_env_var,
            )
        self.keystore = keystore

        if registry is None:
            registry = RecipientRegistry(settings.policy, settings.document)
        self.registry = registry

        if audit_logger is None:
            audit_logger = SecretsAuditLogger(audit_file=settings.audit_log)
        self.audit = audit_logger

        self.context = context if context is not None else InvocationContext()

    @property
    def document_file(self) -> Path:
        """Path of the encrypted document."""
        return self.settings.document

    def exists(self) -> bool:
        """Check if the document exists (empty files count as missing)."""
        return self._read_document() is not None

    def ensure_document(self) -> None:
        """
        Create an empty encrypted document if none exists.

        Bootstraps the local keypair and the recipient policy first, and
        makes sure this trust domain's public key is a recipient.
        Idempotent: an existing document is never reset.
        """
        if self.exists():
            return

        identity = self.keystore.bootstrap()
        self.registry.ensure_policy(identity.public_id)
        if self.registry.add_recipient(identity.public_id) is RecipientChange.ADDED:
            self.context.info(f"Added {identity.public_id} to {self.registry.policy_file}")

        self._write({})
        self.context.success(f"Created {self.document_file}")

    def get(self, key: str) -> str:
        """
        Get a secret value.

        Args:
            key: Secret name

        Returns:
            The stored value

        Raises:
            SecretNotFoundError: If the key is not stored
            DecryptionFailedError: If the document cannot be decrypted
            NoKeyAvailableError: If no private key can be loaded
        """
        data = self._load_for_read()
        if key not in data:
            self.audit.log_secret_access(key, "store", {"document": self.document_file}, success=False)
            raise SecretNotFoundError(key)

        self.audit.log_secret_access(key, "store", {"document": self.document_file})
        return data[key]

    def set(self, key: str, value: str) -> None:
        """
        Insert or replace a secret value.

        Args:
            key: Secret name
            value: Secret value
        """
        data = self._load_for_write()
        data[key] = value
        self._write(data)
        self.audit.log_secret_change("set", key, self.document_file)

    def delete(self, key: str) -> bool:
        """
        Remove a secret.

        Args:
            key: Secret name

        Returns:
            True if the key was deleted, False if it was not stored
        """
        if not self.exists():
            return False

        data = self._load_for_write()
        if key not in data:
            return False

        del data[key]
        self._write(data)
        self.audit.log_secret_change("delete", key, self.document_file)
        return True

    def list_keys(self) -> list[str]:
        """Return all key names, sorted (empty if the document is missing)."""
        return sorted(self._load_for_read())

    def dump(self) -> dict[str, str]:
        """Return the whole decrypted mapping (empty if the document is missing)."""
        return dict(sorted(self._load_for_read().items()))

    def edit(self, editor: str | None = None) -> list[str]:
        """
        Edit the secrets interactively.

        The mapping is written to a private scratch file as KEY=value
        lines, the editor is run on it and the result is merged into the
        stored mapping: edited keys overwrite, keys missing from the
        edited file are kept.

        Args:
            editor: Editor command (defaults to $VISUAL, $EDITOR, nano, vi)

        Returns:
            Sorted names of the keys whose value changed

        Raises:
            EditorUnavailableError: If no editor can be found
            EditorError: If the editor exits unsuccessfully
        """
        command = self._editor_command(editor)
        data = self._load_for_write()

        with tempfile.TemporaryDirectory(prefix="mailpipe-edit-") as scratch:
            path = Path(scratch) / "secrets.env"
            path.write_text(EDIT_HEADER + format_env_lines(data), encoding="utf-8")
            os.chmod(path, 0o600)

            self.context.info(f"Opening secrets in {command[0]}...")
            try:
                result = subprocess.run(
                    [*command, str(path)],
                    check=False,
                    env=self.context.child_environ(os.environ),
                )
            except FileNotFoundError as err:
                raise EditorUnavailableError(f"Editor '{command[0]}' could not be started: {err}") from err

            if result.returncode != 0:
                raise EditorError(f"Editor exited with status {result.returncode}; secrets left unchanged")

            edited = parse_env_lines(path.read_text(encoding="utf-8"))

        changed = sorted(key for key, value in edited.items() if data.get(key) != value)
        if not changed:
            return []

        data.update(edited)
        self._write(data)
        for key in changed:
            self.audit.log_secret_change("edit", key, self.document_file)
        return changed

    def import_env(self, env_file: Path, keys: list[str] | None = None) -> list[str]:
        """
        Import KEY=value lines from an env file into the document.

        A missing document is created from the file; otherwise each
        imported key is inserted or replaced and all other keys are kept.
        The whole import is a single re-encryption.

        Args:
            env_file: Path of the env file (``export KEY=value`` lines are accepted)
            keys: Only import these names (all names if None)

        Returns:
            Sorted names of the keys whose value was added or changed

        Raises:
            EnvFileError: If the env file cannot be read
        """
        try:
            text = Path(env_file).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as err:
            raise EnvFileError(f"Cannot read env file {env_file}: {err}") from err

        imported = parse_env_lines(text)
        if keys is not None:
            imported = {key: value for key, value in imported.items() if key in keys}

        data = self._load_for_write()
        changed = sorted(key for key, value in imported.items() if data.get(key) != value)
        if not changed:
            return []

        data.update(imported)
        self._write(data)
        for key in changed:
            self.audit.log_secret_change("import", key, self.document_file)
        return changed

    def add_recipient(self, public_id: str) -> RecipientChange:
        """
        Allow another public key to decrypt the document.

        The existing document is decrypted and encrypted for the extended
        recipient list, then replaced before the policy file is rewritten.
        If the policy cannot be written the previous ciphertext is put
        back, so after a failed call neither file has changed.

        Args:
            public_id: Public key identifier of the new recipient

        Returns:
            RecipientChange.ADDED or RecipientChange.ALREADY_PRESENT

        Raises:
            PolicyNotFoundError: If the policy file is missing
            InvalidRecipientError: If public_id is malformed
        """
        public_id = public_id.strip()
        self.encryption.check_recipient(public_id)

        if not self.registry.exists():
            raise PolicyNotFoundError(
                f"Policy file not found: {self.registry.policy_file} (run 'init' or set a secret first)"
            )

        current = self.registry.recipients()
        if public_id in current:
            return RecipientChange.ALREADY_PRESENT

        previous = self._read_document()
        if previous is not None:
            data = self._decrypt(previous)
            ciphertext = self.encryption.encrypt(serialize_secrets(data), self.registry.with_recipient(public_id))
            atomic_write_bytes(self.document_file, ciphertext, backup=self.settings.backup)

        try:
            change = self.registry.add_recipient(public_id)
        except (OSError, SecretsError):
            if previous is not None:
                atomic_write_bytes(self.document_file, previous, backup=False)
            raise

        self.audit.log_recipient_added(public_id, reencrypted=previous is not None)
        return change

    def reencrypt_for_current_recipients(self) -> None:
        """Re-encrypt the existing document for every recipient in the policy."""
        if not self.exists():
            return

        data = self._decrypt(self._read_required())
        self._write(data)

    # Internal helpers

    def _read_document(self) -> bytes | None:
        try:
            content = self.document_file.read_bytes()
        except FileNotFoundError:
            return None
        return content if content.strip() else None

    def _read_required(self) -> bytes:
        content = self._read_document()
        if content is None:
            raise FileNotFoundError(f"Secret document not found: {self.document_file}")
        return content

    def _decrypt(self, document: bytes) -> dict[str, str]:
        if not self.encryption.is_encrypted(document):
            raise DocumentNotEncryptedError(
                f"{self.document_file} carries no {self.encryption.name} encryption metadata"
            )

        identity = self.keystore.load_active_key()
        try:
            plaintext = self.encryption.decrypt(document, identity.secret_key)
        except DecryptionFailedError as err:
            self.audit.log_decryption_error(self.document_file, str(err))
            raise DecryptionFailedError(
                f"Could not decrypt {self.document_file} with the key from {identity.source} "
                f"(public key {identity.public_id}): {err}. "
                "This indicates a problem with the encryption keys; ask an existing recipient "
                "to run 'add-recipient' for this public key."
            ) from err
        return parse_secrets(plaintext)

    def _load_for_read(self) -> dict[str, str]:
        document = self._read_document()
        if document is None:
            return {}

        try:
            return self._decrypt(document)
        except DocumentNotEncryptedError as err:
            self.context.warning(f"{self.document_file} is not encrypted ({err}); treating it as empty")
            return {}

    def _load_for_write(self) -> dict[str, str]:
        self.ensure_document()
        try:
            return self._decrypt(self._read_required())
        except DocumentNotEncryptedError as err:
            raise DocumentNotEncryptedError(
                f"Refusing to overwrite {self.document_file}: {err}. Move it away and retry."
            ) from err

    def _write(self, data: Mapping[str, str]) -> None:
        recipients = self.registry.recipients()
        ciphertext = self.encryption.encrypt(serialize_secrets(data), recipients)
        atomic_write_bytes(self.document_file, ciphertext, backup=self.settings.backup)
        logger.debug("Wrote %s (%d keys, %d recipients)", self.document_file, len(data), len(recipients))

    def _editor_command(self, editor: str | None) -> list[str]:
        checked: list[str] = []

        candidates = [
            ("--editor", editor),
            ("$VISUAL", self.environ.get("VISUAL")),
            ("$EDITOR", self.environ.get("EDITOR")),
        ]
        for label, value in candidates:
            if not value or not value.strip():
                checked.append(f"{label} (not set)")
                continue
            command = shlex.split(value)
            if shutil.which(command[0]) is None:
                checked.append(f"{label}={value} (not found)")
                continue
            return command

        for name in FALLBACK_EDITORS:
            path = shutil.which(name)
            if path is not None:
                return [path]
            checked.append(f"{name} (not on PATH)")

        raise EditorUnavailableError(
            "No editor found. Checked: " + ", ".join(checked) + ". Install nano or set $EDITOR."
        )


# Document serialization


def serialize_secrets(data: Mapping[str, str]) -> bytes:
    """
    Serialize the mapping as a YAML document, keys sorted.

    Non-ASCII characters are written as escapes, which keeps YAML line
    break characters such as U+0085 intact on load.
    """
    if not data:
        return b"{}\n"
    return yaml.safe_dump(
        dict(sorted(data.items())),
        allow_unicode=False,
        default_flow_style=False,
        sort_keys=True,
    ).encode("utf-8")


def parse_secrets(plaintext: bytes) -> dict[str, str]:
    """
    Parse a decrypted YAML document into a string mapping.

    Raises:
        DecryptionFailedError: If the document is not a flat mapping
    """
    try:
        data = yaml.safe_load(plaintext)
    except yaml.YAMLError as err:
        raise DecryptionFailedError(f"Decrypted document is not valid YAML: {err}") from err

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise DecryptionFailedError("Decrypted document is not a key/value mapping")

    return {str(key): _scalar_to_string(value) for key, value in data.items()}


def _scalar_to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def format_env_lines(data: Mapping[str, str]) -> str:
    """Format the mapping as KEY=value lines for editing."""
    lines = []
    for key, value in sorted(data.items()):
        if _needs_quoting(value):
            value = json.dumps(value, ensure_ascii=False)
        lines.append(f"{key}={value}")
    return "\n".join(lines) + ("\n" if lines else "")


def parse_env_lines(text: str) -> dict[str, str]:
    """
    Parse KEY=value lines.

    Blank lines, comments and lines without '=' are skipped, and a
    leading ``export`` is ignored. Values in double quotes are
    JSON-decoded when possible; single quotes are stripped.
    """
    result: dict[str, str] = {}
    for line in text.split("\n"):
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue

        key, _, value = stripped.partition("=")
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export ") :].strip()
        if not key:
            continue

        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] == '"':
            try:
                value = json.loads(value)
            except ValueError:
                value = value[1:-1]
        elif len(value) >= 2 and value[0] == value[-1] == "'":
            value = value[1:-1]

        result[key] = value
    return result


def _needs_quoting(value: str) -> bool:
    if value != value.strip():
        return True
    if value and value.splitlines() != [value]:
        return True
    return bool(value) and value[0] in ("'", '"')
