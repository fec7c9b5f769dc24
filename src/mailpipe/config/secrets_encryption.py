# SPDX-License-Identifier: GPL-2.0-only
# Copyright (C) 2025 Mailpipe contributors
"""
Mailpipe - Provisioning toolkit for the email-processing pipeline.

Multi-recipient encryption of the secret document.

The secret store never touches cryptographic primitives directly; it talks
to an EncryptionProvider that can:
1. Generate a keypair file for a trust domain
2. Derive the public key identifier of a private key
3. Encrypt a plaintext document for a list of recipients
4. Decrypt a document with one private key

Two providers are available:
- X25519Encryption: in-process, built on the cryptography library.
  A random file key encrypts the document with ChaCha20-Poly1305 and is
  wrapped once per recipient with X25519 + HKDF.
- SopsEncryption: delegates to the ``sops`` and ``age-keygen`` command
  line tools, producing documents the sops CLI can read.

Both use the same key file layout:

    # created: 2025-06-01T12:00:00+00:00
    # public key: <public key identifier>
    <SECRET KEY LINE>
"""

from __future__ import annotations

import base64
import os
import subprocess
import tempfile
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import yaml
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from mailpipe.config.config import ConfigError
from mailpipe.config.secrets_errors import (
    DecryptionFailedError,
    DocumentNotEncryptedError,
    ExternalToolError,
    InvalidRecipientError,
)

PUBLIC_KEY_MARKER = "# public key:"
CREATED_MARKER = "# created:"

NONCE_SIZE = 12
FILE_KEY_SIZE = 32


# Key file helpers


def write_key_file(path: Path, secret_key: str, public_id: str) -> None:
    """
    Write a private key file readable only by its owner.

    Fails if the file already exists so an existing identity is never
    overwritten.

    Args:
        path: Destination path
        secret_key: Encoded private key line
        public_id: Derived public key identifier
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    created = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
    content = f"{CREATED_MARKER} {created}\n{PUBLIC_KEY_MARKER} {public_id}\n{secret_key}\n"

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as file:
        file.write(content)


def parse_public_key(text: str) -> str | None:
    """Return the public key identifier embedded in a key file, if any."""
    for line in text.splitlines():
        line = line.strip()
        if line.startswith(PUBLIC_KEY_MARKER):
            public_id = line[len(PUBLIC_KEY_MARKER):].strip()
            return public_id or None
    return None


def parse_secret_key(text: str) -> str | None:
    """Return the first non-comment line of a key file or raw key value."""
    for line in text.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            return line
    return None


class EncryptionProvider(Protocol):
    """Protocol for the external encryption capability."""

    name: str

    def generate_keypair(self, path: Path) -> str:
        """Create a key file at path and return its public key identifier."""
        ...

    def public_id(self, secret_key: str) -> str:
        """Derive the public key identifier of a private key."""
        ...

    def check_recipient(self, public_id: str) -> None:
        """Raise InvalidRecipientError if public_id is malformed."""
        ...

    def encrypt(self, plaintext: bytes, recipients: Sequence[str]) -> bytes:
        """Encrypt a plaintext document for every recipient."""
        ...

    def decrypt(self, document: bytes, secret_key: str) -> bytes:
        """Decrypt a document with one private key."""
        ...

    def is_encrypted(self, document: bytes) -> bool:
        """Check whether a document carries encryption metadata."""
        ...


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b32decode(text: str) -> bytes:
    text = text.upper()
    return base64.b32decode(text + "=" * (-len(text) % 8))


class X25519Encryption:
    """
    In-process multi-recipient encryption.

    Document format (YAML):

        data: <base64 nonce + ChaCha20-Poly1305 ciphertext>
        encryption:
          version: 1
          cipher: chacha20-poly1305
          lastmodified: <iso timestamp>
          recipients:
            - recipient: <public key identifier>
              ephemeral: <base64 ephemeral X25519 public key>
              wrapped_key: <base64 file key encrypted for the recipient>
    """

    name = "native"

    SECRET_KEY_PREFIX = "MAILPIPE-SECRET-KEY-1"
    PUBLIC_KEY_PREFIX = "mpk1"
    FORMAT_VERSION = 1
    CIPHER = "chacha20-poly1305"
    WRAP_INFO = b"mailpipe-secrets/v1/wrap"
    PAYLOAD_AAD = b"mailpipe-secrets/v1/payload"

    def generate_keypair(self, path: Path) -> str:
        """
        Generate a fresh X25519 keypair and write it to path.

        Args:
            path: Key file to create (must not exist)

        Returns:
            Public key identifier
        """
        private_key = X25519PrivateKey.generate()
        public_id = self._encode_public(private_key.public_key())
        write_key_file(path, self._encode_secret(private_key), public_id)
        return public_id

    def public_id(self, secret_key: str) -> str:
        """
        Derive the public key identifier of a private key.

        Raises:
            ValueError: If secret_key is not a valid private key
        """
        return self._encode_public(self._decode_secret(secret_key).public_key())

    def check_recipient(self, public_id: str) -> None:
        """Raise InvalidRecipientError unless public_id decodes to an X25519 key."""
        try:
            self._decode_public(public_id)
        except ValueError as err:
            raise InvalidRecipientError(f"Invalid public key '{public_id}': {err}") from err

    def encrypt(self, plaintext: bytes, recipients: Sequence[str]) -> bytes:
        """
        Encrypt a document for every recipient.

        Args:
            plaintext: Serialized document
            recipients: Public key identifiers (at least one)

        Returns:
            Encrypted YAML document

        Raises:
            InvalidRecipientError: If the list is empty or an identifier is malformed
        """
        if not recipients:
            raise InvalidRecipientError("Cannot encrypt for an empty recipient list")

        file_key = ChaCha20Poly1305.generate_key()
        nonce = os.urandom(NONCE_SIZE)
        payload = ChaCha20Poly1305(file_key).encrypt(nonce, plaintext, self.PAYLOAD_AAD)

        stanzas = []
        for public_id in recipients:
            self.check_recipient(public_id)
            recipient_key = self._decode_public(public_id)
            ephemeral = X25519PrivateKey.generate()
            ephemeral_bytes = ephemeral.public_key().public_bytes(
                serialization.Encoding.Raw, serialization.PublicFormat.Raw
            )
            wrap_key = self._derive_wrap_key(
                ephemeral.exchange(recipient_key), ephemeral_bytes, recipient_key
            )
            wrapped = ChaCha20Poly1305(wrap_key).encrypt(bytes(NONCE_SIZE), file_key, None)
            stanzas.append(
                {
                    "recipient": public_id,
                    "ephemeral": _b64encode(ephemeral_bytes),
                    "wrapped_key": _b64encode(wrapped),
                }
            )

        envelope = {
            "data": _b64encode(nonce + payload),
            "encryption": {
                "version": self.FORMAT_VERSION,
                "cipher": self.CIPHER,
                "lastmodified": datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
                "recipients": stanzas,
            },
        }
        return yaml.safe_dump(envelope, sort_keys=False).encode("utf-8")

    def decrypt(self, document: bytes, secret_key: str) -> bytes:
        """
        Decrypt a document with one private key.

        Raises:
            DocumentNotEncryptedError: If the document has no encryption metadata
            DecryptionFailedError: If the key is not a recipient or data is corrupt
        """
        envelope = self._load_envelope(document)

        try:
            private_key = self._decode_secret(secret_key)
        except ValueError as err:
            raise DecryptionFailedError(f"Decryption failed: invalid private key ({err})") from err

        own_id = self._encode_public(private_key.public_key())
        stanzas = envelope["encryption"].get("recipients") or []
        stanza = next(
            (entry for entry in stanzas if isinstance(entry, dict) and entry.get("recipient") == own_id),
            None,
        )
        if stanza is None:
            listed = ", ".join(str(entry.get("recipient")) for entry in stanzas if isinstance(entry, dict))
            raise DecryptionFailedError(
                f"Decryption failed: document is not encrypted for public key {own_id} "
                f"(recipients: {listed or 'none'})"
            )

        try:
            ephemeral_bytes = base64.b64decode(stanza["ephemeral"])
            ephemeral_key = X25519PublicKey.from_public_bytes(ephemeral_bytes)
            wrap_key = self._derive_wrap_key(
                private_key.exchange(ephemeral_key), ephemeral_bytes, private_key.public_key()
            )
            file_key = ChaCha20Poly1305(wrap_key).decrypt(
                bytes(NONCE_SIZE), base64.b64decode(stanza["wrapped_key"]), None
            )
            data = base64.b64decode(envelope["data"])
            return ChaCha20Poly1305(file_key).decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], self.PAYLOAD_AAD)
        except InvalidTag as err:
            raise DecryptionFailedError("Decryption failed: document is corrupt or was tampered with") from err
        except (KeyError, TypeError, ValueError) as err:
            raise DecryptionFailedError(f"Decryption failed: malformed encryption metadata ({err})") from err

    def is_encrypted(self, document: bytes) -> bool:
        """Check whether a document carries encryption metadata."""
        try:
            self._load_envelope(document)
        except DocumentNotEncryptedError:
            return False
        return True

    def _load_envelope(self, document: bytes) -> dict[str, Any]:
        try:
            envelope = yaml.safe_load(document)
        except yaml.YAMLError as err:
            raise DocumentNotEncryptedError(f"Document is not valid YAML: {err}") from err

        if not isinstance(envelope, dict) or not isinstance(envelope.get("encryption"), dict):
            raise DocumentNotEncryptedError("Document has no encryption metadata")
        if "data" not in envelope:
            raise DocumentNotEncryptedError("Document has encryption metadata but no data")
        return envelope

    def _derive_wrap_key(
        self,
        shared_secret: bytes,
        ephemeral_bytes: bytes,
        recipient_key: X25519PublicKey,
    ) -> bytes:
        recipient_bytes = recipient_key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=FILE_KEY_SIZE,
            salt=ephemeral_bytes + recipient_bytes,
            info=self.WRAP_INFO,
        )
        return hkdf.derive(shared_secret)

    def _encode_secret(self, private_key: X25519PrivateKey) -> str:
        raw = private_key.private_bytes(
            serialization.Encoding.Raw,
            serialization.PrivateFormat.Raw,
            serialization.NoEncryption(),
        )
        return self.SECRET_KEY_PREFIX + base64.b32encode(raw).decode("ascii").rstrip("=")

    def _decode_secret(self, secret_key: str) -> X25519PrivateKey:
        secret_key = secret_key.strip()
        if not secret_key.startswith(self.SECRET_KEY_PREFIX):
            raise ValueError(f"expected a key starting with {self.SECRET_KEY_PREFIX}")
        return X25519PrivateKey.from_private_bytes(_b32decode(secret_key[len(self.SECRET_KEY_PREFIX):]))

    def _encode_public(self, public_key: X25519PublicKey) -> str:
        raw = public_key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
        return self.PUBLIC_KEY_PREFIX + base64.b32encode(raw).decode("ascii").rstrip("=").lower()

    def _decode_public(self, public_id: str) -> X25519PublicKey:
        public_id = public_id.strip()
        if not public_id.startswith(self.PUBLIC_KEY_PREFIX):
            raise ValueError(f"expected a key starting with {self.PUBLIC_KEY_PREFIX}")
        return X25519PublicKey.from_public_bytes(_b32decode(public_id[len(self.PUBLIC_KEY_PREFIX):]))


class SopsEncryption:
    """
    Encryption delegated to the sops and age-keygen command line tools.

    Documents are sops-encrypted YAML files with age recipients. Every tool
    invocation runs with a timeout so a hung tool cannot block a
    non-interactive run forever.
    """

    name = "sops"

    def __init__(
        self,
        timeout: float = 30.0,
        sops_binary: str = "sops",
        keygen_binary: str = "age-keygen",
    ) -> None:
        """
        Initialize the sops provider.

        Args:
            timeout: Seconds to wait for each tool invocation
            sops_binary: Name or path of the sops executable
            keygen_binary: Name or path of the age-keygen executable
        """
        self.timeout = timeout
        self.sops_binary = sops_binary
        self.keygen_binary = keygen_binary

    def generate_keypair(self, path: Path) -> str:
        """Generate a keypair with age-keygen and return its public key."""
        path.parent.mkdir(parents=True, exist_ok=True)
        result = self._run([self.keygen_binary, "-o", str(path)])
        if result.returncode != 0:
            raise ExternalToolError(f"{self.keygen_binary} failed: {self._stderr(result)}")

        os.chmod(path, 0o600)
        public_id = parse_public_key(path.read_text(encoding="utf-8"))
        if public_id is None:
            raise ExternalToolError(f"{self.keygen_binary} wrote no public key to {path}")
        return public_id

    def public_id(self, secret_key: str) -> str:
        """
        Derive the public key with ``age-keygen -y``.

        Raises:
            ValueError: If age-keygen rejects the key
        """
        result = self._run([self.keygen_binary, "-y"], input=secret_key.strip().encode("utf-8") + b"\n")
        if result.returncode != 0:
            raise ValueError(self._stderr(result))
        return result.stdout.decode("utf-8").strip()

    def check_recipient(self, public_id: str) -> None:
        """Raise InvalidRecipientError unless public_id looks like an age recipient."""
        if not public_id.startswith("age1") or any(char.isspace() or char == "," for char in public_id):
            raise InvalidRecipientError(f"Invalid age public key '{public_id}'")

    def encrypt(self, plaintext: bytes, recipients: Sequence[str]) -> bytes:
        """Encrypt a YAML document for every age recipient with sops."""
        if not recipients:
            raise InvalidRecipientError("Cannot encrypt for an empty recipient list")
        for public_id in recipients:
            self.check_recipient(public_id)

        with tempfile.TemporaryDirectory(prefix="mailpipe-") as scratch:
            source = Path(scratch) / "plaintext.yaml"
            source.write_bytes(plaintext)
            result = self._run(
                [
                    self.sops_binary,
                    "--encrypt",
                    "--input-type",
                    "yaml",
                    "--output-type",
                    "yaml",
                    "--age",
                    ",".join(recipients),
                    str(source),
                ]
            )

        if result.returncode != 0:
            raise ExternalToolError(f"sops encryption failed: {self._stderr(result)}")
        return result.stdout

    def decrypt(self, document: bytes, secret_key: str) -> bytes:
        """Decrypt a sops document with one age private key."""
        if not self.is_encrypted(document):
            raise DocumentNotEncryptedError("Document has no sops metadata")

        env = dict(os.environ)
        env["SOPS_AGE_KEY"] = secret_key
        env.pop("SOPS_AGE_KEY_FILE", None)

        with tempfile.TemporaryDirectory(prefix="mailpipe-") as scratch:
            source = Path(scratch) / "document.yaml"
            source.write_bytes(document)
            result = self._run(
                [
                    self.sops_binary,
                    "--decrypt",
                    "--input-type",
                    "yaml",
                    "--output-type",
                    "yaml",
                    str(source),
                ],
                env=env,
            )

        if result.returncode != 0:
            raise DecryptionFailedError(f"Decryption failed: {self._stderr(result)}")
        return result.stdout

    def is_encrypted(self, document: bytes) -> bool:
        """Check for the top-level ``sops`` metadata block."""
        try:
            data = yaml.safe_load(document)
        except yaml.YAMLError:
            return False
        return isinstance(data, dict) and isinstance(data.get("sops"), dict)

    def _run(
        self,
        args: list[str],
        input: bytes | None = None,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess[bytes]:
        try:
            return subprocess.run(
                args,
                input=input,
                capture_output=True,
                timeout=self.timeout,
                env=env,
                check=False,
            )
        except FileNotFoundError as err:
            raise ExternalToolError(
                f"{args[0]} is not installed or not on PATH "
                "(install sops from https://github.com/getsops/sops and age from https://github.com/FiloSottile/age)"
            ) from err
        except subprocess.TimeoutExpired as err:
            raise ExternalToolError(f"{args[0]} did not finish within {self.timeout} seconds") from err

    @staticmethod
    def _stderr(result: subprocess.CompletedProcess[bytes]) -> str:
        message = (result.stderr or b"").decode("utf-8", errors="replace").strip()
        return message or f"exit status {result.returncode}"


class EncryptionConfig:
    """Configuration for the encryption backend."""

    BACKENDS = ("native", "sops")

    def __init__(
        self,
        backend: str = "native",
        tool_timeout: float = 30.0,
    ) -> None:
        """
        Initialize encryption configuration.

        Args:
            backend: "native" (in-process) or "sops" (external tools)
            tool_timeout: Timeout in seconds for external tool invocations
        """
        self.backend = backend
        self.tool_timeout = tool_timeout

    def create_provider(self) -> EncryptionProvider:
        """
        Create encryption provider based on configuration.

        Returns:
            X25519Encryption for "native", SopsEncryption for "sops"

        Raises:
            ConfigError: If the backend name is unknown
        """
        if self.backend == "native":
            return X25519Encryption()
        if self.backend == "sops":
            return SopsEncryption(timeout=self.tool_timeout)

        raise ConfigError(
            f"Unknown secrets backend '{self.backend}' (expected one of: {', '.join(self.BACKENDS)})"
        )
