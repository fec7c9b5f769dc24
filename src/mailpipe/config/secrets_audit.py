# SPDX-License-Identifier: GPL-2.0-only
# Copyright (C) 2025 Mailpipe contributors
"""
Audit logging for the secret store.

Logs every read and change of the secret document to a dedicated audit
file:
- Which key was read, written or deleted
- Where a resolved value came from
- Recipient additions and re-encryptions
- Decryption failures

Never logs actual secret values.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any


class SecretsAuditLogger:
    """
    Dedicated logger for secret store auditing.

    Logs to a separate file for security auditing purposes; without a file
    the events are discarded.
    Format: timestamp | level | event details
    """

    LOGGER_NAME = "mailpipe.secrets.audit"

    def __init__(self, audit_file: Path | None = None) -> None:
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (None disables the file)
        """
        self.audit_file = audit_file
        self._logger = self._setup_logger()

    def _setup_logger(self) -> logging.Logger:
        """Set up dedicated logger for secrets audit."""
        logger = logging.getLogger(self.LOGGER_NAME)
        logger.setLevel(logging.INFO)
        logger.propagate = False  # Don't propagate to root logger

        # One audit destination per process
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        # Simple format: timestamp | level | message
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        if self.audit_file is not None:
            # Ensure audit directory exists
            self.audit_file.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(self.audit_file, encoding="utf-8")
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

        if not logger.handlers:
            logger.addHandler(logging.NullHandler())

        return logger

    def log_secret_access(
        self,
        key: str,
        source: str,
        context: dict[str, Any] | None = None,
        success: bool = True,
    ) -> None:
        """
        Log a read of a configuration value.

        Args:
            key: Name of the value read
            source: Where it came from (environment, store, prompt, default)
            context: Extra details (document path, backend, etc.)
            success: Whether the value was found
        """
        context_str = self._format_context(context) if context else "none"
        status = "SUCCESS" if success else "FAILED"

        self._logger.info(f"{status} | key={key} | source={source} | context={context_str}")

    def log_secret_change(
        self,
        action: str,
        key: str,
        document: Path,
    ) -> None:
        """
        Log a change of the secret document.

        Args:
            action: "set", "delete", "edit" or "import"
            key: Key changed ("*" for whole-document edits)
            document: Path of the secret document
        """
        self._logger.info(f"CHANGE {action.upper()} | key={key} | document={document}")

    def log_recipient_added(
        self,
        public_id: str,
        reencrypted: bool,
    ) -> None:
        """
        Log a recipient addition.

        Args:
            public_id: Public key added to the policy
            reencrypted: Whether an existing document was re-encrypted
        """
        self._logger.info(f"RECIPIENT ADDED | public_key={public_id} | reencrypted={reencrypted}")

    def log_decryption_error(
        self,
        document: Path,
        error: str,
    ) -> None:
        """
        Log decryption failure.

        Args:
            document: Document that failed to decrypt
            error: Error message (sanitized, no sensitive data)
        """
        self._logger.error(f"DECRYPTION_FAILED | document={document} | error={error}")

    @staticmethod
    def _format_context(context: dict[str, Any]) -> str:
        """Format context dict for logging."""
        parts = [f"{k}={v}" for k, v in context.items() if v is not None]
        return ",".join(parts) if parts else "none"
