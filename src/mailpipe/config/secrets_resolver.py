# SPDX-License-Identifier: GPL-2.0-only
# Copyright (C) 2025 Mailpipe contributors
"""
Mailpipe - Provisioning toolkit for the email-processing pipeline.

Configuration value resolution.

Every provisioning step obtains its settings through one call:

    resolver.resolve("SERVER_IP", "Enter Server IP address", "SERVER_IP is required")

Sources are tried strictly in order, and the first non-empty value wins:
1. The process environment (operators can override anything)
2. The encrypted secret store
3. The non-empty default supplied by the caller
4. An interactive prompt; entered values are saved back into the store
"""

from __future__ import annotations

import getpass
import logging
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum

from mailpipe.config.secrets import SecretStore
from mailpipe.config.secrets_audit import SecretsAuditLogger
from mailpipe.config.secrets_context import InvocationContext
from mailpipe.config.secrets_errors import (
    NoKeyAvailableError,
    RequiredValueMissingError,
    SecretNotFoundError,
    SecretsError,
)

logger = logging.getLogger(__name__)


class ValueSource(Enum):
    """Where a resolved value came from."""

    ENVIRONMENT = "environment"
    STORE = "store"
    PROMPT = "prompt"
    DEFAULT = "default"


@dataclass(frozen=True)
class ResolvedValue:
    """
    One resolved configuration value.

    Attributes:
        name: Configuration variable name
        value: Resolved value (may be empty for optional variables)
        source: Where the value came from
    """

    name: str
    value: str
    source: ValueSource

    def __str__(self) -> str:
        return self.value


class ConfigResolver:
    """
    Resolves named configuration values.

    Resolved values are kept in the ``resolved`` mapping; the process
    environment is only read, never written.

    Usage:
        resolver = ConfigResolver(store, environ=os.environ)
        server_ip = resolver.value("SERVER_IP", "Enter Server IP address", "SERVER_IP is required")
        api_url = resolver.value("BENTO_API_URL", default="http://localhost:4195")
    """

    def __init__(
        self,
        store: SecretStore | None,
        environ: Mapping[str, str] | None = None,
        context: InvocationContext | None = None,
        interactive: bool | None = None,
        prompt: Callable[[str], str] | None = None,
        secret_prompt: Callable[[str], str] | None = None,
        audit_logger: SecretsAuditLogger | None = None,
    ) -> None:
        """
        Initialize resolver.

        Args:
            store: Secret store to read from and save prompted values to
                   (None skips the store entirely)
            environ: Environment lookup (empty if None)
            context: Invocation context for diagnostics
            interactive: Force interactive mode on or off (detect from stdin if None)
            prompt: Function reading a line of input (input() if None)
            secret_prompt: Function reading hidden input (getpass() if None)
            audit_logger: Audit logger for value sources (the store's if None)
        """
        self.store = store
        self.environ: Mapping[str, str] = environ if environ is not None else {}
        self.context = context if context is not None else InvocationContext()
        self._interactive = interactive
        self._prompt = prompt if prompt is not None else input
        self._secret_prompt = secret_prompt if secret_prompt is not None else getpass.getpass
        self.resolved: dict[str, ResolvedValue] = {}

        if audit_logger is None and store is not None:
            audit_logger = store.audit
        self.audit = audit_logger

    def is_interactive(self) -> bool:
        """Check whether prompting is possible."""
        if self._interactive is not None:
            return self._interactive
        try:
            return sys.stdin.isatty()
        except (AttributeError, ValueError):
            return False

    def resolve(
        self,
        name: str,
        prompt_text: str = "",
        error_if_empty: str = "",
        default: str | None = None,
        secret: bool = False,
    ) -> ResolvedValue:
        """
        Resolve a configuration value.

        Args:
            name: Variable name (also the environment variable and store key)
            prompt_text: Prompt shown in interactive mode
            error_if_empty: Error message when no value is available;
                            empty means the value is optional
            default: Value used when neither environment nor store has one;
                     an empty default still prompts in interactive mode
            secret: Hide the typed value when prompting

        Returns:
            ResolvedValue tagged with its source

        Raises:
            RequiredValueMissingError: If a required value cannot be obtained
            DecryptionFailedError: If the store exists but cannot be decrypted
        """
        cached = self.resolved.get(name)
        if cached is not None and cached.value:
            return cached

        value = self.environ.get(name, "")
        if value:
            self.context.info(f"Using {name} from environment")
            return self._remember(name, value, ValueSource.ENVIRONMENT)

        value = self._from_store(name)
        if value:
            self.context.info(f"Using {name} from encrypted secrets")
            return self._remember(name, value, ValueSource.STORE)

        if default:
            self.context.info(f"Using default {name}: {default}")
            return self._remember(name, default, ValueSource.DEFAULT)

        if self.is_interactive():
            value = self._ask(prompt_text or f"Enter {name}", secret)
            if not value:
                if error_if_empty:
                    self._audit_missing(name)
                    raise RequiredValueMissingError(name, error_if_empty)
                return self._remember(name, "", ValueSource.PROMPT)

            self._persist(name, value)
            return self._remember(name, value, ValueSource.PROMPT)

        if error_if_empty:
            self._audit_missing(name)
            raise RequiredValueMissingError(
                name,
                f"{name} is required and not set in non-interactive mode: {error_if_empty}",
            )
        return self._remember(name, "", ValueSource.DEFAULT)

    def value(
        self,
        name: str,
        prompt_text: str = "",
        error_if_empty: str = "",
        default: str | None = None,
        secret: bool = False,
    ) -> str:
        """Resolve a configuration value and return only the string."""
        return self.resolve(name, prompt_text, error_if_empty, default, secret).value

    def as_dict(self) -> dict[str, str]:
        """Return every value resolved so far."""
        return {name: resolved.value for name, resolved in self.resolved.items()}

    def _from_store(self, name: str) -> str:
        if self.store is None:
            return ""
        try:
            return self.store.get(name)
        except SecretNotFoundError:
            return ""
        except NoKeyAvailableError as err:
            self.context.detail(f"Skipping encrypted secrets for {name}: {err}")
            return ""

    def _ask(self, prompt_text: str, secret: bool) -> str:
        reader = self._secret_prompt if secret else self._prompt
        try:
            return reader(f"{prompt_text}: ").strip()
        except EOFError:
            return ""

    def _persist(self, name: str, value: str) -> None:
        if self.store is None:
            return
        try:
            self.store.set(name, value)
        except (SecretsError, OSError) as err:
            self.context.warning(f"Failed to save {name} to encrypted secrets: {err}")
            return
        self.context.success(f"Saved {name} to encrypted secrets")

    def _audit_missing(self, name: str) -> None:
        if self.audit is not None:
            self.audit.log_secret_access(name, "none", success=False)

    def _remember(self, name: str, value: str, source: ValueSource) -> ResolvedValue:
        resolved = ResolvedValue(name=name, value=value, source=source)
        self.resolved[name] = resolved
        logger.debug("Resolved %s from %s", name, source.value)
        if self.audit is not None:
            self.audit.log_secret_access(name, source.value, success=bool(value))
        return resolved
