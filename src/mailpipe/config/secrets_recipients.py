# SPDX-License-Identifier: GPL-2.0-only
# Copyright (C) 2025 Mailpipe contributors
"""
Mailpipe - Provisioning toolkit for the email-processing pipeline.

Recipient policy for the secret document.

The policy file uses the sops ``creation_rules`` layout, so the same file
drives both the native backend and the sops CLI:

    creation_rules:
      - path_regex: secrets\\.encrypted\\.yaml$
        age: >-
          mpk1...,
          mpk1...

The registry only decides who SHOULD be able to decrypt the document;
re-encrypting the ciphertext is the secret store's job.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from mailpipe.config.secrets_errors import PolicyError, PolicyNotFoundError
from mailpipe.config.secrets_files import atomic_write_bytes


class RecipientChange(Enum):
    """Result of adding a recipient."""

    ADDED = "added"
    ALREADY_PRESENT = "already_present"


class RecipientRegistry:
    """
    Maintains the ordered, duplicate-free list of recipients.

    Membership only grows: there is no revoke operation. Removing a key
    means editing the policy file by hand.
    """

    RECIPIENT_FIELD = "age"

    def __init__(self, policy_file: Path, document_file: Path) -> None:
        """
        Initialize recipient registry.

        Args:
            policy_file: Path of the policy file (e.g. .sops.yaml)
            document_file: Secret document the policy governs
        """
        self.policy_file = policy_file
        self.document_file = document_file

    def exists(self) -> bool:
        """Check if the policy file exists."""
        return self.policy_file.exists()

    def ensure_policy(self, initial_recipient: str | None = None) -> None:
        """
        Create the policy file if it does not exist.

        Idempotent: an existing policy is left untouched.

        Args:
            initial_recipient: First recipient, or None for an empty placeholder
        """
        if self.exists():
            return

        rule = {
            "path_regex": re.escape(self.document_file.name) + "$",
            self.RECIPIENT_FIELD: initial_recipient or "",
        }
        self._write({"creation_rules": [rule]})

    def recipients(self) -> list[str]:
        """
        Return the recipients of the rule governing the document.

        Raises:
            PolicyNotFoundError: If the policy file is missing
            PolicyError: If it is malformed or no rule matches the document
        """
        rule = self._matching_rule(self._load())
        return self._parse_recipients(rule.get(self.RECIPIENT_FIELD))

    def with_recipient(self, public_id: str) -> list[str]:
        """Return the recipient list as it would be after adding public_id."""
        current = self.recipients()
        if public_id in current:
            return current
        return [*current, public_id]

    def add_recipient(self, public_id: str) -> RecipientChange:
        """
        Append a recipient to the governing rule.

        Args:
            public_id: Public key identifier

        Returns:
            RecipientChange.ADDED or RecipientChange.ALREADY_PRESENT

        Raises:
            PolicyNotFoundError: If the policy file is missing
        """
        policy = self._load()
        rule = self._matching_rule(policy)
        current = self._parse_recipients(rule.get(self.RECIPIENT_FIELD))

        if public_id in current:
            return RecipientChange.ALREADY_PRESENT

        rule[self.RECIPIENT_FIELD] = ",".join([*current, public_id])
        self._write(policy)
        return RecipientChange.ADDED

    def _load(self) -> dict[str, Any]:
        if not self.exists():
            raise PolicyNotFoundError(f"Policy file not found: {self.policy_file}")

        try:
            policy = yaml.safe_load(self.policy_file.read_text(encoding="utf-8"))
        except yaml.YAMLError as err:
            raise PolicyError(f"Failed to parse policy file {self.policy_file}: {err}") from err

        if not isinstance(policy, dict) or not isinstance(policy.get("creation_rules"), list):
            raise PolicyError(f"Policy file {self.policy_file} has no creation_rules list")
        return policy

    def _matching_rule(self, policy: dict[str, Any]) -> dict[str, Any]:
        document = self.document_file.as_posix()

        for rule in policy["creation_rules"]:
            if not isinstance(rule, dict):
                continue
            pattern = rule.get("path_regex")
            if not pattern:
                return rule
            try:
                if re.search(pattern, document):
                    return rule
            except re.error as err:
                raise PolicyError(f"Invalid path_regex '{pattern}' in {self.policy_file}: {err}") from err

        raise PolicyError(f"No creation rule in {self.policy_file} matches {document}")

    @staticmethod
    def _parse_recipients(value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            entries = re.split(r"[,\s]+", value)
        elif isinstance(value, list):
            entries = [str(item).strip() for item in value]
        else:
            raise PolicyError(f"Unsupported recipient list: {value!r}")

        recipients: list[str] = []
        for entry in entries:
            if entry and entry not in recipients:
                recipients.append(entry)
        return recipients

    def _write(self, policy: dict[str, Any]) -> None:
        content = yaml.safe_dump(policy, sort_keys=False, default_flow_style=False)
        atomic_write_bytes(self.policy_file, content.encode("utf-8"))
