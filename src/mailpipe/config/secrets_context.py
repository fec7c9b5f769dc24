# SPDX-License-Identifier: GPL-2.0-only
# Copyright (C) 2025 Mailpipe contributors
"""
Mailpipe - Provisioning toolkit for the email-processing pipeline.

Invocation context for diagnostic output.

Provisioning scripts call the secrets tooling, which may in turn be
called from another invocation of itself (for example a deploy script
that shells out to ``mailpipe-secrets resolve``). The invocation context
decides whether progress messages are printed:
- Verbosity chosen by the outermost entry point (--quiet / --verbose)
- Nesting depth, passed to child processes through the environment

The context is presentation only: it never changes resolved values or
persisted state.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TextIO

logger = logging.getLogger(__name__)

DEPTH_ENV_VAR = "MAILPIPE_INVOCATION_DEPTH"


class Verbosity(Enum):
    """Amount of diagnostic output."""

    QUIET = 0
    NORMAL = 1
    VERBOSE = 2


@dataclass(frozen=True)
class InvocationContext:
    """
    Verbosity and nesting of the current invocation.

    Examples:
        >>> context = InvocationContext()
        >>> context.quiet
        False
        >>> context.nested().quiet
        True
        >>> InvocationContext.from_environ({"MAILPIPE_INVOCATION_DEPTH": "1"}).quiet
        True
    """

    verbosity: Verbosity = Verbosity.NORMAL
    depth: int = 0
    stream: TextIO | None = field(default=None, compare=False, repr=False)

    @classmethod
    def from_environ(
        cls,
        environ: Mapping[str, str],
        verbosity: Verbosity = Verbosity.NORMAL,
    ) -> InvocationContext:
        """
        Build the context for a process, reading the nesting depth.

        Args:
            environ: Environment lookup
            verbosity: Verbosity requested on the command line

        Returns:
            InvocationContext
        """
        try:
            depth = max(int(environ.get(DEPTH_ENV_VAR, "0") or 0), 0)
        except ValueError:
            depth = 0
        return cls(verbosity=verbosity, depth=depth)

    @property
    def quiet(self) -> bool:
        """True when diagnostics should be suppressed."""
        return self.verbosity is Verbosity.QUIET or self.depth > 0

    @property
    def verbose(self) -> bool:
        """True when extra detail was requested by a top-level invocation."""
        return self.verbosity is Verbosity.VERBOSE and self.depth == 0

    def nested(self) -> InvocationContext:
        """Return the context for a helper called from this invocation."""
        return replace(self, depth=self.depth + 1)

    def child_environ(self, environ: Mapping[str, str]) -> dict[str, str]:
        """Return a copy of environ marking child processes as nested."""
        child = dict(environ)
        child[DEPTH_ENV_VAR] = str(self.depth + 1)
        return child

    def info(self, message: str) -> None:
        """Print a progress message unless quiet."""
        logger.debug(message)
        if not self.quiet:
            self._write(message)

    def success(self, message: str) -> None:
        """Print a confirmation line unless quiet."""
        self.info(f"✓ {message}")

    def detail(self, message: str) -> None:
        """Print a message only in verbose mode."""
        logger.debug(message)
        if self.verbose:
            self._write(message)

    def warning(self, message: str) -> None:
        """Log a warning and print it unless quiet."""
        logger.warning(message)
        if not self.quiet:
            self._write(f"⚠ {message}")

    def _write(self, message: str) -> None:
        stream = self.stream if self.stream is not None else sys.stderr
        print(message, file=stream)
