# SPDX-License-Identifier: GPL-2.0-only
# Copyright (C) 2025 Mailpipe contributors
"""
Mailpipe - Provisioning toolkit for the email-processing pipeline.

This module provides initialization logic for the package.
"""

import logging

try:
    from importlib.metadata import version

    __version__ = version("mailpipe")
except Exception:  # pragma: no cover
    __version__ = "unknown"

# Library code logs; entry points decide where the records go
logging.getLogger(__name__).addHandler(logging.NullHandler())
