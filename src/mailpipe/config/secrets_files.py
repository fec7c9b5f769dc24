# SPDX-License-Identifier: GPL-2.0-only
# Copyright (C) 2025 Mailpipe contributors
"""
Atomic file replacement for the secret document and recipient policy.

Files are written to a temporary sibling, flushed to disk and renamed over
the original, so readers see either the old or the new content and a
failed write leaves the original untouched.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path


def backup_path(path: Path) -> Path:
    """Return the path of the backup copy kept for path."""
    return path.with_name(path.name + ".bak")


def atomic_write_bytes(path: Path, data: bytes, backup: bool = False, mode: int = 0o644) -> None:
    """
    Atomically replace path with data.

    Args:
        path: File to replace
        data: New content
        backup: Copy the previous content to ``<path>.bak`` first
        mode: Permission bits of the new file
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as file:
            file.write(data)
            file.flush()
            os.fsync(file.fileno())
        os.chmod(tmp_name, mode)

        if backup and path.exists():
            shutil.copy2(path, backup_path(path))

        os.replace(tmp_name, path)
    except BaseException:
        _remove_quietly(tmp_name)
        raise


def _remove_quietly(name: str) -> None:
    """Remove a leftover temporary file, ignoring a missing one."""
    try:
        os.unlink(name)
    except FileNotFoundError:
        pass
