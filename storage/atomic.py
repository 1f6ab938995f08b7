"""
Atomic file writing with fsync, so a key or PEM file is never half-written.

Pattern:
  1. Write to temporary file in the same directory
  2. Apply the final permissions, then fsync
  3. Rename atomically (atomic on POSIX filesystems)

A crash during the write leaves the old file (or no file) in place.
"""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional


def atomic_write_text(
    path: Path,
    content: str,
    encoding: str = "utf-8",
    mode: Optional[int] = None,
) -> None:
    """
    Atomically write text to *path*.

    When *mode* is given the temp file gets it before the rename, so the
    target never exists with looser permissions.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Same directory as the target: rename must not cross filesystems
    fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )

    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            if mode is not None:
                os.fchmod(f.fileno(), mode)
            os.fsync(f.fileno())

        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise
