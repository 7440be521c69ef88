"""
Filesystem adapter — configuration file reads and writes.

Config-file steps capture the previous content of a file before
overwriting it, so the inverse can restore it byte-for-byte (or remove
the file when it did not exist). ``root`` rebases absolute paths under
a directory, which lets tests and dry environments run the real steps
against a scratch tree instead of ``/etc``.
"""

from __future__ import annotations

import logging
import os
import stat
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


class LocalFilesystem:
    """Read, write and remove files, optionally under a root directory."""

    def __init__(self, root: Path | None = None):
        self._root = root

    @property
    def root(self) -> Path | None:
        return self._root

    def resolve(self, path: str) -> Path:
        """Map a target path (e.g. ``/etc/fail2ban/jail.local``) to disk."""
        target = Path(path)
        if self._root is None:
            return target
        if target.is_absolute():
            target = target.relative_to(target.anchor)
        return self._root / target

    def read(self, path: str) -> str | None:
        """Return file content, or None if the file does not exist."""
        target = self.resolve(path)
        if not target.is_file():
            return None
        return target.read_text(encoding="utf-8")

    def mode(self, path: str) -> int | None:
        """Permission bits of a file, or None if it does not exist."""
        target = self.resolve(path)
        if not target.is_file():
            return None
        return stat.S_IMODE(target.stat().st_mode)

    def write(self, path: str, content: str, mode: int = 0o644) -> None:
        """Atomically replace a file (write to temp, then rename)."""
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=".forge_", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.chmod(tmp, mode)
            tmp.replace(target)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise
        logger.debug("Wrote %d bytes to %s", len(content), target)

    def remove(self, path: str) -> None:
        self.resolve(path).unlink(missing_ok=True)
