"""
LocalArtifactStorage -- byte-level artifact persistence on the local filesystem.

Contract:
    ``write`` is all-or-nothing: bytes go to ``<name>.part``, are fsynced,
    and only then renamed over the final name.  A failed write leaves no
    file behind under either name.

Failure modes:
    - ArtifactWriteError on any OS error during write (partial file removed).
    - ArtifactMissingError when reading an artifact that does not exist.
    - InvalidBackupRequestError for names that would escape the base dir.
"""

from __future__ import annotations

import contextlib
import os
import stat
from pathlib import Path

from inventory_kernel.exceptions import (
    ArtifactMissingError,
    ArtifactWriteError,
    InvalidBackupRequestError,
)
from inventory_kernel.logging_config import get_logger

logger = get_logger("backup.storage")

PARTIAL_SUFFIX = ".part"


class LocalArtifactStorage:
    def __init__(self, base_dir: str | os.PathLike):
        self._base = Path(base_dir)
        self._base.mkdir(parents=True, exist_ok=True)

    @property
    def base_dir(self) -> Path:
        return self._base

    def path_for(self, filename: str) -> Path:
        if not filename or Path(filename).name != filename or filename in (".", ".."):
            raise InvalidBackupRequestError(f"invalid artifact name {filename!r}")
        return self._base / filename

    def write(self, filename: str, data: bytes) -> Path:
        dest = self.path_for(filename)
        tmp = dest.with_name(dest.name + PARTIAL_SUFFIX)
        try:
            with open(tmp, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp, dest)
            os.chmod(dest, stat.S_IRUSR | stat.S_IWUSR)
        except OSError as exc:
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()
            raise ArtifactWriteError(filename, str(exc)) from exc

        logger.debug("artifact_written", extra={"artifact": filename, "size": len(data)})
        return dest

    def read(self, filename: str) -> bytes:
        path = self.path_for(filename)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise ArtifactMissingError(filename) from exc

    def exists(self, filename: str) -> bool:
        return self.path_for(filename).is_file()

    def delete(self, filename: str) -> bool:
        """Remove the artifact and any partial file. Returns True if something was removed."""
        path = self.path_for(filename)
        removed = False
        for candidate in (path, path.with_name(path.name + PARTIAL_SUFFIX)):
            with contextlib.suppress(FileNotFoundError):
                candidate.unlink()
                removed = True
        if removed:
            logger.debug("artifact_deleted", extra={"artifact": filename})
        return removed

    def size(self, filename: str) -> int:
        try:
            return self.path_for(filename).stat().st_size
        except FileNotFoundError as exc:
            raise ArtifactMissingError(filename) from exc

    def used_bytes(self) -> int:
        return sum(p.stat().st_size for p in self._base.iterdir() if p.is_file())
