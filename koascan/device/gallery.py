from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from ..errors import SavePermissionDenied, SaveWriteFailed

logger = logging.getLogger(__name__)


class Gallery(Protocol):
    def save_to_gallery(self, data: bytes, filename: str) -> str: ...


def write_atomic(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` through a sibling temp file.

    The temp file is removed on failure so no partial output remains.
    """
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class DirectoryGallery:
    """Save composite results into a local folder."""

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    def save_to_gallery(self, data: bytes, filename: str) -> str:
        target = self._root / Path(filename).name
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            write_atomic(target, data)
        except PermissionError as exc:
            raise SavePermissionDenied(f"Storage permission denied for {self._root}") from exc
        except OSError as exc:
            raise SaveWriteFailed(f"Failed to save image to gallery: {exc}") from exc
        logger.info("Saved %d bytes to %s", len(data), target)
        return str(target)


__all__ = ["Gallery", "DirectoryGallery", "write_atomic"]
