"""Filesystem storage for purchase photo attachments.

Photos are opaque byte blobs. A saved photo is addressed by a reference string
(``photo_<purchase id>``) that the purchase record keeps in ``photoRef``.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from . import log
from .errors import StorageError


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class PhotoStore:
    """Save and load photo blobs under ``directory``."""

    suffix = ".bin"

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def save_photo(self, data: bytes, purchase_id: str) -> str:
        """Write ``data`` for ``purchase_id`` and return its reference.

        Raises:
            StorageError: If the file cannot be written.
        """

        reference = f"photo_{_UNSAFE_CHARS.sub('_', purchase_id)}"
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._path(reference).write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Could not save photo for purchase '{purchase_id}': {exc}") from exc
        log.info("Saved photo '%s' (%d bytes)", reference, len(data))
        return reference

    def get_photo(self, reference: str) -> Optional[bytes]:
        """Return the bytes saved under ``reference`` or ``None`` when absent."""

        path = self._path(reference)
        if not path.exists():
            return None
        return path.read_bytes()

    def delete_photo(self, reference: str) -> None:
        """Remove the file saved under ``reference``; missing files are ignored."""

        try:
            self._path(reference).unlink(missing_ok=True)
        except OSError as exc:
            log.warning("Could not remove photo '%s': %s", reference, exc)
            return
        log.info("Removed photo '%s'", reference)

    def _path(self, reference: str) -> Path:
        return self.directory / f"{_UNSAFE_CHARS.sub('_', reference)}{self.suffix}"
