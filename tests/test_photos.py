"""Tests for the photo attachment store."""

from __future__ import annotations

from pathlib import Path

import pytest

from kadaele_pos.errors import StorageError
from kadaele_pos.photos import PhotoStore


def test_save_and_get_photo(tmp_path):
    """Saved bytes come back under the returned reference."""

    store = PhotoStore(tmp_path / "photos")

    reference = store.save_photo(b"\xff\xd8jpeg", "P20240301-ab12cd34")

    assert reference == "photo_P20240301-ab12cd34"
    assert store.get_photo(reference) == b"\xff\xd8jpeg"


def test_reference_is_safe_for_the_filesystem(tmp_path):
    """Path separators in an id never escape the photo directory."""

    store = PhotoStore(tmp_path)

    reference = store.save_photo(b"x", "../P1")

    assert list(tmp_path.iterdir()) == [tmp_path / "photo_.._P1.bin"]
    assert "/" not in reference


def test_get_photo_returns_none_when_absent(tmp_path):
    assert PhotoStore(tmp_path).get_photo("photo_missing") is None


def test_save_photo_wraps_os_errors(tmp_path):
    """An unwritable directory surfaces as StorageError."""

    blocker = tmp_path / "photos"
    blocker.write_text("not a directory")

    with pytest.raises(StorageError):
        PhotoStore(Path(blocker)).save_photo(b"x", "P1")
