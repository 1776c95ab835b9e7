from __future__ import annotations

import shutil
import tempfile
import uuid
from pathlib import Path
from typing import BinaryIO, TextIO

from usage_billing.core.config import get_settings
from usage_billing.core.errors import SourceTooLarge

CHUNK_SIZE = 1024 * 1024


def _base_dir() -> Path:
    configured = get_settings().file_store_dir
    base = Path(configured) if configured else Path(tempfile.gettempdir()) / "usage_billing_files"
    base.mkdir(parents=True, exist_ok=True)
    return base


def _path_for(file_id: uuid.UUID) -> Path | None:
    for candidate in _base_dir().glob(f"{file_id}.*"):
        return candidate
    return None


def store_bytes(content: bytes, filename: str) -> uuid.UUID:
    file_id = uuid.uuid4()
    extension = Path(filename or "upload.csv").suffix or ".bin"
    (_base_dir() / f"{file_id}{extension}").write_bytes(content)
    return file_id


def store_stream(stream: BinaryIO, filename: str, *, max_bytes: int | None = None) -> uuid.UUID:
    """Copy an upload to the store in chunks so large usage files never sit in memory.

    When ``max_bytes`` is given the copy stops as soon as the upload exceeds it, the
    partial file is removed and ``SourceTooLarge`` is raised.
    """
    file_id = uuid.uuid4()
    extension = Path(filename or "upload.csv").suffix or ".bin"
    path = _base_dir() / f"{file_id}{extension}"
    if max_bytes is None:
        with path.open("wb") as target:
            shutil.copyfileobj(stream, target, length=CHUNK_SIZE)
        return file_id

    written = 0
    with path.open("wb") as target:
        while True:
            chunk = stream.read(CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if written > max_bytes:
                break
            target.write(chunk)
    if written > max_bytes:
        path.unlink(missing_ok=True)
        raise SourceTooLarge(f"upload exceeds {max_bytes} bytes", details={"max_bytes": max_bytes})
    return file_id


def open_text(file_id: uuid.UUID) -> TextIO:
    path = _path_for(file_id)
    if path is None or not path.exists():
        raise FileNotFoundError(f"file_id not found: {file_id}")
    return path.open("r", encoding="utf-8-sig", newline="")


def delete(file_id: uuid.UUID) -> bool:
    path = _path_for(file_id)
    if path is None:
        return False
    path.unlink(missing_ok=True)
    return True
