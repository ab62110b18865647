"""
Object storage collaborator and timed media transfer.

The services never keep binary payloads; they hand uploads to an
``ObjectStorage`` and persist the returned key and URL.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Iterable, Optional, Protocol

from fastapi import UploadFile

from errors import DependencyFailure, ValidationError

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class StoredObject:
    key: str
    url: str
    size: int
    content_type: str
    filename: str


class ObjectStorage(Protocol):
    def upload(self, source: Path, *, folder: str, filename: str, content_type: str) -> StoredObject:
        ...

    def destroy(self, key: str) -> None:
        ...


class LocalObjectStorage:
    """Stores objects below ``root`` and serves them from ``base_url``."""

    def __init__(self, root: Path, base_url: str = "/media") -> None:
        self.root = Path(root).resolve()
        self.base_url = base_url.rstrip("/")

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise ValidationError(f"Invalid storage key: {key}")
        return path

    def upload(self, source: Path, *, folder: str, filename: str, content_type: str) -> StoredObject:
        suffix = Path(filename).suffix.lower() or (mimetypes.guess_extension(content_type) or "")
        key = f"{folder.strip('/')}/{uuid.uuid4().hex}{suffix}"
        target = self._path_for(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, target)
        except OSError as error:
            raise DependencyFailure(f"Could not store {filename}") from error
        return StoredObject(
            key=key,
            url=f"{self.base_url}/{key}",
            size=target.stat().st_size,
            content_type=content_type,
            filename=filename,
        )

    def destroy(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            LOGGER.info("Stored object %s was already gone", key)
        except OSError as error:
            raise DependencyFailure(f"Could not remove stored object {key}") from error


def _content_type_allowed(content_type: str, allowed_types: Iterable[str]) -> bool:
    for allowed in allowed_types:
        if allowed.endswith("/*") and content_type.startswith(allowed[:-1]):
            return True
        if content_type == allowed:
            return True
    return False


async def transfer_upload(
    storage: ObjectStorage,
    upload: UploadFile,
    *,
    folder: str,
    timeout: float,
    allowed_types: Iterable[str] = ("*/*",),
    max_bytes: Optional[int] = None,
) -> StoredObject:
    """Spool ``upload`` to a scratch file and push it to ``storage`` within ``timeout`` seconds.

    The scratch directory is removed on every exit path, including timeouts.
    """
    content_type = (upload.content_type or "application/octet-stream").lower()
    allowed = tuple(allowed_types)
    if "*/*" not in allowed and not _content_type_allowed(content_type, allowed):
        raise ValidationError(f"Unsupported file type: {content_type}")
    filename = Path(upload.filename or "upload").name

    with TemporaryDirectory(prefix="portal-upload-") as scratch:
        scratch_file = Path(scratch) / f"payload{Path(filename).suffix.lower()}"

        async def _spool_and_store() -> StoredObject:
            written = 0
            with scratch_file.open("wb") as handle:
                while True:
                    chunk = await upload.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if max_bytes is not None and written > max_bytes:
                        raise ValidationError(f"File exceeds the {max_bytes // (1024 * 1024)} MB limit")
                    handle.write(chunk)
            if written == 0:
                raise ValidationError("Uploaded file is empty")
            return await asyncio.to_thread(
                storage.upload, scratch_file, folder=folder, filename=filename, content_type=content_type
            )

        try:
            stored = await asyncio.wait_for(_spool_and_store(), timeout=timeout)
        except asyncio.TimeoutError as error:
            LOGGER.warning("Media transfer of %s timed out after %ss", filename, timeout)
            raise DependencyFailure("Media transfer timed out") from error
        except OSError as error:
            LOGGER.exception("Media transfer of %s failed", filename)
            raise DependencyFailure("Media transfer failed") from error
        finally:
            await upload.close()

    LOGGER.info("Stored %s as %s (%d bytes)", filename, stored.key, stored.size)
    return stored


__all__ = ["LocalObjectStorage", "ObjectStorage", "StoredObject", "transfer_upload"]
