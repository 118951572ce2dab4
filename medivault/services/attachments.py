import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable

import aiofiles
import aiofiles.os

from ..errors import NotFound, StorageFailure

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
MAX_NAME_ATTEMPTS = 5
CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class StoredAttachment:
    stored_name: str
    size: int


@dataclass(frozen=True)
class RetrievedAttachment:
    stored_name: str
    path: Path
    size: int
    content_disposition: str

    async def iter_bytes(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        async with aiofiles.open(self.path, "rb") as f:
            while True:
                chunk = await f.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    async def read(self) -> bytes:
        async with aiofiles.open(self.path, "rb") as f:
            return await f.read()


def sanitize_filename(original_name: str) -> str:
    # Keep only the final path component, then drop anything unsafe in a header or path
    base = os.path.basename((original_name or "").replace("\\", "/"))
    cleaned = _UNSAFE_CHARS.sub("_", base).strip("._")
    return cleaned or "upload"


class AttachmentManager:
    """
    Durable blob area for record attachments.

    Blobs are written once under ``<time_ns>-<original name>`` and never
    updated or deleted. Writing a blob and inserting its record are not
    transactional; callers store first and insert second.
    """

    def __init__(self, base_dir, clock: Callable[[], int] = time.time_ns):
        self.base_dir = Path(base_dir).resolve()
        self.clock = clock
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _resolve(self, stored_name: str) -> Path:
        if (
            not stored_name
            or stored_name in (".", "..")
            or "/" in stored_name
            or "\\" in stored_name
            or "\x00" in stored_name
        ):
            raise NotFound("Attachment not found")
        path = (self.base_dir / stored_name).resolve()
        if path.parent != self.base_dir:
            raise NotFound("Attachment not found")
        return path

    async def store(self, payload: bytes, original_name: str) -> StoredAttachment:
        safe_name = sanitize_filename(original_name)
        for _ in range(MAX_NAME_ATTEMPTS):
            stored_name = f"{self.clock()}-{safe_name}"
            path = self._resolve(stored_name)
            try:
                # "x" refuses to overwrite a blob that already has this name
                async with aiofiles.open(path, "xb") as f:
                    await f.write(payload)
            except FileExistsError:
                continue
            except OSError as e:
                logger.error("Failed to write attachment %s: %s", stored_name, e)
                raise StorageFailure() from e
            logger.info("Stored attachment %s (%d bytes)", stored_name, len(payload))
            return StoredAttachment(stored_name=stored_name, size=len(payload))

        logger.error("Could not find a free name for attachment %s", safe_name)
        raise StorageFailure()

    async def retrieve(self, stored_name: str, inline: bool = False) -> RetrievedAttachment:
        path = self._resolve(stored_name)
        try:
            stat = await aiofiles.os.stat(path)
        except FileNotFoundError:
            raise NotFound("Attachment not found") from None
        except OSError as e:
            logger.error("Failed to read attachment %s: %s", stored_name, e)
            raise StorageFailure() from e

        disposition = "inline" if inline else "attachment"
        return RetrievedAttachment(
            stored_name=stored_name,
            path=path,
            size=stat.st_size,
            content_disposition=f'{disposition}; filename="{stored_name}"',
        )
