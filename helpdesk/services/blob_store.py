from __future__ import annotations

import asyncio
import logging
import mimetypes
import secrets
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path

from core.config import UploadConfig
from core.errors import ValidationError
from database.models import Attachment
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class LocalBlobStore:
    """Stores uploaded files on disk under generated, collision-resistant names."""

    def __init__(self, config: UploadConfig) -> None:
        self.config = config
        self.root = Path(config.storage_directory)

    @staticmethod
    def _extension(original_name: str) -> str:
        return Path(original_name).suffix.lower()

    def _generate_name(self, original_name: str) -> str:
        suffix = secrets.randbelow(10**9)
        return f"{int(time.time() * 1000)}-{suffix}{self._extension(original_name)}"

    @staticmethod
    def _mime_type(name: str, fallback: str = "") -> str:
        guessed, _ = mimetypes.guess_type(name)
        return guessed or fallback or "application/octet-stream"

    def check_extension(self, original_name: str) -> None:
        extension = self._extension(original_name).lstrip(".")
        if extension not in self.config.allowed_extensions:
            raise ValidationError(
                "Invalid file type. Only images, documents, and archives are allowed.",
                field_name="attachments",
            )

    def check_size(self, size: int) -> None:
        if size > self.config.max_file_size:
            raise ValidationError(
                f"File too large. Maximum size is {self.config.max_file_size // (1024 * 1024)}MB.",
                field_name="attachments",
            )

    def validate(self, original_name: str, size: int) -> None:
        self.check_extension(original_name)
        self.check_size(size)

    async def read_limited(self, read: Callable[[int], Awaitable[bytes]]) -> bytes:
        """Read an upload chunk by chunk, stopping as soon as it passes the size limit."""
        chunks: list[bytes] = []
        total = 0
        while chunk := await read(CHUNK_SIZE):
            total += len(chunk)
            self.check_size(total)
            chunks.append(chunk)
        return b"".join(chunks)

    def path_for(self, stored_name: str) -> Path:
        return self.root / Path(stored_name).name

    def exists(self, stored_name: str) -> bool:
        return bool(stored_name) and self.path_for(stored_name).is_file()

    async def store(self, original_name: str, mime_type: str, data: bytes) -> Attachment:
        self.validate(original_name, len(data))
        stored_name = self._generate_name(original_name)
        target = self.path_for(stored_name)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        LOGGER.info("Stored attachment. name=%s size=%s", stored_name, len(data))
        return Attachment(
            stored_name=stored_name,
            original_name=Path(original_name).name,
            mime_type=self._mime_type(original_name, mime_type),
            size=len(data),
            uploaded_at=to_iso(utc_now()),
        )

    def check_count(self, count: int, limit: int) -> None:
        if count > limit:
            raise ValidationError(f"Too many files. Maximum is {limit} files.", field_name="attachments")

    def describe(self, stored_name: str, original_name: str = "") -> Attachment | None:
        """Rebuild attachment metadata from the stored file; ``None`` when it is missing."""
        if not self.exists(stored_name):
            return None
        path = self.path_for(stored_name)
        stat = path.stat()
        display_name = Path(original_name).name
        if self._extension(display_name) != path.suffix.lower():
            display_name = path.name
        return Attachment(
            stored_name=path.name,
            original_name=display_name,
            mime_type=self._mime_type(path.name),
            size=stat.st_size,
            uploaded_at=to_iso(datetime.fromtimestamp(stat.st_mtime, tz=UTC)),
        )
