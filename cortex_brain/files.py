"""Uploaded file metadata and content access."""

from __future__ import annotations

import mimetypes
import time
from pathlib import Path

import aiofiles  # type: ignore
import httpx

from .db import Database
from .errors import ExecutionFailure, InputError, NotFound
from .models import FileModel, StoredFile, to_stored_file

TEXT_TYPES = ("text/", "application/json", "application/xml", "application/x-yaml")


def is_text(mime_type: str | None) -> bool:
    return bool(mime_type) and mime_type.startswith(TEXT_TYPES)


class FileStore:
    """Register uploads and read them back for the lobes."""

    def __init__(self, db: Database, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.db = db
        self.transport = transport

    def register(
        self,
        user_id: str,
        original_name: str,
        *,
        path: str | None = None,
        url: str | None = None,
        mime_type: str | None = None,
        size: int | None = None,
    ) -> StoredFile:
        if not path and not url:
            raise InputError("a file needs a local path or a url")
        if mime_type is None:
            mime_type = mimetypes.guess_type(original_name)[0]
        if size is None and path and Path(path).exists():
            size = Path(path).stat().st_size
        model = FileModel(
            user_id=user_id,
            original_name=original_name,
            mime_type=mime_type,
            size=size,
            storage="local" if path else "remote",
            path=path,
            url=url,
            created_at=time.time(),
        )
        with self.db.session() as sess:
            sess.add(model)
            sess.commit()
            return to_stored_file(model)

    def get(self, file_id: str) -> StoredFile:
        with self.db.session() as sess:
            model = sess.get(FileModel, file_id)
            if model is None:
                raise NotFound(file_id)
            return to_stored_file(model)

    async def read_bytes(self, file: StoredFile) -> bytes:
        if file.storage == "local" or not file.url:
            if not file.path or not Path(file.path).exists():
                raise ExecutionFailure(f"local file {file.id} not found on disk")
            async with aiofiles.open(file.path, "rb") as f:
                return await f.read()
        if not file.url.startswith(("http://", "https://")):
            raise ExecutionFailure(f"unsupported storage for file {file.id}")
        try:
            async with httpx.AsyncClient(timeout=30, transport=self.transport) as client:
                resp = await client.get(file.url)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExecutionFailure(f"download of {file.id} failed: {exc}") from exc
        return resp.content

    async def read_text(self, file: StoredFile) -> str | None:
        """Return the text of a local text file; ``None`` for anything else."""
        if file.storage != "local" or not is_text(file.mime_type):
            return None
        data = await self.read_bytes(file)
        return data.decode("utf-8", errors="replace")


__all__ = ["FileStore", "is_text"]
