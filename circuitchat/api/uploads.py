"""
Attachment uploads.

A file goes to object storage in two steps: ask the API for a presigned
URL, then PUT the raw bytes to it. The resulting FileAttachment is what
start_conversation / send_message reference in their `files` field.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from pathlib import Path

from circuitchat.errors import UploadError
from circuitchat.storage.models import FileAttachment

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB

ALLOWED_TYPES = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/pdf",
    "text/plain",
    "text/csv",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
)


def guess_mime_type(path: Path) -> str:
    mime, _ = mimetypes.guess_type(str(path))
    return mime or "application/octet-stream"


def format_file_size(size: int) -> str:
    """1536 -> '1.5 KB'."""
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    i = 0
    while size >= 1024 ** (i + 1) and i < len(units) - 1:
        i += 1
    value = round(size / (1024 ** i), 2)
    return f"{value:g} {units[i]}"


def _type_allowed(mime_type: str) -> bool:
    # Major type match mirrors the front-end check: any image/* or text/* passes
    return any(
        mime_type == allowed or mime_type.startswith(allowed.split("/")[0] + "/")
        for allowed in ALLOWED_TYPES
    )


def validate_file(path: Path, mime_type: str | None = None):
    """Raise UploadError if the file is missing, too large or of an unsupported type."""
    path = Path(path)
    if not path.is_file():
        raise UploadError(f"File not found: {path}")
    size = path.stat().st_size
    if size > MAX_FILE_SIZE:
        raise UploadError(f"File size exceeds 10MB limit ({format_file_size(size)})")
    mime_type = mime_type or guess_mime_type(path)
    if not _type_allowed(mime_type):
        raise UploadError(f"File type not supported: {mime_type}")


async def process_file_upload(client, path: Path, conversation_id: str | None = None) -> FileAttachment:
    """Validate, upload and describe a single file."""
    path = Path(path)
    mime_type = guess_mime_type(path)
    validate_file(path, mime_type)
    logger.info("Uploading %s (%s)", path.name, mime_type)

    presigned = await client.get_presigned_url(path.name, conversation_id)
    await client.upload_to_presigned_url(presigned.url, path, mime_type)

    return FileAttachment(
        path=path,
        upload_path=presigned.upload_path,
        filename=presigned.filename,
        conversation_id=presigned.conversation_id or (conversation_id or ""),
        mime_type=mime_type,
        preview_url=path.resolve().as_uri() if mime_type.startswith("image/") else None,
    )


async def process_multiple_file_uploads(
    client, paths: list[Path], conversation_id: str | None = None,
) -> list[FileAttachment]:
    """Upload files concurrently. The first failure propagates."""
    attachments = await asyncio.gather(
        *(process_file_upload(client, p, conversation_id) for p in paths)
    )
    logger.info("Uploaded %d files", len(attachments))
    return list(attachments)
