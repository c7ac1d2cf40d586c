"""Quote attachment storage (PDF uploads served under /uploads)."""

import asyncio
import logging
import uuid
from pathlib import Path

from fastapi import UploadFile

from quoteboard.config import UploadConfig, get_config
from quoteboard.errors import NotFoundError, ValidationError
from quoteboard.pipeline import PipelineStore
from quoteboard.schemas import QuoteRead

logger = logging.getLogger(__name__)

URL_PREFIX = "/uploads"
CHUNK_SIZE = 1024 * 1024


def upload_dir(config: UploadConfig | None = None) -> Path:
    config = config or get_config().uploads
    path = Path(config.directory)
    path.mkdir(parents=True, exist_ok=True)
    return path


async def save_upload(file: UploadFile, config: UploadConfig | None = None) -> Path:
    """Validate and write an uploaded file. Returns the stored path."""
    config = config or get_config().uploads
    if file is None or not file.filename:
        raise ValidationError("File is required")
    if file.content_type not in config.allowed_types:
        raise ValidationError("Only PDF files are allowed")

    limit = config.max_size_mb * 1024 * 1024
    data = bytearray()
    while chunk := await file.read(CHUNK_SIZE):
        data.extend(chunk)
        if len(data) > limit:
            raise ValidationError(f"File exceeds the {config.max_size_mb} MB limit")
    if not data:
        raise ValidationError("File is empty")

    target = upload_dir(config) / f"{uuid.uuid4().hex}.pdf"
    await asyncio.to_thread(target.write_bytes, bytes(data))
    logger.info(f"Stored upload '{file.filename}' as {target.name} ({len(data)} bytes)")
    return target


async def attach_to_quote(
    store: PipelineStore,
    quote_id: str,
    file: UploadFile,
    config: UploadConfig | None = None,
) -> QuoteRead:
    """Store the file and point the quote's attachment_url at it.

    The stored file is removed again when the quote is missing or the update fails.
    """
    path = await save_upload(file, config)
    try:
        return await store.set_attachment(quote_id, f"{URL_PREFIX}/{path.name}")
    except Exception as e:
        path.unlink(missing_ok=True)
        if not isinstance(e, NotFoundError):
            logger.error(f"Attachment for quote {quote_id} not saved: {e}")
        raise
