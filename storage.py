import logging
import os
import uuid
from pathlib import Path

from fastapi import UploadFile

import config
from errors import ValidationError

logger = logging.getLogger("agri.storage")

ALLOWED_EXTENSIONS = {".jpeg", ".jpg", ".png", ".gif", ".webp"}


def _folder(kind: str) -> Path:
    folder = Path(config.UPLOAD_DIR) / kind
    folder.mkdir(parents=True, exist_ok=True)
    return folder


def save_upload(upload: UploadFile, kind: str) -> str:
    """Store an uploaded image under UPLOAD_DIR/<kind>/ and return its file name."""
    ext = os.path.splitext(upload.filename or "")[1].lower()
    content_type = upload.content_type or ""
    if ext not in ALLOWED_EXTENSIONS or not content_type.startswith("image/"):
        raise ValidationError("Only image files are allowed")

    data = upload.file.read(config.MAX_FILE_UPLOAD + 1)
    if not data:
        raise ValidationError("Please upload a file")
    if len(data) > config.MAX_FILE_UPLOAD:
        raise ValidationError(f"File exceeds the {config.MAX_FILE_UPLOAD} byte limit")

    name = f"{kind}-{uuid.uuid4().hex}{ext}"
    (_folder(kind) / name).write_bytes(data)
    return name


def discard(kind: str, name: str) -> None:
    """Best-effort removal of a stored file. Never raises."""
    if not name:
        return
    path = Path(config.UPLOAD_DIR) / kind / os.path.basename(name)
    try:
        path.unlink()
    except OSError:
        logger.warning("Could not delete %s file %s", kind, path, exc_info=True)
