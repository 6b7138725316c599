"""Image uploads stored on local disk and served under /uploads."""
import logging
import os
import secrets
import time

from fastapi import UploadFile

import config
from errors import ValidationError

logger = logging.getLogger("storefront.uploads")

ALLOWED_EXTENSIONS = {".jpeg", ".jpg", ".png", ".gif", ".webp"}
URL_PREFIX = "/uploads/"


def _safe_stem(filename: str) -> str:
    stem = os.path.splitext(os.path.basename(filename))[0]
    cleaned = "".join(c if c.isalnum() or c in "-_" else "-" for c in stem).strip("-")
    return cleaned[:60] or "image"


def save_image(upload: UploadFile) -> str:
    filename = upload.filename or ""
    ext = os.path.splitext(filename)[1].lower()
    content_type = (upload.content_type or "").lower()
    if ext not in ALLOWED_EXTENSIONS or not content_type.startswith("image/"):
        raise ValidationError("Only image files (JPEG, PNG, GIF, WebP) are allowed")

    data = upload.file.read(config.MAX_UPLOAD_BYTES + 1)
    if not data:
        raise ValidationError("No file uploaded")
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise ValidationError(f"Image exceeds {config.MAX_UPLOAD_BYTES} bytes")

    os.makedirs(config.UPLOAD_DIR, exist_ok=True)
    name = f"{_safe_stem(filename)}-{int(time.time() * 1000)}-{secrets.randbelow(10**9)}{ext}"
    with open(os.path.join(config.UPLOAD_DIR, name), "wb") as fh:
        fh.write(data)
    logger.info("Stored upload %s (%d bytes)", name, len(data))
    return URL_PREFIX + name


def delete_image(path: str) -> bool:
    """Remove a file previously returned by save_image; anything else is left alone."""
    if not path or not path.startswith(URL_PREFIX):
        return False
    name = os.path.basename(path[len(URL_PREFIX):])
    full = os.path.join(config.UPLOAD_DIR, name)
    if not os.path.isfile(full):
        return False
    os.remove(full)
    return True
