# uploads.py
import logging
import os
import uuid

import config
from errors import UpstreamError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".pdf", ".webp"}


def save_prescription(filename: str, contents: bytes) -> str:
    """Store a prescription image and return the URL the order keeps."""
    ext = os.path.splitext(filename or "")[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise ValidationError("Prescription must be an image or PDF")
    if not contents:
        raise ValidationError("Prescription file is empty")

    stored_name = f"rx_{uuid.uuid4().hex}{ext}"
    try:
        os.makedirs(config.UPLOAD_DIR, exist_ok=True)
        with open(os.path.join(config.UPLOAD_DIR, stored_name), "wb") as fh:
            fh.write(contents)
    except OSError as e:
        logger.error("Prescription upload failed: %s", e)
        raise UpstreamError("Could not store prescription, please retry")
    return f"/uploads/{stored_name}"
