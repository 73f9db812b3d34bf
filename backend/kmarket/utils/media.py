from __future__ import annotations

import base64
import binascii
import io
import os
import uuid

from PIL import Image, UnidentifiedImageError

_FORMAT_EXT = {"JPEG": "jpg", "PNG": "png", "WEBP": "webp", "GIF": "gif"}


class InvalidImage(ValueError):
    pass


def parse_data_uri(data_uri: str) -> tuple[str, bytes]:
    """Split ``data:<mime>;base64,<payload>`` into (mime, decoded bytes)."""
    raw = (data_uri or "").strip()
    if not raw.startswith("data:"):
        raise InvalidImage("not_data_uri")
    marker = ";base64,"
    idx = raw.find(marker)
    if idx < 0:
        raise InvalidImage("unsupported_data_uri")
    mime = raw[len("data:"):idx].strip().lower()
    try:
        payload = base64.b64decode(raw[idx + len(marker):], validate=True)
    except (binascii.Error, ValueError):
        raise InvalidImage("invalid_base64")
    return mime, payload


def verify_image(image_bytes: bytes) -> str:
    """Return the Pillow format name, raising InvalidImage for non-images."""
    if not image_bytes:
        raise InvalidImage("empty_image")
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            fmt = (img.format or "").upper()
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError):
        raise InvalidImage("unreadable_image")
    if fmt not in _FORMAT_EXT:
        raise InvalidImage(f"unsupported_format:{fmt or 'unknown'}")
    return fmt


def save_image(image_bytes: bytes, directory: str, *, prefix: str) -> str:
    fmt = verify_image(image_bytes)
    os.makedirs(directory, exist_ok=True)
    name = f"{prefix}-{uuid.uuid4().hex[:12]}.{_FORMAT_EXT[fmt]}"
    with open(os.path.join(directory, name), "wb") as fh:
        fh.write(image_bytes)
    return name
