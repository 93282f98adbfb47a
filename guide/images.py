from __future__ import annotations

import io

from PIL import Image, ImageOps, UnidentifiedImageError

MAX_WIDTH = 1280
MAX_HEIGHT = 720
JPEG_QUALITY = 80
MAX_UPLOAD_BYTES = 10 * 1024 * 1024


class InvalidImage(ValueError):
    pass


def normalize_upload(raw: bytes) -> bytes:
    """Re-encode an upload as an RGB JPEG no larger than the capture frame, dropping EXIF."""
    if not raw:
        raise InvalidImage("Image is empty")
    if len(raw) > MAX_UPLOAD_BYTES:
        raise InvalidImage("Image is too large")
    try:
        with Image.open(io.BytesIO(raw)) as img:
            img = ImageOps.exif_transpose(img)
            img = img.convert("RGB")
            img.thumbnail((MAX_WIDTH, MAX_HEIGHT))
            out = io.BytesIO()
            img.save(out, format="JPEG", quality=JPEG_QUALITY)
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidImage("Unreadable image") from exc
    return out.getvalue()
