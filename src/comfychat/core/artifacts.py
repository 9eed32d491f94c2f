"""Helpers for generated image artifacts stored as raw bytes."""

import logging
from io import BytesIO

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

_FORMAT_TYPES = {
    "PNG": ("image/png", "png"),
    "JPEG": ("image/jpeg", "jpg"),
    "WEBP": ("image/webp", "webp"),
    "GIF": ("image/gif", "gif"),
}

_FALLBACK = ("application/octet-stream", "bin")


def sniff_image(blob: bytes) -> tuple[str, str]:
    """Detect the media type and file extension of an image blob.

    Args:
        blob: Raw bytes as returned by the backend's ``/view`` endpoint.

    Returns:
        Tuple of ``(media_type, extension)``.  Unknown or corrupt data
        falls back to ``application/octet-stream``.
    """
    try:
        with Image.open(BytesIO(blob)) as image:
            image_format = image.format
    except (UnidentifiedImageError, OSError):
        logger.debug("Could not identify image data (%d bytes)", len(blob))
        return _FALLBACK
    return _FORMAT_TYPES.get(image_format or "", _FALLBACK)


def download_name(blob: bytes, timestamp: int) -> str:
    """Suggested download file name for a stored artifact."""
    _, extension = sniff_image(blob)
    return f"comfy-generated-{timestamp}.{extension}"
