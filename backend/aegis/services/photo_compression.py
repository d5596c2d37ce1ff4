"""
Photo compression for cloud upload.
Field photos are downscaled and re-encoded as JPEG so a report fits in a single
remote document. A photo that cannot be decoded is dropped, never fatal.
"""
import base64
import binascii
import io
import logging
from typing import Optional, Union

from PIL import Image

from ..core.errors import TransformError

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = "data:image/jpeg;base64,"
MIN_JPEG_QUALITY = 10
MAX_JPEG_QUALITY = 95
QUALITY_STEP = 10


def _decode_photo(raw: Union[bytes, str]) -> bytes:
    """Accept raw bytes, bare base64 or a ``data:`` URL."""
    if isinstance(raw, (bytes, bytearray)):
        if not raw:
            raise TransformError("Empty photo payload")
        return bytes(raw)
    if not isinstance(raw, str) or not raw.strip():
        raise TransformError("Unsupported photo payload")
    payload = raw.strip()
    if payload.startswith("data:"):
        if "," not in payload:
            raise TransformError("Malformed data URL")
        payload = payload.split(",", 1)[1]
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise TransformError(f"Invalid base64 photo: {exc}") from exc


def _jpeg_quality(quality: float) -> int:
    """Map a 0-1 quality factor onto Pillow's JPEG scale."""
    return max(1, min(MAX_JPEG_QUALITY, int(round(quality * 100))))


def _data_url_length(jpeg_size: int) -> int:
    """Length of the uploaded data URL for a JPEG of ``jpeg_size`` bytes."""
    return len(DATA_URL_PREFIX) + 4 * ((jpeg_size + 2) // 3)


def _encode_jpeg(image: Image.Image, quality: int) -> bytes:
    out = io.BytesIO()
    image.save(out, format="JPEG", quality=quality, optimize=True)
    return out.getvalue()


def _downscale(image_bytes: bytes, max_dimension: int) -> Image.Image:
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img.load()
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            else:
                img = img.copy()
    except Exception as exc:
        # Pillow surfaces corrupt input as OSError, SyntaxError, struct.error, ...
        raise TransformError(f"Undecodable photo: {exc}") from exc

    # thumbnail() keeps the aspect ratio and never upscales
    img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
    return img


def compress_image(
    raw: Union[bytes, str],
    max_dimension: int = 600,
    quality: float = 0.5,
    max_bytes: Optional[int] = None,
) -> Optional[str]:
    """
    Downscale a photo so its longer edge is at most ``max_dimension`` and
    re-encode it as JPEG. Returns a ``data:image/jpeg;base64,...`` URL, or None
    when the input is not an image or the URL cannot be squeezed under
    ``max_bytes`` characters.
    """
    try:
        image = _downscale(_decode_photo(raw), max_dimension)
        jpeg_quality = _jpeg_quality(quality)
        encoded = _encode_jpeg(image, jpeg_quality)
        while max_bytes is not None and _data_url_length(len(encoded)) > max_bytes:
            if jpeg_quality <= MIN_JPEG_QUALITY:
                size = _data_url_length(len(encoded))
                raise TransformError(
                    f"Photo still {size} bytes encoded at quality {jpeg_quality} (limit {max_bytes})"
                )
            jpeg_quality = max(MIN_JPEG_QUALITY, jpeg_quality - QUALITY_STEP)
            encoded = _encode_jpeg(image, jpeg_quality)
    except TransformError as exc:
        logger.warning("Photo compression failed: %s", exc)
        return None
    except (OSError, ValueError) as exc:
        logger.warning("Photo re-encode failed: %s", exc)
        return None

    logger.debug("Compressed photo to %dx%d, %d bytes", image.width, image.height, len(encoded))
    return DATA_URL_PREFIX + base64.b64encode(encoded).decode("ascii")
