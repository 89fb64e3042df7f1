import io
import os
from dataclasses import dataclass
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

try:
    import pillow_heif  # type: ignore
    pillow_heif.register_heif_opener()
except Exception:
    # If pillow-heif isn't available, HEIC uploads are rejected as unreadable
    pillow_heif = None  # type: ignore


BROWSER_SAFE_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")


class UnreadableImage(ValueError):
    """Raised when bytes cannot be decoded as an image."""


@dataclass
class NormalizedImage:
    content: bytes
    filename: str
    content_type: str
    width: int
    height: int


def open_image(content: bytes) -> Image.Image:
    """
    Decode image bytes, applying the EXIF orientation.

    Raises:
        UnreadableImage: If the bytes are empty, truncated or not an image.
    """
    if not content:
        raise UnreadableImage("Empty image payload")
    try:
        img = Image.open(io.BytesIO(content))
        img = ImageOps.exif_transpose(img)
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise UnreadableImage(str(exc)) from exc
    return img


def _to_jpeg_bytes(img: Image.Image, quality: int = 85) -> bytes:
    buf = io.BytesIO()
    # Ensure mode compatible with JPEG
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    img.save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def normalize_image_for_web(
    content: bytes,
    filename: str,
    reported_content_type: Optional[str],
) -> NormalizedImage:
    """
    Normalize an uploaded photo to a browser-friendly format.

    - Pass through JPEG/PNG/WebP/GIF bytes unchanged so fingerprints match
      what was uploaded.
    - Convert HEIC/HEIF and any other decodable image to JPEG.

    Raises:
        UnreadableImage: If the payload is not a decodable image.
    """
    ct = (reported_content_type or "").lower()
    img = open_image(content)
    width, height = img.size

    if ct in BROWSER_SAFE_TYPES:
        return NormalizedImage(content, filename, ct, width, height)

    base, _ = os.path.splitext(filename or "upload")
    jpeg = _to_jpeg_bytes(img)
    return NormalizedImage(jpeg, f"{base}.jpg", "image/jpeg", width, height)
