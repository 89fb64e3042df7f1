"""
Perceptual fingerprints for duplicate photo detection.

Two 64-bit perceptual hashes are computed per photo:

* aHash: the photo reduced to 8x8 grayscale, one bit per cell set when the
  cell is brighter than the mean.
* dHash: the photo reduced to 9x8 grayscale, one bit per horizontal
  neighbour pair set when the left cell is brighter.

Both survive re-encoding, resizing and mild recompression. An MD5 of the raw
bytes catches exact re-uploads. Hashes are stored as 16-char hex strings.
"""

import hashlib
from dataclasses import dataclass
from typing import Optional

from PIL import Image

from CiviReportAPI.image_utils import open_image

HASH_BITS = 64


@dataclass(frozen=True)
class PhotoFingerprint:
    a_hash: str
    d_hash: str
    md5: Optional[str] = None


def _grayscale(img: Image.Image, size) -> list:
    small = img.convert("L").resize(size, Image.Resampling.LANCZOS)
    return list(small.tobytes())


def _bits_to_hex(bits) -> str:
    value = 0
    for bit in bits:
        value = (value << 1) | (1 if bit else 0)
    return f"{value:016x}"


def average_hash(img: Image.Image) -> str:
    pixels = _grayscale(img, (8, 8))
    mean = sum(pixels) / len(pixels)
    return _bits_to_hex(p > mean for p in pixels)


def difference_hash(img: Image.Image) -> str:
    pixels = _grayscale(img, (9, 8))
    bits = []
    for row in range(8):
        offset = row * 9
        for col in range(8):
            bits.append(pixels[offset + col] > pixels[offset + col + 1])
    return _bits_to_hex(bits)


def md5_digest(content: bytes) -> str:
    return hashlib.md5(content).hexdigest()


def fingerprint_image(img: Image.Image, content: Optional[bytes] = None) -> PhotoFingerprint:
    return PhotoFingerprint(
        a_hash=average_hash(img),
        d_hash=difference_hash(img),
        md5=md5_digest(content) if content is not None else None,
    )


def fingerprint_photo(content: bytes) -> PhotoFingerprint:
    """
    Fingerprint raw photo bytes.

    Raises:
        UnreadableImage: If the bytes cannot be decoded.
    """
    return fingerprint_image(open_image(content), content)


def hamming_distance(hash1: str, hash2: str) -> int:
    """
    Number of differing bits between two hex-encoded 64-bit hashes.

    Raises:
        ValueError: If either hash is missing or not 64 bits of hex.
    """
    if not hash1 or not hash2 or len(hash1) != len(hash2):
        raise ValueError("Hashes must be non-empty and of equal length")
    return bin(int(hash1, 16) ^ int(hash2, 16)).count("1")


def similarity(a: PhotoFingerprint, b: PhotoFingerprint) -> float:
    """
    Similarity between two fingerprints on a 0-100 scale.

    Identical bytes score 100. Otherwise the closer of the two perceptual
    hashes decides: `100 * (1 - distance / 64)`. Symmetric in its arguments.
    """
    if a.md5 and b.md5 and a.md5 == b.md5:
        return 100.0
    distance = min(hamming_distance(a.a_hash, b.a_hash), hamming_distance(a.d_hash, b.d_hash))
    return round(100.0 * (1.0 - distance / HASH_BITS), 2)
