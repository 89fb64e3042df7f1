"""
Heuristic image quality classification for submitted photos.

Every check yields a confidence in [0, 1]; the pipeline decides which
confidences are high enough to surface as quality flags.
"""

from dataclasses import dataclass, field
from typing import List

from PIL import Image, ImageFilter, ImageStat

from CiviReportAPI import config
from CiviReportAPI.constants import QualityReason
from CiviReportAPI.image_utils import open_image

# offset keeps negative responses inside the 0-255 range of an "L" image
_LAPLACIAN = ImageFilter.Kernel((3, 3), [0, 1, 0, 1, -4, 1, 0, 1, 0], scale=1, offset=128)

_ANALYSIS_SIDE = 512
_PALETTE_SIDE = 128
_FLAT_SHARE_FLOOR = 0.2
_FLAT_SHARE_CEILING = 0.8


@dataclass(frozen=True)
class QualityFlag:
    reason: QualityReason
    confidence: float


@dataclass
class QualityReport:
    width: int
    height: int
    blur_variance: float
    mean_luminance: float
    dominant_share: float
    flags: List[QualityFlag] = field(default_factory=list)

    def flags_at_least(self, threshold: float) -> List[QualityFlag]:
        return [f for f in self.flags if f.confidence >= threshold]


def _clamp(value: float) -> float:
    return round(max(0.0, min(1.0, value)), 3)


def _downscaled(img: Image.Image, side: int, resample) -> Image.Image:
    small = img.copy()
    small.thumbnail((side, side), resample)
    return small


def laplacian_variance(gray: Image.Image) -> float:
    """Variance of the Laplacian response; low values mean few sharp edges."""
    return ImageStat.Stat(gray.filter(_LAPLACIAN)).var[0]


def dominant_color_share(img: Image.Image) -> float:
    """Share of pixels taken by the single most common exact colour."""
    small = _downscaled(img.convert("RGB"), _PALETTE_SIDE, Image.Resampling.NEAREST)
    total = small.width * small.height
    colors = small.getcolors(maxcolors=total)
    if not colors:
        return 0.0
    return max(count for count, _ in colors) / total


def assess_image(img: Image.Image) -> QualityReport:
    width, height = img.size
    gray = _downscaled(img.convert("L"), _ANALYSIS_SIDE, Image.Resampling.LANCZOS)

    blur_variance = laplacian_variance(gray)
    mean_luminance = ImageStat.Stat(gray).mean[0]
    share = dominant_color_share(img)

    flags = [
        QualityFlag(QualityReason.BLURRY, _clamp(1.0 - blur_variance / config.BLUR_VARIANCE_REFERENCE)),
        QualityFlag(QualityReason.TOO_DARK, _clamp(1.0 - mean_luminance / config.DARK_LUMINANCE_REFERENCE)),
        QualityFlag(
            QualityReason.NON_SUBSTANTIVE,
            _clamp((share - _FLAT_SHARE_FLOOR) / (_FLAT_SHARE_CEILING - _FLAT_SHARE_FLOOR)),
        ),
    ]
    if width < config.MIN_IMAGE_SIDE or height < config.MIN_IMAGE_SIDE:
        flags.append(QualityFlag(QualityReason.LOW_RESOLUTION, 1.0))

    return QualityReport(
        width=width,
        height=height,
        blur_variance=round(blur_variance, 2),
        mean_luminance=round(mean_luminance, 2),
        dominant_share=round(share, 4),
        flags=[f for f in flags if f.confidence > 0],
    )


def classify_photo(content: bytes) -> QualityReport:
    """
    Assess raw photo bytes.

    Raises:
        UnreadableImage: If the bytes cannot be decoded.
    """
    return assess_image(open_image(content))
