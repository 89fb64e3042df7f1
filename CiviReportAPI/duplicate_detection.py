"""
Submission-time duplicate and quality detection.

`detect` is a pure function of (draft, candidate pool) -> `DuplicateVerdict`:
it never writes anything. Text, image and quality signals are computed
independently, per photo and per candidate, on a thread pool and joined
before the verdict is assembled. A photo that cannot be processed only loses
the signal that failed; the rest of the verdict is still produced.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from starlette.concurrency import run_in_threadpool

from CiviReportAPI import config
from CiviReportAPI import image_hashing, image_quality, text_similarity
from CiviReportAPI.constants import IssueCategory
from CiviReportAPI.errors import DetectionUnavailable
from CiviReportAPI.image_utils import UnreadableImage, open_image
from CiviReportAPI.utils import bounding_box, haversine_meters, utcnow

logger = logging.getLogger(__name__)


@dataclass
class DraftPhoto:
    reference: str
    content: bytes


@dataclass
class DraftReport:
    title: str
    description: str
    category: IssueCategory
    latitude: float
    longitude: float
    photos: List[DraftPhoto] = field(default_factory=list)


@dataclass
class CandidatePhoto:
    reference: str
    fingerprint: Optional[image_hashing.PhotoFingerprint] = None


@dataclass
class CandidateIssue:
    issue_id: int
    title: str
    description: str
    photos: List[CandidatePhoto] = field(default_factory=list)


@dataclass
class TextDuplicate:
    issue_id: int
    score: float


@dataclass
class ImageDuplicate:
    issue_id: int
    photo_reference: str
    draft_photo_reference: str
    similarity: float


@dataclass
class QualityFlagEntry:
    photo_reference: str
    reason: str
    confidence: float


@dataclass
class UnavailableSignal:
    photo_reference: str
    signal: str
    detail: str


@dataclass
class DuplicateVerdict:
    text_duplicates: List[TextDuplicate] = field(default_factory=list)
    image_duplicates: List[ImageDuplicate] = field(default_factory=list)
    quality_flags: List[QualityFlagEntry] = field(default_factory=list)
    unavailable: List[UnavailableSignal] = field(default_factory=list)

    def is_empty(self) -> bool:
        """True when nothing needs the reporter's confirmation."""
        return not (self.text_duplicates or self.image_duplicates or self.quality_flags)

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class DetectionSettings:
    text_threshold: float = 80.0
    image_threshold: float = 85.0
    quality_threshold: float = 0.6
    max_workers: int = 4
    radius_m: float = 500.0
    window_days: int = 30
    candidate_limit: int = 200
    timeout_seconds: float = 10.0

    @classmethod
    def from_config(cls) -> "DetectionSettings":
        return cls(
            text_threshold=config.TEXT_DUPLICATE_THRESHOLD,
            image_threshold=config.IMAGE_DUPLICATE_THRESHOLD,
            quality_threshold=config.QUALITY_FLAG_THRESHOLD,
            max_workers=max(1, config.DETECTION_MAX_WORKERS),
            radius_m=config.DUPLICATE_RADIUS_METERS,
            window_days=config.DUPLICATE_WINDOW_DAYS,
            candidate_limit=config.DUPLICATE_CANDIDATE_LIMIT,
            timeout_seconds=config.DETECTION_TIMEOUT_SECONDS,
        )


@dataclass
class _PhotoAnalysis:
    reference: str
    fingerprint: Optional[image_hashing.PhotoFingerprint] = None
    quality: Optional[image_quality.QualityReport] = None
    unavailable: List[UnavailableSignal] = field(default_factory=list)


def _analyse_draft_photo(photo: DraftPhoto) -> _PhotoAnalysis:
    analysis = _PhotoAnalysis(reference=photo.reference)
    try:
        img = open_image(photo.content)
    except UnreadableImage as exc:
        logger.warning("Skipping unreadable draft photo %s: %s", photo.reference, exc)
        for signal in ("image_hash", "image_quality"):
            analysis.unavailable.append(UnavailableSignal(photo.reference, signal, str(exc)))
        return analysis

    try:
        analysis.fingerprint = image_hashing.fingerprint_image(img, photo.content)
    except Exception as exc:
        logger.warning("Hashing failed for draft photo %s: %s", photo.reference, exc)
        analysis.unavailable.append(UnavailableSignal(photo.reference, "image_hash", str(exc)))

    try:
        analysis.quality = image_quality.assess_image(img)
    except Exception as exc:
        logger.warning("Quality check failed for draft photo %s: %s", photo.reference, exc)
        analysis.unavailable.append(UnavailableSignal(photo.reference, "image_quality", str(exc)))
    return analysis


def _resolve_candidate_photo(photo: CandidatePhoto, blob_store) -> Tuple[CandidatePhoto, Optional[str]]:
    """Fill in a missing fingerprint from the blob store. Returns (photo, error)."""
    if photo.fingerprint is not None:
        return photo, None
    if blob_store is None:
        return photo, "no stored fingerprint"
    try:
        content = blob_store.get(photo.reference)
        photo.fingerprint = image_hashing.fingerprint_photo(content)
    except Exception as exc:
        logger.warning("Could not fingerprint candidate photo %s: %s", photo.reference, exc)
        return photo, str(exc)
    return photo, None


def _score_text(draft_text: str, candidate: CandidateIssue) -> TextDuplicate:
    candidate_text = text_similarity.report_text(candidate.title, candidate.description)
    return TextDuplicate(candidate.issue_id, text_similarity.similarity(draft_text, candidate_text))


def _compare_images(
    analyses: Sequence[_PhotoAnalysis],
    candidates: Sequence[CandidateIssue],
    threshold: float,
) -> List[ImageDuplicate]:
    matches = []
    for analysis in analyses:
        if analysis.fingerprint is None:
            continue
        for candidate in candidates:
            for photo in candidate.photos:
                if photo.fingerprint is None:
                    continue
                try:
                    score = image_hashing.similarity(analysis.fingerprint, photo.fingerprint)
                except ValueError as exc:
                    logger.warning("Malformed stored hash for photo %s: %s", photo.reference, exc)
                    continue
                if score >= threshold:
                    matches.append(ImageDuplicate(candidate.issue_id, photo.reference, analysis.reference, score))
    matches.sort(key=lambda m: (-m.similarity, m.issue_id, m.photo_reference))
    return matches


def detect(
    draft: DraftReport,
    candidates: Sequence[CandidateIssue],
    settings: Optional[DetectionSettings] = None,
    blob_store=None,
) -> DuplicateVerdict:
    """
    Run the text, image and quality checks for one submission.

    Args:
        draft (DraftReport): The report being submitted.
        candidates (Sequence[CandidateIssue]): Existing issues to compare against.
        settings (DetectionSettings): Thresholds; defaults from configuration.
        blob_store: Used only for candidate photos without a stored fingerprint.

    Returns:
        DuplicateVerdict: Text and image duplicates (most similar first) and
        quality flags for the draft photos.
    """
    settings = settings or DetectionSettings.from_config()
    draft_text = text_similarity.report_text(draft.title, draft.description)
    verdict = DuplicateVerdict()

    with ThreadPoolExecutor(max_workers=settings.max_workers, thread_name_prefix="detect") as pool:
        photo_futures = [pool.submit(_analyse_draft_photo, photo) for photo in draft.photos]
        resolve_futures = [
            pool.submit(_resolve_candidate_photo, photo, blob_store)
            for candidate in candidates
            for photo in candidate.photos
            if photo.fingerprint is None
        ]
        text_futures = [pool.submit(_score_text, draft_text, candidate) for candidate in candidates]

        analyses = [f.result() for f in photo_futures]
        for future in resolve_futures:
            photo, error = future.result()
            if error:
                verdict.unavailable.append(UnavailableSignal(photo.reference, "candidate_image_hash", error))
        scores = [f.result() for f in text_futures]

    verdict.text_duplicates = sorted(
        (s for s in scores if s.score >= settings.text_threshold),
        key=lambda s: (-s.score, s.issue_id),
    )
    verdict.image_duplicates = _compare_images(analyses, candidates, settings.image_threshold)

    for analysis in analyses:
        verdict.unavailable.extend(analysis.unavailable)
        if analysis.quality is None:
            continue
        for flag in analysis.quality.flags_at_least(settings.quality_threshold):
            verdict.quality_flags.append(QualityFlagEntry(analysis.reference, flag.reason.value, flag.confidence))

    logger.info(
        "Duplicate check against %s candidates: %s text, %s image, %s quality",
        len(candidates),
        len(verdict.text_duplicates),
        len(verdict.image_duplicates),
        len(verdict.quality_flags),
    )
    return verdict


async def run_detection(
    draft: DraftReport,
    candidates: Sequence[CandidateIssue],
    settings: Optional[DetectionSettings] = None,
    blob_store=None,
) -> DuplicateVerdict:
    """
    Run `detect` off the event loop, bounded by the configured timeout.

    Raises:
        DetectionUnavailable: If the check did not finish in time.
    """
    settings = settings or DetectionSettings.from_config()
    try:
        return await asyncio.wait_for(
            run_in_threadpool(detect, draft, candidates, settings, blob_store),
            timeout=settings.timeout_seconds,
        )
    except asyncio.TimeoutError as exc:
        logger.warning("Duplicate check timed out after %ss", settings.timeout_seconds)
        raise DetectionUnavailable(
            "Duplicate check timed out", rule="detection_timeout"
        ) from exc


def candidate_from_issue(issue) -> CandidateIssue:
    photos = []
    for photo in issue.photos:
        fingerprint = None
        if photo.a_hash and photo.d_hash:
            fingerprint = image_hashing.PhotoFingerprint(photo.a_hash, photo.d_hash, photo.md5)
        photos.append(CandidatePhoto(photo.blob_key, fingerprint))
    return CandidateIssue(issue.id, issue.title, issue.description, photos)


def build_candidate_pool(
    issue_repo,
    category: IssueCategory,
    latitude: float,
    longitude: float,
    settings: Optional[DetectionSettings] = None,
    now: Optional[datetime] = None,
) -> List[CandidateIssue]:
    """
    Load nearby, recent issues of the same category as detection candidates.

    The repository query uses a bounding box; the result is refined to the
    exact radius with the haversine distance.
    """
    settings = settings or DetectionSettings.from_config()
    since = (now or utcnow()) - timedelta(days=settings.window_days)
    box = bounding_box(latitude, longitude, settings.radius_m)
    issues = issue_repo.find_candidates(category, box, since, limit=settings.candidate_limit)
    return [
        candidate_from_issue(issue)
        for issue in issues
        if haversine_meters(latitude, longitude, issue.latitude, issue.longitude) <= settings.radius_m
    ]
