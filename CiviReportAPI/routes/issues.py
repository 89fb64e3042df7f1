import logging
from dataclasses import dataclass
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from starlette.concurrency import run_in_threadpool

from CiviReportAPI import config
from CiviReportAPI.constants import IssueCategory, IssuePriority, IssueStatus, Role, parse_status
from CiviReportAPI.database import get_db
from CiviReportAPI.duplicate_detection import (
    DetectionSettings,
    DraftPhoto,
    DraftReport,
    build_candidate_pool,
    run_detection,
)
from CiviReportAPI.errors import CiviReportError, DetectionUnavailable, to_http_exception
from CiviReportAPI.image_hashing import fingerprint_image
from CiviReportAPI.image_utils import UnreadableImage, normalize_image_for_web, open_image
from CiviReportAPI.lifecycle import IssueLifecycle, TransitionRequest, list_available_transitions
from CiviReportAPI.models import Issue, IssueComment, IssuePhoto, IssueUpvote, User
from CiviReportAPI.repositories import IssueRepository
from CiviReportAPI.routes.auth import get_current_user, require_roles
from CiviReportAPI.schemas import (
    AvailableTransitionsResponse,
    CommentCreate,
    CommentResponse,
    IssueResponse,
    IssueStatusChangeResponse,
    PriorityUpdate,
    TransitionPayload,
    UpvoteResponse,
)
from CiviReportAPI.storage import BlobStoreError, get_blob_store, photo_key

logger = logging.getLogger(__name__)

router = APIRouter()


@dataclass
class _PreparedPhoto:
    reference: str
    content: bytes
    filename: str
    content_type: str
    width: Optional[int] = None
    height: Optional[int] = None
    a_hash: Optional[str] = None
    d_hash: Optional[str] = None
    md5: Optional[str] = None


def _prepare_photo(raw: bytes, filename: str, content_type: Optional[str]) -> _PreparedPhoto:
    """Normalize and fingerprint one upload. Unreadable images are kept as sent."""
    try:
        normalized = normalize_image_for_web(raw, filename, content_type)
    except UnreadableImage as exc:
        logger.warning("Photo %s could not be decoded: %s", filename, exc)
        return _PreparedPhoto(filename, raw, filename, content_type or "application/octet-stream")
    fingerprint = fingerprint_image(open_image(normalized.content), normalized.content)
    return _PreparedPhoto(
        reference=filename,
        content=normalized.content,
        filename=normalized.filename,
        content_type=normalized.content_type,
        width=normalized.width,
        height=normalized.height,
        a_hash=fingerprint.a_hash,
        d_hash=fingerprint.d_hash,
        md5=fingerprint.md5,
    )


def _get_issue_or_404(db: Session, issue_id: int) -> Issue:
    issue = (
        db.query(Issue)
        .options(selectinload(Issue.photos), selectinload(Issue.comments))
        .filter(Issue.id == issue_id)
        .first()
    )
    if not issue:
        raise HTTPException(status_code=404, detail="Issue not found")
    return issue


def _unprocessable(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=message)


# Submit a new issue
@router.post("/issues")
async def create_issue(
    title: str = Form(...),
    description: str = Form(...),
    category: str = Form(...),
    latitude: float = Form(...),
    longitude: float = Form(...),
    address: Optional[str] = Form(None),
    priority: Optional[str] = Form(None),
    contractor_eligible: bool = Form(False),
    photos: List[UploadFile] = File([]),
    ignore_duplicates: bool = Query(False),
    db: Session = Depends(get_db),
    blob_store=Depends(get_blob_store),
    current_user: User = Depends(get_current_user),
):
    """
    Submit a report, running the duplicate and quality check first.

    Args:
        title (str): Short title.
        description (str): Description of the problem.
        category (str): One of IssueCategory.
        latitude (float): Latitude of the problem.
        longitude (float): Longitude of the problem.
        address (str, optional): Street address.
        priority (str, optional): One of IssuePriority; MEDIUM by default.
        contractor_eligible (bool): Whether contractors may bid on it.
        photos (list[UploadFile]): Up to five photos.
        ignore_duplicates (bool): Create the issue even if the check finds something.
        db (Session): The database session.
        blob_store: Photo storage.
        current_user (User): The reporter.

    Returns:
        200 with `{status: "duplicate_check", verdict}` when the reporter
        should confirm, otherwise 201 with `{status: "created", issue, warnings}`.

    Raises:
        HTTPException: 422 for invalid input, 502 if photo storage fails.
    """
    if not title.strip() or not description.strip():
        raise _unprocessable("Title and description are required")
    try:
        category_value = IssueCategory(category.strip().upper())
        priority_value = IssuePriority((priority or IssuePriority.MEDIUM.value).strip().upper())
    except ValueError as exc:
        raise _unprocessable(str(exc))
    if not -90.0 <= latitude <= 90.0 or not -180.0 <= longitude <= 180.0:
        raise _unprocessable("Coordinates are out of range")
    if len(photos) > config.MAX_ISSUE_PHOTOS:
        raise _unprocessable(f"At most {config.MAX_ISSUE_PHOTOS} photos are allowed")

    prepared: List[_PreparedPhoto] = []
    for index, upload in enumerate(photos):
        raw = await upload.read()
        if len(raw) > config.MAX_IMAGE_SIZE:
            raise _unprocessable(f"Photo {upload.filename} exceeds the maximum size")
        if upload.content_type and not upload.content_type.lower().startswith("image/"):
            raise _unprocessable(f"Photo {upload.filename} is not an image")
        filename = upload.filename or f"photo-{index + 1}.jpg"
        prepared.append(await run_in_threadpool(_prepare_photo, raw, filename, upload.content_type))

    warnings: List[str] = []
    if not ignore_duplicates:
        settings = DetectionSettings.from_config()
        draft = DraftReport(
            title=title,
            description=description,
            category=category_value,
            latitude=latitude,
            longitude=longitude,
            photos=[DraftPhoto(p.reference, p.content) for p in prepared],
        )
        candidates = build_candidate_pool(IssueRepository(db), category_value, latitude, longitude, settings)
        try:
            verdict = await run_detection(draft, candidates, settings, blob_store)
        except DetectionUnavailable:
            warnings.append("duplicate_check_skipped")
        else:
            if not verdict.is_empty():
                return JSONResponse(
                    status_code=status.HTTP_200_OK,
                    content={"status": "duplicate_check", "verdict": jsonable_encoder(verdict.as_dict())},
                )
            if verdict.unavailable:
                warnings.append("photo_checks_incomplete")

    repo = IssueRepository(db)
    try:
        issue = repo.create(
            title=title.strip(),
            description=description.strip(),
            category=category_value.value,
            priority=priority_value.value,
            latitude=latitude,
            longitude=longitude,
            address=address,
            reporter_id=current_user.id,
            contractor_eligible=contractor_eligible,
        )
        repo.record_change(issue.id, None, IssueStatus.REPORTED, current_user)
        for position, photo in enumerate(prepared):
            key = photo_key(f"issues/{issue.id}", photo.filename)
            await run_in_threadpool(blob_store.put, key, photo.content, photo.content_type)
            db.add(IssuePhoto(
                issue_id=issue.id,
                position=position,
                blob_key=key,
                filename=photo.filename,
                content_type=photo.content_type,
                byte_size=len(photo.content),
                width=photo.width,
                height=photo.height,
                a_hash=photo.a_hash,
                d_hash=photo.d_hash,
                md5=photo.md5,
            ))
        db.commit()
    except BlobStoreError as exc:
        db.rollback()
        logger.exception("Photo upload failed; issue not created")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Photo storage failed: {exc}")
    except Exception:
        db.rollback()
        raise

    logger.info("Issue %s reported by user %s with %s photos", issue.id, current_user.id, len(prepared))
    issue = _get_issue_or_404(db, issue.id)
    body = {
        "status": "created",
        "issue": IssueResponse.model_validate(issue).model_dump(mode="json"),
        "warnings": warnings,
    }
    return JSONResponse(status_code=status.HTTP_201_CREATED, content=body)


# List issues
@router.get("/issues", response_model=List[IssueResponse])
def list_issues(
    category: Optional[str] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    sort: Optional[str] = Query(None, description="'trending' orders by upvotes"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    query = db.query(Issue).options(selectinload(Issue.photos), selectinload(Issue.comments))
    if category:
        try:
            query = query.filter(Issue.category == IssueCategory(category.strip().upper()).value)
        except ValueError as exc:
            raise _unprocessable(str(exc))
    if status_filter:
        try:
            query = query.filter(Issue.status == parse_status(status_filter).value)
        except ValueError as exc:
            raise _unprocessable(str(exc))
    if sort == "trending":
        query = query.order_by(Issue.upvotes.desc(), Issue.created_at.desc(), Issue.id.desc())
    else:
        query = query.order_by(Issue.created_at.desc(), Issue.id.desc())
    return query.offset(skip).limit(limit).all()


@router.get("/issues/{issue_id}", response_model=IssueResponse)
def get_issue(issue_id: int, db: Session = Depends(get_db)):
    return _get_issue_or_404(db, issue_id)


@router.get("/issues/{issue_id}/history", response_model=List[IssueStatusChangeResponse])
def get_issue_history(issue_id: int, db: Session = Depends(get_db)):
    _get_issue_or_404(db, issue_id)
    return IssueRepository(db).history(issue_id)


@router.get("/issues/{issue_id}/transitions", response_model=AvailableTransitionsResponse)
def get_available_transitions(
    issue_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    issue = _get_issue_or_404(db, issue_id)
    return AvailableTransitionsResponse(
        issue_id=issue.id,
        current_status=issue.status,
        available=list_available_transitions(issue, current_user),
    )


# Move an issue through its lifecycle
@router.patch("/issues/{issue_id}/transition", response_model=IssueResponse)
def transition_issue(
    issue_id: int,
    payload: TransitionPayload,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Apply one lifecycle transition.

    Args:
        issue_id (int): The issue to move.
        payload (TransitionPayload): Expected and requested status with
            the assignee, reason, notes or work update the transition needs.
        db (Session): The database session.
        current_user (User): The acting user.

    Returns:
        IssueResponse: The updated issue.

    Raises:
        HTTPException: 404, 409 (invalid or stale), 403, 412 or 422.
    """
    request = TransitionRequest(
        expected_status=payload.expected_status,
        new_status=payload.new_status,
        assigned_to_id=payload.assigned_to_id,
        reason=payload.reason,
        notes=payload.notes,
        work_update_id=payload.work_update_id,
    )
    try:
        IssueLifecycle(db).transition(issue_id, current_user, request)
    except CiviReportError as exc:
        raise to_http_exception(exc)
    return _get_issue_or_404(db, issue_id)


@router.post("/issues/{issue_id}/auto-assign", response_model=IssueResponse)
def auto_assign_issue(
    issue_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        IssueLifecycle(db).auto_assign(issue_id, current_user)
    except CiviReportError as exc:
        raise to_http_exception(exc)
    return _get_issue_or_404(db, issue_id)


@router.patch("/issues/{issue_id}/priority", response_model=IssueResponse)
def update_priority(
    issue_id: int,
    payload: PriorityUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN, Role.INSPECTOR)),
):
    issue = _get_issue_or_404(db, issue_id)
    issue.priority = payload.priority.value
    db.commit()
    logger.info("Issue %s priority set to %s by user %s", issue_id, payload.priority.value, current_user.id)
    return _get_issue_or_404(db, issue_id)


# Toggle the current user's upvote
@router.patch("/issues/{issue_id}/upvote", response_model=UpvoteResponse)
def toggle_upvote(
    issue_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    _get_issue_or_404(db, issue_id)
    existing = (
        db.query(IssueUpvote)
        .filter(IssueUpvote.issue_id == issue_id, IssueUpvote.user_id == current_user.id)
        .first()
    )
    try:
        if existing:
            db.delete(existing)
            delta = -1
        else:
            db.add(IssueUpvote(issue_id=issue_id, user_id=current_user.id))
            delta = 1
        db.execute(
            update(Issue)
            .where(Issue.id == issue_id)
            .values(upvotes=Issue.upvotes + delta)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Upvote changed concurrently; try again")

    upvotes = db.query(Issue.upvotes).filter(Issue.id == issue_id).scalar()
    return UpvoteResponse(issue_id=issue_id, upvotes=upvotes, upvoted=delta > 0)


@router.post("/issues/{issue_id}/comments", response_model=CommentResponse, status_code=status.HTTP_201_CREATED)
def add_comment(
    issue_id: int,
    payload: CommentCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    _get_issue_or_404(db, issue_id)
    if not payload.text.strip():
        raise _unprocessable("Comment text is required")
    comment = IssueComment(issue_id=issue_id, user_id=current_user.id, text=payload.text.strip())
    db.add(comment)
    db.commit()
    db.refresh(comment)
    return comment
