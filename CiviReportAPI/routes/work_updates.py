import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from CiviReportAPI import config
from CiviReportAPI.constants import Role, WorkUpdateType
from CiviReportAPI.database import get_db
from CiviReportAPI.errors import CiviReportError, to_http_exception
from CiviReportAPI.image_utils import UnreadableImage, normalize_image_for_web
from CiviReportAPI.models import User
from CiviReportAPI.routes.auth import get_current_user, require_roles
from CiviReportAPI.schemas import MaterialItem, VerificationPayload, WorkUpdateResponse
from CiviReportAPI.storage import BlobStoreError, get_blob_store, photo_key
from CiviReportAPI.work_progress import WorkProgress

logger = logging.getLogger(__name__)

router = APIRouter()

_materials_adapter = TypeAdapter(List[MaterialItem])


def _parse_materials(raw: Optional[str]) -> list:
    if not raw:
        return []
    try:
        items = _materials_adapter.validate_python(json.loads(raw))
    except (ValueError, PydanticValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Invalid materials: {exc}")
    return [item.model_dump() for item in items]


@router.post("/work-updates", response_model=WorkUpdateResponse, status_code=status.HTTP_201_CREATED)
async def create_work_update(
    issue_id: int = Form(...),
    update_type: str = Form(...),
    description: str = Form(...),
    progress_percentage: int = Form(0),
    hours_worked: float = Form(0.0),
    materials: Optional[str] = Form(None),
    photos: List[UploadFile] = File([]),
    db: Session = Depends(get_db),
    blob_store=Depends(get_blob_store),
    current_user: User = Depends(get_current_user),
):
    """
    Record field progress on an assigned issue.

    Args:
        issue_id (int): The issue worked on.
        update_type (str): STARTED, IN_PROGRESS, COMPLETED or BLOCKED.
        description (str): What was done.
        progress_percentage (int): 0-100.
        hours_worked (float): Hours spent.
        materials (str, optional): JSON list of {name, quantity, unit}.
        photos (list[UploadFile]): Progress photos.
        db (Session): The database session.
        blob_store: Photo storage.
        current_user (User): The assigned worker or contractor.

    Returns:
        WorkUpdateResponse: The stored update.
    """
    try:
        kind = WorkUpdateType(update_type.strip().upper())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Unknown update type {update_type!r}")
    if len(photos) > config.MAX_ISSUE_PHOTOS:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Too many photos")
    material_items = _parse_materials(materials)

    keys = []
    for upload in photos:
        raw = await upload.read()
        if len(raw) > config.MAX_IMAGE_SIZE:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Photo {upload.filename} exceeds the maximum size")
        try:
            normalized = await run_in_threadpool(normalize_image_for_web, raw, upload.filename, upload.content_type)
        except UnreadableImage:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Photo {upload.filename} is not a readable image")
        key = photo_key(f"work-updates/{issue_id}", normalized.filename)
        try:
            await run_in_threadpool(blob_store.put, key, normalized.content, normalized.content_type)
        except BlobStoreError as exc:
            logger.exception("Work update photo upload failed")
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Photo storage failed: {exc}")
        keys.append(key)

    try:
        return WorkProgress(db).submit(
            current_user,
            issue_id,
            kind,
            description,
            progress_percentage=progress_percentage,
            hours_worked=hours_worked,
            materials=material_items,
            photo_keys=keys,
        )
    except CiviReportError as exc:
        raise to_http_exception(exc)


@router.get("/work-updates/issue/{issue_id}", response_model=List[WorkUpdateResponse])
def list_issue_work_updates(
    issue_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        return WorkProgress(db).list_for_issue(issue_id)
    except CiviReportError as exc:
        raise to_http_exception(exc)


@router.get("/work-updates/pending-verifications", response_model=List[WorkUpdateResponse])
def list_pending_verifications(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(Role.INSPECTOR, Role.ADMIN)),
):
    return WorkProgress(db).pending_verifications()


@router.put("/work-updates/{update_id}/verify", response_model=WorkUpdateResponse)
def verify_work_update(
    update_id: int,
    payload: VerificationPayload,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Approve or reject a completion; the issue moves in the same transaction.

    APPROVED resolves the issue, REJECTED (with notes) sends it back to
    IN_PROGRESS.
    """
    try:
        return WorkProgress(db).verify(update_id, current_user, payload.status, payload.notes)
    except CiviReportError as exc:
        raise to_http_exception(exc)
