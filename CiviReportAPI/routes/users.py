from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from CiviReportAPI.constants import Role
from CiviReportAPI.database import get_db
from CiviReportAPI.models import User
from CiviReportAPI.repositories import WorkerCapacityTracker
from CiviReportAPI.routes.auth import get_current_user, require_roles
from CiviReportAPI.schemas import UserSummary, WorkerResponse

router = APIRouter()


@router.get("/user", response_model=UserSummary)
def read_current_user(current_user: User = Depends(get_current_user)):
    return current_user


# Admin view of worker load and capacity
@router.get("/users/workers", response_model=List[WorkerResponse])
def list_workers(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(Role.ADMIN)),
):
    return WorkerCapacityTracker(db).workers()
